"""Shared validation utilities"""

import re
from typing import Optional


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize a customer or owner phone number.

    Keeps a leading "+" and the digits; separators, spaces and parentheses
    are dropped. WhatsApp delivery needs the full international number, so
    anything shorter than 6 or longer than 15 digits is rejected.

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    raw = phone.strip()
    digits = re.sub(r"\D", "", raw)

    if len(digits) < 6 or len(digits) > 15:
        raise ValueError("Phone number must have between 6 and 15 digits")

    return f"+{digits}" if raw.startswith("+") else digits


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    # Basic email validation pattern
    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email


def validate_complex_id(value: str) -> str:
    """Complex ids are URL slugs chosen by the owner (letters, digits, - and _)"""
    value = (value or "").strip()
    if not re.match(r"^[A-Za-z0-9_-]{1,100}$", value):
        raise ValueError("Complex id may only contain letters, digits, '-' and '_'")
    return value
