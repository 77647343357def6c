"""
Slot identity.

A slot key names one field at one complex on one date and time:

    {complex_id}-{field_slug}-{YYYY-MM-DD}-{HH:MM}

Field slugs never contain the separator, complex ids may. Parsing anchors on
the fixed-width date/time suffix and takes the last token of the prefix as
the slug, so "club-norte-cancha1-2025-03-10-19:00" splits cleanly.
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Union

from ..errors import InvalidSlotKey

SEPARATOR = "-"

_SLOT_KEY_RE = re.compile(
    r"^(?P<prefix>.+)-(?P<date>\d{4}-\d{2}-\d{2})-(?P<time>\d{2}:\d{2})$"
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class SlotKey:
    complex_id: str
    field_slug: str
    slot_date: date
    slot_time: time

    def __str__(self) -> str:
        return f"{self.complex_id}{SEPARATOR}{self.field_slug}{SEPARATOR}{format_date(self.slot_date)}{SEPARATOR}{format_time(self.slot_time)}"


def slugify_field_name(name: str) -> str:
    """Lower-case, strip accents, drop whitespace and anything not [a-z0-9]"""
    decomposed = unicodedata.normalize("NFKD", str(name or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM_RE.sub("", stripped.lower())


def format_date(value: Union[date, str]) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.isoformat()
    return parse_date(value).isoformat()


def format_time(value: Union[time, str]) -> str:
    if isinstance(value, time):
        return f"{value.hour:02d}:{value.minute:02d}"
    return format_time(parse_time(value))


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise InvalidSlotKey(f"Invalid date: {value!r}") from e


def parse_time(value: str) -> time:
    """Accepts H:MM, HH:MM and HH:MM:SS (the database returns seconds)"""
    raw = str(value).strip()
    match = re.match(r"^(\d{1,2}):(\d{2})(?::\d{2})?$", raw)
    if not match:
        raise InvalidSlotKey(f"Invalid time: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidSlotKey(f"Invalid time: {value!r}")
    return time(hour, minute)


def build_slot_key(
    complex_id: str,
    field_name: str,
    slot_date: Union[date, str],
    slot_time: Union[time, str],
) -> str:
    complex_id = str(complex_id or "").strip()
    slug = slugify_field_name(field_name)
    if not complex_id or not slug:
        raise InvalidSlotKey("Complex id and field name are required")
    return f"{complex_id}{SEPARATOR}{slug}{SEPARATOR}{format_date(slot_date)}{SEPARATOR}{format_time(slot_time)}"


def parse_slot_key(key: str) -> SlotKey:
    match = _SLOT_KEY_RE.match(str(key or "").strip())
    if not match:
        raise InvalidSlotKey(f"Slot key does not end in YYYY-MM-DD-HH:MM: {key!r}")

    prefix = match.group("prefix")
    if SEPARATOR not in prefix:
        raise InvalidSlotKey(f"Slot key has no field component: {key!r}")
    complex_id, field_slug = prefix.rsplit(SEPARATOR, 1)
    if not complex_id or not field_slug or slugify_field_name(field_slug) != field_slug:
        raise InvalidSlotKey(f"Slot key has an invalid complex or field: {key!r}")

    return SlotKey(
        complex_id=complex_id,
        field_slug=field_slug,
        slot_date=parse_date(match.group("date")),
        slot_time=parse_time(match.group("time")),
    )
