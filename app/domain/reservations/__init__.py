"""Reservations domain - Holds, availability and slot status"""

__all__ = []
