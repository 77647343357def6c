"""Complexes domain - Owner configuration of complexes, fields and hours"""

__all__ = []
