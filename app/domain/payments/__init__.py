"""Payments domain - Mercado Pago intents, credentials and reconciliation"""

__all__ = []
