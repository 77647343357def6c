"""
Mercado Pago Integration Models
Database models for storing Mercado Pago OAuth tokens per complex
"""

from sqlalchemy import Boolean, Column, DateTime, String, Text

from .database import Base
from .shared.clock import utcnow


class MercadoPagoIntegration(Base):
    """Store Mercado Pago OAuth tokens and seller information"""

    __tablename__ = "mercadopago_integrations"

    complex_id = Column(String(100), primary_key=True, index=True)
    mp_user_id = Column(String(100), nullable=True)
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    scope = Column(String(255), nullable=True)
    live_mode = Column(Boolean, default=False)
    token_expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
