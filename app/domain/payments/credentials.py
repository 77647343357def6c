"""
Payment credentials - ordered sources of Mercado Pago access tokens.

A complex can be paid through three kinds of credential, tried in the order
given by PAYMENT_CREDENTIAL_SOURCES:

- ``oauth``: tokens stored after the owner connected their account
  (refreshable);
- ``legacy``: an access token the owner pasted manually before OAuth existed;
- ``env``: the installation-wide MP_ACCESS_TOKEN.

Intent creation uses the first credential available for the complex. A
payment notification does not say which seller it belongs to, so fetching it
walks every known credential in the same order.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ...config import MP_ACCESS_TOKEN, MP_ENCRYPTION_KEY, PAYMENT_CREDENTIAL_SOURCES, SECRET_KEY
from ...database import SessionLocal
from ...models import Complex
from ...models_mercadopago import MercadoPagoIntegration
from ...shared.clock import utcnow

logger = logging.getLogger(__name__)

SOURCE_OAUTH = "oauth"
SOURCE_LEGACY = "legacy"
SOURCE_ENV = "env"
KNOWN_SOURCES = (SOURCE_OAUTH, SOURCE_LEGACY, SOURCE_ENV)


def _build_cipher() -> Fernet:
    if MP_ENCRYPTION_KEY:
        return Fernet(MP_ENCRYPTION_KEY.encode())
    derived = base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest())
    return Fernet(derived)


# Encryption for tokens
cipher_suite = _build_cipher()


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage"""
    return cipher_suite.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a stored token"""
    return cipher_suite.decrypt(encrypted_token.encode()).decode()


@dataclass(frozen=True)
class Credential:
    source: str
    access_token: str = field(repr=False)
    complex_id: Optional[str] = None
    refresh_token: Optional[str] = field(default=None, repr=False)

    @property
    def can_refresh(self) -> bool:
        return self.source == SOURCE_OAUTH and bool(self.refresh_token) and bool(self.complex_id)

    @property
    def label(self) -> str:
        return f"{self.source}:{self.complex_id or '*'}"


class CredentialStore:
    """Reads and writes processor credentials; every call uses its own session"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        sources: Optional[list[str]] = None,
        env_token: Optional[str] = MP_ACCESS_TOKEN,
    ):
        self.session_factory = session_factory
        self.sources = [s for s in (sources or PAYMENT_CREDENTIAL_SOURCES) if s in KNOWN_SOURCES]
        self.env_token = env_token
        unknown = set(sources or PAYMENT_CREDENTIAL_SOURCES) - set(KNOWN_SOURCES)
        if unknown:
            logger.warning(f"⚠️ Ignoring unknown payment credential sources: {sorted(unknown)}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _oauth(self, db: Session, complex_id: Optional[str] = None) -> list[Credential]:
        query = db.query(MercadoPagoIntegration).filter(MercadoPagoIntegration.is_active == True)  # noqa: E712
        if complex_id is not None:
            query = query.filter(MercadoPagoIntegration.complex_id == complex_id)
        out = []
        for integration in query.order_by(MercadoPagoIntegration.complex_id).all():
            try:
                out.append(
                    Credential(
                        source=SOURCE_OAUTH,
                        access_token=decrypt_token(integration.access_token),
                        complex_id=integration.complex_id,
                        refresh_token=decrypt_token(integration.refresh_token)
                        if integration.refresh_token
                        else None,
                    )
                )
            except InvalidToken:
                logger.error(f"❌ Cannot decrypt OAuth tokens for complex {integration.complex_id}")
        return out

    def _legacy(self, db: Session, complex_id: Optional[str] = None) -> list[Credential]:
        query = db.query(Complex).filter(Complex.mp_access_token.isnot(None))
        if complex_id is not None:
            query = query.filter(Complex.id == complex_id)
        out = []
        for complex_row in query.order_by(Complex.id).all():
            try:
                out.append(
                    Credential(
                        source=SOURCE_LEGACY,
                        access_token=decrypt_token(complex_row.mp_access_token),
                        complex_id=complex_row.id,
                    )
                )
            except InvalidToken:
                logger.error(f"❌ Cannot decrypt legacy token for complex {complex_row.id}")
        return out

    def _env(self) -> list[Credential]:
        return [Credential(source=SOURCE_ENV, access_token=self.env_token)] if self.env_token else []

    def _collect(self, complex_id: Optional[str]) -> list[Credential]:
        db = self.session_factory()
        try:
            collected = []
            for source in self.sources:
                if source == SOURCE_OAUTH:
                    collected.extend(self._oauth(db, complex_id))
                elif source == SOURCE_LEGACY:
                    collected.extend(self._legacy(db, complex_id))
                elif source == SOURCE_ENV:
                    collected.extend(self._env())
            return collected
        finally:
            db.close()

    def for_complex(self, complex_id: str) -> Optional[Credential]:
        """First credential able to create intents for this complex"""
        candidates = self._collect(complex_id)
        if not candidates:
            logger.warning(f"⚠️ No Mercado Pago credential available for complex {complex_id}")
            return None
        return candidates[0]

    def all_known(self) -> list[Credential]:
        """Every credential of the installation, in source order, without duplicates"""
        seen = set()
        unique = []
        for credential in self._collect(None):
            if credential.access_token in seen:
                continue
            seen.add(credential.access_token)
            unique.append(credential)
        return unique

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def save_oauth_tokens(
        db: Session,
        complex_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        mp_user_id: Optional[str] = None,
        scope: Optional[str] = None,
        live_mode: Optional[bool] = None,
    ) -> MercadoPagoIntegration:
        integration = (
            db.query(MercadoPagoIntegration)
            .filter(MercadoPagoIntegration.complex_id == complex_id)
            .first()
        )
        if not integration:
            integration = MercadoPagoIntegration(complex_id=complex_id)
            db.add(integration)

        integration.access_token = encrypt_token(access_token)
        if refresh_token:
            integration.refresh_token = encrypt_token(refresh_token)
        integration.token_expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in else None
        if mp_user_id is not None:
            integration.mp_user_id = str(mp_user_id)
        if scope is not None:
            integration.scope = scope
        if live_mode is not None:
            integration.live_mode = live_mode
        integration.is_active = True
        db.commit()
        db.refresh(integration)
        logger.info(f"✅ Mercado Pago OAuth tokens stored for complex {complex_id}")
        return integration

    @staticmethod
    def save_legacy_credentials(
        db: Session,
        complex_row: Complex,
        access_token: str,
        public_key: Optional[str] = None,
        mp_user_id: Optional[str] = None,
    ) -> Complex:
        complex_row.mp_access_token = encrypt_token(access_token)
        if public_key is not None:
            complex_row.mp_public_key = public_key
        if mp_user_id is not None:
            complex_row.mp_user_id = mp_user_id
        db.commit()
        db.refresh(complex_row)
        logger.info(f"✅ Manual Mercado Pago credentials stored for complex {complex_row.id}")
        return complex_row

    def save_refreshed(self, complex_id: str, token_data: dict) -> Credential:
        """Persist a refresh-grant response and return the new credential"""
        db = self.session_factory()
        try:
            self.save_oauth_tokens(
                db,
                complex_id,
                access_token=token_data["access_token"],
                refresh_token=token_data.get("refresh_token"),
                expires_in=token_data.get("expires_in"),
                mp_user_id=token_data.get("user_id"),
                scope=token_data.get("scope"),
                live_mode=token_data.get("live_mode"),
            )
        finally:
            db.close()
        return Credential(
            source=SOURCE_OAUTH,
            access_token=token_data["access_token"],
            complex_id=complex_id,
            refresh_token=token_data.get("refresh_token"),
        )
