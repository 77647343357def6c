"""
Mercado Pago API client.

Only the three calls the booking flow needs: create a checkout preference
(the payment intent), fetch a payment, and refresh an OAuth access token.
Failures are translated to the booking error taxonomy: a 401/403 means the
credential was rejected, everything else (timeouts, 5xx, unexpected bodies)
is ProcessorUnavailable.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ...config import (
    CURRENCY_ID,
    FRONTEND_URL,
    MERCADOPAGO_API_URL,
    MERCADOPAGO_CLIENT_ID,
    MERCADOPAGO_CLIENT_SECRET,
    MERCADOPAGO_TIMEOUT_SECONDS,
    PUBLIC_URL,
)
from ...errors import CredentialRejected, ProcessorUnavailable

logger = logging.getLogger(__name__)


def build_preference_body(
    *,
    slot_key: str,
    complex_id: str,
    title: str,
    amount: Decimal,
    hold_deadline: Optional[datetime] = None,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    reservation_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Checkout preference for a single deposit item tied to a slot"""
    body = {
        "items": [
            {
                "title": title,
                "quantity": 1,
                "unit_price": float(amount),
                "currency_id": CURRENCY_ID,
            }
        ],
        "external_reference": slot_key,
        "metadata": {"slot_key": slot_key, "complex_id": complex_id},
        "notification_url": f"{PUBLIC_URL}/webhooks/mercadopago",
        "back_urls": {
            "success": f"{FRONTEND_URL}/reserva/exito",
            "pending": f"{FRONTEND_URL}/reserva/pendiente",
            "failure": f"{FRONTEND_URL}/reserva/error",
        },
        "auto_return": "approved",
    }
    if reservation_id is not None:
        body["metadata"]["reservation_id"] = reservation_id
    if customer_name or customer_phone:
        body["payer"] = {"name": customer_name or ""}
        if customer_phone:
            body["payer"]["phone"] = {"number": customer_phone}
    if hold_deadline:
        # Checkout stops accepting payments when the hold would have expired
        body["expires"] = True
        body["expiration_date_to"] = (
            hold_deadline.replace(tzinfo=timezone.utc).isoformat(timespec="milliseconds")
        )
    return body


class MercadoPagoClient:
    """Thin async wrapper over the Mercado Pago REST API"""

    def __init__(
        self,
        base_url: str = MERCADOPAGO_API_URL,
        timeout: float = MERCADOPAGO_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client_id: Optional[str] = MERCADOPAGO_CLIENT_ID,
        client_secret: Optional[str] = MERCADOPAGO_CLIENT_SECRET,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.client_id = client_id
        self.client_secret = client_secret

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def _request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        json: Optional[dict] = None,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
        reject_statuses: tuple = (401, 403),
    ) -> Dict[str, Any]:
        request_headers = {"Accept": "application/json"}
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        if headers:
            request_headers.update(headers)

        try:
            async with self._client() as http_client:
                response = await http_client.request(method, path, json=json, data=data, headers=request_headers)
        except httpx.TimeoutException as e:
            logger.error(f"❌ Mercado Pago timeout on {method} {path}")
            raise ProcessorUnavailable("Payment processor timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Mercado Pago request failed on {method} {path}: {e}")
            raise ProcessorUnavailable() from e

        if response.status_code in reject_statuses:
            logger.warning(f"⚠️ Mercado Pago rejected credential on {method} {path}: {response.status_code}")
            raise CredentialRejected()
        if response.status_code >= 400:
            logger.error(f"❌ Mercado Pago error {response.status_code} on {method} {path}: {response.text[:500]}")
            raise ProcessorUnavailable(f"Payment processor answered {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"❌ Mercado Pago returned a non-JSON body on {method} {path}")
            raise ProcessorUnavailable("Payment processor returned an invalid response") from e

    async def create_preference(
        self, access_token: str, body: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a checkout preference; returns the processor's body (id, init_point, ...)"""
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        result = await self._request(
            "POST", "/checkout/preferences", access_token=access_token, json=body, headers=headers
        )
        if not result.get("id") or not (result.get("init_point") or result.get("sandbox_init_point")):
            logger.error(f"❌ Preference response without id/init_point: {result}")
            raise ProcessorUnavailable("Payment processor returned an incomplete preference")
        logger.info(f"💳 Preference {result['id']} created for {body.get('external_reference')}")
        return result

    async def get_payment(self, access_token: str, payment_id: str) -> Dict[str, Any]:
        """Fetch a payment. A 404 means the payment belongs to another seller"""
        return await self._request(
            "GET", f"/v1/payments/{payment_id}", access_token=access_token, reject_statuses=(401, 403, 404)
        )

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new access token (OAuth refresh grant)"""
        if not self.client_id or not self.client_secret:
            logger.error("❌ Mercado Pago OAuth client credentials are not configured")
            raise ProcessorUnavailable("OAuth refresh is not configured")

        token_data = await self._request(
            "POST",
            "/oauth/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            reject_statuses=(400, 401, 403),
        )
        if not token_data.get("access_token"):
            raise ProcessorUnavailable("OAuth refresh returned no access token")
        logger.info("🔄 Mercado Pago access token refreshed")
        return token_data
