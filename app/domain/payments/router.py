"""
Mercado Pago webhook router.

The endpoint always answers 200 so the processor does not keep redelivering;
the notification is reconciled in a background task after the response.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from ...config import MERCADOPAGO_WEBHOOK_SECRET
from ...webhook_security import verify_mercadopago_signature
from .reconciliation import ReconciliationEngine
from .schemas import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_engine: Optional[ReconciliationEngine] = None


def get_reconciliation_engine() -> ReconciliationEngine:
    """Dependency injection for the shared ReconciliationEngine"""
    global _engine
    if _engine is None:
        _engine = ReconciliationEngine()
    return _engine


def get_webhook_secret() -> Optional[str]:
    return MERCADOPAGO_WEBHOOK_SECRET


@router.post("/mercadopago", response_model=WebhookAck)
async def mercadopago_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    webhook_secret: Optional[str] = Depends(get_webhook_secret),
):
    """Receive a payment notification (webhook body or IPN query string)"""
    query = dict(request.query_params)
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    data_id = data.get("id") or query.get("data.id")
    request_id = request.headers.get("x-request-id")
    logger.info(f"📥 Mercado Pago notification: type={payload.get('type') or query.get('topic')} data.id={data_id}")

    if not verify_mercadopago_signature(request.headers.get("x-signature"), request_id, data_id, webhook_secret):
        logger.warning(f"🚫 Discarding Mercado Pago notification with invalid signature (request-id={request_id})")
        return WebhookAck()

    background_tasks.add_task(engine.apply_notification, payload, query)
    return WebhookAck()
