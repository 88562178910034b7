from __future__ import annotations

from fastapi import APIRouter, Header, Request

from signflow.application import get_signing_service
from signflow.application.webhook import WebhookPayloadError, parse_webhook_payload, verify_webhook_secret
from signflow.core.logging import get_logger
from signflow.routes.errors import ApiError

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger("routes.webhooks")


@router.post("/signing")
async def signing_webhook(
    request: Request,
    x_signing_webhook_secret: str | None = Header(default=None),
) -> dict:
    """Apply a provider push notification; duplicates and stale events still answer 200."""

    settings = request.app.state.settings
    if not verify_webhook_secret(settings.webhook_secret, x_signing_webhook_secret):
        logger.warning("webhook_rejected", reason="secret_mismatch")
        raise ApiError(401, "INVALID_WEBHOOK_SECRET", "Invalid webhook secret.")

    try:
        payload = await request.json()
    except ValueError as exc:
        raise ApiError(400, "INVALID_WEBHOOK_PAYLOAD", "Webhook body must be valid JSON.") from exc

    try:
        event = parse_webhook_payload(payload)
    except WebhookPayloadError as exc:
        logger.info("webhook_rejected", reason=str(exc))
        raise ApiError(400, "INVALID_WEBHOOK_PAYLOAD", str(exc)) from exc

    result = await get_signing_service().apply_event(event)
    logger.info(
        "webhook_processed",
        document_id=event.document_id,
        event_id=event.event_id,
        processed=result.processed,
        duplicate=result.duplicate,
        ignored=result.ignored,
    )
    return result.to_payload()
