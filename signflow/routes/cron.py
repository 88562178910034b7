from __future__ import annotations

import hmac

from fastapi import APIRouter, Header, Query, Request

from signflow.application import get_deferred_queue
from signflow.core.logging import get_logger
from signflow.routes.errors import ApiError
from signflow.workers.deferred_queue import DEFAULT_DRAIN_LIMIT, clamp_limit

router = APIRouter(prefix="/cron", tags=["cron"])

logger = get_logger("routes.cron")


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _matches(expected: str, provided: str | None) -> bool:
    return bool(provided) and hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@router.get("/deferred-queue")
async def drain_deferred_queue(
    request: Request,
    limit: str | None = Query(default=None),
    authorization: str | None = Header(default=None),
    x_cron_secret: str | None = Header(default=None),
) -> dict:
    """Drain due deferred jobs; meant to be hit by an external scheduler."""

    secret = request.app.state.settings.cron_secret
    if secret and not (_matches(secret, _bearer_token(authorization)) or _matches(secret, x_cron_secret)):
        logger.warning("cron_rejected")
        raise ApiError(401, "UNAUTHORIZED", "Invalid cron secret.")

    summary = await get_deferred_queue().drain(clamp_limit(limit, DEFAULT_DRAIN_LIMIT))
    return {"ok": True, **summary.to_payload()}
