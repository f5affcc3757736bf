"""Realtime routes: SSE change stream and stream token issuance."""

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from metering.api.deps import get_notifier, get_rate_limiter
from metering.core.auth import AuthUser, issue_realtime_token, require_auth, require_stream_user
from metering.core.config import get_settings
from metering.core.exceptions import ForbiddenError, RateLimitedError, StoreUnavailableError
from metering.realtime.channel import RealtimeChannel
from metering.realtime.notifier import PgChangeNotifier

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/realtime")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RealtimeTokenResponse(BaseModel):
    token: str
    expires_in: int
    user_id: str


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


@router.get("/subscribe")
async def subscribe(
    request: Request,
    user_id: str = Query(..., min_length=1),
    user: AuthUser = Depends(require_stream_user),
    notifier: PgChangeNotifier = Depends(get_notifier),
):
    """Stream subscription and usage changes for the caller via SSE.

    Frames are ``data: {json}`` with ``type`` one of ``connected``, ``update``
    or ``heartbeat``. Missed events are not replayed; clients re-fetch state
    after reconnecting.

    Raises:
        ForbiddenError(403): If ``user_id`` is not the authenticated user
        StoreUnavailableError(503): If the change notifier is not connected
    """
    if user_id != user.user_id:
        logger.warning("realtime_forbidden", requested_user_id=user_id, user_id=user.user_id)
        raise ForbiddenError("You can only subscribe to your own updates")

    if not notifier.is_connected:
        raise StoreUnavailableError("Realtime updates are temporarily unavailable")

    settings = get_settings()
    # Subscribes on the first iteration of the body
    channel = RealtimeChannel(
        user.user_id,
        notifier,
        request.is_disconnected,
        heartbeat_seconds=settings.realtime_heartbeat_seconds,
    )

    return StreamingResponse(
        channel.stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/token", response_model=RealtimeTokenResponse)
async def realtime_token(
    request: Request,
    response: Response,
    user: AuthUser = Depends(require_auth),
    limiter=Depends(get_rate_limiter),
):
    """Issue a short-lived token for ``/realtime/subscribe?token=...``.

    Throttled per ``user_id:client_ip``.
    """
    key = f"{user.user_id}:{client_ip(request)}"
    decision = await limiter.hit(key)
    if not decision.allowed:
        logger.warning("realtime_token_rate_limited", user_id=user.user_id, key=key)
        raise RateLimitedError(
            "Too many token requests. Please wait before trying again.",
            retry_after=decision.retry_after,
            limit=decision.limit,
            reset_at=decision.reset_at,
        )

    response.headers.update(decision.headers())
    token, expires_in = issue_realtime_token(user)
    logger.info("realtime_token_issued", user_id=user.user_id)
    return RealtimeTokenResponse(token=token, expires_in=expires_in, user_id=user.user_id)
