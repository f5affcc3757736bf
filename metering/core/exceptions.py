"""Error taxonomy for the metering service.

Each subclass knows the HTTP status it maps to; the global handler in
``metering.main`` renders them as ``{"detail", "code", "debug_id"}``.
"""


class MeteringError(Exception):
    """Base exception for the metering service."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class UnauthenticatedError(MeteringError):
    """Raised when a request carries no valid identity."""

    status_code = 401
    code = "unauthenticated"


class ForbiddenError(MeteringError):
    """Raised when an authenticated user asks for another user's data or channel."""

    status_code = 403
    code = "forbidden"


class QuotaExceededError(MeteringError):
    """Raised when the permission evaluator denies a metered action.

    ``code`` is ``upgrade_required`` when the plan has no allowance for the
    resource at all and ``limit_reached`` when this period's quota is spent.
    """

    status_code = 402
    code = "limit_reached"

    def __init__(self, message: str, *, code: str, result=None):
        super().__init__(message, code=code)
        self.result = result


class StoreUnavailableError(MeteringError):
    """Raised when the backing store cannot be reached."""

    status_code = 503
    code = "store_unavailable"


class TransportClosedError(MeteringError):
    """Raised by a realtime channel when its client has gone away.

    Ends the stream and moves the channel to CLOSING; never rendered over HTTP.
    """

    status_code = 499
    code = "transport_closed"


class RateLimitedError(MeteringError):
    """Raised when a caller exceeds the request budget for an endpoint."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, limit: int, reset_at: int):
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at
