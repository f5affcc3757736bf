"""Authentication: Clerk session JWTs and short-lived realtime tokens."""

import base64
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache

import jwt as pyjwt
from fastapi import Depends, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient
from sqlalchemy import select

from metering.core.config import get_settings
from metering.core.exceptions import ForbiddenError, UnauthenticatedError

_bearer_scheme = HTTPBearer(auto_error=False)

# User IDs already provisioned by this process
_provisioned_cache: set[str] = set()

REALTIME_TOKEN_ALGORITHM = "HS256"


def _extract_frontend_api_domain(pk: str) -> str:
    """Extract the Clerk frontend API domain from a publishable key.

    Clerk publishable keys are formatted as ``pk_(test|live)_<base64>`` where the
    base64 payload decodes to ``<domain>$``.
    """
    parts = pk.split("_", 2)
    if len(parts) != 3 or parts[0] != "pk":
        raise ValueError("Invalid Clerk publishable key format")

    try:
        domain = base64.b64decode(parts[2] + "==").decode("utf-8").rstrip("$")
    except Exception as exc:
        raise ValueError("Invalid Clerk publishable key: cannot decode") from exc

    if not domain:
        raise ValueError("Invalid Clerk publishable key: empty domain")
    return domain


@lru_cache
def get_jwks_client() -> PyJWKClient:
    settings = get_settings()
    domain = _extract_frontend_api_domain(settings.clerk_publishable_key)
    return PyJWKClient(f"https://{domain}/.well-known/jwks.json", cache_keys=True, lifespan=300)


@dataclass(frozen=True)
class AuthUser:
    """Identity handed to route handlers. ``user_id`` is trusted as-is downstream."""

    user_id: str
    claims: dict

    @property
    def email(self) -> str | None:
        return self.claims.get("email")

    @property
    def is_admin(self) -> bool:
        return self.claims.get("public_metadata", {}).get("admin") is True


def decode_clerk_jwt(token: str) -> AuthUser:
    """Verify signature and time claims of a Clerk session JWT.

    Raises:
        UnauthenticatedError: On any validation failure
    """
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={"require": ["sub", "exp", "nbf", "iat"]},
        )
    except pyjwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except pyjwt.MissingRequiredClaimError as exc:
        raise UnauthenticatedError(f"Missing required claim: {exc}")
    except pyjwt.InvalidTokenError as exc:
        raise UnauthenticatedError(f"Invalid token: {exc}")

    return AuthUser(user_id=payload["sub"], claims=payload)


def _validate_audience_claim(aud_claim: object, allowed_audiences: list[str]) -> None:
    if isinstance(aud_claim, str):
        audiences = {aud_claim}
    elif isinstance(aud_claim, list) and all(isinstance(v, str) for v in aud_claim):
        audiences = set(aud_claim)
    else:
        raise UnauthenticatedError("Missing or malformed aud claim")

    if not audiences.intersection(allowed_audiences):
        raise UnauthenticatedError("Unauthorized audience (aud mismatch)")


def verify_clerk_claims(user: AuthUser) -> None:
    """Issuer, authorized party and (optional) audience checks."""
    settings = get_settings()

    try:
        expected_issuer = f"https://{_extract_frontend_api_domain(settings.clerk_publishable_key)}"
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured") from exc
    if user.claims.get("iss") != expected_issuer:
        raise UnauthenticatedError("Invalid issuer (iss mismatch)")

    azp = user.claims.get("azp")
    if not azp or azp not in settings.clerk_allowed_origins:
        raise UnauthenticatedError("Unauthorized origin (azp mismatch)")

    if settings.clerk_allowed_audiences:
        _validate_audience_claim(user.claims.get("aud"), settings.clerk_allowed_audiences)


async def _ensure_provisioned(user: AuthUser) -> None:
    if user.user_id in _provisioned_cache:
        return
    from metering.core.provisioning import provision_user_on_first_login

    await provision_user_on_first_login(user.user_id, user.claims)
    _provisioned_cache.add(user.user_id)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthUser:
    """FastAPI dependency: validate the Clerk bearer token and provision the user.

    Usage::

        @router.get("/usage")
        async def usage(user: AuthUser = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise UnauthenticatedError("Missing authorization header")

    user = decode_clerk_jwt(credentials.credentials)
    verify_clerk_claims(user)
    await _ensure_provisioned(user)

    request.state.user_id = user.user_id
    return user


async def require_admin(user: AuthUser = Depends(require_auth)) -> AuthUser:
    """Admins come from Clerk public_metadata.admin, then the users.is_admin flag."""
    if user.is_admin:
        return user

    try:
        from metering.db.base import get_session_factory
        from metering.db.models.user import User

        async with get_session_factory()() as session:
            result = await session.execute(
                select(User.id).where(User.id == user.user_id, User.is_admin.is_(True))
            )
            if result.scalar_one_or_none() is not None:
                return user
    except RuntimeError:
        pass  # DB not initialized

    raise ForbiddenError("Admin access required")


# ── Realtime tokens ─────────────────────────────────────────────────


def issue_realtime_token(user: AuthUser, now: datetime | None = None) -> tuple[str, int]:
    """Sign a short-lived HS256 token for the realtime stream.

    Returns:
        (token, expires_in_seconds)
    """
    settings = get_settings()
    if not settings.realtime_jwt_secret:
        raise HTTPException(status_code=500, detail="Realtime tokens are not configured")

    now = now or datetime.now(UTC)
    ttl = settings.realtime_token_ttl_seconds
    claims = {
        "sub": user.user_id,
        "email": user.email,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
        "iss": settings.realtime_token_issuer,
        "aud": settings.realtime_token_audience,
    }
    token = pyjwt.encode(claims, settings.realtime_jwt_secret, algorithm=REALTIME_TOKEN_ALGORITHM)
    return token, ttl


def verify_realtime_token(token: str) -> AuthUser:
    """Raises UnauthenticatedError unless ``token`` was issued by ``issue_realtime_token``."""
    settings = get_settings()
    if not settings.realtime_jwt_secret:
        raise UnauthenticatedError("Realtime tokens are not configured")

    try:
        payload = pyjwt.decode(
            token,
            settings.realtime_jwt_secret,
            algorithms=[REALTIME_TOKEN_ALGORITHM],
            audience=settings.realtime_token_audience,
            issuer=settings.realtime_token_issuer,
            options={"require": ["sub", "exp", "iss", "aud"]},
        )
    except pyjwt.ExpiredSignatureError:
        raise UnauthenticatedError("Realtime token expired")
    except pyjwt.InvalidTokenError as exc:
        raise UnauthenticatedError(f"Invalid realtime token: {exc}")

    return AuthUser(user_id=payload["sub"], claims=payload)


async def require_stream_user(
    request: Request,
    token: str | None = Query(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthUser:
    """Identity for the SSE endpoint.

    EventSource cannot set headers, so a realtime token in ``?token=`` is
    accepted alongside a regular Clerk bearer token.
    """
    if token:
        user = verify_realtime_token(token)
        request.state.user_id = user.user_id
        return user
    return await require_auth(request, credentials)
