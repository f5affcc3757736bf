"""User provisioning on first login.

Creates the ``users`` row the first time a Clerk identity is seen. Uses
ON CONFLICT DO NOTHING so concurrent first requests are race-safe.
"""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.base import get_session_factory
from metering.db.models.user import User


async def provision_user_on_first_login(
    user_id: str,
    jwt_claims: dict,
    session: AsyncSession | None = None,
) -> User:
    """Idempotently create the users row for ``user_id``.

    Args:
        user_id: Clerk user ID from the JWT
        jwt_claims: JWT claims; ``email`` and ``public_metadata.onboarding_completed`` are read
        session: Optional AsyncSession for testing (if None, creates new session)

    Returns:
        The User row (newly created or existing)
    """
    if session is not None:
        return await _do_provision(user_id, jwt_claims, session)

    async with get_session_factory()() as session:
        return await _do_provision(user_id, jwt_claims, session)


async def _do_provision(user_id: str, jwt_claims: dict, session: AsyncSession) -> User:
    metadata = jwt_claims.get("public_metadata") or {}

    stmt = (
        insert(User)
        .values(
            id=user_id,
            email=jwt_claims.get("email"),
            onboarding_completed=bool(metadata.get("onboarding_completed", False)),
            is_admin=False,
        )
        .on_conflict_do_nothing(index_elements=["id"])
    )
    await session.execute(stmt)
    await session.commit()

    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one()
