"""Usage counter store: month-keyed rows with atomic increments.

All writes go through a single ``INSERT ... ON CONFLICT DO UPDATE`` statement
that adds a delta to the stored value, so concurrent increments for the same
(user, month) never lose updates.
"""

from datetime import UTC, datetime

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering.db.base import get_session_factory
from metering.db.models.usage_counter import UsageCounter
from metering.plans.limits import ResourceKind

logger = structlog.get_logger(__name__)


def current_month(now: datetime | None = None) -> str:
    """Return the calendar month key ("YYYY-MM") in UTC."""
    now = now or datetime.now(UTC)
    if now.tzinfo is not None:
        now = now.astimezone(UTC)
    return f"{now.year:04d}-{now.month:02d}"


class UsageSnapshot(BaseModel):
    """Counters for one (user, month); zeros when no row exists yet."""

    user_id: str
    month: str
    basic_interactions: int = 0
    premium_interactions: int = 0
    memories_added: int = 0
    memories_searched: int = 0
    voice_chats: int = 0
    videos_generated: int = 0
    updated_at: datetime | None = None

    def count(self, resource: ResourceKind) -> int:
        return getattr(self, resource.value)

    @classmethod
    def from_row(cls, row) -> "UsageSnapshot":
        return cls(
            user_id=row["user_id"],
            month=row["month"],
            updated_at=row.get("updated_at"),
            **{r.value: row.get(r.value) or 0 for r in ResourceKind},
        )


def build_increment_statement(
    user_id: str,
    resource: ResourceKind,
    amount: int = 1,
    now: datetime | None = None,
):
    """Build the single-statement atomic upsert for one counter."""
    now = now or datetime.now(UTC)
    column = resource.value
    table = UsageCounter.__table__

    stmt = insert(table).values(
        user_id=user_id,
        month=current_month(now),
        created_at=now,
        updated_at=now,
        **{column: amount},
    )
    return stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.month],
        set_={
            column: table.c[column] + stmt.excluded[column],
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(*table.c)


class UsageStore:
    """Reads and atomic writes for the usage_counters table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get_usage(self, user_id: str, month: str | None = None) -> UsageSnapshot:
        month = month or current_month()
        async with self._factory()() as session:
            result = await session.execute(
                select(UsageCounter.__table__).where(
                    UsageCounter.user_id == user_id,
                    UsageCounter.month == month,
                )
            )
            row = result.mappings().one_or_none()

        if row is None:
            return UsageSnapshot(user_id=user_id, month=month)
        return UsageSnapshot.from_row(row)

    async def increment(
        self,
        user_id: str,
        resource: ResourceKind,
        amount: int = 1,
        now: datetime | None = None,
    ) -> UsageSnapshot:
        """Atomically add ``amount`` to one counter of the current month.

        Raises:
            ValueError: If amount is not positive (counters never decrease)
        """
        if amount <= 0:
            raise ValueError("Usage increments must be positive")

        stmt = build_increment_statement(user_id, resource, amount, now)
        async with self._factory()() as session:
            result = await session.execute(stmt)
            row = result.mappings().one()
            await session.commit()

        snapshot = UsageSnapshot.from_row(row)
        logger.debug(
            "usage_incremented",
            user_id=user_id,
            resource=resource.value,
            amount=amount,
            month=snapshot.month,
            value=snapshot.count(resource),
        )
        return snapshot

    async def history(self, user_id: str, limit: int = 12) -> list[UsageSnapshot]:
        """Retained month rows for a user, newest first."""
        async with self._factory()() as session:
            result = await session.execute(
                select(UsageCounter.__table__)
                .where(UsageCounter.user_id == user_id)
                .order_by(UsageCounter.month.desc())
                .limit(limit)
            )
            rows = result.mappings().all()

        return [UsageSnapshot.from_row(row) for row in rows]
