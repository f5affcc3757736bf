"""UsageCounter model: one row per (user, calendar month), counters only grow."""

from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String

from metering.db.base import Base


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (
        CheckConstraint("basic_interactions >= 0", name="ck_usage_basic_nonneg"),
        CheckConstraint("premium_interactions >= 0", name="ck_usage_premium_nonneg"),
        CheckConstraint("memories_added >= 0", name="ck_usage_mem_added_nonneg"),
        CheckConstraint("memories_searched >= 0", name="ck_usage_mem_searched_nonneg"),
        CheckConstraint("voice_chats >= 0", name="ck_usage_voice_nonneg"),
        CheckConstraint("videos_generated >= 0", name="ck_usage_videos_nonneg"),
    )

    user_id = Column(String(255), ForeignKey("users.id"), primary_key=True)
    month = Column(String(7), primary_key=True)  # YYYY-MM

    basic_interactions = Column(Integer, nullable=False, default=0, server_default="0")
    premium_interactions = Column(Integer, nullable=False, default=0, server_default="0")
    memories_added = Column(Integer, nullable=False, default=0, server_default="0")
    memories_searched = Column(Integer, nullable=False, default=0, server_default="0")
    voice_chats = Column(Integer, nullable=False, default=0, server_default="0")
    videos_generated = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
