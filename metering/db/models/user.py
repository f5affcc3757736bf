"""User model: identity row owned by the auth provider, provisioned on first login."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, String

from metering.db.base import Base


class User(Base):
    __tablename__ = "users"

    # Clerk user id (opaque, trusted from the auth provider)
    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True)

    # Stripe
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)

    # Flags
    onboarding_completed = Column(Boolean, nullable=False, default=False)
    is_admin = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
