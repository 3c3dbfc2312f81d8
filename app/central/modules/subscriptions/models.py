from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.central.models import Base, User
from app.central.utils import JSONType, isoformat


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "pro"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    interval: Mapped[str] = mapped_column(String(16), nullable=False, default="month")  # month | year

    # Feature flag keys unlocked by this plan
    features: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)
    external_price_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def is_free(self) -> bool:
        return (self.price_cents or 0) == 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "interval": self.interval,
            "features": list(self.features or []),
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("idx_subscriptions_user", "user_id"),
        Index("idx_subscriptions_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id: Mapped[int] = mapped_column(ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")

    external_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    plan: Mapped[SubscriptionPlan] = relationship(lazy="joined")
    user: Mapped[User] = relationship(lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.user.username if self.user else None,
            "plan_key": self.plan.key if self.plan else None,
            "status": self.status,
            "external_subscription_id": self.external_subscription_id,
            "current_period_end": isoformat(self.current_period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
