"""
ORM models for the decision engine's storage.

All timestamps are stored in UTC. Money columns hold integer cents;
the Decimal-valued properties are the presentation boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .money import from_cents, mean_of_cents
from .offers import ALL_SEGMENTS, FlowStep


def utc_now() -> datetime:
    """Return current UTC time for consistent database storage"""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Stores UTC timestamps.
    - Postgres: stores timezone-aware UTC datetimes
    - SQLite: stores naive UTC datetimes (no tz support), returns aware UTC on read
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None

        # Treat naive as UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)

        value = value.astimezone(timezone.utc)

        if dialect.name in ("sqlite", "mysql"):
            return value.replace(tzinfo=None)

        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None

        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)

        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    plan: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    region: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    churn_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    subscription: Mapped[Optional["Subscription"]] = relationship(
        back_populates="user", uselist=False
    )

    def __repr__(self) -> str:
        return f"<User {self.id} external_id={self.external_id!r}>"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, index=True)
    billing_ref: Mapped[Optional[str]] = mapped_column(String(255), default=None, index=True)
    value_cents: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    status: Mapped[str] = mapped_column(String(50), default="active", nullable=False)
    cancel_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    user: Mapped[User] = relationship(back_populates="subscription")

    @property
    def value(self) -> Optional[Decimal]:
        """Monthly value as a two-place Decimal."""
        return from_cents(self.value_cents)


class Flow(Base):
    __tablename__ = "flows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    ranking_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_flows_language_score", "language", "ranking_score"),
    )

    @property
    def step_objects(self) -> list[FlowStep]:
        return [FlowStep.from_dict(raw) for raw in self.steps or []]

    @property
    def is_active(self) -> bool:
        return self.ranking_score > 0


class OfferEvent(Base):
    """Append-only record of a shown offer or a cancel attempt."""

    __tablename__ = "offer_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    flow_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("flows.id", ondelete="SET NULL"), index=True
    )
    offer_type: Mapped[str] = mapped_column(String(50), nullable=False)
    accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revenue_saved_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    message_template: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, index=True)

    @property
    def revenue_saved(self) -> Decimal:
        return from_cents(self.revenue_saved_cents)


class ChurnReason(Base):
    __tablename__ = "churn_reasons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    flow_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("flows.id", ondelete="SET NULL"), default=None
    )
    reason_code: Mapped[str] = mapped_column(String(50), nullable=False)
    reason_text: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class OfferPerformance(Base):
    """Rolling acceptance aggregate per (offer type, segment)."""

    __tablename__ = "offer_performance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    offer_type: Mapped[str] = mapped_column(String(50), nullable=False)
    segment: Mapped[str] = mapped_column(String(50), nullable=False, default=ALL_SEGMENTS)
    total_shown: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_accepted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    acceptance_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    revenue_saved_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("offer_type", "segment", name="uq_offer_performance_type_segment"),
    )

    @property
    def avg_revenue_saved(self) -> Decimal:
        """Mean revenue saved per acceptance."""
        return mean_of_cents(self.revenue_saved_cents, self.total_accepted)


class MessagePerformance(Base):
    __tablename__ = "message_performance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    offer_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message_template: Mapped[str] = mapped_column(String(255), nullable=False)
    total_shown: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_accepted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    acceptance_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("offer_type", "message_template", name="uq_message_performance_type_template"),
    )


class AIWeight(Base):
    """Named churn scoring coefficient."""

    __tablename__ = "ai_weights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    weight_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    weight_value: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)
