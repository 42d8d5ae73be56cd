from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes that come back aware even on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere so tests can run on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    # Merchants paying for the platform; drives plan limits and usage notices.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_name: Mapped[str] = mapped_column(String, default="solopreneur")
    # trial or active; trials without a payment method get trial limits.
    billing_status: Mapped[str] = mapped_column(String, default="trial")
    payment_secured: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Purchased allotment override; null derives the allotment from the plan.
    monthly_allotment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class AutomationPolicy(Base):
    __tablename__ = "automation_policies"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    intent_type: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enable_auto_approval: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # When false, approvals are recorded and announced but no mutation is executed.
    enable_auto_action: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_approval_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_follow_ups: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    require_reason: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    require_evidence_for_damaged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    idle_timeout_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    missing_order_decision: Mapped[str] = mapped_column(String, default="deny")
    refund_type: Mapped[str | None] = mapped_column(String, nullable=True)
    refund_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    refund_cap: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    min_order_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_order_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    return_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "thread_id", name="uq_conversations_thread"),
        Index("ix_conversations_state_activity", "state", "last_activity_at"),
    )

    # Derived from (tenant_id, thread_id) so redelivered first messages resolve to the same row.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    thread_id: Mapped[str] = mapped_column(String)
    customer_email: Mapped[str] = mapped_column(String)
    originating_message_id: Mapped[str] = mapped_column(String)
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    intent_type: Mapped[str] = mapped_column(String)
    intent_confidence: Mapped[int] = mapped_column(Integer, default=0)
    # Closed set enforced by ConversationState; stored as text for migration safety.
    state: Mapped[str] = mapped_column(String)
    missing_fields: Mapped[list[str]] = mapped_column(JSONType, default=list)
    collected_fields: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    follow_up_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_follow_ups: Mapped[int] = mapped_column(Integer, nullable=False)
    order_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # none, pending, succeeded or failed; failed actions wait for a human instead of an automatic retry.
    action_status: Mapped[str] = mapped_column(String, default="none", nullable=False)
    action_retryable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    action_external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_rule: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime)


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "service", name="uq_usage_records_scope"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    service: Mapped[str] = mapped_column(String)
    daily_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_window_start: Mapped[datetime] = mapped_column(UTCDateTime)
    monthly_window_start: Mapped[datetime] = mapped_column(UTCDateTime)
    # Sticky until an admin reset; counters alone decide whether calls are blocked.
    limit_exceeded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    limit_exceeded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Notice flags are sticky per window; the *_period column names the window that raised them.
    warning_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    warning_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    warning_period: Mapped[str | None] = mapped_column(String, nullable=True)
    cutoff_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cutoff_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cutoff_period: Mapped[str | None] = mapped_column(String, nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class NotificationDispatch(Base):
    __tablename__ = "notification_dispatches"

    # One row per logical notification event; the key is the idempotency boundary.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    dispatch_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    template_tag: Mapped[str] = mapped_column(String)
    recipient: Mapped[str] = mapped_column(String)
    # claimed, sent or failed; only sent blocks future sends permanently.
    status: Mapped[str] = mapped_column(String)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class ActivityLog(Base):
    __tablename__ = "activity_log"

    # Append-only; one row per state transition, executed action and notable decision.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    # ai, system or human.
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
