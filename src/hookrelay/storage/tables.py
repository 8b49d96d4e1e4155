"""Table definitions for hookrelay storage.

SQLAlchemy Core tables (no ORM mapping): every state transition is an
explicit statement so claim and attempt bookkeeping never depend on
session flush ordering.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetimes on every backend.

    SQLite stores naive values; they are written as UTC and tagged as UTC
    on the way back out.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


metadata = MetaData()

endpoints = Table(
    "hookrelay_endpoints",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("url", Text, nullable=False),
    Column("secret", String(255), nullable=False),
    Column("event_filter", JSON, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("description", Text, nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Column("secret_rotated_at", UTCDateTime(), nullable=True),
    Column("consecutive_failures", Integer, nullable=False, default=0),
)

deliveries = Table(
    "hookrelay_deliveries",
    metadata,
    Column("id", String(64), primary_key=True),
    Column(
        "endpoint_id",
        String(64),
        ForeignKey("hookrelay_endpoints.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("owner_id", String(255), nullable=False),
    Column("event_id", String(64), nullable=False, index=True),
    Column("event_type", String(255), nullable=False),
    Column("payload", JSON, nullable=True),
    Column("secret_used", String(255), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False),
    Column("state", String(16), nullable=False),
    Column("response_code", Integer, nullable=True),
    Column("response_body", Text, nullable=True),
    Column("error", Text, nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("last_attempt_at", UTCDateTime(), nullable=True),
    Column("delivered_at", UTCDateTime(), nullable=True),
    Column("next_retry_at", UTCDateTime(), nullable=False),
    Column("claim_token", String(64), nullable=True),
    Column("claimed_until", UTCDateTime(), nullable=True),
    Column("redelivery_of", String(64), nullable=True),
    Index("ix_hookrelay_deliveries_due", "state", "next_retry_at"),
    Index("ix_hookrelay_deliveries_endpoint", "endpoint_id", "created_at"),
)
