# taxflow/models/jobs.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, Integer, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from taxflow.db import Base, UTCDateTime, utcnow

# Job states
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"      # dead letter
IGNORED = "ignored"

JOB_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, IGNORED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, IGNORED})


def _new_id() -> str:
    return str(uuid.uuid4())


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    source: Mapped[str] = mapped_column(String(64), index=True)         # e.g. "zoho", "regulatory-authority"
    kind: Mapped[str] = mapped_column(String(128))                      # event type / submission type
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    raw_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    headers: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(32), default=PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_eligible_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    business_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    integration_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    delivery_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    # Handler output (authority reference numbers, responses, structured rejections)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    validation_errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_jobs_claim", "status", "priority", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.source}/{self.kind} {self.status} {self.attempts}/{self.max_attempts}>"


class ProcessedDelivery(Base):
    """Handler-side idempotency ledger: one row per (source, delivery_key) whose side effects ran."""
    __tablename__ = "processed_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(64))
    delivery_key: Mapped[str] = mapped_column(String(128))
    job_id: Mapped[str] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source", "delivery_key", name="uq_processed_source_key"),
    )
