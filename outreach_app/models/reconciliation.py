"""
SQLAlchemy models for reconciliation bookkeeping.

Person, assignment and attendance data live in the remote record store; these
local tables only track intake runs, the manual review queue and identity
leases used to serialize reconciliations per match key.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class ReconciliationRunStatus(str, enum.Enum):
    """Lifecycle states for one intake event's reconciliation."""

    PENDING = "pending"
    RUNNING = "running"
    CREATED = "created"
    UPDATED = "updated"
    REFRESHED = "refreshed"
    UNCHANGED = "unchanged"
    FLAGGED = "flagged"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in {ReconciliationRunStatus.PENDING, ReconciliationRunStatus.RUNNING}


class ReconciliationRun(BaseModel):
    """One accepted intake event and the outcome of reconciling it."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    channel: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    source_record_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    status: Mapped[ReconciliationRunStatus] = mapped_column(
        Enum(ReconciliationRunStatus, name="reconciliation_run_status_enum"),
        nullable=False,
        default=ReconciliationRunStatus.PENDING,
        index=True,
    )
    payload_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    outcome_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    person_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    task_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<ReconciliationRun id={self.id} channel={self.channel} status={self.status}>"


class ReviewFlagReason(str, enum.Enum):
    AMBIGUOUS_MATCH = "ambiguous_match"
    RETURNER_WITHOUT_MATCH = "returner_without_match"


class ReviewFlagStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ReviewFlag(BaseModel):
    """Manual review queue entry for events the engine refused to merge."""

    __tablename__ = "review_flags"
    __table_args__ = (
        UniqueConstraint("channel", "source_record_id", "reason", name="uq_review_flag_source_reason"),
        Index("ix_review_flags_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    channel: Mapped[str] = mapped_column(db.String(32), nullable=False)
    source_record_id: Mapped[str] = mapped_column(db.String(64), nullable=False)
    reason: Mapped[ReviewFlagReason] = mapped_column(
        Enum(ReviewFlagReason, name="review_flag_reason_enum"),
        nullable=False,
    )
    status: Mapped[ReviewFlagStatus] = mapped_column(
        Enum(ReviewFlagStatus, name="review_flag_status_enum"),
        nullable=False,
        default=ReviewFlagStatus.PENDING,
    )
    candidate_ids_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    contact_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<ReviewFlag id={self.id} reason={self.reason} status={self.status}>"


class IdentityLease(BaseModel):
    """Exclusive, expiring claim on a match key."""

    __tablename__ = "identity_leases"

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(db.String(320), nullable=False, unique=True)
    owner_token: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    acquired_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<IdentityLease key={self.key} expires_at={self.expires_at}>"
