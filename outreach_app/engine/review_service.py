"""
Service layer for the manual review queue.

Conflicts (ambiguous identity matches, returners with no existing Person) are
never merged automatically; they land here for an administrator to resolve,
either by hand in the store or with a duplicate merge from the CLI.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import NoResultFound

from outreach_app.models import ReviewFlag, ReviewFlagReason, ReviewFlagStatus, db


class ReviewQueueService:
    """Facade for recording and resolving review flags."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    def _find(self, channel: str, source_record_id: str, reason: ReviewFlagReason) -> ReviewFlag | None:
        return (
            self.session.query(ReviewFlag)
            .filter(
                ReviewFlag.channel == channel,
                ReviewFlag.source_record_id == source_record_id,
                ReviewFlag.reason == reason,
            )
            .one_or_none()
        )

    def flag(
        self,
        *,
        channel: str,
        source_record_id: str,
        reason: ReviewFlagReason,
        candidate_ids: Sequence[str] = (),
        contact: Mapping[str, Any] | None = None,
    ) -> tuple[ReviewFlag, bool]:
        """
        Record a flag for an intake record; replays return the existing flag.

        Returns:
            (flag, created) where ``created`` is False for a replay.
        """

        existing = self._find(channel, source_record_id, reason)
        if existing is not None:
            return existing, False

        flag = ReviewFlag(
            channel=channel,
            source_record_id=source_record_id,
            reason=reason,
            status=ReviewFlagStatus.PENDING,
            candidate_ids_json=list(candidate_ids),
            contact_json=dict(contact or {}),
        )
        self.session.add(flag)
        try:
            self.session.commit()
        except IntegrityError:
            # Another worker flagged the same record between our read and write.
            self.session.rollback()
            existing = self._find(channel, source_record_id, reason)
            if existing is None:
                raise
            return existing, False
        return flag, True

    def list_flags(self, *, status: ReviewFlagStatus | None = ReviewFlagStatus.PENDING, limit: int = 50) -> Sequence[ReviewFlag]:
        query = self.session.query(ReviewFlag)
        if status is not None:
            query = query.filter(ReviewFlag.status == status)
        return query.order_by(ReviewFlag.created_at.asc(), ReviewFlag.id.asc()).limit(limit).all()

    def pending_count(self) -> int:
        return self.session.query(ReviewFlag).filter(ReviewFlag.status == ReviewFlagStatus.PENDING).count()

    def get_flag(self, flag_id: int) -> ReviewFlag | None:
        return self.session.get(ReviewFlag, flag_id)

    def resolve(self, flag_id: int, *, note: str | None = None, dismiss: bool = False) -> ReviewFlag:
        flag = self.get_flag(flag_id)
        if flag is None:
            raise NoResultFound(f"Review flag {flag_id} not found.")
        flag.status = ReviewFlagStatus.DISMISSED if dismiss else ReviewFlagStatus.RESOLVED
        flag.resolution_note = note
        flag.resolved_at = datetime.now(timezone.utc)
        self.session.commit()
        return flag
