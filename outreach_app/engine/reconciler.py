"""
End-to-end reconciliation of one intake event.

Order of operations for a contact event:

1. derive the match key and claim its identity leases;
2. check whether the source intake record is already back-linked to a
   Person; a linked record is a redelivery and only gets a refresh, once
   its phone and email are confirmed to match no other Person;
3. match, merge, and persist the Person;
4. back-link the intake record;
5. run attendance and follow-up assignment side effects;
6. release the leases (always, including on failure).

Conflicts end in a ``flagged`` outcome and a review flag. Exhausted retries,
deadline expiry and lock timeouts end in a ``failed`` outcome. Both trigger
an admin alert, and neither raises to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Literal, Mapping

from outreach_app.metrics import record_reconcile_outcome
from outreach_app.models import ReviewFlagReason
from outreach_app.store import (
    Deadline,
    DeadlineExceeded,
    RecordNotFound,
    RecordStoreClient,
    StoreRequestError,
    TerminalStoreError,
    deadline_scope,
)
from outreach_app.store.tables import INTAKE_TABLES, LINKED_MEMBER, MEMBERS, MemberFields
from outreach_app.utils.notifications import send_admin_alert

from .assignment import AssignmentBalancer, AssignmentDecision
from .contracts import IntakeChannel, IntakeEvent
from .identity import IdentityMatcher
from .locks import IdentityLockManager, LockTimeout
from .merge_policy import MergeDecision, MergePolicy
from .records import Person
from .review_service import ReviewQueueService
from .side_effects import AssignmentRepairWriter, AttendanceWriter, ProgramCompletionWriter

logger = logging.getLogger(__name__)

ReconcileStatus = Literal["created", "updated", "refreshed", "unchanged", "flagged", "failed"]

_FAILURES = (TerminalStoreError, StoreRequestError, DeadlineExceeded, LockTimeout)


@dataclass
class ReconciliationOutcome:
    status: ReconcileStatus
    channel: str
    source_record_id: str
    person_id: str | None = None
    actions: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    review_flag_id: int | None = None
    error: str | None = None
    error_type: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "channel": self.channel,
            "source_record_id": self.source_record_id,
            "person_id": self.person_id,
            "actions": list(self.actions),
            "warnings": list(self.warnings),
            "review_flag_id": self.review_flag_id,
            "error": self.error,
            "error_type": self.error_type,
        }


class Reconciler:
    def __init__(
        self,
        store: RecordStoreClient,
        *,
        locks: IdentityLockManager,
        balancer: AssignmentBalancer,
        policy: MergePolicy | None = None,
        matcher: IdentityMatcher | None = None,
        attendance: AttendanceWriter | None = None,
        programs: ProgramCompletionWriter | None = None,
        repair: AssignmentRepairWriter | None = None,
        review_queue: ReviewQueueService | None = None,
        deadline_seconds: float = 45.0,
        alert: Callable[[str, Mapping[str, Any]], Any] = send_admin_alert,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.locks = locks
        self.balancer = balancer
        self.policy = policy or MergePolicy()
        self.matcher = matcher or IdentityMatcher(store)
        self.attendance = attendance or AttendanceWriter(store)
        self.programs = programs or ProgramCompletionWriter(store)
        self.repair = repair or AssignmentRepairWriter(store)
        self.review_queue = review_queue
        self.deadline_seconds = deadline_seconds
        self.alert = alert
        self.clock = clock

    # Public API -----------------------------------------------------------------

    def reconcile(self, event: IntakeEvent) -> ReconciliationOutcome:
        started = self.clock()
        try:
            with deadline_scope(Deadline(self.deadline_seconds, clock=self.clock)):
                with self.locks.hold(event.lock_keys()):
                    outcome = self._reconcile_locked(event)
        except _FAILURES as exc:
            outcome = self._failed(event, exc)

        duration = self.clock() - started
        record_reconcile_outcome(channel=event.channel.value, status=outcome.status, duration_seconds=duration)
        logger.info(
            "Reconciliation finished: %s",
            outcome.status,
            extra={
                "reconcile_channel": event.channel.value,
                "reconcile_source_record_id": event.source_record_id,
                "reconcile_status": outcome.status,
                "reconcile_person_id": outcome.person_id,
                "reconcile_warnings": outcome.warnings,
                "reconcile_duration_seconds": round(duration, 3),
            },
        )
        return outcome

    # Flow -----------------------------------------------------------------------

    def _reconcile_locked(self, event: IntakeEvent) -> ReconciliationOutcome:
        if event.channel is IntakeChannel.PROGRAM_SESSION:
            return self._reconcile_program(event)

        linked_id = self._linked_member(event)
        if linked_id:
            person = self._load_person(linked_id)
            if person is not None:
                return self._refresh(event, person)
            logger.warning(
                "Intake record links to a missing Person; reconciling from scratch",
                extra={"reconcile_source_record_id": event.source_record_id, "reconcile_person_id": linked_id},
            )

        match = self.matcher.find(event.match_key)
        decision = self.policy.decide(event, match)
        if decision.action == "conflict":
            return self._flag(event, decision)

        outcome = ReconciliationOutcome(
            status="unchanged",
            channel=event.channel.value,
            source_record_id=event.source_record_id,
        )
        person = self._persist(decision, outcome)
        outcome.person_id = person.id
        self._back_link(event, person.id, outcome)

        self._record(outcome, self.attendance.upsert(person.id, event.service_id, event.channel.attendance_source).as_dict())
        if event.channel in (IntakeChannel.EVANGELISM, IntakeChannel.FIRST_TIMER):
            assignment = self.balancer.assign(
                person,
                event.channel,
                captured_by=event.captured_by,
                previous_status=decision.previous_status,
            )
            self._record_assignment(outcome, assignment)
        return outcome

    def _persist(self, decision: MergeDecision, outcome: ReconciliationOutcome) -> Person:
        if decision.action == "create":
            record = self.store.create_record(MEMBERS, decision.fields)
            outcome.status = "created"
            outcome.actions.append({"name": "person", "action": "created", "record_id": record.id})
            return Person.from_record(record)

        assert decision.person is not None
        if decision.action == "update":
            record = self.store.update_record(MEMBERS, decision.person.id, decision.fields)
            outcome.status = "updated"
            outcome.actions.append(
                {
                    "name": "person",
                    "action": "updated",
                    "record_id": record.id,
                    "fields": sorted(decision.fields),
                }
            )
            return Person.from_record(record)
        return decision.person

    def _refresh(self, event: IntakeEvent, person: Person) -> ReconciliationOutcome:
        """Redelivery of an already-linked intake record: idempotent steps only."""

        # The record may have been edited since it was linked; its identity must
        # still point at the linked Person and nobody else.
        match = self.matcher.find(event.match_key)
        if match.is_conflict or (match.person is not None and match.person.id != person.id):
            flagged = self._flag(
                event,
                MergeDecision(
                    action="conflict",
                    conflict_reason=ReviewFlagReason.AMBIGUOUS_MATCH,
                    candidate_ids=tuple(sorted({person.id, *match.candidate_ids})),
                ),
            )
            flagged.person_id = person.id
            return flagged

        outcome = ReconciliationOutcome(
            status="refreshed",
            channel=event.channel.value,
            source_record_id=event.source_record_id,
            person_id=person.id,
        )
        decision = self.policy.decide_update(event, person)
        if decision.action == "update":
            person = Person.from_record(self.store.update_record(MEMBERS, person.id, decision.fields))
            outcome.actions.append(
                {"name": "person", "action": "updated", "record_id": person.id, "fields": sorted(decision.fields)}
            )

        self._record(outcome, self.attendance.upsert(person.id, event.service_id, event.channel.attendance_source).as_dict())
        assignment: AssignmentDecision | None = None
        if event.channel is IntakeChannel.EVANGELISM:
            assignment = self.balancer.ensure_assigned(person, event.captured_by)
        elif event.channel is IntakeChannel.FIRST_TIMER:
            assignment = self.balancer.ensure_within_capacity(person)
        if assignment is not None:
            self._record_assignment(outcome, assignment)
            if assignment.action in ("assigned", "reassigned") and assignment.volunteer_id:
                person = replace(
                    person,
                    fields={**person.fields, MemberFields.FOLLOW_UP_OWNER: [assignment.volunteer_id]},
                )
        self._record(outcome, self.repair.repair(person).as_dict())
        return outcome

    def _reconcile_program(self, event: IntakeEvent) -> ReconciliationOutcome:
        assert event.member_id is not None and event.program is not None
        person = Person.from_record(self.store.get_record(MEMBERS, event.member_id))
        result = self.programs.propagate(person, event.program)
        outcome = ReconciliationOutcome(
            status="updated" if result.action == "updated" else "unchanged",
            channel=event.channel.value,
            source_record_id=event.source_record_id,
            person_id=person.id,
        )
        if result.warning:
            outcome.warnings.append(result.warning)
        self._record(outcome, result.as_dict())
        return outcome

    # Steps ----------------------------------------------------------------------

    def _linked_member(self, event: IntakeEvent) -> str | None:
        """Back-link from the payload snapshot, else from the intake record itself."""

        if event.linked_member_id:
            return event.linked_member_id
        table = INTAKE_TABLES[event.channel.value]
        try:
            source = self.store.get_record(table, event.source_record_id)
        except RecordNotFound:
            logger.warning(
                "Intake record not found in store; skipping back-link check",
                extra={"reconcile_channel": event.channel.value, "reconcile_source_record_id": event.source_record_id},
            )
            return None
        return source.link(LINKED_MEMBER)

    def _load_person(self, person_id: str) -> Person | None:
        try:
            return Person.from_record(self.store.get_record(MEMBERS, person_id))
        except RecordNotFound:
            return None

    def _back_link(self, event: IntakeEvent, person_id: str, outcome: ReconciliationOutcome) -> None:
        table = INTAKE_TABLES[event.channel.value]
        try:
            self.store.update_record(table, event.source_record_id, {LINKED_MEMBER: [person_id]})
        except RecordNotFound:
            outcome.warnings.append("source_record_missing")
            return
        outcome.actions.append({"name": "back_link", "action": "updated", "record_id": event.source_record_id})

    def _flag(self, event: IntakeEvent, decision: MergeDecision) -> ReconciliationOutcome:
        reason = decision.conflict_reason
        assert reason is not None
        outcome = ReconciliationOutcome(
            status="flagged",
            channel=event.channel.value,
            source_record_id=event.source_record_id,
            warnings=[reason.value],
        )
        created = True
        if self.review_queue is not None:
            flag, created = self.review_queue.flag(
                channel=event.channel.value,
                source_record_id=event.source_record_id,
                reason=reason,
                candidate_ids=decision.candidate_ids,
                contact=event.summary(),
            )
            outcome.review_flag_id = flag.id
        logger.warning(
            "Intake event flagged for manual review",
            extra={
                "reconcile_channel": event.channel.value,
                "reconcile_source_record_id": event.source_record_id,
                "reconcile_flag_reason": reason.value,
                "reconcile_candidate_ids": list(decision.candidate_ids),
            },
        )
        if created:
            self.alert(
                f"Manual review needed: {reason.value}",
                {**event.summary(), "reason": reason.value, "candidate_ids": list(decision.candidate_ids)},
            )
        return outcome

    def _failed(self, event: IntakeEvent, exc: BaseException) -> ReconciliationOutcome:
        context = {
            **event.summary(),
            "error_type": type(exc).__name__,
            "error": str(exc),
            "operation": getattr(exc, "operation", None),
            "last_error": str(getattr(exc, "last_error", "") or ""),
        }
        logger.error(
            "Reconciliation failed",
            exc_info=exc,
            extra={f"reconcile_{key}": value for key, value in context.items()},
        )
        self.alert(f"Reconciliation failed: {type(exc).__name__}", context)
        return ReconciliationOutcome(
            status="failed",
            channel=event.channel.value,
            source_record_id=event.source_record_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    @staticmethod
    def _record(outcome: ReconciliationOutcome, action: dict[str, Any]) -> None:
        if action.get("action") != "skipped":
            outcome.actions.append(action)

    @staticmethod
    def _record_assignment(outcome: ReconciliationOutcome, decision: AssignmentDecision) -> None:
        if decision.warning:
            outcome.warnings.append(decision.warning)
        if decision.action in ("assigned", "reassigned"):
            outcome.actions.append({"name": "assignment", **decision.as_dict()})
