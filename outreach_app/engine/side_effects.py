"""
Dependent-record writers run after a Person is persisted.

The store has no compound unique constraints and no transactions, so every
writer here is a look-then-write that is safe to run again after a partial
failure or a webhook redelivery.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from outreach_app.store import RecordNotFound, RecordStoreClient
from outreach_app.store.formula import LinkContains, all_of
from outreach_app.store.tables import (
    ATTENDANCE,
    FOLLOW_UP_ASSIGNMENTS,
    MEMBERS,
    PROGRAMS,
    AssignmentFields,
    AttendanceFields,
    MemberFields,
    ProgramCatalogFields,
)

from .assignment import fetch_current_assignments
from .contracts import ProgramProgress
from .records import AssignmentStatus, AttendanceSource, Person

logger = logging.getLogger(__name__)

WriteAction = Literal["created", "updated", "unchanged", "skipped"]

PROGRAM_NAME_UNKNOWN = "program_name_unknown"


@dataclass(frozen=True)
class SideEffectResult:
    name: str
    action: WriteAction
    record_id: str | None = None
    detail: str | None = None
    warning: str | None = None

    def as_dict(self) -> dict:
        return {"name": self.name, "action": self.action, "record_id": self.record_id, "detail": self.detail}


class AttendanceWriter:
    """Idempotent upsert of the (Person, Service) attendance record."""

    name = "attendance"

    def __init__(self, store: RecordStoreClient):
        self.store = store

    def upsert(self, person_id: str, service_id: str | None, source: AttendanceSource | None) -> SideEffectResult:
        if not service_id or source is None:
            return SideEffectResult(self.name, "skipped", detail="no service")

        existing = self.store.find_first(
            ATTENDANCE,
            all_of(
                LinkContains(AttendanceFields.MEMBER, person_id),
                LinkContains(AttendanceFields.SERVICE, service_id),
            ),
        )
        if existing is not None:
            # Never downgrade to absent here; only mark present when needed.
            if existing.get(AttendanceFields.PRESENT):
                return SideEffectResult(self.name, "unchanged", record_id=existing.id)
            self.store.update_record(ATTENDANCE, existing.id, {AttendanceFields.PRESENT: True})
            return SideEffectResult(self.name, "updated", record_id=existing.id)

        created = self.store.create_record(
            ATTENDANCE,
            {
                AttendanceFields.MEMBER: [person_id],
                AttendanceFields.SERVICE: [service_id],
                AttendanceFields.PRESENT: True,
                AttendanceFields.SOURCE_FORM: source.value,
            },
        )
        return SideEffectResult(self.name, "created", record_id=created.id)


class ProgramCompletionWriter:
    """Propagate New Believers completion to the Person's Membership Completed date."""

    name = "program_completion"

    def __init__(self, store: RecordStoreClient, *, program_name: str = "New Believers"):
        self.store = store
        self.program_name = program_name

    def resolve_name(self, progress: ProgramProgress) -> str | None:
        """Name from the ``Program Name`` lookup, else read from the linked Programs record."""

        if progress.program_name:
            return progress.program_name
        if not progress.program_id:
            return None
        try:
            record = self.store.get_record(PROGRAMS, progress.program_id)
        except RecordNotFound:
            return None
        name = str(record.get(ProgramCatalogFields.NAME, "")).strip()
        return name or None

    def applies_to(self, program_name: str | None) -> bool:
        return (program_name or "").strip().lower() == self.program_name.strip().lower()

    def propagate(self, person: Person, progress: ProgramProgress) -> SideEffectResult:
        if not progress.all_completed:
            return SideEffectResult(self.name, "skipped", detail="sessions incomplete")
        program_name = self.resolve_name(progress)
        if program_name is None:
            logger.warning(
                "Program name could not be determined; completion not propagated",
                extra={"reconcile_person_id": person.id, "reconcile_program_id": progress.program_id},
            )
            return SideEffectResult(self.name, "skipped", detail="program name unknown", warning=PROGRAM_NAME_UNKNOWN)
        if not self.applies_to(program_name):
            return SideEffectResult(self.name, "skipped", detail=f"program {program_name!r}")
        completion_date = progress.completion_date
        if not completion_date:
            return SideEffectResult(self.name, "skipped", detail="no session dates")
        if person.fields.get(MemberFields.MEMBERSHIP_COMPLETED):
            return SideEffectResult(self.name, "unchanged", record_id=person.id)

        self.store.update_record(MEMBERS, person.id, {MemberFields.MEMBERSHIP_COMPLETED: completion_date})
        logger.info(
            "Membership completed",
            extra={"reconcile_person_id": person.id, "reconcile_completion_date": completion_date},
        )
        return SideEffectResult(self.name, "updated", record_id=person.id, detail=completion_date)


class AssignmentRepairWriter:
    """Keep exactly one current assignment per Person and sync Follow-up Owner to it."""

    name = "assignment_repair"

    def __init__(self, store: RecordStoreClient):
        self.store = store

    def repair(self, person: Person) -> SideEffectResult:
        current = fetch_current_assignments(self.store, person.id)
        if not current:
            return SideEffectResult(self.name, "skipped", detail="no current assignment")

        latest, stale = current[0], current[1:]
        if stale:
            self.store.batch_update(
                FOLLOW_UP_ASSIGNMENTS,
                [(item.id, {AssignmentFields.STATUS: AssignmentStatus.REASSIGNED.value}) for item in stale],
            )
            logger.warning(
                "Closed duplicate current assignments",
                extra={"reconcile_person_id": person.id, "reconcile_assignment_ids": [item.id for item in stale]},
            )

        owner_changed = latest.volunteer_id and latest.volunteer_id != person.follow_up_owner
        if owner_changed:
            self.store.update_record(MEMBERS, person.id, {MemberFields.FOLLOW_UP_OWNER: [latest.volunteer_id]})

        if stale or owner_changed:
            return SideEffectResult(self.name, "updated", record_id=latest.id)
        return SideEffectResult(self.name, "unchanged", record_id=latest.id)
