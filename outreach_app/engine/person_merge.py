"""
Administrator-driven merge of a duplicate Person into a canonical one.

This is how ambiguous-match review flags get settled. The merge fills empty
fields on the target (keeping the earliest Date First Captured), moves every
record that references the duplicate over to the target, and deletes the
duplicate last. Each step looks before it writes, so a merge that fails part
way is finished by running it again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from outreach_app.store import RecordNotFound, RecordStoreClient
from outreach_app.store.formula import LinkContains, all_of
from outreach_app.store.tables import (
    ATTENDANCE,
    EVANGELISM,
    FIRST_TIMERS,
    FOLLOW_UP_ASSIGNMENTS,
    LINKED_MEMBER,
    MEMBER_PROGRAMS,
    MEMBERS,
    RETURNERS,
    AssignmentFields,
    AttendanceFields,
    MemberFields,
    ProgramFields,
)

from .identity import MatchKey
from .locks import IdentityLockManager
from .merge_policy import MergePolicy
from .records import Person
from .side_effects import AssignmentRepairWriter

logger = logging.getLogger(__name__)

# (table, linked-record field) pairs repointed from the duplicate to the target.
RELINKED_FIELDS: tuple[tuple[str, str], ...] = (
    (FOLLOW_UP_ASSIGNMENTS, AssignmentFields.MEMBER),
    (MEMBER_PROGRAMS, ProgramFields.MEMBER),
    (EVANGELISM, LINKED_MEMBER),
    (FIRST_TIMERS, LINKED_MEMBER),
    (RETURNERS, LINKED_MEMBER),
)


class PersonMergeError(ValueError):
    """The requested merge cannot be carried out."""


@dataclass(frozen=True)
class PersonMergeResult:
    source_id: str
    target_id: str
    fields: tuple[str, ...] = ()
    relinked: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    attendance_folded: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "fields": list(self.fields),
            "relinked": {table: list(ids) for table, ids in self.relinked.items()},
            "attendance_folded": list(self.attendance_folded),
        }


def _swap_link(value: object | None, old: str, new: str) -> list[str]:
    links = value if isinstance(value, (list, tuple)) else [value] if value else []
    swapped: list[str] = []
    for link in links:
        link = new if link == old else str(link)
        if link not in swapped:
            swapped.append(link)
    return swapped


def _identity_keys(person: Person) -> tuple[str, ...]:
    key = MatchKey.from_contact(person.fields.get(MemberFields.PHONE), person.fields.get(MemberFields.EMAIL))
    return key.lock_keys()


class PersonMerger:
    def __init__(
        self,
        store: RecordStoreClient,
        *,
        locks: IdentityLockManager,
        policy: MergePolicy | None = None,
        repair: AssignmentRepairWriter | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.policy = policy or MergePolicy()
        self.repair = repair or AssignmentRepairWriter(store)

    def merge(self, source_id: str, target_id: str) -> PersonMergeResult:
        """Fold ``source_id`` into ``target_id`` and delete the source Person."""

        if source_id == target_id:
            raise PersonMergeError("Cannot merge a Person into itself.")
        source = self._load(source_id)
        target = self._load(target_id)

        # Both identities are locked so no intake event can match either Person mid-merge.
        keys = {*_identity_keys(source), *_identity_keys(target), f"member:{source_id}", f"member:{target_id}"}
        with self.locks.hold(sorted(keys)):
            return self._merge_locked(source, target)

    def _merge_locked(self, source: Person, target: Person) -> PersonMergeResult:
        changes = self.policy.merge_person(target, source)
        if changes:
            target = Person.from_record(self.store.update_record(MEMBERS, target.id, changes))

        moved, folded = self._fold_attendance(source.id, target.id)
        relinked: dict[str, tuple[str, ...]] = {ATTENDANCE: moved} if moved else {}
        for table, field_name in RELINKED_FIELDS:
            ids = self._relink(table, field_name, source.id, target.id)
            if ids:
                relinked[table] = ids

        self.repair.repair(target)
        self.store.delete_record(MEMBERS, source.id)

        logger.info(
            "Merged duplicate Person",
            extra={
                "reconcile_person_id": target.id,
                "reconcile_merged_person_id": source.id,
                "reconcile_merged_fields": sorted(changes),
                "reconcile_relinked": {table: len(ids) for table, ids in relinked.items()},
            },
        )
        return PersonMergeResult(
            source_id=source.id,
            target_id=target.id,
            fields=tuple(sorted(changes)),
            relinked=relinked,
            attendance_folded=folded,
        )

    def _load(self, person_id: str) -> Person:
        try:
            return Person.from_record(self.store.get_record(MEMBERS, person_id))
        except RecordNotFound as exc:
            raise PersonMergeError(f"Person {person_id} not found.") from exc

    def _relink(self, table: str, field_name: str, source_id: str, target_id: str) -> tuple[str, ...]:
        records = self.store.list_records(table, formula=LinkContains(field_name, source_id))
        if not records:
            return ()
        self.store.batch_update(
            table,
            [(record.id, {field_name: _swap_link(record.fields.get(field_name), source_id, target_id)}) for record in records],
        )
        return tuple(record.id for record in records)

    def _fold_attendance(self, source_id: str, target_id: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """
        Move the source's attendance to the target.

        A service both Persons attended keeps the target's row; the source row
        is deleted after carrying its ``Present?`` flag over.
        """

        moved: list[tuple[str, Mapping[str, Any]]] = []
        folded: list[str] = []
        for row in self.store.list_records(ATTENDANCE, formula=LinkContains(AttendanceFields.MEMBER, source_id)):
            service_id = row.link(AttendanceFields.SERVICE)
            existing = None
            if service_id:
                existing = self.store.find_first(
                    ATTENDANCE,
                    all_of(
                        LinkContains(AttendanceFields.MEMBER, target_id),
                        LinkContains(AttendanceFields.SERVICE, service_id),
                    ),
                )
            if existing is None:
                moved.append((row.id, {AttendanceFields.MEMBER: _swap_link(row.fields.get(AttendanceFields.MEMBER), source_id, target_id)}))
                continue
            if row.get(AttendanceFields.PRESENT) and not existing.get(AttendanceFields.PRESENT):
                self.store.update_record(ATTENDANCE, existing.id, {AttendanceFields.PRESENT: True})
            self.store.delete_record(ATTENDANCE, row.id)
            folded.append(row.id)
        if moved:
            self.store.batch_update(ATTENDANCE, moved)
        return tuple(record_id for record_id, _ in moved), tuple(folded)
