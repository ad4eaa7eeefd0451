"""
Follow-up assignment under volunteer capacity constraints.

Volunteer load is always computed from the Follow-up Assignments table at
decision time; nothing caches it. Load is the number of distinct Persons the
volunteer holds an Assigned or In Progress assignment for.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Literal, Mapping

from outreach_app.metrics import record_capacity_warning
from outreach_app.store import RecordNotFound, RecordStoreClient
from outreach_app.store.formula import Equals, Formula, LinkContains, all_of, any_of
from outreach_app.store.tables import (
    FOLLOW_UP_ASSIGNMENTS,
    MEMBERS,
    VOLUNTEERS,
    AssignmentFields,
    MemberFields,
    VolunteerFields,
)

from .contracts import IntakeChannel
from .records import (
    NON_TERMINAL_ASSIGNMENT_STATUSES,
    Assignment,
    AssignmentStatus,
    MemberStatus,
    Person,
    Volunteer,
)

logger = logging.getLogger(__name__)

AssignmentAction = Literal["assigned", "reassigned", "kept", "skipped"]

CAPACITY_EXHAUSTED = "capacity_exhausted"
NO_CAPTURER = "no_capturer"


@dataclass(frozen=True)
class AssignmentDecision:
    action: AssignmentAction
    volunteer_id: str | None = None
    previous_volunteer_id: str | None = None
    assignment_id: str | None = None
    reassigned_ids: tuple[str, ...] = ()
    due_date: str | None = None
    warning: str | None = None

    def as_dict(self) -> dict:
        return {
            "action": self.action,
            "volunteer_id": self.volunteer_id,
            "previous_volunteer_id": self.previous_volunteer_id,
            "assignment_id": self.assignment_id,
            "reassigned_ids": list(self.reassigned_ids),
            "due_date": self.due_date,
            "warning": self.warning,
        }


def _non_terminal_formula() -> Formula:
    return any_of(*(Equals(AssignmentFields.STATUS, status.value) for status in NON_TERMINAL_ASSIGNMENT_STATUSES))


def fetch_current_assignments(store: RecordStoreClient, person_id: str) -> list[Assignment]:
    """Non-terminal assignments for a Person, most recent first."""

    records = store.list_records(
        FOLLOW_UP_ASSIGNMENTS,
        formula=all_of(LinkContains(AssignmentFields.MEMBER, person_id), _non_terminal_formula()),
    )
    assignments = [Assignment.from_record(record) for record in records]
    return sorted(assignments, key=lambda item: item.recency_key, reverse=True)


class AssignmentBalancer:
    def __init__(
        self,
        store: RecordStoreClient,
        *,
        capacity: int = 20,
        due_days: int = 3,
        follow_up_role: str = "Follow-up",
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.capacity = capacity
        self.due_days = due_days
        self.follow_up_role = follow_up_role
        self.today = today

    @classmethod
    def from_config(cls, store: RecordStoreClient, config: Mapping, **overrides) -> "AssignmentBalancer":
        kwargs = {
            "capacity": int(config.get("VOLUNTEER_CAPACITY", 20)),
            "due_days": int(config.get("FOLLOW_UP_DUE_DAYS", 3)),
            "follow_up_role": config.get("FOLLOW_UP_ROLE", "Follow-up"),
        }
        kwargs.update(overrides)
        return cls(store, **kwargs)

    # Load ------------------------------------------------------------------------

    def capacity_of(self, volunteer: Volunteer | None) -> int:
        if volunteer is not None and volunteer.capacity:
            return volunteer.capacity
        return self.capacity

    def volunteer_load(self, volunteer_id: str) -> int:
        records = self.store.list_records(
            FOLLOW_UP_ASSIGNMENTS,
            formula=all_of(LinkContains(AssignmentFields.ASSIGNED_TO, volunteer_id), _non_terminal_formula()),
        )
        members = {Assignment.from_record(record).member_id for record in records}
        members.discard(None)
        return len(members)

    def loads_by_volunteer(self) -> dict[str, int]:
        """Load for every volunteer with open assignments, in a single listing."""

        records = self.store.list_records(FOLLOW_UP_ASSIGNMENTS, formula=_non_terminal_formula())
        members: dict[str, set[str]] = defaultdict(set)
        for record in records:
            assignment = Assignment.from_record(record)
            if assignment.volunteer_id and assignment.member_id:
                members[assignment.volunteer_id].add(assignment.member_id)
        return {volunteer_id: len(person_ids) for volunteer_id, person_ids in members.items()}

    def find_available_volunteer(self, *, exclude: set[str] | frozenset[str] = frozenset()) -> tuple[Volunteer, int] | None:
        """
        Lowest-loaded active follow-up volunteer with spare capacity.

        Ties on load go to the lowest record id so assignment is reproducible.
        """

        records = self.store.list_records(
            VOLUNTEERS,
            formula=all_of(
                Equals(VolunteerFields.ACTIVE, True),
                Equals(VolunteerFields.ROLE, self.follow_up_role),
            ),
        )
        volunteers = [Volunteer.from_record(record) for record in records if record.id not in exclude]
        if not volunteers:
            return None
        loads = self.loads_by_volunteer()
        ranked = sorted(volunteers, key=lambda volunteer: (loads.get(volunteer.id, 0), volunteer.id))
        for volunteer in ranked:
            load = loads.get(volunteer.id, 0)
            if load < self.capacity_of(volunteer):
                return volunteer, load
        return None

    # Decisions -------------------------------------------------------------------

    def assign(
        self,
        person: Person,
        trigger: IntakeChannel,
        *,
        captured_by: str | None = None,
        previous_status: MemberStatus | None = None,
    ) -> AssignmentDecision:
        if trigger is IntakeChannel.EVANGELISM:
            return self._assign_capturer(person, captured_by)
        if trigger is IntakeChannel.FIRST_TIMER and previous_status is MemberStatus.EVANGELISM_CONTACT:
            return self._rebalance(person)
        return AssignmentDecision(action="skipped")

    def ensure_assigned(self, person: Person, captured_by: str | None) -> AssignmentDecision:
        """Give the capturer ownership only when the Person has no current assignment."""

        return self._assign_capturer(person, captured_by)

    def ensure_within_capacity(self, person: Person) -> AssignmentDecision:
        """
        Re-run the first-timer capacity check for an already-linked Person.

        A run that failed after the Person reached First Timer but before the
        rebalance finished leaves no status transition for the next run to see,
        so a redelivery checks the current owner's load directly.
        """

        if person.status is not MemberStatus.FIRST_TIMER:
            return AssignmentDecision(action="skipped")
        return self._rebalance(person)

    def _assign_capturer(self, person: Person, captured_by: str | None) -> AssignmentDecision:
        current = fetch_current_assignments(self.store, person.id)
        if current:
            return AssignmentDecision(action="kept", volunteer_id=current[0].volunteer_id)
        if not captured_by:
            logger.warning(
                "Evangelism contact has no capturing volunteer; leaving unassigned",
                extra={"reconcile_person_id": person.id},
            )
            return AssignmentDecision(action="skipped", warning=NO_CAPTURER)

        assignment, due_date = self._create_assignment(person.id, captured_by)
        self._set_owner(person.id, captured_by)
        return AssignmentDecision(
            action="assigned",
            volunteer_id=captured_by,
            assignment_id=assignment.id,
            due_date=due_date,
        )

    def _rebalance(self, person: Person) -> AssignmentDecision:
        current = fetch_current_assignments(self.store, person.id)
        owner_id = current[0].volunteer_id if current else person.follow_up_owner
        if not owner_id:
            return AssignmentDecision(action="skipped")

        owner = self._get_volunteer(owner_id)
        load = self.volunteer_load(owner_id)
        capacity = self.capacity_of(owner)
        if load < capacity:
            return AssignmentDecision(action="kept", volunteer_id=owner_id)

        candidate = self.find_available_volunteer(exclude={owner_id})
        if candidate is None:
            record_capacity_warning()
            logger.warning(
                "Follow-up owner at capacity and no volunteer has spare capacity; keeping assignment",
                extra={
                    "reconcile_person_id": person.id,
                    "reconcile_volunteer_id": owner_id,
                    "reconcile_volunteer_load": load,
                    "reconcile_volunteer_capacity": capacity,
                },
            )
            return AssignmentDecision(action="kept", volunteer_id=owner_id, warning=CAPACITY_EXHAUSTED)

        volunteer, _ = candidate
        # New assignment first so a crash part-way leaves the newest one current.
        assignment, due_date = self._create_assignment(person.id, volunteer.id)
        reassigned = tuple(item.id for item in current)
        if reassigned:
            self.store.batch_update(
                FOLLOW_UP_ASSIGNMENTS,
                [(assignment_id, {AssignmentFields.STATUS: AssignmentStatus.REASSIGNED.value}) for assignment_id in reassigned],
            )
        self._set_owner(person.id, volunteer.id)
        logger.info(
            "Reassigned follow-up owner",
            extra={
                "reconcile_person_id": person.id,
                "reconcile_previous_volunteer_id": owner_id,
                "reconcile_volunteer_id": volunteer.id,
            },
        )
        return AssignmentDecision(
            action="reassigned",
            volunteer_id=volunteer.id,
            previous_volunteer_id=owner_id,
            assignment_id=assignment.id,
            reassigned_ids=reassigned,
            due_date=due_date,
        )

    # Store helpers ---------------------------------------------------------------

    def _get_volunteer(self, volunteer_id: str) -> Volunteer | None:
        try:
            return Volunteer.from_record(self.store.get_record(VOLUNTEERS, volunteer_id))
        except RecordNotFound:
            return None

    def _create_assignment(self, person_id: str, volunteer_id: str) -> tuple[Assignment, str]:
        assigned = self.today()
        due_date = (assigned + timedelta(days=self.due_days)).isoformat()
        record = self.store.create_record(
            FOLLOW_UP_ASSIGNMENTS,
            {
                AssignmentFields.MEMBER: [person_id],
                AssignmentFields.ASSIGNED_TO: [volunteer_id],
                AssignmentFields.ASSIGNED_DATE: assigned.isoformat(),
                AssignmentFields.DUE_DATE: due_date,
                AssignmentFields.STATUS: AssignmentStatus.ASSIGNED.value,
            },
        )
        return Assignment.from_record(record), due_date

    def _set_owner(self, person_id: str, volunteer_id: str) -> None:
        self.store.update_record(MEMBERS, person_id, {MemberFields.FOLLOW_UP_OWNER: [volunteer_id]})
