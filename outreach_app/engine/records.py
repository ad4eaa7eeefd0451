"""
Typed views over store records used by the engine.

Select values in the store are human-readable labels; the enums here carry
those labels as their values so they can be written back unchanged.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping

from outreach_app.store import StoreRecord
from outreach_app.store.tables import AssignmentFields, MemberFields, VolunteerFields


class MemberStatus(str, enum.Enum):
    """Pipeline stage of a Person; only ever advances."""

    EVANGELISM_CONTACT = "Evangelism Contact"
    FIRST_TIMER = "First Timer"
    RETURNER = "Returner"
    MEMBER = "Member"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @classmethod
    def parse(cls, value: object | None) -> "MemberStatus | None":
        if value is None or value == "":
            return None
        try:
            return cls(str(value))
        except ValueError:
            return None


_STATUS_ORDER = (
    MemberStatus.EVANGELISM_CONTACT,
    MemberStatus.FIRST_TIMER,
    MemberStatus.RETURNER,
    MemberStatus.MEMBER,
)


def max_status(current: MemberStatus | None, implied: MemberStatus | None) -> MemberStatus | None:
    if current is None:
        return implied
    if implied is None:
        return current
    return implied if implied.rank > current.rank else current


class MemberSource(str, enum.Enum):
    EVANGELISM = "Evangelism"
    FIRST_TIMER_FORM = "First Timer Form"
    RETURNER_FORM = "Returner Form"
    OTHER = "Other"


class AssignmentStatus(str, enum.Enum):
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    REASSIGNED = "Reassigned"


NON_TERMINAL_ASSIGNMENT_STATUSES = (AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS)


class AttendanceSource(str, enum.Enum):
    FIRST_TIMER = "First Timer"
    RETURNER = "Returner"
    EVANGELISM = "Evangelism"
    MANUAL = "Manual"


@dataclass(frozen=True)
class Person:
    id: str
    fields: Mapping[str, Any]

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Person":
        return cls(id=record.id, fields=dict(record.fields))

    @property
    def status(self) -> MemberStatus | None:
        return MemberStatus.parse(self.fields.get(MemberFields.STATUS))

    @property
    def follow_up_owner(self) -> str | None:
        return StoreRecord(self.id, self.fields).link(MemberFields.FOLLOW_UP_OWNER)


@dataclass(frozen=True)
class Assignment:
    id: str
    member_id: str | None
    volunteer_id: str | None
    status: str | None
    assigned_date: str | None
    created_time: str | None = None

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Assignment":
        return cls(
            id=record.id,
            member_id=record.link(AssignmentFields.MEMBER),
            volunteer_id=record.link(AssignmentFields.ASSIGNED_TO),
            status=record.get(AssignmentFields.STATUS),
            assigned_date=record.get(AssignmentFields.ASSIGNED_DATE),
            created_time=record.created_time,
        )

    @property
    def is_current(self) -> bool:
        return self.status in {status.value for status in NON_TERMINAL_ASSIGNMENT_STATUSES}

    @property
    def recency_key(self) -> tuple[str, str, str]:
        return (self.assigned_date or "", self.created_time or "", self.id)


@dataclass(frozen=True)
class Volunteer:
    id: str
    name: str
    role: str | None
    active: bool
    capacity: int | None

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Volunteer":
        raw_capacity = record.get(VolunteerFields.CAPACITY)
        try:
            capacity = int(raw_capacity) if raw_capacity not in (None, "") else None
        except (TypeError, ValueError):
            capacity = None
        return cls(
            id=record.id,
            name=str(record.get(VolunteerFields.NAME, "")),
            role=record.get(VolunteerFields.ROLE),
            active=bool(record.get(VolunteerFields.ACTIVE, False)),
            capacity=capacity if capacity and capacity > 0 else None,
        )
