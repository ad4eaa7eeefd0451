"""Intake event contracts.

Each intake channel posts the store's webhook envelope::

    {"base": {"id": ...}, "webhook": {"id": ...}, "timestamp": ...,
     "record": {"id": "rec...", "fields": {...}}}

``parse_intake_payload`` validates the envelope against the channel's field
specs and produces an :class:`IntakeEvent`. Validation failures are reported
together so the caller can return all of them in one 400 response.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping, Sequence, Tuple

from outreach_app.store.tables import LINKED_MEMBER, MemberFields, ProgramFields

from .identity import MatchKey, normalize_email, normalize_phone
from .records import AttendanceSource, MemberSource, MemberStatus

Normalizer = Callable[[object | None], object | None]


class IntakeChannel(str, enum.Enum):
    EVANGELISM = "evangelism"
    FIRST_TIMER = "first_timer"
    RETURNER = "returner"
    PROGRAM_SESSION = "program_session"

    @property
    def implied_status(self) -> MemberStatus | None:
        return _IMPLIED_STATUS[self]

    @property
    def member_source(self) -> MemberSource:
        return _MEMBER_SOURCE[self]

    @property
    def attendance_source(self) -> AttendanceSource | None:
        return _ATTENDANCE_SOURCE.get(self)

    @property
    def creates_person(self) -> bool:
        return self in {IntakeChannel.EVANGELISM, IntakeChannel.FIRST_TIMER}


_IMPLIED_STATUS = {
    IntakeChannel.EVANGELISM: MemberStatus.EVANGELISM_CONTACT,
    IntakeChannel.FIRST_TIMER: MemberStatus.FIRST_TIMER,
    IntakeChannel.RETURNER: MemberStatus.RETURNER,
    IntakeChannel.PROGRAM_SESSION: None,
}

_MEMBER_SOURCE = {
    IntakeChannel.EVANGELISM: MemberSource.EVANGELISM,
    IntakeChannel.FIRST_TIMER: MemberSource.FIRST_TIMER_FORM,
    IntakeChannel.RETURNER: MemberSource.RETURNER_FORM,
    IntakeChannel.PROGRAM_SESSION: MemberSource.OTHER,
}

_ATTENDANCE_SOURCE = {
    IntakeChannel.FIRST_TIMER: AttendanceSource.FIRST_TIMER,
    IntakeChannel.RETURNER: AttendanceSource.RETURNER,
}


class IntakeValidationError(ValueError):
    """Malformed intake payload; rejected at intake and never retried."""

    def __init__(self, details: Sequence[str]):
        self.details = list(details)
        super().__init__("; ".join(self.details) or "Invalid intake payload")


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _first_link(value: object | None) -> object | None:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def _link_list(value: object | None) -> object | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return [value.strip()] if value.strip() else None
    if isinstance(value, (list, tuple)):
        links = [str(item).strip() for item in value if str(item).strip()]
        return links or None
    return None


def _flag(value: object | None) -> object | None:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _date_string(value: object | None) -> object | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    token = str(value).strip()
    # Date-time values are cut to their date so min/max compare lexically.
    return token[:10] or None


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing one webhook field for a channel."""

    name: str
    description: str
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _strip_string

    def extract(self, fields: Mapping[str, Any]) -> object | None:
        for key in (self.name, *self.aliases):
            if key in fields:
                raw = fields[key]
                return self.normalizer(raw) if self.normalizer else raw
        return None


CONTACT_SPECS: Tuple[FieldSpec, ...] = (
    FieldSpec(MemberFields.FIRST_NAME, "Given name."),
    FieldSpec(MemberFields.LAST_NAME, "Family name."),
    FieldSpec(MemberFields.PHONE, "Phone; formatting stripped.", normalizer=normalize_phone),
    FieldSpec(MemberFields.EMAIL, "Email; trimmed and lower-cased.", normalizer=normalize_email),
    FieldSpec(MemberFields.ADDRESS, "Street address."),
    FieldSpec(MemberFields.GHANAPOST_CODE, "GhanaPost digital address."),
)

LINK_SPECS: Mapping[str, FieldSpec] = {
    "service": FieldSpec("Service", "Service attended.", normalizer=_first_link),
    "captured_by": FieldSpec("Captured By", "Volunteer who captured the soul.", normalizer=_first_link),
    "linked_member": FieldSpec(LINKED_MEMBER, "Back-link to the canonical Person.", normalizer=_first_link),
}

EVANGELISM_DATE_SPEC = FieldSpec("Date", "Date the contact was captured.", normalizer=_date_string)
RETURNER_NAME_SPEC = FieldSpec("Name", "Returner full name.")
PROGRAM_MEMBER_SPEC = FieldSpec(ProgramFields.MEMBER, "Person enrolled in the program.", normalizer=_link_list)
PROGRAM_NAME_SPEC = FieldSpec(
    ProgramFields.PROGRAM_NAME,
    "Program name (lookup).",
    normalizer=lambda value: _strip_string(value[0] if isinstance(value, (list, tuple)) and value else value),
)
PROGRAM_LINK_SPEC = FieldSpec(ProgramFields.PROGRAM, "Linked Programs record.", normalizer=_first_link)


@dataclass(frozen=True)
class ContactFields:
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    ghanapost_code: str | None = None

    def as_store_fields(self) -> dict[str, Any]:
        values = {
            MemberFields.FIRST_NAME: self.first_name,
            MemberFields.LAST_NAME: self.last_name,
            MemberFields.PHONE: self.phone,
            MemberFields.EMAIL: self.email,
            MemberFields.ADDRESS: self.address,
            MemberFields.GHANAPOST_CODE: self.ghanapost_code,
        }
        return {key: value for key, value in values.items() if value not in (None, "")}


@dataclass(frozen=True)
class ProgramProgress:
    program_name: str | None
    sessions_completed: Tuple[bool, ...]
    session_dates: Tuple[str | None, ...]
    program_id: str | None = None

    @property
    def all_completed(self) -> bool:
        return len(self.sessions_completed) == 4 and all(self.sessions_completed)

    @property
    def completion_date(self) -> str | None:
        dates = [value for value in self.session_dates if value]
        return max(dates) if dates else None


@dataclass(frozen=True)
class IntakeEvent:
    channel: IntakeChannel
    source_record_id: str
    contact: ContactFields = field(default_factory=ContactFields)
    service_id: str | None = None
    captured_by: str | None = None
    linked_member_id: str | None = None
    captured_on: str | None = None
    member_id: str | None = None
    program: ProgramProgress | None = None

    @property
    def match_key(self) -> MatchKey:
        return MatchKey(phone=self.contact.phone, email=self.contact.email)

    def lock_keys(self) -> tuple[str, ...]:
        if self.channel is IntakeChannel.PROGRAM_SESSION:
            return (f"member:{self.member_id}",) if self.member_id else ()
        return self.match_key.lock_keys()

    def summary(self) -> dict[str, Any]:
        """Event context for logs and alerts."""

        return {
            "channel": self.channel.value,
            "source_record_id": self.source_record_id,
            "phone": self.contact.phone,
            "email": self.contact.email,
            "service_id": self.service_id,
            "member_id": self.member_id,
        }


def _split_full_name(full_name: str | None) -> tuple[str | None, str | None]:
    if not full_name:
        return None, None
    parts = full_name.split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


def _extract_record(payload: object, errors: list[str]) -> tuple[str, Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        errors.append("Payload must be a JSON object.")
        return "", {}
    record = payload.get("record")
    if not isinstance(record, Mapping):
        errors.append("Payload is missing the 'record' object.")
        return "", {}
    record_id = record.get("id")
    if not isinstance(record_id, str) or not record_id.strip():
        errors.append("record.id must be a non-empty string.")
        record_id = ""
    fields = record.get("fields")
    if not isinstance(fields, Mapping):
        errors.append("record.fields must be an object.")
        fields = {}
    return str(record_id).strip(), fields


def _parse_contact(fields: Mapping[str, Any]) -> ContactFields:
    values = {spec.name: spec.extract(fields) for spec in CONTACT_SPECS}
    return ContactFields(
        first_name=values[MemberFields.FIRST_NAME],
        last_name=values[MemberFields.LAST_NAME],
        phone=values[MemberFields.PHONE],
        email=values[MemberFields.EMAIL],
        address=values[MemberFields.ADDRESS],
        ghanapost_code=values[MemberFields.GHANAPOST_CODE],
    )


def _validate_contact(channel: IntakeChannel, contact: ContactFields, errors: list[str]) -> None:
    if not contact.phone and not contact.email:
        errors.append("At least one of Phone or Email is required.")
    if contact.email and "@" not in contact.email:
        errors.append("Email must contain '@'.")
    if channel.creates_person and not contact.first_name and not contact.last_name:
        errors.append("First Name or Last Name is required.")


def _parse_program(fields: Mapping[str, Any]) -> ProgramProgress:
    return ProgramProgress(
        program_name=PROGRAM_NAME_SPEC.extract(fields),  # type: ignore[arg-type]
        sessions_completed=tuple(bool(_flag(fields.get(name))) for name in ProgramFields.SESSION_COMPLETED),
        session_dates=tuple(_date_string(fields.get(name)) for name in ProgramFields.SESSION_DATE),  # type: ignore[misc]
        program_id=PROGRAM_LINK_SPEC.extract(fields),  # type: ignore[arg-type]
    )


def parse_intake_payload(channel: IntakeChannel | str, payload: object) -> IntakeEvent:
    """Validate a webhook payload for ``channel`` and build the intake event."""

    channel = IntakeChannel(channel)
    errors: list[str] = []
    record_id, fields = _extract_record(payload, errors)
    if errors:
        raise IntakeValidationError(errors)

    links = {key: spec.extract(fields) for key, spec in LINK_SPECS.items()}

    if channel is IntakeChannel.PROGRAM_SESSION:
        members = PROGRAM_MEMBER_SPEC.extract(fields)
        if not members:
            raise IntakeValidationError(["Member must reference at least one member record."])
        return IntakeEvent(
            channel=channel,
            source_record_id=record_id,
            member_id=members[0],  # type: ignore[index]
            program=_parse_program(fields),
        )

    contact = _parse_contact(fields)
    if channel is IntakeChannel.RETURNER and not contact.first_name and not contact.last_name:
        first, last = _split_full_name(RETURNER_NAME_SPEC.extract(fields))  # type: ignore[arg-type]
        contact = ContactFields(
            first_name=first,
            last_name=last,
            phone=contact.phone,
            email=contact.email,
            address=contact.address,
            ghanapost_code=contact.ghanapost_code,
        )
    _validate_contact(channel, contact, errors)
    if errors:
        raise IntakeValidationError(errors)

    return IntakeEvent(
        channel=channel,
        source_record_id=record_id,
        contact=contact,
        service_id=links["service"],  # type: ignore[arg-type]
        captured_by=links["captured_by"] if channel is IntakeChannel.EVANGELISM else None,  # type: ignore[arg-type]
        linked_member_id=links["linked_member"],  # type: ignore[arg-type]
        captured_on=EVANGELISM_DATE_SPEC.extract(fields) if channel is IntakeChannel.EVANGELISM else None,  # type: ignore[arg-type]
    )


__all__ = [
    "ContactFields",
    "FieldSpec",
    "IntakeChannel",
    "IntakeEvent",
    "IntakeValidationError",
    "ProgramProgress",
    "parse_intake_payload",
]
