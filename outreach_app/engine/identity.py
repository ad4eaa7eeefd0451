"""
Deterministic phone/email identity matching for intake events.

Normalization here is the only normalization the engine applies, and it is
applied on the write path too so stored values stay exact-match comparable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from outreach_app.store import RecordStoreClient
from outreach_app.store.formula import Equals, Formula, any_of
from outreach_app.store.tables import MEMBERS, MemberFields

from .records import Person


def normalize_email(value: object | None) -> str | None:
    """Trim and lower-case an email address."""

    if value is None:
        return None
    token = str(value).strip().lower()
    return token or None


def normalize_phone(value: object | None) -> str | None:
    """
    Strip formatting from a phone number, keeping digits and a leading ``+``.

    ``"024 400-0111"`` becomes ``"0244000111"``; ``"+233 24 400 0111"``
    becomes ``"+233244000111"``.
    """

    if value is None:
        return None
    token = str(value).strip()
    if not token:
        return None
    digits = "".join(ch for ch in token if ch.isdigit())
    if not digits:
        return None
    return f"+{digits}" if token.startswith("+") else digits


@dataclass(frozen=True)
class MatchKey:
    phone: str | None = None
    email: str | None = None

    @classmethod
    def from_contact(cls, phone: object | None, email: object | None) -> "MatchKey":
        return cls(phone=normalize_phone(phone), email=normalize_email(email))

    @property
    def is_empty(self) -> bool:
        return not self.phone and not self.email

    def lock_keys(self) -> tuple[str, ...]:
        """Lease keys for this identity, sorted so multi-key acquisition cannot deadlock."""

        keys = []
        if self.phone:
            keys.append(f"phone:{self.phone}")
        if self.email:
            keys.append(f"email:{self.email}")
        return tuple(sorted(keys))

    def formula(self) -> Formula:
        clauses: list[Formula] = []
        if self.phone:
            clauses.append(Equals(MemberFields.PHONE, self.phone))
        if self.email:
            clauses.append(Equals(MemberFields.EMAIL, self.email, lower=True))
        if not clauses:
            raise ValueError("MatchKey has neither phone nor email.")
        return any_of(*clauses)


MatchOutcome = Literal["matched", "none", "conflict", "insufficient"]


@dataclass(frozen=True)
class MatchResult:
    outcome: MatchOutcome
    person: Person | None = None
    candidate_ids: tuple[str, ...] = ()

    @property
    def is_conflict(self) -> bool:
        return self.outcome == "conflict"


class IdentityMatcher:
    """Find at most one canonical Person sharing a phone OR an email."""

    def __init__(self, store: RecordStoreClient):
        self.store = store

    def find(self, key: MatchKey) -> MatchResult:
        if key.is_empty:
            return MatchResult(outcome="insufficient")

        records = self.store.list_records(MEMBERS, formula=key.formula())
        distinct: dict[str, Person] = {}
        for record in records:
            distinct.setdefault(record.id, Person.from_record(record))

        if not distinct:
            return MatchResult(outcome="none")
        if len(distinct) > 1:
            return MatchResult(outcome="conflict", candidate_ids=tuple(sorted(distinct)))
        person = next(iter(distinct.values()))
        return MatchResult(outcome="matched", person=person, candidate_ids=(person.id,))
