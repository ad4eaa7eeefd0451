"""
Field-level merge and status advancement for Person records.

Merging is per field, never whole-record: a blank value in a later event must
not clobber data captured earlier, so most fields are fill-empty-only. The
per-field strategies come from :mod:`config.merge_policy`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Literal, Mapping

from config.merge_policy import (
    DEFAULT_PROFILE,
    DERIVED,
    EARLIEST,
    FILL_EMPTY,
    IMMUTABLE,
    PINNED_FIELDS,
    MergeProfile,
)
from outreach_app.models import ReviewFlagReason
from outreach_app.store.tables import MemberFields

from .contracts import IntakeChannel, IntakeEvent
from .identity import MatchResult
from .records import MemberStatus, Person, max_status

MergeAction = Literal["create", "update", "unchanged", "conflict"]

DEFAULT_FOLLOW_UP_STATUS = "Not Started"


def is_empty(value: object | None) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class MergeDecision:
    action: MergeAction
    fields: Mapping[str, Any] = field(default_factory=dict)
    status: MemberStatus | None = None
    previous_status: MemberStatus | None = None
    person: Person | None = None
    conflict_reason: ReviewFlagReason | None = None
    candidate_ids: tuple[str, ...] = ()

    @property
    def status_advanced(self) -> bool:
        return self.status is not None and self.status != self.previous_status


class MergePolicy:
    """Decide create/update/conflict for an event and compute the field delta."""

    def __init__(self, profile: MergeProfile = DEFAULT_PROFILE, *, today: Callable[[], date] = date.today):
        self.profile = profile
        self.today = today

    def strategy_for(self, field_name: str) -> str:
        pinned = PINNED_FIELDS.get(field_name)
        if pinned:
            return pinned
        rule = self.profile.find_rule(field_name)
        return rule.strategy if rule else FILL_EMPTY

    def strip_derived(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        return {name: value for name, value in fields.items() if self.strategy_for(name) != DERIVED}

    def incoming_fields(self, event: IntakeEvent) -> dict[str, Any]:
        """Store fields an event contributes before merge rules apply."""

        incoming = event.contact.as_store_fields()
        incoming[MemberFields.DATE_FIRST_CAPTURED] = event.captured_on or self.today().isoformat()
        if event.service_id and event.channel is IntakeChannel.FIRST_TIMER:
            incoming[MemberFields.FIRST_SERVICE_ATTENDED] = [event.service_id]
        return incoming

    def merge_fields(self, existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
        """Return only the fields whose stored value should change."""

        changes: dict[str, Any] = {}
        for name, value in incoming.items():
            if is_empty(value):
                continue
            strategy = self.strategy_for(name)
            if strategy in (DERIVED, IMMUTABLE):
                continue
            stored = existing.get(name)
            if strategy == EARLIEST:
                if is_empty(stored) or str(value) < str(stored):
                    changes[name] = value
            elif is_empty(stored):
                changes[name] = value
        return changes

    def merge_person(self, target: Person, source: Person) -> dict[str, Any]:
        """Field delta that folds a duplicate ``source`` Person into ``target``."""

        carried = {
            rule.field_name: source.fields.get(rule.field_name)
            for group in self.profile.field_groups
            for rule in group.fields
        }
        changes = self.merge_fields(target.fields, carried)
        status = max_status(target.status, source.status)
        if status is not None and status != target.status:
            changes[MemberFields.STATUS] = status.value
        return changes

    def decide(self, event: IntakeEvent, match: MatchResult) -> MergeDecision:
        implied = event.channel.implied_status

        if match.is_conflict:
            return MergeDecision(
                action="conflict",
                conflict_reason=ReviewFlagReason.AMBIGUOUS_MATCH,
                candidate_ids=match.candidate_ids,
            )

        if match.person is None:
            if not event.channel.creates_person:
                return MergeDecision(action="conflict", conflict_reason=ReviewFlagReason.RETURNER_WITHOUT_MATCH)
            fields = self.strip_derived(self.incoming_fields(event))
            fields[MemberFields.STATUS] = implied.value if implied else None
            fields[MemberFields.SOURCE] = event.channel.member_source.value
            fields[MemberFields.FOLLOW_UP_STATUS] = DEFAULT_FOLLOW_UP_STATUS
            return MergeDecision(action="create", fields=fields, status=implied)

        return self.decide_update(event, match.person)

    def decide_update(self, event: IntakeEvent, person: Person) -> MergeDecision:
        """Merge an event into an already-identified Person; never creates."""

        current = person.status
        new_status = max_status(current, event.channel.implied_status)
        changes = self.merge_fields(person.fields, self.incoming_fields(event))
        if new_status is not None and new_status != current:
            changes[MemberFields.STATUS] = new_status.value
        return MergeDecision(
            action="update" if changes else "unchanged",
            fields=changes,
            status=new_status,
            previous_status=current,
            person=person,
        )
