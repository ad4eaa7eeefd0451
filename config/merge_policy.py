"""
Field merge configuration for Person reconciliation.

The reconciler consults this module to decide how each Members-table field
combines an existing stored value with the value carried by an intake event.

Configuration is file-backed so we do not require database tables or
migrations. Operators can extend the default profile (for example to register
an additional derived rollup column) by pointing ``MERGE_POLICY_PATH`` at a
JSON or YAML file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


FILL_EMPTY = "fill_empty"
"""Incoming value wins only when the stored value is empty."""

EARLIEST = "earliest"
"""Keep the minimum of stored and incoming values (ISO dates compare lexically)."""

IMMUTABLE = "immutable"
"""Written on creation, never touched by a later merge."""

DERIVED = "derived"
"""Computed by the store (rollups, formulas); stripped from every write."""

STRATEGIES = frozenset({FILL_EMPTY, EARLIEST, IMMUTABLE, DERIVED})

# Strategies that carry record-lifecycle invariants and may not be overridden.
PINNED_FIELDS: Mapping[str, str] = {
    "Source": IMMUTABLE,
    "Date First Captured": EARLIEST,
}


@dataclass(frozen=True)
class MergeFieldRule:
    """
    Merge behaviour for a single store field.

    Attributes:
        field_name: Column name in the Members table.
        strategy: One of ``fill_empty``, ``earliest``, ``immutable``, ``derived``.
    """

    field_name: str
    strategy: str = FILL_EMPTY


@dataclass(frozen=True)
class MergeFieldGroup:
    name: str
    display_name: str
    fields: Sequence[MergeFieldRule]


@dataclass(frozen=True)
class MergeProfile:
    """Container for all field merge rules."""

    key: str
    label: str
    field_groups: Sequence[MergeFieldGroup]

    def find_rule(self, field_name: str) -> MergeFieldRule | None:
        for group in self.field_groups:
            for rule in group.fields:
                if rule.field_name == field_name:
                    return rule
        return None

    def fields_with(self, strategy: str) -> tuple[str, ...]:
        return tuple(
            rule.field_name for group in self.field_groups for rule in group.fields if rule.strategy == strategy
        )


# ---------------------------------------------------------------------------
# Default profile
# ---------------------------------------------------------------------------

IDENTITY_FIELDS: tuple[MergeFieldRule, ...] = (
    MergeFieldRule("Phone"),
    MergeFieldRule("Email"),
)

NAME_FIELDS: tuple[MergeFieldRule, ...] = (
    MergeFieldRule("First Name"),
    MergeFieldRule("Last Name"),
)

ADDRESS_FIELDS: tuple[MergeFieldRule, ...] = (
    MergeFieldRule("Address"),
    MergeFieldRule("GhanaPost Code"),
)

LIFECYCLE_FIELDS: tuple[MergeFieldRule, ...] = (
    MergeFieldRule("Source", IMMUTABLE),
    MergeFieldRule("Date First Captured", EARLIEST),
    MergeFieldRule("First Service Attended"),
    MergeFieldRule("Membership Completed"),
)

DERIVED_FIELDS: tuple[MergeFieldRule, ...] = (
    MergeFieldRule("Full Name", DERIVED),
    MergeFieldRule("First Follow-up Date", DERIVED),
    MergeFieldRule("Last Follow-up Date", DERIVED),
    MergeFieldRule("First Visit Date", DERIVED),
    MergeFieldRule("Last Visit Date", DERIVED),
    MergeFieldRule("Visit Count", DERIVED),
)

DEFAULT_PROFILE = MergeProfile(
    key="default",
    label="Fill empty fields only",
    field_groups=(
        MergeFieldGroup("identity", "Identity", IDENTITY_FIELDS),
        MergeFieldGroup("names", "Names", NAME_FIELDS),
        MergeFieldGroup("address", "Address", ADDRESS_FIELDS),
        MergeFieldGroup("lifecycle", "Lifecycle", LIFECYCLE_FIELDS),
        MergeFieldGroup("derived", "Derived", DERIVED_FIELDS),
    ),
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class MergePolicyConfigError(RuntimeError):
    """Raised when a merge policy override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise MergePolicyConfigError(f"Merge policy override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise MergePolicyConfigError(f"Unable to read merge policy override file {path}: {exc}") from exc

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)

    if not isinstance(data, Mapping):
        raise MergePolicyConfigError("Merge policy override must be a JSON/YAML object.")
    return dict(data)


def _coerce_field_rule(raw: Mapping[str, object]) -> MergeFieldRule:
    name = str(raw.get("field_name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field rule requires a non-empty field_name.")
    strategy = str(raw.get("strategy") or FILL_EMPTY).strip().lower()
    if strategy not in STRATEGIES:
        raise MergePolicyConfigError(f"Unknown merge strategy '{strategy}' for field {name}.")
    pinned = PINNED_FIELDS.get(name)
    if pinned is not None and strategy != pinned:
        raise MergePolicyConfigError(f"Field {name} must keep the '{pinned}' strategy.")
    return MergeFieldRule(field_name=name, strategy=strategy)


def _coerce_field_group(raw: Mapping[str, object]) -> MergeFieldGroup:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field group requires a non-empty name.")
    display_name = str(raw.get("display_name") or name).strip()
    fields_raw = raw.get("fields") or ()
    if not isinstance(fields_raw, Iterable) or isinstance(fields_raw, (str, bytes)):
        raise MergePolicyConfigError(f"Group {name} fields must be a sequence.")
    rules = tuple(_coerce_field_rule(rule) for rule in fields_raw)  # type: ignore[arg-type]
    return MergeFieldGroup(name=name, display_name=display_name or name.title(), fields=rules)


def _coerce_profile(raw: Mapping[str, object]) -> MergeProfile:
    key = str(raw.get("key") or "custom").strip() or "custom"
    label = str(raw.get("label") or DEFAULT_PROFILE.label).strip()
    raw_groups = raw.get("field_groups") or ()
    if not isinstance(raw_groups, Iterable) or isinstance(raw_groups, (str, bytes)):
        raise MergePolicyConfigError("field_groups must be a sequence.")
    override_groups = {group.name: group for group in (_coerce_field_group(g) for g in raw_groups)}  # type: ignore[arg-type]

    # Overrides replace default groups by name and may add new ones.
    groups = [override_groups.pop(group.name, group) for group in DEFAULT_PROFILE.field_groups]
    groups.extend(override_groups.values())
    return MergeProfile(key=key, label=label, field_groups=tuple(groups))


def load_merge_profile(env: Mapping[str, str] | None = None) -> MergeProfile:
    """
    Load the active merge profile.

    ``MERGE_POLICY_PATH`` in ``env`` points at a JSON/YAML override; otherwise
    the built-in defaults are used.
    """

    env_map = env or {}
    override_path = env_map.get("MERGE_POLICY_PATH")
    if not override_path:
        return DEFAULT_PROFILE
    return _coerce_profile(_load_override(Path(override_path)))


__all__ = [
    "DEFAULT_PROFILE",
    "DERIVED",
    "EARLIEST",
    "FILL_EMPTY",
    "IMMUTABLE",
    "MergeFieldGroup",
    "MergeFieldRule",
    "MergePolicyConfigError",
    "MergeProfile",
    "PINNED_FIELDS",
    "load_merge_profile",
]
