"""
Filter formulas for record store queries.

Each clause renders to the store's ``filterByFormula`` syntax and can also
evaluate itself against a plain field mapping, which keeps lookups testable
without a live store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence


def quote(value: object) -> str:
    """Render a string literal, escaping backslashes and single quotes."""

    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def field_ref(name: str) -> str:
    return "{" + name + "}"


def _scalar(value: object) -> object:
    # Lookup/rollup fields arrive as single-element lists.
    if isinstance(value, (list, tuple)):
        return value[0] if len(value) == 1 else ", ".join(str(item) for item in value)
    return value


class Formula:
    def render(self) -> str:  # pragma: no cover - abstract
        raise NotImplementedError

    def matches(self, fields: Mapping[str, Any]) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Equals(Formula):
    """``{Field} = value``; with ``lower`` the stored side is lowercased."""

    field: str
    value: object
    lower: bool = False

    def render(self) -> str:
        if isinstance(self.value, bool):
            return f"{field_ref(self.field)} = {'TRUE()' if self.value else 'FALSE()'}"
        if isinstance(self.value, (int, float)):
            return f"{field_ref(self.field)} = {self.value}"
        left = f"LOWER({field_ref(self.field)})" if self.lower else field_ref(self.field)
        return f"{left} = {quote(self.value)}"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        stored = _scalar(fields.get(self.field))
        if isinstance(self.value, bool):
            return bool(stored) is self.value
        if isinstance(self.value, (int, float)):
            return stored == self.value
        text = "" if stored is None else str(stored)
        if self.lower:
            text = text.lower()
        return text == str(self.value)


@dataclass(frozen=True)
class NotEquals(Formula):
    field: str
    value: str

    def render(self) -> str:
        return f"{field_ref(self.field)} != {quote(self.value)}"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        stored = _scalar(fields.get(self.field))
        return ("" if stored is None else str(stored)) != self.value


@dataclass(frozen=True)
class LinkContains(Formula):
    """True when a linked-record field references ``record_id``."""

    field: str
    record_id: str

    def render(self) -> str:
        return f"FIND({quote(self.record_id)}, ARRAYJOIN({field_ref(self.field)}))"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        linked = fields.get(self.field) or ()
        if isinstance(linked, str):
            linked = (linked,)
        return self.record_id in linked


@dataclass(frozen=True)
class AnyOf(Formula):
    clauses: Sequence[Formula]

    def render(self) -> str:
        return "OR(" + ", ".join(clause.render() for clause in self.clauses) + ")"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return any(clause.matches(fields) for clause in self.clauses)


@dataclass(frozen=True)
class AllOf(Formula):
    clauses: Sequence[Formula]

    def render(self) -> str:
        return "AND(" + ", ".join(clause.render() for clause in self.clauses) + ")"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return all(clause.matches(fields) for clause in self.clauses)


def any_of(*clauses: Formula) -> Formula:
    if len(clauses) == 1:
        return clauses[0]
    return AnyOf(tuple(clauses))


def all_of(*clauses: Formula) -> Formula:
    if len(clauses) == 1:
        return clauses[0]
    return AllOf(tuple(clauses))


__all__ = [
    "AllOf",
    "AnyOf",
    "Equals",
    "Formula",
    "LinkContains",
    "NotEquals",
    "all_of",
    "any_of",
    "quote",
]
