"""
In-memory stand-in for :class:`RecordStoreClient`.

Filters are evaluated with the same formula objects the real client renders,
so a lookup that works here builds the same ``filterByFormula`` in production.
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

from outreach_app.store import RecordNotFound, StoreRecord, check_deadline
from outreach_app.store.formula import Formula

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeRecordStore:
    def __init__(self, *, latency: float = 0.0):
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.latency = latency
        self.calls: Counter[str] = Counter()
        self.failures: dict[tuple[str, str], BaseException] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # Test helpers ---------------------------------------------------------------

    def seed(self, table: str, fields: Mapping[str, Any], *, record_id: str | None = None) -> StoreRecord:
        with self._lock:
            return self._insert(table, fields, record_id)

    def records(self, table: str) -> list[StoreRecord]:
        with self._lock:
            return [self._snapshot(row) for row in self.tables.get(table, {}).values()]

    def fields_of(self, table: str, record_id: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self.tables[table][record_id]["fields"])

    def fail(self, method: str, table: str, exc: BaseException) -> None:
        """Raise ``exc`` on every ``method`` call against ``table``."""
        self.failures[(method, table)] = exc

    # Client API -----------------------------------------------------------------

    def list_records(
        self,
        table: str,
        *,
        formula: Formula | None = None,
        fields: Iterable[str] | None = None,
        max_records: int | None = None,
    ) -> list[StoreRecord]:
        self._enter("list", table)
        with self._lock:
            rows = list(self.tables.get(table, {}).values())
            matched = [self._snapshot(row) for row in rows if formula is None or formula.matches(row["fields"])]
        if max_records is not None:
            matched = matched[:max_records]
        return matched

    def find_first(self, table: str, formula: Formula) -> StoreRecord | None:
        records = self.list_records(table, formula=formula, max_records=1)
        return records[0] if records else None

    def get_record(self, table: str, record_id: str) -> StoreRecord:
        self._enter("get", table)
        with self._lock:
            row = self.tables.get(table, {}).get(record_id)
            if row is None:
                raise RecordNotFound(f"get {table}/{record_id}", status_code=404, body="NOT_FOUND")
            return self._snapshot(row)

    def create_record(self, table: str, fields: Mapping[str, Any]) -> StoreRecord:
        self._enter("create", table)
        with self._lock:
            return self._insert(table, fields, None)

    def update_record(self, table: str, record_id: str, fields: Mapping[str, Any]) -> StoreRecord:
        self._enter("update", table)
        with self._lock:
            return self._patch(table, record_id, fields)

    def delete_record(self, table: str, record_id: str) -> str:
        self._enter("delete", table)
        with self._lock:
            if self.tables.get(table, {}).pop(record_id, None) is None:
                raise RecordNotFound(f"delete {table}/{record_id}", status_code=404, body="NOT_FOUND")
            return record_id

    def batch_create(self, table: str, fields_list: Sequence[Mapping[str, Any]]) -> list[StoreRecord]:
        self._enter("batch_create", table)
        with self._lock:
            return [self._insert(table, fields, None) for fields in fields_list]

    def batch_update(self, table: str, updates: Sequence[tuple[str, Mapping[str, Any]]]) -> list[StoreRecord]:
        self._enter("batch_update", table)
        with self._lock:
            return [self._patch(table, record_id, fields) for record_id, fields in updates]

    # Internals ------------------------------------------------------------------

    def _enter(self, method: str, table: str) -> None:
        check_deadline(f"{method} {table}")
        self.calls[method] += 1
        self.calls[f"{method}:{table}"] += 1
        failure = self.failures.get((method, table))
        if failure is not None:
            raise failure
        if self.latency:
            time.sleep(self.latency)

    def _insert(self, table: str, fields: Mapping[str, Any], record_id: str | None) -> StoreRecord:
        sequence = next(self._ids)
        record_id = record_id or f"rec{sequence:014d}"
        row = {
            "id": record_id,
            "fields": copy.deepcopy(dict(fields)),
            "createdTime": (_EPOCH + timedelta(seconds=sequence)).isoformat().replace("+00:00", ".000Z"),
        }
        self.tables.setdefault(table, {})[record_id] = row
        return self._snapshot(row)

    def _patch(self, table: str, record_id: str, fields: Mapping[str, Any]) -> StoreRecord:
        row = self.tables.get(table, {}).get(record_id)
        if row is None:
            raise RecordNotFound(f"update {table}/{record_id}", status_code=404, body="NOT_FOUND")
        row["fields"].update(copy.deepcopy(dict(fields)))
        return self._snapshot(row)

    @staticmethod
    def _snapshot(row: Mapping[str, Any]) -> StoreRecord:
        return StoreRecord(id=row["id"], fields=copy.deepcopy(row["fields"]), created_time=row["createdTime"])
