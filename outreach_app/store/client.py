"""
Rate-limited HTTP client for the record store.

A single :class:`TokenBucket` is shared by every thread in the worker process
so the outbound request rate stays under the store's per-base limit no matter
how many reconciliations run concurrently.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence
from urllib.parse import quote as url_quote

import requests

from outreach_app.metrics import record_rate_limit_wait, record_store_request, record_store_retry

from .deadline import bounded_sleep, check_deadline
from .errors import RecordNotFound, StoreRequestError, TerminalStoreError, TransientStoreError
from .formula import Formula

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
PAGE_SIZE = 100


@dataclass(frozen=True)
class StoreRecord:
    """A record as returned by the store: id, field snapshot, creation time."""

    id: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    created_time: str | None = None

    def get(self, name: str, default: Any = None) -> Any:
        value = self.fields.get(name)
        return default if value is None else value

    def link(self, name: str) -> str | None:
        """First record id in a linked-record field."""

        value = self.fields.get(name)
        if isinstance(value, (list, tuple)):
            return str(value[0]) if value else None
        return str(value) if value else None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "StoreRecord":
        return cls(
            id=str(payload["id"]),
            fields=dict(payload.get("fields") or {}),
            created_time=payload.get("createdTime"),
        )


class TokenBucket:
    """Thread-safe token bucket; ``acquire`` blocks until a token is available."""

    def __init__(
        self,
        rate_per_second: float,
        capacity: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate = float(rate_per_second)
        self.capacity = float(capacity if capacity is not None else rate_per_second)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    def try_acquire(self) -> float:
        """Take a token if one is free; otherwise return seconds until the next one."""

        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.rate

    def acquire(self, operation: str = "store request") -> float:
        """Block until a token is taken; returns total seconds waited."""

        waited = 0.0
        while True:
            wait = self.try_acquire()
            if wait <= 0:
                return waited
            bounded_sleep(wait, operation, self._sleep)
            waited += wait


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with additive jitter, honouring ``Retry-After``."""

    max_retries: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 10.0
    jitter_seconds: float = 1.0

    def delay(self, attempt: int, retry_after: float | None = None, *, rng: Callable[[], float] = random.random) -> float:
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_seconds)
        backoff = min(self.base_seconds * (2**attempt), self.max_seconds)
        return backoff + rng() * self.jitter_seconds


def _parse_retry_after(response: requests.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class RecordStoreClient:
    """Named operations against the store's REST API (list, get, create, update, batch)."""

    def __init__(
        self,
        *,
        base_id: str,
        api_token: str,
        api_url: str = "https://api.airtable.com/v0",
        rate_limiter: TokenBucket | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_id or not api_token:
            raise ValueError("Record store base id and API token are required.")
        self.base_id = base_id
        self.api_url = api_url.rstrip("/")
        self.rate_limiter = rate_limiter or TokenBucket(5)
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **overrides: Any) -> "RecordStoreClient":
        rate = float(config.get("STORE_RATE_LIMIT_PER_SECOND", 5.0))
        kwargs: dict[str, Any] = {
            "base_id": config.get("STORE_BASE_ID"),
            "api_token": config.get("STORE_API_TOKEN"),
            "api_url": config.get("STORE_API_URL", "https://api.airtable.com/v0"),
            "rate_limiter": TokenBucket(rate),
            "retry_policy": RetryPolicy(
                max_retries=int(config.get("STORE_MAX_RETRIES", 3)),
                base_seconds=float(config.get("STORE_BACKOFF_BASE_SECONDS", 1.0)),
                max_seconds=float(config.get("STORE_BACKOFF_MAX_SECONDS", 10.0)),
                jitter_seconds=float(config.get("STORE_BACKOFF_JITTER_SECONDS", 1.0)),
            ),
            "timeout": float(config.get("STORE_TIMEOUT_SECONDS", 10.0)),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # Public API -----------------------------------------------------------------

    def list_records(
        self,
        table: str,
        *,
        formula: Formula | None = None,
        fields: Iterable[str] | None = None,
        max_records: int | None = None,
    ) -> list[StoreRecord]:
        """Fetch every record matching ``formula``, following pagination offsets."""

        params: dict[str, Any] = {"pageSize": PAGE_SIZE}
        if formula is not None:
            params["filterByFormula"] = formula.render()
        if fields:
            params["fields[]"] = list(fields)
        if max_records is not None:
            params["maxRecords"] = max_records

        records: list[StoreRecord] = []
        offset: str | None = None
        while True:
            page_params = dict(params)
            if offset:
                page_params["offset"] = offset
            payload = self._request("GET", table, params=page_params, operation=f"list {table}")
            records.extend(StoreRecord.from_api(item) for item in payload.get("records", ()))
            offset = payload.get("offset")
            if not offset or (max_records is not None and len(records) >= max_records):
                break
        if max_records is not None:
            return records[:max_records]
        return records

    def find_first(self, table: str, formula: Formula) -> StoreRecord | None:
        records = self.list_records(table, formula=formula, max_records=1)
        return records[0] if records else None

    def get_record(self, table: str, record_id: str) -> StoreRecord:
        payload = self._request("GET", table, record_id=record_id, operation=f"get {table}/{record_id}")
        return StoreRecord.from_api(payload)

    def create_record(self, table: str, fields: Mapping[str, Any]) -> StoreRecord:
        payload = self._request(
            "POST",
            table,
            json={"fields": dict(fields), "typecast": True},
            operation=f"create {table}",
        )
        return StoreRecord.from_api(payload)

    def update_record(self, table: str, record_id: str, fields: Mapping[str, Any]) -> StoreRecord:
        payload = self._request(
            "PATCH",
            table,
            record_id=record_id,
            json={"fields": dict(fields), "typecast": True},
            operation=f"update {table}/{record_id}",
        )
        return StoreRecord.from_api(payload)

    def delete_record(self, table: str, record_id: str) -> str:
        payload = self._request("DELETE", table, record_id=record_id, operation=f"delete {table}/{record_id}")
        return str(payload.get("id") or record_id)

    def batch_create(self, table: str, fields_list: Sequence[Mapping[str, Any]]) -> list[StoreRecord]:
        created: list[StoreRecord] = []
        for chunk in _chunks(list(fields_list), BATCH_SIZE):
            payload = self._request(
                "POST",
                table,
                json={"records": [{"fields": dict(item)} for item in chunk], "typecast": True},
                operation=f"batch create {table}",
            )
            created.extend(StoreRecord.from_api(item) for item in payload.get("records", ()))
        return created

    def batch_update(self, table: str, updates: Sequence[tuple[str, Mapping[str, Any]]]) -> list[StoreRecord]:
        updated: list[StoreRecord] = []
        for chunk in _chunks(list(updates), BATCH_SIZE):
            payload = self._request(
                "PATCH",
                table,
                json={
                    "records": [{"id": record_id, "fields": dict(item)} for record_id, item in chunk],
                    "typecast": True,
                },
                operation=f"batch update {table}",
            )
            updated.extend(StoreRecord.from_api(item) for item in payload.get("records", ()))
        return updated

    # Internal helpers -----------------------------------------------------------

    def _url(self, table: str, record_id: str | None) -> str:
        url = f"{self.api_url}/{self.base_id}/{url_quote(table, safe='')}"
        if record_id:
            url = f"{url}/{record_id}"
        return url

    def _request(
        self,
        method: str,
        table: str,
        *,
        record_id: str | None = None,
        params: Mapping[str, Any] | None = None,
        json: Mapping[str, Any] | None = None,
        operation: str,
    ) -> dict[str, Any]:
        url = self._url(table, record_id)
        policy = self.retry_policy
        last_error: BaseException | None = None
        attempts = 0

        for attempt in range(policy.max_retries + 1):
            check_deadline(operation)
            waited = self.rate_limiter.acquire(operation)
            record_rate_limit_wait(waited)
            attempts += 1
            retry_after: float | None = None
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=self._headers,
                    timeout=self.timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                record_store_request(method=method, status="error")
                last_error = TransientStoreError(f"{operation}: {exc}")
            else:
                status = response.status_code
                record_store_request(method=method, status=status)
                if status == 429 or status >= 500:
                    retry_after = _parse_retry_after(response)
                    last_error = TransientStoreError(
                        f"{operation}: HTTP {status}",
                        status_code=status,
                        retry_after=retry_after,
                    )
                elif status == 404:
                    raise RecordNotFound(operation, status_code=status, body=response.text)
                elif status >= 400:
                    raise StoreRequestError(operation, status_code=status, body=response.text)
                else:
                    return response.json()

            if attempt >= policy.max_retries:
                break
            delay = policy.delay(attempt, retry_after)
            record_store_retry(method)
            logger.warning(
                "Transient record store failure; retrying in %.2fs",
                delay,
                extra={
                    "store_operation": operation,
                    "store_attempt": attempts,
                    "store_error": str(last_error),
                },
            )
            bounded_sleep(delay, operation, self.sleep)

        logger.error(
            "Record store retries exhausted",
            extra={"store_operation": operation, "store_attempts": attempts, "store_error": str(last_error)},
        )
        raise TerminalStoreError(operation, attempts=attempts, last_error=last_error)
