from __future__ import annotations

import hashlib
import itertools
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

import requests

from tenant_sync.errors import CredentialRejectedError, RemoteUnavailableError, SchemaMismatchError, SyncError

logger = logging.getLogger(__name__)

_SCHEMA_ERROR_CODES = {"42703", "42P01", "PGRST204", "PGRST205", "PGRST200"}
_PERMISSION_ERROR_CODES = {"42501", "PGRST301", "PGRST302"}
_RESERVED_CHARS = set(',.:()"')


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any = None
    alternatives: tuple["Filter", ...] = field(default_factory=tuple)

    def columns(self) -> list[str]:
        if self.op == "or":
            return [c for alt in self.alternatives for c in alt.columns()]
        return [self.column]


def eq(column: str, value: Any) -> Filter:
    return Filter(column=column, op="eq", value=value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column=column, op="in", value=tuple(values))


def is_null(column: str) -> Filter:
    return Filter(column=column, op="is_null")


def not_null(column: str) -> Filter:
    return Filter(column=column, op="not_null")


def gte(column: str, value: Any) -> Filter:
    return Filter(column=column, op="gte", value=value)


def any_of(*alternatives: Filter) -> Filter:
    return Filter(column="", op="or", alternatives=tuple(alternatives))


def _literal(value: Any, *, quote: bool = False) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if quote and any(ch in _RESERVED_CHARS for ch in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _render_condition(f: Filter, *, nested: bool = False) -> str:
    if f.op == "eq":
        if f.value is None:
            return "is.null"
        return f"eq.{_literal(f.value, quote=nested)}"
    if f.op == "in":
        return "in.(" + ",".join(_literal(v, quote=True) for v in f.value) + ")"
    if f.op == "is_null":
        return "is.null"
    if f.op == "not_null":
        return "not.is.null"
    if f.op == "gte":
        return f"gte.{_literal(f.value, quote=nested)}"
    raise ValueError(f"unsupported filter op: {f.op}")


def render_filters(filters: Sequence[Filter]) -> list[tuple[str, str]]:
    """Translate filters into PostgREST query parameters."""
    params: list[tuple[str, str]] = []
    for f in filters:
        if f.op == "or":
            inner = ",".join(f"{alt.column}.{_render_condition(alt, nested=True)}" for alt in f.alternatives)
            params.append(("or", f"({inner})"))
        else:
            params.append((f.column, _render_condition(f)))
    return params


def _error_detail(response: Any) -> tuple[str, str]:
    try:
        body = response.json()
    except ValueError:
        return "", str(getattr(response, "text", ""))[:200]
    if not isinstance(body, dict):
        return "", str(body)[:200]
    return str(body.get("code") or ""), str(body.get("message") or body.get("hint") or "")[:200]


class PostgrestStore:
    """Remote store handle speaking the PostgREST dialect over HTTPS."""

    def __init__(
        self,
        *,
        url: str,
        secret_key: str,
        timeout_s: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not url.strip():
            raise ValueError("store url must not be empty")
        self._base_url = url.strip().rstrip("/") + "/rest/v1"
        self._secret_key = secret_key
        self._timeout_s = timeout_s
        self._session = session or requests.Session()

    def _headers(self, *, write: bool = False) -> dict[str, str]:
        headers = {
            "apikey": self._secret_key,
            "Authorization": f"Bearer {self._secret_key}",
            "Accept": "application/json",
        }
        if write:
            headers["Content-Type"] = "application/json"
            headers["Prefer"] = "return=representation"
        return headers

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]],
        body: Any = None,
    ) -> list[dict[str, Any]]:
        try:
            response = self._session.request(
                method,
                f"{self._base_url}/{table}",
                params=params,
                json=body,
                headers=self._headers(write=body is not None),
                timeout=self._timeout_s,
            )
        except requests.exceptions.Timeout as exc:
            raise RemoteUnavailableError(f"{table}: request timed out", code="STORE_TIMEOUT") from exc
        except requests.exceptions.RequestException as exc:
            raise RemoteUnavailableError(f"{table}: {type(exc).__name__}") from exc

        status = int(response.status_code)
        if status < 400:
            if status == 204 or not response.content:
                return []
            data = response.json()
            if isinstance(data, dict):
                return [data]
            return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []

        code, message = _error_detail(response)
        if code in _SCHEMA_ERROR_CODES:
            raise SchemaMismatchError(f"{table}: {message}")
        if status in (401, 403) or code in _PERMISSION_ERROR_CODES:
            raise CredentialRejectedError(f"{table}: {message or 'permission denied'}")
        if status >= 500:
            raise RemoteUnavailableError(f"{table}: upstream status {status}")
        raise SyncError(
            code="STORE_REQUEST_FAILED",
            message=f"{table}: status {status} {message}".strip(),
            error_class="validation",
            retryable=False,
        )

    def select(
        self,
        table: str,
        *,
        columns: Sequence[str] | str = "*",
        filters: Sequence[Filter] = (),
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        select = columns if isinstance(columns, str) else ",".join(columns)
        params = [("select", select), *render_filters(filters)]
        if order:
            params.append(("order", f"{order}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        if offset:
            params.append(("offset", str(int(offset))))
        return self._request("GET", table, params=params)

    def update(self, table: str, *, values: dict[str, Any], filters: Sequence[Filter]) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("refusing to update without filters")
        return self._request("PATCH", table, params=render_filters(filters), body=values)

    def insert(self, table: str, *, row: dict[str, Any]) -> dict[str, Any]:
        rows = self._request("POST", table, params=[], body=row)
        return rows[0] if rows else {}


def _matches(row: dict[str, Any], f: Filter) -> bool:
    value = row.get(f.column)
    if f.op == "eq":
        return value == f.value
    if f.op == "in":
        return value in f.value
    if f.op == "is_null":
        return value is None
    if f.op == "not_null":
        return value is not None
    if f.op == "gte":
        return value is not None and value >= f.value
    if f.op == "or":
        return any(_matches(row, alt) for alt in f.alternatives)
    raise ValueError(f"unsupported filter op: {f.op}")


class InMemoryRemoteStore:
    """Dictionary-backed store with the same surface as ``PostgrestStore``.

    Tables created with an explicit column list reject queries touching unknown
    columns with ``SchemaMismatchError``, like a real store missing optional
    columns would.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, list[dict[str, Any]]] = {}
        self._columns: dict[str, set[str] | None] = {}
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, str]] = []

    def create_table(
        self,
        table: str,
        *,
        columns: Iterable[str] | None = None,
        rows: Iterable[dict[str, Any]] = (),
    ) -> None:
        with self._lock:
            self._columns[table] = set(columns) if columns is not None else None
            self._rows[table] = [dict(r) for r in rows]

    def rows(self, table: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.get(table, [])]

    def _check(self, table: str, referenced: Iterable[str]) -> None:
        if table not in self._rows:
            raise SchemaMismatchError(f"relation {table} does not exist")
        known = self._columns.get(table)
        if known is None:
            return
        for column in referenced:
            if column and column != "*" and column not in known:
                raise SchemaMismatchError(f"column {table}.{column} does not exist")

    def select(
        self,
        table: str,
        *,
        columns: Sequence[str] | str = "*",
        filters: Sequence[Filter] = (),
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        wanted = [c.strip() for c in columns.split(",")] if isinstance(columns, str) else list(columns)
        with self._lock:
            self.calls.append(("select", table))
            referenced = list(wanted) + [c for f in filters for c in f.columns()] + ([order] if order else [])
            self._check(table, referenced)
            rows = [r for r in self._rows[table] if all(_matches(r, f) for f in filters)]
            if order:
                present = [r for r in rows if r.get(order) is not None]
                missing = [r for r in rows if r.get(order) is None]
                rows = sorted(present, key=lambda r: r[order], reverse=descending) + missing
            rows = rows[max(0, int(offset)) :]
            if limit is not None:
                rows = rows[: int(limit)]
            if wanted == ["*"]:
                return [dict(r) for r in rows]
            return [{c: r.get(c) for c in wanted} for r in rows]

    def update(self, table: str, *, values: dict[str, Any], filters: Sequence[Filter]) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("refusing to update without filters")
        with self._lock:
            self.calls.append(("update", table))
            self._check(table, list(values) + [c for f in filters for c in f.columns()])
            updated: list[dict[str, Any]] = []
            for row in self._rows[table]:
                if all(_matches(row, f) for f in filters):
                    row.update(values)
                    updated.append(dict(row))
            return updated

    def insert(self, table: str, *, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.calls.append(("insert", table))
            self._check(table, list(row))
            stored = dict(row)
            stored.setdefault("id", next(self._ids))
            self._rows[table].append(stored)
            return dict(stored)


_POOL_LOCK = threading.Lock()
_CALL_POOL: ThreadPoolExecutor | None = None


def _shared_pool() -> ThreadPoolExecutor:
    global _CALL_POOL
    with _POOL_LOCK:
        if _CALL_POOL is None:
            _CALL_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="store-call")
        return _CALL_POOL


class BoundedStore:
    """Runs every call of the wrapped handle under a hard timeout."""

    def __init__(
        self,
        inner: Any,
        *,
        timeout_s: float,
        cache_key: tuple[str, str] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.inner = inner
        self.timeout_s = max(0.001, float(timeout_s))
        self.cache_key = cache_key
        self._executor = executor

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        executor = self._executor or _shared_pool()
        future = executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_s)
        except FutureTimeoutError as exc:
            future.cancel()
            raise RemoteUnavailableError(
                f"store call timed out after {self.timeout_s:.2f}s",
                code="STORE_TIMEOUT",
            ) from exc

    def select(self, table: str, **kwargs: Any) -> list[dict[str, Any]]:
        return self._call(self.inner.select, table, **kwargs)

    def update(self, table: str, **kwargs: Any) -> list[dict[str, Any]]:
        return self._call(self.inner.update, table, **kwargs)

    def insert(self, table: str, **kwargs: Any) -> dict[str, Any]:
        return self._call(self.inner.insert, table, **kwargs)


def _secret_digest(secret_key: str) -> str:
    return hashlib.sha256(secret_key.encode("utf-8")).hexdigest()[:16]


class RemoteStoreFactory:
    """Builds store handles and caches them by (url, secret)."""

    def __init__(
        self,
        *,
        timeout_s: float = 10.0,
        builder: Callable[[str, str, float], Any] | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._builder = builder or (
            lambda url, secret_key, timeout_s: PostgrestStore(url=url, secret_key=secret_key, timeout_s=timeout_s)
        )
        self._lock = threading.RLock()
        self._handles: dict[tuple[str, str], BoundedStore] = {}

    def build(self, url: str, secret_key: str) -> BoundedStore:
        key = (url, _secret_digest(secret_key))
        return BoundedStore(self._builder(url, secret_key, self.timeout_s), timeout_s=self.timeout_s, cache_key=key)

    def get(self, url: str, secret_key: str) -> BoundedStore:
        key = (url, _secret_digest(secret_key))
        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = self.build(url, secret_key)
                self._handles[key] = handle
                logger.info("remote_store_handle_created url=%s", url[:40])
            return handle

    def evict(self, url: str, secret_key: str) -> bool:
        with self._lock:
            return self._handles.pop((url, _secret_digest(secret_key)), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class SchemaCapabilities:
    """Caches which optional columns a store exposes, per scope and table."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: dict[tuple[str, Any, str, tuple[str, ...]], bool] = {}

    def supports(self, *, scope: str, store: Any, table: str, columns: Sequence[str]) -> bool:
        key = (scope, getattr(store, "cache_key", None) or id(store), table, tuple(columns))
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        try:
            store.select(table, columns=list(columns), limit=1)
            supported = True
        except SchemaMismatchError:
            supported = False
        logger.info("schema_probe scope=%s table=%s columns=%s supported=%s", scope, table, ",".join(columns), supported)
        with self._lock:
            self._cache[key] = supported
        return supported

    def forget(self, *, scope: str) -> None:
        with self._lock:
            for key in [k for k in self._cache if k[0] == scope]:
                self._cache.pop(key, None)
