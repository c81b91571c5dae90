"""Local processed-id sets and the poller state document.

Both compensate for remote stores that lack a persistent "processed" column.
Everything here is safe to delete; the worst case is one extra reconciliation
pass, which lead-level idempotency absorbs.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tenant_sync.errors import LocalStateError
from tenant_sync.settings import SyncSettings

logger = logging.getLogger(__name__)

_SCOPE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(data, ensure_ascii=True, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


def _read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("local_state_unreadable path=%s error=%s", path, type(exc).__name__)
        return None


class InMemoryProcessedSet:
    def __init__(self, scope: str) -> None:
        self.scope = scope
        self._lock = threading.Lock()
        self._ids: set[str] = set()

    def load(self) -> set[str]:
        with self._lock:
            return set(self._ids)

    def add(self, record_id: str) -> None:
        with self._lock:
            self._ids.add(str(record_id))

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return str(record_id) in self._ids

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()


class JsonFileProcessedSet:
    """Processed ids persisted as a JSON array, rewritten on every add."""

    def __init__(self, scope: str, path: Path) -> None:
        self.scope = scope
        self.path = Path(path)
        self._lock = threading.Lock()
        self._ids: set[str] | None = None

    def _ensure_loaded(self) -> set[str]:
        if self._ids is None:
            data = _read_json(self.path)
            self._ids = {str(x) for x in data} if isinstance(data, list) else set()
        return self._ids

    def load(self) -> set[str]:
        with self._lock:
            self._ids = None
            return set(self._ensure_loaded())

    def add(self, record_id: str) -> None:
        with self._lock:
            ids = self._ensure_loaded()
            key = str(record_id)
            if key in ids:
                return
            try:
                _write_json_atomic(self.path, sorted(ids | {key}))
            except OSError as exc:
                raise LocalStateError(f"{self.path}: {type(exc).__name__}") from exc
            ids.add(key)

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return str(record_id) in self._ensure_loaded()

    def clear(self) -> None:
        with self._lock:
            self._ids = set()
            if self.path.exists():
                self.path.unlink()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for SYNC_PROCESSED_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisProcessedSet:
    def __init__(self, scope: str, *, client: Any, key_prefix: str = "tsync") -> None:
        self.scope = scope
        self._client = client
        self._key = f"{key_prefix}:processed:{scope}"

    def load(self) -> set[str]:
        return {str(x) for x in self._client.smembers(self._key)}

    def add(self, record_id: str) -> None:
        self._client.sadd(self._key, str(record_id))

    def __contains__(self, record_id: object) -> bool:
        return bool(self._client.sismember(self._key, str(record_id)))

    def clear(self) -> None:
        self._client.delete(self._key)


class ProcessedSetRegistry:
    """Hands out one processed set per scope (``client-<tenant>``, ``master``)."""

    BACKENDS = ("memory", "file", "redis")

    def __init__(
        self,
        *,
        backend: str = "memory",
        directory: Path | None = None,
        redis_client: Any = None,
        key_prefix: str = "tsync",
    ) -> None:
        if backend not in self.BACKENDS:
            raise RuntimeError(f"unsupported processed-set backend: {backend}")
        if backend == "file" and directory is None:
            raise ValueError("directory is required for the file backend")
        if backend == "redis" and redis_client is None:
            raise ValueError("redis_client is required for the redis backend")
        self.backend = backend
        self._directory = directory
        self._redis_client = redis_client
        self._key_prefix = key_prefix
        self._lock = threading.Lock()
        self._sets: dict[str, Any] = {}

    @staticmethod
    def client_scope(tenant_id: str) -> str:
        return f"client-{tenant_id}"

    def _build(self, scope: str) -> Any:
        if self.backend == "file":
            assert self._directory is not None
            return JsonFileProcessedSet(scope, self._directory / f"{_SCOPE_CHARS.sub('_', scope)}.json")
        if self.backend == "redis":
            return RedisProcessedSet(scope, client=self._redis_client, key_prefix=self._key_prefix)
        return InMemoryProcessedSet(scope)

    def get(self, scope: str) -> Any:
        if not scope.strip():
            raise ValueError("scope must not be empty")
        with self._lock:
            processed = self._sets.get(scope)
            if processed is None:
                processed = self._build(scope)
                self._sets[scope] = processed
            return processed


def create_processed_registry_from_env(settings: SyncSettings) -> ProcessedSetRegistry:
    backend = settings.processed_backend
    if backend == "file":
        return ProcessedSetRegistry(backend="file", directory=settings.processed_dir)
    if backend == "redis":
        if not settings.redis_dsn:
            raise ValueError("REDIS_DSN must be provided for redis processed-set backend")
        redis = _import_redis()
        client = redis.Redis.from_url(settings.redis_dsn, decode_responses=True)
        return ProcessedSetRegistry(backend="redis", redis_client=client, key_prefix=settings.redis_key_prefix)
    if backend == "memory":
        return ProcessedSetRegistry(backend="memory")
    raise RuntimeError(f"unsupported processed-set backend: {backend}")


def _empty_state() -> dict[str, Any]:
    return {"lastPolledAt": None, "totalProcessed": 0, "totalErrors": 0, "lastError": None}


class PollerStateStore:
    """Counters of the compliance poller; persisted when a path is given."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._state = _empty_state()
        if self.path is not None:
            data = _read_json(self.path)
            if isinstance(data, dict):
                for key in self._state:
                    if key in data:
                        self._state[key] = data[key]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._state)

    def record_run(self, *, processed: int, errors: int, last_error: str | None) -> dict[str, Any]:
        with self._lock:
            self._state["lastPolledAt"] = datetime.now(UTC).isoformat()
            self._state["totalProcessed"] = int(self._state.get("totalProcessed") or 0) + max(0, processed)
            self._state["totalErrors"] = int(self._state.get("totalErrors") or 0) + max(0, errors)
            if last_error:
                self._state["lastError"] = last_error
            snapshot = dict(self._state)
        if self.path is not None:
            try:
                _write_json_atomic(self.path, snapshot)
            except OSError as exc:
                logger.warning("poller_state_write_failed path=%s error=%s", self.path, type(exc).__name__)
        return snapshot
