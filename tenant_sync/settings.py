from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

FAILURE_POLICIES = ("dead_letter", "retry_limited")


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TableNames:
    queue: str = "integration_queue"
    compliance_results: str = "cpf_compliance_results"
    master_checks: str = "datacorp_checks"
    submissions: str = "form_submissions"
    accounts: str = "revendedoras"


@dataclass(frozen=True)
class SyncSettings:
    environment: str
    poll_interval_s: float
    initial_delay_s: float
    batch_size: int
    master_lookback_hours: int
    resync_limit: int
    store_timeout_s: float
    tenant_timeout_s: float
    tenant_concurrency: int
    data_dir: Path
    processed_backend: str
    repository_backend: str
    postgres_dsn: str
    db_statement_timeout_ms: int
    redis_dsn: str
    redis_key_prefix: str
    event_entity_type: str
    event_failure_policy: str
    event_max_attempts: int
    master_processed_column: str
    global_pass: bool
    tables: TableNames

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def state_file(self) -> Path:
        return self.data_dir / "cpf_compliance_poller_state.json"

    @property
    def processed_dir(self) -> Path:
        return self.data_dir / "processed"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SyncSettings":
        env = os.environ if environ is None else environ
        policy = str(env.get("SYNC_EVENT_FAILURE_POLICY", "dead_letter")).strip().lower()
        if policy not in FAILURE_POLICIES:
            raise ValueError(f"unsupported event failure policy: {policy}")
        return cls(
            environment=str(env.get("SYNC_ENV", "development")).strip().lower() or "development",
            poll_interval_s=_env_float(env, "SYNC_POLL_INTERVAL_S", default=30.0, minimum=1.0),
            initial_delay_s=_env_float(env, "SYNC_INITIAL_DELAY_S", default=5.0),
            batch_size=_env_int(env, "SYNC_BATCH_SIZE", default=50, minimum=1),
            master_lookback_hours=_env_int(env, "SYNC_MASTER_LOOKBACK_HOURS", default=24, minimum=1),
            resync_limit=_env_int(env, "SYNC_RESYNC_LIMIT", default=500, minimum=1),
            store_timeout_s=_env_float(env, "SYNC_STORE_TIMEOUT_S", default=10.0, minimum=0.01),
            tenant_timeout_s=_env_float(env, "SYNC_TENANT_TIMEOUT_S", default=120.0, minimum=0.01),
            tenant_concurrency=_env_int(env, "SYNC_TENANT_CONCURRENCY", default=1, minimum=1),
            data_dir=Path(str(env.get("SYNC_DATA_DIR", "data")).strip() or "data"),
            processed_backend=str(env.get("SYNC_PROCESSED_BACKEND", "file")).strip().lower() or "file",
            repository_backend=str(env.get("SYNC_REPOSITORY_BACKEND", "memory")).strip().lower() or "memory",
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            db_statement_timeout_ms=_env_int(env, "SYNC_DB_STATEMENT_TIMEOUT_MS", default=0),
            redis_dsn=str(env.get("REDIS_DSN", "")).strip(),
            redis_key_prefix=str(env.get("SYNC_REDIS_KEY_PREFIX", "tsync")).strip() or "tsync",
            event_entity_type=str(env.get("SYNC_EVENT_ENTITY_TYPE", "nova_revendedora")).strip()
            or "nova_revendedora",
            event_failure_policy=policy,
            event_max_attempts=_env_int(env, "SYNC_EVENT_MAX_ATTEMPTS", default=3, minimum=1),
            master_processed_column=str(env.get("SYNC_MASTER_PROCESSED_COLUMN", "processado")).strip(),
            global_pass=_env_bool(env, "SYNC_GLOBAL_PASS", True),
            tables=TableNames(
                queue=str(env.get("SYNC_TABLE_QUEUE", TableNames.queue)).strip() or TableNames.queue,
                compliance_results=str(env.get("SYNC_TABLE_COMPLIANCE_RESULTS", TableNames.compliance_results)).strip()
                or TableNames.compliance_results,
                master_checks=str(env.get("SYNC_TABLE_MASTER_CHECKS", TableNames.master_checks)).strip()
                or TableNames.master_checks,
                submissions=str(env.get("SYNC_TABLE_SUBMISSIONS", TableNames.submissions)).strip()
                or TableNames.submissions,
                accounts=str(env.get("SYNC_TABLE_ACCOUNTS", TableNames.accounts)).strip() or TableNames.accounts,
            ),
        )
