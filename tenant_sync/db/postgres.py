from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_TENANT_SETTING = "app.current_tenant"


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for SYNC_REPOSITORY_BACKEND=postgres; install psycopg[binary]") from exc
    return psycopg


def validate_identifier(name: str) -> str:
    if not _IDENTIFIER.fullmatch(name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresTxRunner:
    """One local-database transaction per call, bounded in time.

    A tenant id is exposed to row-level policies through ``app.current_tenant``.
    ``tenant_id=None`` is system scope: the setting is left unset, which the
    cross-tenant lead lookups of the master pass rely on.
    """

    def __init__(self, dsn: str, *, connect_timeout_s: int = 10, statement_timeout_ms: int = 0) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self.connect_timeout_s = max(1, int(connect_timeout_s))
        self.statement_timeout_ms = max(0, int(statement_timeout_ms))

    def _session_settings(self, tenant_id: str | None) -> list[tuple[str, str]]:
        settings: list[tuple[str, str]] = []
        if tenant_id is not None:
            settings.append((_TENANT_SETTING, tenant_id))
        if self.statement_timeout_ms:
            settings.append(("statement_timeout", str(self.statement_timeout_ms)))
        return settings

    def run_in_tx(self, *, tenant_id: str | None, fn: Callable[[Any], Any]) -> Any:
        if tenant_id is not None and not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn, connect_timeout=self.connect_timeout_s) as conn:
            settings = self._session_settings(tenant_id)
            if settings:
                with conn.cursor() as cur:
                    for name, value in settings:
                        cur.execute("SELECT set_config(%s, %s, true)", (name, value))
            result = fn(conn)
            conn.commit()
            return result
