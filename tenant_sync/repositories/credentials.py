from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from tenant_sync.db.postgres import PostgresTxRunner, validate_identifier


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryCredentialsRepository:
    """Stores credential rows exactly as given; encryption is the vault's job."""

    def __init__(self, rows: dict[tuple[str, str], dict[str, Any]] | None = None) -> None:
        self._lock = threading.RLock()
        self._rows = rows if rows is not None else {}

    def get(self, *, tenant_id: str, store_role: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get((tenant_id, store_role))
            return dict(row) if row is not None else None

    def upsert(self, *, tenant_id: str, store_role: str, url: str, secret_key: str) -> dict[str, Any]:
        row = {
            "tenant_id": tenant_id,
            "store_role": store_role,
            "url": url,
            "secret_key": secret_key,
            "updated_at": _utcnow_iso(),
        }
        with self._lock:
            self._rows[(tenant_id, store_role)] = row
        return dict(row)

    def list_tenants(self, *, store_role: str) -> list[str]:
        with self._lock:
            return sorted({t for (t, role) in self._rows if role == store_role})


class PostgresCredentialsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "tenant_credentials") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def get(self, *, tenant_id: str, store_role: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT tenant_id, store_role, url, secret_key, updated_at
            FROM {self._table_name}
            WHERE tenant_id = %s AND store_role = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, store_role))
                row = cur.fetchone()
            if row is None:
                return None
            return {
                "tenant_id": row[0],
                "store_role": row[1],
                "url": row[2],
                "secret_key": row[3],
                "updated_at": str(row[4]) if row[4] is not None else None,
            }

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def upsert(self, *, tenant_id: str, store_role: str, url: str, secret_key: str) -> dict[str, Any]:
        updated_at = _utcnow_iso()
        sql = f"""
            INSERT INTO {self._table_name} (tenant_id, store_role, url, secret_key, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, store_role)
            DO UPDATE SET url = EXCLUDED.url, secret_key = EXCLUDED.secret_key, updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, store_role, url, secret_key, updated_at))
            return {
                "tenant_id": tenant_id,
                "store_role": store_role,
                "url": url,
                "secret_key": secret_key,
                "updated_at": updated_at,
            }

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_tenants(self, *, store_role: str) -> list[str]:
        sql = f"""
            SELECT DISTINCT tenant_id
            FROM {self._table_name}
            WHERE store_role = %s
            ORDER BY tenant_id ASC
        """

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (store_role,))
                rows = cur.fetchall()
            return [str(row[0]) for row in rows if row[0]]

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)
