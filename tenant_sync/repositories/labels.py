from __future__ import annotations

import threading
from typing import Any

from tenant_sync.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryStageLabelsRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._labels: dict[tuple[str, str], str] = {}

    def set_label(self, *, tenant_id: str, key: str, label_id: str) -> None:
        with self._lock:
            self._labels[(tenant_id, key)] = label_id

    def resolve_stage_label(self, *, tenant_id: str, key: str) -> str | None:
        with self._lock:
            return self._labels.get((tenant_id, key))


class PostgresStageLabelsRepository:
    """Looks up the tenant's pipeline label configured for a status key."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "stage_labels") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def set_label(self, *, tenant_id: str, key: str, label_id: str) -> None:
        sql = f"""
            INSERT INTO {self._table_name} (tenant_id, label_key, label_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (tenant_id, label_key) DO UPDATE SET label_id = EXCLUDED.label_id
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, key, label_id))

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def resolve_stage_label(self, *, tenant_id: str, key: str) -> str | None:
        sql = f"""
            SELECT label_id
            FROM {self._table_name}
            WHERE tenant_id = %s AND label_key = %s
            LIMIT 1
        """

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, key))
                row = cur.fetchone()
            return str(row[0]) if row is not None and row[0] is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
