from __future__ import annotations

import threading
from typing import Any

from tenant_sync.db.postgres import PostgresTxRunner, validate_identifier

LEAD_COLUMNS = (
    "id",
    "tenant_id",
    "phone_normalized",
    "id_number_normalized",
    "submission_id",
    "compliance_status",
    "pipeline_stage",
    "linked_check_id",
    "compliance_checked_at",
    "stage_label_id",
)

# The only lead fields this engine is allowed to write.
COMPLIANCE_FIELDS = frozenset(
    {"compliance_status", "pipeline_stage", "linked_check_id", "compliance_checked_at", "stage_label_id"}
)


def _checked_changes(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(changes) - COMPLIANCE_FIELDS)
    if unknown:
        raise ValueError(f"lead fields not writable by sync: {', '.join(unknown)}")
    return dict(changes)


class InMemoryLeadsRepository:
    def __init__(self, leads: dict[str, dict[str, Any]] | None = None) -> None:
        self._lock = threading.RLock()
        self._leads = leads if leads is not None else {}
        self.updates: list[tuple[str, dict[str, Any]]] = []

    def create(self, *, lead: dict[str, Any]) -> dict[str, Any]:
        row = {column: lead.get(column) for column in LEAD_COLUMNS}
        with self._lock:
            self._leads[str(row["id"])] = row
        return dict(row)

    def get(self, *, tenant_id: str, lead_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._leads.get(str(lead_id))
            if row is None or row.get("tenant_id") != tenant_id:
                return None
            return dict(row)

    def _find(self, tenant_id: str | None, predicate: Any) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(row)
                for row in self._leads.values()
                if (tenant_id is None or row.get("tenant_id") == tenant_id) and predicate(row)
            ]

    def find_by_national_id(self, *, tenant_id: str | None, national_id: str) -> list[dict[str, Any]]:
        if not national_id:
            return []
        return self._find(tenant_id, lambda row: row.get("id_number_normalized") == national_id)

    def find_by_submission_id(self, *, tenant_id: str | None, submission_id: str) -> list[dict[str, Any]]:
        if not submission_id:
            return []
        return self._find(tenant_id, lambda row: str(row.get("submission_id") or "") == submission_id)

    def find_by_phone_tail(self, *, tenant_id: str | None, tail: str) -> list[dict[str, Any]]:
        if not tail:
            return []
        return self._find(tenant_id, lambda row: str(row.get("phone_normalized") or "").endswith(tail))

    def apply_compliance(self, *, tenant_id: str, lead_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        values = _checked_changes(changes)
        with self._lock:
            row = self._leads.get(str(lead_id))
            if row is None or row.get("tenant_id") != tenant_id:
                return None
            row.update(values)
            self.updates.append((str(lead_id), values))
            return dict(row)


class PostgresLeadsRepository:
    """Lead lookups by natural key; ``tenant_id=None`` searches every tenant."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "leads") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
        data = dict(zip(LEAD_COLUMNS, row))
        data["id"] = str(data["id"])
        if data.get("compliance_checked_at") is not None:
            data["compliance_checked_at"] = str(data["compliance_checked_at"])
        return data

    def _select(self, *, tenant_id: str | None, where: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        clauses = [where]
        bound: list[Any] = list(params)
        if tenant_id is not None:
            clauses.insert(0, "tenant_id = %s")
            bound.insert(0, tenant_id)
        sql = f"""
            SELECT {", ".join(LEAD_COLUMNS)}
            FROM {self._table_name}
            WHERE {" AND ".join(clauses)}
            ORDER BY id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(bound))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, lead_id: str) -> dict[str, Any] | None:
        rows = self._select(tenant_id=tenant_id, where="id = %s", params=(lead_id,))
        return rows[0] if rows else None

    def find_by_national_id(self, *, tenant_id: str | None, national_id: str) -> list[dict[str, Any]]:
        if not national_id:
            return []
        return self._select(tenant_id=tenant_id, where="id_number_normalized = %s", params=(national_id,))

    def find_by_submission_id(self, *, tenant_id: str | None, submission_id: str) -> list[dict[str, Any]]:
        if not submission_id:
            return []
        return self._select(tenant_id=tenant_id, where="submission_id = %s", params=(submission_id,))

    def find_by_phone_tail(self, *, tenant_id: str | None, tail: str) -> list[dict[str, Any]]:
        if not tail:
            return []
        return self._select(
            tenant_id=tenant_id,
            where="RIGHT(phone_normalized, %s) = %s",
            params=(len(tail), tail),
        )

    def apply_compliance(self, *, tenant_id: str, lead_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        values = _checked_changes(changes)
        if not values:
            return self.get(tenant_id=tenant_id, lead_id=lead_id)
        columns = sorted(values)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE tenant_id = %s AND id = %s
            RETURNING {", ".join(LEAD_COLUMNS)}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (*[values[c] for c in columns], tenant_id, lead_id))
                row = cur.fetchone()
            return self._row_to_dict(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
