from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any

from jsonschema import ValidationError, validate

from tenant_sync.errors import InvalidPayloadError, SyncError
from tenant_sync.normalize import mask, normalize_email, normalize_national_id
from tenant_sync.remote_store import any_of, eq, in_
from tenant_sync.settings import FAILURE_POLICIES
from tenant_sync.vault import CLIENT, MASTER, RESELLER_SCOPE_PREFIX

logger = logging.getLogger(__name__)

EVENT_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["email", "cpf"],
    "properties": {
        "email": {"type": "string", "minLength": 3},
        "cpf": {"type": "string", "minLength": 1},
        "nome": {"type": ["string", "null"]},
    },
}


def decode_payload(raw: Any) -> dict[str, Any]:
    """Accept a JSON string or an object and return a validated payload."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidPayloadError(f"payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise InvalidPayloadError(f"payload must be an object, got {type(raw).__name__}")
    try:
        validate(instance=raw, schema=EVENT_PAYLOAD_SCHEMA)
    except ValidationError as exc:
        raise InvalidPayloadError(f"payload rejected: {exc.message}") from exc
    email = normalize_email(raw["email"])
    national_id = normalize_national_id(raw["cpf"])
    if "@" not in email or not national_id:
        raise InvalidPayloadError("payload email or cpf is unusable")
    return {"email": email, "cpf": national_id, "nome": str(raw.get("nome") or "").strip()}


@dataclass
class ProvisioningStats:
    fetched: int = 0
    processed: int = 0
    failed: int = 0
    deferred: int = 0
    malformed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "fetched": self.fetched,
            "processed": self.processed,
            "failed": self.failed,
            "deferred": self.deferred,
            "malformed": self.malformed,
        }


class AccountDirectory:
    """Downstream reseller accounts kept on the master store."""

    def __init__(self, store: Any, *, table: str = "revendedoras") -> None:
        self._store = store
        self._table = table

    def find_existing(self, *, email: str, national_id: str) -> dict[str, Any] | None:
        rows = self._store.select(
            self._table,
            columns=["id", "email", "cpf"],
            filters=[any_of(eq("email", email), eq("cpf", national_id))],
            limit=1,
        )
        return rows[0] if rows else None

    def create_downstream_account(
        self,
        *,
        admin_id: str,
        email: str,
        national_id: str,
        name: str,
    ) -> tuple[dict[str, Any], bool]:
        existing = self.find_existing(email=email, national_id=national_id)
        if existing is not None:
            logger.info("account_exists email=%s", mask(email))
            return existing, False
        created = self._store.insert(
            self._table,
            row={"admin_id": admin_id, "email": email, "cpf": national_id, "nome": name, "status": "ativo"},
        )
        if not created.get("id"):
            raise SyncError(
                code="ACCOUNT_CREATE_FAILED",
                message="account insert returned no id",
                error_class="transient",
                retryable=True,
            )
        logger.info("account_created email=%s admin=%s", mask(email), admin_id)
        return created, True


class EventQueueProcessor:
    """Consumes provisioning events from a tenant's integration queue."""

    def __init__(
        self,
        *,
        vault: Any,
        table: str = "integration_queue",
        accounts_table: str = "revendedoras",
        entity_type: str = "nova_revendedora",
        batch_size: int = 50,
        failure_policy: str = "dead_letter",
        max_attempts: int = 3,
    ) -> None:
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"unsupported event failure policy: {failure_policy}")
        self._vault = vault
        self._table = table
        self._accounts_table = accounts_table
        self.entity_type = entity_type
        self.batch_size = max(1, int(batch_size))
        self.failure_policy = failure_policy
        self.max_attempts = max(1, int(max_attempts))
        self._lock = threading.Lock()
        self._attempts: dict[tuple[str, str], int] = {}
        self.last_stats = ProvisioningStats()

    def _account_directory(self) -> AccountDirectory | None:
        record = self._vault.resolve_permissive(None, MASTER)
        if record is None:
            return None
        return AccountDirectory(self._vault.handle_for(record), table=self._accounts_table)

    def _mark(self, store_handle: Any, event_id: Any, status: str) -> bool:
        try:
            store_handle.update(self._table, values={"status": status}, filters=[eq("id", event_id)])
        except SyncError as exc:
            logger.warning("event_mark_failed event=%s status=%s code=%s", event_id, status, exc.code)
            return False
        return True

    def _propagate_credentials(self, tenant_id: str, email: str) -> None:
        try:
            copied = self._vault.copy_credentials(
                source_tenant_id=tenant_id,
                target_tenant_id=f"{RESELLER_SCOPE_PREFIX}{email}",
                role=CLIENT,
            )
        except Exception as exc:
            # Propagation is best-effort; the account already exists.
            logger.warning("credential_propagation_failed tenant=%s error=%s", tenant_id, type(exc).__name__)
            return
        if not copied:
            logger.warning("credential_propagation_skipped tenant=%s reason=no_client_credential", tenant_id)

    def _handle_failure(self, tenant_id: str, store_handle: Any, event_id: Any, stats: ProvisioningStats) -> None:
        key = (tenant_id, str(event_id))
        if self.failure_policy == "retry_limited":
            with self._lock:
                attempts = self._attempts.get(key, 0) + 1
                exhausted = attempts >= self.max_attempts
                if exhausted:
                    self._attempts.pop(key, None)
                else:
                    self._attempts[key] = attempts
            if not exhausted:
                stats.deferred += 1
                logger.info("event_deferred tenant=%s event=%s attempt=%s", tenant_id, event_id, attempts)
                return
        stats.failed += 1
        self._mark(store_handle, event_id, "error")

    def process(self, tenant_id: str, store_handle: Any) -> int:
        stats = ProvisioningStats()
        self.last_stats = stats
        directory = self._account_directory()
        if directory is None:
            logger.info("provisioning_skipped tenant=%s reason=master_not_configured", tenant_id)
            return 0

        events = store_handle.select(
            self._table,
            columns="*",
            filters=[eq("status", "pending"), eq("entity_type", self.entity_type)],
            order="created_at",
            limit=self.batch_size,
        )
        stats.fetched = len(events)
        for event in events:
            event_id = event.get("id")
            try:
                payload = decode_payload(event.get("payload"))
            except InvalidPayloadError as exc:
                stats.malformed += 1
                stats.failed += 1
                logger.warning("event_malformed tenant=%s event=%s reason=%s", tenant_id, event_id, exc.message)
                self._mark(store_handle, event_id, "error")
                continue

            try:
                _, created = directory.create_downstream_account(
                    admin_id=tenant_id,
                    email=payload["email"],
                    national_id=payload["cpf"],
                    name=payload["nome"],
                )
            except Exception as exc:
                # One failing event must not stop the batch.
                logger.warning(
                    "event_failed tenant=%s event=%s error=%s",
                    tenant_id,
                    event_id,
                    getattr(exc, "code", type(exc).__name__),
                )
                self._handle_failure(tenant_id, store_handle, event_id, stats)
                continue

            if created:
                self._propagate_credentials(tenant_id, payload["email"])
            if self._mark(store_handle, event_id, "processed"):
                stats.processed += 1
                with self._lock:
                    self._attempts.pop((tenant_id, str(event_id)), None)

        if stats.fetched:
            logger.info("provisioning_batch tenant=%s stats=%s", tenant_id, stats.as_dict())
        return stats.processed

    def requeue_failed(self, tenant_id: str, store_handle: Any, event_ids: list[str] | None = None) -> int:
        """Move ``error`` events of the known entity type back to ``pending``."""
        filters = [eq("status", "error"), eq("entity_type", self.entity_type)]
        if event_ids is not None:
            if not event_ids:
                return 0
            filters.append(in_("id", event_ids))
        updated = store_handle.update(self._table, values={"status": "pending"}, filters=filters)
        with self._lock:
            for row in updated:
                self._attempts.pop((tenant_id, str(row.get("id"))), None)
        logger.info("events_requeued tenant=%s count=%s", tenant_id, len(updated))
        return len(updated)
