from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from tenant_sync.crypto import SecretCipher
from tenant_sync.errors import CredentialRejectedError, DecryptionError, SchemaMismatchError, SyncError
from tenant_sync.matching import (
    CheckSubject,
    MatchContext,
    MatcherChain,
    SubmissionLookup,
    client_result_chain,
    master_check_chain,
)
from tenant_sync.normalize import digits_only, mask, normalize_national_id
from tenant_sync.processed_set import PollerStateStore, ProcessedSetRegistry
from tenant_sync.remote_store import SchemaCapabilities, any_of, eq, gte, in_, is_null, not_null
from tenant_sync.settings import TableNames
from tenant_sync.vault import CLIENT, MASTER

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("approved", "rejected")
STAGE_FOR_STATUS = {"approved": "compliance-approved", "rejected": "compliance-rejected"}
LABEL_KEY_FOR_STATUS = {"approved": "compliance_approved", "rejected": "compliance_rejected"}
PLACEHOLDER_PREFIX = "client-"
MASTER_SCOPE = "master"

CLIENT_PHONE_COLUMN = "telefone"
CLIENT_PROCESSED_COLUMN = "processado_whatsapp"
CLIENT_MINIMAL_COLUMNS = ("id", "cpf", "status", "check_id", "data_consulta")


@dataclass
class ReconcileResult:
    processed_count: int = 0
    errors: int = 0
    error: str | None = None
    lead_updates: int = 0

    @property
    def success(self) -> bool:
        return self.error is None

    def fail(self, exc: SyncError) -> None:
        self.errors += 1
        self.error = f"{exc.code}: {exc.message}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed_count": self.processed_count,
            "errors": self.errors,
            "error": self.error,
            "lead_updates": self.lead_updates,
        }


def extract_national_id(check: dict[str, Any], cipher: SecretCipher) -> str:
    """Encrypted field first, then legacy ``person_cpf``, then the raw payload.

    Raises ``DecryptionError`` when the encrypted field is present but unreadable.
    """
    encrypted = str(check.get("cpf_encrypted") or "")
    if encrypted:
        return normalize_national_id(cipher.decrypt(encrypted))
    legacy = digits_only(check.get("person_cpf"))
    if legacy:
        return normalize_national_id(legacy)
    payload = check.get("payload")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return ""
    if isinstance(payload, dict):
        results = payload.get("Result")
        if isinstance(results, list) and results and isinstance(results[0], dict):
            basic = results[0].get("BasicData")
            if isinstance(basic, dict):
                return normalize_national_id(basic.get("CPF"))
    return ""


class ComplianceResultReconciler:
    """Propagates terminal compliance outcomes onto local leads.

    Pass A reads the tenant's own results table; pass B falls back to the
    master checks table and only runs when pass A processed nothing.
    """

    def __init__(
        self,
        *,
        vault: Any,
        leads: Any,
        labels: Any,
        processed_sets: ProcessedSetRegistry,
        state: PollerStateStore,
        cipher: SecretCipher,
        tables: TableNames | None = None,
        batch_size: int = 50,
        lookback_hours: int = 24,
        resync_limit: int = 500,
        master_processed_column: str = "processado",
        capabilities: SchemaCapabilities | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._vault = vault
        self._leads = leads
        self._labels = labels
        self._processed_sets = processed_sets
        self._state = state
        self._cipher = cipher
        self.tables = tables or TableNames()
        self.batch_size = max(1, int(batch_size))
        self.lookback_hours = max(1, int(lookback_hours))
        self.resync_limit = max(1, int(resync_limit))
        self.master_processed_column = master_processed_column
        self.capabilities = capabilities or SchemaCapabilities()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._client_chain: MatcherChain = client_result_chain()
        self._master_chain: MatcherChain = master_check_chain()

    def state(self) -> dict[str, Any]:
        return self._state.snapshot()

    def reconcile(self, tenant_id: str | None = None) -> ReconcileResult:
        result = ReconcileResult()
        try:
            if tenant_id:
                self._client_pass(tenant_id, result)
            if result.processed_count == 0:
                self._master_pass(tenant_id, result)
        finally:
            self._state.record_run(
                processed=result.processed_count,
                errors=result.errors,
                last_error=result.error,
            )
        logger.info("reconcile_done tenant=%s result=%s", tenant_id, result.as_dict())
        return result

    def _apply_to_leads(
        self,
        leads: list[dict[str, Any]],
        *,
        status: str,
        check_id: str,
        result: ReconcileResult,
    ) -> bool:
        genuine_id = check_id if check_id and not check_id.startswith(PLACEHOLDER_PREFIX) else ""
        now_iso = self._clock().isoformat()
        all_ok = True
        for lead in leads:
            lead_tenant = str(lead.get("tenant_id") or "")
            if not lead_tenant:
                continue
            if lead.get("compliance_status") == status and (
                not genuine_id or str(lead.get("linked_check_id") or "") == genuine_id
            ):
                logger.info("lead_already_current lead=%s status=%s", lead.get("id"), status)
                continue
            changes: dict[str, Any] = {
                "compliance_status": status,
                "pipeline_stage": STAGE_FOR_STATUS[status],
                "compliance_checked_at": now_iso,
            }
            if genuine_id:
                changes["linked_check_id"] = genuine_id
            try:
                label_id = self._labels.resolve_stage_label(tenant_id=lead_tenant, key=LABEL_KEY_FOR_STATUS[status])
                if label_id:
                    changes["stage_label_id"] = label_id
                updated = self._leads.apply_compliance(tenant_id=lead_tenant, lead_id=str(lead["id"]), changes=changes)
            except Exception as exc:
                # Lead store failures are per record; the check stays unprocessed.
                logger.warning("lead_update_failed lead=%s error=%s", lead.get("id"), type(exc).__name__)
                all_ok = False
                continue
            if updated is None:
                all_ok = False
                continue
            result.lead_updates += 1
            logger.info("lead_updated lead=%s tenant=%s status=%s", lead.get("id"), lead_tenant, status)
        return all_ok

    def _select_unprocessed(
        self,
        store: Any,
        table: str,
        *,
        already: set[str],
        columns: Any,
        filters: list[Any],
        order: str,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """Page through the table until a batch of rows outside ``already`` is collected."""
        collected: list[dict[str, Any]] = []
        offset = 0
        while len(collected) < self.batch_size:
            page = store.select(
                table,
                columns=columns,
                filters=filters,
                order=order,
                descending=descending,
                limit=self.batch_size,
                offset=offset,
            )
            collected.extend(r for r in page if str(r.get("id")) not in already)
            if len(page) < self.batch_size:
                break
            offset += len(page)
        return collected[: self.batch_size]

    def _fetch_client_rows(self, tenant_id: str, store: Any, processed: Any) -> tuple[list[dict[str, Any]], bool]:
        table = self.tables.compliance_results
        full_columns = (CLIENT_PHONE_COLUMN, CLIENT_PROCESSED_COLUMN)
        if self.capabilities.supports(scope=tenant_id, store=store, table=table, columns=full_columns):
            try:
                rows = store.select(
                    table,
                    columns="*",
                    filters=[
                        in_("status", TERMINAL_STATUSES),
                        not_null(CLIENT_PHONE_COLUMN),
                        any_of(is_null(CLIENT_PROCESSED_COLUMN), eq(CLIENT_PROCESSED_COLUMN, False)),
                    ],
                    order="data_consulta",
                    descending=True,
                    limit=self.batch_size,
                )
                return rows, True
            except SchemaMismatchError as exc:
                logger.warning("client_full_query_rejected tenant=%s reason=%s", tenant_id, exc.message)
                self.capabilities.forget(scope=tenant_id)

        rows = self._select_unprocessed(
            store,
            table,
            already=processed.load(),
            columns=list(CLIENT_MINIMAL_COLUMNS),
            filters=[in_("status", TERMINAL_STATUSES)],
            order="data_consulta",
            descending=True,
        )
        return rows, False

    def _mark_client_row(self, store: Any, row_id: Any, *, native: bool, processed: Any) -> None:
        if native:
            try:
                store.update(
                    self.tables.compliance_results,
                    values={CLIENT_PROCESSED_COLUMN: True},
                    filters=[eq("id", row_id)],
                )
                return
            except SchemaMismatchError:
                logger.warning("client_processed_flag_missing row=%s", row_id)
        processed.add(str(row_id))

    def _client_pass(self, tenant_id: str, result: ReconcileResult) -> None:
        record = self._vault.resolve_strict(tenant_id, CLIENT)
        if record is None:
            return
        store = self._vault.handle_for(record)
        processed = self._processed_sets.get(ProcessedSetRegistry.client_scope(tenant_id))
        submissions = SubmissionLookup(store, table=self.tables.submissions)
        try:
            rows, native = self._fetch_client_rows(tenant_id, store, processed)
        except CredentialRejectedError as exc:
            self._vault.invalidate(tenant_id)
            result.fail(exc)
            return
        except SyncError as exc:
            result.fail(exc)
            return

        ctx = MatchContext(leads=self._leads, tenant_id=tenant_id)
        for row in rows:
            row_id = row.get("id")
            status = str(row.get("status") or "")
            if status not in TERMINAL_STATUSES:
                continue
            national_id = normalize_national_id(row.get("cpf"))
            phone = str(row.get(CLIENT_PHONE_COLUMN) or "")
            try:
                if not native:
                    phone = submissions.phone_for(national_id)
                    if not phone:
                        logger.info("client_row_without_phone row=%s national_id=%s", row_id, mask(national_id))
                        processed.add(str(row_id))
                        continue
                subject = CheckSubject(
                    record_id=str(row_id),
                    status=status,
                    national_id=national_id,
                    phone=phone,
                    tenant_id=tenant_id,
                )
                _, leads = self._client_chain.match(subject, ctx)
                check_id = str(row.get("check_id") or f"{PLACEHOLDER_PREFIX}{row_id}")
                ok = self._apply_to_leads(leads, status=status, check_id=check_id, result=result)
                if not leads:
                    logger.info("client_row_unmatched row=%s", row_id)
                if ok:
                    self._mark_client_row(store, row_id, native=native, processed=processed)
                    result.processed_count += 1
                else:
                    result.errors += 1
            except SyncError as exc:
                logger.warning("client_row_failed tenant=%s row=%s code=%s", tenant_id, row_id, exc.code)
                result.fail(exc)

    def _master_store(self, tenant_id: str | None) -> Any | None:
        record = self._vault.resolve_permissive(tenant_id, MASTER)
        if record is None:
            return None
        return self._vault.handle_for(record)

    def _submission_lookup(self, tenant_id: str | None, cache: dict[str, SubmissionLookup | None]) -> Any:
        if not tenant_id:
            return None
        if tenant_id not in cache:
            record = self._vault.resolve_strict(tenant_id, CLIENT)
            cache[tenant_id] = (
                SubmissionLookup(self._vault.handle_for(record), table=self.tables.submissions)
                if record is not None
                else None
            )
        return cache[tenant_id]

    def _process_master_check(
        self,
        check: dict[str, Any],
        *,
        tenant_id: str | None,
        result: ReconcileResult,
        lookups: dict[str, SubmissionLookup | None],
    ) -> bool | None:
        """Returns True when handled, False on failure, None when skipped."""
        check_id = str(check.get("id") or "")
        status = str(check.get("status") or "")
        if not check_id or status not in TERMINAL_STATUSES:
            return None
        try:
            national_id = extract_national_id(check, self._cipher)
        except DecryptionError as exc:
            logger.warning("master_check_undecryptable check=%s code=%s", check_id, exc.code)
            result.errors += 1
            return None

        scope_tenant = tenant_id or (str(check.get("tenant_id") or "") or None)
        subject = CheckSubject(
            record_id=check_id,
            status=status,
            national_id=national_id,
            submission_id=str(check.get("submission_id") or ""),
            tenant_id=scope_tenant,
        )
        ctx = MatchContext(
            leads=self._leads,
            tenant_id=scope_tenant,
            submissions=self._submission_lookup(scope_tenant, lookups),
        )
        _, leads = self._master_chain.match(subject, ctx)
        if not leads:
            logger.info("master_check_unmatched check=%s", check_id)
            return True
        return self._apply_to_leads(leads, status=status, check_id=check_id, result=result)

    def _master_pass(self, tenant_id: str | None, result: ReconcileResult) -> None:
        store = self._master_store(tenant_id)
        if store is None:
            return
        table = self.tables.master_checks
        processed = self._processed_sets.get(MASTER_SCOPE)
        cutoff = (self._clock() - timedelta(hours=self.lookback_hours)).isoformat()
        filters = [in_("status", TERMINAL_STATUSES), gte("updated_at", cutoff)]
        if tenant_id:
            filters.append(eq("tenant_id", tenant_id))
        column = self.master_processed_column
        try:
            native = bool(column) and self.capabilities.supports(
                scope=MASTER_SCOPE, store=store, table=table, columns=(column,)
            )
            if native:
                filters.append(any_of(is_null(column), eq(column, False)))
                checks = store.select(table, columns="*", filters=filters, order="updated_at", limit=self.batch_size)
            else:
                checks = self._select_unprocessed(
                    store,
                    table,
                    already=processed.load(),
                    columns="*",
                    filters=filters,
                    order="updated_at",
                )
        except CredentialRejectedError as exc:
            self._vault.invalidate(tenant_id)
            result.fail(exc)
            return
        except SyncError as exc:
            result.fail(exc)
            return

        lookups: dict[str, SubmissionLookup | None] = {}
        for check in checks:
            check_id = str(check.get("id") or "")
            try:
                outcome = self._process_master_check(check, tenant_id=tenant_id, result=result, lookups=lookups)
                if outcome is None:
                    continue
                if not outcome:
                    result.errors += 1
                    continue
                if native:
                    store.update(table, values={column: True}, filters=[eq("id", check_id)])
                else:
                    processed.add(check_id)
                result.processed_count += 1
            except SyncError as exc:
                logger.warning("master_check_failed check=%s code=%s", check_id, exc.code)
                result.fail(exc)

    def resync_all(self, limit: int | None = None) -> ReconcileResult:
        """Re-run matching over the latest terminal master checks, ignoring markers."""
        result = ReconcileResult()
        store = self._master_store(None)
        if store is None:
            result.error = "master store not configured"
            return result
        try:
            checks = store.select(
                self.tables.master_checks,
                columns="*",
                filters=[in_("status", TERMINAL_STATUSES)],
                order="consulted_at",
                descending=True,
                limit=max(1, int(limit or self.resync_limit)),
            )
        except SyncError as exc:
            result.fail(exc)
            return result
        lookups: dict[str, SubmissionLookup | None] = {}
        for check in checks:
            try:
                outcome = self._process_master_check(check, tenant_id=None, result=result, lookups=lookups)
            except SyncError as exc:
                result.fail(exc)
                continue
            if outcome:
                result.processed_count += 1
            elif outcome is False:
                result.errors += 1
        logger.info("resync_done result=%s", result.as_dict())
        return result

    def sync_master_to_client(self, tenant_id: str) -> dict[str, Any]:
        """Copy the tenant's master checks into its own results table."""
        summary: dict[str, Any] = {"success": False, "synced": 0, "skipped": 0, "errors": 0, "message": ""}
        master = self._master_store(tenant_id)
        if master is None:
            summary["message"] = "master store not configured"
            return summary
        client_record = self._vault.resolve_strict(tenant_id, CLIENT)
        if client_record is None:
            summary["message"] = "client store not configured"
            return summary
        client = self._vault.handle_for(client_record)
        table = self.tables.compliance_results
        try:
            checks = master.select(
                self.tables.master_checks,
                columns="*",
                filters=[eq("tenant_id", tenant_id)],
                order="consulted_at",
                descending=True,
                limit=self.resync_limit,
            )
            ids = [str(c.get("id")) for c in checks if c.get("id") is not None]
            existing = {
                str(row.get("check_id"))
                for row in (client.select(table, columns=["check_id"], filters=[in_("check_id", ids)]) if ids else [])
            }
        except SyncError as exc:
            summary["errors"] += 1
            summary["message"] = f"{exc.code}: {exc.message}"
            return summary

        for check in checks:
            check_id = str(check.get("id") or "")
            if not check_id or check_id in existing:
                summary["skipped"] += 1
                continue
            try:
                national_id = extract_national_id(check, self._cipher)
            except DecryptionError:
                national_id = ""
            if not national_id:
                logger.warning("sync_check_without_national_id check=%s", check_id)
                summary["errors"] += 1
                continue
            try:
                client.insert(
                    table,
                    row={
                        "cpf": national_id,
                        "status": check.get("status"),
                        "check_id": check_id,
                        "data_consulta": check.get("consulted_at"),
                    },
                )
            except SyncError as exc:
                logger.warning("sync_check_insert_failed check=%s code=%s", check_id, exc.code)
                summary["errors"] += 1
                continue
            summary["synced"] += 1
        summary["success"] = True
        summary["message"] = f"{summary['synced']} checks synced, {summary['errors']} errors"
        logger.info("sync_master_to_client tenant=%s summary=%s", tenant_id, summary)
        return summary
