from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

import jwt

from tenant_sync.crypto import SecretCipher, looks_plaintext
from tenant_sync.errors import DecryptionError
from tenant_sync.normalize import mask
from tenant_sync.remote_store import RemoteStoreFactory

logger = logging.getLogger(__name__)

StoreRole = Literal["master", "client"]
CredentialSource = Literal["configured", "environmentFallback"]
KeyPrivilege = Literal["elevated", "anon", "unknown", "malformed"]

MASTER: StoreRole = "master"
CLIENT: StoreRole = "client"
STORE_ROLES: tuple[str, ...] = (MASTER, CLIENT)
SYSTEM_TENANT = "system"
RESELLER_SCOPE_PREFIX = "reseller:"

_ENV_FALLBACK: dict[str, tuple[str, str]] = {
    MASTER: ("SUPABASE_MASTER_URL", "SUPABASE_MASTER_SERVICE_ROLE_KEY"),
    CLIENT: ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"),
}


@dataclass(frozen=True)
class CredentialRecord:
    tenant_id: str | None
    store_role: str
    url: str
    secret_key: str = field(repr=False)
    source: CredentialSource = "configured"
    privilege: KeyPrivilege = "unknown"

    @property
    def elevated(self) -> bool:
        return self.privilege == "elevated"


def classify_secret(secret_key: str) -> KeyPrivilege:
    """Inspect the unverified ``role`` claim of a store key."""
    value = str(secret_key or "").strip()
    if value.startswith("sb_secret_"):
        return "elevated"
    if value.startswith("sb_publishable_"):
        return "anon"
    try:
        claims = jwt.decode(value, options={"verify_signature": False})
    except jwt.PyJWTError:
        return "malformed"
    role = str(claims.get("role") or "")
    if role == "service_role":
        return "elevated"
    if role == "anon":
        return "anon"
    return "unknown"


def normalize_url(raw: str) -> str:
    value = str(raw or "").strip()
    if not value:
        return ""
    if not value.startswith(("http://", "https://")):
        value = f"https://{value}"
    return value.rstrip("/")


class CredentialVault:
    """Resolves per-tenant store credentials and hands out store handles.

    ``resolve_strict`` only ever reads the tenant's own row. ``resolve_permissive``
    walks tenant row, then the reserved ``system`` row, then process environment,
    and is meant for background jobs only.
    """

    def __init__(
        self,
        *,
        repository: Any,
        cipher: SecretCipher,
        store_factory: RemoteStoreFactory,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._store_factory = store_factory
        self._environ = os.environ if environ is None else environ
        self._lock = threading.Lock()
        self._issued: dict[str, set[tuple[str, str]]] = {}

    def _reveal(self, value: str) -> str:
        if not value or looks_plaintext(value):
            return value
        return self._cipher.decrypt(value)

    def _record_from_row(
        self,
        row: dict[str, Any],
        *,
        tenant_id: str | None,
        role: str,
    ) -> CredentialRecord | None:
        try:
            url = normalize_url(self._reveal(str(row.get("url") or "")))
            secret_key = self._reveal(str(row.get("secret_key") or "")).strip()
        except DecryptionError as exc:
            logger.warning(
                "credential_decrypt_failed tenant=%s role=%s code=%s",
                row.get("tenant_id"),
                role,
                exc.code,
            )
            return None
        if not url or not secret_key:
            return None
        return self._build_record(
            tenant_id=tenant_id,
            role=role,
            url=url,
            secret_key=secret_key,
            source="configured",
        )

    def _build_record(
        self,
        *,
        tenant_id: str | None,
        role: str,
        url: str,
        secret_key: str,
        source: CredentialSource,
    ) -> CredentialRecord:
        privilege = classify_secret(secret_key)
        if privilege != "elevated":
            logger.warning(
                "credential_wrong_privilege tenant=%s role=%s privilege=%s key=%s",
                tenant_id,
                role,
                privilege,
                mask(secret_key, keep=6),
            )
        return CredentialRecord(
            tenant_id=tenant_id,
            store_role=role,
            url=url,
            secret_key=secret_key,
            source=source,
            privilege=privilege,
        )

    def resolve_strict(self, tenant_id: str, role: str) -> CredentialRecord | None:
        if role not in STORE_ROLES:
            raise ValueError(f"unsupported store role: {role}")
        if not str(tenant_id or "").strip():
            return None
        row = self._repository.get(tenant_id=tenant_id, store_role=role)
        if row is None:
            logger.info("credential_not_configured tenant=%s role=%s", tenant_id, role)
            return None
        return self._record_from_row(row, tenant_id=tenant_id, role=role)

    def resolve_permissive(self, tenant_id: str | None, role: str) -> CredentialRecord | None:
        if role not in STORE_ROLES:
            raise ValueError(f"unsupported store role: {role}")
        for candidate in (tenant_id, SYSTEM_TENANT):
            if not candidate:
                continue
            row = self._repository.get(tenant_id=candidate, store_role=role)
            if row is None:
                continue
            record = self._record_from_row(row, tenant_id=tenant_id, role=role)
            if record is not None:
                logger.info("credential_resolved tenant=%s role=%s path=%s", tenant_id, role, candidate)
                return record

        url_var, key_var = _ENV_FALLBACK[role]
        url = normalize_url(str(self._environ.get(url_var, "")))
        secret_key = str(self._environ.get(key_var, "")).strip()
        if url and secret_key:
            logger.info("credential_resolved tenant=%s role=%s path=environment", tenant_id, role)
            return self._build_record(
                tenant_id=tenant_id,
                role=role,
                url=url,
                secret_key=secret_key,
                source="environmentFallback",
            )
        logger.info("credential_not_configured tenant=%s role=%s path=permissive", tenant_id, role)
        return None

    def handle_for(self, record: CredentialRecord) -> Any:
        """Return a store handle; only elevated keys get a cached handle."""
        if not record.elevated:
            return self._store_factory.build(record.url, record.secret_key)
        handle = self._store_factory.get(record.url, record.secret_key)
        with self._lock:
            self._issued.setdefault(record.tenant_id or SYSTEM_TENANT, set()).add((record.url, record.secret_key))
        return handle

    def invalidate(self, tenant_id: str | None) -> int:
        scope = tenant_id or SYSTEM_TENANT
        with self._lock:
            issued = self._issued.pop(scope, set())
        evicted = sum(1 for url, secret_key in issued if self._store_factory.evict(url, secret_key))
        if evicted:
            logger.info("credential_handles_invalidated tenant=%s count=%s", scope, evicted)
        return evicted

    def configure(self, *, tenant_id: str, role: str, url: str, secret_key: str) -> CredentialRecord:
        if role not in STORE_ROLES:
            raise ValueError(f"unsupported store role: {role}")
        if not str(tenant_id or "").strip():
            raise ValueError("tenant_id must not be empty")
        normalized_url = normalize_url(url)
        secret = str(secret_key or "").strip()
        if not normalized_url or not secret:
            raise ValueError("url and secret_key are required")
        self._repository.upsert(
            tenant_id=tenant_id,
            store_role=role,
            url=self._cipher.encrypt(normalized_url),
            secret_key=self._cipher.encrypt(secret),
        )
        self.invalidate(tenant_id)
        logger.info("credential_configured tenant=%s role=%s", tenant_id, role)
        return self._build_record(
            tenant_id=tenant_id,
            role=role,
            url=normalized_url,
            secret_key=secret,
            source="configured",
        )

    def copy_credentials(self, *, source_tenant_id: str, target_tenant_id: str, role: str) -> bool:
        """Copy a tenant's stored (still encrypted) credential into another scope."""
        row = self._repository.get(tenant_id=source_tenant_id, store_role=role)
        if row is None:
            return False
        self._repository.upsert(
            tenant_id=target_tenant_id,
            store_role=role,
            url=str(row.get("url") or ""),
            secret_key=str(row.get("secret_key") or ""),
        )
        self.invalidate(target_tenant_id)
        return True

    def list_tenants(self, role: str = CLIENT) -> list[str]:
        return [
            t
            for t in self._repository.list_tenants(store_role=role)
            if t != SYSTEM_TENANT and not t.startswith(RESELLER_SCOPE_PREFIX)
        ]
