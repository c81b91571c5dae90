from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from tenant_sync.crypto import SecretCipher
from tenant_sync.db.postgres import PostgresTxRunner
from tenant_sync.processed_set import PollerStateStore, ProcessedSetRegistry, create_processed_registry_from_env
from tenant_sync.provisioning import EventQueueProcessor
from tenant_sync.reconciler import ComplianceResultReconciler
from tenant_sync.remote_store import RemoteStoreFactory
from tenant_sync.repositories import (
    InMemoryCredentialsRepository,
    InMemoryLeadsRepository,
    InMemoryStageLabelsRepository,
    PostgresCredentialsRepository,
    PostgresLeadsRepository,
    PostgresStageLabelsRepository,
)
from tenant_sync.scheduler import PollScheduler
from tenant_sync.settings import SyncSettings
from tenant_sync.vault import CredentialVault


@dataclass
class Repositories:
    credentials: Any
    leads: Any
    labels: Any


@dataclass
class SyncRuntime:
    settings: SyncSettings
    vault: CredentialVault
    processed_sets: ProcessedSetRegistry
    event_processor: EventQueueProcessor
    reconciler: ComplianceResultReconciler
    scheduler: PollScheduler


def create_repositories_from_env(settings: SyncSettings) -> Repositories:
    backend = settings.repository_backend
    if backend == "memory":
        return Repositories(
            credentials=InMemoryCredentialsRepository(),
            leads=InMemoryLeadsRepository(),
            labels=InMemoryStageLabelsRepository(),
        )
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when SYNC_REPOSITORY_BACKEND=postgres")
        runner = PostgresTxRunner(settings.postgres_dsn, statement_timeout_ms=settings.db_statement_timeout_ms)
        return Repositories(
            credentials=PostgresCredentialsRepository(tx_runner=runner),
            leads=PostgresLeadsRepository(tx_runner=runner),
            labels=PostgresStageLabelsRepository(tx_runner=runner),
        )
    raise RuntimeError(f"unsupported repository backend: {backend}")


def create_runtime_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    repositories: Repositories | None = None,
    store_factory: RemoteStoreFactory | None = None,
    processed_sets: ProcessedSetRegistry | None = None,
) -> SyncRuntime:
    env = os.environ if environ is None else environ
    settings = SyncSettings.from_env(env)
    repos = repositories or create_repositories_from_env(settings)
    cipher = SecretCipher.from_env(env)
    vault = CredentialVault(
        repository=repos.credentials,
        cipher=cipher,
        store_factory=store_factory or RemoteStoreFactory(timeout_s=settings.store_timeout_s),
        environ=env,
    )
    registry = processed_sets or create_processed_registry_from_env(settings)
    state = PollerStateStore(settings.state_file if settings.processed_backend == "file" else None)
    event_processor = EventQueueProcessor(
        vault=vault,
        table=settings.tables.queue,
        accounts_table=settings.tables.accounts,
        entity_type=settings.event_entity_type,
        batch_size=settings.batch_size,
        failure_policy=settings.event_failure_policy,
        max_attempts=settings.event_max_attempts,
    )
    reconciler = ComplianceResultReconciler(
        vault=vault,
        leads=repos.leads,
        labels=repos.labels,
        processed_sets=registry,
        state=state,
        cipher=cipher,
        tables=settings.tables,
        batch_size=settings.batch_size,
        lookback_hours=settings.master_lookback_hours,
        resync_limit=settings.resync_limit,
        master_processed_column=settings.master_processed_column,
    )
    scheduler = PollScheduler(
        vault=vault,
        event_processor=event_processor,
        reconciler=reconciler,
        interval_s=settings.poll_interval_s,
        initial_delay_s=settings.initial_delay_s,
        tenant_concurrency=settings.tenant_concurrency,
        tenant_timeout_s=settings.tenant_timeout_s,
        include_global_pass=settings.global_pass,
    )
    return SyncRuntime(
        settings=settings,
        vault=vault,
        processed_sets=registry,
        event_processor=event_processor,
        reconciler=reconciler,
        scheduler=scheduler,
    )
