from __future__ import annotations

import pytest

from conftest import client_store, make_key, master_store, now_iso
from tenant_sync.remote_store import RemoteStoreFactory
from tenant_sync.runtime import create_repositories_from_env, create_runtime_from_env
from tenant_sync.settings import SyncSettings
from tenant_sync.vault import CLIENT, MASTER


def test_create_repositories_rejects_unknown_backend():
    settings = SyncSettings.from_env({"SYNC_REPOSITORY_BACKEND": "sqlite"})
    with pytest.raises(RuntimeError, match="unsupported repository backend"):
        create_repositories_from_env(settings)


def test_create_repositories_postgres_requires_dsn():
    settings = SyncSettings.from_env({"SYNC_REPOSITORY_BACKEND": "postgres"})
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_repositories_from_env(settings)


def test_memory_runtime_wires_scheduler_and_file_state(tmp_path):
    env = {
        "SYNC_DATA_DIR": str(tmp_path),
        "SYNC_EVENT_FAILURE_POLICY": "retry_limited",
        "SYNC_GLOBAL_PASS": "false",
    }
    runtime = create_runtime_from_env(env)

    assert runtime.settings.data_dir == tmp_path
    assert runtime.processed_sets.backend == "file"
    assert runtime.event_processor.failure_policy == "retry_limited"
    assert runtime.scheduler.include_global_pass is False
    assert runtime.reconciler.state()["totalProcessed"] == 0
    runtime.scheduler.close()


def test_memory_runtime_end_to_end_tick(tmp_path):
    stores = {
        "https://client.example.test": client_store(full=True),
        "https://master.example.test": master_store(),
    }
    factory = RemoteStoreFactory(timeout_s=2.0, builder=lambda url, _key, _timeout: stores[url])
    runtime = create_runtime_from_env(
        {"SYNC_DATA_DIR": str(tmp_path), "SYNC_PROCESSED_BACKEND": "memory"},
        store_factory=factory,
    )
    runtime.vault.configure(
        tenant_id="tenant_a", role=CLIENT, url="client.example.test", secret_key=make_key("service_role")
    )
    runtime.vault.configure(
        tenant_id="system", role=MASTER, url="master.example.test", secret_key=make_key("service_role")
    )
    stores["https://client.example.test"].insert(
        "integration_queue",
        row={
            "id": "evt-1",
            "entity_type": "nova_revendedora",
            "payload": '{"email": "Ana@Example.com", "cpf": "123.456.789-01", "nome": "Ana"}',
            "status": "pending",
            "created_at": now_iso(),
        },
    )

    stats = runtime.scheduler.run_tick()
    runtime.scheduler.close()

    assert stats["tenants"] == 1
    assert stats["events_processed"] == 1
    accounts = stores["https://master.example.test"].rows("revendedoras")
    assert accounts[0]["email"] == "ana@example.com"
    assert accounts[0]["admin_id"] == "tenant_a"
    assert stores["https://client.example.test"].rows("integration_queue")[0]["status"] == "processed"
    assert not (tmp_path / "cpf_compliance_poller_state.json").exists()
    assert runtime.vault.list_tenants(CLIENT) == ["tenant_a"]
    assert runtime.vault.resolve_strict("reseller:ana@example.com", CLIENT) is not None
