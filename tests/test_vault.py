from __future__ import annotations

import pytest

from conftest import TEST_KEY, client_store, make_key, master_store
from tenant_sync.crypto import SecretCipher
from tenant_sync.remote_store import InMemoryRemoteStore, RemoteStoreFactory
from tenant_sync.repositories import InMemoryCredentialsRepository
from tenant_sync.vault import CLIENT, MASTER, CredentialVault, classify_secret, normalize_url


def _vault(environ: dict[str, str] | None = None) -> tuple[CredentialVault, InMemoryCredentialsRepository]:
    repo = InMemoryCredentialsRepository()
    factory = RemoteStoreFactory(timeout_s=1.0, builder=lambda url, key, timeout_s: InMemoryRemoteStore())
    vault = CredentialVault(repository=repo, cipher=SecretCipher(TEST_KEY), store_factory=factory, environ=environ or {})
    return vault, repo


def test_classify_secret_reads_role_claim():
    assert classify_secret(make_key("service_role")) == "elevated"
    assert classify_secret(make_key("anon")) == "anon"
    assert classify_secret(make_key("authenticated")) == "unknown"
    assert classify_secret("not-a-jwt") == "malformed"
    assert classify_secret("sb_secret_abc123") == "elevated"


def test_normalize_url_adds_scheme_and_strips_slashes():
    assert normalize_url(" abc.supabase.co// ") == "https://abc.supabase.co"
    assert normalize_url("http://localhost:54321/") == "http://localhost:54321"
    assert normalize_url("") == ""


def test_strict_resolution_never_crosses_tenants():
    vault, _ = _vault()
    key_a = make_key()
    vault.configure(tenant_id="tenant_a", role=CLIENT, url="https://a.example.test", secret_key=key_a)

    record = vault.resolve_strict("tenant_a", CLIENT)
    assert record is not None
    assert record.url == "https://a.example.test"
    assert record.secret_key == key_a
    assert record.source == "configured"
    assert vault.resolve_strict("tenant_b", CLIENT) is None
    assert vault.resolve_strict("tenant_a", MASTER) is None


def test_strict_resolution_ignores_environment_and_system_rows():
    vault, _ = _vault({"SUPABASE_URL": "https://env.example.test", "SUPABASE_SERVICE_ROLE_KEY": make_key()})
    vault.configure(tenant_id="system", role=CLIENT, url="https://system.example.test", secret_key=make_key())
    assert vault.resolve_strict("tenant_a", CLIENT) is None


def test_permissive_resolution_order_tenant_system_environment():
    env = {"SUPABASE_MASTER_URL": "env.example.test/", "SUPABASE_MASTER_SERVICE_ROLE_KEY": make_key()}
    vault, _ = _vault(env)

    env_record = vault.resolve_permissive("tenant_a", MASTER)
    assert env_record is not None
    assert env_record.source == "environmentFallback"
    assert env_record.url == "https://env.example.test"

    vault.configure(tenant_id="system", role=MASTER, url="https://system.example.test", secret_key=make_key())
    assert vault.resolve_permissive("tenant_a", MASTER).url == "https://system.example.test"
    assert vault.resolve_permissive(None, MASTER).url == "https://system.example.test"

    vault.configure(tenant_id="tenant_a", role=MASTER, url="https://tenant-a.example.test", secret_key=make_key())
    assert vault.resolve_permissive("tenant_a", MASTER).url == "https://tenant-a.example.test"
    assert vault.resolve_permissive("tenant_b", MASTER).url == "https://system.example.test"


def test_permissive_resolution_returns_none_when_nothing_configured():
    vault, _ = _vault()
    assert vault.resolve_permissive(None, CLIENT) is None


def test_secrets_are_encrypted_at_rest_and_hidden_from_repr():
    vault, repo = _vault()
    key = make_key()
    record = vault.configure(tenant_id="tenant_a", role=CLIENT, url="https://a.example.test", secret_key=key)

    row = repo.get(tenant_id="tenant_a", store_role=CLIENT)
    assert row is not None
    assert key not in row["secret_key"]
    assert ":" in row["url"]
    assert key not in repr(record)


def test_legacy_plaintext_rows_are_accepted():
    vault, repo = _vault()
    key = make_key()
    repo.upsert(tenant_id="tenant_a", store_role=CLIENT, url="https://legacy.example.test/", secret_key=key)
    record = vault.resolve_strict("tenant_a", CLIENT)
    assert record is not None
    assert record.url == "https://legacy.example.test"
    assert record.secret_key == key


def test_undecryptable_row_resolves_to_none():
    vault, repo = _vault()
    repo.upsert(tenant_id="tenant_a", store_role=CLIENT, url="zz:zz", secret_key="zz:zz")
    assert vault.resolve_strict("tenant_a", CLIENT) is None


def test_wrong_privilege_key_still_resolves_but_is_never_cached(caplog):
    vault, _ = _vault()
    vault.configure(tenant_id="tenant_a", role=CLIENT, url="https://a.example.test", secret_key=make_key("anon"))
    record = vault.resolve_strict("tenant_a", CLIENT)
    assert record is not None
    assert record.privilege == "anon"
    assert "credential_wrong_privilege" in caplog.text
    assert vault.handle_for(record) is not vault.handle_for(record)


def test_handles_are_cached_until_reconfigured():
    vault, _ = _vault()
    vault.configure(tenant_id="tenant_a", role=CLIENT, url="https://a.example.test", secret_key=make_key())
    record = vault.resolve_strict("tenant_a", CLIENT)
    first = vault.handle_for(record)
    assert vault.handle_for(vault.resolve_strict("tenant_a", CLIENT)) is first

    vault.configure(tenant_id="tenant_a", role=CLIENT, url="https://a.example.test", secret_key=make_key())
    assert vault.handle_for(vault.resolve_strict("tenant_a", CLIENT)) is not first


def test_invalidate_only_touches_the_given_tenant(harness):
    harness.attach("tenant_a", CLIENT, client_store())
    harness.attach("tenant_b", CLIENT, client_store())
    handle_b = harness.vault.handle_for(harness.vault.resolve_strict("tenant_b", CLIENT))
    harness.vault.handle_for(harness.vault.resolve_strict("tenant_a", CLIENT))

    assert harness.vault.invalidate("tenant_a") == 1
    assert harness.vault.handle_for(harness.vault.resolve_strict("tenant_b", CLIENT)) is handle_b


def test_copy_credentials_and_list_tenants(harness):
    harness.attach("tenant_a", CLIENT, client_store())
    harness.attach("system", MASTER, master_store())

    assert harness.vault.copy_credentials(
        source_tenant_id="tenant_a", target_tenant_id="reseller:ana@example.com", role=CLIENT
    )
    copied = harness.vault.resolve_strict("reseller:ana@example.com", CLIENT)
    assert copied is not None
    assert copied.url == "https://tenant_a-client.example.test"
    assert harness.vault.copy_credentials(source_tenant_id="tenant_x", target_tenant_id="t", role=CLIENT) is False
    assert harness.vault.list_tenants(CLIENT) == ["tenant_a"]
    assert harness.vault.list_tenants(MASTER) == []


def test_configure_rejects_bad_input():
    vault, _ = _vault()
    with pytest.raises(ValueError, match="unsupported store role"):
        vault.configure(tenant_id="tenant_a", role="other", url="https://a", secret_key="k")
    with pytest.raises(ValueError, match="required"):
        vault.configure(tenant_id="tenant_a", role=CLIENT, url=" ", secret_key="k")
