from __future__ import annotations

import json
import threading

import pytest
import requests

from tenant_sync.errors import CredentialRejectedError, RemoteUnavailableError, SchemaMismatchError, SyncError
from tenant_sync.remote_store import (
    BoundedStore,
    InMemoryRemoteStore,
    PostgrestStore,
    RemoteStoreFactory,
    SchemaCapabilities,
    any_of,
    eq,
    gte,
    in_,
    is_null,
    not_null,
    render_filters,
)


class FakeResponse:
    def __init__(self, status_code: int, body=None):
        self.status_code = status_code
        self._body = body
        self.content = b"" if body is None else json.dumps(body).encode("utf-8")
        self.text = self.content.decode("utf-8")

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls: list[dict] = []

    def request(self, method, url, *, params, json, headers, timeout):
        self.calls.append(
            {"method": method, "url": url, "params": params, "json": json, "headers": headers, "timeout": timeout}
        )
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_render_filters_uses_postgrest_operators():
    params = render_filters(
        [
            eq("status", "pending"),
            in_("status", ["approved", "rejected"]),
            not_null("telefone"),
            gte("updated_at", "2026-01-01T00:00:00+00:00"),
            any_of(is_null("processado_whatsapp"), eq("processado_whatsapp", False)),
            any_of(eq("email", "ana@example.com"), eq("cpf", "12345678901")),
        ]
    )
    assert params == [
        ("status", "eq.pending"),
        ("status", "in.(approved,rejected)"),
        ("telefone", "not.is.null"),
        ("updated_at", "gte.2026-01-01T00:00:00+00:00"),
        ("or", "(processado_whatsapp.is.null,processado_whatsapp.eq.false)"),
        ("or", '(email.eq."ana@example.com",cpf.eq.12345678901)'),
    ]


def test_postgrest_select_sends_keys_and_query():
    session = FakeSession(FakeResponse(200, [{"id": 1}]))
    store = PostgrestStore(url="https://abc.example.test/", secret_key="secret-key", timeout_s=3.0, session=session)

    rows = store.select("integration_queue", columns=["id", "status"], filters=[eq("status", "pending")], order="created_at", limit=50)

    assert rows == [{"id": 1}]
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://abc.example.test/rest/v1/integration_queue"
    assert ("select", "id,status") in call["params"]
    assert ("order", "created_at.asc") in call["params"]
    assert ("limit", "50") in call["params"]
    assert call["headers"]["apikey"] == "secret-key"
    assert call["headers"]["Authorization"] == "Bearer secret-key"
    assert call["timeout"] == 3.0
    assert not any(name == "offset" for name, _ in call["params"])

    store.select("integration_queue", columns="id", order="created_at", limit=50, offset=100)
    assert ("offset", "100") in session.calls[1]["params"]


def test_postgrest_update_requires_filters_and_asks_for_representation():
    session = FakeSession(FakeResponse(200, [{"id": 7, "status": "processed"}]))
    store = PostgrestStore(url="https://abc.example.test", secret_key="k", session=session)
    with pytest.raises(ValueError, match="without filters"):
        store.update("integration_queue", values={"status": "processed"}, filters=[])

    updated = store.update("integration_queue", values={"status": "processed"}, filters=[eq("id", 7)])
    assert updated == [{"id": 7, "status": "processed"}]
    assert session.calls[0]["method"] == "PATCH"
    assert session.calls[0]["headers"]["Prefer"] == "return=representation"


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (FakeResponse(400, {"code": "42703", "message": "column telefone does not exist"}), SchemaMismatchError),
        (FakeResponse(404, {"code": "PGRST205", "message": "table not found"}), SchemaMismatchError),
        (FakeResponse(401, {"message": "Invalid API key"}), CredentialRejectedError),
        (FakeResponse(403, {"code": "42501", "message": "permission denied"}), CredentialRejectedError),
        (FakeResponse(503, {"message": "unavailable"}), RemoteUnavailableError),
    ],
)
def test_postgrest_maps_error_responses(response, expected):
    store = PostgrestStore(url="https://abc.example.test", secret_key="k", session=FakeSession(response))
    with pytest.raises(expected):
        store.select("cpf_compliance_results")


def test_postgrest_maps_transport_failures_to_unavailable():
    store = PostgrestStore(
        url="https://abc.example.test",
        secret_key="k",
        session=FakeSession(requests.exceptions.ConnectTimeout("slow")),
    )
    with pytest.raises(RemoteUnavailableError) as exc_info:
        store.select("cpf_compliance_results")
    assert exc_info.value.code == "STORE_TIMEOUT"
    assert exc_info.value.retryable is True


def test_postgrest_other_client_errors_are_not_retryable():
    store = PostgrestStore(
        url="https://abc.example.test",
        secret_key="k",
        session=FakeSession(FakeResponse(400, {"code": "22P02", "message": "invalid input"})),
    )
    with pytest.raises(SyncError) as exc_info:
        store.select("cpf_compliance_results")
    assert exc_info.value.code == "STORE_REQUEST_FAILED"
    assert exc_info.value.retryable is False


def test_inmemory_store_filters_orders_and_rejects_unknown_columns():
    store = InMemoryRemoteStore()
    store.create_table(
        "integration_queue",
        columns=["id", "status", "created_at"],
        rows=[
            {"id": 2, "status": "pending", "created_at": "2026-01-02"},
            {"id": 1, "status": "pending", "created_at": "2026-01-01"},
            {"id": 3, "status": "processed", "created_at": "2026-01-03"},
        ],
    )
    rows = store.select("integration_queue", columns=["id"], filters=[eq("status", "pending")], order="created_at")
    assert rows == [{"id": 1}, {"id": 2}]
    assert store.select("integration_queue", columns=["id"], order="created_at", limit=1, offset=1) == [{"id": 2}]

    with pytest.raises(SchemaMismatchError):
        store.select("integration_queue", columns=["id", "telefone"])
    with pytest.raises(SchemaMismatchError):
        store.select("missing_table")


def test_bounded_store_turns_slow_calls_into_unavailable():
    release = threading.Event()

    class SlowStore(InMemoryRemoteStore):
        def select(self, table, **kwargs):
            release.wait(5)
            return []

    bounded = BoundedStore(SlowStore(), timeout_s=0.05)
    try:
        with pytest.raises(RemoteUnavailableError) as exc_info:
            bounded.select("anything")
        assert exc_info.value.code == "STORE_TIMEOUT"
    finally:
        release.set()


def test_factory_caches_by_url_and_secret():
    built: list[tuple[str, str]] = []

    def builder(url, secret_key, timeout_s):
        built.append((url, secret_key))
        return InMemoryRemoteStore()

    factory = RemoteStoreFactory(timeout_s=1.0, builder=builder)
    first = factory.get("https://a.example.test", "key-1")
    assert factory.get("https://a.example.test", "key-1") is first
    assert factory.get("https://a.example.test", "key-2") is not first
    assert len(factory) == 2
    assert len(built) == 2

    assert factory.evict("https://a.example.test", "key-1") is True
    assert factory.get("https://a.example.test", "key-1") is not first
    assert factory.build("https://b.example.test", "key-3") is not factory.build("https://b.example.test", "key-3")


def test_schema_capabilities_probe_once_per_scope():
    store = InMemoryRemoteStore()
    store.create_table("cpf_compliance_results", columns=["id", "cpf", "status"])
    caps = SchemaCapabilities()

    assert caps.supports(scope="tenant_a", store=store, table="cpf_compliance_results", columns=("telefone",)) is False
    assert caps.supports(scope="tenant_a", store=store, table="cpf_compliance_results", columns=("telefone",)) is False
    assert store.calls.count(("select", "cpf_compliance_results")) == 1

    caps.forget(scope="tenant_a")
    caps.supports(scope="tenant_a", store=store, table="cpf_compliance_results", columns=("telefone",))
    assert store.calls.count(("select", "cpf_compliance_results")) == 2
