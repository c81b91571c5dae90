import pathlib
import sys
from datetime import UTC, datetime

import jwt
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenant_sync.crypto import SecretCipher
from tenant_sync.processed_set import PollerStateStore, ProcessedSetRegistry
from tenant_sync.reconciler import ComplianceResultReconciler
from tenant_sync.remote_store import InMemoryRemoteStore, RemoteStoreFactory
from tenant_sync.repositories import (
    InMemoryCredentialsRepository,
    InMemoryLeadsRepository,
    InMemoryStageLabelsRepository,
)
from tenant_sync.vault import CredentialVault

SIGNING_SECRET = "test-signing-secret-at-least-32-bytes"
TEST_KEY = b"k" * 32

CLIENT_RESULT_COLUMNS = ["id", "cpf", "telefone", "status", "check_id", "data_consulta", "processado_whatsapp"]
MINIMAL_RESULT_COLUMNS = ["id", "cpf", "status", "check_id", "data_consulta"]
SUBMISSION_COLUMNS = ["id", "contact_cpf", "contact_phone", "created_at"]
QUEUE_COLUMNS = ["id", "entity_type", "payload", "status", "created_at"]
MASTER_CHECK_COLUMNS = [
    "id",
    "cpf_hash",
    "cpf_encrypted",
    "person_cpf",
    "tenant_id",
    "submission_id",
    "status",
    "payload",
    "consulted_at",
    "updated_at",
]
ACCOUNT_COLUMNS = ["id", "admin_id", "email", "cpf", "nome", "status"]


def make_key(role: str = "service_role") -> str:
    return jwt.encode({"role": role, "iss": "supabase"}, SIGNING_SECRET, algorithm="HS256")


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def client_store(*, full: bool = True) -> InMemoryRemoteStore:
    store = InMemoryRemoteStore()
    store.create_table(
        "cpf_compliance_results",
        columns=CLIENT_RESULT_COLUMNS if full else MINIMAL_RESULT_COLUMNS,
    )
    store.create_table("form_submissions", columns=SUBMISSION_COLUMNS)
    store.create_table("integration_queue", columns=QUEUE_COLUMNS)
    return store


def master_store() -> InMemoryRemoteStore:
    store = InMemoryRemoteStore()
    store.create_table("datacorp_checks", columns=MASTER_CHECK_COLUMNS)
    store.create_table("revendedoras", columns=ACCOUNT_COLUMNS)
    return store


class SyncHarness:
    """In-memory wiring of vault, repositories and reconciler for tests."""

    def __init__(self, tmp_path: pathlib.Path, *, store_timeout_s: float = 2.0) -> None:
        self.stores: dict[str, InMemoryRemoteStore] = {}
        self.built: list[str] = []
        self.cipher = SecretCipher(TEST_KEY)
        self.credentials = InMemoryCredentialsRepository()
        self.factory = RemoteStoreFactory(timeout_s=store_timeout_s, builder=self._build)
        self.environ: dict[str, str] = {}
        self.vault = CredentialVault(
            repository=self.credentials,
            cipher=self.cipher,
            store_factory=self.factory,
            environ=self.environ,
        )
        self.leads = InMemoryLeadsRepository()
        self.labels = InMemoryStageLabelsRepository()
        self.processed = ProcessedSetRegistry(backend="file", directory=tmp_path / "processed")
        self.state = PollerStateStore(tmp_path / "cpf_compliance_poller_state.json")
        self.reconciler = ComplianceResultReconciler(
            vault=self.vault,
            leads=self.leads,
            labels=self.labels,
            processed_sets=self.processed,
            state=self.state,
            cipher=self.cipher,
        )

    def _build(self, url: str, _secret_key: str, _timeout_s: float) -> InMemoryRemoteStore:
        self.built.append(url)
        return self.stores[url]

    def attach(self, tenant_id: str, role: str, store: InMemoryRemoteStore, *, key_role: str = "service_role") -> str:
        url = f"https://{tenant_id}-{role}.example.test"
        self.stores[url] = store
        self.vault.configure(tenant_id=tenant_id, role=role, url=url, secret_key=make_key(key_role))
        return url

    def add_lead(self, lead_id: str, tenant_id: str, **fields) -> None:
        self.leads.create(lead={"id": lead_id, "tenant_id": tenant_id, **fields})


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "SUPABASE_URL",
        "SUPABASE_SERVICE_ROLE_KEY",
        "SUPABASE_MASTER_URL",
        "SUPABASE_MASTER_SERVICE_ROLE_KEY",
        "CREDENTIALS_ENCRYPTION_KEY_BASE64",
        "ENCRYPTION_KEY",
        "SYNC_ENV",
        "SYNC_EVENT_FAILURE_POLICY",
        "SYNC_PROCESSED_BACKEND",
        "SYNC_REPOSITORY_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def harness(tmp_path: pathlib.Path) -> SyncHarness:
    return SyncHarness(tmp_path)
