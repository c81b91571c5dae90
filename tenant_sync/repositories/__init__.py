from tenant_sync.repositories.credentials import InMemoryCredentialsRepository, PostgresCredentialsRepository
from tenant_sync.repositories.labels import InMemoryStageLabelsRepository, PostgresStageLabelsRepository
from tenant_sync.repositories.leads import InMemoryLeadsRepository, PostgresLeadsRepository

__all__ = [
    "InMemoryCredentialsRepository",
    "PostgresCredentialsRepository",
    "InMemoryStageLabelsRepository",
    "PostgresStageLabelsRepository",
    "InMemoryLeadsRepository",
    "PostgresLeadsRepository",
]
