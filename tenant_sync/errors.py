from __future__ import annotations


class SyncError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable


class RemoteUnavailableError(SyncError):
    """Network failure, timeout or 5xx from a remote store."""

    def __init__(self, message: str, *, code: str = "STORE_UNAVAILABLE") -> None:
        super().__init__(code=code, message=message, error_class="availability", retryable=True)


class SchemaMismatchError(SyncError):
    """The remote store does not know a column or table the query referenced."""

    def __init__(self, message: str, *, code: str = "STORE_SCHEMA_MISMATCH") -> None:
        super().__init__(code=code, message=message, error_class="schema", retryable=False)


class CredentialRejectedError(SyncError):
    """The store refused the key (wrong privilege or row-level protection)."""

    def __init__(self, message: str, *, code: str = "STORE_PERMISSION_DENIED") -> None:
        super().__init__(code=code, message=message, error_class="security_sensitive", retryable=False)


class DecryptionError(SyncError):
    def __init__(self, message: str) -> None:
        super().__init__(code="DECRYPTION_FAILED", message=message, error_class="data", retryable=False)


class InvalidPayloadError(SyncError):
    def __init__(self, message: str) -> None:
        super().__init__(code="EVENT_PAYLOAD_INVALID", message=message, error_class="validation", retryable=False)


class LocalStateError(SyncError):
    """A processed marker or state document could not be written locally."""

    def __init__(self, message: str) -> None:
        super().__init__(code="LOCAL_STATE_WRITE_FAILED", message=message, error_class="storage", retryable=True)
