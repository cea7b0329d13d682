"""
Shared error types for the storage routing core.

Prober and initializer never raise these; they return structured results.
The migration guard and the service turn those results into exceptions
when a policy decision (abort, reject) has been made.
"""

from typing import Any, Dict, Optional


class StorageRoutingError(Exception):
    """Base class. `code` is the stable identifier sent to API callers."""

    code = "storage_error"
    hint = ""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message, "hint": self.hint}


class InvalidStorageRequest(StorageRoutingError, ValueError):
    code = "invalid_request"
    hint = "Correct the highlighted field and resend the request."

    def __init__(self, message: str, field: str = "unknown", hint: Optional[str] = None):
        super().__init__(message, hint)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class ConnectionProbeFailed(StorageRoutingError):
    """The candidate self-hosted database did not pass the probe."""

    code = "connection_failed"

    def __init__(self, result):
        super().__init__(result.message, result.hint)
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(self.result.to_dict())
        data["success"] = False
        data["error"] = self.code
        return data


class DestructiveChangeRejected(StorageRoutingError):
    """A mode change would orphan data and the caller did not confirm it."""

    code = "destructive_change_requires_confirmation"
    hint = "Resend the request with confirm=true to accept the loss of access."

    def __init__(self, message: str, at_risk: Dict[str, Any]):
        super().__init__(message)
        self.at_risk = at_risk

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["destructive"] = True
        data.update(self.at_risk)
        return data


class ConcurrentMigrationInProgress(StorageRoutingError):
    code = "concurrent_migration_in_progress"
    hint = "Wait for the running storage change to finish, then retry."

    def __init__(self, tenant_id: str):
        super().__init__(f"A storage change for tenant '{tenant_id}' is already in progress")
        self.tenant_id = tenant_id


class InitializationPartialFailure(StorageRoutingError):
    """Collections exist but some indexes or seed rows could not be created.

    Attached to a successful outcome as a warning; the configuration stays
    committed because the connection is usable.
    """

    code = "initialization_partial_failure"
    hint = "The database is configured but may need manual follow-up."

    def __init__(self, report):
        super().__init__("; ".join(report.errors) or report.message)
        self.report = report


class StaleCacheRead(StorageRoutingError):
    """A resolve returned a location older than the latest committed config."""

    code = "stale_cache_read"
    hint = "Invalidate the tenant's cache entry and retry the request."


class SecretDecryptionError(StorageRoutingError):
    """A stored connection string cannot be decrypted with the current key."""

    code = "secret_decryption_failed"
    hint = (
        "Restore the TASKFLOW_SECRET_KEY the connection was saved with, or "
        "send a new connectionString (or mode=official) with confirm=true."
    )
