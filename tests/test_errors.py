# ==============================================
# Tests for the error taxonomy (API bodies)
# ==============================================

from taskflow.errors import (
    ConcurrentMigrationInProgress,
    ConnectionProbeFailed,
    DestructiveChangeRejected,
    InitializationPartialFailure,
    InvalidStorageRequest,
    SecretDecryptionError,
    StaleCacheRead,
    StorageRoutingError,
)
from taskflow.storage import FailureCategory, InitializationReport
from taskflow.storage.prober import classify_failure


def test_every_error_has_code_and_hint():
    errors = [
        InvalidStorageRequest("bad", field="mode"),
        ConnectionProbeFailed(classify_failure(TimeoutError("slow"), "taskflow")),
        DestructiveChangeRejected("would strand data", {"counts": {"tasks": 3}}),
        ConcurrentMigrationInProgress("org-42"),
        InitializationPartialFailure(InitializationReport(errors=["index failed"])),
        StaleCacheRead("wrote to official, read from self-hosted"),
        SecretDecryptionError("Stored connection string could not be decrypted"),
    ]
    for error in errors:
        assert isinstance(error, StorageRoutingError)
        body = error.to_dict()
        assert body["success"] is False
        assert body["error"] == error.code
        assert body["hint"]


def test_probe_failure_body_carries_category():
    body = ConnectionProbeFailed(classify_failure(TimeoutError("slow"), "taskflow")).to_dict()
    assert body["failureCategory"] == FailureCategory.NETWORK.value
    assert body["error"] == "connection_failed"


def test_destructive_body_flattens_at_risk():
    body = DestructiveChangeRejected("x", {"counts": {"tasks": 3}, "countsAvailable": True}).to_dict()
    assert body["destructive"] is True
    assert body["counts"] == {"tasks": 3}


def test_invalid_request_is_value_error():
    assert isinstance(InvalidStorageRequest("bad"), ValueError)
