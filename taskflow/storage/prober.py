# ==============================================
# ConnectionProber
# ==============================================
#
# PURPOSE:
#   Check that a candidate self-hosted database is reachable AND
#   writable before anything is committed to it.
#
#   Steps:
#     1. Reject malformed URIs before any network I/O
#     2. ping the target database (short timeouts)
#     3. Insert a marker into "connection_test", delete it again,
#        and drop the collection if the probe created it
#
#   Many managed clusters grant access per database, so a ping alone
#   is not enough: the write probe surfaces "not authorized on <db>".
#
# CLASS: ConnectionProber
# -----------------------
#   - probe(connection_string, database_name=None) -> ConnectionProbeResult
#       Never raises for connection problems and never retries.
#
# FUNCTION: classify_failure(exc, database_name) -> ConnectionProbeResult
# -----------------------------------------------------------------------
#   OperationFailure code 18 / "authentication failed" → AUTH
#   OperationFailure code 13 / "not authorized"        → PERMISSION
#   ConnectionFailure, timeouts, DNS errors            → NETWORK
#   anything else                                      → UNKNOWN
#
# ==============================================

import logging
import socket
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pymongo.errors import ConfigurationError, ConnectionFailure, OperationFailure

from taskflow.routing.configuration import is_valid_mongo_uri, mask_connection_string
from taskflow.storage.mongo_client import ClientFactory, MongoConnection, build_client_options

logger = logging.getLogger(__name__)

PROBE_COLLECTION = "connection_test"

_AUTH_CODES = {18}
_PERMISSION_CODES = {13}
_TIMEOUT_CODES = {50}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailureCategory(Enum):
    NETWORK = "network"
    AUTH = "auth"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


@dataclass
class ConnectionProbeResult:
    success: bool
    message: str
    database_name: str
    failure_category: Optional[FailureCategory] = None
    hint: str = ""
    error_code: Optional[int] = None
    latency_ms: Optional[float] = None
    checked_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "databaseName": self.database_name,
            "checkedAt": self.checked_at.isoformat(),
        }
        if self.latency_ms is not None:
            data["latencyMs"] = round(self.latency_ms, 1)
        if not self.success:
            data["error"] = self.message
            data["failureCategory"] = self.failure_category.value if self.failure_category else None
            data["hint"] = self.hint
            data["code"] = self.error_code
        return data


def _failure(
    category: FailureCategory,
    message: str,
    database_name: str,
    hint: str,
    code: Optional[int] = None,
) -> ConnectionProbeResult:
    return ConnectionProbeResult(
        success=False,
        message=message,
        database_name=database_name,
        failure_category=category,
        hint=hint,
        error_code=code,
    )


def classify_failure(exc: BaseException, database_name: str) -> ConnectionProbeResult:
    """Map a driver/network exception onto a probe failure with a remediation hint."""
    text = str(exc)
    lowered = text.lower()

    if isinstance(exc, OperationFailure):
        code = exc.code
        if code in _AUTH_CODES or "authentication failed" in lowered or "auth failed" in lowered:
            return _failure(
                FailureCategory.AUTH,
                f"Authentication failed: {text}",
                database_name,
                "Check the username and password in the connection string, and the "
                "authSource the user was created in.",
                code,
            )
        if code in _PERMISSION_CODES or "not authorized" in lowered or "unauthorized" in lowered:
            return _failure(
                FailureCategory.PERMISSION,
                f"Not authorized on database \"{database_name}\": the database user "
                "doesn't have write access",
                database_name,
                f"Grant the readWrite role on the \"{database_name}\" database to this user.",
                code,
            )
        if code in _TIMEOUT_CODES:
            return _failure(
                FailureCategory.NETWORK,
                f"Operation timed out: {text}",
                database_name,
                "The server is reachable but slow; retry later.",
                code,
            )
        return _failure(
            FailureCategory.UNKNOWN,
            text or "Operation failed",
            database_name,
            "Check the server logs for the failing command.",
            code,
        )

    if isinstance(exc, ConfigurationError):
        if "dns" in lowered or "resolve" in lowered or "query name" in lowered:
            return _failure(
                FailureCategory.NETWORK,
                f"DNS lookup failed: {text}",
                database_name,
                "Check the cluster hostname; mongodb+srv URIs need a resolvable SRV record.",
            )
        return _failure(
            FailureCategory.UNKNOWN,
            f"Invalid connection options: {text}",
            database_name,
            "Check the options in the connection string.",
        )

    if isinstance(exc, (ConnectionFailure, socket.gaierror, TimeoutError, FuturesTimeout, OSError)):
        return _failure(
            FailureCategory.NETWORK,
            f"Could not reach the database server: {text or type(exc).__name__}",
            database_name,
            "Check the host, port and firewall/IP allow-list, then retry later.",
        )

    return _failure(
        FailureCategory.UNKNOWN,
        text or type(exc).__name__,
        database_name,
        "Unexpected error; verify the connection string and try again.",
    )


class ConnectionProber:
    def __init__(
        self,
        timeout_seconds: float = 5.0,
        default_database_name: str = "taskflow",
        client_factory: Optional[ClientFactory] = None,
        executor: Optional[Executor] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.default_database_name = default_database_name
        self._client_factory = client_factory
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="probe")

    def probe(self, connection_string: str, database_name: Optional[str] = None) -> ConnectionProbeResult:
        """
        Test a connection without committing to it.

        Args:
            connection_string: Candidate MongoDB URI
            database_name: Target database (defaults to "taskflow")

        Returns:
            ConnectionProbeResult; failures are classified, never raised
        """
        db_name = database_name or self.default_database_name

        if not is_valid_mongo_uri(connection_string):
            return _failure(
                FailureCategory.UNKNOWN,
                "Connection string is not a valid MongoDB URI",
                db_name,
                "Use a mongodb:// or mongodb+srv:// connection string.",
            )

        started = time.monotonic()
        future = self._executor.submit(self._run_probe, connection_string, db_name)
        try:
            # Driver timeouts cover each round-trip; this bounds the whole probe
            future.result(timeout=self.timeout_seconds * 2)
        except FuturesTimeout:
            future.cancel()
            result = _failure(
                FailureCategory.NETWORK,
                f"Connection test timed out after {self.timeout_seconds * 2:.0f}s",
                db_name,
                "Check the host, port and firewall/IP allow-list, then retry later.",
            )
        except Exception as exc:
            result = classify_failure(exc, db_name)
        else:
            result = ConnectionProbeResult(
                success=True,
                message=f"Connection successful to database \"{db_name}\"",
                database_name=db_name,
            )
        result.latency_ms = (time.monotonic() - started) * 1000

        if result.success:
            logger.info("Probe succeeded for %s (db=%s)", mask_connection_string(connection_string), db_name)
        else:
            logger.warning(
                "Probe failed for %s (db=%s): %s [%s]",
                mask_connection_string(connection_string), db_name,
                result.message, result.failure_category.value,
            )
        return result

    def _run_probe(self, connection_string: str, database_name: str) -> None:
        options = build_client_options(connection_string, timeout_seconds=self.timeout_seconds)
        with MongoConnection(connection_string, database_name, options, self._client_factory) as conn:
            database = conn.database
            database.command("ping")

            existed = PROBE_COLLECTION in database.list_collection_names()
            probe_id = uuid4().hex
            collection = database[PROBE_COLLECTION]
            collection.insert_one({"_connectionTest": True, "probeId": probe_id, "timestamp": _utcnow()})
            collection.delete_many({"probeId": probe_id})
            if not existed:
                database.drop_collection(PROBE_COLLECTION)
