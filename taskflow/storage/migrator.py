# ==============================================
# MigrationGuard
# ==============================================
#
# PURPOSE:
#   Run one storage mode change for one tenant, end to end, and refuse
#   the ones that would silently make data unreachable.
#
# STATE MACHINE (per request):
#
#   REQUESTED → VALIDATING → PROBING* → CONFIRMING_DESTRUCTION** →
#   APPLYING → INITIALIZING* → COMPLETE
#
#     *  only when the target is SELF_HOSTED
#     ** only when a category changes location and confirmation
#        is required (see DESTRUCTIVENESS)
#   FAILED is reachable from every state before COMPLETE.
#
# DESTRUCTIVENESS:
#   A change is destructive when TASK_DATA or ORGANIZATION_METADATA
#   would be served from a different location afterwards: the data
#   left behind is no longer reachable through normal paths.
#     * leaving a self-hosted database (→ OFFICIAL, → another
#       self-hosted database, or org metadata flag turned off)
#       ALWAYS requires confirm=True
#     * leaving the official store requires confirm=True when the
#       tenant has data there (or when it cannot be counted). Official
#       data is counted under the kind the request names, falling back
#       to the stored kind.
#     * a stored connection that cannot be decrypted still counts as
#       self-hosted: its data cannot be counted, so leaving it needs
#       confirm=True
#   Membership and identity never move, so they are never at risk.
#
# ORDERING (APPLYING):
#   1. store.set(...)              durable write
#   2. invalidator.invalidate(...) every router drops its cache
#   3. schema initializer          (self-hosted targets)
#   A probe failure aborts before step 1: no partial mode switches.
#
# SERIALIZATION:
#   At most one run per tenant. A second concurrent run for the same
#   tenant raises ConcurrentMigrationInProgress immediately.
#
# ==============================================

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from taskflow.errors import (
    ConcurrentMigrationInProgress,
    ConnectionProbeFailed,
    DestructiveChangeRejected,
    InitializationPartialFailure,
    InvalidStorageRequest,
)
from taskflow.persistence.config_store import StorageConfigurationStore
from taskflow.routing.categories import (
    ORGANIZATION_METADATA_COLLECTIONS,
    TASK_DATA_COLLECTIONS,
    EntityCategory,
)
from taskflow.routing.configuration import (
    ConnectionDetails,
    OfficialStorage,
    SelfHostedStorage,
    StorageConfiguration,
    StorageMode,
    TenantKind,
    UnreadableConnection,
    is_valid_mongo_uri,
    tenant_scope,
    to_public_dict,
)
from taskflow.storage.cache import CacheInvalidator
from taskflow.storage.prober import ConnectionProber, ConnectionProbeResult
from taskflow.storage.router import StorageRouter
from taskflow.storage.schema import InitializationReport, SchemaInitializer

logger = logging.getLogger(__name__)

_CATEGORY_COLLECTIONS = {
    EntityCategory.TASK_DATA: TASK_DATA_COLLECTIONS,
    EntityCategory.ORGANIZATION_METADATA: ORGANIZATION_METADATA_COLLECTIONS,
}


class MigrationState(Enum):
    REQUESTED = "requested"
    VALIDATING = "validating"
    PROBING = "probing"
    CONFIRMING_DESTRUCTION = "confirming_destruction"
    APPLYING = "applying"
    INITIALIZING = "initializing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class StorageChangeRequest:
    """
    A requested mode change. `None` for the flag or kind keeps the
    tenant's current value.
    """
    tenant_id: str
    mode: StorageMode
    connection: Optional[ConnectionDetails] = None
    include_organization_metadata: Optional[bool] = None
    tenant_kind: Optional[TenantKind] = None
    confirm: bool = False


@dataclass
class DestructionAssessment:
    # (category, location label of the side losing access)
    moved: List[Tuple[EntityCategory, str]] = field(default_factory=list)
    leaves_self_hosted: bool = False

    @property
    def destructive(self) -> bool:
        return bool(self.moved)


@dataclass
class MigrationRun:
    tenant_id: str
    history: List[MigrationState] = field(default_factory=lambda: [MigrationState.REQUESTED])
    error: Optional[Exception] = None

    @property
    def state(self) -> MigrationState:
        return self.history[-1]

    def advance(self, state: MigrationState) -> None:
        logger.debug("Storage change for %s: %s → %s", self.tenant_id, self.state.value, state.value)
        self.history.append(state)


@dataclass
class MigrationOutcome:
    configuration: StorageConfiguration
    previous: StorageConfiguration
    run: MigrationRun
    probe: Optional[ConnectionProbeResult] = None
    initialization: Optional[InitializationReport] = None
    warning: Optional[InitializationPartialFailure] = None

    def to_dict(self) -> Dict[str, Any]:
        data = to_public_dict(self.configuration)
        data["success"] = True
        data["previousMode"] = self.previous.mode.value
        data["states"] = [state.value for state in self.run.history]
        if self.initialization is not None:
            data["initialization"] = self.initialization.to_dict()
        if self.warning is not None:
            data["warning"] = self.warning.to_dict()
        return data


def _location_label(configuration: StorageConfiguration, category: EntityCategory) -> str:
    follows_mode = (
        category == EntityCategory.TASK_DATA
        or configuration.include_organization_metadata
    )
    if follows_mode and isinstance(configuration, SelfHostedStorage):
        return f"self_hosted:{configuration.connection.fingerprint()}"
    return "official"


def assess_change(current: StorageConfiguration, target: StorageConfiguration) -> DestructionAssessment:
    """Work out which categories change location, and from where."""
    assessment = DestructionAssessment()
    for category in (EntityCategory.TASK_DATA, EntityCategory.ORGANIZATION_METADATA):
        before = _location_label(current, category)
        after = _location_label(target, category)
        if before != after:
            assessment.moved.append((category, before))
            if before != "official":
                assessment.leaves_self_hosted = True
    return assessment


class MigrationGuard:
    def __init__(
        self,
        store: StorageConfigurationStore,
        prober: ConnectionProber,
        initializer: SchemaInitializer,
        invalidator: CacheInvalidator,
        router: StorageRouter,
        organization_loader: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
        count_timeout_seconds: float = 5.0,
        executor: Optional[Executor] = None,
    ):
        self._store = store
        self._prober = prober
        self._initializer = initializer
        self._invalidator = invalidator
        self._router = router
        self._organization_loader = organization_loader
        self._count_timeout_seconds = count_timeout_seconds
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="guard")
        self._lock = threading.Lock()
        self._in_flight: set = set()
        self._runs: Dict[str, MigrationRun] = {}

    def is_running(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._in_flight

    def last_run(self, tenant_id: str) -> Optional[MigrationRun]:
        with self._lock:
            return self._runs.get(tenant_id)

    def run(self, request: StorageChangeRequest) -> MigrationOutcome:
        """
        Execute a mode change.

        Raises:
            InvalidStorageRequest: malformed request
            ConcurrentMigrationInProgress: another change for this tenant is running
            ConnectionProbeFailed: the target self-hosted database failed the probe
            DestructiveChangeRejected: data would be orphaned and confirm is False
        """
        if not request.tenant_id:
            raise InvalidStorageRequest("Tenant ID is required", field="tenantId")
        self._acquire(request.tenant_id)
        run = MigrationRun(tenant_id=request.tenant_id)
        with self._lock:
            self._runs[request.tenant_id] = run
        try:
            return self._execute(request, run)
        except Exception as exc:
            run.error = exc
            run.advance(MigrationState.FAILED)
            logger.warning("Storage change for %s failed in state %s: %s",
                           request.tenant_id, run.history[-2].value, exc)
            raise
        finally:
            self._release(request.tenant_id)

    def _execute(self, request: StorageChangeRequest, run: MigrationRun) -> MigrationOutcome:
        tenant_id = request.tenant_id

        run.advance(MigrationState.VALIDATING)
        current = self._store.get(tenant_id)
        target = self._build_target(request, current)

        probe = None
        if isinstance(target, SelfHostedStorage):
            run.advance(MigrationState.PROBING)
            probe = self._prober.probe(
                target.connection.connection_string.get_secret_value(),
                target.connection.database_name,
            )
            if not probe.success:
                raise ConnectionProbeFailed(probe)
            target = replace(target, last_verified_at=probe.checked_at)

        assessment = assess_change(current, target)
        if assessment.destructive:
            at_risk = self._at_risk(request.tenant_id, current, target, assessment)
            if at_risk is not None:
                run.advance(MigrationState.CONFIRMING_DESTRUCTION)
                if not request.confirm:
                    raise DestructiveChangeRejected(
                        f"Switching tenant '{tenant_id}' from {current.mode.value} to "
                        f"{target.mode.value} storage leaves existing data unreachable",
                        at_risk,
                    )
                logger.warning("Tenant %s confirmed a destructive storage change (at risk: %s)",
                               tenant_id, at_risk["counts"])

        run.advance(MigrationState.APPLYING)
        stored = self._store.set(tenant_id, target)
        self._invalidator.invalidate(tenant_id)
        logger.info("Tenant %s storage mode %s → %s", tenant_id, current.mode.value, stored.mode.value)

        outcome = MigrationOutcome(configuration=stored, previous=current, run=run, probe=probe)

        if isinstance(stored, SelfHostedStorage):
            run.advance(MigrationState.INITIALIZING)
            organization_document = None
            if (
                stored.include_organization_metadata
                and stored.tenant_kind == TenantKind.ORGANIZATION
                and self._organization_loader is not None
            ):
                organization_document = self._organization_loader(tenant_id)
            report = self._initializer.initialize(
                stored.connection,
                tenant_id=tenant_id,
                tenant_kind=stored.tenant_kind,
                include_organization_metadata=stored.include_organization_metadata,
                organization_document=organization_document,
            )
            outcome.initialization = report
            if not report.success or report.errors:
                outcome.warning = InitializationPartialFailure(report)
                logger.warning("Tenant %s configured but initialization needs follow-up: %s",
                               tenant_id, "; ".join(report.errors))

        run.advance(MigrationState.COMPLETE)
        return outcome

    def _build_target(self, request: StorageChangeRequest, current: StorageConfiguration) -> StorageConfiguration:
        include = (
            current.include_organization_metadata
            if request.include_organization_metadata is None
            else request.include_organization_metadata
        )
        tenant_kind = request.tenant_kind or current.tenant_kind

        if request.mode == StorageMode.OFFICIAL:
            if request.connection is not None:
                raise InvalidStorageRequest(
                    "A connection cannot be set when mode is official",
                    field="connectionString",
                    hint="Omit connectionString/databaseName for the official store.",
                )
            return OfficialStorage(
                tenant_id=request.tenant_id,
                tenant_kind=tenant_kind,
                include_organization_metadata=include,
                last_verified_at=current.last_verified_at,
            )

        if request.connection is None and isinstance(current, SelfHostedStorage):
            if isinstance(current.connection, UnreadableConnection):
                raise InvalidStorageRequest(
                    "The stored connection string cannot be decrypted with the current key",
                    field="connectionString",
                    hint="Send the connection string again, with confirm=true.",
                )
            # Flag or kind change on the database already in use
            request = replace(request, connection=current.connection)
        if request.connection is None:
            raise InvalidStorageRequest(
                "Connection string is required for a self-hosted database",
                field="connectionString",
            )
        if not is_valid_mongo_uri(request.connection.connection_string.get_secret_value()):
            raise InvalidStorageRequest(
                "Connection string is not a valid MongoDB URI",
                field="connectionString",
                hint="Use a mongodb:// or mongodb+srv:// connection string.",
            )
        if not request.connection.database_name:
            raise InvalidStorageRequest("Database name is required", field="databaseName")

        return SelfHostedStorage(
            tenant_id=request.tenant_id,
            connection=request.connection,
            tenant_kind=tenant_kind,
            include_organization_metadata=include,
        )

    def _at_risk(
        self,
        tenant_id: str,
        current: StorageConfiguration,
        target: StorageConfiguration,
        assessment: DestructionAssessment,
    ) -> Optional[Dict[str, Any]]:
        """
        Summary of the data a destructive change would strand, or None
        when the change needs no confirmation.
        """
        counts: Dict[str, Optional[int]] = {}
        for category, _ in assessment.moved:
            counts.update(self._count_at_risk(tenant_id, category, target.tenant_kind))

        counts_available = all(value is not None for value in counts.values())
        has_data = any(value for value in counts.values())
        required = assessment.leaves_self_hosted or has_data or not counts_available

        if not required:
            logger.info("Tenant %s has no data at the old location; no confirmation needed", tenant_id)
            return None

        return {
            "fromMode": current.mode.value,
            "toMode": target.mode.value,
            "categories": [category.value for category, _ in assessment.moved],
            "counts": counts,
            "countsAvailable": counts_available,
        }

    def _count_at_risk(
        self, tenant_id: str, category: EntityCategory, tenant_kind: TenantKind
    ) -> Dict[str, Optional[int]]:
        names = _CATEGORY_COLLECTIONS[category]
        future = self._executor.submit(self._count_collections, tenant_id, category, names, tenant_kind)
        try:
            return future.result(timeout=self._count_timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            logger.warning("Counting %s data for %s timed out", category.value, tenant_id)
        except Exception as exc:
            logger.warning("Counting %s data for %s failed: %s", category.value, tenant_id, exc)
        return {name: None for name in names}

    def _count_collections(
        self, tenant_id: str, category: EntityCategory, names: Tuple[str, ...], tenant_kind: TenantKind
    ) -> Dict[str, Optional[int]]:
        handle = self._router.resolve(tenant_id, category)
        if handle.is_official:
            # A tenant with no record yet is stored as USER; the request names its real kind
            handle = replace(handle, scope=tenant_scope(tenant_kind, tenant_id))
        return {name: handle.count(name) for name in names}

    def _acquire(self, tenant_id: str) -> None:
        with self._lock:
            if tenant_id in self._in_flight:
                raise ConcurrentMigrationInProgress(tenant_id)
            self._in_flight.add(tenant_id)

    def _release(self, tenant_id: str) -> None:
        with self._lock:
            self._in_flight.discard(tenant_id)
