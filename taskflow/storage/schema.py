# ==============================================
# SchemaInitializer
# ==============================================
#
# PURPOSE:
#   Prepare a self-hosted database for a tenant: create the missing
#   collections and indexes, seed default board columns, and report
#   what was already there.
#
#   Non-destructive: nothing is ever dropped, truncated or overwritten.
#   Idempotent: a second run creates nothing and reports
#   preserved_existing_data=True.
#
# COLLECTIONS:
# ------------
#   Task data (always):       tasks, columns, comments, timeEntries
#   Organization metadata:    organizations, projects
#                             (only with include_organization_metadata)
#   Membership/identity collections are never created here; they live
#   in the official store only.
#
# CLASS: SchemaInitializer
# ------------------------
#   - initialize(connection, tenant_id=None, tenant_kind=USER,
#                include_organization_metadata=False,
#                organization_document=None) -> InitializationReport
#       Opens its own client, runs under a timeout.
#
#   - initialize_database(database, ...) -> InitializationReport
#       Same steps against an already-open pymongo Database.
#
# DATA CLASS: InitializationReport
# --------------------------------
#   collections_created, indexes_created, default_data_created,
#   preserved_existing_data, existing_data, errors, success
#
#   A report with success=True and errors is a partial failure:
#   configured, but may need manual follow-up. Nothing is rolled back.
#
# ==============================================

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import CollectionInvalid, PyMongoError

from taskflow.routing.configuration import ConnectionDetails, TenantKind, tenant_scope
from taskflow.storage.mongo_client import ClientFactory, MongoConnection, build_client_options

logger = logging.getLogger(__name__)

TEMPLATE_PROJECT_ID = "__default_template__"

# name, role, color
DEFAULT_COLUMNS: Tuple[Tuple[str, Optional[str], str], ...] = (
    ("To Do", "todo", "#94a3b8"),
    ("In Progress", None, "#3b82f6"),
    ("In Review", None, "#f59e0b"),
    ("Done", "done", "#10b981"),
)

# Stripped when an organization document is copied to a self-hosted store
MEMBERSHIP_FIELDS = ("members", "memberRoles", "memberCount")


@dataclass(frozen=True)
class IndexSpec:
    keys: Tuple[Tuple[str, int], ...]
    unique: bool = False


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    indexes: Tuple[IndexSpec, ...] = ()


def _indexes(*fields: Tuple[str, int]) -> Tuple[IndexSpec, ...]:
    return tuple(IndexSpec(keys=(f,)) for f in fields)


TASK_DATA_SCHEMA: Tuple[CollectionSpec, ...] = (
    CollectionSpec("tasks", _indexes(
        ("projectId", 1), ("columnId", 1), ("status", 1), ("priority", 1),
        ("assignedTo", 1), ("dueDate", 1), ("order", 1),
        ("createdAt", -1), ("updatedAt", -1),
    )),
    CollectionSpec("columns", _indexes(("projectId", 1), ("order", 1), ("name", 1))),
    CollectionSpec("comments", _indexes(("taskId", 1), ("authorId", 1), ("createdAt", -1))),
    CollectionSpec("timeEntries", _indexes(("taskId", 1), ("userId", 1), ("startedAt", -1))),
)

ORGANIZATION_METADATA_SCHEMA: Tuple[CollectionSpec, ...] = (
    CollectionSpec("organizations", _indexes(("ownerId", 1), ("createdAt", 1), ("name", 1))),
    CollectionSpec("projects", _indexes(
        ("organizationId", 1), ("ownerId", 1), ("createdAt", 1), ("name", 1),
    )),
)


def schema_for(include_organization_metadata: bool) -> Tuple[CollectionSpec, ...]:
    if include_organization_metadata:
        return TASK_DATA_SCHEMA + ORGANIZATION_METADATA_SCHEMA
    return TASK_DATA_SCHEMA


@dataclass
class InitializationReport:
    database_name: str = ""
    success: bool = True
    collections_created: int = 0
    indexes_created: int = 0
    default_data_created: bool = False
    preserved_existing_data: bool = False
    existing_data: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def needs_follow_up(self) -> bool:
        return self.success and bool(self.errors)

    @property
    def message(self) -> str:
        if not self.success:
            return "Database initialization failed: " + "; ".join(self.errors)
        if self.errors:
            return "Database configured but may need manual follow-up"
        if self.collections_created or self.indexes_created or self.default_data_created:
            return "Self-hosted database setup completed. Task data will be stored here."
        return "Self-hosted database was already set up. All existing data preserved."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "databaseName": self.database_name,
            "collectionsCreated": self.collections_created,
            "indexesCreated": self.indexes_created,
            "defaultDataCreated": self.default_data_created,
            "preservedExistingData": self.preserved_existing_data,
            "existingData": dict(self.existing_data),
            "needsFollowUp": self.needs_follow_up,
            "errors": list(self.errors),
            "message": self.message,
        }


class SchemaInitializer:
    def __init__(
        self,
        timeout_seconds: float = 30.0,
        client_factory: Optional[ClientFactory] = None,
        executor: Optional[Executor] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._client_factory = client_factory
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="schema")

    def initialize(
        self,
        connection: ConnectionDetails,
        tenant_id: Optional[str] = None,
        tenant_kind: TenantKind = TenantKind.USER,
        include_organization_metadata: bool = False,
        organization_document: Optional[Dict[str, Any]] = None,
    ) -> InitializationReport:
        """
        Initialize the database behind `connection`.

        Returns:
            InitializationReport; connection-level failures and timeouts
            come back as success=False, never as exceptions
        """
        future = self._executor.submit(
            self._run,
            connection,
            tenant_id,
            tenant_kind,
            include_organization_metadata,
            organization_document,
        )
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            message = f"initialization timed out after {self.timeout_seconds:.0f}s"
        except Exception as exc:
            message = f"could not initialize database: {exc}"
        logger.error("Initialization of %s failed: %s", connection.database_name, message)
        return InitializationReport(
            database_name=connection.database_name, success=False, errors=[message]
        )

    def _run(
        self,
        connection: ConnectionDetails,
        tenant_id: Optional[str],
        tenant_kind: TenantKind,
        include_organization_metadata: bool,
        organization_document: Optional[Dict[str, Any]],
    ) -> InitializationReport:
        uri = connection.connection_string.get_secret_value()
        options = build_client_options(uri, timeout_seconds=self.timeout_seconds)
        with MongoConnection(uri, connection.database_name, options, self._client_factory) as conn:
            return self.initialize_database(
                conn.database,
                tenant_id=tenant_id,
                tenant_kind=tenant_kind,
                include_organization_metadata=include_organization_metadata,
                organization_document=organization_document,
            )

    def initialize_database(
        self,
        database,
        tenant_id: Optional[str] = None,
        tenant_kind: TenantKind = TenantKind.USER,
        include_organization_metadata: bool = False,
        organization_document: Optional[Dict[str, Any]] = None,
    ) -> InitializationReport:
        report = InitializationReport(database_name=database.name)
        specs = schema_for(include_organization_metadata)

        # Listing failures mean the connection itself is unusable: propagate
        existing = set(database.list_collection_names())
        logger.info("Initializing database %s (non-destructive), existing collections: %s",
                    database.name, sorted(existing))
        report.preserved_existing_data = any(spec.name in existing for spec in specs)

        for spec in specs:
            self._ensure_collection(database, spec, existing, report)

        self._seed_default_columns(database, tenant_id, tenant_kind, report)

        if (
            include_organization_metadata
            and tenant_kind == TenantKind.ORGANIZATION
            and tenant_id
            and organization_document is not None
        ):
            self._seed_organization(database, tenant_id, organization_document, report)

        for spec in specs:
            try:
                report.existing_data[spec.name] = database[spec.name].count_documents({})
            except PyMongoError as exc:
                report.errors.append(f"count {spec.name}: {exc}")

        logger.info(
            "Initialization complete for %s: collections=%d indexes=%d seeded=%s errors=%d",
            database.name, report.collections_created, report.indexes_created,
            report.default_data_created, len(report.errors),
        )
        return report

    def _ensure_collection(self, database, spec: CollectionSpec, existing: set, report: InitializationReport) -> None:
        if spec.name not in existing:
            try:
                database.create_collection(spec.name)
                report.collections_created += 1
                logger.info("Created collection: %s", spec.name)
            except CollectionInvalid:
                # Created by someone else between listing and creating
                pass
            except PyMongoError as exc:
                report.errors.append(f"create collection {spec.name}: {exc}")
                return

        collection = database[spec.name]
        try:
            existing_keys = {
                tuple((k, v) for k, v in info["key"])
                for info in collection.index_information().values()
            }
        except PyMongoError as exc:
            report.errors.append(f"list indexes on {spec.name}: {exc}")
            return

        for index in spec.indexes:
            if index.keys in existing_keys:
                continue
            try:
                collection.create_index(list(index.keys), unique=index.unique)
                report.indexes_created += 1
            except PyMongoError as exc:
                report.errors.append(f"create index {index.keys} on {spec.name}: {exc}")

    def _seed_default_columns(
        self,
        database,
        tenant_id: Optional[str],
        tenant_kind: TenantKind,
        report: InitializationReport,
    ) -> None:
        columns = database["columns"]
        try:
            if columns.find_one({}) is not None:
                return
            now = datetime.now(timezone.utc)
            scope = tenant_scope(tenant_kind, tenant_id) if tenant_id else {}
            columns.insert_many([
                {
                    "projectId": TEMPLATE_PROJECT_ID,
                    **scope,
                    "name": name,
                    "order": order,
                    "role": role,
                    "color": color,
                    "isTemplate": True,
                    "createdAt": now,
                    "updatedAt": now,
                }
                for order, (name, role, color) in enumerate(DEFAULT_COLUMNS)
            ])
            report.default_data_created = True
            logger.info("Created default column templates in %s", database.name)
        except PyMongoError as exc:
            report.errors.append(f"seed default columns: {exc}")

    def _seed_organization(
        self,
        database,
        tenant_id: str,
        organization_document: Dict[str, Any],
        report: InitializationReport,
    ) -> None:
        organizations = database["organizations"]
        try:
            if organizations.find_one({"_id": tenant_id}) is not None:
                return
            document = {
                key: value
                for key, value in organization_document.items()
                if key not in MEMBERSHIP_FIELDS
            }
            document["_id"] = tenant_id
            document["updatedAt"] = datetime.now(timezone.utc)
            organizations.insert_one(document)
            report.default_data_created = True
            logger.info("Copied organization document %s to self-hosted database", tenant_id)
        except PyMongoError as exc:
            report.errors.append(f"seed organization document: {exc}")
