# ==============================================
# TOPIC 1: ROUTING MODEL
# ==============================================
#
# Pure data: which category a collection belongs to, and the
# per-tenant storage configuration (official vs self-hosted).
# No I/O happens in this package.
#
# Modules:
# --------
# - categories.py     → EntityCategory + collection catalog
# - configuration.py  → StorageConfiguration tagged union, URI helpers
#
# ==============================================

from .categories import (
    COLLECTION_CATEGORIES,
    IDENTITY_COLLECTIONS,
    ORGANIZATION_METADATA_COLLECTIONS,
    TASK_DATA_COLLECTIONS,
    EntityCategory,
    category_for_collection,
)
from .configuration import (
    ConnectionDetails,
    OfficialStorage,
    SelfHostedStorage,
    StorageConfiguration,
    StorageMode,
    TenantKind,
    UnreadableConnection,
    default_configuration,
    is_valid_mongo_uri,
    mask_connection_string,
    tenant_scope,
    to_public_dict,
)

__all__ = [
    "COLLECTION_CATEGORIES",
    "IDENTITY_COLLECTIONS",
    "ORGANIZATION_METADATA_COLLECTIONS",
    "TASK_DATA_COLLECTIONS",
    "EntityCategory",
    "category_for_collection",
    "ConnectionDetails",
    "OfficialStorage",
    "SelfHostedStorage",
    "StorageConfiguration",
    "StorageMode",
    "TenantKind",
    "UnreadableConnection",
    "default_configuration",
    "is_valid_mongo_uri",
    "mask_connection_string",
    "tenant_scope",
    "to_public_dict",
]
