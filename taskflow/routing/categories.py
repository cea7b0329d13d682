# ==============================================
# Entity Categories
# ==============================================
#
# PURPOSE:
#   Classify every collection the application stores into one of
#   three categories. The category decides which store governs it:
#
#   - MEMBERSHIP_AND_IDENTITY → always the official store
#   - TASK_DATA               → follows the tenant's storage mode
#   - ORGANIZATION_METADATA   → follows the mode only when the tenant
#                               opted in (include_organization_metadata)
#
# ENUMS:
# ------
# - EntityCategory(Enum)
#
# CONSTANTS:
# ----------
# - IDENTITY_COLLECTIONS, TASK_DATA_COLLECTIONS,
#   ORGANIZATION_METADATA_COLLECTIONS
# - COLLECTION_CATEGORIES: dict[str, EntityCategory]
#
# FUNCTIONS:
# ----------
# - category_for_collection(name: str) -> EntityCategory
#
# ==============================================

from enum import Enum
from typing import Dict, Tuple

from taskflow.errors import InvalidStorageRequest


class EntityCategory(Enum):
    """
    Data classification used by the router.

    - MEMBERSHIP_AND_IDENTITY: users, members, invitations, roles
    - TASK_DATA: tasks, columns, comments, time entries
    - ORGANIZATION_METADATA: organization documents and projects
    """
    MEMBERSHIP_AND_IDENTITY = "membership_and_identity"
    TASK_DATA = "task_data"
    ORGANIZATION_METADATA = "organization_metadata"


IDENTITY_COLLECTIONS: Tuple[str, ...] = (
    "users",
    "organizationMembers",
    "organizationInvitations",
    "roles",
)

TASK_DATA_COLLECTIONS: Tuple[str, ...] = (
    "tasks",
    "columns",
    "comments",
    "timeEntries",
)

ORGANIZATION_METADATA_COLLECTIONS: Tuple[str, ...] = (
    "organizations",
    "projects",
)

COLLECTION_CATEGORIES: Dict[str, EntityCategory] = {
    **{name: EntityCategory.MEMBERSHIP_AND_IDENTITY for name in IDENTITY_COLLECTIONS},
    **{name: EntityCategory.TASK_DATA for name in TASK_DATA_COLLECTIONS},
    **{name: EntityCategory.ORGANIZATION_METADATA for name in ORGANIZATION_METADATA_COLLECTIONS},
}


def category_for_collection(name: str) -> EntityCategory:
    """
    Look up the category of a collection.

    Raises:
        InvalidStorageRequest: for collections outside the catalog, so that
            nothing is ever written to a store by accident.
    """
    try:
        return COLLECTION_CATEGORIES[name]
    except KeyError:
        raise InvalidStorageRequest(
            f"Unknown collection '{name}'",
            field="collection",
            hint=f"Known collections: {', '.join(sorted(COLLECTION_CATEGORIES))}",
        ) from None
