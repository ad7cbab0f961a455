"""Role catalog and hierarchy identity codec."""

from delegrid.hierarchy.identity import (
    FOLDER_PREFIX,
    HierarchyIdentity,
    UidAllocator,
    child_folder_name,
    deepest_identity,
    extract_chain,
    format_folder_name,
    infer_depth,
    parse_folder_name,
    root_folder_name,
    root_identity,
    try_parse_folder_name,
)
from delegrid.hierarchy.roles import (
    ROOT_ROLE,
    Role,
    RolePosition,
    can_delegate,
    get_hierarchy,
    lookup_role,
)

__all__ = [
    "FOLDER_PREFIX",
    "ROOT_ROLE",
    "HierarchyIdentity",
    "Role",
    "RolePosition",
    "UidAllocator",
    "can_delegate",
    "child_folder_name",
    "deepest_identity",
    "extract_chain",
    "format_folder_name",
    "get_hierarchy",
    "infer_depth",
    "lookup_role",
    "parse_folder_name",
    "root_folder_name",
    "root_identity",
    "try_parse_folder_name",
]
