"""
Data layer for the clinic core.

Contains permission models and the repositories backing the override table.
"""

from .models import PermissionRecord, RolePermissionRow, PermissionOverride
from .repos import OverrideStore, PermissionRepository, RolePermissionRepository

__all__ = [
    "PermissionRecord",
    "RolePermissionRow",
    "PermissionOverride",
    "OverrideStore",
    "PermissionRepository",
    "RolePermissionRepository",
]
