"""Typed models for permission data."""

from .permissions import PermissionRecord, PermissionRef, RolePermissionRow, PermissionOverride

__all__ = [
    "PermissionRecord",
    "PermissionRef",
    "RolePermissionRow",
    "PermissionOverride",
]
