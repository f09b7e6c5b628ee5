"""Data repositories for permission overrides."""

from .base import Repository
from .overrides import OverrideStore, PermissionRepository, RolePermissionRepository

__all__ = [
    "Repository",
    "OverrideStore",
    "PermissionRepository",
    "RolePermissionRepository",
]
