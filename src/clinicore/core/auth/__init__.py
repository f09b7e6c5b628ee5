"""
Clinic Authorization

- Actor / Role: explicit caller identity passed into every decision
- AuthorizationResolver: admin bypass + catalog + dynamic overrides
"""

from .actor import Actor, Role
from .resolver import (
    AuthorizationResolver,
    CheckOutcome,
    ResolutionStatus,
    ResolvedCapabilitySet,
)

__all__ = [
    "Actor",
    "Role",
    "AuthorizationResolver",
    "CheckOutcome",
    "ResolutionStatus",
    "ResolvedCapabilitySet",
]
