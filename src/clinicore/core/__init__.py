"""
Clinic Core

Capability resolution and connectivity tracking.
"""

from .auth import (
    Actor,
    Role,
    AuthorizationResolver,
    CheckOutcome,
    ResolutionStatus,
    ResolvedCapabilitySet,
)
from .capability_catalog import CapabilityCatalog, CapabilityDefinition, CapabilityCategory
from .connectivity import (
    ConnectivityMonitor,
    ConnectivityState,
    ConnectivityTransition,
    ReachabilityProbe,
)

__all__ = [
    # Auth
    "Actor",
    "Role",
    "AuthorizationResolver",
    "CheckOutcome",
    "ResolutionStatus",
    "ResolvedCapabilitySet",
    # Catalog
    "CapabilityCatalog",
    "CapabilityDefinition",
    "CapabilityCategory",
    # Connectivity
    "ConnectivityMonitor",
    "ConnectivityState",
    "ConnectivityTransition",
    "ReachabilityProbe",
]
