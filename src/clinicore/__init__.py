"""
clinicore - capability resolution and change-feed subscriptions for a
role-gated clinic client.
"""

from .bootstrap import ClinicCore
from .core import (
    Actor,
    Role,
    AuthorizationResolver,
    CheckOutcome,
    ResolvedCapabilitySet,
    CapabilityCatalog,
    ConnectivityMonitor,
    ConnectivityState,
)
from .errors import (
    ClinicCoreError,
    AuthorizationUnavailable,
    SubscriptionEstablishError,
    UnknownCapability,
    OfflineError,
)
from .realtime import (
    ChangeEvent,
    ChangeHandlers,
    ChangeKind,
    SubscriptionHandle,
    SubscriptionManager,
    SubscriptionTopic,
)

__version__ = "0.1.0"

__all__ = [
    "ClinicCore",
    "Actor",
    "Role",
    "AuthorizationResolver",
    "CheckOutcome",
    "ResolvedCapabilitySet",
    "CapabilityCatalog",
    "ConnectivityMonitor",
    "ConnectivityState",
    "ClinicCoreError",
    "AuthorizationUnavailable",
    "SubscriptionEstablishError",
    "UnknownCapability",
    "OfflineError",
    "ChangeEvent",
    "ChangeHandlers",
    "ChangeKind",
    "SubscriptionHandle",
    "SubscriptionManager",
    "SubscriptionTopic",
]
