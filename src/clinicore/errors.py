"""
Error taxonomy for the clinic core.

Resolution and subscription failures are recovered locally wherever a caller
could otherwise be blocked; these classes mark the boundaries where that
recovery happens.
"""

from typing import Optional


class ClinicCoreError(Exception):
    """Base class for all clinic core errors"""


class AuthorizationUnavailable(ClinicCoreError):
    """
    Override fetch or decode failed.

    The resolver never lets this reach a capability check: it records an
    unavailable snapshot that grants nothing beyond the admin bypass.
    """

    def __init__(self, role: Optional[str], reason: str):
        self.role = role
        self.reason = reason
        super().__init__(f"Overrides unavailable for role {role!r}: {reason}")


class SubscriptionEstablishError(ClinicCoreError):
    """A change-feed channel could not be opened for a topic."""

    def __init__(self, topic: "object", reason: str):
        self.topic = topic
        self.reason = reason
        super().__init__(f"Cannot establish channel for {topic}: {reason}")


class UnknownCapability(ClinicCoreError, LookupError):
    """Capability name is not in the catalog. Treated as denial."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown capability: {name!r}")


class OfflineError(ClinicCoreError):
    """A mutating action was attempted while the backend is unreachable."""
