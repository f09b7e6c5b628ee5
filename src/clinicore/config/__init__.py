"""
Clinic Core Configuration Module

Provides centralized configuration management for the clinic core.
"""

from .schema import (
    ClinicConfig,
    SupabaseConfig,
    AuthorizationConfig,
    SubscriptionConfig,
    ConnectivityConfig,
)
from .loader import load_config, load_config_from_file, create_default_config

__all__ = [
    "ClinicConfig",
    "SupabaseConfig",
    "AuthorizationConfig",
    "SubscriptionConfig",
    "ConnectivityConfig",
    "load_config",
    "load_config_from_file",
    "create_default_config",
]
