"""
Clinic Core Configuration Schema

Defines the configuration structure for the clinic core.
All configuration can be specified via clinic.yaml or environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class SupabaseConfig:
    """Connection to the clinic data store"""
    url: Optional[str] = None
    key: Optional[str] = None
    schema: str = "public"

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)

    @property
    def health_url(self) -> Optional[str]:
        """Endpoint the reachability probe hits"""
        if not self.url:
            return None
        return f"{self.url.rstrip('/')}/rest/v1/"


@dataclass
class AuthorizationConfig:
    """Capability resolution settings"""
    override_table: str = "role_permissions"
    permission_table: str = "permissions"
    # Union catalog defaults into non-admin overrides instead of treating
    # the override set as authoritative
    static_floor: bool = False
    # Refresh resolved sets when the override tables change
    watch_overrides: bool = True


@dataclass
class SubscriptionConfig:
    """Change-feed channel establishment settings"""
    backoff_initial: float = 0.5
    backoff_max: float = 30.0
    backoff_factor: float = 2.0
    max_online_attempts: int = 5
    join_timeout: float = 10.0


@dataclass
class ConnectivityConfig:
    """Reachability tracking settings"""
    initially_online: bool = True
    probe_enabled: bool = True
    probe_interval: float = 15.0
    probe_timeout: float = 5.0
    # Defaults to the Supabase REST root when unset
    probe_url: Optional[str] = None


@dataclass
class ClinicConfig:
    """
    Complete clinic core configuration.

    Example clinic.yaml:
    ```yaml
    supabase:
      url: "${SUPABASE_URL}"
      key: "${SUPABASE_KEY}"

    authorization:
      static_floor: false

    subscriptions:
      max_online_attempts: 5

    connectivity:
      probe_interval: 15
    ```
    """
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    authorization: AuthorizationConfig = field(default_factory=AuthorizationConfig)
    subscriptions: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    log_level: str = "INFO"
    working_dir: Path = field(default_factory=Path.cwd)

    @property
    def probe_url(self) -> Optional[str]:
        return self.connectivity.probe_url or self.supabase.health_url

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClinicConfig":
        """Create ClinicConfig from dictionary (e.g., parsed YAML)"""
        supabase_data = data.get("supabase", {}) or {}
        supabase_config = SupabaseConfig(
            url=supabase_data.get("url") or os.environ.get("SUPABASE_URL"),
            key=supabase_data.get("key") or os.environ.get("SUPABASE_KEY"),
            schema=supabase_data.get("schema", "public"),
        )

        auth_data = data.get("authorization", {}) or {}
        auth_config = AuthorizationConfig(
            override_table=auth_data.get("override_table", "role_permissions"),
            permission_table=auth_data.get("permission_table", "permissions"),
            static_floor=bool(auth_data.get("static_floor", False)),
            watch_overrides=bool(auth_data.get("watch_overrides", True)),
        )

        subs_data = data.get("subscriptions", {}) or {}
        subs_config = SubscriptionConfig(
            backoff_initial=float(subs_data.get("backoff_initial", 0.5)),
            backoff_max=float(subs_data.get("backoff_max", 30.0)),
            backoff_factor=float(subs_data.get("backoff_factor", 2.0)),
            max_online_attempts=int(subs_data.get("max_online_attempts", 5)),
            join_timeout=float(subs_data.get("join_timeout", 10.0)),
        )

        conn_data = data.get("connectivity", {}) or {}
        conn_config = ConnectivityConfig(
            initially_online=bool(conn_data.get("initially_online", True)),
            probe_enabled=bool(conn_data.get("probe_enabled", True)),
            probe_interval=float(conn_data.get("probe_interval", 15.0)),
            probe_timeout=float(conn_data.get("probe_timeout", 5.0)),
            probe_url=conn_data.get("probe_url"),
        )

        return cls(
            supabase=supabase_config,
            authorization=auth_config,
            subscriptions=subs_config,
            connectivity=conn_config,
            log_level=str(data.get("log_level", "INFO")).upper(),
            working_dir=Path(data.get("working_dir", ".")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (for serialization). The API key is omitted."""
        return {
            "supabase": {
                "url": self.supabase.url,
                "schema": self.supabase.schema,
            },
            "authorization": {
                "override_table": self.authorization.override_table,
                "permission_table": self.authorization.permission_table,
                "static_floor": self.authorization.static_floor,
                "watch_overrides": self.authorization.watch_overrides,
            },
            "subscriptions": {
                "backoff_initial": self.subscriptions.backoff_initial,
                "backoff_max": self.subscriptions.backoff_max,
                "backoff_factor": self.subscriptions.backoff_factor,
                "max_online_attempts": self.subscriptions.max_online_attempts,
                "join_timeout": self.subscriptions.join_timeout,
            },
            "connectivity": {
                "initially_online": self.connectivity.initially_online,
                "probe_enabled": self.connectivity.probe_enabled,
                "probe_interval": self.connectivity.probe_interval,
                "probe_timeout": self.connectivity.probe_timeout,
                "probe_url": self.connectivity.probe_url,
            },
            "log_level": self.log_level,
            "working_dir": str(self.working_dir),
        }
