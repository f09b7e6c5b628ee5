"""
Clinic Core Configuration Loader

Loads configuration from YAML files with environment variable interpolation.

Environment Variable Interpolation:
- ${VAR_NAME} - Required variable, raises error if not set
- ${VAR_NAME:-default} - Optional variable with default value

Example:
```yaml
supabase:
  url: "${SUPABASE_URL}"
  key: "${SUPABASE_KEY}"
connectivity:
  probe_url: "${CLINIC_PROBE_URL:-}"
```
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .schema import ClinicConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "clinic.yaml"

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in configuration values.

    Raises:
        KeyError: a required variable is not set
    """
    if isinstance(value, str):
        def replace_env_var(match):
            var_name = match.group(1)
            default_value = match.group(2)

            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default_value is not None:
                return default_value
            raise KeyError(
                f"Environment variable '{var_name}' is required but not set. "
                f"Set it or provide a default: ${{{var_name}:-default}}"
            )

        return ENV_VAR_PATTERN.sub(replace_env_var, value)

    if isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]

    return value


def load_config_from_file(
    config_path: Union[str, Path],
    interpolate: bool = True
) -> ClinicConfig:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        KeyError: If required environment variable is not set
        yaml.YAMLError: If YAML is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raw_config = {}

    if interpolate:
        try:
            raw_config = interpolate_env_vars(raw_config)
        except KeyError as e:
            logger.error(f"Configuration error: {e}")
            raise

    if "working_dir" not in raw_config:
        raw_config["working_dir"] = str(config_path.parent.absolute())

    return ClinicConfig.from_dict(raw_config)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    working_dir: Optional[Union[str, Path]] = None,
) -> ClinicConfig:
    """
    Load configuration with sensible defaults.

    Search order:
    1. Explicit config_path if provided
    2. clinic.yaml / config/clinic.yaml in working_dir
    3. clinic.yaml / config/clinic.yaml in the current directory
    4. Defaults (Supabase credentials from the environment)
    """
    if config_path:
        return load_config_from_file(config_path)

    search_paths = []
    if working_dir:
        working_dir = Path(working_dir)
        search_paths.append(working_dir / CONFIG_FILENAME)
        search_paths.append(working_dir / "config" / CONFIG_FILENAME)

    cwd = Path.cwd()
    search_paths.append(cwd / CONFIG_FILENAME)
    search_paths.append(cwd / "config" / CONFIG_FILENAME)

    for path in search_paths:
        if path.exists():
            logger.info(f"Found configuration at {path}")
            return load_config_from_file(path)

    logger.info(f"No {CONFIG_FILENAME} found, using default configuration")
    config = ClinicConfig.from_dict({})
    config.working_dir = Path(working_dir) if working_dir else cwd
    return config


DEFAULT_CONFIG = """# Clinic core configuration
# Environment variables can be used: ${VAR_NAME} or ${VAR_NAME:-default}

supabase:
  url: "${SUPABASE_URL:-}"
  key: "${SUPABASE_KEY:-}"
  schema: "public"

authorization:
  override_table: "role_permissions"
  permission_table: "permissions"
  # true: catalog defaults are a floor under the override set
  static_floor: false
  watch_overrides: true

subscriptions:
  backoff_initial: 0.5
  backoff_max: 30
  backoff_factor: 2
  max_online_attempts: 5
  join_timeout: 10

connectivity:
  initially_online: true
  probe_enabled: true
  probe_interval: 15
  probe_timeout: 5

log_level: "INFO"
"""


def create_default_config(output_path: Optional[Union[str, Path]] = None) -> Path:
    """Write a default clinic.yaml and return its path."""
    output_path = Path(output_path) if output_path else Path(CONFIG_FILENAME)

    with open(output_path, 'w') as f:
        f.write(DEFAULT_CONFIG)

    logger.info(f"Created default configuration at {output_path}")
    return output_path
