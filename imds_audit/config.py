"""
IMDS Audit - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (IMDS_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./imds-audit"
log_level: INFO

aws:
  profile: security-audit
  bootstrap_region: us-west-2
  regions:
    - us-east-1
    - us-west-2

metrics:
  lookback_days: 450
  period: 38880000
```
"""
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .constants import (
    DEFAULT_BOOTSTRAP_REGION,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_PERIOD_SECONDS,
    DEFAULT_REPORT_NAME,
)

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './imds-config.yaml',
    './imds-config.yml',
    '~/.imds/config.yaml',
    '~/.imds/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'IMDS_'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'IMDS_OUTPUT',
    'report_name': 'IMDS_REPORT_NAME',
    'log_level': 'IMDS_LOG_LEVEL',
    'aws.profile': 'IMDS_AWS_PROFILE',
    'aws.regions': 'IMDS_REGIONS',
    'aws.bootstrap_region': 'IMDS_BOOTSTRAP_REGION',
    'aws.page_size': 'IMDS_PAGE_SIZE',
    'metrics.lookback_days': 'IMDS_LOOKBACK_DAYS',
    'metrics.period': 'IMDS_PERIOD',
}

# Config keys whose values are integers
INT_KEYS = ('aws.page_size', 'metrics.lookback_days', 'metrics.period')

# Values used when no source sets a key
DEFAULTS: Dict[str, Any] = {
    'output': '.',
    'report_name': DEFAULT_REPORT_NAME,
    'log_level': 'INFO',
    'aws': {
        'bootstrap_region': DEFAULT_BOOTSTRAP_REGION,
    },
    'metrics': {
        'lookback_days': DEFAULT_LOOKBACK_DAYS,
        'period': DEFAULT_PERIOD_SECONDS,
    },
}

# argparse attribute -> config key
ARG_MAPPING = {
    'output': 'output',
    'report_name': 'report_name',
    'log_level': 'log_level',
    'profile': 'aws.profile',
    'regions': 'aws.regions',
    'bootstrap_region': 'aws.bootstrap_region',
    'page_size': 'aws.page_size',
    'lookback_days': 'metrics.lookback_days',
    'period': 'metrics.period',
}


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    keys = key_path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def _to_int(key_path: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config value {key_path} must be an integer (got {value!r})") from None


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Warn if config file has loose permissions
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is not None:
            # Handle comma-separated lists
            if config_key == 'aws.regions':
                value = [v.strip() for v in value.split(',') if v.strip()]

            _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    for arg_name, config_key in ARG_MAPPING.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            if arg_name == 'regions' and isinstance(value, str):
                value = [v.strip() for v in value.split(',') if v.strip()]
            _set_nested(config, config_key, value)

    return config


def config_to_args(config: Dict[str, Any], args) -> None:
    """Apply merged config values to the argparse args object."""
    for arg_name, config_key in ARG_MAPPING.items():
        value = _get_nested(config, config_key)
        if value is None:
            continue
        if config_key in INT_KEYS:
            value = _to_int(config_key, value)
        elif arg_name == 'regions' and isinstance(value, list):
            value = ','.join(str(v) for v in value)
        setattr(args, arg_name, value)


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables
    4. Built-in defaults

    Returns merged config dict. The merged values are also written back
    onto args.
    """
    configs = [DEFAULTS]

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    configs.append(args_to_config(args))

    merged = merge_configs(*configs)
    config_to_args(merged, args)

    return merged


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# IMDS Audit Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory for the CSV report, JSON summary and log file
output: "./imds-audit"

# CSV report file name (written inside output)
report_name: instances.csv

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO


# =============================================================================
# AWS Settings
# =============================================================================
aws:
  # AWS CLI profile (optional, uses default credentials if not set)
  # profile: ${AWS_PROFILE:-default}

  # Region used to call DescribeRegions
  bootstrap_region: us-west-2

  # DescribeInstances page size, 5-1000 (default: API default)
  # page_size: 100

  # Restrict the audit to these regions (default: all enabled regions)
  # regions:
  #   - us-east-1
  #   - us-west-2


# =============================================================================
# CloudWatch Window
# =============================================================================
metrics:
  # How far back to sum MetadataNoToken (CloudWatch retains 455 days)
  lookback_days: 450

  # Bucket width in seconds for GetMetricStatistics
  period: 38880000
'''
