"""Configuration loading for the object store client.

Supports two configuration sources:
1. Environment variables - takes priority
2. config.json file (for local development)

Environment Variable Format:
    OSS_ACCESS_KEY=xxx
    OSS_SECRET_KEY=xxx
    OSS_BUCKET=xxx
    OSS_ENDPOINT=https://s3.us-west-000.backblazeb2.com
    OSS_REGION=us-west-000
    OSS_ADDRESSING_STYLE=path            (optional: path|virtual)

Optional tuning variables:
    OSS_MULTIPART_THRESHOLD=10MB
    OSS_PART_SIZE=8MiB
    OSS_MAX_CONCURRENCY=10
    OSS_TIMEOUT=60
    OSS_MAX_ATTEMPTS=4

config.json Format:
    {
        "access_key": "...",
        "secret_key": "...",
        "bucket": "...",
        "endpoint": "https://...",
        "region": "...",
        "addressing_style": "path",
        "transfer": {"part_size": "8MiB", "max_concurrency": 4}
    }
"""

import json
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from oss_uploader.errors import ConfigurationError
from oss_uploader.models import Credentials, TransferConfig

# Required credential fields: (config.json key, environment variable)
REQUIRED_FIELDS = [
    ("access_key", "OSS_ACCESS_KEY"),
    ("secret_key", "OSS_SECRET_KEY"),
    ("bucket", "OSS_BUCKET"),
    ("endpoint", "OSS_ENDPOINT"),
    ("region", "OSS_REGION"),
]

# Tuning settings: (config.json key, environment variable)
TRANSFER_FIELDS = [
    ("multipart_threshold", "OSS_MULTIPART_THRESHOLD"),
    ("part_size", "OSS_PART_SIZE"),
    ("min_part_size", "OSS_MIN_PART_SIZE"),
    ("max_concurrency", "OSS_MAX_CONCURRENCY"),
    ("timeout", "OSS_TIMEOUT"),
    ("max_attempts", "OSS_MAX_ATTEMPTS"),
]

SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000 ** 2,
    "gb": 1000 ** 3,
    "kib": 1024,
    "mib": 1024 ** 2,
    "gib": 1024 ** 3,
}

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([a-zA-Z]*)\s*$")


def parse_size(value: Union[str, int]) -> int:
    """Parse a byte size such as ``1048576``, ``10MB`` or ``8MiB``.

    Raises:
        ConfigurationError: If the value is not a recognized size.
    """
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match or match.group(2).lower() not in SIZE_UNITS:
        raise ConfigurationError(f"Invalid size: {value!r}")
    return int(match.group(1)) * SIZE_UNITS[match.group(2).lower()]


def _parse_number(name: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from e


def build_transfer_config(
    settings: Mapping[str, Any],
    base: Optional[TransferConfig] = None,
) -> TransferConfig:
    """Apply tuning settings on top of a base TransferConfig.

    Args:
        settings: Mapping of TRANSFER_FIELDS keys to raw values.
        base: Config to start from (defaults if omitted).

    Raises:
        ConfigurationError: If a value is malformed or the result is invalid.
    """
    config = base or TransferConfig()
    changes: dict[str, Any] = {}

    for name in ("multipart_threshold", "part_size", "min_part_size"):
        if settings.get(name) is not None:
            changes[name] = parse_size(settings[name])
    if settings.get("max_concurrency") is not None:
        changes["max_concurrency"] = _parse_number(
            "max_concurrency", settings["max_concurrency"], int
        )
    if settings.get("timeout") is not None:
        changes["timeout"] = _parse_number("timeout", settings["timeout"], float)
    if settings.get("max_attempts") is not None:
        changes["retry"] = replace(
            config.retry,
            max_attempts=_parse_number("max_attempts", settings["max_attempts"], int),
        )

    config = replace(config, **changes)
    config.validate()
    return config


def _credentials_from(values: Mapping[str, Any], source: str) -> Credentials:
    for field, env_name in REQUIRED_FIELDS:
        if not values.get(field):
            name = env_name if source == "environment" else f"'{field}'"
            raise ConfigurationError(f"Missing required setting {name} in {source}")

    credentials = Credentials(
        access_key=values["access_key"],
        secret_key=values["secret_key"],
        region=values["region"],
        endpoint_url=values["endpoint"],
        bucket=values["bucket"],
        addressing_style=values.get("addressing_style") or "path",
    )
    credentials.validate()
    return credentials


def load_from_json(config_path: str) -> tuple[Credentials, TransferConfig]:
    """Load credentials and transfer settings from a JSON file.

    Args:
        config_path: Path to the config.json file.

    Returns:
        Tuple of (Credentials, TransferConfig).

    Raises:
        ConfigurationError: If file doesn't exist, contains invalid JSON,
                    or is missing required fields.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a JSON object")

    credentials = _credentials_from(data, config_path)
    transfer = build_transfer_config(data.get("transfer") or {})
    return credentials, transfer


def load_from_env(environ: Optional[Mapping[str, str]] = None) -> tuple[Credentials, TransferConfig]:
    """Load credentials and transfer settings from OSS_* environment variables.

    Raises:
        ConfigurationError: If a required variable is missing or a tuning
                    variable is malformed.
    """
    environ = os.environ if environ is None else environ

    values = {field: environ.get(env_name) for field, env_name in REQUIRED_FIELDS}
    values["addressing_style"] = environ.get("OSS_ADDRESSING_STYLE")
    credentials = _credentials_from(values, "environment")

    settings = {field: environ.get(env_name) for field, env_name in TRANSFER_FIELDS}
    return credentials, build_transfer_config(settings)


def has_env_credentials(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Check if any credential environment variable is set."""
    environ = os.environ if environ is None else environ
    return any(env_name in environ for _, env_name in REQUIRED_FIELDS)


def load_config(config_path: str = "config.json") -> tuple[Credentials, TransferConfig]:
    """Load configuration with environment priority.

    Priority order:
    1. Environment variables (if any OSS_* credential variable exists)
    2. config.json file

    Raises:
        ConfigurationError: If no configuration source is available.
    """
    if has_env_credentials():
        return load_from_env()
    if Path(config_path).exists():
        return load_from_json(config_path)

    raise ConfigurationError(
        "No configuration found. Set the OSS_ACCESS_KEY, OSS_SECRET_KEY, OSS_BUCKET, "
        "OSS_ENDPOINT and OSS_REGION environment variables or create a config.json file."
    )
