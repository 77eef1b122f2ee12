"""Configuration loading for the S3 client.

Supports two configuration sources:
1. Environment variables (for CI/CD and containers) - takes priority
2. A JSON config file (for local development)

Environment Variable Format:
    S3_ENDPOINT=s3.us-west-000.backblazeb2.com
    S3_REGION=us-west-000
    S3_ACCESS_KEY=xxx
    S3_SECRET_KEY=xxx
    S3_BUCKET=xxx                 (optional default bucket)
    S3_SESSION_TOKEN=xxx          (optional)
    S3_PORT=9000                  (optional)
    S3_USE_SSL=true|false         (optional, default true)
    S3_PATH_STYLE=true|false      (optional, default true)
    S3_PART_SIZE=67108864         (optional, bytes)

JSON Format (same keys, lowercase, without the S3_ prefix):
    {"endpoint": "localhost", "port": 9000, "use_ssl": false, ...}
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from s3lite.client import S3Client
from s3lite.errors import ConfigError
from s3lite.uploader import DEFAULT_PART_SIZE

ENV_PREFIX = "S3_"

# Required fields for a client configuration
REQUIRED_FIELDS = ["endpoint", "region"]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ClientConfig:
    """Connection settings for one S3-compatible endpoint."""

    endpoint: str
    region: str
    access_key: str = ""
    secret_key: str = ""
    session_token: Optional[str] = None
    bucket: Optional[str] = None
    port: Optional[int] = None
    use_ssl: bool = True
    path_style: bool = True
    part_size: int = DEFAULT_PART_SIZE

    def create_client(self) -> S3Client:
        """Build an S3Client from these settings."""
        return S3Client(
            endpoint=self.endpoint,
            region=self.region,
            access_key=self.access_key,
            secret_key=self.secret_key,
            session_token=self.session_token,
            bucket=self.bucket,
            port=self.port,
            use_ssl=self.use_ssl,
            path_style=self.path_style,
            part_size=self.part_size,
        )


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for '{name}': {value!r}")


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid integer for '{name}': {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid integer for '{name}': {value!r}") from e


def config_from_mapping(data: Mapping[str, Any]) -> ClientConfig:
    """Build a ClientConfig from a dict of settings.

    Raises:
        ConfigError: If required fields are missing or values are malformed.
    """
    for field in REQUIRED_FIELDS:
        if not data.get(field):
            raise ConfigError(f"Missing required field '{field}'")

    config = ClientConfig(
        endpoint=str(data["endpoint"]),
        region=str(data["region"]),
        access_key=str(data.get("access_key") or ""),
        secret_key=str(data.get("secret_key") or ""),
        session_token=data.get("session_token") or None,
        bucket=data.get("bucket") or None,
    )
    if data.get("port") not in (None, ""):
        config.port = _parse_int("port", data["port"])
    if data.get("use_ssl") not in (None, ""):
        config.use_ssl = _parse_bool("use_ssl", data["use_ssl"])
    if data.get("path_style") not in (None, ""):
        config.path_style = _parse_bool("path_style", data["path_style"])
    if data.get("part_size") not in (None, ""):
        config.part_size = _parse_int("part_size", data["part_size"])
    return config


def load_from_json(config_path: str) -> ClientConfig:
    """Load a client configuration from a JSON file.

    Args:
        config_path: Path to the JSON file.

    Raises:
        ConfigError: If the file doesn't exist, contains invalid JSON,
                    or is missing required fields.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")

    return config_from_mapping(data)


def load_from_env() -> ClientConfig:
    """Load a client configuration from S3_* environment variables.

    Raises:
        ConfigError: If required variables are missing or malformed.
    """
    data = {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX)
    }
    return config_from_mapping(data)


def has_env_config() -> bool:
    """Check if the S3_ENDPOINT environment variable is set."""
    return bool(os.environ.get(f"{ENV_PREFIX}ENDPOINT"))


def load_config(config_path: str = "s3lite.json") -> ClientConfig:
    """Load the client configuration with environment priority.

    Priority order:
    1. Environment variables (if S3_ENDPOINT is set)
    2. The JSON config file

    Raises:
        ConfigError: If neither source is available or the config is invalid.
    """
    if has_env_config():
        return load_from_env()
    if Path(config_path).exists():
        return load_from_json(config_path)
    raise ConfigError(
        "No configuration found. Set S3_ENDPOINT and related environment "
        f"variables or create {config_path}."
    )
