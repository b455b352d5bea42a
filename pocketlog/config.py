"""Configuration module — frozen dataclass loaded from a YAML file and environment variables."""

import logging
import os
from dataclasses import dataclass, fields

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/pocketlog/pocketlog.yml"
PLACEHOLDER_BUCKETS = ("", "PUT-YOUR-BUCKET-NAME-HERE", "your-bucket-name")
CLOCKS = ("local", "utc")
STORE_BACKENDS = ("s3", "filesystem")

# Config field -> environment variable that overrides it.
ENV_VARS = {
    "s3_bucket": "S3_BUCKET",
    "s3_prefix": "S3_PREFIX",
    "log_root": "LOG_ROOT",
    "delete_after_upload": "DELETE_AFTER_UPLOAD",
    "min_age_sec": "MIN_AGE_SEC",
    "clock": "POCKETLOG_CLOCK",
    "store_backend": "STORE_BACKEND",
    "store_dir": "STORE_DIR",
    "aws_region": "AWS_REGION",
    "s3_endpoint_url": "S3_ENDPOINT_URL",
    "skip_shipped": "SKIP_SHIPPED",
    "retention_hours": "RETENTION_HOURS",
    "host": "SERVER_HOST",
    "enable_tcp": "ENABLE_TCP",
    "enable_udp": "ENABLE_UDP",
    "tcp_port": "TCP_PORT",
    "udp_port": "UDP_PORT",
    "buffer_size": "BUFFER_SIZE",
    "max_line_bytes": "MAX_LINE_BYTES",
    "fsync_interval_sec": "FSYNC_INTERVAL_SEC",
    "log_level": "LOG_LEVEL",
}


class ConfigError(Exception):
    """Raised for missing or malformed configuration. Fatal at startup."""


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    s3_bucket: str = ""
    s3_prefix: str = "pocketlog"
    log_root: str = "/var/log/pocketlog"
    delete_after_upload: bool = True
    min_age_sec: int = 120
    clock: str = "local"
    store_backend: str = "s3"
    store_dir: str = ""
    aws_region: str = ""
    s3_endpoint_url: str = ""
    skip_shipped: bool = True
    retention_hours: int = 0
    host: str = "0.0.0.0"
    enable_tcp: bool = True
    enable_udp: bool = True
    tcp_port: int = 514
    udp_port: int = 514
    buffer_size: int = 65536
    max_line_bytes: int = 65536
    fsync_interval_sec: float = 1.0
    log_level: str = "INFO"

    def require_listener(self):
        if not (self.enable_tcp or self.enable_udp):
            raise ConfigError("Both TCP and UDP listeners are disabled")

    def require_destination(self):
        """Fail fast when the uploader has nowhere to ship to."""
        if self.store_backend == "filesystem":
            if not self.store_dir:
                raise ConfigError("store_dir is required when store_backend is 'filesystem'")
            return
        if self.s3_bucket.strip() in PLACEHOLDER_BUCKETS:
            raise ConfigError(
                f"S3 bucket is not configured (got {self.s3_bucket!r}); set S3_BUCKET"
            )


def load_yaml_config(path: str | None) -> dict:
    """Load the YAML config file. Returns an empty dict when no file exists."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.debug("Loaded YAML config from %s", path)
    return data


def load_env_file(path: str) -> dict:
    """Parse a shell-style KEY="value" file (the legacy pocketlog.conf format)."""
    values = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return values
    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"{path}:{line_num}: expected KEY=value")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values


def _coerce(name: str, raw, default):
    if raw is None:
        return default
    try:
        if isinstance(default, bool):
            return _parse_bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc
    return str(raw)


def _validate(config: Config):
    if config.clock not in CLOCKS:
        raise ConfigError(f"clock must be one of {CLOCKS}, got {config.clock!r}")
    if config.store_backend not in STORE_BACKENDS:
        raise ConfigError(
            f"store_backend must be one of {STORE_BACKENDS}, got {config.store_backend!r}"
        )
    if config.min_age_sec < 0:
        raise ConfigError("min_age_sec must not be negative")
    if config.retention_hours < 0:
        raise ConfigError("retention_hours must not be negative")
    if config.fsync_interval_sec <= 0:
        raise ConfigError("fsync_interval_sec must be positive")
    if config.max_line_bytes <= 0 or config.buffer_size <= 0:
        raise ConfigError("buffer_size and max_line_bytes must be positive")
    if not config.log_root:
        raise ConfigError("log_root must not be empty")


def load_config(path: str | None = None, env=None) -> Config:
    """Build Config from the YAML file at *path*, overridden by environment variables.

    A path ending in ``.conf`` is read as the legacy shell-style KEY="value"
    file instead; its keys are the environment variable names.

    Unknown YAML keys are rejected so that typos surface at startup rather than
    silently falling back to defaults.
    """
    env = dict(os.environ if env is None else env)
    if path and path.endswith(".conf"):
        # Legacy format: the file supplies environment-style keys, the real
        # environment still wins.
        env = {**load_env_file(path), **env}
        data = {}
    else:
        data = load_yaml_config(path)

    known = {f.name: f.default for f in fields(Config)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    values = {}
    for name, default in known.items():
        raw = data.get(name, default)
        env_name = ENV_VARS.get(name)
        if env_name and env.get(env_name) is not None:
            raw = env[env_name]
        values[name] = _coerce(name, raw, default)

    values["clock"] = values["clock"].strip().lower()
    values["store_backend"] = values["store_backend"].strip().lower()
    values["log_level"] = values["log_level"].strip().upper()

    config = Config(**values)
    _validate(config)
    return config
