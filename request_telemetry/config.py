"""Configuration module: frozen dataclass layered from YAML, env vars and CLI flags."""

import os
import argparse
from dataclasses import dataclass, replace

import yaml

VALID_SINKS = ("logging", "file", "udp")


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _parse_paths(value) -> tuple:
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return tuple(p.strip() for p in str(value).split(",") if p.strip())


@dataclass(frozen=True)
class TelemetryConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    capacity: int = 1000
    flush_interval: float = 0.0  # 0 means the aggregator default
    queue_size: int = 10000
    max_body_bytes: int = 64 * 1024
    redact_paths: tuple = ()
    sink: str = "logging"
    sink_path: str = "./logs/requests.ndjson"
    sink_host: str = "localhost"
    sink_port: int = 9999
    compress: bool = True
    max_retries: int = 3
    log_level: str = "INFO"
    shutdown_timeout: float = 60.0  # seconds to wait for running requests


_CONVERTERS = {
    "host": str,
    "port": int,
    "capacity": int,
    "flush_interval": float,
    "queue_size": int,
    "max_body_bytes": int,
    "redact_paths": _parse_paths,
    "sink": lambda v: str(v).strip().lower(),
    "sink_path": str,
    "sink_host": str,
    "sink_port": int,
    "compress": _parse_bool,
    "max_retries": int,
    "log_level": lambda v: str(v).strip().upper(),
    "shutdown_timeout": float,
}

# (section, key) in the YAML file -> TelemetryConfig field
_YAML_KEYS = {
    ("server", "host"): "host",
    ("server", "port"): "port",
    ("server", "shutdown_timeout"): "shutdown_timeout",
    ("aggregator", "capacity"): "capacity",
    ("aggregator", "flush_interval"): "flush_interval",
    ("aggregator", "queue_size"): "queue_size",
    ("recorder", "max_body_bytes"): "max_body_bytes",
    ("recorder", "redact_paths"): "redact_paths",
    ("sink", "type"): "sink",
    ("sink", "path"): "sink_path",
    ("sink", "host"): "sink_host",
    ("sink", "port"): "sink_port",
    ("sink", "compress"): "compress",
    ("sink", "max_retries"): "max_retries",
    ("logging", "level"): "log_level",
}

_ENV_KEYS = {
    "SERVER_HOST": "host",
    "SERVER_PORT": "port",
    "BUFFER_CAPACITY": "capacity",
    "FLUSH_INTERVAL": "flush_interval",
    "QUEUE_SIZE": "queue_size",
    "MAX_BODY_BYTES": "max_body_bytes",
    "REDACT_PATHS": "redact_paths",
    "SINK": "sink",
    "SINK_PATH": "sink_path",
    "SINK_HOST": "sink_host",
    "SINK_PORT": "sink_port",
    "COMPRESS": "compress",
    "MAX_RETRIES": "max_retries",
    "LOG_LEVEL": "log_level",
    "SHUTDOWN_TIMEOUT": "shutdown_timeout",
}


def load_yaml_overrides(config_path) -> dict:
    """Read a YAML config file and flatten it into TelemetryConfig field overrides.

    A missing file yields no overrides. Unknown sections and keys are ignored.
    """
    try:
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {config_path} must be a mapping")

    overrides = {}
    for (section, key), field_name in _YAML_KEYS.items():
        values = raw.get(section)
        if isinstance(values, dict) and key in values:
            overrides[field_name] = _CONVERTERS[field_name](values[key])
    return overrides


def _env_overrides() -> dict:
    overrides = {}
    for env_name, field_name in _ENV_KEYS.items():
        value = os.environ.get(env_name)
        if value is not None:
            overrides[field_name] = _CONVERTERS[field_name](value)
    return overrides


def _validate(config: TelemetryConfig) -> TelemetryConfig:
    if config.capacity < 1:
        raise ValueError(f"capacity must be positive, got {config.capacity}")
    if config.queue_size < 1:
        raise ValueError(f"queue_size must be positive, got {config.queue_size}")
    if config.flush_interval < 0:
        raise ValueError(f"flush_interval must not be negative, got {config.flush_interval}")
    if config.shutdown_timeout < 0:
        raise ValueError(f"shutdown_timeout must not be negative, got {config.shutdown_timeout}")
    if config.sink not in VALID_SINKS:
        raise ValueError(f"Unknown sink {config.sink!r}, expected one of {VALID_SINKS}")
    return config


def load_config(argv=None) -> TelemetryConfig:
    """Build TelemetryConfig from defaults, then YAML, then env vars, then CLI args.

    Pass argv for testability; when None, argparse reads sys.argv.
    """
    parser = argparse.ArgumentParser(description="Request telemetry API server")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--capacity", type=int, default=None)
    parser.add_argument("--flush-interval", type=float, default=None)
    parser.add_argument("--sink", type=str, default=None)
    parser.add_argument("--sink-path", type=str, default=None)
    parser.add_argument("--redact-path", action="append", default=None)
    parser.add_argument("--log-level", type=str, default=None)

    args = parser.parse_args(argv)

    config = TelemetryConfig()

    config_path = args.config or os.environ.get("CONFIG_PATH")
    if config_path:
        config = replace(config, **load_yaml_overrides(config_path))

    config = replace(config, **_env_overrides())

    # CLI flags override env vars
    cli = {
        "host": args.host,
        "port": args.port,
        "capacity": args.capacity,
        "flush_interval": args.flush_interval,
        "sink": args.sink,
        "sink_path": args.sink_path,
        "redact_paths": args.redact_path,
        "log_level": args.log_level,
    }
    cli = {
        name: _CONVERTERS[name](value)
        for name, value in cli.items()
        if value is not None
    }
    config = replace(config, **cli)

    return _validate(config)

