"""Configuration: frozen dataclass loaded from YAML, env vars and CLI args."""

import argparse
import logging
import os
import uuid
from dataclasses import dataclass, fields

import yaml

from ingestor.errors import ConfigError

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    log_file: str = "/var/log/nginx/node-access.log"
    log_ingestor_url: str = ""
    influxdb_addr: str = ""
    influxdb_database: str = "saturn"
    testing_cid: str = "QmXjYBY478Cno4jzdCcPy4NcJYFrwHZ51xaCP8vUwN9MGm"
    node_id: str = ""
    node_id_file: str = ""
    fil_wallet_address: str = ""
    node_token: str = ""
    orchestrator_url: str = ""
    network: str = "test"
    node_version: str = "0_dev"
    operator_email: str = ""
    ssl_path: str = "/usr/src/app/shared/ssl"
    http_host: str = "0.0.0.0"
    http_port: int = 10361
    parse_interval: float = 10.0
    parse_floor_interval: float = 1.0
    submit_interval: float = 60.0
    submit_floor_interval: float = 10.0
    interval_step: float = 0.001
    max_log_size: int = 1024 * 1024 * 1024
    submit_timeout: float = 30.0
    deregister_timeout: float = 30.0
    max_pending: int = 0
    register: bool = True
    log_level: str = "INFO"


@dataclass
class NodeCredentials:
    """Node identity shared between registration and delivery.

    The token is refreshed by every successful re-registration, so delivery
    reads it at submission time rather than copying it at startup.
    """

    node_id: str
    wallet_address: str
    token: str = ""


# Env var name for each Config field
ENV_VARS = {
    "log_file": "NGINX_LOG_FILE",
    "log_ingestor_url": "LOG_INGESTOR_URL",
    "influxdb_addr": "INFLUXDB_ADDR",
    "influxdb_database": "INFLUXDB_DATABASE",
    "testing_cid": "TESTING_CID",
    "node_id": "NODE_ID",
    "node_id_file": "NODE_ID_FILE",
    "fil_wallet_address": "FIL_WALLET_ADDRESS",
    "node_token": "NODE_TOKEN",
    "orchestrator_url": "ORCHESTRATOR_URL",
    "network": "SATURN_NETWORK",
    "node_version": "NODE_VERSION",
    "operator_email": "NODE_OPERATOR_EMAIL",
    "ssl_path": "SSL_PATH",
    "http_host": "HTTP_HOST",
    "http_port": "HTTP_PORT",
    "parse_interval": "PARSE_INTERVAL",
    "parse_floor_interval": "PARSE_FLOOR_INTERVAL",
    "submit_interval": "SUBMIT_INTERVAL",
    "submit_floor_interval": "SUBMIT_FLOOR_INTERVAL",
    "interval_step": "INTERVAL_STEP",
    "max_log_size": "MAX_LOG_SIZE",
    "submit_timeout": "SUBMIT_TIMEOUT",
    "deregister_timeout": "DEREGISTER_TIMEOUT",
    "max_pending": "MAX_PENDING",
    "register": "REGISTER",
    "log_level": "LOG_LEVEL",
}

_FIELD_TYPES = {f.name: f.type for f in fields(Config)}


def _coerce(name: str, value):
    """Convert a raw YAML/env value to the declared type of field *name*."""
    field_type = _FIELD_TYPES[name]
    try:
        if field_type is bool:
            return value if isinstance(value, bool) else _parse_bool(str(value))
        if field_type is int:
            return int(value)
        if field_type is float:
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
    return str(value)


def load_yaml_config(path: str | None) -> dict:
    """Load overrides from a YAML file. Returns empty dict if no path."""
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
    unknown = set(data) - set(_FIELD_TYPES)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
    logger.info("Loaded YAML config from %s", path)
    return {k: v for k, v in data.items() if k in _FIELD_TYPES}


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bandwidth log ingestor")
    parser.add_argument("--config", default=None, help="Path to YAML config file")
    parser.add_argument("--log-file", default=None, help="nginx access log to tail")
    parser.add_argument("--log-ingestor-url", default=None)
    parser.add_argument("--orchestrator-url", default=None)
    parser.add_argument("--http-port", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--no-register", action="store_true", default=False,
        help="Skip orchestrator registration (ingest and deliver only)",
    )
    return parser


def resolve_node_id(config: Config) -> str:
    """Return the configured node id, or load/create the persisted one."""
    if config.node_id:
        return config.node_id

    path = config.node_id_file or os.path.join(
        os.path.dirname(config.ssl_path.rstrip("/")), "nodeId.txt"
    )
    try:
        with open(path, "r", encoding="utf-8") as f:
            node_id = f.read().strip()
        if node_id:
            return node_id
    except FileNotFoundError:
        pass

    node_id = str(uuid.uuid4())
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(node_id)
    logger.info("Generated new node id %s (saved to %s)", node_id, path)
    return node_id


def load_config(argv: list[str] | None = None, environ=None) -> Config:
    """Build Config from defaults <- YAML <- env vars <- CLI args.

    Pass argv and environ for testability; when None, sys.argv and
    os.environ are used.
    """
    env = os.environ if environ is None else environ
    args = build_cli_parser().parse_args(argv)

    kwargs: dict = {}
    for name, value in load_yaml_config(args.config or env.get("CONFIG_FILE")).items():
        kwargs[name] = _coerce(name, value)

    for name, var in ENV_VARS.items():
        if var in env:
            kwargs[name] = _coerce(name, env[var])

    # CLI flags override env vars
    if args.log_file is not None:
        kwargs["log_file"] = args.log_file
    if args.log_ingestor_url is not None:
        kwargs["log_ingestor_url"] = args.log_ingestor_url
    if args.orchestrator_url is not None:
        kwargs["orchestrator_url"] = args.orchestrator_url
    if args.http_port is not None:
        kwargs["http_port"] = args.http_port
    if args.log_level is not None:
        kwargs["log_level"] = args.log_level
    if args.no_register:
        kwargs["register"] = False

    config = Config(**kwargs)
    validate_config(config)
    return config


def validate_config(config: Config):
    """Reject configurations the ingestor cannot run with."""
    if not config.fil_wallet_address:
        raise ConfigError("FIL_WALLET_ADDRESS is required")
    if not config.log_ingestor_url:
        raise ConfigError("LOG_INGESTOR_URL is required")
    if config.register and not config.orchestrator_url:
        raise ConfigError("ORCHESTRATOR_URL is required when registration is enabled")
    if config.parse_floor_interval <= 0 or config.submit_floor_interval <= 0:
        raise ConfigError("Floor intervals must be positive")
    if config.parse_floor_interval > config.parse_interval:
        raise ConfigError("PARSE_FLOOR_INTERVAL must not exceed PARSE_INTERVAL")
    if config.submit_floor_interval > config.submit_interval:
        raise ConfigError("SUBMIT_FLOOR_INTERVAL must not exceed SUBMIT_INTERVAL")
    if config.max_pending < 0:
        raise ConfigError("MAX_PENDING must be zero (unbounded) or positive")
