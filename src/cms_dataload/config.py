"""Configuration for a dataload run.

Resolution order, highest first:
- explicit overrides (CLI flags)
- process environment (``CMS_DATALOAD_*``)
- ``--envfile`` / ``CMS_DATALOAD_ENV_FILE``, then `.env`, then `.env.defaults`
- built-in fallbacks below

Credentials have no built-in fallback; a run without them fails with
ConfigError before any process is started.
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config_defaults import get_default
from .errors import ConfigError

ENV_PREFIX = "CMS_DATALOAD_"

_HOME = Path.home()

FALLBACKS: Dict[str, str] = {
    "API_URL": "https://127.0.0.1:4443",
    "VERIFY_TLS": "false",
    "DATA_DIR": str(_HOME / ".cmswwwdataload"),
    "POLITEIAD_LOG": "",
    "CMSWWW_LOG": "",
    "POLITEIAD_DATA_DIR": str(_HOME / ".politeiad" / "data"),
    "CMSWWW_DATA_DIR": str(_HOME / ".cmswww" / "data" / "testnet3"),
    "CLI_HOME_DIR": str(_HOME / ".cmswwwcli"),
    "POLITEIAD_CMD": "politeiad --testnet",
    "CMSWWW_CMD": "cmswww",
    "DBUTIL_CMD": "cmswwwdbutil -testnet",
    "READINESS_MARKER": "Start of day",
    "READINESS_TIMEOUT": "120",
    "HTTP_TIMEOUT": "30",
    "DELETE_DATA": "false",
    "INCLUDE_TESTS": "false",
    "SKIP_STEPS": "",
    "LOG_LEVEL": "INFO",
    "CONTRACTOR_NAME": "",
    "CONTRACTOR_LOCATION": "",
    "CONTRACTOR_XPUB": "",
}

REQUIRED = (
    "ADMIN_EMAIL",
    "ADMIN_USER",
    "ADMIN_PASS",
    "CONTRACTOR_EMAIL",
    "CONTRACTOR_USER",
    "CONTRACTOR_PASS",
)

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Credentials:
    email: str
    username: str
    password: str


@dataclass(frozen=True)
class Config:
    admin: Credentials
    contractor: Credentials
    contractor_name: str
    contractor_location: str
    contractor_extended_public_key: str
    api_url: str
    verify_tls: bool
    data_dir: str
    politeiad_log_file: str
    cmswww_log_file: str
    politeiad_data_dir: str
    cmswww_data_dir: str
    cli_home_dir: str
    politeiad_cmd: Tuple[str, ...]
    cmswww_cmd: Tuple[str, ...]
    dbutil_cmd: Tuple[str, ...]
    readiness_marker: str = "Start of day"
    readiness_timeout: Optional[float] = 120.0
    http_timeout: float = 30.0
    delete_data: bool = False
    include_tests: bool = False
    skip_steps: Tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"


def parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigError(f"{ENV_PREFIX}{key} must be a boolean, got {value!r}")


def parse_timeout(key: str, value: Any) -> Optional[float]:
    """Seconds as a float; 0 or a negative value disables the timeout."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{ENV_PREFIX}{key} must be a number, got {value!r}") from None
    return seconds if seconds > 0 else None


def parse_command(key: str, value: Any) -> Tuple[str, ...]:
    argv = tuple(value) if isinstance(value, (list, tuple)) else tuple(shlex.split(str(value)))
    if not argv:
        raise ConfigError(f"{ENV_PREFIX}{key} must name a command")
    return argv


def parse_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item and item.strip())


def load_config(overrides: Optional[Dict[str, Any]] = None,
                env_file: Optional[str] = None) -> Config:
    """Resolve every setting and return the frozen Config.

    Args:
        overrides: Setting name (without prefix) -> value; ``None`` values
            are ignored so argparse defaults do not mask lower layers.
        env_file: Extra env-style file layered above `.env`.
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    env_file = env_file or os.getenv(f"{ENV_PREFIX}ENV_FILE")

    def setting(key: str) -> Any:
        if key in overrides:
            return overrides[key]
        value = os.getenv(f"{ENV_PREFIX}{key}")
        if value is not None:
            return value
        try:
            return get_default(f"{ENV_PREFIX}{key}", FALLBACKS.get(key), env_file)
        except FileNotFoundError as e:
            raise ConfigError(str(e)) from e

    missing: List[str] = [f"{ENV_PREFIX}{key}" for key in REQUIRED if not setting(key)]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    data_dir = os.path.expanduser(str(setting("DATA_DIR")))
    politeiad_log = setting("POLITEIAD_LOG") or os.path.join(data_dir, "politeiad.log")
    cmswww_log = setting("CMSWWW_LOG") or os.path.join(data_dir, "cmswww.log")

    return Config(
        admin=Credentials(setting("ADMIN_EMAIL"), setting("ADMIN_USER"), setting("ADMIN_PASS")),
        contractor=Credentials(
            setting("CONTRACTOR_EMAIL"),
            setting("CONTRACTOR_USER"),
            setting("CONTRACTOR_PASS"),
        ),
        contractor_name=setting("CONTRACTOR_NAME"),
        contractor_location=setting("CONTRACTOR_LOCATION"),
        contractor_extended_public_key=setting("CONTRACTOR_XPUB"),
        api_url=str(setting("API_URL")).rstrip("/"),
        verify_tls=parse_bool("VERIFY_TLS", setting("VERIFY_TLS")),
        data_dir=data_dir,
        politeiad_log_file=os.path.expanduser(politeiad_log),
        cmswww_log_file=os.path.expanduser(cmswww_log),
        politeiad_data_dir=os.path.expanduser(str(setting("POLITEIAD_DATA_DIR"))),
        cmswww_data_dir=os.path.expanduser(str(setting("CMSWWW_DATA_DIR"))),
        cli_home_dir=os.path.expanduser(str(setting("CLI_HOME_DIR"))),
        politeiad_cmd=parse_command("POLITEIAD_CMD", setting("POLITEIAD_CMD")),
        cmswww_cmd=parse_command("CMSWWW_CMD", setting("CMSWWW_CMD")),
        dbutil_cmd=parse_command("DBUTIL_CMD", setting("DBUTIL_CMD")),
        readiness_marker=setting("READINESS_MARKER"),
        readiness_timeout=parse_timeout("READINESS_TIMEOUT", setting("READINESS_TIMEOUT")),
        http_timeout=parse_timeout("HTTP_TIMEOUT", setting("HTTP_TIMEOUT")) or 30.0,
        delete_data=parse_bool("DELETE_DATA", setting("DELETE_DATA")),
        include_tests=parse_bool("INCLUDE_TESTS", setting("INCLUDE_TESTS")),
        skip_steps=parse_list(setting("SKIP_STEPS")),
        log_level=str(setting("LOG_LEVEL")).upper(),
    )
