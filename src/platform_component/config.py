"""
Platform component runtime configuration.

Values come from environment variables, optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/platform-component/component.env (system install)
2) ~/.config/platform-component/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

from platform_component.subjects import SubjectSchemaError, validate_component_type

DEFAULT_COMPONENT_TYPE = "workloads"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("platform-component")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/platform-component/component.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "platform-component" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


@dataclass(frozen=True, slots=True)
class ComponentConfig:
    token: str
    url: Optional[str]  # None means the default control plane
    component_type: str
    bus_logs: bool
    version: str


def load_config(*, dotenv_enabled: bool = True) -> ComponentConfig:
    """
    Load config from env files (when enabled) and then validate the
    environment.

    Returns an immutable ComponentConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    token = _require_env("SCP_PLATFORM_TOKEN")
    url = os.getenv("SCP_URL") or None

    component_type = os.getenv("PC_TYPE") or DEFAULT_COMPONENT_TYPE
    try:
        validate_component_type(component_type)
    except SubjectSchemaError as exc:
        raise ConfigError(f"Invalid PC_TYPE: {exc}") from exc

    bus_logs = _parse_bool("PC_BUS_LOGS", os.getenv("PC_BUS_LOGS", ""))

    return ComponentConfig(
        token=token,
        url=url,
        component_type=component_type,
        bus_logs=bus_logs,
        version=package_version(),
    )
