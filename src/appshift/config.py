"""
Settings for appshift.

Defaults, then ~/.appshift/settings.json, then APPSHIFT_* environment
variables. CLI options override all of these.
"""

import json
import os
import sys
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from appshift.exceptions import ConfigError

DEFAULT_SETTINGS_PATH = Path.home() / ".appshift" / "settings.json"
ENV_PREFIX = "APPSHIFT_"


class ExecutionMode(str, Enum):
    NATIVE = "native"      # elevated PowerShell + robocopy (Windows)
    LOCAL = "local"        # in-process, no elevation
    SIMULATE = "simulate"  # demo: no checks, no filesystem changes


def default_mode() -> ExecutionMode:
    return ExecutionMode.NATIVE if sys.platform == "win32" else ExecutionMode.LOCAL


@dataclass
class Settings:
    target_root: Optional[str] = None
    verify_copy: bool = True
    purge_source: bool = False
    compression: bool = False
    mode: ExecutionMode = ExecutionMode.LOCAL
    poll_interval: float = 0.5
    size_scan_budget: float = 30.0
    scan_limit: int = 50

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw value (JSON or env string) to the field's type."""
    field_type = {f.name: f.type for f in fields(Settings)}[name]
    try:
        if name == "mode":
            return ExecutionMode(str(value).lower())
        if field_type in (bool, "bool"):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _BOOL_TRUE:
                return True
            if text in _BOOL_FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if field_type in (float, "float"):
            return float(value)
        if field_type in (int, "int"):
            return int(value)
        if value in (None, ""):
            return None
        return str(value)
    except ValueError as e:
        raise ConfigError(f"invalid value for {name}: {e}")


def setting_names():
    return [f.name for f in fields(Settings)]


def load_settings(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from defaults, the settings file and the environment.

    Raises:
        ConfigError: If the file is not valid JSON or a value has the wrong type
    """
    path = Path(path) if path else DEFAULT_SETTINGS_PATH
    environ = os.environ if environ is None else environ
    settings = Settings(mode=default_mode())

    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path} is not valid JSON: {e}")
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        for key, value in raw.items():
            if key not in setting_names():
                continue
            setattr(settings, key, _coerce(key, value))

    for name in setting_names():
        env_value = environ.get(ENV_PREFIX + name.upper())
        if env_value is not None:
            setattr(settings, name, _coerce(name, env_value))
    return settings


def update_setting(settings: Settings, name: str, value: str) -> Settings:
    if name not in setting_names():
        raise ConfigError(f"unknown setting: {name}")
    setattr(settings, name, _coerce(name, value))
    return settings


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    path = Path(path) if path else DEFAULT_SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
    return path
