"""
Whispo Platform Abstraction
---------------------------
Cross-platform directory resolution for configuration and data files.

Environment overrides win; otherwise platformdirs supplies the OS convention
(XDG on Linux, Application Support on macOS, AppData on Windows).
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict

import platformdirs

_APP_NAME = "whispo"
_APP_AUTHOR = "Whispo"


def _resolve_dir(env_var: str, platformdirs_fn: str) -> Path:
    """
    Resolve a directory path with priority:
    1. Environment variable override
    2. platformdirs convention for the current OS
    """
    env_val = os.environ.get(env_var)
    if env_val:
        return Path(env_val)
    fn = getattr(platformdirs, platformdirs_fn)
    return Path(fn(_APP_NAME, _APP_AUTHOR))


def get_data_dir() -> Path:
    """Whispo data directory (history, profiles). WHISPO_DATA_DIR overrides."""
    return _resolve_dir("WHISPO_DATA_DIR", "user_data_dir")


def get_config_dir() -> Path:
    """Whispo configuration directory. WHISPO_CONFIG_DIR overrides."""
    return _resolve_dir("WHISPO_CONFIG_DIR", "user_config_dir")


def get_default_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def get_platform_info() -> Dict[str, Any]:
    """Return platform diagnostic information for the health endpoint."""
    return {
        "os": sys.platform,
        "python": sys.version.split()[0],
        "data_dir": str(get_data_dir()),
        "config_dir": str(get_config_dir()),
    }
