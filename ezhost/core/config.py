import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
PACKAGE_DIR = CORE_DIR.parent
ROOT_DIR = PACKAGE_DIR.parent
ENV_FILE = ROOT_DIR / ".env"

load_dotenv(dotenv_path=ENV_FILE)

_raw_data_dir = os.getenv("EZHOST_DATA_DIR", str(ROOT_DIR / "data")).strip()
DATA_DIR = Path(_raw_data_dir).expanduser()
if not DATA_DIR.is_absolute():
    DATA_DIR = ROOT_DIR / DATA_DIR

SERVERS_FILE = DATA_DIR / "servers.json"
OPERATION_STATE_FILE = DATA_DIR / "operation_state.jsonl"
SETTINGS_FILE = DATA_DIR / "settings.yml"

# ==========================================
# Minecraft Server Layout
# ==========================================

# Generated launcher scripts live in <server dir>/EZHost
SCRIPT_DIR_NAME = "EZHost"
PROPERTIES_FILE_NAME = "server.properties"
VARIABLES_FILE_NAME = "variables.txt"

RAM_MIN_GB = 4
RAM_MAX_GB = 16
DEFAULT_RAM_GB = 4

SERVER_NAME_MAX_LEN = 20

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "5000"))
HOST = os.getenv("HOST", "127.0.0.1")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class LifecycleSettings:
    """Tunables for launching, probing and stopping servers."""
    launch_timeout_sec: float = 300.0
    stop_grace_sec: float = 10.0
    rcon_host: str = "localhost"
    rcon_port: int = 25575
    rcon_timeout_sec: float = 5.0
    readiness_markers: tuple = ("Done", 'For help, type "help"')
    console_buffer_lines: int = 500


def load_settings(path: Optional[Path] = None) -> LifecycleSettings:
    """Load lifecycle settings from YAML, overlaying the defaults."""
    settings_file = path or SETTINGS_FILE
    if not settings_file.exists():
        return LifecycleSettings()

    try:
        with open(settings_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.error(f"Failed to read {settings_file}, using defaults: {e}")
        return LifecycleSettings()

    if not isinstance(data, dict):
        logger.error(f"{settings_file} must contain a mapping, using defaults")
        return LifecycleSettings()

    known = {f.name: f for f in fields(LifecycleSettings)}
    overrides = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown setting '{key}' in {settings_file}")
            continue
        if key == "readiness_markers":
            if not isinstance(value, (list, tuple)) or not value:
                logger.warning("readiness_markers must be a non-empty list, keeping default")
                continue
            overrides[key] = tuple(str(v) for v in value)
            continue
        default = getattr(LifecycleSettings, key)
        try:
            overrides[key] = type(default)(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for '{key}': {value!r}, keeping default")

    return LifecycleSettings(**overrides)
