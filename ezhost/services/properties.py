# ezhost/services/properties.py
"""
server.properties and variables.txt codec

Handles:
- Reading/merging/writing the key=value properties file
- Forcing the RCON settings the manager relies on
- Reading/replacing the -Xmx<N>G flag in variables.txt
"""

import logging
import re
from pathlib import Path
from typing import Dict, Mapping

from ezhost.core.config import (
    DEFAULT_RAM_GB, PROPERTIES_FILE_NAME, RAM_MAX_GB, RAM_MIN_GB, VARIABLES_FILE_NAME,
)
from ezhost.core.errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)

XMX_PATTERN = re.compile(r"-Xmx(\d+)G")
RCON_PORT = 25575

# Vanilla values written only when server.properties does not exist yet
DEFAULT_PROPERTIES = {
    "server-port": "25565",
    "motd": "A Minecraft Server",
    "max-players": "20",
    "online-mode": "true",
}


def properties_path(directory) -> Path:
    return Path(directory) / PROPERTIES_FILE_NAME


def variables_path(directory) -> Path:
    return Path(directory) / VARIABLES_FILE_NAME


def parse_properties(text: str) -> Dict[str, str]:
    """Parse key=value lines; comments and blank lines are skipped."""
    props: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            props[key] = value.strip()
    return props


def serialize_properties(props: Mapping[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in props.items())


def read_properties(path: Path) -> Dict[str, str]:
    path = Path(path)
    if not path.exists():
        raise NotFound(f"{path.name} not found", detail=f"No properties file at {path}")
    with open(path, "r", encoding="utf-8") as f:
        return parse_properties(f.read())


def write_properties(path: Path, updates: Mapping[str, object]) -> Dict[str, str]:
    """Merge *updates* onto the existing file and rewrite it in full.

    Keys missing from *updates* keep their current value. Comments are not
    carried over. A missing file is created.
    """
    path = Path(path)
    merged: Dict[str, str] = {}
    if path.exists():
        merged = read_properties(path)
    for key, value in updates.items():
        key = str(key).strip()
        if not key or "=" in key or "\n" in key:
            raise InvalidRequest(f"Invalid property key: {key!r}")
        if isinstance(value, bool):
            value = "true" if value else "false"
        value = "" if value is None else str(value)
        if "\n" in value or "\r" in value:
            raise InvalidRequest(f"Property '{key}' must be a single line")
        merged[key] = value

    with open(path, "w", encoding="utf-8") as f:
        f.write(serialize_properties(merged))
    return merged


def enable_rcon(directory, password: str) -> Dict[str, str]:
    """Point the server's RCON listener at the shared port with *password*.

    A missing server.properties is created from DEFAULT_PROPERTIES first.
    """
    path = properties_path(directory)
    updates = {}
    if not path.exists():
        logger.info(f"No {path.name} in {directory}, creating one with defaults")
        updates.update(DEFAULT_PROPERTIES)
    updates.update({
        "enable-rcon": "true",
        "rcon.port": str(RCON_PORT),
        "rcon.password": password,
    })
    return write_properties(path, updates)


def validate_ram(ram) -> int:
    if isinstance(ram, bool):
        raise InvalidRequest("RAM must be an integer")
    try:
        value = int(ram)
    except (TypeError, ValueError):
        raise InvalidRequest("RAM must be an integer")
    if value != ram and not (isinstance(ram, str) and ram.strip().isdigit()):
        raise InvalidRequest("RAM must be a whole number of gigabytes")
    if not RAM_MIN_GB <= value <= RAM_MAX_GB:
        raise InvalidRequest(f"RAM must be between {RAM_MIN_GB} and {RAM_MAX_GB} GB")
    return value


def read_ram(path: Path) -> int:
    """RAM allocation in GB from the -Xmx flag; 4 when absent or unreadable."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return DEFAULT_RAM_GB
    match = XMX_PATTERN.search(content)
    if not match:
        return DEFAULT_RAM_GB
    return int(match.group(1))


def write_ram(path: Path, ram: int) -> int:
    path = Path(path)
    ram = validate_ram(ram)
    if not path.exists():
        raise NotFound(f"{path.name} not found", detail=f"No variables file at {path}")

    content = path.read_text(encoding="utf-8")
    if XMX_PATTERN.search(content):
        content = XMX_PATTERN.sub(f"-Xmx{ram}G", content, count=1)
    else:
        content = f"-Xmx{ram}G {content.strip()}".strip() + "\n"
    path.write_text(content, encoding="utf-8")
    logger.info(f"Set RAM allocation to {ram}G in {path}")
    return ram
