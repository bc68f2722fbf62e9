# ezhost/services/registry.py
"""
Server Registry

Durable list of managed server records:
- JSON document rewritten atomically on every mutation
- Directory and RCON password uniqueness
- Change notification through the event bus

Writes are serialized by a single lock. The app is a single-user desktop
process, so one registry instance per data file is assumed; two processes
sharing a data file are not supported.
"""

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from ezhost.core.config import SERVER_NAME_MAX_LEN
from ezhost.core.errors import Conflict, InvalidRequest, NotFound, RegistryWriteError
from ezhost.services.events import EventBus

logger = logging.getLogger(__name__)

DEFAULT_ICON = "default-server-icon.png"
REGISTRY_VERSION = 1


class ServerStatus(str, Enum):
    """Lifecycle state of a managed server"""
    OFFLINE = "Offline"
    STARTING = "Starting"
    ONLINE = "Online"
    STOPPING = "Stopping"
    RESTARTING = "Restarting"

    @property
    def is_active(self) -> bool:
        """Holds the single running slot (anything but Offline)."""
        return self is not ServerStatus.OFFLINE

    @classmethod
    def parse(cls, raw) -> "ServerStatus":
        """Accept legacy spellings such as 'Starting...' or 'online'."""
        text = str(raw or "").strip().rstrip(".").strip().lower()
        for status in cls:
            if status.value.lower() == text:
                return status
        return cls.OFFLINE


class ServerType(str, Enum):
    FORGE = "Forge"
    FABRIC = "Fabric"

    @classmethod
    def parse(cls, raw) -> "ServerType":
        text = str(raw or "").strip().lower()
        for server_type in cls:
            if server_type.value.lower() == text:
                return server_type
        raise InvalidRequest(f"Unknown server type '{raw}'. Expected Forge or Fabric.")


@dataclass
class ServerRecord:
    """One managed Minecraft server"""
    id: str
    name: str
    directory: str
    rcon_password: str
    icon: str = DEFAULT_ICON
    type: ServerType = ServerType.FORGE
    status: ServerStatus = ServerStatus.OFFLINE
    initialized: bool = False
    created_at: Optional[str] = None

    @property
    def path(self) -> Path:
        return Path(self.directory)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "directory": self.directory,
            "icon": self.icon,
            "type": self.type.value,
            "rconPassword": self.rcon_password,
            "status": self.status.value,
            "initialized": self.initialized,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "ServerRecord":
        try:
            server_type = ServerType.parse(raw.get("type") or ServerType.FORGE.value)
        except InvalidRequest:
            server_type = ServerType.FORGE
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            directory=str(raw["directory"]),
            rcon_password=str(raw.get("rconPassword", "")),
            icon=raw.get("icon") or DEFAULT_ICON,
            type=server_type,
            status=ServerStatus.parse(raw.get("status")),
            initialized=bool(raw.get("initialized", False)),
            created_at=raw.get("createdAt"),
        )


def _normalize_directory(directory: str) -> str:
    return os.path.normcase(os.path.normpath(directory))


def validate_name(name) -> str:
    if not isinstance(name, str):
        raise InvalidRequest("Server name must be a string")
    name = name.strip()
    if not 1 <= len(name) <= SERVER_NAME_MAX_LEN:
        raise InvalidRequest(f"Server name must be 1-{SERVER_NAME_MAX_LEN} characters")
    return name


class ServerRegistry:
    """Single source of truth for server configuration and status."""

    def __init__(self, data_file: Path, events: Optional[EventBus] = None):
        self.data_file = Path(data_file)
        self.events = events
        self._lock = threading.Lock()
        self._servers: List[ServerRecord] = self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[ServerRecord]:
        if not self.data_file.exists():
            return []
        try:
            with open(self.data_file, "r", encoding="utf-8") as fp:
                loaded = json.load(fp)
        except (json.JSONDecodeError, OSError) as exc:
            logger.error(f"Failed to load {self.data_file}: {exc}")
            self._quarantine_corrupt_file()
            return []

        # Legacy files are a bare array of records
        rows = loaded.get("servers", []) if isinstance(loaded, dict) else loaded
        if not isinstance(rows, list):
            logger.error(f"Registry file {self.data_file} has no server list, starting empty")
            return []

        servers = []
        for row in rows:
            try:
                servers.append(ServerRecord.from_dict(row))
            except (KeyError, TypeError, AttributeError) as exc:
                logger.warning(f"Skipping malformed server entry {row!r}: {exc}")
        logger.info(f"Loaded {len(servers)} server(s) from {self.data_file}")
        return servers

    def _quarantine_corrupt_file(self):
        backup = self.data_file.with_name(self.data_file.name + ".corrupt")
        try:
            os.replace(self.data_file, backup)
            logger.warning(f"Moved unreadable registry to {backup}")
        except OSError as exc:
            logger.error(f"Could not move unreadable registry aside: {exc}")

    def _persist(self, servers: List[ServerRecord]):
        payload = {
            "version": REGISTRY_VERSION,
            "servers": [s.to_dict() for s in servers],
        }
        tmp_file = self.data_file.with_name(self.data_file.name + ".tmp")
        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w", encoding="utf-8") as fp:
                json.dump(payload, fp, indent=2, ensure_ascii=False)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_file, self.data_file)
        except OSError as exc:
            logger.error(f"Failed to persist server registry: {exc}")
            raise RegistryWriteError(f"Failed to persist server registry: {exc}") from exc

    def _commit(self, servers: List[ServerRecord], event_type: str, **payload):
        """Persist first, then swap the in-memory list and notify."""
        self._persist(servers)
        self._servers = servers
        if self.events is not None:
            self.events.publish(event_type, **payload)

    def _index_of(self, server_id: str) -> int:
        for idx, server in enumerate(self._servers):
            if server.id == server_id:
                return idx
        raise NotFound("Server not found", detail=f"No server with id '{server_id}'")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> List[ServerRecord]:
        with self._lock:
            return [replace(s) for s in self._servers]

    def get(self, server_id: str) -> ServerRecord:
        with self._lock:
            return replace(self._servers[self._index_of(server_id)])

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        name: str,
        directory: str,
        rcon_password: str,
        icon: Optional[str] = None,
        server_type: ServerType = ServerType.FORGE,
    ) -> ServerRecord:
        name = validate_name(name)
        if not directory or not os.path.isabs(directory):
            raise InvalidRequest("Server directory must be an absolute path")
        if not rcon_password:
            raise InvalidRequest("RCON password must not be empty")

        with self._lock:
            wanted_dir = _normalize_directory(directory)
            for server in self._servers:
                if _normalize_directory(server.directory) == wanted_dir:
                    raise Conflict(
                        "Directory already in use",
                        detail=f"Server '{server.name}' already manages {directory}",
                        code="duplicate_directory",
                    )
                if server.rcon_password == rcon_password:
                    raise Conflict(
                        "RCON password already in use",
                        detail=f"Server '{server.name}' already uses this RCON password",
                        code="duplicate_rcon_password",
                    )

            record = ServerRecord(
                id=uuid.uuid4().hex,
                name=name,
                directory=os.path.normpath(directory),
                rcon_password=rcon_password,
                icon=icon or DEFAULT_ICON,
                type=server_type,
                created_at=datetime.now().isoformat(timespec="seconds"),
            )
            self._commit(self._servers + [record], "servers_changed", action="created", server_id=record.id)
            logger.info(f"Registered server {record.name} ({record.id}) at {record.directory}")
            return replace(record)

    def update(self, server_id: str, **changes) -> ServerRecord:
        allowed = {"name", "icon", "type", "initialized"}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidRequest(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if "name" in changes:
            changes["name"] = validate_name(changes["name"])
        if "type" in changes and not isinstance(changes["type"], ServerType):
            changes["type"] = ServerType.parse(changes["type"])
        if "icon" in changes:
            changes["icon"] = changes["icon"] or DEFAULT_ICON

        with self._lock:
            idx = self._index_of(server_id)
            updated = replace(self._servers[idx], **changes)
            servers = list(self._servers)
            servers[idx] = updated
            self._commit(servers, "servers_changed", action="updated", server_id=server_id)
            return replace(updated)

    def delete(self, server_id: str):
        with self._lock:
            idx = self._index_of(server_id)
            removed = self._servers[idx]
            servers = self._servers[:idx] + self._servers[idx + 1:]
            self._commit(servers, "servers_changed", action="deleted", server_id=server_id)
            logger.info(f"Removed server {removed.name} ({server_id})")

    def set_status(self, server_id: str, status: ServerStatus) -> ServerRecord:
        """Status writes come from the lifecycle orchestrator only."""
        with self._lock:
            idx = self._index_of(server_id)
            current = self._servers[idx]
            if current.status is status:
                return replace(current)
            updated = replace(current, status=status)
            servers = list(self._servers)
            servers[idx] = updated
            self._commit(servers, "status_changed", server_id=server_id, status=status.value)
            logger.info(f"Server {current.name}: {current.status.value} -> {status.value}")
            return replace(updated)

    def set_statuses(self, statuses: Dict[str, ServerStatus]) -> List[ServerRecord]:
        """Apply several status changes with a single write."""
        with self._lock:
            servers = []
            changed = {}
            for server in self._servers:
                new_status = statuses.get(server.id, server.status)
                if new_status is not server.status:
                    changed[server.id] = new_status.value
                    server = replace(server, status=new_status)
                servers.append(server)
            self._commit(servers, "servers_changed", action="statuses", changes=changed)
            return [replace(s) for s in servers]

    def active_servers(self, exclude_id: Optional[str] = None) -> List[ServerRecord]:
        with self._lock:
            return [
                replace(s) for s in self._servers
                if s.status.is_active and s.id != exclude_id
            ]

    def snapshot(self) -> List[dict]:
        return [s.to_dict() for s in self.list()]

