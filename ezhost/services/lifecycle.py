# ezhost/services/lifecycle.py
"""
Lifecycle Orchestrator

Handles:
- Creating/updating/deleting servers together with their generated scripts
- Start/stop/save/restart/init driven through the launcher and RCON channel
- The single-active-server rule (one server outside Offline at a time)
- Status reconciliation by probing every server over RCON

Status transitions:

    Offline --start--> Starting --ready--> Online
    Starting --failure/timeout--> Offline
    Online --stop--> Stopping --grace delay--> Offline
    Online --restart--> Restarting --save, stop, grace--> Offline --start--> ...
    Online/Stopping --process exit--> Offline
    any RCON failure --> Offline

There is no way to cancel a start that is waiting for the readiness marker;
it ends when the server is ready, the script fails, or the launch timeout
fires.
"""

import asyncio
import logging
import os
import re
import secrets
from typing import Dict, List, Optional, Set

from ezhost.core.config import LifecycleSettings
from ezhost.core.errors import (
    ActiveServerConflict, Conflict, ExternalProcessFailure, InvalidRequest,
    LaunchTimeout, LifecycleError, NotFound, NotReady,
)
from ezhost.services import properties
from ezhost.services import scripts
from ezhost.services import server_metrics
from ezhost.services.launcher import LaunchResult, ProcessLauncher
from ezhost.services.minecraft_utils import PlayerList, parse_list_response, validate_player_name
from ezhost.services.rcon import RconChannel
from ezhost.services.registry import ServerRecord, ServerRegistry, ServerStatus, ServerType
from ezhost.services.scripts import ScriptKind

logger = logging.getLogger(__name__)

TRANSITIONAL_STATUSES = frozenset({
    ServerStatus.STARTING,
    ServerStatus.STOPPING,
    ServerStatus.RESTARTING,
})
MAX_COMMAND_LENGTH = 256


class ServerOrchestrator:
    """Owns the registry and drives every status change."""

    def __init__(
        self,
        registry: ServerRegistry,
        launcher: ProcessLauncher,
        channel: RconChannel,
        settings: LifecycleSettings,
        sleep=asyncio.sleep,
    ):
        self.registry = registry
        self.launcher = launcher
        self.channel = channel
        self.settings = settings
        self._sleep = sleep
        # Guards check-then-set of the single running slot
        self._lock = asyncio.Lock()
        self._busy: Set[str] = set()
        self._initializing: Set[str] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_servers(self) -> List[ServerRecord]:
        return self.registry.list()

    def describe(self, server_id: str) -> dict:
        record = self.registry.get(server_id)
        data = record.to_dict()
        variables = properties.variables_path(record.directory)
        if variables.exists():
            data["ramAllocationGB"] = properties.read_ram(variables)
        return data

    def get_console(self, server_id: str, lines: int = 100) -> List[dict]:
        self.registry.get(server_id)
        return self.launcher.get_console(server_id, lines)

    def get_usage(self, server_id: str) -> dict:
        record = self.registry.get(server_id)
        pid = self.launcher.get_pid(server_id)
        if pid is None or record.status is ServerStatus.OFFLINE:
            return server_metrics.empty_usage()
        return server_metrics.sample_process_tree(pid)

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------

    def create_server(
        self,
        *,
        name: str,
        directory: str,
        rcon_password: Optional[str] = None,
        icon: Optional[str] = None,
        server_type=None,
    ) -> ServerRecord:
        """Register a server, generate its scripts and enable RCON."""
        if not isinstance(directory, str) or not directory.strip():
            raise InvalidRequest("Server directory is required")
        directory = directory.strip()
        if os.path.isabs(directory) and not os.path.isdir(directory):
            raise NotFound("Server directory not found", detail=f"{directory} is not a directory")
        password = rcon_password or secrets.token_urlsafe(12)
        parsed_type = ServerType.parse(server_type) if server_type else ServerType.FORGE

        record = self.registry.create(
            name=name,
            directory=directory,
            rcon_password=password,
            icon=icon,
            server_type=parsed_type,
        )
        try:
            scripts.write_scripts(record, windows=self.launcher.windows)
            properties.enable_rcon(record.directory, password)
        except OSError as e:
            logger.error(f"Failed to prepare {record.directory}, rolling back: {e}")
            self._discard(record)
            raise LifecycleError("Failed to prepare server directory", detail=str(e))
        return record

    def update_server(self, server_id: str, changes: dict) -> ServerRecord:
        if not isinstance(changes, dict):
            raise InvalidRequest("Request body must be an object")
        immutable = {"id", "directory", "rconPassword", "status"} & set(changes)
        if immutable:
            raise InvalidRequest(f"Field(s) cannot be changed: {', '.join(sorted(immutable))}")

        fields = {key: changes[key] for key in ("name", "icon", "type") if key in changes}
        if not fields:
            return self.registry.get(server_id)

        before = self.registry.get(server_id)
        record = self.registry.update(server_id, **fields)
        if record.type is not before.type:
            scripts.write_scripts(record, windows=self.launcher.windows)
        return record

    async def delete_server(self, server_id: str):
        async with self._lock:
            record = self.registry.get(server_id)
            if record.status is not ServerStatus.OFFLINE:
                raise Conflict(
                    "Server must be offline to delete",
                    detail=f"Server '{record.name}' is {record.status.value}",
                    code="invalid_state",
                )
            if server_id in self._initializing:
                raise Conflict("Server is being initialized", code="invalid_state")
            self._discard(record)

    def _discard(self, record: ServerRecord):
        """Remove the record, its generated scripts and console buffer."""
        try:
            scripts.remove_scripts(record)
        except OSError as e:
            logger.warning(f"Could not remove scripts for {record.name}: {e}")
        self.registry.delete(record.id)
        self.launcher.forget(record.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init_server(self, server_id: str) -> LaunchResult:
        """Run the init script. A failed first init removes the record."""
        async with self._lock:
            record = self.registry.get(server_id)
            if record.status is not ServerStatus.OFFLINE:
                raise Conflict(
                    "Server must be offline to initialize",
                    detail=f"Server '{record.name}' is {record.status.value}",
                    code="invalid_state",
                )
            if server_id in self._initializing:
                raise Conflict("Server is already being initialized", code="invalid_state")
            if self._owns_transition(server_id):
                raise Conflict("Server is busy with another operation", code="invalid_state")
            self._initializing.add(server_id)

        try:
            result = await self.launcher.launch(record, ScriptKind.INIT)
        except (ExternalProcessFailure, LaunchTimeout) as e:
            if not record.initialized:
                logger.warning(f"Init of {record.name} failed, removing the new server: {e.message}")
                self._discard(record)
            raise
        finally:
            self._initializing.discard(server_id)

        if not record.initialized:
            self.registry.update(server_id, initialized=True)
        return result

    def _claim_start_slot(self, server_id: str) -> ServerRecord:
        """Validate a start and move the server to Starting. Call under _lock."""
        record = self.registry.get(server_id)
        if record.status is not ServerStatus.OFFLINE:
            raise Conflict(
                "Server is not offline",
                detail=f"Server '{record.name}' is already {record.status.value}",
                code="invalid_state",
            )

        if server_id in self._initializing:
            raise Conflict(
                "Server is being initialized",
                detail=f"Wait for the init script of '{record.name}' to finish",
                code="invalid_state",
            )

        active = self.registry.active_servers(exclude_id=server_id)
        if active:
            other = active[0]
            raise ActiveServerConflict(other.id, other.name, other.status.value)

        if not properties.variables_path(record.directory).exists():
            raise NotFound(
                "variables.txt file is missing. Cannot start server.",
                detail="Required configuration file variables.txt is missing.",
            )

        self._busy.add(server_id)
        return self.registry.set_status(server_id, ServerStatus.STARTING)

    async def _run_start(self, record: ServerRecord) -> ServerRecord:
        try:
            await self.launcher.launch(record, ScriptKind.START, on_exit=self._on_server_exit)
        except (ExternalProcessFailure, LaunchTimeout, asyncio.CancelledError):
            self._set_offline(record.id)
            raise
        finally:
            self._busy.discard(record.id)
        return self.registry.set_status(record.id, ServerStatus.ONLINE)

    async def start_server(self, server_id: str) -> ServerRecord:
        async with self._lock:
            record = self._claim_start_slot(server_id)
        return await self._run_start(record)

    async def _on_server_exit(self, server_id: str, returncode: Optional[int]):
        try:
            record = self.registry.get(server_id)
        except NotFound:
            return
        if record.status in (ServerStatus.ONLINE, ServerStatus.STOPPING):
            logger.info(f"Server {record.name} process ended (code {returncode}), marking Offline")
            self.registry.set_status(server_id, ServerStatus.OFFLINE)

    def _set_offline(self, server_id: str):
        try:
            self.registry.set_status(server_id, ServerStatus.OFFLINE)
        except NotFound:
            pass

    async def save_server(self, server_id: str) -> str:
        return await self.channel.send(server_id, "save-all")

    async def stop_server(self, server_id: str) -> str:
        return await self.channel.send(server_id, "stop")

    async def restart_server(self, server_id: str) -> ServerRecord:
        """save-all, stop, wait the grace delay, start.

        Any failing step leaves the server Offline and re-raises that step's error.
        """
        async with self._lock:
            record = self.registry.get(server_id)
            if record.status is not ServerStatus.ONLINE:
                raise NotReady(
                    "Server is not online.",
                    detail=f"Server '{record.name}' is {record.status.value}",
                )
            self._busy.add(server_id)
            self.registry.set_status(server_id, ServerStatus.RESTARTING)

        step = "save"
        try:
            await self.channel.round_trip(record, "save-all")
            step = "stop"
            await self.channel.round_trip(record, "stop")
            step = "grace delay"
            await self._sleep(self.settings.stop_grace_sec)
            step = "start"
            async with self._lock:
                self.registry.set_status(server_id, ServerStatus.OFFLINE)
                record = self._claim_start_slot(server_id)
        except (LifecycleError, asyncio.CancelledError) as e:
            logger.warning(f"Restart of {record.name} aborted during {step}: {e}")
            self._busy.discard(server_id)
            self._set_offline(server_id)
            raise
        return await self._run_start(record)

    async def check_status(self) -> List[ServerRecord]:
        """Probe every server over RCON and persist the results in one write.

        Servers in the middle of a transition owned by this process keep
        their status.
        """
        snapshot = self.registry.list()
        results = await asyncio.gather(*(self.channel.probe(record) for record in snapshot))

        async with self._lock:
            current = {record.id: record for record in self.registry.list()}
            statuses: Dict[str, ServerStatus] = {}
            for record, alive in zip(snapshot, results):
                latest = current.get(record.id)
                if latest is None or latest.status is not record.status:
                    continue
                if record.status in TRANSITIONAL_STATUSES and self._owns_transition(record.id):
                    continue
                statuses[record.id] = ServerStatus.ONLINE if alive else ServerStatus.OFFLINE
            return self.registry.set_statuses(statuses)

    def _owns_transition(self, server_id: str) -> bool:
        return server_id in self._busy or self.channel.is_settling(server_id)

    def recover_stale_statuses(self) -> int:
        """Transitional statuses left over from a previous run become Offline."""
        stale = {
            record.id: ServerStatus.OFFLINE
            for record in self.registry.list()
            if record.status in TRANSITIONAL_STATUSES and not self._owns_transition(record.id)
        }
        if stale:
            logger.warning(f"Resetting {len(stale)} server(s) stuck in a transition to Offline")
            self.registry.set_statuses(stale)
        return len(stale)

    # ------------------------------------------------------------------
    # RCON passthrough
    # ------------------------------------------------------------------

    async def send_command(self, server_id: str, command) -> str:
        if not isinstance(command, str):
            raise InvalidRequest("Command must be a string")
        # Strip control characters, cap length
        command = re.sub(r'[\x00-\x1f\x7f]', '', command).strip()[:MAX_COMMAND_LENGTH]
        if not command:
            raise InvalidRequest("No command provided")
        return await self.channel.send(server_id, command)

    async def list_players(self, server_id: str) -> PlayerList:
        response = await self.channel.send(server_id, "list")
        return parse_list_response(response)

    async def set_operator(self, server_id: str, player: str, op: bool) -> str:
        player = validate_player_name(player)
        command = f"op {player}" if op else f"deop {player}"
        return await self.channel.send(server_id, command)

    # ------------------------------------------------------------------
    # server.properties / variables.txt
    # ------------------------------------------------------------------

    def get_properties(self, server_id: str) -> Dict[str, str]:
        record = self.registry.get(server_id)
        return properties.read_properties(properties.properties_path(record.directory))

    def update_properties(self, server_id: str, updates) -> Dict[str, str]:
        if not isinstance(updates, dict):
            raise InvalidRequest("Properties must be an object of key/value pairs")
        record = self.registry.get(server_id)
        return properties.write_properties(properties.properties_path(record.directory), updates)

    def get_ram(self, server_id: str) -> int:
        record = self.registry.get(server_id)
        path = properties.variables_path(record.directory)
        if not path.exists():
            raise NotFound("variables.txt not found", detail=f"No variables file at {path}")
        return properties.read_ram(path)

    def set_ram(self, server_id: str, ram) -> dict:
        """Takes effect on the next start; no status change."""
        record = self.registry.get(server_id)
        value = properties.write_ram(properties.variables_path(record.directory), ram)
        return {"ram": value, "restartRequired": record.status is not ServerStatus.OFFLINE}

    async def shutdown(self):
        await self.channel.aclose()
        await self.launcher.aclose()
