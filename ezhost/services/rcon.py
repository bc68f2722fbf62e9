# ezhost/services/rcon.py
"""
RCON client and command channel

Handles:
- RCON connection, authentication and single-command exchange
- One short-lived connection per command (no pooling)
- Status side effects of stop and of failed round-trips
"""

import asyncio
import logging
import socket
import struct
from typing import Callable, Optional, Set

from ezhost.core.config import LifecycleSettings
from ezhost.core.errors import NotReady, ProtocolFailure
from ezhost.services.minecraft_utils import strip_minecraft_colors
from ezhost.services.registry import ServerRecord, ServerRegistry, ServerStatus

logger = logging.getLogger(__name__)


class RCONClient:
    """Minecraft RCON protocol client"""

    SERVERDATA_AUTH = 3
    SERVERDATA_AUTH_RESPONSE = 2
    SERVERDATA_EXECCOMMAND = 2
    SERVERDATA_RESPONSE_VALUE = 0
    MAX_PACKET_SIZE = 4096 + 10  # payload limit plus id/type/padding

    def __init__(self, host: str, port: int, password: str, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.socket: Optional[socket.socket] = None
        self.request_id = 0
        self.last_error = ""

    def __enter__(self):
        """Context manager entry - connect and authenticate"""
        if self.connect():
            return self
        raise ConnectionError(self.last_error or f"Failed to connect to RCON at {self.host}:{self.port}")

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - disconnect"""
        self.end()
        return False

    def _pack_packet(self, packet_type: int, payload: str) -> bytes:
        self.request_id += 1
        payload_bytes = payload.encode("utf-8") + b"\x00\x00"
        length = 4 + 4 + len(payload_bytes)
        return struct.pack("<iii", length, self.request_id, packet_type) + payload_bytes

    def _recv_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.socket.recv(remaining)
            if not chunk:
                raise ConnectionError("Connection lost")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _read_packet(self) -> tuple:
        length = struct.unpack("<i", self._recv_exact(4))[0]
        if length < 10 or length > self.MAX_PACKET_SIZE:
            raise ConnectionError(f"RCON packet size out of bounds: {length}")

        data = self._recv_exact(length)
        request_id, packet_type = struct.unpack("<ii", data[0:8])
        payload = data[8:-2].decode("utf-8", errors="replace")
        return request_id, packet_type, payload

    def connect(self) -> bool:
        """Connect and authenticate"""
        try:
            self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
            self.socket.sendall(self._pack_packet(self.SERVERDATA_AUTH, self.password))

            request_id, packet_type, _ = self._read_packet()
            if packet_type != self.SERVERDATA_AUTH_RESPONSE:
                # Some servers send an empty RESPONSE_VALUE before the auth reply
                request_id, packet_type, _ = self._read_packet()

            if request_id == -1:
                self.last_error = "RCON authentication failed"
                self.end()
                return False
            return True

        except (OSError, struct.error) as e:
            self.last_error = f"RCON connection to {self.host}:{self.port} failed: {e}"
            logger.debug(self.last_error)
            self.end()
            return False

    def send(self, command: str) -> str:
        """Send a command and return the response payload"""
        if not self.socket:
            raise ConnectionError("Not connected")

        try:
            self.socket.sendall(self._pack_packet(self.SERVERDATA_EXECCOMMAND, command))
            _, _, payload = self._read_packet()
            return payload
        except (OSError, struct.error) as e:
            raise ConnectionError(f"Command failed: {e}")

    def end(self):
        """Close connection"""
        if self.socket:
            try:
                self.socket.close()
            except OSError:
                pass
            self.socket = None


ClientFactory = Callable[..., RCONClient]


def base_command(command: str) -> str:
    parts = command.split()
    return parts[0].lstrip("/").lower() if parts else ""


class RconChannel:
    """Sends single RCON commands to managed servers.

    All servers share one host:port, the RCON password picks the server.
    """

    def __init__(
        self,
        registry: ServerRegistry,
        settings: LifecycleSettings,
        client_factory: ClientFactory = RCONClient,
        sleep=asyncio.sleep,
    ):
        self.registry = registry
        self.settings = settings
        self._client_factory = client_factory
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()
        self._settling: Set[str] = set()

    def _round_trip_sync(self, password: str, command: str) -> str:
        client = self._client_factory(
            self.settings.rcon_host,
            self.settings.rcon_port,
            password,
            timeout=self.settings.rcon_timeout_sec,
        )
        try:
            with client as rcon:
                return strip_minecraft_colors(rcon.send(command))
        except (ConnectionError, OSError) as e:
            raise ProtocolFailure("RCON command failed", detail=str(e))

    async def round_trip(self, record: ServerRecord, command: str) -> str:
        """Open, authenticate, send *command*, close. No status checks."""
        return await asyncio.to_thread(self._round_trip_sync, record.rcon_password, command)

    async def send(self, server_id: str, command: str) -> str:
        """Send *command* to an Online server, applying its status effects."""
        record = self.registry.get(server_id)
        if record.status is not ServerStatus.ONLINE:
            raise NotReady(
                "Server is not online.",
                detail=f"Server '{record.name}' is {record.status.value}; start it before sending commands.",
            )

        is_stop = base_command(command) == "stop"
        if is_stop:
            self.registry.set_status(server_id, ServerStatus.STOPPING)

        try:
            response = await self.round_trip(record, command)
        except ProtocolFailure as e:
            logger.warning(f"RCON '{command}' to {record.name} failed, marking Offline: {e.detail}")
            self.registry.set_status(server_id, ServerStatus.OFFLINE)
            raise

        logger.info(f"RCON '{command}' -> {record.name}: {response[:200]!r}")
        if is_stop:
            self._schedule_offline(server_id)
        return response

    async def probe(self, record: ServerRecord) -> bool:
        """True when the server answers a `list` with its password."""
        try:
            await self.round_trip(record, "list")
            return True
        except ProtocolFailure as e:
            logger.debug(f"Status probe for {record.name} failed: {e.detail}")
            return False

    async def settle_offline(self, server_id: str):
        """Wait out the stop grace delay, then mark Offline if still Stopping."""
        await self._sleep(self.settings.stop_grace_sec)
        record = self.registry.get(server_id)
        if record.status is ServerStatus.STOPPING:
            self.registry.set_status(server_id, ServerStatus.OFFLINE)

    def is_settling(self, server_id: str) -> bool:
        return server_id in self._settling

    def _schedule_offline(self, server_id: str):
        self._settling.add(server_id)
        task = asyncio.create_task(self._settle_offline_quietly(server_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _settle_offline_quietly(self, server_id: str):
        try:
            await self.settle_offline(server_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Server deleted during the grace delay, or registry write failed
            logger.exception(f"Could not settle server {server_id} to Offline")
        finally:
            self._settling.discard(server_id)

    async def wait_idle(self):
        """Wait for scheduled grace-delay tasks (used at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self):
        for task in list(self._pending):
            task.cancel()
        await self.wait_idle()
