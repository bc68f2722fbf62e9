import asyncio
import struct

import pytest

from ezhost.core.config import LifecycleSettings
from ezhost.core.errors import NotReady, ProtocolFailure
from ezhost.services import rcon as rcon_module
from ezhost.services.rcon import RCONClient, RconChannel, base_command
from ezhost.services.registry import ServerRegistry, ServerStatus

from fakes import FakeRcon, GatedSleep, wait_until


def _packet(request_id: int, packet_type: int, payload: str = "") -> bytes:
    body = struct.pack("<ii", request_id, packet_type) + payload.encode("utf-8") + b"\x00\x00"
    return struct.pack("<i", len(body)) + body


class _ScriptedSocket:
    def __init__(self, incoming: bytes):
        self._incoming = incoming
        self.sent = b""
        self.closed = False

    def sendall(self, data):
        self.sent += data

    def recv(self, size):
        chunk, self._incoming = self._incoming[:size], self._incoming[size:]
        return chunk

    def close(self):
        self.closed = True


def _setup(tmp_path, rcon=None, sleep=None, status=ServerStatus.ONLINE):
    registry = ServerRegistry(tmp_path / "servers.json")
    record = registry.create(name="Alpha", directory=str(tmp_path / "mc"), rcon_password="pw1")
    registry.set_status(record.id, status)
    rcon = rcon or FakeRcon()
    channel = RconChannel(registry, LifecycleSettings(), client_factory=rcon, sleep=sleep or GatedSleep())
    return registry, channel, rcon, record.id


def test_base_command():
    assert base_command("/Stop") == "stop"
    assert base_command("op Steve") == "op"
    assert base_command("   ") == ""


@pytest.mark.parametrize("status", [ServerStatus.OFFLINE, ServerStatus.STARTING, ServerStatus.STOPPING])
def test_send_requires_online_and_makes_no_connection(tmp_path, status):
    registry, channel, rcon, server_id = _setup(tmp_path, status=status)

    with pytest.raises(NotReady):
        asyncio.run(channel.send(server_id, "save-all"))

    assert rcon.connections == 0
    assert registry.get(server_id).status is status


def test_save_leaves_status_unchanged(tmp_path):
    registry, channel, rcon, server_id = _setup(tmp_path, rcon=FakeRcon(responses={"save-all": "Saved the game"}))

    response = asyncio.run(channel.send(server_id, "save-all"))

    assert response == "Saved the game"
    assert rcon.sent == [("pw1", "save-all")]
    assert registry.get(server_id).status is ServerStatus.ONLINE


def test_stop_goes_through_stopping_then_offline_after_grace(tmp_path):
    sleep = GatedSleep()
    registry, channel, rcon, server_id = _setup(tmp_path, sleep=sleep)

    async def scenario():
        await channel.send(server_id, "stop")
        assert registry.get(server_id).status is ServerStatus.STOPPING
        assert channel.is_settling(server_id)

        await wait_until(lambda: sleep.calls)
        assert registry.get(server_id).status is ServerStatus.STOPPING

        sleep.release()
        await channel.wait_idle()

    asyncio.run(scenario())
    assert sleep.calls == [10.0]
    assert registry.get(server_id).status is ServerStatus.OFFLINE
    assert not channel.is_settling(server_id)


def test_grace_delay_does_not_override_a_newer_status(tmp_path):
    sleep = GatedSleep()
    registry, channel, rcon, server_id = _setup(tmp_path, sleep=sleep)

    async def scenario():
        await channel.send(server_id, "stop")
        registry.set_status(server_id, ServerStatus.OFFLINE)
        registry.set_status(server_id, ServerStatus.STARTING)
        sleep.release()
        await channel.wait_idle()

    asyncio.run(scenario())
    assert registry.get(server_id).status is ServerStatus.STARTING


def test_connection_failure_forces_offline(tmp_path):
    registry, channel, rcon, server_id = _setup(tmp_path, rcon=FakeRcon(fail_all=True))

    with pytest.raises(ProtocolFailure) as exc_info:
        asyncio.run(channel.send(server_id, "save-all"))

    assert "Connection refused" in exc_info.value.detail
    assert registry.get(server_id).status is ServerStatus.OFFLINE


def test_failed_stop_is_offline_without_grace(tmp_path):
    sleep = GatedSleep()
    registry, channel, rcon, server_id = _setup(tmp_path, rcon=FakeRcon(fail_commands={"stop"}), sleep=sleep)

    with pytest.raises(ProtocolFailure):
        asyncio.run(channel.send(server_id, "stop"))

    assert registry.get(server_id).status is ServerStatus.OFFLINE
    assert sleep.calls == []


def test_probe_reports_reachability(tmp_path):
    registry, channel, rcon, server_id = _setup(tmp_path, rcon=FakeRcon(fail_passwords={"pw1"}))
    record = registry.get(server_id)

    assert asyncio.run(channel.probe(record)) is False
    rcon.fail_passwords.clear()
    assert asyncio.run(channel.probe(record)) is True
    # Probing alone never changes status
    assert registry.get(server_id).status is ServerStatus.ONLINE


def test_client_authenticates_and_sends(monkeypatch):
    sock = _ScriptedSocket(_packet(1, 2) + _packet(2, 0, "There are 0/20 players online:"))
    monkeypatch.setattr(rcon_module.socket, "create_connection", lambda address, timeout: sock)

    with RCONClient("localhost", 25575, "pw1") as client:
        assert client.send("list") == "There are 0/20 players online:"

    assert sock.closed is True
    assert b"pw1" in sock.sent and b"list" in sock.sent


def test_client_skips_empty_packet_before_auth_reply(monkeypatch):
    sock = _ScriptedSocket(_packet(1, 0) + _packet(1, 2))
    monkeypatch.setattr(rcon_module.socket, "create_connection", lambda address, timeout: sock)

    client = RCONClient("localhost", 25575, "pw1")
    assert client.connect() is True
    client.end()


def test_client_rejects_bad_password(monkeypatch):
    sock = _ScriptedSocket(_packet(-1, 2))
    monkeypatch.setattr(rcon_module.socket, "create_connection", lambda address, timeout: sock)

    client = RCONClient("localhost", 25575, "wrong")
    assert client.connect() is False
    assert client.last_error == "RCON authentication failed"
    with pytest.raises(ConnectionError):
        client.__enter__()


def test_client_rejects_oversized_packet(monkeypatch):
    sock = _ScriptedSocket(struct.pack("<i", 1_000_000))
    monkeypatch.setattr(rcon_module.socket, "create_connection", lambda address, timeout: sock)

    client = RCONClient("localhost", 25575, "pw1")
    assert client.connect() is False
    assert "out of bounds" in client.last_error
