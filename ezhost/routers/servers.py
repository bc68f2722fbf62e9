# ezhost/routers/servers.py
"""
Server management endpoints

Registry CRUD, lifecycle operations, server.properties/RAM editing,
RCON passthrough and player management.
"""

import json
import logging
import socket
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from ezhost.core.errors import InvalidRequest
from ezhost.services.lifecycle import ServerOrchestrator
from ezhost.services.operations import OperationRunner

logger = logging.getLogger(__name__)

router = APIRouter()


def _orchestrator(request: Request) -> ServerOrchestrator:
    return request.app.state.orchestrator


def _operations(request: Request) -> OperationRunner:
    return request.app.state.operations


def _success(message: str, data=None, status_code: int = 200, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        {"status": "success", "message": message, "data": data},
        status_code=status_code,
        headers=headers,
    )


async def _read_body(request: Request, required: bool = True) -> dict:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise InvalidRequest("Request body is required")
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


async def _run_operation(request: Request, key: str, server_id: Optional[str] = None) -> JSONResponse:
    result, replayed = await _operations(request).execute(
        key=key,
        server_id=server_id,
        idempotency_key=request.headers.get("Idempotency-Key"),
    )
    headers = {"Idempotent-Replay": "true"} if replayed else None
    return _success(result["message"], result.get("data"), headers=headers)


def get_local_ip() -> str:
    """LAN IPv4 address players can connect to."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects the outgoing interface
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


# ─── Registry ────────────────────────────────────────────────────────

@router.get("/servers")
async def list_servers(request: Request):
    servers = [record.to_dict() for record in _orchestrator(request).list_servers()]
    return _success("Servers retrieved successfully", servers)


@router.post("/servers/check-status")
async def check_status(request: Request):
    """Probe every server over RCON and update statuses"""
    return await _run_operation(request, "servers:check-status")


@router.get("/servers/ip-address")
async def get_ip_address(request: Request):
    return _success("IP address retrieved successfully", {"ip": get_local_ip()})


@router.get("/servers/{server_id}")
async def get_server(request: Request, server_id: str):
    return _success("Server retrieved successfully", _orchestrator(request).describe(server_id))


@router.post("/servers")
async def create_server(request: Request):
    body = await _read_body(request)
    record = _orchestrator(request).create_server(
        name=body.get("name"),
        directory=body.get("directory"),
        rcon_password=body.get("rconPassword"),
        icon=body.get("icon"),
        server_type=body.get("type"),
    )
    return _success("Server created successfully", record.to_dict(), status_code=201)


@router.put("/servers/{server_id}")
async def update_server(request: Request, server_id: str):
    body = await _read_body(request)
    record = _orchestrator(request).update_server(server_id, body)
    return _success("Server updated successfully", record.to_dict())


@router.delete("/servers/{server_id}")
async def delete_server(request: Request, server_id: str):
    await _orchestrator(request).delete_server(server_id)
    return _success("Server deleted successfully", {"id": server_id})


# ─── Lifecycle ───────────────────────────────────────────────────────

@router.post("/servers/{server_id}/initServer")
async def init_server(request: Request, server_id: str):
    return await _run_operation(request, "server:init", server_id)


@router.post("/servers/{server_id}/start")
async def start_server(request: Request, server_id: str):
    return await _run_operation(request, "server:start", server_id)


@router.post("/servers/{server_id}/save")
async def save_server(request: Request, server_id: str):
    return await _run_operation(request, "server:save", server_id)


@router.post("/servers/{server_id}/stop")
async def stop_server(request: Request, server_id: str):
    return await _run_operation(request, "server:stop", server_id)


@router.post("/servers/{server_id}/restart")
async def restart_server(request: Request, server_id: str):
    return await _run_operation(request, "server:restart", server_id)


# ─── Files ───────────────────────────────────────────────────────────

@router.get("/servers/{server_id}/properties")
async def get_properties(request: Request, server_id: str):
    props = _orchestrator(request).get_properties(server_id)
    return _success("Properties retrieved successfully", props)


@router.put("/servers/{server_id}/properties")
async def update_properties(request: Request, server_id: str):
    body = await _read_body(request)
    props = _orchestrator(request).update_properties(server_id, body)
    return _success("Properties updated successfully", props)


@router.get("/servers/{server_id}/ram")
async def get_ram(request: Request, server_id: str):
    ram = _orchestrator(request).get_ram(server_id)
    return _success("RAM allocation retrieved successfully", {"ram": ram})


@router.put("/servers/{server_id}/ram")
async def update_ram(request: Request, server_id: str):
    body = await _read_body(request)
    if "ram" not in body:
        raise InvalidRequest("ram is required")
    result = _orchestrator(request).set_ram(server_id, body["ram"])
    message = "RAM allocation updated"
    if result["restartRequired"]:
        message += "; restart the server to apply it"
    return _success(message, result)


# ─── RCON ────────────────────────────────────────────────────────────

@router.post("/servers/{server_id}/rcon")
async def send_rcon_command(request: Request, server_id: str):
    body = await _read_body(request)
    response = await _orchestrator(request).send_command(server_id, body.get("command", ""))
    return _success("Command executed successfully", {"response": response})


@router.get("/servers/{server_id}/players")
async def list_players(request: Request, server_id: str):
    players = await _orchestrator(request).list_players(server_id)
    return _success("Players retrieved successfully", players.names)


@router.post("/servers/{server_id}/player/{name}/op")
async def set_player_operator(request: Request, server_id: str, name: str):
    body = await _read_body(request)
    op = body.get("op")
    if not isinstance(op, bool):
        raise InvalidRequest("op must be true or false")
    response = await _orchestrator(request).set_operator(server_id, name, op)
    action = "opped" if op else "deopped"
    return _success(f"Player {name} {action}", {"response": response})


# ─── Monitoring ──────────────────────────────────────────────────────

@router.get("/servers/{server_id}/console")
async def get_console(request: Request, server_id: str, lines: int = Query(100, ge=1, le=1000)):
    entries = _orchestrator(request).get_console(server_id, lines)
    return _success("Console retrieved successfully", entries)


@router.get("/servers/{server_id}/usage")
async def get_usage(request: Request, server_id: str):
    return _success("Usage retrieved successfully", _orchestrator(request).get_usage(server_id))
