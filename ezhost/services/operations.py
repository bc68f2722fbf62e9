from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ezhost.core.errors import Conflict, LifecycleError
from ezhost.services.lifecycle import ServerOrchestrator

logger = logging.getLogger(__name__)

ExecutorFn = Callable[[ServerOrchestrator, Optional[str], dict[str, Any]], Awaitable[dict]]

DEFAULT_IDEMPOTENCY_TTL_SECONDS = 900


class OperationNotFound(Exception):
    pass


@dataclass(frozen=True)
class OperationSpec:
    key: str
    per_server: bool
    executor: ExecutorFn


async def _exec_server_init(orchestrator: ServerOrchestrator, server_id: Optional[str], params: dict[str, Any]) -> dict:
    result = await orchestrator.init_server(server_id)
    return {
        "message": "Server initialized successfully",
        "data": {"stdout": result.stdout, "stderr": result.stderr},
    }


async def _exec_server_start(orchestrator: ServerOrchestrator, server_id: Optional[str], params: dict[str, Any]) -> dict:
    record = await orchestrator.start_server(server_id)
    return {"message": "Server started successfully", "data": record.to_dict()}


async def _exec_server_save(orchestrator: ServerOrchestrator, server_id: Optional[str], params: dict[str, Any]) -> dict:
    response = await orchestrator.save_server(server_id)
    return {"message": "Server saved successfully", "data": {"response": response}}


async def _exec_server_stop(orchestrator: ServerOrchestrator, server_id: Optional[str], params: dict[str, Any]) -> dict:
    response = await orchestrator.stop_server(server_id)
    return {"message": "Server is stopping", "data": {"response": response}}


async def _exec_server_restart(orchestrator: ServerOrchestrator, server_id: Optional[str], params: dict[str, Any]) -> dict:
    record = await orchestrator.restart_server(server_id)
    return {"message": "Server restarted successfully", "data": record.to_dict()}


async def _exec_check_status(orchestrator: ServerOrchestrator, server_id: Optional[str], params: dict[str, Any]) -> dict:
    records = await orchestrator.check_status()
    return {
        "message": "Server statuses updated",
        "data": [record.to_dict() for record in records],
    }


_REGISTRY: dict[str, OperationSpec] = {
    "server:init": OperationSpec(key="server:init", per_server=True, executor=_exec_server_init),
    "server:start": OperationSpec(key="server:start", per_server=True, executor=_exec_server_start),
    "server:save": OperationSpec(key="server:save", per_server=True, executor=_exec_server_save),
    "server:stop": OperationSpec(key="server:stop", per_server=True, executor=_exec_server_stop),
    "server:restart": OperationSpec(key="server:restart", per_server=True, executor=_exec_server_restart),
    "servers:check-status": OperationSpec(key="servers:check-status", per_server=False, executor=_exec_check_status),
}


def get_operation_spec(key: str) -> OperationSpec:
    spec = _REGISTRY.get(key)
    if spec is None:
        raise OperationNotFound(key)
    return spec


class OperationRunner:
    """Runs lifecycle operations, journals them and replays idempotent retries."""

    def __init__(
        self,
        orchestrator: ServerOrchestrator,
        state_file: Path,
        ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.state_file = Path(state_file)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._idempotency_lock = threading.Lock()
        self._idempotency_cache: dict[str, dict[str, Any]] = {}
        self._state_lock = threading.Lock()

    def _cleanup_expired_idempotency_entries(self, now: float) -> None:
        expired_keys = [
            cache_key
            for cache_key, entry in self._idempotency_cache.items()
            if float(entry.get("expires_at", 0)) <= now
        ]
        for cache_key in expired_keys:
            self._idempotency_cache.pop(cache_key, None)

    def _append_operation_state(self, record: dict[str, Any]) -> None:
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with self._state_lock:
                with self.state_file.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error(f"Could not append to operation journal {self.state_file}: {e}")

    def _finish(self, cache_key: str, entry: dict[str, Any]) -> None:
        if not cache_key:
            return
        with self._idempotency_lock:
            self._idempotency_cache[cache_key] = entry

    async def execute(
        self,
        *,
        key: str,
        server_id: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[dict, bool]:
        """Run operation *key*. Returns (result, replayed).

        Lifecycle errors propagate to the caller; a retry with the same
        idempotency key re-raises the cached error.
        """
        params = params or {}
        spec = get_operation_spec(key)
        if not spec.per_server:
            server_id = None

        normalized_idempotency_key = (idempotency_key or "").strip() or None
        idempotency_cache_key = ""
        now = self._clock()

        if normalized_idempotency_key:
            idempotency_cache_key = f"{spec.key}:{server_id or '*'}:{normalized_idempotency_key}"
            with self._idempotency_lock:
                self._cleanup_expired_idempotency_entries(now)
                existing_entry = self._idempotency_cache.get(idempotency_cache_key)
                if existing_entry:
                    if existing_entry.get("status") != "done":
                        raise Conflict(
                            "Operation already in progress for this idempotency key",
                            code="in_progress",
                        )
                    logger.info(f"Replaying {spec.key} for idempotency key {normalized_idempotency_key}")
                    if existing_entry.get("error") is not None:
                        raise existing_entry["error"]
                    return dict(existing_entry["result"]), True

                self._idempotency_cache[idempotency_cache_key] = {
                    "status": "in_progress",
                    "expires_at": now + self.ttl_seconds,
                    "result": None,
                    "error": None,
                }

        op_id = str(uuid.uuid4())
        base_state: dict[str, Any] = {
            "op_key": spec.key,
            "op_id": op_id,
            "server_id": server_id,
            "idempotency_key": normalized_idempotency_key,
            "started_at": int(now),
        }
        self._append_operation_state({
            **base_state,
            "finished_at": None,
            "status": "started",
            "error": "",
        })

        try:
            result = await spec.executor(self.orchestrator, server_id, params)
        except LifecycleError as exc:
            finished_at = self._clock()
            self._append_operation_state({
                **base_state,
                "finished_at": int(finished_at),
                "status": "failed",
                "error": exc.message,
                "error_code": exc.code,
            })
            self._finish(idempotency_cache_key, {
                "status": "done",
                "expires_at": finished_at + self.ttl_seconds,
                "result": None,
                "error": exc,
            })
            raise
        except BaseException as exc:
            # Not a recorded outcome; let a retry run again
            self._append_operation_state({
                **base_state,
                "finished_at": int(self._clock()),
                "status": "failed",
                "error": str(exc) or type(exc).__name__,
            })
            if idempotency_cache_key:
                with self._idempotency_lock:
                    self._idempotency_cache.pop(idempotency_cache_key, None)
            raise

        finished_at = self._clock()
        self._append_operation_state({
            **base_state,
            "finished_at": int(finished_at),
            "status": "succeeded",
            "error": "",
        })
        self._finish(idempotency_cache_key, {
            "status": "done",
            "expires_at": finished_at + self.ttl_seconds,
            "result": result,
            "error": None,
        })
        return result, False
