import asyncio
import json

import pytest

from ezhost.core.errors import Conflict, NotReady
from ezhost.services.operations import OperationNotFound, OperationRunner, get_operation_spec


class _Record:
    def __init__(self, server_id, status="Online"):
        self.id = server_id
        self.status = status

    def to_dict(self):
        return {"id": self.id, "status": self.status}


class _FakeOrchestrator:
    def __init__(self):
        self.calls = []

    async def start_server(self, server_id):
        self.calls.append(("start", server_id))
        return _Record(server_id)

    async def stop_server(self, server_id):
        self.calls.append(("stop", server_id))
        raise NotReady("Server is not online.")

    async def check_status(self):
        self.calls.append(("check-status", None))
        return [_Record("a"), _Record("b", "Offline")]


class _Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _runner(tmp_path, orchestrator=None, clock=None):
    return OperationRunner(
        orchestrator or _FakeOrchestrator(),
        tmp_path / "operation_state.jsonl",
        ttl_seconds=300,
        clock=clock or _Clock(),
    )


def _journal(tmp_path):
    lines = (tmp_path / "operation_state.jsonl").read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_unknown_operation_rejected():
    with pytest.raises(OperationNotFound):
        get_operation_spec("nope:does-not-exist")


def test_check_status_is_not_per_server():
    assert get_operation_spec("servers:check-status").per_server is False
    assert get_operation_spec("server:restart").per_server is True


def test_successful_operation_is_journaled(tmp_path):
    runner = _runner(tmp_path)

    result, replayed = asyncio.run(runner.execute(key="server:start", server_id="a"))

    assert replayed is False
    assert result == {"message": "Server started successfully", "data": {"id": "a", "status": "Online"}}
    states = _journal(tmp_path)
    assert [s["status"] for s in states] == ["started", "succeeded"]
    assert {s["op_id"] for s in states} == {states[0]["op_id"]}
    assert states[0]["server_id"] == "a"


def test_failed_operation_is_journaled_and_raised(tmp_path):
    runner = _runner(tmp_path)

    with pytest.raises(NotReady):
        asyncio.run(runner.execute(key="server:stop", server_id="a"))

    states = _journal(tmp_path)
    assert states[-1]["status"] == "failed"
    assert states[-1]["error"] == "Server is not online."
    assert states[-1]["error_code"] == "not_ready"


def test_idempotency_key_replays_result(tmp_path):
    orchestrator = _FakeOrchestrator()
    runner = _runner(tmp_path, orchestrator)

    async def scenario():
        first = await runner.execute(key="server:start", server_id="a", idempotency_key="k1")
        second = await runner.execute(key="server:start", server_id="a", idempotency_key=" k1 ")
        return first, second

    (first, first_replayed), (second, second_replayed) = asyncio.run(scenario())

    assert first == second
    assert first_replayed is False
    assert second_replayed is True
    assert orchestrator.calls == [("start", "a")]


def test_idempotency_key_is_scoped_to_operation_and_server(tmp_path):
    orchestrator = _FakeOrchestrator()
    runner = _runner(tmp_path, orchestrator)

    async def scenario():
        await runner.execute(key="server:start", server_id="a", idempotency_key="k1")
        await runner.execute(key="server:start", server_id="b", idempotency_key="k1")

    asyncio.run(scenario())
    assert orchestrator.calls == [("start", "a"), ("start", "b")]


def test_idempotency_key_replays_failure(tmp_path):
    orchestrator = _FakeOrchestrator()
    runner = _runner(tmp_path, orchestrator)

    async def scenario():
        for _ in range(2):
            with pytest.raises(NotReady):
                await runner.execute(key="server:stop", server_id="a", idempotency_key="k2")

    asyncio.run(scenario())
    assert orchestrator.calls == [("stop", "a")]


def test_expired_idempotency_entry_runs_again(tmp_path):
    orchestrator = _FakeOrchestrator()
    clock = _Clock()
    runner = _runner(tmp_path, orchestrator, clock)

    async def scenario():
        await runner.execute(key="server:start", server_id="a", idempotency_key="k1")
        clock.now += 301
        return await runner.execute(key="server:start", server_id="a", idempotency_key="k1")

    _, replayed = asyncio.run(scenario())
    assert replayed is False
    assert orchestrator.calls == [("start", "a"), ("start", "a")]


def test_in_progress_idempotency_key_conflicts(tmp_path):
    gate_holder = {}

    class _SlowOrchestrator(_FakeOrchestrator):
        async def start_server(self, server_id):
            await gate_holder["gate"].wait()
            return await super().start_server(server_id)

    runner = _runner(tmp_path, _SlowOrchestrator())

    async def scenario():
        gate_holder["gate"] = asyncio.Event()
        first = asyncio.create_task(runner.execute(key="server:start", server_id="a", idempotency_key="k3"))
        await asyncio.sleep(0)
        with pytest.raises(Conflict) as exc_info:
            await runner.execute(key="server:start", server_id="a", idempotency_key="k3")
        gate_holder["gate"].set()
        await first
        return exc_info.value

    error = asyncio.run(scenario())
    assert error.code == "in_progress"


def test_check_status_ignores_server_id(tmp_path):
    orchestrator = _FakeOrchestrator()
    runner = _runner(tmp_path, orchestrator)

    result, _ = asyncio.run(runner.execute(key="servers:check-status", server_id="ignored"))

    assert orchestrator.calls == [("check-status", None)]
    assert [s["status"] for s in result["data"]] == ["Online", "Offline"]
