"""Stand-ins for child processes, RCON sessions and the grace-delay timer.

Objects holding asyncio primitives are created inside the running loop.
"""

import asyncio

READY_LINE = '[12:00:01] [Server thread/INFO]: Done (4.213s)! For help, type "help"'


class FakeProcess:
    def __init__(self):
        self.pid = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.killed = False
        self._exited = asyncio.Event()

    def emit(self, line: str, stream: str = "stdout"):
        getattr(self, stream).feed_data((line + "\n").encode("utf-8"))

    def exit(self, code: int = 0):
        if self.returncode is not None:
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = code
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def kill(self):
        self.killed = True
        self.exit(-9)


async def becomes_ready(process: FakeProcess):
    process.emit("[12:00:00] [Server thread/INFO]: Preparing level \"world\"")
    process.emit(READY_LINE)


async def crashes(process: FakeProcess):
    process.emit("Error: Unable to access jarfile", stream="stderr")
    process.exit(1)


async def exits_cleanly(process: FakeProcess):
    process.emit("Server initialized in /srv/mc")
    process.exit(0)


async def hangs(process: FakeProcess):
    process.emit("[12:00:00] [Server thread/INFO]: Loading libraries")


class FakeSpawner:
    """Replaces spawn_script; runs *behavior* against a FakeProcess."""

    def __init__(self, behavior=becomes_ready):
        self.behavior = behavior
        self.calls = []
        self.processes = []
        self._tasks = []

    async def __call__(self, argv, cwd):
        self.calls.append((list(argv), cwd))
        process = FakeProcess()
        self.processes.append(process)
        self._tasks.append(asyncio.create_task(self.behavior(process)))
        return process


class _FakeSession:
    def __init__(self, rcon, password):
        self.rcon = rcon
        self.password = password

    def __enter__(self):
        if self.rcon.fail_all or self.password in self.rcon.fail_passwords:
            raise ConnectionError("Connection refused")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def send(self, command):
        base = command.split()[0] if command.split() else ""
        if base in self.rcon.fail_commands:
            raise ConnectionError(f"Connection lost during {base}")
        self.rcon.sent.append((self.password, command))
        return self.rcon.responses.get(base, "")


class FakeRcon:
    """Client factory recording every command per password."""

    def __init__(self, responses=None, fail_passwords=(), fail_commands=(), fail_all=False):
        self.responses = dict(responses or {})
        self.fail_passwords = set(fail_passwords)
        self.fail_commands = set(fail_commands)
        self.fail_all = fail_all
        self.connections = 0
        self.sent = []

    def __call__(self, host, port, password, timeout=5.0):
        self.connections += 1
        return _FakeSession(self, password)


class GatedSleep:
    """Blocks every sleep until release() is called."""

    def __init__(self):
        self.calls = []
        self._gate = None

    def _event(self):
        if self._gate is None:
            self._gate = asyncio.Event()
        return self._gate

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await self._event().wait()

    def release(self):
        self._event().set()


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
