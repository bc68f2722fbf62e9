# ezhost/services/launcher.py
"""
Process Launcher

Handles:
- Running the generated init/start scripts as child processes
- Streaming stdout/stderr line by line into a per-server console buffer
- Readiness detection by matching server log lines
- The per-launch timeout and killing a launch that overruns it
- Watching a started server until its process exits

Minecraft servers expose no machine-readable "ready" signal, so readiness is
inferred from the log line printed once the world has loaded
("Done (4.2s)! For help, type "help""). This is a heuristic: a modded server
that changes that line, or a locale that translates it, will never be seen
as ready and the launch ends in a timeout. Matchers are pluggable for that
reason.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

import psutil

from ezhost.core.config import LifecycleSettings
from ezhost.core.errors import ExternalProcessFailure, LaunchTimeout
from ezhost.services.events import EventBus
from ezhost.services.registry import ServerRecord
from ezhost.services.scripts import IS_WINDOWS, ScriptKind, script_command, script_path

logger = logging.getLogger(__name__)

OUTPUT_DRAIN_TIMEOUT_SEC = 5.0
KILL_WAIT_SEC = 5.0

SpawnFn = Callable[[List[str], Path], Awaitable[asyncio.subprocess.Process]]
ExitCallback = Callable[[str, Optional[int]], Awaitable[None]]


class ReadinessMatcher:
    """Decides whether a stdout line means the server finished loading."""

    def matches(self, line: str) -> bool:
        raise NotImplementedError


class MarkerMatcher(ReadinessMatcher):
    """Ready when every marker appears in the same line."""

    def __init__(self, markers: Iterable[str]):
        self.markers = tuple(markers)
        if not self.markers:
            raise ValueError("At least one readiness marker is required")

    def matches(self, line: str) -> bool:
        return all(marker in line for marker in self.markers)


@dataclass
class LaunchResult:
    kind: ScriptKind
    ready: bool
    pid: Optional[int] = None
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""


async def spawn_script(argv: List[str], cwd: Path) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


def _kill_process_tree(process) -> None:
    """Kill the script and anything it spawned (PowerShell does not exec)."""
    pid = getattr(process, "pid", None)
    if pid:
        try:
            for child in psutil.Process(pid).children(recursive=True):
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass
        except psutil.Error as e:
            logger.debug(f"Could not enumerate children of PID {pid}: {e}")
    try:
        process.kill()
    except ProcessLookupError:
        pass


class ProcessLauncher:
    """Spawns launcher scripts and reports their outcome."""

    def __init__(
        self,
        settings: LifecycleSettings,
        matcher: Optional[ReadinessMatcher] = None,
        spawn: SpawnFn = spawn_script,
        events: Optional[EventBus] = None,
        windows: bool = IS_WINDOWS,
    ):
        self.settings = settings
        self.matcher = matcher or MarkerMatcher(settings.readiness_markers)
        self._spawn = spawn
        self.events = events
        self.windows = windows
        self._console: Dict[str, Deque[dict]] = {}
        self._processes: Dict[str, object] = {}
        self._watchers: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Console buffer
    # ------------------------------------------------------------------

    def _console_for(self, server_id: str) -> Deque[dict]:
        if server_id not in self._console:
            self._console[server_id] = deque(maxlen=self.settings.console_buffer_lines)
        return self._console[server_id]

    def _record_line(self, server_id: str, stream: str, message: str):
        entry = {
            "time": datetime.now().strftime("%H:%M:%S"),
            "stream": stream,
            "message": message,
        }
        self._console_for(server_id).append(entry)
        if self.events is not None:
            self.events.publish("console", server_id=server_id, stream=stream, message=message)

    def get_console(self, server_id: str, lines: int = 100) -> List[dict]:
        buffer = list(self._console.get(server_id, ()))
        if lines <= 0:
            return []
        return buffer[-lines:]

    def forget(self, server_id: str):
        self._console.pop(server_id, None)

    def get_pid(self, server_id: str) -> Optional[int]:
        process = self._processes.get(server_id)
        return getattr(process, "pid", None) if process is not None else None

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def _pump(
        self,
        server_id: str,
        stream_name: str,
        stream: asyncio.StreamReader,
        sink: Deque[str],
        ready: Optional[asyncio.Event],
    ):
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; the reader discards it
                logger.debug(f"[{server_id}] Skipped overlong {stream_name} line")
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            sink.append(line)
            self._record_line(server_id, stream_name, line)
            logger.debug(f"[{server_id}] {stream_name}: {line}")
            if ready is not None and not ready.is_set() and self.matcher.matches(line):
                logger.info(f"[{server_id}] Readiness marker seen: {line}")
                ready.set()

    async def _drain(self, tasks: List[asyncio.Task]):
        """Give the output pumps a moment to reach EOF, then cancel them."""
        pending = [t for t in tasks if not t.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=OUTPUT_DRAIN_TIMEOUT_SEC)
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _terminate(self, process, tasks: List[asyncio.Task]):
        _kill_process_tree(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SEC)
        except asyncio.TimeoutError:
            logger.warning(f"Process {getattr(process, 'pid', '?')} did not exit after kill")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def launch(
        self,
        record: ServerRecord,
        kind: ScriptKind,
        on_exit: Optional[ExitCallback] = None,
    ) -> LaunchResult:
        """Run the *kind* script for *record*.

        START returns as soon as the readiness marker is seen; the process keeps
        running and *on_exit* is awaited once it ends, unless a later START of
        the same server has replaced it. INIT returns when the script exits
        with code 0. Failures raise ExternalProcessFailure,
        overruns raise LaunchTimeout after the process has been killed.
        """
        path = script_path(record, kind, windows=self.windows)
        if not path.exists():
            raise ExternalProcessFailure(
                f"{path.name} not found",
                stderr=f"Launcher script {path} does not exist",
            )

        argv = script_command(path, windows=self.windows)
        self._console[record.id] = deque(maxlen=self.settings.console_buffer_lines)
        logger.info(f"Executing {kind.value} script for {record.name}: {' '.join(argv)}")

        try:
            process = await self._spawn(argv, record.path)
        except OSError as e:
            logger.error(f"Failed to spawn {path.name} for {record.name}: {e}")
            raise ExternalProcessFailure(f"Error executing {path.name}", stderr=str(e))

        stdout_lines: Deque[str] = deque(maxlen=self.settings.console_buffer_lines)
        stderr_lines: Deque[str] = deque(maxlen=self.settings.console_buffer_lines)
        ready = asyncio.Event() if kind is ScriptKind.START else None

        pumps = [
            asyncio.create_task(self._pump(record.id, "stdout", process.stdout, stdout_lines, ready)),
            asyncio.create_task(self._pump(record.id, "stderr", process.stderr, stderr_lines, None)),
        ]
        exit_task = asyncio.create_task(process.wait())
        waiters = {exit_task}
        ready_task = None
        if ready is not None:
            ready_task = asyncio.create_task(ready.wait())
            waiters.add(ready_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.settings.launch_timeout_sec,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._terminate(process, pumps + list(waiters))
            raise

        if ready is not None and ready.is_set():
            self._processes[record.id] = process
            watcher = asyncio.create_task(self._watch_exit(record, process, pumps, exit_task, on_exit))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)
            return LaunchResult(
                kind=kind,
                ready=True,
                pid=getattr(process, "pid", None),
                stdout="\n".join(stdout_lines),
            )

        if ready_task is not None:
            ready_task.cancel()

        if not done:
            logger.error(f"Timeout executing {path.name} for {record.name}")
            await self._terminate(process, pumps + [exit_task])
            raise LaunchTimeout(
                f"Timeout executing {path.name}",
                detail=f"The script took longer than {self.settings.launch_timeout_sec:g}s.",
            )

        await self._drain(pumps)
        returncode = exit_task.result()
        stdout = "\n".join(stdout_lines)
        stderr = "\n".join(stderr_lines)

        if returncode != 0:
            logger.error(f"{path.name} for {record.name} exited with code {returncode}")
            raise ExternalProcessFailure(
                f"Error executing {path.name} (exit code {returncode})",
                stderr=stderr,
                returncode=returncode,
            )

        if kind is ScriptKind.START:
            raise ExternalProcessFailure(
                f"{path.name} exited before the server became ready",
                stderr=stderr,
                returncode=returncode,
            )

        logger.info(f"{path.name} for {record.name} completed")
        return LaunchResult(kind=kind, ready=False, pid=getattr(process, "pid", None),
                            returncode=returncode, stdout=stdout, stderr=stderr)

    async def _watch_exit(self, record, process, pumps, exit_task, on_exit):
        returncode = None
        current = False
        try:
            returncode = await exit_task
            await self._drain(pumps)
            logger.info(f"Server process for {record.name} exited with code {returncode}")
        except asyncio.CancelledError:
            for task in pumps + [exit_task]:
                task.cancel()
            raise
        finally:
            if self._processes.get(record.id) is process:
                self._processes.pop(record.id, None)
                current = True

        if not current:
            # A newer launch of this server owns its status now
            logger.info(f"Ignoring exit of a replaced process for {record.name}")
            return
        if on_exit is not None:
            try:
                await on_exit(record.id, returncode)
            except Exception:
                logger.exception(f"Exit handler for {record.name} failed")

    async def aclose(self):
        """Stop watching running servers. The servers themselves keep running."""
        for task in list(self._watchers):
            task.cancel()
        await asyncio.gather(*list(self._watchers), return_exceptions=True)
