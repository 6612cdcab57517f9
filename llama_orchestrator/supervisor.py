"""ProcessSupervisor — lifecycle of the llama-server process.

The supervisor is a small state machine (stopped, starting, running,
stopping). It launches the process, waits for its health probe, stops it
with an escalating SIGTERM -> SIGKILL -> kill-by-name sequence, and reports
unexpected exits to its owner without ever relaunching on its own.
"""

import asyncio
import logging
import os
import shlex
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
import psutil

from llama_orchestrator.config import RuntimeSettings, ServerConfig
from llama_orchestrator.errors import StartupError, SupervisorError
from llama_orchestrator.state import ProcessHandle

logger = logging.getLogger(__name__)
process_logger = logging.getLogger(f"{__name__}.process")

FORCE_KILL_TIMEOUT = 5.0
KILL_COMMAND_TIMEOUT = 5.0
HEALTH_PROBE_TIMEOUT = 2.0

ExitCallback = Callable[[ProcessHandle, int], Awaitable[None]]


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


_ALLOWED = {
    ProcessState.STOPPED: {ProcessState.STARTING, ProcessState.STOPPING},
    ProcessState.STARTING: {ProcessState.RUNNING, ProcessState.STOPPING},
    ProcessState.RUNNING: {ProcessState.STOPPING, ProcessState.STOPPED},
    ProcessState.STOPPING: {ProcessState.STOPPED},
}


@dataclass(frozen=True)
class LaunchSpec:
    """Command line and recorded parameters for one launch."""

    argv: tuple[str, ...]
    server_config: ServerConfig
    env: dict[str, str] = field(default_factory=dict)
    label: str = ""


class ProcessSupervisor:
    """Owns the single inference process on the configured port."""

    def __init__(
        self,
        runtime: RuntimeSettings,
        client: httpx.AsyncClient,
        on_exit: Optional[ExitCallback] = None,
    ):
        self.runtime = runtime
        self.client = client
        self.on_exit = on_exit
        self.state = ProcessState.STOPPED
        self.handle: Optional[ProcessHandle] = None
        self.last_exit_code: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pump: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._stop_lock = asyncio.Lock()

    def _set_state(self, new_state: ProcessState) -> None:
        if new_state not in _ALLOWED[self.state]:
            raise SupervisorError(
                f"Illegal process transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Process state {self.state.value} -> {new_state.value}")
        self.state = new_state

    def command_for(self, launch: LaunchSpec) -> list[str]:
        """Wrap the launch argv in the configured container, if any."""
        argv = list(launch.argv)
        if not self.runtime.container_name:
            return argv
        env_args = [f"{key}={value}" for key, value in launch.env.items()]
        return [
            self.runtime.distrobox_bin,
            "enter",
            self.runtime.container_name,
            "--",
            *(["env", *env_args] if env_args else []),
            *argv,
        ]

    # ─────────────────────────────────────────────────────────────────
    # Start
    # ─────────────────────────────────────────────────────────────────

    async def start(self, launch: LaunchSpec) -> ProcessHandle:
        """Spawn the process and wait until its health probe passes.

        Raises StartupError if the process cannot be spawned, exits during
        startup, or is not healthy within ``startup_timeout``.
        """
        if self.state is not ProcessState.STOPPED:
            raise SupervisorError(f"Cannot start: process is {self.state.value}")
        self._set_state(ProcessState.STARTING)

        command = self.command_for(launch)
        logger.info(f"Starting inference process ({launch.label}): {shlex.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, **launch.env},
            )
        except OSError as e:
            self._set_state(ProcessState.STOPPING)
            self._set_state(ProcessState.STOPPED)
            raise StartupError(f"Cannot spawn {command[0]}: {e}") from e

        handle = ProcessHandle(
            pid=process.pid, argv=tuple(command), server_config=launch.server_config
        )
        self._process = process
        self.handle = handle
        self.last_exit_code = None
        self._pump = asyncio.create_task(self._pump_output(process))

        try:
            await self._wait_for_health(process)
        except StartupError as e:
            self.last_exit_code = e.exit_code
            logger.error(f"Inference process failed to start: {e}")
            await self.stop()
            raise

        self._set_state(ProcessState.RUNNING)
        self._watcher = asyncio.create_task(self._watch_exit(process, handle))
        logger.info(f"Inference process ready (PID {handle.pid}, {launch.label})")
        return handle

    async def _wait_for_health(self, process: asyncio.subprocess.Process) -> None:
        loop = asyncio.get_running_loop()
        timeout = self.runtime.startup_timeout
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if process.returncode is not None:
                raise StartupError(
                    f"Inference process exited with code {process.returncode} "
                    f"during startup",
                    exit_code=process.returncode,
                )
            if await self.is_healthy():
                return
            await asyncio.sleep(self.runtime.health_poll_interval)
        raise StartupError(f"Inference process not healthy after {timeout}s")

    async def is_healthy(self) -> bool:
        """One liveness probe against the inference port."""
        try:
            response = await self.client.get(
                f"{self.runtime.llama_url}/health", timeout=HEALTH_PROBE_TIMEOUT
            )
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def _pump_output(self, process: asyncio.subprocess.Process) -> None:
        """Forward the process' combined stdout/stderr to the log."""
        if process.stdout is None:
            return
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip()
                if line:
                    process_logger.info(line)
        except ValueError as e:
            logger.warning(f"Stopped reading process output: {e}")

    async def _watch_exit(
        self, process: asyncio.subprocess.Process, handle: ProcessHandle
    ) -> None:
        code = await process.wait()
        if self.handle is not handle or self.state is not ProcessState.RUNNING:
            # Intentional stop; stop() owns the bookkeeping.
            return

        self.last_exit_code = code
        if code != 0:
            logger.error(f"Inference process {handle.pid} exited with code {code}")
        else:
            logger.warning(f"Inference process {handle.pid} exited")
        self._set_state(ProcessState.STOPPED)
        self.handle = None
        self._process = None

        if self.on_exit is not None:
            try:
                await self.on_exit(handle, code)
            except Exception as e:
                logger.error(f"Exit handler failed: {e}", exc_info=True)

    # ─────────────────────────────────────────────────────────────────
    # Stop
    # ─────────────────────────────────────────────────────────────────

    async def stop(self) -> None:
        """Stop the process; idempotent.

        SIGTERM, ``stop_grace_period`` to exit, then SIGKILL. Without a
        handle (lost across an orchestrator restart) or when the port still
        answers afterwards, fall back to killing by process name.
        """
        async with self._stop_lock:
            process = self._process
            if process is None:
                if self.state is not ProcessState.STOPPED:
                    self._set_state(ProcessState.STOPPING)
                    self._set_state(ProcessState.STOPPED)
                if await self.is_healthy():
                    logger.warning(
                        "No process handle but the inference port answers; "
                        "killing by name"
                    )
                    self._set_state(ProcessState.STOPPING)
                    await self._kill_by_name()
                    self._set_state(ProcessState.STOPPED)
                return

            self._set_state(ProcessState.STOPPING)
            logger.info(f"Stopping inference process (PID {process.pid})")
            await self._terminate(process)
            if process.returncode is not None:
                self.last_exit_code = process.returncode
            await self._finish_pump()
            self._process = None
            self.handle = None

            if await self.is_healthy():
                logger.warning("Inference port still answers after stop; killing by name")
                await self._kill_by_name()
            self._set_state(ProcessState.STOPPED)
            logger.info("Inference process stopped")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.runtime.stop_grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning(
                f"PID {process.pid} ignored SIGTERM for "
                f"{self.runtime.stop_grace_period}s, sending SIGKILL"
            )

        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=FORCE_KILL_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(f"PID {process.pid} survived SIGKILL")
            await self._kill_by_name()

    async def _finish_pump(self) -> None:
        if self._pump is None:
            return
        try:
            await asyncio.wait_for(self._pump, timeout=1.0)
        except asyncio.TimeoutError:
            self._pump.cancel()
        self._pump = None

    async def _kill_by_name(self) -> None:
        """Last resort: kill every process matching ``process_name``."""
        name = self.runtime.process_name
        killed = await asyncio.to_thread(kill_processes_named, name)
        if killed:
            logger.warning(f"Killed {len(killed)} leftover {name} process(es): {killed}")
        if not self.runtime.container_name:
            return

        command = [
            self.runtime.distrobox_bin,
            "enter",
            self.runtime.container_name,
            "--",
            "pkill", "-9", "-f", name,
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Cannot run {command[0]}: {e}")
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"{shlex.join(command)} timed out")
            proc.kill()


def kill_processes_named(name: str, timeout: float = KILL_COMMAND_TIMEOUT) -> list[int]:
    """SIGKILL every host process whose command line mentions ``name``.

    Returns the pids that were signalled. Blocking; run it off the loop.
    """
    own_pid = os.getpid()
    victims = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        if proc.info["pid"] == own_pid:
            continue
        cmdline = " ".join(proc.info["cmdline"] or [])
        if name not in cmdline:
            continue
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Cannot kill PID {proc.info['pid']}: {e}")
            continue
        victims.append(proc)
    psutil.wait_procs(victims, timeout=timeout)
    return [proc.pid for proc in victims]


class ShutdownWatchdog:
    """Hard-exit the interpreter if shutdown overruns its ceiling.

    Runs on a daemon thread so it fires even when the event loop is stuck
    on an unresponsive child.
    """

    def __init__(self, ceiling: float = 10.0, exit_fn: Callable[[int], None] = os._exit):
        self.ceiling = ceiling
        self._exit_fn = exit_fn
        self._timer: Optional[threading.Timer] = None

    def _fire(self) -> None:
        logger.error(f"Shutdown exceeded {self.ceiling}s, forcing exit")
        self._exit_fn(1)

    def arm(self) -> None:
        self._timer = threading.Timer(self.ceiling, self._fire)
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __enter__(self):
        self.arm()
        return self

    def __exit__(self, *exc_info):
        self.disarm()
        return False
