"""Shared fixtures: isolated runtime settings, stores, and a scripted supervisor."""

import asyncio

import httpx
import pytest

from llama_orchestrator.config import RuntimeSettings
from llama_orchestrator.errors import StartupError
from llama_orchestrator.orchestrator import Orchestrator
from llama_orchestrator.recovery import RecoveryEngine
from llama_orchestrator.registry import PresetRegistry
from llama_orchestrator.state import ProcessHandle
from llama_orchestrator.store import ConfigStore
from llama_orchestrator.supervisor import ProcessState

LLAMA_URL = "http://127.0.0.1:8080"


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def runtime(tmp_path, models_dir):
    return RuntimeSettings(
        models_dir=models_dir,
        config_path=tmp_path / "config.json",
        llama_host="127.0.0.1",
        llama_port=8080,
        container_name=None,
        llama_server_bin="llama-server",
        startup_timeout=5.0,
        health_poll_interval=0.05,
        stop_grace_period=1.0,
        drain_timeout=5.0,
    )


@pytest.fixture
def store(runtime):
    return ConfigStore(runtime.config_path)


@pytest.fixture
def registry(store, runtime):
    return PresetRegistry(store, runtime)


def make_model_file(models_dir, relative: str, size: int = 16):
    path = models_dir / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    return path


class FakeSupervisor:
    """Stands in for ProcessSupervisor: records launches, spawns nothing."""

    def __init__(self, start_delay: float = 0.0):
        self.state = ProcessState.STOPPED
        self.handle = None
        self.last_exit_code = None
        self.on_exit = None
        self.launches = []
        self.stops = 0
        self.fail_labels = set()
        self.start_delay = start_delay
        self._next_pid = 1000

    async def start(self, launch):
        self.launches.append(launch)
        self.state = ProcessState.STARTING
        await asyncio.sleep(self.start_delay)
        if launch.label in self.fail_labels:
            self.state = ProcessState.STOPPED
            self.last_exit_code = 1
            raise StartupError(f"{launch.label} failed to start", exit_code=1)
        self._next_pid += 1
        self.handle = ProcessHandle(
            pid=self._next_pid, argv=launch.argv, server_config=launch.server_config
        )
        self.state = ProcessState.RUNNING
        return self.handle

    async def stop(self):
        self.stops += 1
        self.handle = None
        self.state = ProcessState.STOPPED

    async def is_healthy(self):
        return self.handle is not None

    async def crash(self, code: int):
        """Simulate the process dying on its own."""
        handle = self.handle
        self.handle = None
        self.state = ProcessState.STOPPED
        self.last_exit_code = code
        await self.on_exit(handle, code)


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def orchestrator(runtime, store, supervisor):
    client = httpx.AsyncClient()
    recovery = RecoveryEngine(client, runtime.llama_url, sleep=no_sleep)
    return Orchestrator(
        runtime=runtime,
        store=store,
        client=client,
        supervisor=supervisor,
        recovery=recovery,
    )
