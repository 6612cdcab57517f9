"""Orchestrator — owns the server state and performs every mode transition.

All mutations of ``OrchestratorState`` happen here, under the
``TransitionGate``'s transition lock: request-triggered restarts, explicit
preset activation, router start, stop, and the reset that follows an
unexpected process exit. Each transition replaces the state object as a
whole.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Optional

import httpx

from llama_orchestrator.config import OrchestratorSettings, Preset, RuntimeSettings
from llama_orchestrator.errors import (
    ModelNotFoundError,
    PresetInUseError,
    ServerHaltedError,
    SupervisorError,
    TransitionError,
    UpstreamUnavailableError,
)
from llama_orchestrator.gate import TransitionGate
from llama_orchestrator.monitor import ContextMonitor
from llama_orchestrator.presets import scan_local_models
from llama_orchestrator.recovery import RecoveryEngine
from llama_orchestrator.registry import PresetRegistry, ResolvedModel
from llama_orchestrator.state import (
    OrchestratorState,
    ProcessHandle,
    RouterMode,
    ServerMode,
    SingleMode,
)
from llama_orchestrator.store import ConfigStore
from llama_orchestrator.supervisor import (
    LaunchSpec,
    ProcessSupervisor,
    ShutdownWatchdog,
)

logger = logging.getLogger(__name__)

UPSTREAM_TIMEOUT = httpx.Timeout(600.0, connect=5.0)


def _describe(mode: ServerMode) -> str:
    if isinstance(mode, SingleMode):
        return f"single({mode.preset.id})"
    return "router"


def _log_orphaned_failure(task: asyncio.Task) -> None:
    """Consume the outcome of a transition whose caller went away."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Transition finished with an error: {exc}")


class Orchestrator:
    """Single owner of the inference process and of the state describing it."""

    def __init__(
        self,
        runtime: Optional[RuntimeSettings] = None,
        store: Optional[ConfigStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        recovery: Optional[RecoveryEngine] = None,
    ):
        self.runtime = runtime or RuntimeSettings()
        self.store = store or ConfigStore(self.runtime.config_path)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)
        self.registry = PresetRegistry(self.store, self.runtime)
        self.gate = TransitionGate(drain_timeout=self.runtime.drain_timeout)

        self.supervisor = supervisor or ProcessSupervisor(self.runtime, self.client)
        self.supervisor.on_exit = self._on_process_exit
        self.recovery = recovery or RecoveryEngine(self.client, self.runtime.llama_url)
        self.monitor = ContextMonitor(self.client, self.runtime, lambda: self.state)

        self.state = OrchestratorState(
            mode=RouterMode(), server_config=self.settings.router_config()
        )
        self._launch: Optional[LaunchSpec] = None

    @property
    def settings(self) -> OrchestratorSettings:
        return self.store.settings

    # ─────────────────────────────────────────────────────────────────
    # Planning
    # ─────────────────────────────────────────────────────────────────

    def plan(self, resolved: ResolvedModel) -> Optional[ServerMode]:
        """Mode the process must be in to serve ``resolved``; None if it already can."""
        state = self.state
        running = state.process is not None

        if resolved.preset is None:
            if running and isinstance(state.mode, RouterMode):
                return None
            return RouterMode()

        preset = resolved.preset
        if running and self.registry.serves(state, preset):
            return None
        if self.registry.is_compatible(preset, self.settings.router_config()):
            return RouterMode()
        return SingleMode(preset)

    def is_serving(self, resolved: ResolvedModel) -> bool:
        return self.plan(resolved) is None

    async def ensure_serving(self, resolved: ResolvedModel) -> None:
        """Restart the process if it cannot serve ``resolved`` as it runs now.

        Concurrent callers wanting the same target share one transition: the
        plan is repeated under the transition lock, so whoever enters second
        finds the work already done.
        """
        if self.is_serving(resolved):
            return
        self._check_halted()
        await self._shielded(self._serve(resolved))

    def _check_halted(self) -> None:
        state = self.state
        if state.process is None and state.halted is not None:
            raise ServerHaltedError(state.halted)

    async def _serve(self, resolved: ResolvedModel) -> None:
        async with self.gate.transition_lock:
            target = self.plan(resolved)
            if target is None:
                return
            self._check_halted()
            if resolved.preset is not None:
                reasons = self.registry.incompatibilities(
                    resolved.preset, self.state.server_config
                )
                if reasons and self.state.process is not None:
                    logger.info(
                        f"Restart needed for {resolved.requested}: {'; '.join(reasons)}"
                    )
            async with self.gate.drain():
                await self._transition(target, reason=f"request for {resolved.requested}")

    async def _shielded(self, coro) -> Any:
        # A client disconnect must not abort a restart halfway through.
        task = asyncio.ensure_future(coro)
        task.add_done_callback(_log_orphaned_failure)
        return await asyncio.shield(task)

    # ─────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────

    def _launch_for(self, mode: ServerMode) -> LaunchSpec:
        if isinstance(mode, SingleMode):
            return self.registry.preset_launch(mode.preset, self.settings)
        return self.registry.router_launch(self.settings)

    async def _transition(self, target: ServerMode, reason: str) -> None:
        """Stop whatever runs and launch ``target``. Caller holds the gate."""
        previous = self.state
        previous_launch = self._launch
        launch = self._launch_for(target)
        logger.info(
            f"Transition {previous.describe()} -> {_describe(target)} ({reason})"
        )

        await self.supervisor.stop()
        try:
            handle = await self.supervisor.start(launch)
        except SupervisorError as e:
            logger.error(f"Transition to {_describe(target)} failed: {e}")
            await self._restore(previous, previous_launch)
            raise TransitionError(
                f"Failed to start inference process for {_describe(target)}: {e}"
            ) from e

        self._launch = launch
        self.state = OrchestratorState(
            mode=target, server_config=launch.server_config, process=handle
        )
        logger.info(f"Transition complete: {self.state.describe()} (PID {handle.pid})")

    async def _restore(
        self, previous: OrchestratorState, launch: Optional[LaunchSpec]
    ) -> None:
        """Bring back the last known-good process, else router mode with none."""
        if previous.process is not None and launch is not None:
            logger.info(f"Restoring previous mode {previous.describe()}")
            try:
                handle = await self.supervisor.start(launch)
            except SupervisorError as e:
                logger.error(f"Could not restore {previous.describe()}: {e}")
            else:
                self.state = replace(previous, process=handle)
                return
        self._launch = None
        self.state = OrchestratorState(
            mode=RouterMode(),
            server_config=self.settings.router_config(),
            halted=previous.halted,
        )

    async def start_router(self) -> OrchestratorState:
        return await self._shielded(self._switch(RouterMode(), "router start"))

    async def activate_preset(self, preset_id: str) -> OrchestratorState:
        preset = self.registry.get(preset_id)
        return await self._shielded(self._switch(SingleMode(preset), "preset activation"))

    async def _switch(self, target: ServerMode, reason: str) -> OrchestratorState:
        async with self.gate.exclusive():
            state = self.state
            if state.process is not None and self._already(target):
                logger.info(f"Already running {state.describe()}")
                return state
            await self._transition(target, reason)
            return self.state

    def _already(self, target: ServerMode) -> bool:
        state = self.state
        if isinstance(target, RouterMode):
            return (
                isinstance(state.mode, RouterMode)
                and state.server_config == self.settings.router_config()
            )
        return isinstance(state.mode, SingleMode) and state.mode.preset == target.preset

    async def stop_server(self) -> OrchestratorState:
        return await self._shielded(self._stop())

    async def _stop(self) -> OrchestratorState:
        async with self.gate.exclusive():
            await self.supervisor.stop()
            self._launch = None
            self.state = OrchestratorState(
                mode=RouterMode(),
                server_config=self.settings.router_config(),
                halted="stopped by operator",
            )
            return self.state

    async def _on_process_exit(self, handle: ProcessHandle, code: int) -> None:
        """Record an unexpected exit; a crash is never relaunched by requests."""
        async with self.gate.exclusive():
            state = self.state
            if state.process is None or state.process.pid != handle.pid:
                return
            self._launch = None
            halted = f"process exited with code {code}" if code != 0 else None
            if code != 0 and isinstance(state.mode, SingleMode):
                logger.error(
                    f"Single-mode process for {state.mode.preset.id} exited with "
                    f"code {code}, reverting to router mode"
                )
                self.state = OrchestratorState(
                    mode=RouterMode(),
                    server_config=self.settings.router_config(),
                    halted=halted,
                )
            else:
                if halted:
                    logger.error(f"Router process exited with code {code}")
                self.state = replace(state, process=None, halted=halted)

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    async def status(self) -> dict[str, Any]:
        state = self.state
        running = state.process is not None
        preset = state.active_preset
        return {
            "mode": state.mode.name,
            "active_preset": preset.id if preset else None,
            "running": running,
            "healthy": await self.supervisor.is_healthy() if running else False,
            "pid": state.process.pid if running else None,
            "halted": state.halted,
            "process_state": self.supervisor.state.value,
            "last_exit_code": self.supervisor.last_exit_code,
            "server_config": state.server_config.model_dump(),
            "active_requests": self.gate.active_requests,
            "transition_active": self.gate.transition_active,
        }

    async def process_models(self) -> list[dict]:
        """Models the running process reports, or [] when it is not reachable."""
        if self.state.process is None:
            return []
        try:
            response = await self.client.get(f"{self.runtime.llama_url}/models", timeout=10.0)
            response.raise_for_status()
            return response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Cannot list process models: {e!r}")
            return []

    def _preset_status(self, preset: Preset, upstream: dict[str, str]) -> str:
        state = self.state
        if isinstance(state.mode, SingleMode):
            if state.mode.preset.id == preset.id and state.process is not None:
                return "loaded"
            return "available"
        value = upstream.get(self.registry.upstream_model(preset))
        return value if value in ("loaded", "loading") else "available"

    async def list_models(self) -> dict[str, Any]:
        process_models = await self.process_models()
        upstream = {
            m.get("id"): (m.get("status") or {}).get("value") for m in process_models
        }
        presets = [
            {
                **preset.model_dump(mode="json"),
                "upstream_model": self.registry.upstream_model(preset),
                "status": self._preset_status(preset, upstream),
            }
            for preset in self.registry.presets().values()
        ]
        local = [
            {
                "name": model.name,
                "path": str(model.path),
                "size": model.size,
                "split": model.is_split,
                "incomplete": model.incomplete,
            }
            for model in scan_local_models(self.runtime.models_dir)
        ]
        return {"presets": presets, "local": local, "loaded": process_models}

    async def describe_model(self, model_id: str) -> dict[str, Any]:
        """OpenAI model object for a preset id or a model the process reports."""
        process_models = await self.process_models()
        upstream = {m.get("id"): m for m in process_models}

        preset = self.registry.presets().get(model_id)
        if preset is not None:
            statuses = {
                key: (m.get("status") or {}).get("value") for key, m in upstream.items()
            }
            return {
                "id": preset.id,
                "object": "model",
                "owned_by": "llama-orchestrator",
                "name": preset.name,
                "upstream_model": self.registry.upstream_model(preset),
                "n_ctx": preset.context or self.settings.context_size,
                "status": self._preset_status(preset, statuses),
            }

        model = upstream.get(model_id)
        if model is None:
            raise ModelNotFoundError(model_id)
        args = (model.get("status") or {}).get("args") or []
        n_ctx = None
        if "--ctx-size" in args:
            index = args.index("--ctx-size")
            if index + 1 < len(args) and str(args[index + 1]).isdigit():
                n_ctx = int(args[index + 1])
        return {
            "id": model_id,
            "object": "model",
            "owned_by": model.get("owned_by", "llamacpp"),
            "name": model_id,
            "upstream_model": model_id,
            "n_ctx": n_ctx or self.settings.context_size,
            "status": (model.get("status") or {}).get("value", "unknown"),
        }

    # ─────────────────────────────────────────────────────────────────
    # Load / unload in router mode
    # ─────────────────────────────────────────────────────────────────

    async def load_model(self, model_id: str) -> dict[str, Any]:
        resolved = self.registry.resolve(model_id)
        await self.ensure_serving(resolved)
        if isinstance(self.state.mode, SingleMode):
            return {"model": model_id, "status": "loaded", "changed": False}

        upstream = {m.get("id"): (m.get("status") or {}).get("value")
                    for m in await self.process_models()}
        if upstream.get(resolved.upstream_model) in ("loaded", "loading"):
            return {"model": model_id, "status": "loaded", "changed": False}

        response = await self._post_models("load", resolved.upstream_model)
        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Loading {model_id} failed ({response.status_code}): {response.text}"
            )
        logger.info(f"Loaded {resolved.upstream_model} for {model_id}")
        return {"model": model_id, "status": "loaded", "changed": True}

    async def unload_model(self, model_id: str) -> dict[str, Any]:
        resolved = self.registry.resolve(model_id)
        state = self.state
        if state.process is None:
            return {"model": model_id, "status": "unloaded", "changed": False}

        if isinstance(state.mode, SingleMode):
            if resolved.preset is not None and resolved.preset.id == state.mode.preset.id:
                await self.stop_server()
                return {"model": model_id, "status": "unloaded", "changed": True}
            return {"model": model_id, "status": "unloaded", "changed": False}

        response = await self._post_models("unload", resolved.upstream_model)
        if response.status_code == 404:
            # Not loaded, or already evicted by the process.
            return {"model": model_id, "status": "unloaded", "changed": False}
        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Unloading {model_id} failed ({response.status_code}): {response.text}"
            )
        logger.info(f"Unloaded {resolved.upstream_model}")
        return {"model": model_id, "status": "unloaded", "changed": True}

    async def _post_models(self, action: str, upstream_model: str) -> httpx.Response:
        try:
            return await self.client.post(
                f"{self.runtime.llama_url}/models/{action}",
                json={"model": upstream_model},
                timeout=UPSTREAM_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(
                f"Cannot {action} {upstream_model}: {e!r}"
            ) from e

    # ─────────────────────────────────────────────────────────────────
    # Settings and presets
    # ─────────────────────────────────────────────────────────────────

    def update_settings(self, changes: dict[str, Any]) -> tuple[OrchestratorSettings, bool]:
        """Validate and persist settings; report whether a router restart is due."""
        settings = OrchestratorSettings.model_validate(
            {**self.settings.model_dump(), **changes}
        )
        self.store.document.settings = settings
        self.store.save()
        state = self.state
        restart_required = (
            state.process is not None
            and isinstance(state.mode, RouterMode)
            and state.server_config != settings.router_config()
        )
        logger.info(f"Settings updated (restart required: {restart_required})")
        return settings, restart_required

    def create_preset(self, data: dict[str, Any]) -> Preset:
        return self.registry.create(data)

    def update_preset(self, preset_id: str, changes: dict[str, Any]) -> Preset:
        return self.registry.update(preset_id, changes)

    def delete_preset(self, preset_id: str) -> None:
        active = self.state.active_preset
        if active is not None and active.id == preset_id:
            raise PresetInUseError(preset_id)
        self.registry.delete(preset_id)

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    async def startup(self) -> None:
        self.store.load()
        self.state = OrchestratorState(
            mode=RouterMode(), server_config=self.settings.router_config()
        )
        # Leftover process from a previous run holding the port.
        await self.supervisor.stop()
        created = self.registry.sync_local_models()
        if created:
            logger.info(f"Created {len(created)} preset(s) for new local models")
        if self.settings.auto_start:
            try:
                await self.start_router()
            except TransitionError as e:
                logger.error(f"Auto-start failed: {e}")

    async def shutdown(self) -> None:
        """Stop the process; the interpreter exits hard if this overruns."""
        with ShutdownWatchdog(ceiling=self.runtime.shutdown_ceiling):
            logger.info("Shutting down")
            await self.supervisor.stop()
            self.state = replace(self.state, process=None)
            if self._owns_client:
                await self.client.aclose()
