"""Tests for Orchestrator and RequestRouter — transitions, restarts, exit handling."""

import asyncio
import json

import httpx
import pytest
import respx
from pydantic import ValidationError

from llama_orchestrator.errors import (
    ModelNotFoundError,
    PresetInUseError,
    PresetNotFoundError,
    ServerHaltedError,
    TransitionError,
)
from llama_orchestrator.proxy import RequestRouter
from llama_orchestrator.state import RouterMode, SingleMode

from conftest import LLAMA_URL, make_model_file

CHAT = f"{LLAMA_URL}/v1/chat/completions"
QWEN3_REPO = "Unsloth/Qwen3-Coder-30B-A3B-Instruct-GGUF:Q5_K_M"
MESSAGES = [{"role": "user", "content": "hi"}]


@pytest.fixture
def small_preset(orchestrator, models_dir):
    """A custom preset the router can serve without a restart."""
    make_model_file(models_dir, "small/Small-Q4_K_M.gguf")
    return orchestrator.create_preset(
        {"id": "small", "name": "Small", "model_path": "small/Small-Q4_K_M.gguf"}
    )


@pytest.fixture
def router(orchestrator):
    return RequestRouter(orchestrator, orchestrator.recovery)


def chat_ok():
    return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})


# ─────────────────────────────────────────────────────────────────────
# Planning
# ─────────────────────────────────────────────────────────────────────


class TestPlanning:
    def test_router_compatible_preset_targets_router(self, orchestrator, small_preset):
        resolved = orchestrator.registry.resolve("small")
        assert orchestrator.plan(resolved) == RouterMode()

    def test_incompatible_preset_targets_single_mode(self, orchestrator):
        resolved = orchestrator.registry.resolve("qwen3")
        target = orchestrator.plan(resolved)
        assert isinstance(target, SingleMode)
        assert target.preset.id == "qwen3"

    def test_model_file_targets_router(self, orchestrator, models_dir):
        make_model_file(models_dir, "raw/Raw-Q4_K_M.gguf")
        resolved = orchestrator.registry.resolve("raw/Raw-Q4_K_M.gguf")
        assert orchestrator.plan(resolved) == RouterMode()

    @pytest.mark.asyncio
    async def test_running_router_serves_compatible_preset(self, orchestrator, small_preset):
        await orchestrator.start_router()
        assert orchestrator.is_serving(orchestrator.registry.resolve("small"))


# ─────────────────────────────────────────────────────────────────────
# Request-triggered transitions
# ─────────────────────────────────────────────────────────────────────


class TestRequestTransitions:
    @pytest.mark.asyncio
    @respx.mock
    async def test_concurrent_requests_share_one_transition(
        self, orchestrator, router, supervisor
    ):
        supervisor.start_delay = 0.05
        respx.post(CHAT).mock(return_value=chat_ok())

        results = await asyncio.gather(
            *[
                router.proxy("/v1/chat/completions", {"model": "qwen3", "messages": MESSAGES})
                for _ in range(5)
            ]
        )
        for result in results:
            await result.aread()

        assert len(supervisor.launches) == 1
        assert orchestrator.state.active_preset.id == "qwen3"
        assert orchestrator.gate.active_requests == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_larger_context_preset_restarts_process(
        self, orchestrator, router, supervisor
    ):
        chat = respx.post(CHAT).mock(return_value=chat_ok())
        orchestrator.create_preset(
            {"id": "qwen3-large", "name": "Qwen3 large", "hf_repo": QWEN3_REPO, "context": 32768}
        )
        await orchestrator.activate_preset("qwen3")

        result = await router.proxy(
            "/v1/chat/completions", {"model": "qwen3-large", "messages": MESSAGES}
        )
        await result.aread()

        assert result.status_code == 200
        assert len(supervisor.launches) == 2
        argv = list(supervisor.launches[-1].argv)
        assert argv[argv.index("--ctx-size") + 1] == "32768"
        assert orchestrator.state.active_preset.id == "qwen3-large"

        sent = json.loads(chat.calls[0].request.content)
        assert sent["model"] == QWEN3_REPO
        assert sent["temperature"] == 0.7

    @pytest.mark.asyncio
    @respx.mock
    async def test_compatible_request_does_not_restart(
        self, orchestrator, router, supervisor, small_preset
    ):
        chat = respx.post(CHAT).mock(return_value=chat_ok())
        await orchestrator.start_router()

        result = await router.proxy("/v1/chat/completions", {"model": "small", "messages": MESSAGES})
        await result.aread()

        assert len(supervisor.launches) == 1
        assert json.loads(chat.calls[0].request.content)["model"] == "small"

    @pytest.mark.asyncio
    @respx.mock
    async def test_transition_waits_for_in_flight_request(
        self, orchestrator, router, supervisor, small_preset
    ):
        respx.post(CHAT).mock(return_value=chat_ok())
        in_flight = await router.proxy(
            "/v1/chat/completions", {"model": "small", "messages": MESSAGES}
        )

        activation = asyncio.create_task(orchestrator.activate_preset("qwen3"))
        await asyncio.sleep(0.05)
        assert not activation.done()
        assert len(supervisor.launches) == 1

        await in_flight.aclose()
        await asyncio.wait_for(activation, timeout=1.0)

        assert supervisor.launches[-1].label == "preset qwen3"

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_restart_restores_previous_mode(
        self, orchestrator, router, supervisor
    ):
        await orchestrator.start_router()
        supervisor.fail_labels.add("preset qwen3")

        with pytest.raises(TransitionError):
            await router.proxy("/v1/chat/completions", {"model": "qwen3", "messages": MESSAGES})

        assert [launch.label for launch in supervisor.launches] == ["router", "preset qwen3", "router"]
        assert isinstance(orchestrator.state.mode, RouterMode)
        assert orchestrator.state.process is not None
        assert orchestrator.gate.active_requests == 0

    @pytest.mark.asyncio
    async def test_failed_start_without_previous_process_leaves_router_stopped(
        self, orchestrator, supervisor
    ):
        supervisor.fail_labels.add("preset qwen3")

        with pytest.raises(TransitionError):
            await orchestrator.activate_preset("qwen3")

        assert isinstance(orchestrator.state.mode, RouterMode)
        assert orchestrator.state.process is None

    @pytest.mark.asyncio
    async def test_unknown_model_is_not_found(self, router, supervisor):
        with pytest.raises(ModelNotFoundError):
            await router.proxy("/v1/chat/completions", {"model": "ghost", "messages": MESSAGES})
        assert supervisor.launches == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_upstream_error_releases_slot(self, orchestrator, router, small_preset):
        respx.post(CHAT).mock(return_value=httpx.Response(400, json={"error": "bad"}))

        result = await router.proxy("/v1/chat/completions", {"model": "small", "messages": MESSAGES})
        body = await result.aread()

        assert result.status_code == 400
        assert json.loads(body) == {"error": "bad"}
        assert orchestrator.gate.active_requests == 0


# ─────────────────────────────────────────────────────────────────────
# Unexpected exits
# ─────────────────────────────────────────────────────────────────────


class TestProcessExit:
    @pytest.mark.asyncio
    async def test_single_mode_crash_reverts_to_router(self, orchestrator, supervisor):
        await orchestrator.activate_preset("qwen3")

        await supervisor.crash(1)

        status = await orchestrator.status()
        assert status["mode"] == "router"
        assert status["active_preset"] is None
        assert status["running"] is False
        assert status["last_exit_code"] == 1

    @pytest.mark.asyncio
    async def test_router_exit_clears_process(self, orchestrator, supervisor):
        await orchestrator.start_router()

        await supervisor.crash(0)

        assert isinstance(orchestrator.state.mode, RouterMode)
        assert orchestrator.state.process is None

    @pytest.mark.asyncio
    async def test_stale_exit_is_ignored(self, orchestrator, supervisor):
        await orchestrator.start_router()
        old_handle = orchestrator.state.process
        await orchestrator.activate_preset("qwen3")

        await orchestrator._on_process_exit(old_handle, 1)

        assert orchestrator.state.active_preset.id == "qwen3"
        assert orchestrator.state.process is not None


# ─────────────────────────────────────────────────────────────────────
# Halted server: only an operator brings it back
# ─────────────────────────────────────────────────────────────────────


class TestHaltedServer:
    @pytest.mark.asyncio
    async def test_request_after_single_mode_crash_does_not_relaunch(
        self, orchestrator, router, supervisor, small_preset
    ):
        await orchestrator.activate_preset("qwen3")
        await supervisor.crash(1)

        with pytest.raises(ServerHaltedError) as excinfo:
            await router.proxy("/v1/chat/completions", {"model": "small", "messages": MESSAGES})

        assert "exited with code 1" in str(excinfo.value)
        assert len(supervisor.launches) == 1
        assert orchestrator.gate.active_requests == 0

    @pytest.mark.asyncio
    async def test_request_after_operator_stop_does_not_relaunch(
        self, orchestrator, router, supervisor, small_preset
    ):
        await orchestrator.start_router()
        await orchestrator.stop_server()

        with pytest.raises(ServerHaltedError):
            await router.proxy("/v1/chat/completions", {"model": "small", "messages": MESSAGES})
        with pytest.raises(ServerHaltedError):
            await router.proxy("/v1/chat/completions", {"model": "qwen3", "messages": MESSAGES})

        assert len(supervisor.launches) == 1
        assert (await orchestrator.status())["halted"] == "stopped by operator"

    @pytest.mark.asyncio
    async def test_router_crash_also_halts(self, orchestrator, router, supervisor, small_preset):
        await orchestrator.start_router()
        await supervisor.crash(139)

        with pytest.raises(ServerHaltedError):
            await router.proxy("/v1/chat/completions", {"model": "small", "messages": MESSAGES})
        assert len(supervisor.launches) == 1

    @pytest.mark.asyncio
    async def test_load_model_is_refused_while_halted(self, orchestrator, supervisor, small_preset):
        await orchestrator.start_router()
        await orchestrator.stop_server()

        with pytest.raises(ServerHaltedError):
            await orchestrator.load_model("small")
        assert len(supervisor.launches) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_explicit_start_clears_halt(
        self, orchestrator, router, supervisor, small_preset
    ):
        respx.post(CHAT).mock(return_value=chat_ok())
        await orchestrator.activate_preset("qwen3")
        await supervisor.crash(1)

        await orchestrator.start_router()
        result = await router.proxy(
            "/v1/chat/completions", {"model": "small", "messages": MESSAGES}
        )
        await result.aread()

        assert result.status_code == 200
        assert orchestrator.state.halted is None
        assert [launch.label for launch in supervisor.launches] == ["preset qwen3", "router"]

    @pytest.mark.asyncio
    async def test_failed_explicit_start_keeps_halt(self, orchestrator, router, supervisor):
        await orchestrator.start_router()
        await orchestrator.stop_server()
        supervisor.fail_labels.add("preset qwen3")

        with pytest.raises(TransitionError):
            await orchestrator.activate_preset("qwen3")

        assert orchestrator.state.halted == "stopped by operator"
        with pytest.raises(ServerHaltedError):
            await router.proxy("/v1/chat/completions", {"model": "qwen3", "messages": MESSAGES})

    @pytest.mark.asyncio
    async def test_clean_router_exit_is_relaunched_on_demand(
        self, orchestrator, router, supervisor, small_preset
    ):
        await orchestrator.start_router()
        await supervisor.crash(0)

        await orchestrator.ensure_serving(orchestrator.registry.resolve("small"))

        assert len(supervisor.launches) == 2


# ─────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_transition(self, orchestrator, supervisor):
        supervisor.start_delay = 0.1
        caller = asyncio.create_task(orchestrator.activate_preset("qwen3"))
        await asyncio.sleep(0.02)

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.sleep(0.2)

        assert orchestrator.state.active_preset.id == "qwen3"
        assert orchestrator.state.process is not None

    @pytest.mark.asyncio
    async def test_failure_of_abandoned_transition_is_logged(
        self, orchestrator, supervisor, caplog
    ):
        supervisor.start_delay = 0.1
        supervisor.fail_labels.add("preset qwen3")
        caller = asyncio.create_task(orchestrator.activate_preset("qwen3"))
        await asyncio.sleep(0.02)

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.sleep(0.2)

        assert "Transition finished with an error" in caplog.text
        assert "never retrieved" not in caplog.text
        assert orchestrator.state.process is None


# ─────────────────────────────────────────────────────────────────────
# Management operations
# ─────────────────────────────────────────────────────────────────────


class TestManagement:
    @pytest.mark.asyncio
    async def test_start_router_is_idempotent(self, orchestrator, supervisor):
        await orchestrator.start_router()
        await orchestrator.start_router()
        assert len(supervisor.launches) == 1

    @pytest.mark.asyncio
    async def test_activate_same_preset_is_noop(self, orchestrator, supervisor):
        await orchestrator.activate_preset("qwen3")
        await orchestrator.activate_preset("qwen3")
        assert len(supervisor.launches) == 1

    @pytest.mark.asyncio
    async def test_activate_unknown_preset(self, orchestrator):
        with pytest.raises(PresetNotFoundError):
            await orchestrator.activate_preset("ghost")

    @pytest.mark.asyncio
    async def test_stop_server(self, orchestrator, supervisor):
        await orchestrator.activate_preset("qwen3")
        state = await orchestrator.stop_server()
        assert state.process is None
        assert state.active_preset is None

    @pytest.mark.asyncio
    async def test_settings_change_reports_restart(self, orchestrator):
        await orchestrator.start_router()

        settings, restart = orchestrator.update_settings({"context_size": 16384})

        assert settings.context_size == 16384
        assert restart is True
        assert orchestrator.store.path.exists()

    def test_sampling_settings_do_not_need_restart(self, orchestrator):
        _, restart = orchestrator.update_settings({"default_reasoning_effort": "low"})
        assert restart is False

    def test_invalid_settings_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.update_settings({"models_max": 0})
        assert orchestrator.settings.models_max == 2

    @pytest.mark.asyncio
    async def test_active_preset_cannot_be_deleted(self, orchestrator, small_preset):
        await orchestrator.activate_preset("small")
        with pytest.raises(PresetInUseError):
            orchestrator.delete_preset("small")

    @pytest.mark.asyncio
    @respx.mock
    async def test_load_model_in_router_mode(self, orchestrator, small_preset):
        await orchestrator.start_router()
        respx.get(f"{LLAMA_URL}/models").mock(
            return_value=httpx.Response(200, json={"data": []})
        )
        load = respx.post(f"{LLAMA_URL}/models/load").mock(
            return_value=httpx.Response(200, json={"success": True})
        )

        outcome = await orchestrator.load_model("small")

        assert outcome["changed"] is True
        assert json.loads(load.calls[0].request.content) == {"model": "small"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_load_already_loaded_model_is_noop(self, orchestrator, small_preset):
        await orchestrator.start_router()
        respx.get(f"{LLAMA_URL}/models").mock(
            return_value=httpx.Response(
                200, json={"data": [{"id": "small", "status": {"value": "loaded"}}]}
            )
        )

        outcome = await orchestrator.load_model("small")

        assert outcome["changed"] is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_unload_of_evicted_model_succeeds(self, orchestrator, small_preset):
        await orchestrator.start_router()
        respx.post(f"{LLAMA_URL}/models/unload").mock(return_value=httpx.Response(404))

        outcome = await orchestrator.unload_model("small")

        assert outcome == {"model": "small", "status": "unloaded", "changed": False}

    @pytest.mark.asyncio
    async def test_unload_active_single_model_stops_process(self, orchestrator):
        await orchestrator.activate_preset("qwen3")
        outcome = await orchestrator.unload_model("qwen3")
        assert outcome["changed"] is True
        assert orchestrator.state.process is None


# ─────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_startup_syncs_models_and_auto_starts(
        self, orchestrator, supervisor, models_dir
    ):
        make_model_file(models_dir, "mistral/Mistral-7B-Instruct-Q4_K_M.gguf")

        await orchestrator.startup()

        assert supervisor.stops >= 1
        assert "mistral-7b-instruct" in orchestrator.store.presets
        assert [launch.label for launch in supervisor.launches] == ["router"]

    @pytest.mark.asyncio
    async def test_startup_without_auto_start(self, orchestrator, supervisor, store):
        store.document.settings.auto_start = False
        store.save()

        await orchestrator.startup()

        assert supervisor.launches == []

    @pytest.mark.asyncio
    async def test_failed_auto_start_is_not_fatal(self, orchestrator, supervisor):
        supervisor.fail_labels.add("router")

        await orchestrator.startup()

        assert orchestrator.state.process is None

    @pytest.mark.asyncio
    async def test_shutdown_stops_process(self, orchestrator, supervisor):
        await orchestrator.start_router()
        await orchestrator.shutdown()
        assert supervisor.handle is None
        assert orchestrator.state.process is None
