"""HTTP surface — OpenAI/Anthropic-compatible inference routes plus management API."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from llama_orchestrator.config import RuntimeSettings
from llama_orchestrator.errors import (
    ConfigError,
    InvalidRequestError,
    ModelNotFoundError,
    OrchestratorError,
    PresetConflictError,
    PresetInUseError,
    PresetNotFoundError,
    PresetReadOnlyError,
    ServerHaltedError,
    TransitionError,
    UpstreamUnavailableError,
)
from llama_orchestrator.orchestrator import Orchestrator
from llama_orchestrator.proxy import PROXIED_ENDPOINTS, ProxyResult, RequestRouter

logger = logging.getLogger(__name__)

# exception -> (status, error type, error code)
ERROR_RESPONSES = {
    InvalidRequestError: (400, "invalid_request_error", "invalid_request"),
    ModelNotFoundError: (404, "invalid_request_error", "model_not_found"),
    PresetNotFoundError: (404, "invalid_request_error", "preset_not_found"),
    PresetReadOnlyError: (403, "invalid_request_error", "preset_read_only"),
    PresetConflictError: (409, "invalid_request_error", "preset_exists"),
    PresetInUseError: (409, "invalid_request_error", "preset_in_use"),
    ServerHaltedError: (503, "server_error", "server_stopped"),
    TransitionError: (503, "server_error", "restart_failed"),
    UpstreamUnavailableError: (502, "server_error", "upstream_unavailable"),
    ConfigError: (500, "server_error", "config_error"),
}

STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
HALTED_RETRY_AFTER = "30"


def error_response(
    status: int,
    message: str,
    error_type: str,
    code: str,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": {"message": message, "type": error_type, "code": code}},
        headers=headers,
    )


def _model_id(body: dict[str, Any]) -> str:
    model_id = body.get("model")
    if not isinstance(model_id, str) or not model_id:
        raise InvalidRequestError("'model' must be a non-empty string")
    return model_id


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise InvalidRequestError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def _streaming_response(result: ProxyResult) -> StreamingResponse:
    async def body():
        try:
            async for chunk in result.aiter_raw():
                yield chunk
        finally:
            await result.aclose()

    # On client disconnect the relay is cancelled and the background
    # close tears down the upstream request.
    return StreamingResponse(
        body(),
        status_code=result.status_code,
        media_type=result.media_type,
        headers=STREAM_HEADERS,
        background=BackgroundTask(result.aclose),
    )


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    runtime: Optional[RuntimeSettings] = None,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """Build the FastAPI app around an orchestrator.

    With ``manage_lifecycle`` the lifespan runs orchestrator startup (leftover
    cleanup, preset sync, auto-start) and shutdown under the watchdog.
    """
    orchestrator = orchestrator or Orchestrator(runtime=runtime)
    router = RequestRouter(orchestrator, orchestrator.recovery)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await orchestrator.startup()
        monitor_task = asyncio.create_task(orchestrator.monitor.run())
        logger.info("Orchestrator API ready")
        try:
            yield
        finally:
            monitor_task.cancel()
            with suppress(asyncio.CancelledError):
                await monitor_task
            if manage_lifecycle:
                await orchestrator.shutdown()

    app = FastAPI(title="llama-orchestrator", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.router = router

    # ─────────────────────────────────────────────────────────────────
    # Error handling
    # ─────────────────────────────────────────────────────────────────

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        for exc_type, (status, error_type, code) in ERROR_RESPONSES.items():
            if isinstance(exc, exc_type):
                headers = None
                if isinstance(exc, ServerHaltedError):
                    headers = {"Retry-After": HALTED_RETRY_AFTER}
                return error_response(status, str(exc), error_type, code, headers)
        logger.error(f"Unhandled orchestrator error: {exc}", exc_info=exc)
        return error_response(500, str(exc), "server_error", "internal_error")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return error_response(400, str(exc), "invalid_request_error", "validation_error")

    # ─────────────────────────────────────────────────────────────────
    # Inference
    # ─────────────────────────────────────────────────────────────────

    async def proxy(endpoint: str, request: Request) -> Response:
        body = await _json_body(request)
        result = await router.proxy(endpoint, body)
        if body.get("stream") and result.status_code < 400:
            return _streaming_response(result)
        content = await result.aread()
        return Response(
            content=content, status_code=result.status_code, media_type=result.media_type
        )

    def proxy_route(endpoint: str):
        async def route(request: Request) -> Response:
            return await proxy(endpoint, request)

        return route

    for endpoint in PROXIED_ENDPOINTS:
        app.add_api_route(
            endpoint,
            proxy_route(endpoint),
            methods=["POST"],
            name=endpoint.strip("/").replace("/", "_"),
        )

    @app.get("/v1/models")
    async def openai_models():
        presets = orchestrator.registry.presets().values()
        return {
            "object": "list",
            "data": [
                {
                    "id": preset.id,
                    "object": "model",
                    "owned_by": "llama-orchestrator",
                    "name": preset.name,
                }
                for preset in presets
            ],
        }

    @app.get("/v1/models/{model_id:path}")
    async def openai_model(model_id: str):
        return await orchestrator.describe_model(model_id)

    # ─────────────────────────────────────────────────────────────────
    # Management
    # ─────────────────────────────────────────────────────────────────

    @app.get("/api/status")
    async def status():
        return await orchestrator.status()

    @app.get("/api/models")
    async def models():
        return await orchestrator.list_models()

    @app.post("/api/models/load")
    async def load_model(request: Request):
        return await orchestrator.load_model(_model_id(await _json_body(request)))

    @app.post("/api/models/unload")
    async def unload_model(request: Request):
        return await orchestrator.unload_model(_model_id(await _json_body(request)))

    @app.get("/api/presets")
    async def list_presets():
        active = orchestrator.state.active_preset
        return {
            "presets": [
                preset.model_dump(mode="json")
                for preset in orchestrator.registry.presets().values()
            ],
            "active": active.id if active else None,
        }

    @app.post("/api/presets", status_code=201)
    async def create_preset(request: Request):
        preset = orchestrator.create_preset(await _json_body(request))
        return preset.model_dump(mode="json")

    @app.put("/api/presets/{preset_id}")
    async def update_preset(preset_id: str, request: Request):
        preset = orchestrator.update_preset(preset_id, await _json_body(request))
        return preset.model_dump(mode="json")

    @app.delete("/api/presets/{preset_id}")
    async def delete_preset(preset_id: str):
        orchestrator.delete_preset(preset_id)
        return {"deleted": preset_id}

    @app.post("/api/presets/{preset_id}/activate")
    async def activate_preset(preset_id: str):
        await orchestrator.activate_preset(preset_id)
        return await orchestrator.status()

    @app.post("/api/server/start")
    async def start_server():
        await orchestrator.start_router()
        return await orchestrator.status()

    @app.post("/api/server/stop")
    async def stop_server():
        await orchestrator.stop_server()
        return await orchestrator.status()

    @app.get("/api/settings")
    async def get_settings():
        return orchestrator.settings.model_dump(mode="json")

    @app.post("/api/settings")
    async def update_settings(request: Request):
        settings, restart_required = orchestrator.update_settings(
            await _json_body(request)
        )
        return {
            "settings": settings.model_dump(mode="json"),
            "restart_required": restart_required,
        }

    @app.get("/api/context")
    async def context():
        sample = orchestrator.monitor.latest
        if sample is None:
            sample = await orchestrator.monitor.sample()
        return sample.to_dict()

    return app
