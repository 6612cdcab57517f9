"""RequestRouter — resolve, make servable, rewrite, and forward inference requests."""

import logging
from typing import Any, AsyncIterator

import httpx

from llama_orchestrator.errors import InvalidRequestError, TransitionError
from llama_orchestrator.orchestrator import Orchestrator
from llama_orchestrator.recovery import ProxyAttempt, RecoveryEngine

logger = logging.getLogger(__name__)

MAX_SERVE_ROUNDS = 3

PROXIED_ENDPOINTS = (
    "/v1/chat/completions",
    "/v1/completions",
    "/v1/responses",
    "/v1/messages",
    "/v1/embeddings",
)


class ProxyResult:
    """Upstream response plus the request slot that must outlive its body."""

    def __init__(self, response: httpx.Response, release, attempt: ProxyAttempt):
        self.response = response
        self.attempt = attempt
        self._release = release
        self._closed = False

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def media_type(self) -> str:
        return self.response.headers.get("content-type", "application/json")

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        async for chunk in self.response.aiter_raw():
            yield chunk

    async def aread(self) -> bytes:
        try:
            return await self.response.aread()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the upstream response and release the slot; idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.response.aclose()
        finally:
            self._release()


class RequestRouter:
    def __init__(self, orchestrator: Orchestrator, recovery: RecoveryEngine):
        self.orchestrator = orchestrator
        self.recovery = recovery

    async def proxy(self, endpoint: str, body: dict[str, Any]) -> ProxyResult:
        """Forward one client request; the caller must ``aclose()`` the result."""
        orchestrator = self.orchestrator
        gate = orchestrator.gate
        registry = orchestrator.registry
        model_id = body.get("model")
        if not isinstance(model_id, str) or not model_id:
            raise InvalidRequestError("'model' must be a non-empty string")
        resolved = registry.resolve(model_id)

        for _ in range(MAX_SERVE_ROUNDS):
            await orchestrator.ensure_serving(resolved)
            await gate.acquire_request()
            if orchestrator.is_serving(resolved):
                break
            # Another transition replaced the process between the two steps.
            gate.release_request()
        else:
            raise TransitionError(
                f"Could not get {resolved.requested} served after "
                f"{MAX_SERVE_ROUNDS} attempts"
            )

        try:
            # Effort patterns match the name the client asked for.
            rewritten = registry.apply_preset(body, resolved.preset)
            rewritten = registry.inject_reasoning_effort(rewritten, orchestrator.settings)
            rewritten = {**rewritten, "model": resolved.upstream_model}
            attempt = ProxyAttempt(
                endpoint=endpoint,
                requested_model=resolved.requested,
                upstream_model=resolved.upstream_model,
                body=rewritten,
            )
            logger.info(
                f"[{endpoint}] {resolved.requested} -> {resolved.upstream_model} "
                f"({orchestrator.state.describe()})"
            )
            response = await self.recovery.execute(attempt)
        except BaseException:
            gate.release_request()
            raise
        return ProxyResult(response, gate.release_request, attempt)
