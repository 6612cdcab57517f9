"""Failure recovery for proxied requests.

Three bounded remediations, applied per client request:

* memory exhaustion: the process could not load the requested model; evict
  every other loaded model and resubmit once.
* template incompatibility: the chat template rejected an assistant tool
  call carrying both content and reasoning; merge the two and resubmit once.
* transport failure: the process is unreachable (usually mid-restart);
  retry the same call after 1s, 2s and 4s.

HTTP error responses are never retried by the transport path, and once a
remediation is exhausted the upstream response is returned untouched.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from llama_orchestrator.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

# Compatibility contract with llama-server's error bodies. Keep every
# signature here so a format change upstream touches one place.
MODEL_LOAD_SIGNATURE = "failed to load"
TEMPLATE_SIGNATURE = "Cannot pass both content and thinking"

REASONING_FIELDS = ("thinking", "reasoning_content")
BACKOFF_SCHEDULE = (1.0, 2.0, 4.0)


class FailureKind(str, Enum):
    MODEL_LOAD_FAILURE = "model_load_failure"
    TEMPLATE_INCOMPATIBLE = "template_incompatible"
    OTHER = "other"


def classify_failure(status_code: int, body: Optional[str]) -> FailureKind:
    """Map an upstream error response to a failure kind."""
    if not isinstance(body, str):
        return FailureKind.OTHER
    if status_code == 500 and MODEL_LOAD_SIGNATURE in body:
        return FailureKind.MODEL_LOAD_FAILURE
    if TEMPLATE_SIGNATURE in body:
        return FailureKind.TEMPLATE_INCOMPATIBLE
    return FailureKind.OTHER


def sanitize_messages(messages: Any) -> tuple[Any, int]:
    """Merge content into the reasoning field of assistant tool-call messages.

    The template checks key existence, so ``content`` is dropped even when
    empty. Returns the new message list and how many messages changed;
    applying it to its own output changes nothing.
    """
    if not isinstance(messages, list):
        return messages, 0
    changed = 0
    result = []
    for message in messages:
        if (
            isinstance(message, dict)
            and message.get("role") == "assistant"
            and "tool_calls" in message
            and "content" in message
        ):
            field = next((f for f in REASONING_FIELDS if f in message), None)
            if field is not None:
                rest = {k: v for k, v in message.items() if k not in ("content", field)}
                content = message.get("content")
                reasoning = message.get(field) or ""
                if content:
                    reasoning = f"{reasoning}\n{content}" if reasoning else str(content)
                rest[field] = reasoning
                result.append(rest)
                changed += 1
                continue
        result.append(message)
    return result, changed


@dataclass
class ProxyAttempt:
    """Transient record of one client request's trip upstream."""

    endpoint: str
    requested_model: str
    upstream_model: str
    body: dict[str, Any]
    memory_recovered: bool = False
    sanitized: bool = False
    transport_retries: int = 0
    upstream_calls: int = 0


class RecoveryEngine:
    """Sends proxy attempts upstream and repairs recoverable failures."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        backoff: tuple[float, ...] = BACKOFF_SCHEDULE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.base_url = base_url
        self.backoff = backoff
        self._sleep = sleep

    async def send(self, attempt: ProxyAttempt) -> httpx.Response:
        """One upstream call, retried only on transport-level failures.

        The response is opened in streaming mode; the caller owns closing it.
        """
        url = f"{self.base_url}{attempt.endpoint}"
        delays = list(self.backoff)
        while True:
            attempt.upstream_calls += 1
            request = self.client.build_request("POST", url, json=attempt.body)
            try:
                return await self.client.send(request, stream=True)
            except httpx.TransportError as e:
                if not delays:
                    logger.error(
                        f"[{attempt.endpoint}] upstream unreachable after "
                        f"{attempt.transport_retries} retries: {e!r}"
                    )
                    raise UpstreamUnavailableError(
                        f"Failed to reach inference process: {e!r}"
                    ) from e
                delay = delays.pop(0)
                attempt.transport_retries += 1
                logger.warning(
                    f"[{attempt.endpoint}] connection failed "
                    f"(retry {attempt.transport_retries}/{len(self.backoff)} "
                    f"in {delay:g}s): {e!r}"
                )
                await self._sleep(delay)

    async def execute(self, attempt: ProxyAttempt) -> httpx.Response:
        """Send the attempt, applying each remediation at most once.

        Returns the final upstream response. On success its body is still
        unread; on failure it has been read so it can be forwarded as-is.
        """
        while True:
            response = await self.send(attempt)
            if response.status_code < 400:
                return response

            await response.aread()
            kind = classify_failure(response.status_code, response.text)

            if kind is FailureKind.MODEL_LOAD_FAILURE and not attempt.memory_recovered:
                attempt.memory_recovered = True
                logger.warning(
                    f"[{attempt.endpoint}] model load failure for "
                    f"{attempt.requested_model}, freeing memory"
                )
                if await self.unload_other_models(attempt.upstream_model):
                    continue

            elif kind is FailureKind.TEMPLATE_INCOMPATIBLE and not attempt.sanitized:
                attempt.sanitized = True
                messages, changed = sanitize_messages(attempt.body.get("messages"))
                logger.info(
                    f"[{attempt.endpoint}] template rejected messages, "
                    f"sanitized {changed} tool-call message(s)"
                )
                if changed:
                    attempt.body = {**attempt.body, "messages": messages}
                    continue

            logger.error(
                f"[{attempt.endpoint}] error {response.status_code} for "
                f"{attempt.requested_model}: {response.text[:500]}"
            )
            return response

    async def loaded_models(self) -> list[str]:
        """Ids the process reports as loaded."""
        response = await self.client.get(f"{self.base_url}/models", timeout=10.0)
        response.raise_for_status()
        data = response.json()
        return [
            m["id"]
            for m in data.get("data", [])
            if (m.get("status") or {}).get("value") == "loaded"
        ]

    async def unload_model(self, model_id: str) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/models/unload", json={"model": model_id}, timeout=30.0
        )

    async def unload_other_models(self, keep_model: str) -> list[str]:
        """Evict every loaded model except ``keep_model``; returns the evicted ids."""
        try:
            loaded = await self.loaded_models()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Cannot list loaded models: {e!r}")
            return []

        evicted = []
        for model_id in loaded:
            if model_id == keep_model:
                continue
            logger.warning(f"Evicting {model_id} to make room for {keep_model}")
            try:
                response = await self.unload_model(model_id)
            except httpx.HTTPError as e:
                logger.error(f"Failed to unload {model_id}: {e!r}")
                continue
            if response.is_success:
                evicted.append(model_id)
            else:
                logger.error(f"Failed to unload {model_id}: {response.text}")
        if not evicted:
            logger.info(f"No other models to evict for {keep_model}")
        return evicted
