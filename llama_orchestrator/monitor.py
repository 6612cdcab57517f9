"""ContextMonitor — per-slot context utilization of the loaded models."""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

import httpx

from llama_orchestrator.config import RuntimeSettings
from llama_orchestrator.state import OrchestratorState, SingleMode

logger = logging.getLogger(__name__)

SLOTS_TIMEOUT = 2.0


def _percent(used: int, total: int) -> float:
    return round(used / total * 100, 1) if total > 0 else 0.0


@dataclass
class ModelContext:
    id: str
    port: int
    slots: int
    total_context: int
    used_context: int

    @property
    def usage(self) -> float:
        return _percent(self.used_context, self.total_context)


@dataclass
class ContextSample:
    per_model: list[ModelContext] = field(default_factory=list)

    @property
    def total_context(self) -> int:
        return sum(m.total_context for m in self.per_model)

    @property
    def used_context(self) -> int:
        return sum(m.used_context for m in self.per_model)

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_model": [{**asdict(m), "usage": m.usage} for m in self.per_model],
            "aggregate": {
                "total_context": self.total_context,
                "used_context": self.used_context,
                "usage": _percent(self.used_context, self.total_context),
            },
        }


def _worker_port(model: dict) -> Optional[int]:
    args = (model.get("status") or {}).get("args") or []
    try:
        return int(args[args.index("--port") + 1])
    except (ValueError, IndexError):
        return None


class ContextMonitor:
    """Polls worker slots independently of request traffic."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        runtime: RuntimeSettings,
        snapshot: Callable[[], OrchestratorState],
    ):
        self.client = client
        self.runtime = runtime
        self.snapshot = snapshot
        self.latest: Optional[ContextSample] = None

    async def sample(self) -> ContextSample:
        """One sampling pass; unreachable workers are skipped."""
        state = self.snapshot()
        if state.process is None:
            return ContextSample()

        if isinstance(state.mode, SingleMode):
            workers = [(state.mode.preset.id, self.runtime.llama_port)]
        else:
            workers = await self._loaded_workers()

        sample = ContextSample()
        for model_id, port in workers:
            stats = await self._read_slots(model_id, port)
            if stats is not None:
                sample.per_model.append(stats)
        return sample

    async def _loaded_workers(self) -> list[tuple[str, int]]:
        try:
            response = await self.client.get(
                f"{self.runtime.llama_url}/models", timeout=SLOTS_TIMEOUT
            )
            response.raise_for_status()
            models = response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Cannot list models for context stats: {e!r}")
            return []

        workers = []
        for model in models:
            if (model.get("status") or {}).get("value") != "loaded":
                continue
            port = _worker_port(model)
            if port:
                workers.append((model["id"], port))
        return workers

    async def _read_slots(self, model_id: str, port: int) -> Optional[ModelContext]:
        url = f"http://{self.runtime.llama_host}:{port}/slots"
        try:
            response = await self.client.get(url, timeout=SLOTS_TIMEOUT)
            response.raise_for_status()
            slots = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Skipping {model_id} this cycle, slots unreachable: {e!r}")
            return None

        total = used = 0
        for slot in slots:
            total += slot.get("n_ctx") or 0
            for token in slot.get("next_token") or []:
                used += token.get("n_decoded") or 0
        return ModelContext(
            id=model_id, port=port, slots=len(slots), total_context=total, used_context=used
        )

    async def run(self, interval: Optional[float] = None) -> None:
        """Poll forever, keeping the newest sample in ``latest``."""
        interval = interval or self.runtime.context_poll_interval
        while True:
            try:
                self.latest = await self.sample()
            except Exception as e:
                logger.error(f"Context sampling failed: {e}", exc_info=True)
            await asyncio.sleep(interval)
