"""Orchestrator state — server mode as a tagged union plus the live process handle."""

import time
from dataclasses import dataclass, field
from typing import ClassVar, Optional, Union

from llama_orchestrator.config import Preset, ServerConfig


@dataclass(frozen=True)
class RouterMode:
    """Multiple models, loaded on demand, evicted by the process itself."""

    name: ClassVar[str] = "router"

    @property
    def preset(self) -> None:
        return None


@dataclass(frozen=True)
class SingleMode:
    """Exactly one model, launched with preset-specific switches."""

    preset: Preset
    name: ClassVar[str] = "single"


ServerMode = Union[RouterMode, SingleMode]


@dataclass(frozen=True)
class ProcessHandle:
    """A launched inference process."""

    pid: int
    argv: tuple[str, ...]
    server_config: ServerConfig
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class OrchestratorState:
    """Snapshot of what is running and why.

    Replaced as a whole on every transition; the active preset is derived
    from the mode so it cannot disagree with it.
    """

    mode: ServerMode
    server_config: ServerConfig
    process: Optional[ProcessHandle] = None
    # Why the process is down when only an operator may bring it back.
    halted: Optional[str] = None

    @property
    def active_preset(self) -> Optional[Preset]:
        return self.mode.preset

    def describe(self) -> str:
        if isinstance(self.mode, SingleMode):
            return f"single({self.mode.preset.id})"
        return "router"
