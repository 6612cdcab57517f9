"""llama-orchestrator — Model lifecycle orchestration for a llama-server process.

Public API:
    Orchestrator      — owns the server state and performs every mode transition
    RequestRouter     — resolves, makes servable, and forwards inference requests
    PresetRegistry    — preset resolution, compatibility, and launch parameters
    ProcessSupervisor — lifecycle of the inference process
    RecoveryEngine    — bounded recovery from upstream failures
    ContextMonitor    — per-slot context utilization sampling
    TransitionGate    — request slots plus exclusive transitions
    create_app        — FastAPI app factory
"""

from llama_orchestrator.api import create_app
from llama_orchestrator.gate import TransitionGate
from llama_orchestrator.monitor import ContextMonitor
from llama_orchestrator.orchestrator import Orchestrator
from llama_orchestrator.proxy import RequestRouter
from llama_orchestrator.recovery import RecoveryEngine
from llama_orchestrator.registry import PresetRegistry
from llama_orchestrator.supervisor import ProcessSupervisor

__all__ = [
    "Orchestrator",
    "RequestRouter",
    "PresetRegistry",
    "ProcessSupervisor",
    "RecoveryEngine",
    "ContextMonitor",
    "TransitionGate",
    "create_app",
]
