"""PresetRegistry — model resolution, compatibility, and launch parameters.

Resolves a client-supplied model identifier into a preset or a local model
file, decides whether the running process can serve it as-is (hot-swap) or
needs a restart, and builds the llama-server command line for each mode.
"""

import fnmatch
import json
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from llama_orchestrator.config import (
    DEFAULT_EXTRA_SWITCHES,
    OrchestratorSettings,
    Preset,
    RuntimeSettings,
    ServerConfig,
    parse_switches,
)
from llama_orchestrator.errors import (
    ModelNotFoundError,
    PresetConflictError,
    PresetNotFoundError,
    PresetReadOnlyError,
)
from llama_orchestrator.presets import (
    BUILTIN_PRESETS,
    SPLIT_PART,
    default_preset_for,
    is_projector,
    scan_local_models,
)
from llama_orchestrator.state import OrchestratorState, SingleMode
from llama_orchestrator.store import ConfigStore
from llama_orchestrator.supervisor import LaunchSpec

logger = logging.getLogger(__name__)

# Switches whose value is fixed at launch; a preset asking for a different
# value cannot be served without relaunching the process.
RESTART_REQUIRING_SWITCHES = frozenset(
    {
        "-c",
        "--ctx-size",
        "-ngl",
        "--gpu-layers",
        "--n-gpu-layers",
        "-fa",
        "--flash-attn",
        "--reasoning-format",
        "--jinja",
        "--no-jinja",
        "--chat-template",
        "--chat-template-file",
        "--mmproj",
        "-ctk",
        "--cache-type-k",
        "-ctv",
        "--cache-type-v",
        "-np",
        "--parallel",
        "--no-mmap",
        "--mlock",
        "-b",
        "--batch-size",
        "-ub",
        "--ubatch-size",
        "--rope-scaling",
        "-ot",
        "--override-tensor",
    }
)

SAMPLING_FIELDS = (
    ("temperature", "temperature"),
    ("top_p", "top_p"),
    ("top_k", "top_k"),
    ("min_p", "min_p"),
)


@dataclass(frozen=True)
class ResolvedModel:
    """Outcome of resolving a client model identifier."""

    requested: str
    upstream_model: str
    preset: Optional[Preset] = None


class PresetRegistry:
    """Built-in and custom presets plus the rules for serving them."""

    def __init__(self, store: ConfigStore, runtime: RuntimeSettings):
        self.store = store
        self.runtime = runtime

    @property
    def models_dir(self) -> Path:
        return self.runtime.models_dir

    # ─────────────────────────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────────────────────────

    def presets(self) -> dict[str, Preset]:
        """Custom presets plus built-ins; built-ins win on id collisions."""
        return {**self.store.presets, **BUILTIN_PRESETS}

    def get(self, preset_id: str) -> Preset:
        preset = self.presets().get(preset_id)
        if preset is None:
            raise PresetNotFoundError(preset_id)
        return preset

    def resolve(self, model_id: Optional[str]) -> ResolvedModel:
        """Preset id first, then a model file under the models root."""
        if not model_id:
            raise ModelNotFoundError(model_id or "")

        presets = self.presets()
        preset = presets.get(model_id)
        if preset is not None:
            logger.info(f"Resolved '{model_id}' to preset {preset.name}")
            return ResolvedModel(model_id, self.upstream_model(preset), preset=preset)

        path = self._local_file(model_id)
        if path is not None:
            logger.warning(
                f"DEPRECATED: model file path '{model_id}' used directly. "
                f"Create a preset for this model."
            )
            return ResolvedModel(model_id, self._upstream_for_path(path))

        for preset in presets.values():
            if not preset.model_path:
                continue
            filename = Path(preset.model_path).name
            if model_id == filename or model_id.endswith("/" + filename):
                logger.info(f"Resolved file '{model_id}' to preset {preset.id}")
                return ResolvedModel(
                    model_id, self.upstream_model(preset), preset=preset
                )

        logger.info(f"Model '{model_id}' not found")
        raise ModelNotFoundError(model_id)

    def _local_file(self, model_id: str) -> Optional[Path]:
        candidate = Path(model_id)
        if not candidate.is_absolute():
            candidate = self.models_dir / candidate
        try:
            candidate = candidate.resolve()
            candidate.relative_to(self.models_dir.resolve())
        except (OSError, ValueError):
            return None
        if candidate.suffix.lower() != ".gguf" or not candidate.is_file():
            return None
        return candidate

    def _upstream_for_path(self, path: Path) -> str:
        # Router mode names models after their folder under --models-dir.
        try:
            relative = path.resolve().relative_to(self.models_dir.resolve())
        except (OSError, ValueError):
            return path.name
        return relative.parts[0]

    def upstream_model(self, preset: Preset) -> str:
        """Model field the inference process expects for a preset."""
        if preset.hf_repo:
            return preset.hf_repo
        return self._upstream_for_path(Path(preset.model_path))

    # ─────────────────────────────────────────────────────────────────
    # Compatibility
    # ─────────────────────────────────────────────────────────────────

    def incompatibilities(self, preset: Preset, current: ServerConfig) -> list[str]:
        """Restart-requiring differences between a preset and a running config.

        Sampling parameters and chat-template kwargs are never listed: they
        are injected per request.
        """
        reasons = []
        cfg = preset.config

        if preset.context and preset.context > current.context:
            reasons.append(f"context {preset.context} > provisioned {current.context}")
        if cfg.gpu_layers is not None and cfg.gpu_layers != current.gpu_layers:
            reasons.append(f"gpu layers {cfg.gpu_layers} != {current.gpu_layers}")
        if cfg.flash_attn is not None and cfg.flash_attn != current.flash_attn:
            reasons.append(f"flash attention {cfg.flash_attn} != {current.flash_attn}")
        if cfg.reasoning_format and cfg.reasoning_format != current.reasoning_format:
            reasons.append(
                f"reasoning format '{cfg.reasoning_format}' != "
                f"'{current.reasoning_format or 'none'}'"
            )

        wanted = parse_switches(cfg.extra_switches)
        running = parse_switches(current.extra_switches)
        for flag in sorted(RESTART_REQUIRING_SWITCHES & wanted.keys()):
            if flag not in running or running[flag] != wanted[flag]:
                reasons.append(f"switch {flag} not active")

        return reasons

    def is_compatible(self, preset: Optional[Preset], current: ServerConfig) -> bool:
        if preset is None:
            return True
        return not self.incompatibilities(preset, current)

    def serves(self, state: OrchestratorState, preset: Preset) -> bool:
        """Whether the running process can take a request for this preset."""
        if isinstance(state.mode, SingleMode):
            if state.mode.preset.model_source != preset.model_source:
                return False
        return self.is_compatible(preset, state.server_config)

    # ─────────────────────────────────────────────────────────────────
    # Request rewriting
    # ─────────────────────────────────────────────────────────────────

    def apply_preset(self, body: dict[str, Any], preset: Optional[Preset]) -> dict[str, Any]:
        """Inject preset sampling defaults; client-supplied values win."""
        if preset is None:
            return body
        result = dict(body)
        for field_name, body_key in SAMPLING_FIELDS:
            value = getattr(preset.config, field_name)
            if value is not None and body_key not in result:
                result[body_key] = value
        if preset.config.chat_template_kwargs:
            result["chat_template_kwargs"] = {
                **preset.config.chat_template_kwargs,
                **(result.get("chat_template_kwargs") or {}),
            }
        return result

    def inject_reasoning_effort(
        self, body: dict[str, Any], settings: OrchestratorSettings
    ) -> dict[str, Any]:
        """Route reasoning effort into chat_template_kwargs."""
        kwargs = body.get("chat_template_kwargs") or {}

        if body.get("reasoning_effort"):
            result = dict(body)
            effort = result.pop("reasoning_effort")
            result["chat_template_kwargs"] = {**kwargs, "reasoning_effort": effort}
            return result

        if kwargs.get("reasoning_effort"):
            return body

        model = str(body.get("model") or "")
        effort = None
        for pattern, value in settings.model_reasoning_effort.items():
            if fnmatch.fnmatchcase(model, pattern):
                effort = value
                break
        effort = effort or settings.default_reasoning_effort
        if not effort:
            return body
        return {**body, "chat_template_kwargs": {**kwargs, "reasoning_effort": effort}}

    # ─────────────────────────────────────────────────────────────────
    # Launch parameters
    # ─────────────────────────────────────────────────────────────────

    def router_launch(self, settings: OrchestratorSettings) -> LaunchSpec:
        rt = self.runtime
        server_config = settings.router_config()
        argv = [
            rt.llama_server_bin,
            "--models-dir", str(self.models_dir),
            "--models-max", str(server_config.models_max),
            "--ctx-size", str(server_config.context),
            "-ngl", str(server_config.gpu_layers),
            "--host", rt.llama_host,
            "--port", str(rt.llama_port),
            *shlex.split(server_config.extra_switches),
        ]
        return LaunchSpec(
            argv=tuple(argv),
            server_config=server_config,
            env={"LLAMA_CACHE": str(self.models_dir)},
            label="router",
        )

    def preset_launch(self, preset: Preset, settings: OrchestratorSettings) -> LaunchSpec:
        rt = self.runtime
        cfg = preset.config
        gpu_layers = cfg.gpu_layers if cfg.gpu_layers is not None else settings.gpu_layers
        flash_attn = cfg.flash_attn if cfg.flash_attn is not None else settings.flash_attn
        switches = _effective_switches(cfg.extra_switches, flash_attn, cfg.reasoning_format)

        argv = [
            rt.llama_server_bin,
            "--host", rt.llama_host,
            "--port", str(rt.llama_port),
            "-np", "1",
            "-ngl", str(gpu_layers),
            "--models-dir", str(self.models_dir),
        ]
        if preset.hf_repo:
            argv += ["-hf", preset.hf_repo]
        else:
            argv += ["--model", preset.model_path]
        if preset.context:
            argv += ["--ctx-size", str(preset.context)]
        argv += shlex.split(switches)
        if cfg.chat_template_kwargs:
            argv += ["--chat-template-kwargs", json.dumps(cfg.chat_template_kwargs)]

        server_config = ServerConfig(
            context=preset.context or settings.context_size,
            gpu_layers=gpu_layers,
            flash_attn=flash_attn,
            models_max=1,
            reasoning_format=cfg.reasoning_format,
            extra_switches=switches,
        )
        return LaunchSpec(
            argv=tuple(argv),
            server_config=server_config,
            env={"LLAMA_CACHE": str(self.models_dir)},
            label=f"preset {preset.id}",
        )

    # ─────────────────────────────────────────────────────────────────
    # Custom preset CRUD
    # ─────────────────────────────────────────────────────────────────

    def create(self, data: dict[str, Any]) -> Preset:
        preset = Preset.model_validate({**data, "builtin": False})
        if preset.id in self.presets():
            raise PresetConflictError(preset.id)
        if preset.model_path and not preset.hf_repo:
            full = self.locate_model_file(preset.model_path)
            preset = preset.model_copy(update={"model_path": str(full)})
        elif preset.hf_repo and preset.model_path:
            preset = preset.model_copy(update={"model_path": None})
        self.store.presets[preset.id] = preset
        self.store.save()
        logger.info(f"Created preset {preset.id} for {preset.model_source}")
        return preset

    def update(self, preset_id: str, changes: dict[str, Any]) -> Preset:
        """Merge changes into a custom preset; a new ``id`` renames it."""
        if preset_id in BUILTIN_PRESETS:
            raise PresetReadOnlyError(preset_id)
        existing = self.store.presets.get(preset_id)
        if existing is None:
            raise PresetNotFoundError(preset_id)

        merged = existing.model_dump()
        changes = dict(changes)
        config_changes = changes.pop("config", None) or {}
        merged.update(changes)
        merged["config"] = {**merged["config"], **config_changes}
        merged["builtin"] = False
        if changes.get("model_path"):
            merged["model_path"] = str(self.locate_model_file(changes["model_path"]))

        new_id = merged.get("id") or preset_id
        if new_id != preset_id and new_id in self.presets():
            raise PresetConflictError(new_id)
        preset = Preset.model_validate(merged)

        if new_id != preset_id:
            del self.store.presets[preset_id]
            logger.info(f"Renamed preset {preset_id} -> {new_id}")
        self.store.presets[new_id] = preset
        self.store.save()
        logger.info(f"Updated preset {new_id}")
        return preset

    def delete(self, preset_id: str) -> None:
        if preset_id in BUILTIN_PRESETS:
            raise PresetReadOnlyError(preset_id)
        if preset_id not in self.store.presets:
            raise PresetNotFoundError(preset_id)
        del self.store.presets[preset_id]
        self.store.save()
        logger.info(f"Deleted preset {preset_id}")

    def locate_model_file(self, model_path: str) -> Path:
        """Full path of a model file, accepting a split model's base name."""
        full = Path(model_path)
        if not full.is_absolute():
            full = self.models_dir / full
        if full.is_file():
            return full
        stem = full.name[: -len(".gguf")] if full.name.lower().endswith(".gguf") else full.name
        if full.parent.is_dir():
            for candidate in sorted(full.parent.iterdir()):
                match = SPLIT_PART.search(candidate.name)
                if match and int(match.group(1)) == 1 and candidate.name.startswith(stem):
                    return candidate
        raise ModelNotFoundError(model_path)

    def sync_local_models(self) -> list[Preset]:
        """Create a preset for every complete local model that lacks one."""
        known = {p.model_path for p in self.presets().values() if p.model_path}
        created = []
        for model in scan_local_models(self.models_dir):
            if model.incomplete:
                continue
            if is_projector(model):
                logger.debug(f"Skipping projector file {model.name}")
                continue
            if str(model.path) in known:
                continue
            try:
                preset = default_preset_for(
                    model.name, self.presets().keys(), model_path=str(model.path)
                )
            except ValidationError as e:
                logger.warning(f"Cannot create preset for {model.name}: {e}")
                continue
            self.store.presets[preset.id] = preset
            known.add(str(model.path))
            created.append(preset)
            logger.info(f"Auto-created preset {preset.id} for {model.name}")
        if created:
            self.store.save()
        return created


def _effective_switches(
    extra_switches: Optional[str], flash_attn: bool, reasoning_format: Optional[str]
) -> str:
    """Preset switches plus the ones every single-mode launch carries."""
    switches = extra_switches or DEFAULT_EXTRA_SWITCHES
    parsed = parse_switches(switches)
    if "--jinja" not in parsed:
        switches = f"--jinja {switches}"
    if "--no-mmap" not in parsed:
        switches += " --no-mmap"
    if flash_attn and "--flash-attn" not in parsed and "-fa" not in parsed:
        switches += " --flash-attn"
    if reasoning_format and "--reasoning-format" not in parsed:
        switches += f" --reasoning-format {reasoning_format}"
    return switches
