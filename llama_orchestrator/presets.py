"""Built-in presets, preset naming, and local model discovery."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from llama_orchestrator.config import Preset, PresetConfig

logger = logging.getLogger(__name__)

BUILTIN_PRESETS: dict[str, Preset] = {
    "gpt120": Preset(
        id="gpt120",
        name="GPT-OSS 120B",
        description="Large reasoning model with high effort mode",
        hf_repo="Unsloth/gpt-oss-120b-GGUF:Q5_K_M",
        context=131072,
        config=PresetConfig(
            chat_template_kwargs={"reasoning_effort": "high"},
            reasoning_format="deepseek",
            temperature=1.0,
            top_p=1.0,
            top_k=0,
            min_p=0.0,
        ),
        builtin=True,
    ),
    "qwen3": Preset(
        id="qwen3",
        name="Qwen3 Coder 30B-A3B",
        description="Fast MoE coding model with 30B total / 3B active params",
        hf_repo="Unsloth/Qwen3-Coder-30B-A3B-Instruct-GGUF:Q5_K_M",
        context=0,
        config=PresetConfig(reasoning_format="deepseek", temperature=0.7, top_k=20),
        builtin=True,
    ),
    "qwen2.5": Preset(
        id="qwen2.5",
        name="Qwen 2.5 Coder 32B",
        description="Dense 32B coding model, high quality",
        hf_repo="Qwen/Qwen2.5-Coder-32B-Instruct-GGUF:Q5_K_M",
        context=0,
        config=PresetConfig(reasoning_format="deepseek", temperature=0.7, top_k=20),
        builtin=True,
    ),
}

# Longer, more specific patterns first.
QUANTIZATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"-IQ\d_[A-Z]+$",
        r"-IQ\d[A-Z]+$",
        r"-Q\d_K_[A-Z]+$",
        r"-Q\d_K$",
        r"-Q\d_[A-Z]+$",
        r"-Q\d[A-Z]+$",
        r"-Q\d$",
        r"-F\d\d$",
        r"-F\d$",
        r"-FP\d\d$",
        r"-BF16$",
        r"-GGUF$",
    )
]

SPLIT_PART = re.compile(r"-(\d{5})-of-(\d{5})\.gguf$", re.IGNORECASE)


@dataclass
class LocalModel:
    """A .gguf model (or complete set of split parts) under the models root."""

    name: str
    path: Path
    size: int
    is_split: bool = False
    part_count: int = 1
    parts_found: int = 1

    @property
    def incomplete(self) -> bool:
        return self.parts_found < self.part_count


@dataclass
class _SplitGroup:
    name: str
    total_parts: int
    parts: list[tuple[int, Path, int]] = field(default_factory=list)


def _base_name(source: str) -> str:
    name = source
    if "/" in source:
        name = source.rsplit("/", 1)[-1]
        name = name.split(":", 1)[0]
    return re.sub(r"\.gguf$", "", name, flags=re.IGNORECASE)


def generate_preset_id(source: str) -> str:
    """Preset id from a model filename or repository reference.

    "Qwen2.5-Coder-32B-Instruct-Q5_K_M.gguf" -> "qwen2.5-coder-32b-instruct"
    "Unsloth/Qwen3-Coder-30B-A3B-Instruct-GGUF:Q5_K_M" -> "qwen3-coder-30b-a3b-instruct"
    """
    name = _base_name(source)
    name = re.sub(r"-\d{5}-of-\d{5}$", "", name, flags=re.IGNORECASE)
    for pattern in QUANTIZATION_PATTERNS:
        name = pattern.sub("", name)
    name = name.lower()
    name = re.sub(r"[_\s]+", "-", name)
    name = re.sub(r"[^a-z0-9._-]", "", name)
    name = re.sub(r"--+", "-", name)
    return name.strip("-.") or "model"


def display_name(source: str, include_quantization: bool = False) -> str:
    """Human-readable model name, optionally suffixed with its quantization."""
    name = _base_name(source)
    name = re.sub(r"-\d{5}-of-\d{5}$", "", name, flags=re.IGNORECASE)
    quant = ""
    for pattern in QUANTIZATION_PATTERNS:
        match = pattern.search(name)
        if match:
            if include_quantization and not quant:
                quant = " " + match.group(0).lstrip("-")
            name = name[: match.start()]
    name = name.replace("_", " ").rstrip("-")
    return name + quant


def unique_preset_id(base_id: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    if base_id not in taken:
        return base_id
    suffix = 2
    while f"{base_id}-{suffix}" in taken:
        suffix += 1
    return f"{base_id}-{suffix}"


def default_preset_for(
    source: str,
    taken: Iterable[str],
    model_path: Optional[str] = None,
    hf_repo: Optional[str] = None,
) -> Preset:
    """Auto-generated preset with stock sampling defaults for a model."""
    return Preset(
        id=unique_preset_id(generate_preset_id(source), taken),
        name=display_name(source, include_quantization=True),
        description=f"Auto-generated preset for {display_name(source)}",
        model_path=model_path,
        hf_repo=hf_repo,
        context=0,
        config=PresetConfig(),
        auto_generated=True,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def scan_local_models(models_dir: Path) -> list[LocalModel]:
    """Recursively list .gguf models, combining split parts into one entry."""
    if not models_dir.is_dir():
        return []

    models: list[LocalModel] = []
    splits: dict[str, _SplitGroup] = {}

    for path in sorted(models_dir.rglob("*.gguf")):
        if not path.is_file():
            continue
        relative = path.relative_to(models_dir).as_posix()
        size = path.stat().st_size
        match = SPLIT_PART.search(path.name)
        if match is None:
            models.append(LocalModel(name=relative, path=path, size=size))
            continue
        base = SPLIT_PART.sub(".gguf", relative)
        group = splits.setdefault(base, _SplitGroup(base, int(match.group(2))))
        group.parts.append((int(match.group(1)), path, size))

    for group in splits.values():
        group.parts.sort(key=lambda part: part[0])
        models.append(
            LocalModel(
                name=group.name,
                path=group.parts[0][1],
                size=sum(part[2] for part in group.parts),
                is_split=True,
                part_count=group.total_parts,
                parts_found=len(group.parts),
            )
        )

    return sorted(models, key=lambda m: m.name)


def is_projector(model: LocalModel) -> bool:
    """Multimodal projector files are auxiliary, not chat models."""
    lowered = model.path.name.lower()
    return lowered.startswith("mmproj-") or lowered.startswith("mmproj_")
