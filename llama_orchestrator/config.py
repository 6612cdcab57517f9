"""Configuration models — launch parameters, presets, and orchestrator settings."""

import json
import shlex
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EXTRA_SWITCHES = "--jinja"

ReasoningEffort = Literal["low", "medium", "high"]


class ServerConfig(BaseModel):
    """Parameters the running inference process was launched with.

    Immutable snapshot: every (re)launch produces a new instance instead of
    mutating the old one, so readers never observe a half-updated config.
    """

    model_config = ConfigDict(frozen=True)

    context: int = 8192
    gpu_layers: int = 99
    flash_attn: bool = False
    models_max: int = 2
    reasoning_format: Optional[str] = None
    extra_switches: str = DEFAULT_EXTRA_SWITCHES


class PresetConfig(BaseModel):
    """Sampling defaults and launch switches carried by a preset."""

    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = 0.7
    top_p: Optional[float] = 1.0
    top_k: Optional[int] = 20
    min_p: Optional[float] = 0.0
    chat_template_kwargs: dict[str, Any] = {}
    reasoning_format: Optional[str] = None
    extra_switches: str = DEFAULT_EXTRA_SWITCHES
    gpu_layers: Optional[int] = None
    flash_attn: Optional[bool] = None

    @field_validator("chat_template_kwargs", mode="before")
    @classmethod
    def _parse_kwargs(cls, value):
        # Older configs store the kwargs as a JSON string.
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("reasoning_format", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        return value or None


class Preset(BaseModel):
    """Named bundle of model source plus launch and sampling configuration."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(pattern=r"^[a-z0-9][a-z0-9._-]*$")
    name: str
    description: str = ""
    model_path: Optional[str] = None
    hf_repo: Optional[str] = None
    context: int = Field(default=0, ge=0)
    config: PresetConfig = PresetConfig()
    builtin: bool = False
    auto_generated: bool = False
    created_at: Optional[str] = None

    @model_validator(mode="after")
    def _require_source(self):
        if not self.model_path and not self.hf_repo:
            raise ValueError("Preset needs either model_path or hf_repo")
        return self

    @property
    def model_source(self) -> str:
        """Repository reference wins when both sources are present."""
        return self.hf_repo or self.model_path


class OrchestratorSettings(BaseModel):
    """Persisted, user-editable settings for router-mode launches."""

    model_config = ConfigDict(validate_assignment=True)

    context_size: int = Field(default=8192, ge=512, le=262144)
    models_max: int = Field(default=2, ge=1, le=10)
    gpu_layers: int = Field(default=99, ge=0, le=999)
    flash_attn: bool = False
    no_warmup: bool = False
    auto_start: bool = True
    default_reasoning_effort: Optional[ReasoningEffort] = None
    model_reasoning_effort: dict[str, ReasoningEffort] = {}

    def router_config(self) -> ServerConfig:
        """The ServerConfig a router-mode launch with these settings gets."""
        switches = [DEFAULT_EXTRA_SWITCHES, "--no-mmap"]
        if self.no_warmup:
            switches.append("--no-warmup")
        if self.flash_attn:
            switches.append("--flash-attn")
        return ServerConfig(
            context=self.context_size,
            gpu_layers=self.gpu_layers,
            flash_attn=self.flash_attn,
            models_max=self.models_max,
            reasoning_format=None,
            extra_switches=" ".join(switches),
        )


class RuntimeSettings(BaseSettings):
    """Process-level settings read from the environment at startup."""

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )

    models_dir: Path = Path("~/models")
    llama_host: str = "127.0.0.1"
    llama_port: int = 8080
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    config_path: Path = Path("config.json")
    container_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DISTROBOX_CONTAINER", "container_name"),
    )
    distrobox_bin: str = "distrobox"
    llama_server_bin: str = "llama-server"
    process_name: str = "llama-server"
    startup_timeout: float = 60.0
    health_poll_interval: float = 0.5
    stop_grace_period: float = 1.0
    shutdown_ceiling: float = 10.0
    drain_timeout: float = 30.0
    context_poll_interval: float = 5.0
    log_level: str = "INFO"

    @field_validator("models_dir", mode="after")
    @classmethod
    def _expand_home(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def llama_url(self) -> str:
        return f"http://{self.llama_host}:{self.llama_port}"


def parse_switches(switches: Optional[str]) -> dict[str, Optional[str]]:
    """Split a launch-switch string into {flag: value-or-None}."""
    tokens = shlex.split(switches or "")
    result: dict[str, Optional[str]] = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if _is_flag(token):
            value = None
            if i + 1 < len(tokens) and not _is_flag(tokens[i + 1]):
                value = tokens[i + 1]
                i += 1
            result[token] = value
        i += 1
    return result


def _is_flag(token: str) -> bool:
    if not token.startswith("-"):
        return False
    try:
        float(token)
    except ValueError:
        return True
    return False
