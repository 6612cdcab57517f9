"""ConfigStore — the persisted settings + custom presets document."""

import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ValidationError

from llama_orchestrator.config import OrchestratorSettings, Preset
from llama_orchestrator.errors import ConfigError

logger = logging.getLogger(__name__)


class ConfigDocument(BaseModel):
    """Everything the orchestrator persists between runs."""

    settings: OrchestratorSettings = OrchestratorSettings()
    presets: dict[str, Preset] = {}


class ConfigStore:
    """Loads the JSON document at startup and rewrites it on every mutation."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.document = ConfigDocument()

    def load(self) -> ConfigDocument:
        if not self.path.exists():
            logger.info(f"No config at {self.path}, using defaults")
            self.document = ConfigDocument()
            return self.document
        try:
            self.document = ConfigDocument.model_validate_json(
                self.path.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            raise ConfigError(f"Cannot load config {self.path}: {e}") from e
        logger.info(
            f"Loaded config from {self.path} "
            f"({len(self.document.presets)} custom preset(s))"
        )
        return self.document

    def save(self) -> None:
        """Write atomically: temp file in the same directory, then rename."""
        payload = self.document.model_dump_json(indent=2)
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".config-")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self.path)
        except OSError as e:
            raise ConfigError(f"Cannot write config {self.path}: {e}") from e

    @property
    def settings(self) -> OrchestratorSettings:
        return self.document.settings

    @property
    def presets(self) -> dict[str, Preset]:
        return self.document.presets
