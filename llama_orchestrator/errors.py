"""Exception taxonomy for the orchestrator."""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(OrchestratorError):
    """The persisted configuration document could not be read or written."""


class ModelNotFoundError(OrchestratorError):
    """Model identifier matches neither a preset nor a local model file."""

    def __init__(self, model_id: str):
        super().__init__(f"Model not found: {model_id}")
        self.model_id = model_id


class SupervisorError(OrchestratorError):
    """Illegal process lifecycle operation."""


class StartupError(SupervisorError):
    """The inference process failed to start or never became healthy."""

    def __init__(self, message: str, exit_code=None):
        super().__init__(message)
        self.exit_code = exit_code


class TransitionError(OrchestratorError):
    """A mode or preset transition could not be completed."""


class ServerHaltedError(OrchestratorError):
    """The process was stopped or crashed and waits for an explicit start."""

    def __init__(self, reason: str):
        super().__init__(
            f"Inference server is not running ({reason}). "
            "Start the router or activate a preset to resume."
        )
        self.reason = reason


class UpstreamUnavailableError(OrchestratorError):
    """The inference process could not be reached after all retries."""


class PresetNotFoundError(OrchestratorError):
    def __init__(self, preset_id: str):
        super().__init__(f"Preset '{preset_id}' not found")
        self.preset_id = preset_id


class PresetConflictError(OrchestratorError):
    def __init__(self, preset_id: str):
        super().__init__(f"Preset '{preset_id}' already exists")
        self.preset_id = preset_id


class PresetReadOnlyError(OrchestratorError):
    def __init__(self, preset_id: str):
        super().__init__(f"Preset '{preset_id}' is built in and cannot be modified")
        self.preset_id = preset_id


class PresetInUseError(OrchestratorError):
    def __init__(self, preset_id: str):
        super().__init__(
            f"Cannot delete preset '{preset_id}' while it is active. "
            "Switch to router mode or another preset first."
        )
        self.preset_id = preset_id


class InvalidRequestError(OrchestratorError):
    """Malformed client request body."""
