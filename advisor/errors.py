from __future__ import annotations
from typing import Any


class AdvisorError(Exception):
    """Base error carrying a stable code and whatever metadata was gathered."""

    code = "ADVISOR_ERROR"

    def __init__(self, message: str, code: str | None = None, metadata: dict | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.metadata: dict[str, Any] = dict(metadata or {})

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "metadata": self.metadata}


class ValidationError(AdvisorError):
    code = "VALIDATION_ERROR"


class ConfigurationError(AdvisorError):
    code = "CONFIGURATION_ERROR"


class BackendError(AdvisorError):
    code = "BACKEND_ERROR"


class BackendUnavailable(BackendError):
    code = "BACKEND_UNAVAILABLE"


class BackendTimeout(BackendError):
    code = "BACKEND_TIMEOUT"


class BackendRateLimited(BackendError):
    code = "BACKEND_RATE_LIMITED"


class AgentNotFound(AdvisorError):
    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class RegistryLoadError(AdvisorError):
    code = "REGISTRY_LOAD_FAILED"


class PlanConstructionError(AdvisorError):
    code = "PLAN_INVALID"


class PlanExhausted(AdvisorError):
    code = "PLAN_EXHAUSTED"

    def __init__(self, message: str, outputs: list | None = None):
        super().__init__(message)
        self.outputs = list(outputs or [])


class SynthesisFailed(AdvisorError):
    code = "SYNTHESIS_FAILED"


class OrchestrationFailed(AdvisorError):
    code = "ORCHESTRATION_FAILED"
