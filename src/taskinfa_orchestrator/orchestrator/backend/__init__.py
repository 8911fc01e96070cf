"""Execution agent backend implementations."""

from taskinfa_orchestrator.orchestrator.backend.base import (
    AgentBackend,
    AgentRunRequest,
    AgentRunResult,
)
from taskinfa_orchestrator.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliAgentBackend,
    validate_command_template,
)

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
    "validate_command_template",
]
