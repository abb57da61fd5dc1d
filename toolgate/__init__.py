"""Policy-gated tool calling for conversational models."""

from .report import (
    AgentError,
    CancellationError,
    ConfigError,
    ExecutionError,
    ParseError,
    PolicyDenied,
    ValidationError,
)
from .session import Result, Session

__all__ = [
    "AgentError",
    "CancellationError",
    "ConfigError",
    "ExecutionError",
    "ParseError",
    "PolicyDenied",
    "Result",
    "Session",
    "ValidationError",
]
