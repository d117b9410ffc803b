"""Isolated execution of untrusted source scripts."""

from sandbox.dispatch import ACTION_NAMES, EXPORT_NAMES, Operation
from sandbox.errors import (
    AggregateResolutionError,
    NetworkError,
    OperationNotSupportedError,
    SandboxError,
    ScriptInitError,
    ScriptRuntimeError,
    ScriptTimeoutError,
)
from sandbox.session import (
    InvocationResult,
    InvocationStatus,
    SandboxSession,
    SessionState,
    validate_script,
)

__all__ = [
    "ACTION_NAMES",
    "EXPORT_NAMES",
    "AggregateResolutionError",
    "InvocationResult",
    "InvocationStatus",
    "NetworkError",
    "Operation",
    "OperationNotSupportedError",
    "SandboxError",
    "SandboxSession",
    "ScriptInitError",
    "ScriptRuntimeError",
    "ScriptTimeoutError",
    "SessionState",
    "validate_script",
]
