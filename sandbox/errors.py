"""Error taxonomy for sandboxed source scripts and multi-source resolution."""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """Base class for every failure a source script can produce."""

    kind = "sandbox_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.kind


class ScriptInitError(SandboxError):
    """Script text failed to compile or raised while being evaluated."""

    kind = "script_init_error"


class ScriptTimeoutError(SandboxError):
    """Evaluation or invocation exceeded the session deadline."""

    kind = "script_timeout"


class OperationNotSupportedError(SandboxError):
    """Neither a registered handler nor a direct export serves the action."""

    kind = "operation_not_supported"


class ScriptRuntimeError(SandboxError):
    """Script raised, or returned an error payload, during an invocation."""

    kind = "script_runtime_error"


class NetworkError(SandboxError):
    """Outbound request failure, handed to scripts as response data."""

    kind = "network_error"


class AggregateResolutionError(SandboxError):
    """Every enabled source was tried and none produced a valid result."""

    kind = "aggregate_resolution_error"

    def __init__(
        self,
        attempted: int,
        last_error: str | None,
        attempts: list[Any] | None = None,
    ) -> None:
        self.attempted = attempted
        self.last_error = last_error
        self.attempts = list(attempts or [])
        super().__init__(
            f"resolution failed after {attempted} source(s); "
            f"last error: {last_error or 'no result'}"
        )


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        ScriptInitError,
        ScriptTimeoutError,
        OperationNotSupportedError,
        ScriptRuntimeError,
        NetworkError,
    )
}


def error_from_kind(kind: str | None, message: str) -> SandboxError:
    """Rebuild a typed error from a worker's ``kind`` tag."""
    cls = ERROR_KINDS.get(kind or "", ScriptRuntimeError)
    return cls(message)
