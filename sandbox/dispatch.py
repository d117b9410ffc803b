"""Compatibility shim between abstract operations and script calling conventions.

Scripts are written one of two ways:

- handler registration: ``platform.on("request", handler)`` at evaluation time
  (possibly from a timer or request callback), later called with
  ``{"action", "source", "info"}``;
- direct export: a top-level function named in ``EXPORT_NAMES`` called with
  the same mapping.

``Dispatcher.resolve_target`` looks for these explicitly and returns one of
``RegisteredHandler``, ``DirectExport`` or ``NoTarget``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Union

from config.settings import (
    DEFAULT_LIMIT,
    DEFAULT_PAGE,
    DEFAULT_TYPE,
    HANDLER_POLL_BACKOFF,
    HANDLER_POLL_CEILING_SECONDS,
    HANDLER_POLL_INTERVAL_SECONDS,
)
from sandbox.context import PlatformContext
from sandbox.errors import OperationNotSupportedError, ScriptRuntimeError

logger = logging.getLogger(__name__)

_MIN_POLL_INTERVAL_SECONDS = 0.01


class Operation(str, Enum):
    SEARCH = "search"
    RESOLVE_PLAYABLE_URL = "resolve_playable_url"
    RESOLVE_LYRIC = "resolve_lyric"
    RESOLVE_COVER = "resolve_cover"
    RESOLVE_RANKING_LIST = "resolve_ranking_list"
    RESOLVE_RANKING_DETAIL = "resolve_ranking_detail"


# Action identifiers third-party scripts switch on. Bump the version when an
# entry changes; existing scripts depend on these exact strings.
ACTION_TABLE_VERSION = 1
ACTION_NAMES = {
    Operation.SEARCH: "musicSearch",
    Operation.RESOLVE_PLAYABLE_URL: "musicUrl",
    Operation.RESOLVE_LYRIC: "lyric",
    Operation.RESOLVE_COVER: "pic",
    Operation.RESOLVE_RANKING_LIST: "getTopList",
    Operation.RESOLVE_RANKING_DETAIL: "board",
}

EXPORT_NAMES = {
    Operation.SEARCH: "search",
    Operation.RESOLVE_PLAYABLE_URL: "get_music_url",
    Operation.RESOLVE_LYRIC: "get_lyric",
    Operation.RESOLVE_COVER: "get_pic",
    Operation.RESOLVE_RANKING_LIST: "get_top_list",
    Operation.RESOLVE_RANKING_DETAIL: "get_top_list_detail",
}

PARAMETER_DEFAULTS = {
    "page": DEFAULT_PAGE,
    "limit": DEFAULT_LIMIT,
    "type": DEFAULT_TYPE,
}


def apply_parameter_defaults(params: dict[str, Any] | None) -> dict[str, Any]:
    info = dict(params or {})
    for key, value in PARAMETER_DEFAULTS.items():
        if info.get(key) is None:
            info[key] = value
    return info


def build_request(action: str, platform_id: str, params: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "action": action,
        "source": {"id": platform_id, "name": platform_id},
        "info": apply_parameter_defaults(params),
    }


@dataclass(frozen=True)
class RegisteredHandler:
    handler: Callable[..., Any]
    kind = "handler"


@dataclass(frozen=True)
class DirectExport:
    name: str
    function: Callable[..., Any]
    kind = "export"


@dataclass(frozen=True)
class NoTarget:
    kind = "none"


DispatchTarget = Union[RegisteredHandler, DirectExport, NoTarget]


@dataclass
class DispatchOutcome:
    status: str
    payload: Any = None
    message: str | None = None
    error_kind: str | None = None
    target: str | None = None

    @classmethod
    def success(cls, payload: Any, target: str) -> "DispatchOutcome":
        return cls(status="ok", payload=payload, target=target)

    @classmethod
    def not_supported(cls, message: str) -> "DispatchOutcome":
        return cls(
            status="not_supported",
            message=message,
            error_kind=OperationNotSupportedError.kind,
            target=NoTarget.kind,
        )

    @classmethod
    def failure(cls, message: str, target: str | None) -> "DispatchOutcome":
        return cls(status="error", message=message, error_kind=ScriptRuntimeError.kind, target=target)

    def to_message(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "payload": self.payload,
            "message": self.message,
            "error_kind": self.error_kind,
            "target": self.target,
        }


def _settle(result: Any, timeout: float | None) -> Any:
    while isinstance(result, Future):
        result = result.result(timeout=timeout)
    return result


class Dispatcher:
    """Invokes abstract operations against one evaluated script."""

    def __init__(
        self,
        namespace: dict[str, Any],
        platform: PlatformContext,
        *,
        poll_interval: float = HANDLER_POLL_INTERVAL_SECONDS,
        poll_ceiling: float = HANDLER_POLL_CEILING_SECONDS,
        poll_backoff: float = HANDLER_POLL_BACKOFF,
        settle_timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._namespace = namespace
        self._platform = platform
        self.poll_interval = max(_MIN_POLL_INTERVAL_SECONDS, float(poll_interval))
        self.poll_ceiling = max(0.0, float(poll_ceiling))
        self.poll_backoff = max(1.0, float(poll_backoff))
        self.settle_timeout = settle_timeout
        self._sleep = sleep
        self._clock = clock
        self._handler_resolved = False
        self._handler: Callable[..., Any] | None = None

    def wait_for_handler(self) -> Callable[..., Any] | None:
        """Poll the registration slot until a handler appears or the ceiling passes."""
        if self._handler_resolved:
            return self._handler

        started = self._clock()
        interval = self.poll_interval
        handler = self._platform.registered_handler()
        while handler is None:
            elapsed = self._clock() - started
            if elapsed >= self.poll_ceiling:
                break
            self._sleep(min(interval, self.poll_ceiling - elapsed))
            interval *= self.poll_backoff
            handler = self._platform.registered_handler()

        self._handler_resolved = True
        self._handler = handler
        if handler is None:
            logger.debug("[SANDBOX] no request handler after %.2fs", self._clock() - started)
        return handler

    def resolve_target(self, operation: Operation) -> DispatchTarget:
        handler = self.wait_for_handler()
        if handler is not None:
            return RegisteredHandler(handler)
        name = EXPORT_NAMES[operation]
        function = self._namespace.get(name)
        if callable(function):
            return DirectExport(name, function)
        return NoTarget()

    def invoke(self, operation: str, platform_id: str, params: dict[str, Any] | None) -> DispatchOutcome:
        try:
            op = Operation(operation)
        except ValueError:
            return DispatchOutcome.not_supported(f"unknown operation {operation!r}")

        action = ACTION_NAMES[op]
        target = self.resolve_target(op)
        if isinstance(target, NoTarget):
            return DispatchOutcome.not_supported(f"script does not handle action {action!r}")

        request = build_request(action, platform_id, params)
        call = target.handler if isinstance(target, RegisteredHandler) else target.function
        try:
            result = _settle(call(request), self.settle_timeout)
        except Exception as exc:
            logger.info("[SANDBOX] action=%s target=%s raised %s", action, target.kind, type(exc).__name__)
            return DispatchOutcome.failure(f"{type(exc).__name__}: {exc}", target.kind)

        if isinstance(result, dict) and result.get("error"):
            return DispatchOutcome.failure(str(result["error"]), target.kind)
        return DispatchOutcome.success(result, target.kind)
