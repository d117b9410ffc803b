"""Worker-side runtime: one evaluated script, its platform context and dispatcher."""

from __future__ import annotations

import logging
from typing import Any

from config.settings import (
    HANDLER_POLL_BACKOFF,
    HANDLER_POLL_CEILING_SECONDS,
    HANDLER_POLL_INTERVAL_SECONDS,
    HTTP_TIMEOUT_SECONDS,
)
from sandbox.bridge import CapabilityBridge
from sandbox.context import PlatformContext
from sandbox.dispatch import Dispatcher, DispatchOutcome
from sandbox.errors import ScriptInitError
from sandbox.restricted import build_script_globals, compile_script

logger = logging.getLogger(__name__)


def format_syntax_error(exc: SyntaxError) -> str:
    # compile_restricted reports every policy violation as a tuple of lines.
    detail = exc.args[0] if exc.args else exc.msg
    if isinstance(detail, (list, tuple)):
        return "; ".join(str(line) for line in detail)
    return str(detail or exc)


class ScriptRuntime:
    def __init__(
        self,
        *,
        script_name: str = "Custom Source",
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
        poll_interval: float = HANDLER_POLL_INTERVAL_SECONDS,
        poll_ceiling: float = HANDLER_POLL_CEILING_SECONDS,
        poll_backoff: float = HANDLER_POLL_BACKOFF,
        bridge: CapabilityBridge | None = None,
    ) -> None:
        self.platform = PlatformContext(
            bridge or CapabilityBridge(timeout_seconds=http_timeout),
            script_name=script_name,
        )
        self.namespace = build_script_globals(self.platform)
        self.dispatcher = Dispatcher(
            self.namespace,
            self.platform,
            poll_interval=poll_interval,
            poll_ceiling=poll_ceiling,
            poll_backoff=poll_backoff,
        )

    def evaluate(self, source: Any) -> None:
        """Compile and run the script body; raise ``ScriptInitError`` on any failure."""
        try:
            code = compile_script(source)
        except SyntaxError as exc:
            raise ScriptInitError(format_syntax_error(exc)) from exc
        except (TypeError, ValueError) as exc:
            raise ScriptInitError(str(exc)) from exc

        try:
            exec(code, self.namespace)
        except Exception as exc:
            raise ScriptInitError(f"{type(exc).__name__}: {exc}") from exc

    def invoke(self, operation: str, platform_id: str, params: dict[str, Any] | None) -> DispatchOutcome:
        return self.dispatcher.invoke(operation, platform_id, params)

    def close(self) -> None:
        cancelled = self.platform.close()
        if cancelled:
            logger.debug("[SANDBOX] cancelled %s pending timer(s)", cancelled)
