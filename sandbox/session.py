"""Host side of a sandbox session: one worker process per evaluated script."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from config.settings import (
    HANDLER_POLL_BACKOFF,
    HANDLER_POLL_CEILING_SECONDS,
    HANDLER_POLL_INTERVAL_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    MAX_MESSAGE_BYTES,
    SESSION_TIMEOUT_SECONDS,
)
from sandbox.errors import (
    OperationNotSupportedError,
    SandboxError,
    ScriptInitError,
    ScriptRuntimeError,
    ScriptTimeoutError,
    error_from_kind,
)

logger = logging.getLogger(__name__)

WORKER_MODULE = "sandbox.worker"
_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_CLOSE_GRACE_SECONDS = 1.0


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    EVALUATING = "evaluating"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class InvocationStatus(str, Enum):
    OK = "ok"
    NOT_SUPPORTED = "not_supported"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass
class InvocationResult:
    """Terminal outcome of one invocation; script faults are values here."""

    status: InvocationStatus
    payload: Any = None
    error: SandboxError | None = None
    target: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is InvocationStatus.OK


def _worker_env() -> dict[str, str]:
    env = dict(os.environ)
    existing = env.get("PYTHONPATH")
    root = str(_PROJECT_ROOT)
    env["PYTHONPATH"] = os.pathsep.join([root, existing]) if existing else root
    return env


class SandboxSession:
    """Owns one isolated evaluation of a script, bounded by a session deadline.

    Use ``await SandboxSession.create(script)``; it raises ``ScriptInitError``
    or ``ScriptTimeoutError`` and never returns a session that is not ``READY``.
    ``invoke`` never raises for script faults, it returns an
    ``InvocationResult``. Cancelling an awaiting task kills the worker.
    """

    def __init__(
        self,
        *,
        name: str | None = None,
        timeout: float = SESSION_TIMEOUT_SECONDS,
        poll_interval: float = HANDLER_POLL_INTERVAL_SECONDS,
        poll_ceiling: float = HANDLER_POLL_CEILING_SECONDS,
        poll_backoff: float = HANDLER_POLL_BACKOFF,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.name = name or "Custom Source"
        self.timeout = float(timeout)
        self.poll_interval = poll_interval
        self.poll_ceiling = poll_ceiling
        self.poll_backoff = poll_backoff
        self.http_timeout = http_timeout
        self.state = SessionState.UNINITIALIZED
        self.inited_info: Any = None
        self._process: asyncio.subprocess.Process | None = None
        self._deadline = 0.0

    @classmethod
    async def create(cls, script: str, **kwargs: Any) -> "SandboxSession":
        session = cls(**kwargs)
        try:
            await session._evaluate(script)
        except asyncio.CancelledError:
            session._kill_now()
            if session._process is not None:
                await asyncio.shield(session._process.wait())
            session.state = SessionState.CLOSED
            raise
        except Exception:
            await session.close()
            raise
        return session

    async def __aenter__(self) -> "SandboxSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _remaining(self) -> float:
        return max(0.0, self._deadline - time.monotonic())

    def _kill_now(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def _send(self, message: dict[str, Any]) -> None:
        assert self._process is not None and self._process.stdin is not None
        data = json.dumps(message, ensure_ascii=False, default=str) + "\n"
        try:
            self._process.stdin.write(data.encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ScriptRuntimeError(f"sandbox worker is gone: {exc}") from exc

    async def _receive(self) -> dict[str, Any]:
        assert self._process is not None and self._process.stdout is not None
        remaining = self._remaining()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            line = await asyncio.wait_for(self._process.stdout.readline(), timeout=remaining)
        except asyncio.TimeoutError:
            self._kill_now()
            raise ScriptTimeoutError(f"script exceeded the {self.timeout:g}s session timeout") from None
        except ValueError as exc:
            self._kill_now()
            raise ScriptRuntimeError(f"sandbox worker message too large: {exc}") from exc

        if not line:
            code = await self._process.wait()
            raise ScriptRuntimeError(f"sandbox worker exited with code {code}")
        try:
            reply = json.loads(line)
        except ValueError as exc:
            raise ScriptRuntimeError("sandbox worker sent a malformed message") from exc
        if not isinstance(reply, dict):
            raise ScriptRuntimeError("sandbox worker sent a malformed message")
        return reply

    async def _evaluate(self, script: str) -> None:
        self.state = SessionState.EVALUATING
        self._deadline = time.monotonic() + self.timeout
        try:
            self._process = await asyncio.create_subprocess_exec(
                sys.executable,
                "-m",
                WORKER_MODULE,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=_worker_env(),
                limit=MAX_MESSAGE_BYTES,
            )
        except OSError as exc:
            self.state = SessionState.FAILED
            raise ScriptInitError(f"failed to start sandbox worker: {exc}") from exc

        try:
            await self._send(
                {
                    "cmd": "evaluate",
                    "name": self.name,
                    "script": script,
                    "settings": {
                        "http_timeout": self.http_timeout,
                        "poll_interval": self.poll_interval,
                        "poll_ceiling": self.poll_ceiling,
                        "poll_backoff": self.poll_backoff,
                    },
                }
            )
            reply = await self._receive()
        except ScriptTimeoutError:
            self.state = SessionState.FAILED
            logger.info("[SANDBOX] source=%s evaluation timed out", self.name)
            raise
        except ScriptRuntimeError as exc:
            self.state = SessionState.FAILED
            raise ScriptInitError(str(exc)) from exc

        event = reply.get("event")
        if event == "ready":
            self.state = SessionState.READY
            self.inited_info = reply.get("inited")
            return
        self.state = SessionState.FAILED
        if event == "init_error":
            raise ScriptInitError(str(reply.get("message") or "script evaluation failed"))
        raise ScriptInitError(f"unexpected sandbox reply {event!r}: {reply.get('message')}")

    async def invoke(
        self,
        operation: Any,
        platform_id: str,
        params: dict[str, Any] | None = None,
    ) -> InvocationResult:
        started = time.monotonic()
        if self.state is not SessionState.READY:
            return InvocationResult(
                InvocationStatus.ERROR,
                error=ScriptRuntimeError(f"session is {self.state.value}"),
            )

        op_name = getattr(operation, "value", operation)
        try:
            await self._send(
                {
                    "cmd": "invoke",
                    "operation": op_name,
                    "platform_id": platform_id,
                    "params": params or {},
                }
            )
            reply = await self._receive()
        except asyncio.CancelledError:
            self.state = SessionState.FAILED
            self._kill_now()
            raise
        except ScriptTimeoutError as exc:
            self.state = SessionState.FAILED
            logger.info("[SANDBOX] source=%s operation=%s timed out", self.name, op_name)
            return InvocationResult(InvocationStatus.TIMEOUT, error=exc, elapsed_seconds=time.monotonic() - started)
        except SandboxError as exc:
            self.state = SessionState.FAILED
            return InvocationResult(InvocationStatus.ERROR, error=exc, elapsed_seconds=time.monotonic() - started)

        elapsed = time.monotonic() - started
        status = reply.get("status")
        message = str(reply.get("message") or "")
        target = reply.get("target")
        if reply.get("event") != "result":
            return InvocationResult(
                InvocationStatus.ERROR,
                error=ScriptRuntimeError(message or "unexpected sandbox reply"),
                elapsed_seconds=elapsed,
            )
        if status == InvocationStatus.OK.value:
            return InvocationResult(InvocationStatus.OK, payload=reply.get("payload"), target=target, elapsed_seconds=elapsed)
        if status == InvocationStatus.NOT_SUPPORTED.value:
            return InvocationResult(
                InvocationStatus.NOT_SUPPORTED,
                error=OperationNotSupportedError(message or "operation not supported"),
                target=target,
                elapsed_seconds=elapsed,
            )
        return InvocationResult(
            InvocationStatus.ERROR,
            error=error_from_kind(reply.get("error_kind"), message or "script failed"),
            target=target,
            elapsed_seconds=elapsed,
        )

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        process = self._process
        if process is not None:
            if process.returncode is None and self.state is SessionState.READY:
                try:
                    await self._send({"cmd": "close"})
                    await asyncio.wait_for(process.wait(), timeout=_CLOSE_GRACE_SECONDS)
                except (SandboxError, asyncio.TimeoutError):
                    self._kill_now()
            else:
                self._kill_now()
            await process.wait()
        self.state = SessionState.CLOSED


async def validate_script(script: str, **kwargs: Any) -> None:
    """Evaluate ``script`` exactly as a session would, then discard it."""
    session = await SandboxSession.create(script, **kwargs)
    await session.close()
