"""Sandbox worker process: evaluates one script and serves invocations.

Protocol is one JSON object per line. stdin carries commands
(``evaluate``, ``invoke``, ``close``); stdout carries replies (``ready``,
``init_error``, ``result``, ``protocol_error``). stdout is claimed for the
protocol at startup so script output can only reach stderr.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, TextIO

from config.settings import SANDBOX_LOG_LEVEL
from sandbox.errors import ScriptInitError, ScriptRuntimeError
from sandbox.runtime import ScriptRuntime

logger = logging.getLogger("sandbox.worker")


def _claim_stdout() -> TextIO:
    protocol = os.fdopen(os.dup(sys.stdout.fileno()), "w", encoding="utf-8", buffering=1)
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    sys.stdout = sys.stderr
    return protocol


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _emit(out: TextIO, message: dict[str, Any]) -> None:
    try:
        line = json.dumps(message, ensure_ascii=False, default=_json_default)
    except (TypeError, ValueError) as exc:
        line = json.dumps(
            {
                "event": message.get("event"),
                "status": "error",
                "message": f"result is not serializable: {exc}",
                "error_kind": ScriptRuntimeError.kind,
            }
        )
    out.write(line + "\n")
    out.flush()


def _runtime_from(message: dict[str, Any]) -> ScriptRuntime:
    options = message.get("settings") or {}
    kwargs = {
        key: float(options[key])
        for key in ("http_timeout", "poll_interval", "poll_ceiling", "poll_backoff")
        if options.get(key) is not None
    }
    return ScriptRuntime(script_name=str(message.get("name") or "Custom Source"), **kwargs)


def serve(commands: TextIO, out: TextIO) -> int:
    runtime: ScriptRuntime | None = None
    try:
        while True:
            line = commands.readline()
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                _emit(out, {"event": "protocol_error", "message": "invalid json command"})
                continue

            command = message.get("cmd")
            if command == "evaluate":
                if runtime is not None:
                    _emit(out, {"event": "protocol_error", "message": "script already evaluated"})
                    continue
                runtime = _runtime_from(message)
                try:
                    runtime.evaluate(message.get("script"))
                except ScriptInitError as exc:
                    logger.info("[SANDBOX] evaluation failed: %s", exc)
                    _emit(out, {"event": "init_error", "message": str(exc)})
                    runtime.close()
                    runtime = None
                    continue
                _emit(out, {"event": "ready", "inited": runtime.platform.inited_info()})
            elif command == "invoke":
                if runtime is None:
                    _emit(out, {"event": "protocol_error", "message": "no script evaluated"})
                    continue
                outcome = runtime.invoke(
                    str(message.get("operation") or ""),
                    str(message.get("platform_id") or ""),
                    message.get("params") or {},
                )
                _emit(out, {"event": "result", **outcome.to_message()})
            elif command == "close":
                break
            else:
                _emit(out, {"event": "protocol_error", "message": f"unknown command {command!r}"})
    finally:
        if runtime is not None:
            runtime.close()
    return 0


def main() -> int:
    out = _claim_stdout()
    logging.basicConfig(
        stream=sys.stderr,
        level=SANDBOX_LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return serve(sys.stdin, out)


if __name__ == "__main__":
    raise SystemExit(main())
