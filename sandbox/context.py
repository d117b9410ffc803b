"""The ``platform`` host object handed to every source script."""

from __future__ import annotations

import json
import logging
import threading
import urllib.parse
from types import SimpleNamespace
from typing import Any, Callable

from sandbox import bridge as capability
from sandbox.bridge import CapabilityBridge

logger = logging.getLogger("sandbox.script")

REQUEST_EVENT = "request"


class RegistrationSlot:
    """Per-session handler table filled by ``platform.on``."""

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._lock = threading.Lock()

    def register(self, event_name: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            self._handlers[event_name] = handler

    def get(self, event_name: str) -> Callable[..., Any] | None:
        with self._lock:
            return self._handlers.get(event_name)


class TimerScope:
    """Timers owned by one session; all cancelled when the session closes."""

    def __init__(self) -> None:
        self._timers: dict[int, threading.Timer] = {}
        self._next_id = 0
        self._closed = False
        self._lock = threading.Lock()

    def set_timeout(self, callback: Callable[..., Any], delay_ms: Any = 0, *args: Any) -> int:
        if not callable(callback):
            raise TypeError("set_timeout callback must be callable")
        try:
            delay = max(0.0, float(delay_ms or 0) / 1000.0)
        except (TypeError, ValueError):
            delay = 0.0

        with self._lock:
            if self._closed:
                return -1
            self._next_id += 1
            timer_id = self._next_id

            def _fire() -> None:
                with self._lock:
                    self._timers.pop(timer_id, None)
                try:
                    callback(*args)
                except Exception:
                    logger.exception("[SANDBOX] timer callback raised id=%s", timer_id)

            timer = threading.Timer(delay, _fire)
            timer.daemon = True
            self._timers[timer_id] = timer
        timer.start()
        return timer_id

    def clear_timeout(self, timer_id: Any) -> None:
        with self._lock:
            timer = self._timers.pop(timer_id, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> int:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)


def _buffer_from(value: Any, encoding: str = "utf-8") -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = "" if value is None else str(value)
    codec = (encoding or "utf-8").lower()
    try:
        if codec == "hex":
            return bytes.fromhex(text)
        if codec == "base64":
            return capability.base64_decode(text, binary=True)
        return text.encode(codec)
    except (LookupError, ValueError):
        return b""


def _buffer_to_string(value: Any, encoding: str = "utf-8") -> str:
    try:
        raw = value if isinstance(value, (bytes, bytearray)) else capability.to_bytes(value)
    except (TypeError, ValueError):
        return ""
    codec = (encoding or "utf-8").lower()
    if codec == "hex":
        return bytes(raw).hex()
    if codec == "base64":
        return capability.base64_encode(raw)
    try:
        return bytes(raw).decode(codec, errors="replace")
    except LookupError:
        return ""


class PlatformContext:
    """Host object scripts use to register handlers and reach the bridge."""

    EVENT_NAMES = {
        "request": REQUEST_EVENT,
        "inited": "inited",
        "update_alert": "updateAlert",
    }

    def __init__(self, bridge: CapabilityBridge | None = None, *, script_name: str = "Custom Source") -> None:
        self._bridge = bridge or CapabilityBridge()
        self._slot = RegistrationSlot()
        self._timers = TimerScope()
        self._store: dict[str, Any] = {}
        self._inited: Any = None
        self.version = "2.0.0"
        self.env = "sandbox"
        self.current_script_info = {"name": script_name, "description": "", "version": "1.0.0"}
        self.crypto = SimpleNamespace(
            hash=capability.hash_text,
            md5=lambda text: capability.hash_text("md5", text),
            sha1=lambda text: capability.hash_text("sha1", text),
            sha256=lambda text: capability.hash_text("sha256", text),
            base64_encode=capability.base64_encode,
            base64_decode=capability.base64_decode,
            aes_encrypt=capability.aes_encrypt,
            rsa_encrypt=capability.rsa_encrypt,
        )
        self.utils = SimpleNamespace(
            parse_json=json.loads,
            stringify_json=lambda obj: json.dumps(obj, ensure_ascii=False, separators=(",", ":")),
            quote=lambda text: urllib.parse.quote(str(text), safe="~()*!.'"),
            unquote=lambda text: urllib.parse.unquote(str(text)),
            urlencode=lambda params: urllib.parse.urlencode(params or {}),
            buffer_from=_buffer_from,
            buffer_to_string=_buffer_to_string,
        )
        self.data = SimpleNamespace(get=self._store.get, set=self._store.__setitem__)

    def on(self, event_name: str, handler: Callable[..., Any]) -> None:
        if not callable(handler):
            raise TypeError("platform.on handler must be callable")
        self._slot.register(str(event_name), handler)

    def send(self, event_name: str, data: Any = None) -> None:
        if event_name == self.EVENT_NAMES["inited"]:
            self._inited = data
        logger.debug("[SANDBOX] script sent event=%s", event_name)

    def request(self, url: Any, options: Any = None, callback: Any = None):
        return self._bridge.request(url, options, callback)

    def fetch(self, url: Any, options: Any = None) -> dict[str, Any]:
        return self._bridge.fetch(url, options)

    def set_timeout(self, callback: Callable[..., Any], delay_ms: Any = 0, *args: Any) -> int:
        return self._timers.set_timeout(callback, delay_ms, *args)

    def clear_timeout(self, timer_id: Any) -> None:
        self._timers.clear_timeout(timer_id)

    def log(self, *args: Any) -> None:
        logger.info("[SCRIPT] %s", " ".join(str(arg) for arg in args))

    # Used by the dispatcher and worker.

    def registered_handler(self, event_name: str = REQUEST_EVENT) -> Callable[..., Any] | None:
        return self._slot.get(event_name)

    def inited_info(self) -> Any:
        return self._inited

    def close(self) -> int:
        return self._timers.cancel_all()
