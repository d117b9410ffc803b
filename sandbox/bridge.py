"""Capability bridge: the only host functions reachable from source scripts.

Every call here returns a value. Network failures become ``ok=False`` response
mappings and bad crypto input degrades to empty output, so a misbehaving
script can never unwind the worker's control flow through the bridge.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import threading
from concurrent.futures import Future, InvalidStateError
from typing import Any, Callable

import requests
from cryptography.hazmat.primitives import padding as symmetric_padding
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding as asymmetric_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from config.settings import DEFAULT_USER_AGENT, HTTP_TIMEOUT_SECONDS
from sandbox.errors import NetworkError

logger = logging.getLogger(__name__)

_HASHES = {
    "md5": hashlib.md5,
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

ResponseCallback = Callable[[Any, Any, Any], Any]


def to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (list, tuple)):
        return bytes(value)
    return str(value).encode("utf-8")


def _failure_response(error: NetworkError, url: str | None = None) -> dict[str, Any]:
    return {
        "ok": False,
        "url": url,
        "status": None,
        "status_code": None,
        "status_text": "",
        "headers": {},
        "body": None,
        "data": None,
        "error": str(error),
        "error_type": error.kind,
    }


def _decode_body(resp: requests.Response, binary: bool) -> Any:
    if binary:
        return resp.content
    text = resp.text
    content_type = (resp.headers.get("Content-Type") or "").lower()
    if "json" in content_type or text.lstrip()[:1] in ("{", "["):
        try:
            return resp.json()
        except ValueError:
            return text
    return text


class CapabilityBridge:
    """Outbound HTTP on behalf of one sandboxed script."""

    def __init__(
        self,
        *,
        timeout_seconds: float = HTTP_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._session = session or requests.Session()

    def _effective_timeout(self, requested: Any) -> float:
        try:
            value = float(requested)
        except (TypeError, ValueError):
            return self.timeout_seconds
        if value <= 0:
            return self.timeout_seconds
        return min(value, self.timeout_seconds)

    def http_request(self, url: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """Issue one request and return a normalized response mapping."""
        opts = dict(options) if isinstance(options, dict) else {}
        if isinstance(url, dict):
            opts = {**url, **opts}
            url = opts.get("url")
        if not isinstance(url, str) or not url.strip():
            return _failure_response(NetworkError("url is required"))

        method = str(opts.get("method") or "GET").upper()
        raw_headers = opts.get("headers") if isinstance(opts.get("headers"), dict) else {}
        headers = {str(key): str(value) for key, value in raw_headers.items()}
        if not any(key.lower() == "user-agent" for key in headers):
            headers["User-Agent"] = self.user_agent

        kwargs: dict[str, Any] = {
            "headers": headers,
            "timeout": self._effective_timeout(opts.get("timeout")),
        }
        if opts.get("params"):
            kwargs["params"] = opts["params"]
        body = opts.get("body")
        if opts.get("form") is not None:
            kwargs["data"] = opts["form"]
        elif isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = body

        try:
            resp = self._session.request(method, url, **kwargs)
            payload = _decode_body(resp, bool(opts.get("binary")))
        except requests.RequestException as exc:
            failure = NetworkError(f"{type(exc).__name__}: {exc}")
            logger.info("[SANDBOX] request method=%s url=%s status=error error=%s", method, url, failure)
            return _failure_response(failure, url)
        except Exception as exc:
            # Script-supplied options can still trip requests (bad types, odd encodings).
            failure = NetworkError(f"invalid request: {exc}")
            logger.info("[SANDBOX] request method=%s url=%s status=invalid error=%s", method, url, failure)
            return _failure_response(failure, url)

        status = int(resp.status_code)
        logger.info("[SANDBOX] request method=%s url=%s status=%s", method, url, status)
        return {
            "ok": 200 <= status < 300,
            "url": resp.url or url,
            "status": status,
            "status_code": status,
            "status_text": resp.reason or "",
            "headers": dict(resp.headers),
            "body": payload,
            "data": payload,
            "error": None,
            "error_type": None,
        }

    def fetch(self, url: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request(url, options).result()

    def request(
        self,
        url: Any,
        options: dict[str, Any] | ResponseCallback | None = None,
        callback: ResponseCallback | None = None,
    ) -> Future:
        """Run a request in the background.

        Supports both authoring styles: the returned future resolves to the
        normalized response, and ``callback(error, response, body)`` is called
        when supplied. The whole exchange is bounded by ``timeout_seconds`` of
        wall-clock time; a slower server yields a failed response and the
        late reply is discarded.
        """
        if callable(options) and callback is None:
            callback, options = options, None
        future: Future = Future()

        def _settle(response: dict[str, Any]) -> None:
            try:
                future.set_result(response)
            except InvalidStateError:
                return
            if callback is None:
                return
            try:
                callback(response["error"], response, response["body"])
            except Exception:
                logger.exception("[SANDBOX] request callback raised url=%s", response.get("url"))

        def _run() -> None:
            _settle(self.http_request(url, options if isinstance(options, dict) else None))

        def _expire() -> None:
            failure = NetworkError(f"request exceeded the {self.timeout_seconds:g}s limit")
            logger.info("[SANDBOX] request url=%s status=timeout", url)
            _settle(_failure_response(failure, url if isinstance(url, str) else None))

        timer = threading.Timer(self.timeout_seconds, _expire)
        timer.daemon = True
        future.add_done_callback(lambda _done: timer.cancel())
        timer.start()
        threading.Thread(target=_run, name="sandbox-request", daemon=True).start()
        return future


def hash_text(kind: str, text: Any) -> str:
    """Hex digest of ``text``; empty string for an unknown hash kind."""
    factory = _HASHES.get(str(kind or "").lower())
    if factory is None:
        return ""
    try:
        return factory(to_bytes(text)).hexdigest()
    except (TypeError, ValueError):
        return ""


def base64_encode(data: Any) -> str:
    try:
        return base64.b64encode(to_bytes(data)).decode("ascii")
    except (TypeError, ValueError):
        return ""


def base64_decode(text: Any, binary: bool = False) -> str | bytes:
    try:
        raw = base64.b64decode(to_bytes(text))
    except (TypeError, ValueError):
        return b"" if binary else ""
    if binary:
        return raw
    return raw.decode("utf-8", errors="replace")


def aes_encrypt(buffer: Any, mode: str, key: Any, iv: Any = None) -> bytes:
    """AES with PKCS7 padding; ``mode`` like ``aes-128-cbc`` or ``ecb``."""
    name = str(mode or "").lower()
    try:
        if name.endswith("ecb"):
            cipher_mode = modes.ECB()
        elif name.endswith("cbc"):
            cipher_mode = modes.CBC(to_bytes(iv))
        else:
            logger.debug("[SANDBOX] aes_encrypt unsupported mode=%s", mode)
            return b""
        padder = symmetric_padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(to_bytes(buffer)) + padder.finalize()
        encryptor = Cipher(algorithms.AES(to_bytes(key)), cipher_mode).encryptor()
        return encryptor.update(padded) + encryptor.finalize()
    except Exception as exc:
        logger.debug("[SANDBOX] aes_encrypt rejected input: %s", exc)
        return b""


def _pem_public_key(public_key: Any) -> bytes:
    text = to_bytes(public_key).decode("utf-8", errors="replace").strip()
    if "BEGIN" not in text:
        body = "".join(text.split())
        lines = "\n".join(body[start:start + 64] for start in range(0, len(body), 64))
        text = f"-----BEGIN PUBLIC KEY-----\n{lines}\n-----END PUBLIC KEY-----"
    return text.encode("ascii", errors="ignore")


def rsa_encrypt(buffer: Any, public_key: Any) -> bytes:
    """RSA PKCS#1 v1.5 encryption with a PEM (or bare base64) public key."""
    try:
        key = serialization.load_pem_public_key(_pem_public_key(public_key))
        return key.encrypt(to_bytes(buffer), asymmetric_padding.PKCS1v15())
    except Exception as exc:
        logger.debug("[SANDBOX] rsa_encrypt rejected input: %s", exc)
        return b""
