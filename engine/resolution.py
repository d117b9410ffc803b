"""Priority-ordered fallback across unreliable source scripts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol

from engine.results import LISTING_OPERATIONS, is_successful, normalize_payload
from sandbox.dispatch import Operation
from sandbox.errors import AggregateResolutionError, SandboxError
from sandbox.session import SandboxSession

logger = logging.getLogger(__name__)

INVALID_RESULT_KIND = "invalid_result"


class ResolutionPolicy(str, Enum):
    FIRST_SUCCESS = "fallback"
    TOP_PRIORITY_ONLY = "top_only"
    FAN_OUT = "fan_out"


class _Source(Protocol):
    id: str
    name: str
    script: str


SessionFactory = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class SourceAttempt:
    source_id: str
    source_name: str
    ok: bool
    error: str | None = None
    error_kind: str | None = None
    elapsed_seconds: float = 0.0


@dataclass
class Resolution:
    operation: Operation
    payload: Any = None
    source_id: str | None = None
    source_name: str | None = None
    attempts: list[SourceAttempt] = field(default_factory=list)
    groups: list[dict[str, Any]] = field(default_factory=list)
    no_sources: bool = False


class FallbackResolver:
    """Turns one operation against many sources into one answer.

    Sources are tried in the order given (callers pass them highest priority
    first). Each attempt gets a fresh session that is always closed before the
    next source is tried. The first result passing the operation's success
    predicate wins; if none does, ``AggregateResolutionError`` is raised with
    the most recent per-source error.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        *,
        session_options: dict[str, Any] | None = None,
    ) -> None:
        self._session_factory = session_factory or SandboxSession.create
        self.session_options = dict(session_options or {})

    async def create_session(self, script: str, *, name: str | None = None) -> Any:
        return await self._session_factory(script, name=name, **self.session_options)

    async def resolve(
        self,
        operation: Operation | str,
        sources: Iterable[_Source],
        *,
        platform_id: str,
        params: dict[str, Any] | None = None,
        policy: ResolutionPolicy = ResolutionPolicy.FIRST_SUCCESS,
    ) -> Resolution:
        op = Operation(operation)
        policy = ResolutionPolicy(policy)
        if policy is not ResolutionPolicy.FIRST_SUCCESS and op is not Operation.SEARCH:
            raise ValueError(f"{policy.value} policy only applies to search, not {op.value}")

        snapshot = tuple(sources)
        if not snapshot:
            logger.info("[RESOLVE] op=%s no sources configured", op.value)
            return Resolution(operation=op, no_sources=True)

        if policy is ResolutionPolicy.FAN_OUT:
            return await self._fan_out(op, snapshot, platform_id, params)

        candidates = snapshot[:1] if policy is ResolutionPolicy.TOP_PRIORITY_ONLY else snapshot
        attempts: list[SourceAttempt] = []
        for source in candidates:
            attempt, payload = await self._attempt(source, op, platform_id, params)
            attempts.append(attempt)
            if attempt.ok:
                return Resolution(
                    operation=op,
                    payload=payload,
                    source_id=attempt.source_id,
                    source_name=attempt.source_name,
                    attempts=attempts,
                )

        raise AggregateResolutionError(len(attempts), attempts[-1].error, attempts)

    async def _fan_out(
        self,
        op: Operation,
        snapshot: tuple[_Source, ...],
        platform_id: str,
        params: dict[str, Any] | None,
    ) -> Resolution:
        outcomes = await asyncio.gather(
            *(self._attempt(source, op, platform_id, params) for source in snapshot)
        )
        attempts = [attempt for attempt, _payload in outcomes]
        groups = [
            {
                "source_id": attempt.source_id,
                "source_name": attempt.source_name,
                "list": payload["list"],
                "total": payload["total"],
            }
            for attempt, payload in outcomes
            if attempt.ok
        ]
        if not groups:
            last_error = next((a.error for a in reversed(attempts) if a.error), None)
            raise AggregateResolutionError(len(attempts), last_error, attempts)

        merged: list[Any] = []
        for group in groups:
            merged.extend(group["list"])
        return Resolution(
            operation=op,
            payload={"list": merged, "total": sum(int(group["total"]) for group in groups)},
            source_id=groups[0]["source_id"],
            source_name=groups[0]["source_name"],
            attempts=attempts,
            groups=groups,
        )

    async def _attempt(
        self,
        source: _Source,
        op: Operation,
        platform_id: str,
        params: dict[str, Any] | None,
    ) -> tuple[SourceAttempt, Any]:
        started = time.monotonic()

        def _failed(message: str, kind: str | None) -> tuple[SourceAttempt, Any]:
            logger.warning(
                "[RESOLVE] op=%s source=%s platform=%s failed kind=%s error=%s",
                op.value,
                source.name,
                platform_id,
                kind,
                message,
            )
            attempt = SourceAttempt(
                source_id=source.id,
                source_name=source.name,
                ok=False,
                error=message,
                error_kind=kind,
                elapsed_seconds=time.monotonic() - started,
            )
            return attempt, None

        try:
            session = await self.create_session(source.script, name=source.name)
        except SandboxError as exc:
            return _failed(str(exc), exc.kind)

        try:
            result = await session.invoke(op, platform_id, params)
        finally:
            await session.close()

        if not result.ok:
            error = result.error
            return _failed(str(error) if error else result.status.value, getattr(error, "kind", None))

        payload = normalize_payload(op, result.payload)
        if not is_successful(op, payload):
            expected = "non-empty list" if op in LISTING_OPERATIONS else "usable payload"
            if op is Operation.RESOLVE_PLAYABLE_URL:
                expected = "non-empty url"
            return _failed(f"result has no {expected}", INVALID_RESULT_KIND)

        elapsed = time.monotonic() - started
        logger.info(
            "[RESOLVE] op=%s source=%s platform=%s ok target=%s elapsed=%.2fs",
            op.value,
            source.name,
            platform_id,
            result.target,
            elapsed,
        )
        attempt = SourceAttempt(
            source_id=source.id,
            source_name=source.name,
            ok=True,
            elapsed_seconds=elapsed,
        )
        return attempt, payload
