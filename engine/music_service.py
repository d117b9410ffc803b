"""Public resolution API over the enabled source scripts."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from config.settings import DEFAULT_LIMIT, DEFAULT_PAGE, DEFAULT_QUALITY, SEARCH_POLICY
from engine.rankings import find_board, ranking_catalog
from engine.resolution import FallbackResolver, ResolutionPolicy
from sandbox.dispatch import Operation
from sandbox.errors import SandboxError

logger = logging.getLogger(__name__)

NO_SOURCES_MESSAGE = "no sources configured; add and enable a source script first"
ALL_PLATFORMS = "all"
CHECK_KEYWORD = "test"


class _Registry(Protocol):
    def list_enabled_by_priority(self) -> list[Any]: ...

    def get(self, source_id: str) -> Any: ...

    def create(self, name: str, script: str, **kwargs: Any) -> Any: ...

    def update(self, source_id: str, **changes: Any) -> Any: ...


def _track_platform(track: dict[str, Any], platform_id: str | None) -> str:
    candidate = platform_id or (track or {}).get("source")
    value = str(candidate or "").strip()
    if not value:
        raise ValueError("platform id is required (pass platform_id or set track['source'])")
    return value


class MusicService:
    """Search, playback URL, lyric, cover and ranking resolution with fallback."""

    def __init__(
        self,
        registry: _Registry,
        resolver: FallbackResolver | None = None,
        *,
        search_policy: ResolutionPolicy | str | None = None,
    ) -> None:
        self.registry = registry
        self.resolver = resolver or FallbackResolver()
        self.search_policy = ResolutionPolicy(search_policy or SEARCH_POLICY)

    def _enabled_sources(self) -> tuple[Any, ...]:
        # Read once per call; later registry edits do not affect this resolution.
        return tuple(self.registry.list_enabled_by_priority())

    async def search(
        self,
        keyword: str,
        page: int = DEFAULT_PAGE,
        limit: int = DEFAULT_LIMIT,
        platform_id: str = ALL_PLATFORMS,
    ) -> dict[str, Any]:
        term = (keyword or "").strip()
        if not term:
            raise ValueError("keyword is required")
        response: dict[str, Any] = {"keyword": term, "page": page, "limit": limit}
        resolution = await self.resolver.resolve(
            Operation.SEARCH,
            self._enabled_sources(),
            platform_id=platform_id,
            params={"keyword": term, "page": page, "limit": limit},
            policy=self.search_policy,
        )
        if resolution.no_sources:
            return {**response, "list": [], "total": 0, "source_name": None, "no_sources": True, "error": NO_SOURCES_MESSAGE}
        return {
            **response,
            "list": resolution.payload["list"],
            "total": resolution.payload["total"],
            "source_id": resolution.source_id,
            "source_name": resolution.source_name,
            "groups": resolution.groups,
            "no_sources": False,
        }

    async def resolve_url(
        self,
        track: dict[str, Any],
        quality: str = DEFAULT_QUALITY,
        platform_id: str | None = None,
    ) -> dict[str, Any]:
        platform = _track_platform(track, platform_id)
        resolution = await self.resolver.resolve(
            Operation.RESOLVE_PLAYABLE_URL,
            self._enabled_sources(),
            platform_id=platform,
            params={"music_info": dict(track), "quality": quality, "type": quality},
        )
        if resolution.no_sources:
            return {"url": "", "quality": quality, "source_name": None, "no_sources": True, "error": NO_SOURCES_MESSAGE}
        payload = resolution.payload
        logger.info("[RESOLVE] url resolved platform=%s source=%s", platform, resolution.source_name)
        return {
            "url": payload["url"],
            "quality": payload.get("quality") or quality,
            "source_id": resolution.source_id,
            "source_name": resolution.source_name,
            "no_sources": False,
        }

    async def resolve_lyric(self, track: dict[str, Any], platform_id: str | None = None) -> dict[str, Any]:
        platform = _track_platform(track, platform_id)
        resolution = await self.resolver.resolve(
            Operation.RESOLVE_LYRIC,
            self._enabled_sources(),
            platform_id=platform,
            params={"music_info": dict(track)},
        )
        if resolution.no_sources:
            return {"lyric": "", "translated_lyric": "", "source_name": None, "no_sources": True, "error": NO_SOURCES_MESSAGE}
        return {
            **resolution.payload,
            "source_id": resolution.source_id,
            "source_name": resolution.source_name,
            "no_sources": False,
        }

    async def resolve_cover(self, track: dict[str, Any], platform_id: str | None = None) -> dict[str, Any]:
        platform = _track_platform(track, platform_id)
        resolution = await self.resolver.resolve(
            Operation.RESOLVE_COVER,
            self._enabled_sources(),
            platform_id=platform,
            params={"music_info": dict(track)},
        )
        if resolution.no_sources:
            return {"url": "", "source_name": None, "no_sources": True, "error": NO_SOURCES_MESSAGE}
        return {
            "url": resolution.payload,
            "source_id": resolution.source_id,
            "source_name": resolution.source_name,
            "no_sources": False,
        }

    def resolve_ranking_list(self) -> list[dict[str, Any]]:
        return ranking_catalog()

    async def resolve_ranking_detail(
        self,
        platform_id: str,
        board_id: str,
        page: int = DEFAULT_PAGE,
        limit: int = DEFAULT_LIMIT,
    ) -> dict[str, Any]:
        platform = (platform_id or "").strip()
        board = str(board_id or "").strip()
        if not platform or not board:
            raise ValueError("platform_id and board_id are required")
        known = find_board(platform, board)
        response: dict[str, Any] = {
            "platform_id": platform,
            "board_id": board,
            "board_name": known["name"] if known else None,
            "page": page,
            "limit": limit,
        }
        resolution = await self.resolver.resolve(
            Operation.RESOLVE_RANKING_DETAIL,
            self._enabled_sources(),
            platform_id=platform,
            params={"board_id": board, "page": page, "limit": limit},
        )
        if resolution.no_sources:
            return {**response, "list": [], "total": 0, "source_name": None, "no_sources": True, "error": NO_SOURCES_MESSAGE}
        return {
            **response,
            "list": resolution.payload["list"],
            "total": resolution.payload["total"],
            "source_id": resolution.source_id,
            "source_name": resolution.source_name,
            "no_sources": False,
        }

    async def validate(self, script: str) -> None:
        """Raise ``ScriptInitError``/``ScriptTimeoutError`` when ``script`` cannot be evaluated."""
        session = await self.resolver.create_session(script)
        await session.close()

    async def add_source(
        self,
        name: str,
        script: str,
        *,
        category: str = "music",
        enabled: bool = True,
        priority: int = 0,
    ) -> Any:
        if not (name or "").strip() or not (script or "").strip():
            raise ValueError("name and script are required")
        await self.validate(script)
        record = self.registry.create(name, script, category=category, enabled=enabled, priority=priority)
        logger.info("[SOURCES] added source id=%s name=%s priority=%s", record.id, record.name, record.priority)
        return record

    async def update_source(self, source_id: str, **changes: Any) -> Any:
        current = self.registry.get(source_id)
        if current is None:
            return None
        script = changes.get("script")
        if script is not None and script != current.script:
            await self.validate(script)
        return self.registry.update(source_id, **changes)

    async def check_source(self, source_id: str) -> dict[str, Any]:
        """Evaluate one source and try search and the ranking list against it."""
        record = self.registry.get(source_id)
        if record is None:
            raise LookupError(f"source {source_id!r} not found")

        checks = (
            (Operation.SEARCH, {"keyword": CHECK_KEYWORD, "page": 1}),
            (Operation.RESOLVE_RANKING_LIST, {}),
        )
        results: dict[str, Any] = {}
        inited = None
        for operation, params in checks:
            try:
                session = await self.resolver.create_session(record.script, name=record.name)
            except SandboxError as exc:
                results[operation.value] = {"ok": False, "error": str(exc), "error_kind": exc.kind}
                continue
            try:
                inited = inited or getattr(session, "inited_info", None)
                outcome = await session.invoke(operation, ALL_PLATFORMS, params)
            finally:
                await session.close()
            results[operation.value] = {
                "ok": outcome.ok,
                "target": outcome.target,
                "error": str(outcome.error) if outcome.error else None,
                "error_kind": getattr(outcome.error, "kind", None),
            }
        return {
            "source_id": record.id,
            "source_name": record.name,
            "success": any(item["ok"] for item in results.values()),
            "inited": inited,
            "results": results,
        }
