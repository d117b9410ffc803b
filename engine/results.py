"""Per-operation result normalisation and success predicates."""

from __future__ import annotations

from typing import Any

from sandbox.dispatch import Operation

LISTING_OPERATIONS = frozenset(
    {
        Operation.SEARCH,
        Operation.RESOLVE_RANKING_LIST,
        Operation.RESOLVE_RANKING_DETAIL,
    }
)


def _normalize_listing(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, list):
        return {"list": payload, "total": len(payload)}
    if not isinstance(payload, dict):
        return None
    items = payload.get("list")
    if not isinstance(items, list) and isinstance(payload.get("data"), dict):
        items = payload["data"].get("list")
    if not isinstance(items, list):
        items = []
    try:
        total = int(payload.get("total"))
    except (TypeError, ValueError):
        total = len(items)
    return {"list": items, "total": total}


def _normalize_url(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, str):
        return {"url": payload.strip(), "quality": None}
    if not isinstance(payload, dict):
        return None
    url = payload.get("url")
    quality = payload.get("quality") or payload.get("type")
    return {
        "url": url.strip() if isinstance(url, str) else "",
        "quality": str(quality) if quality else None,
    }


def _normalize_lyric(payload: Any) -> dict[str, str] | None:
    if payload is None:
        return None
    if isinstance(payload, str):
        return {"lyric": payload, "translated_lyric": ""}
    if not isinstance(payload, dict):
        return {"lyric": str(payload), "translated_lyric": ""}
    lyric = payload.get("lyric") or payload.get("lrc") or ""
    translated = payload.get("translated_lyric") or payload.get("tlyric") or ""
    return {"lyric": str(lyric), "translated_lyric": str(translated)}


def _normalize_cover(payload: Any) -> str | None:
    if payload is None:
        return None
    if isinstance(payload, dict):
        # A mapping without a usable url is treated as no cover at all.
        url = payload.get("url") or payload.get("pic")
        return str(url) if url else None
    return str(payload)


def normalize_payload(operation: Operation, payload: Any) -> Any:
    """Coerce a script's raw return value into the operation's result shape."""
    if operation in LISTING_OPERATIONS:
        return _normalize_listing(payload)
    if operation is Operation.RESOLVE_PLAYABLE_URL:
        return _normalize_url(payload)
    if operation is Operation.RESOLVE_LYRIC:
        return _normalize_lyric(payload)
    if operation is Operation.RESOLVE_COVER:
        return _normalize_cover(payload)
    return payload


def is_successful(operation: Operation, result: Any) -> bool:
    """Whether a normalised result is good enough to stop trying sources."""
    if result is None:
        return False
    if operation in LISTING_OPERATIONS:
        return bool(result.get("list"))
    if operation is Operation.RESOLVE_PLAYABLE_URL:
        return bool(result.get("url"))
    # Lyric and cover accept any non-null payload.
    return True
