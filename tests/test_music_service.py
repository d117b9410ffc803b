from __future__ import annotations

import asyncio

import pytest

from db.sources import SourceRegistry
from engine.music_service import MusicService
from engine.resolution import FallbackResolver, ResolutionPolicy
from sandbox.dispatch import Operation
from sandbox.errors import AggregateResolutionError, ScriptInitError, ScriptRuntimeError
from sandbox.session import InvocationResult, InvocationStatus


class _ScriptedSession:
    def __init__(self, answers, calls) -> None:
        self.answers = answers
        self.calls = calls
        self.inited_info = {"sources": {"kw": {"name": "Kuwo"}}}

    async def invoke(self, operation, platform_id, params=None):
        op = Operation(operation)
        self.calls.append((op.value, platform_id, params))
        answer = self.answers.get(op)
        if answer is None:
            return InvocationResult(InvocationStatus.NOT_SUPPORTED, target="none")
        if isinstance(answer, Exception):
            return InvocationResult(InvocationStatus.ERROR, error=answer, target="handler")
        return InvocationResult(InvocationStatus.OK, payload=answer, target="handler")

    async def close(self) -> None:
        return None


def _service(tmp_path, scripts: dict, calls: list | None = None, **kwargs) -> MusicService:
    calls = calls if calls is not None else []

    async def _create(script, *, name=None, **options):
        answers = scripts[script]
        if isinstance(answers, Exception):
            raise answers
        return _ScriptedSession(answers, calls)

    registry = SourceRegistry(str(tmp_path / "sources.sqlite"))
    return MusicService(registry, FallbackResolver(_create), **kwargs)


def test_search_with_no_sources_is_reported_not_raised(tmp_path) -> None:
    service = _service(tmp_path, {})

    result = asyncio.run(service.search("anything"))

    assert result["no_sources"] is True
    assert result["list"] == []
    assert result["total"] == 0
    assert "no sources" in result["error"]


def test_track_operations_with_no_sources(tmp_path) -> None:
    service = _service(tmp_path, {})
    track = {"id": "1", "source": "kw"}

    url = asyncio.run(service.resolve_url(track))
    lyric = asyncio.run(service.resolve_lyric(track))
    cover = asyncio.run(service.resolve_cover(track))

    assert (url["url"], url["no_sources"]) == ("", True)
    assert (lyric["lyric"], lyric["translated_lyric"]) == ("", "")
    assert cover["url"] == ""


def test_search_uses_highest_priority_working_source(tmp_path) -> None:
    calls = []
    scripts = {
        "broken": {Operation.SEARCH: ScriptRuntimeError("TypeError: nope")},
        "good": {Operation.SEARCH: {"list": [{"name": "Song"}], "total": 12}},
    }
    service = _service(tmp_path, scripts, calls)
    service.registry.create("Broken", "broken", priority=10)
    service.registry.create("Good", "good", priority=1)

    result = asyncio.run(service.search("  Song ", page=2, limit=10))

    assert result["source_name"] == "Good"
    assert result["list"] == [{"name": "Song"}]
    assert result["total"] == 12
    assert result["keyword"] == "Song"
    assert calls[0] == ("search", "all", {"keyword": "Song", "page": 2, "limit": 10})


def test_search_fan_out_policy_groups_results(tmp_path) -> None:
    scripts = {
        "one": {Operation.SEARCH: [{"name": "a"}]},
        "two": {Operation.SEARCH: [{"name": "b"}]},
    }
    service = _service(tmp_path, scripts, search_policy=ResolutionPolicy.FAN_OUT)
    service.registry.create("One", "one", priority=2)
    service.registry.create("Two", "two", priority=1)

    result = asyncio.run(service.search("x"))

    assert [group["source_name"] for group in result["groups"]] == ["One", "Two"]
    assert result["list"] == [{"name": "a"}, {"name": "b"}]


def test_search_requires_keyword(tmp_path) -> None:
    with pytest.raises(ValueError):
        asyncio.run(_service(tmp_path, {}).search("   "))


def test_resolve_url_uses_track_source_as_platform(tmp_path) -> None:
    calls = []
    scripts = {"s": {Operation.RESOLVE_PLAYABLE_URL: {"url": "https://cdn.example.test/1.mp3"}}}
    service = _service(tmp_path, scripts, calls)
    service.registry.create("Main", "s")

    result = asyncio.run(service.resolve_url({"id": "1", "source": "tx"}, quality="320k"))

    assert result["url"] == "https://cdn.example.test/1.mp3"
    assert result["quality"] == "320k"
    assert result["source_name"] == "Main"
    op, platform, params = calls[0]
    assert (op, platform) == ("resolve_playable_url", "tx")
    assert params["music_info"] == {"id": "1", "source": "tx"}
    assert params["quality"] == "320k"


def test_resolve_url_requires_platform(tmp_path) -> None:
    with pytest.raises(ValueError):
        asyncio.run(_service(tmp_path, {}).resolve_url({"id": "1"}))


def test_resolve_url_all_sources_failing_raises_aggregate(tmp_path) -> None:
    scripts = {"s": {Operation.RESOLVE_PLAYABLE_URL: ScriptRuntimeError("no copyright")}}
    service = _service(tmp_path, scripts)
    service.registry.create("Main", "s")

    with pytest.raises(AggregateResolutionError) as excinfo:
        asyncio.run(service.resolve_url({"id": "1", "source": "kw"}))

    assert "no copyright" in str(excinfo.value)


def test_lyric_and_cover_results(tmp_path) -> None:
    scripts = {
        "s": {
            Operation.RESOLVE_LYRIC: {"lyric": "[00:01]hi", "tlyric": ""},
            Operation.RESOLVE_COVER: "https://img.example.test/1.jpg",
        }
    }
    service = _service(tmp_path, scripts)
    service.registry.create("Main", "s")
    track = {"id": "1", "source": "kw"}

    lyric = asyncio.run(service.resolve_lyric(track))
    cover = asyncio.run(service.resolve_cover(track, platform_id="wy"))

    assert lyric["lyric"] == "[00:01]hi"
    assert lyric["translated_lyric"] == ""
    assert lyric["source_name"] == "Main"
    assert cover["url"] == "https://img.example.test/1.jpg"


def test_ranking_list_and_detail(tmp_path) -> None:
    calls = []
    scripts = {"s": {Operation.RESOLVE_RANKING_DETAIL: {"list": [{"name": "Top"}], "total": 100}}}
    service = _service(tmp_path, scripts, calls)
    service.registry.create("Main", "s")

    catalog = service.resolve_ranking_list()
    detail = asyncio.run(service.resolve_ranking_detail("wy", "3778678", page=1, limit=5))

    assert any(platform["platform_id"] == "wy" for platform in catalog)
    assert detail["board_name"] == "Hot Songs"
    assert detail["list"] == [{"name": "Top"}]
    assert detail["total"] == 100
    assert calls[0] == ("resolve_ranking_detail", "wy", {"board_id": "3778678", "page": 1, "limit": 5})


def test_add_source_validates_before_persisting(tmp_path) -> None:
    service = _service(tmp_path, {"bad": ScriptInitError("SyntaxError: invalid"), "good": {}})

    with pytest.raises(ScriptInitError):
        asyncio.run(service.add_source("Bad", "bad"))
    assert service.registry.list_sources() == []

    record = asyncio.run(service.add_source("Good", "good", priority=4))
    assert record.priority == 4
    assert [item.name for item in service.registry.list_sources()] == ["Good"]


def test_update_source_validates_changed_script(tmp_path) -> None:
    service = _service(tmp_path, {"good": {}, "bad": ScriptInitError("NameError: x")})
    record = asyncio.run(service.add_source("Main", "good"))

    with pytest.raises(ScriptInitError):
        asyncio.run(service.update_source(record.id, script="bad"))
    assert service.registry.get(record.id).script == "good"

    updated = asyncio.run(service.update_source(record.id, priority=9))
    assert updated.priority == 9
    assert asyncio.run(service.update_source("missing", priority=1)) is None


def test_check_source_reports_each_operation(tmp_path) -> None:
    scripts = {"s": {Operation.SEARCH: [{"name": "test"}]}}
    service = _service(tmp_path, scripts)
    record = service.registry.create("Main", "s")

    report = asyncio.run(service.check_source(record.id))

    assert report["success"] is True
    assert report["inited"] == {"sources": {"kw": {"name": "Kuwo"}}}
    assert report["results"]["search"]["ok"] is True
    assert report["results"]["resolve_ranking_list"]["ok"] is False


def test_check_source_unknown_id(tmp_path) -> None:
    with pytest.raises(LookupError):
        asyncio.run(_service(tmp_path, {}).check_source("missing"))
