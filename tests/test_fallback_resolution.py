from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

import pytest

from engine.resolution import FallbackResolver, ResolutionPolicy
from sandbox.dispatch import Operation
from sandbox.errors import AggregateResolutionError, ScriptInitError, ScriptRuntimeError
from sandbox.session import InvocationResult, InvocationStatus


@dataclass(frozen=True)
class _Source:
    id: str
    name: str
    script: str


class _FakeSession:
    def __init__(self, name, result, log) -> None:
        self.name = name
        self.result = result
        self.log = log
        self.closed = False

    async def invoke(self, operation, platform_id, params=None):
        self.log.append(("invoke", self.name, Operation(operation).value, platform_id))
        return self.result

    async def close(self) -> None:
        self.closed = True
        self.log.append(("close", self.name))


def _ok(payload) -> InvocationResult:
    return InvocationResult(InvocationStatus.OK, payload=payload, target="export")


def _error(message) -> InvocationResult:
    return InvocationResult(InvocationStatus.ERROR, error=ScriptRuntimeError(message), target="handler")


def _factory(behaviours: dict, log: list):
    async def _create(script, *, name=None, **kwargs):
        log.append(("create", name))
        behaviour = behaviours[script]
        if isinstance(behaviour, Exception):
            raise behaviour
        return _FakeSession(name, behaviour, log)

    return _create


def test_first_success_short_circuits_in_priority_order() -> None:
    log = []
    behaviours = {
        "s1": _ok({"list": [{"name": "from one"}], "total": 1}),
        "s2": _ok({"list": [{"name": "from two"}], "total": 1}),
    }
    resolver = FallbackResolver(_factory(behaviours, log))
    sources = [_Source("1", "one", "s1"), _Source("2", "two", "s2")]

    resolution = asyncio.run(
        resolver.resolve(Operation.SEARCH, sources, platform_id="all", params={"keyword": "x"})
    )

    assert resolution.source_name == "one"
    assert resolution.payload == {"list": [{"name": "from one"}], "total": 1}
    assert [entry for entry in log if entry[0] == "create"] == [("create", "one")]
    assert ("close", "one") in log


def test_third_source_wins_after_two_runtime_errors() -> None:
    log = []
    behaviours = {
        "s1": _error("TypeError: bad"),
        "s2": _error("ValueError: worse"),
        "s3": _ok([{"name": "Song", "singer": "Artist"}]),
    }
    resolver = FallbackResolver(_factory(behaviours, log))
    sources = [_Source(str(i), f"source-{i}", f"s{i}") for i in (1, 2, 3)]

    resolution = asyncio.run(resolver.resolve("search", sources, platform_id="all", params={"keyword": "Song"}))

    assert resolution.source_name == "source-3"
    assert resolution.payload == {"list": [{"name": "Song", "singer": "Artist"}], "total": 1}
    assert [attempt.ok for attempt in resolution.attempts] == [False, False, True]
    assert [entry[1] for entry in log if entry[0] == "close"] == ["source-1", "source-2", "source-3"]


def test_each_session_is_closed_before_next_source_is_created() -> None:
    log = []
    behaviours = {"s1": _error("boom"), "s2": _ok({"url": "https://cdn.example.test/a.mp3"})}
    resolver = FallbackResolver(_factory(behaviours, log))

    asyncio.run(
        resolver.resolve(
            Operation.RESOLVE_PLAYABLE_URL,
            [_Source("1", "a", "s1"), _Source("2", "b", "s2")],
            platform_id="kw",
            params={"music_info": {}},
        )
    )

    assert log.index(("close", "a")) < log.index(("create", "b"))


def test_empty_source_list_is_no_sources_not_failure() -> None:
    resolver = FallbackResolver(_factory({}, []))

    resolution = asyncio.run(resolver.resolve(Operation.SEARCH, [], platform_id="all"))

    assert resolution.no_sources is True
    assert resolution.payload is None
    assert resolution.attempts == []


def test_all_failures_raise_aggregate_with_last_error() -> None:
    behaviours = {"s1": _error("first problem"), "s2": _error("second problem")}
    resolver = FallbackResolver(_factory(behaviours, []))

    with pytest.raises(AggregateResolutionError) as excinfo:
        asyncio.run(
            resolver.resolve(
                Operation.RESOLVE_LYRIC,
                [_Source("1", "a", "s1"), _Source("2", "b", "s2")],
                platform_id="kw",
            )
        )

    assert excinfo.value.attempted == 2
    assert str(excinfo.value) == "resolution failed after 2 source(s); last error: second problem"


def test_init_failure_is_logged_and_next_source_tried() -> None:
    behaviours = {"s1": ScriptInitError("SyntaxError: bad"), "s2": _ok("https://img.example.test/c.jpg")}
    resolver = FallbackResolver(_factory(behaviours, []))

    resolution = asyncio.run(
        resolver.resolve(
            Operation.RESOLVE_COVER,
            [_Source("1", "broken", "s1"), _Source("2", "covers", "s2")],
            platform_id="kw",
        )
    )

    assert resolution.payload == "https://img.example.test/c.jpg"
    assert resolution.attempts[0].error_kind == "script_init_error"


def test_empty_url_counts_as_failure() -> None:
    behaviours = {"s1": _ok({"url": ""}), "s2": _ok({"url": "https://cdn.example.test/b.mp3", "type": "320k"})}
    resolver = FallbackResolver(_factory(behaviours, []))

    resolution = asyncio.run(
        resolver.resolve(
            Operation.RESOLVE_PLAYABLE_URL,
            [_Source("1", "a", "s1"), _Source("2", "b", "s2")],
            platform_id="kw",
        )
    )

    assert resolution.source_name == "b"
    assert resolution.payload == {"url": "https://cdn.example.test/b.mp3", "quality": "320k"}
    assert resolution.attempts[0].error_kind == "invalid_result"


def test_empty_lyric_string_is_accepted() -> None:
    resolver = FallbackResolver(_factory({"s1": _ok("")}, []))

    resolution = asyncio.run(resolver.resolve(Operation.RESOLVE_LYRIC, [_Source("1", "a", "s1")], platform_id="kw"))

    assert resolution.payload == {"lyric": "", "translated_lyric": ""}


def test_not_supported_falls_through() -> None:
    not_supported = InvocationResult(InvocationStatus.NOT_SUPPORTED, target="none")
    behaviours = {"s1": not_supported, "s2": _ok({"list": [1], "total": 1})}
    resolver = FallbackResolver(_factory(behaviours, []))

    resolution = asyncio.run(
        resolver.resolve(
            Operation.RESOLVE_RANKING_DETAIL,
            [_Source("1", "a", "s1"), _Source("2", "b", "s2")],
            platform_id="wy",
            params={"board_id": "3778678"},
        )
    )

    assert resolution.source_name == "b"
    assert resolution.attempts[0].error == "not_supported"


def test_top_priority_only_policy_tries_one_source() -> None:
    log = []
    behaviours = {"s1": _error("down"), "s2": _ok([{"name": "never"}])}
    resolver = FallbackResolver(_factory(behaviours, log))

    with pytest.raises(AggregateResolutionError):
        asyncio.run(
            resolver.resolve(
                Operation.SEARCH,
                [_Source("1", "a", "s1"), _Source("2", "b", "s2")],
                platform_id="all",
                policy=ResolutionPolicy.TOP_PRIORITY_ONLY,
            )
        )

    assert ("create", "b") not in log


def test_fan_out_merges_successful_groups_in_priority_order() -> None:
    behaviours = {
        "s1": _ok([{"name": "a1"}]),
        "s2": _error("down"),
        "s3": _ok({"list": [{"name": "c1"}, {"name": "c2"}], "total": 10}),
    }
    resolver = FallbackResolver(_factory(behaviours, []))
    sources = [_Source(str(i), f"source-{i}", f"s{i}") for i in (1, 2, 3)]

    resolution = asyncio.run(resolver.resolve(Operation.SEARCH, sources, platform_id="all", policy="fan_out"))

    assert [group["source_name"] for group in resolution.groups] == ["source-1", "source-3"]
    assert resolution.payload == {"list": [{"name": "a1"}, {"name": "c1"}, {"name": "c2"}], "total": 11}
    assert resolution.source_name == "source-1"


def test_non_default_policy_rejected_for_single_answer_operations() -> None:
    resolver = FallbackResolver(_factory({}, []))

    with pytest.raises(ValueError):
        asyncio.run(
            resolver.resolve(
                Operation.RESOLVE_PLAYABLE_URL,
                [_Source("1", "a", "s1")],
                platform_id="kw",
                policy=ResolutionPolicy.FAN_OUT,
            )
        )


def test_session_options_are_forwarded_to_factory() -> None:
    seen = {}

    async def _create(script, **kwargs):
        seen.update(kwargs)
        return _FakeSession(kwargs.get("name"), _ok([1]), [])

    resolver = FallbackResolver(_create, session_options={"timeout": 5, "poll_ceiling": 0.5})
    asyncio.run(resolver.resolve(Operation.SEARCH, [_Source("1", "a", "s1")], platform_id="all"))

    assert seen == {"name": "a", "timeout": 5, "poll_ceiling": 0.5}


def test_endless_evaluation_does_not_block_next_source() -> None:
    endless = "while True:\n    pass\n"
    working = (
        "def search(request):\n"
        '    return {"list": [{"name": request["info"]["keyword"]}], "total": 1}\n'
    )
    resolver = FallbackResolver(session_options={"timeout": 2, "poll_interval": 0.02, "poll_ceiling": 0.2})
    sources = [_Source("1", "endless", endless), _Source("2", "working", working)]
    started = time.monotonic()

    resolution = asyncio.run(
        resolver.resolve(Operation.SEARCH, sources, platform_id="kw", params={"keyword": "hello"})
    )

    assert time.monotonic() - started < 15
    assert resolution.source_name == "working"
    assert resolution.payload == {"list": [{"name": "hello"}], "total": 1}
    assert [attempt.error_kind for attempt in resolution.attempts] == ["script_timeout", None]
