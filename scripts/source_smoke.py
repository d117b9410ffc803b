#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config.settings import SANDBOX_LOG_LEVEL  # noqa: E402
from db.sources import SourceRegistry  # noqa: E402
from engine.music_service import MusicService  # noqa: E402
from sandbox.errors import AggregateResolutionError, ScriptInitError, ScriptTimeoutError  # noqa: E402


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _read_script(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _print_listing(result: dict[str, Any]) -> None:
    if result.get("no_sources"):
        print(result["error"])
        return
    print(f"source={result.get('source_name')} total={result.get('total')} shown={len(result['list'])}")
    for idx, row in enumerate(result["list"], start=1):
        if isinstance(row, dict):
            print(f"{idx}. {row.get('name')} | {row.get('singer')} | {row.get('album_name') or row.get('albumName')}")
        else:
            print(f"{idx}. {row}")


async def _run(args: argparse.Namespace, service: MusicService) -> int:
    if args.command == "validate":
        await service.validate(_read_script(args.file))
        print(f"{args.file}: ok")
        return 0
    if args.command == "search":
        _print_listing(await service.search(args.keyword, page=args.page, limit=args.limit, platform_id=args.platform))
        return 0
    if args.command == "url":
        track = {"id": args.track_id, "songmid": args.track_id, "source": args.platform}
        _print_json(await service.resolve_url(track, quality=args.quality))
        return 0
    if args.command == "rankings":
        for platform in service.resolve_ranking_list():
            boards = ", ".join(f"{board['id']}={board['name']}" for board in platform["list"])
            print(f"{platform['platform_id']} ({platform['platform_name']}): {boards}")
        return 0
    if args.command == "board":
        _print_listing(await service.resolve_ranking_detail(args.platform, args.board, page=args.page, limit=args.limit))
        return 0
    if args.command == "add":
        record = await service.add_source(
            args.name,
            _read_script(args.file),
            enabled=not args.disabled,
            priority=args.priority,
        )
        print(f"added source id={record.id} name={record.name} priority={record.priority}")
        return 0
    if args.command == "list":
        for record in service.registry.list_sources():
            state = "enabled" if record.enabled else "disabled"
            print(f"{record.id} | {record.name} | priority={record.priority} | {state}")
        return 0
    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Exercise music source scripts from the command line.")
    parser.add_argument("--db", default=None, help="Path to the sources database (defaults to MUSIC_SOURCES_DB_PATH).")
    parser.add_argument("--verbose", action="store_true", help="Log sandbox and resolution activity.")
    commands = parser.add_subparsers(dest="command", required=True)

    validate = commands.add_parser("validate", help="Evaluate a script file without saving it.")
    validate.add_argument("file")

    search = commands.add_parser("search", help="Search across enabled sources.")
    search.add_argument("keyword")
    search.add_argument("--platform", default="all")
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--limit", type=int, default=30)

    url = commands.add_parser("url", help="Resolve a playable URL for a track id.")
    url.add_argument("platform")
    url.add_argument("track_id")
    url.add_argument("--quality", default="128k")

    commands.add_parser("rankings", help="List built-in ranking boards.")

    board = commands.add_parser("board", help="Fetch one ranking board's tracks.")
    board.add_argument("platform")
    board.add_argument("board")
    board.add_argument("--page", type=int, default=1)
    board.add_argument("--limit", type=int, default=30)

    add = commands.add_parser("add", help="Validate and store a source script.")
    add.add_argument("name")
    add.add_argument("file")
    add.add_argument("--priority", type=int, default=0)
    add.add_argument("--disabled", action="store_true")

    commands.add_parser("list", help="List stored sources.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else getattr(logging, SANDBOX_LOG_LEVEL, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    service = MusicService(SourceRegistry(args.db))
    try:
        return asyncio.run(_run(args, service))
    except (ScriptInitError, ScriptTimeoutError) as exc:
        print(f"script rejected: {exc}")
        return 1
    except AggregateResolutionError as exc:
        print(str(exc))
        return 1
    except (OSError, ValueError) as exc:
        print(f"error: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
