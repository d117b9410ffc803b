"""Built-in ranking boards per platform.

Board ids are the platforms' own chart ids; they do not come from source
scripts. Scripts are only asked for a board's contents.
"""

from __future__ import annotations

import copy
from typing import Any

BUILT_IN_RANKINGS: list[dict[str, Any]] = [
    {
        "platform_id": "wy",
        "platform_name": "NetEase Cloud Music",
        "list": [
            {"id": "19723756", "name": "Soaring"},
            {"id": "3779629", "name": "New Songs"},
            {"id": "3778678", "name": "Hot Songs"},
            {"id": "2884035", "name": "Original Songs"},
        ],
    },
    {
        "platform_id": "tx",
        "platform_name": "QQ Music",
        "list": [
            {"id": "62", "name": "Soaring"},
            {"id": "26", "name": "Hot Songs"},
            {"id": "27", "name": "New Songs"},
            {"id": "4", "name": "Popularity Index"},
        ],
    },
    {
        "platform_id": "kg",
        "platform_name": "Kugou Music",
        "list": [
            {"id": "8888", "name": "TOP500"},
            {"id": "6666", "name": "Soaring"},
        ],
    },
    {
        "platform_id": "kw",
        "platform_name": "Kuwo Music",
        "list": [
            {"id": "93", "name": "Kuwo Cool Music"},
            {"id": "17", "name": "New Songs"},
        ],
    },
]


def ranking_catalog() -> list[dict[str, Any]]:
    return copy.deepcopy(BUILT_IN_RANKINGS)


def find_board(platform_id: str, board_id: str) -> dict[str, Any] | None:
    for platform in BUILT_IN_RANKINGS:
        if platform["platform_id"] != platform_id:
            continue
        for board in platform["list"]:
            if board["id"] == str(board_id):
                return {**board, "platform_id": platform_id, "platform_name": platform["platform_name"]}
    return None
