import sys
from pathlib import Path

import pytest


# Worker processes and tests both import project packages from the repo root.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)


@pytest.fixture(autouse=True)
def _isolated_sources_db(tmp_path, monkeypatch):
    # Keep registries created without an explicit path out of the working tree.
    monkeypatch.setenv("MUSIC_SOURCES_DB_PATH", str(tmp_path / "default-sources.sqlite"))
