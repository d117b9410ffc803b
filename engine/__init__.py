from .music_service import MusicService
from .rankings import BUILT_IN_RANKINGS, find_board, ranking_catalog
from .resolution import FallbackResolver, Resolution, ResolutionPolicy, SourceAttempt
from .results import is_successful, normalize_payload

__all__ = [
    "BUILT_IN_RANKINGS",
    "FallbackResolver",
    "MusicService",
    "Resolution",
    "ResolutionPolicy",
    "SourceAttempt",
    "find_board",
    "is_successful",
    "normalize_payload",
    "ranking_catalog",
]
