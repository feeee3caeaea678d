"""
Library index module.

This module provides:
- LibraryIndex: lazily built per (namespace, owner) listings
- IndexRebuilder: regenerates a listing from the role records
- LibraryStore: SQLite storage of listings and their states
"""

from .index import MEETINGS_NAMESPACE, LibraryIndex, LibraryPage, decode_token, encode_token
from .rebuild import (
    IndexedResource,
    IndexRebuilder,
    LibraryIndexer,
    MeetingsLibraryIndexer,
    RebuildResult,
)
from .store import IndexState, LibraryEntry, LibraryState, LibraryStore

__all__ = [
    "MEETINGS_NAMESPACE",
    "LibraryIndex",
    "LibraryPage",
    "decode_token",
    "encode_token",
    "IndexedResource",
    "IndexRebuilder",
    "LibraryIndexer",
    "MeetingsLibraryIndexer",
    "RebuildResult",
    "IndexState",
    "LibraryEntry",
    "LibraryState",
    "LibraryStore",
]
