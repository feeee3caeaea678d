"""
CLI tools for meeting library administration.

This module provides command-line tools for:
- reindex: Purge and rebuild library indexes

Invariants:
    - Tools work offline (no running service required)
    - Operations are idempotent
"""

from .reindex import ReindexTool

__all__ = ["ReindexTool"]
