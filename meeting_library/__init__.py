"""
Meeting Library - authorization-scoped meeting listings for a multi-tenant
collaboration platform.

This package implements the per-principal "library" of meetings:
- A pure visibility evaluator over (viewer, resource, owner)
- A derived, lazily built library index per (namespace, owner)
- A rebuild procedure that regenerates an index from the role records

Architecture:
    ┌─────────────┐     ┌───────────────┐     ┌──────────────────┐
    │  Meetings   │────▶│ Library Index │────▶│ Rebuild Procedure│
    │  Service    │     │   (SQLite)    │     │                  │
    └──────┬──────┘     └───────┬───────┘     └────────┬─────────┘
           │                    │                      │
           ▼                    ▼                      ▼
    ┌─────────────┐     ┌───────────────┐     ┌──────────────────┐
    │ Meeting     │     │  Visibility   │     │  Authz store     │
    │ store       │     │  evaluator    │     │  (roles)         │
    └─────────────┘     └───────────────┘     └──────────────────┘

Invariants:
    - Role records are the source of truth for who has access
    - Library entries are a derived cache that can be rebuilt at any time
    - Entries are filtered by visibility at read time, never at write time

How to change safely:
    - Keep the visibility evaluator free of I/O
    - Every index write for an owner must happen under that owner's lock
"""

from ._version import __version__

__all__ = ["__version__"]
