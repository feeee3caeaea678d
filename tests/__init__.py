"""
Meeting Library Test Suite.

This package contains:
- unit/: Unit tests (pure functions, single stores, SQLite in temp dirs)
- integration/: Integration tests (meetings service, library scenarios,
  reindex tool; SQLite and in-memory event stream)
"""
