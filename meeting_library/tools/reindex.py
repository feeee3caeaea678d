"""
Reindex CLI tool for the meeting library.

This tool marks library listings stale and rebuilds them from the role
records, cleaning up dangling references on the way.

Usage:
    meeting-library-reindex --data-dir <path> --owner-id <id> [--owner-id <id> ...] [options]

Invariants:
    - Reindexing is idempotent (can be re-run safely)
    - Works offline against the data directory, no running service needed
    - A failure for one owner does not stop the others

How to change safely:
    - Keep the exit code non-zero whenever any owner failed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field

from ..bootstrap import MeetingLibrary
from ..config import LibraryConfig, ObservabilityConfig, ServiceConfig, StorageConfig
from ..errors import MeetingLibraryError
from ..library.index import MEETINGS_NAMESPACE
from ..log import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class ReindexConfig:
    """Configuration for a reindex run.

    Attributes:
        data_dir: Directory of the SQLite databases
        owner_ids: Owners whose libraries to reindex
        namespace: Library namespace
        purge_only: Only mark the libraries stale, rebuild on next read
        cleanup_dangling: Delete role records of deleted resources
    """

    data_dir: str
    owner_ids: list[str]
    namespace: str = MEETINGS_NAMESPACE
    purge_only: bool = False
    cleanup_dangling: bool = True


@dataclass
class OwnerResult:
    """Outcome for one owner."""

    owner_id: str
    entries: int | None = None
    dangling: int = 0
    error: str | None = None


@dataclass
class ReindexResult:
    """Result of a reindex run.

    Attributes:
        owners: Per-owner outcomes
        duration_ms: Total duration
    """

    owners: list[OwnerResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return all(owner.error is None for owner in self.owners)


class ReindexTool:
    """Purges and rebuilds library listings.

    Example:
        >>> tool = ReindexTool(ReindexConfig(data_dir="/var/lib/meeting-library", owner_ids=["u:cam:alice"]))
        >>> result = await tool.run()
        >>> result.owners[0].entries
    """

    def __init__(self, config: ReindexConfig) -> None:
        self.config = config

    async def run(self) -> ReindexResult:
        """Execute the reindex.

        Returns:
            ReindexResult with one entry per owner
        """
        start_time = time.time()

        app = MeetingLibrary(
            ServiceConfig(
                storage=StorageConfig(data_dir=self.config.data_dir),
                library=LibraryConfig(cleanup_dangling=self.config.cleanup_dangling),
            )
        )
        await app.start()

        result = ReindexResult()
        try:
            for owner_id in self.config.owner_ids:
                result.owners.append(await self._reindex_owner(app, owner_id))
        finally:
            await app.stop()

        result.duration_ms = int((time.time() - start_time) * 1000)
        return result

    async def _reindex_owner(self, app: MeetingLibrary, owner_id: str) -> OwnerResult:
        namespace = self.config.namespace
        try:
            await app.library_index.purge(namespace, owner_id)
            if self.config.purge_only:
                return OwnerResult(owner_id=owner_id)

            rebuilt = await app.library_index.rebuild(namespace, owner_id)
            return OwnerResult(owner_id=owner_id, entries=len(rebuilt.entries), dangling=len(rebuilt.dangling))
        except MeetingLibraryError as e:
            logger.error("Reindex failed", extra={"owner_id": owner_id, "error": e.message})
            return OwnerResult(owner_id=owner_id, error=e.message)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the reindex tool."""
    parser = argparse.ArgumentParser(description="Purge and rebuild meeting library indexes")
    parser.add_argument("--data-dir", required=True, help="Directory of the SQLite databases")
    parser.add_argument(
        "--owner-id",
        action="append",
        required=True,
        dest="owner_ids",
        help="User or group whose library to reindex (repeatable)",
    )
    parser.add_argument("--namespace", default=MEETINGS_NAMESPACE, help="Library namespace")
    parser.add_argument("--purge-only", action="store_true", help="Only mark libraries stale")
    parser.add_argument("--keep-dangling", action="store_true", help="Don't delete dangling role records")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    setup_logging(
        ServiceConfig(
            observability=ObservabilityConfig(log_level="DEBUG" if args.verbose else "INFO", log_format="text")
        )
    )

    config = ReindexConfig(
        data_dir=args.data_dir,
        owner_ids=args.owner_ids,
        namespace=args.namespace,
        purge_only=args.purge_only,
        cleanup_dangling=not args.keep_dangling,
    )

    result = asyncio.run(ReindexTool(config).run())

    for owner in result.owners:
        if owner.error is not None:
            print(f"{owner.owner_id}: failed: {owner.error}")
        elif owner.entries is None:
            print(f"{owner.owner_id}: purged")
        else:
            print(f"{owner.owner_id}: {owner.entries} entries ({owner.dangling} dangling)")
    print(f"Duration: {result.duration_ms}ms")

    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
