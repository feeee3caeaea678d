"""
Unit tests for the library index and its rebuild.

Tests cover:
- Lazy build, ordering and pagination
- Per-viewer filtering
- Purge idempotence and rank preservation across rebuilds
- Dangling reference tolerance and cleanup
- Single-flight rebuilds under concurrency
- Store failures leaving the index unchanged
- Mutations skipped while the index is not built
"""

import asyncio
import sqlite3
import tempfile
from types import SimpleNamespace

import pytest

from meeting_library.authz.principals import ViewerContext
from meeting_library.authz.store import AuthzStore
from meeting_library.authz.visibility import Visibility
from meeting_library.errors import (
    AuthorizationError,
    InvalidArgumentError,
    PrincipalNotFoundError,
    TransientStoreError,
)
from meeting_library.events.base import EventNames, EventPublisher
from meeting_library.events.memory import InMemoryEventStream
from meeting_library.library.index import (
    MEETINGS_NAMESPACE,
    LibraryIndex,
    decode_token,
    encode_token,
)
from meeting_library.library.rebuild import IndexedResource, IndexRebuilder, MeetingsLibraryIndexer
from meeting_library.library.store import IndexState, LibraryEntry, LibraryStore
from meeting_library.meetings.store import MeetingStore

NS = MEETINGS_NAMESPACE
OWNER = "u:cam:alice"
ALICE = ViewerContext(tenant_alias="cam", user_id=OWNER)
BOB = ViewerContext(tenant_alias="cam", user_id="u:cam:bob")
ANONYMOUS = ViewerContext.anonymous("cam")


async def add_meeting(env, name, visibility="public", created=None, owner_id=OWNER):
    """Create a meeting on which owner_id holds the manager role."""
    meeting = await env.meetings.create_meeting(
        created_by="u:cam:alice",
        display_name=name,
        description=name,
        visibility=visibility,
        created=created,
        meeting_id=f"d:cam:{name}",
    )
    await env.authz.update_roles(meeting.meeting_id, {owner_id: "manager"})
    return meeting


def ids(page):
    return [e.resource_id for e in page.entries]


class TestTokens:
    """Tests for continuation tokens."""

    def test_token_round_trip(self):
        token = encode_token(LibraryEntry(OWNER, "d:cam:m1", 1234, "public", "cam"))
        assert decode_token(token) == (1234, "d:cam:m1")

    @pytest.mark.parametrize("token", ["!!!", "bm90IGpzb24", "WzEsMiwzXQ", "WyJhIiwiYiJd"])
    def test_invalid_tokens(self, token):
        with pytest.raises(InvalidArgumentError):
            decode_token(token)


class TestLibraryIndex:
    """Tests for LibraryIndex."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def env(self, data_dir):
        """Stores, rebuilder and index with the meetings namespace registered."""
        authz = AuthzStore(data_dir)
        meetings = MeetingStore(data_dir)
        library = LibraryStore(data_dir)
        rebuilder = IndexRebuilder(authz, library, batch_size=3)
        index = LibraryIndex(authz, library, rebuilder, default_page_size=10, max_page_size=20)
        index.register(NS, MeetingsLibraryIndexer(meetings))
        return SimpleNamespace(authz=authz, meetings=meetings, library=library, rebuilder=rebuilder, index=index)

    @pytest.fixture
    def count_rebuilds(self, env, monkeypatch):
        """Count rebuilds, slowing them down so concurrent readers overlap."""
        calls = []
        real_rebuild = env.rebuilder.rebuild

        async def rebuild(namespace, owner_id, indexer):
            calls.append(owner_id)
            await asyncio.sleep(0.01)
            return await real_rebuild(namespace, owner_id, indexer)

        monkeypatch.setattr(env.rebuilder, "rebuild", rebuild)
        return calls

    # Building and reading

    @pytest.mark.asyncio
    async def test_first_read_builds(self, env):
        """An absent index is built on first read, newest first."""
        await env.authz.create_principal(OWNER, "public")
        for i in range(4):
            await add_meeting(env, f"m{i}", created=1000 + i)

        assert (await env.index.get_state(NS, OWNER)).state == IndexState.ABSENT

        page = await env.index.get_library(NS, OWNER, ALICE)
        assert ids(page) == ["d:cam:m3", "d:cam:m2", "d:cam:m1", "d:cam:m0"]
        assert page.next_token is None
        assert page.visibility == Visibility.PRIVATE
        assert (await env.index.get_state(NS, OWNER)).state == IndexState.BUILT

    @pytest.mark.asyncio
    async def test_empty_library(self, env):
        await env.authz.create_principal(OWNER, "public")

        page = await env.index.get_library(NS, OWNER, ALICE)
        assert page.entries == []
        assert page.next_token is None
        assert (await env.index.get_state(NS, OWNER)).is_built

    @pytest.mark.asyncio
    async def test_pagination_has_no_duplicates_or_omissions(self, env):
        await env.authz.create_principal(OWNER, "public")
        for i in range(25):
            await add_meeting(env, f"m{i:02d}", created=5000)

        seen = []
        sizes = []
        start = None
        while True:
            page = await env.index.get_library(NS, OWNER, ALICE, start=start, limit=10)
            seen.extend(ids(page))
            sizes.append(len(page.entries))
            start = page.next_token
            if start is None:
                break

        assert sizes == [10, 10, 5]
        assert seen == sorted({f"d:cam:m{i:02d}" for i in range(25)}, reverse=True)

    @pytest.mark.asyncio
    async def test_exactly_full_last_page_has_no_token(self, env):
        await env.authz.create_principal(OWNER, "public")
        for i in range(4):
            await add_meeting(env, f"m{i}", created=1000 + i)

        page = await env.index.get_library(NS, OWNER, ALICE, limit=4)
        assert len(page.entries) == 4
        assert page.next_token is None

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, env):
        await env.authz.create_principal(OWNER, "public")
        for i in range(25):
            await add_meeting(env, f"m{i:02d}", created=1000 + i)

        assert len((await env.index.get_library(NS, OWNER, ALICE, limit=0)).entries) == 1
        assert len((await env.index.get_library(NS, OWNER, ALICE, limit=-5)).entries) == 1
        assert len((await env.index.get_library(NS, OWNER, ALICE, limit=1000)).entries) == 20
        assert len((await env.index.get_library(NS, OWNER, ALICE)).entries) == 10

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, env):
        await env.authz.create_principal(OWNER, "public")

        with pytest.raises(InvalidArgumentError):
            await env.index.get_library(NS, OWNER, ALICE, limit="ten")
        with pytest.raises(InvalidArgumentError):
            await env.index.get_library(NS, OWNER, ALICE, start="not-a-token")
        with pytest.raises(InvalidArgumentError):
            await env.index.get_library(NS, "d:cam:m1", ALICE)
        with pytest.raises(InvalidArgumentError):
            await env.index.get_library("unknown:namespace", OWNER, ALICE)

    @pytest.mark.asyncio
    async def test_missing_owner(self, env):
        with pytest.raises(PrincipalNotFoundError) as exc_info:
            await env.index.get_library(NS, "u:cam:ghost", ALICE)
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_private_owner_denies_others(self, env):
        """A denied viewer gets an error, not an empty page."""
        await env.authz.create_principal(OWNER, "private")
        await add_meeting(env, "m0", visibility="public")

        with pytest.raises(AuthorizationError) as exc_info:
            await env.index.get_library(NS, OWNER, BOB)
        assert exc_info.value.status == 401

        assert (await env.index.get_state(NS, OWNER)).state == IndexState.ABSENT

    # Filtering

    @pytest.mark.asyncio
    async def test_entries_filtered_per_viewer(self, env):
        await env.authz.create_principal(OWNER, "public")
        await add_meeting(env, "pub", visibility="public", created=3000)
        await add_meeting(env, "log", visibility="loggedin", created=2000)
        await add_meeting(env, "priv", visibility="private", created=1000)

        assert ids(await env.index.get_library(NS, OWNER, ANONYMOUS)) == ["d:cam:pub"]
        assert ids(await env.index.get_library(NS, OWNER, BOB)) == ["d:cam:pub", "d:cam:log"]
        assert ids(await env.index.get_library(NS, OWNER, ALICE)) == ["d:cam:pub", "d:cam:log", "d:cam:priv"]

    @pytest.mark.asyncio
    async def test_filtered_pagination(self, env):
        """Pages are filled with visible entries only."""
        await env.authz.create_principal(OWNER, "public")
        for i in range(8):
            await add_meeting(env, f"m{i}", visibility="public" if i % 2 else "private", created=1000 + i)

        first = await env.index.get_library(NS, OWNER, ANONYMOUS, limit=3)
        assert ids(first) == ["d:cam:m7", "d:cam:m5", "d:cam:m3"]
        assert first.next_token is not None

        second = await env.index.get_library(NS, OWNER, ANONYMOUS, start=first.next_token, limit=3)
        assert ids(second) == ["d:cam:m1"]
        assert second.next_token is None

    @pytest.mark.asyncio
    async def test_role_on_private_entry_grants_visibility(self, env):
        await env.authz.create_principal(OWNER, "public")
        meeting = await add_meeting(env, "priv", visibility="private")
        await env.authz.update_roles(meeting.meeting_id, {"u:cam:bob": "member"})

        assert ids(await env.index.get_library(NS, OWNER, BOB)) == ["d:cam:priv"]

    # Purge and rebuild

    @pytest.mark.asyncio
    async def test_purge_is_idempotent(self, env):
        await env.authz.create_principal(OWNER, "public")
        for i in range(3):
            await add_meeting(env, f"m{i}", created=1000 + i)

        before = await env.index.get_library(NS, OWNER, ALICE)

        first = await env.index.purge(NS, OWNER)
        second = await env.index.purge(NS, OWNER)
        assert first.state == IndexState.STALE
        assert second.version == first.version

        after = await env.index.get_library(NS, OWNER, ALICE)
        assert ids(after) == ids(before)
        assert (await env.index.get_state(NS, OWNER)).state == IndexState.BUILT

    @pytest.mark.asyncio
    async def test_purge_absent_index_is_noop(self, env):
        state = await env.index.purge(NS, OWNER)
        assert state.state == IndexState.ABSENT

    @pytest.mark.asyncio
    async def test_rebuild_reflects_authz_changes(self, env):
        """A purge picks up roles granted and revoked behind the index's back."""
        await env.authz.create_principal(OWNER, "public")
        await add_meeting(env, "m0", created=1000)
        other = await add_meeting(env, "m1", created=2000, owner_id="u:cam:bob")
        await env.index.get_library(NS, OWNER, ALICE)

        await env.authz.update_roles(other.meeting_id, {OWNER: "member"})
        await env.authz.update_roles("d:cam:m0", {OWNER: None})
        await env.index.purge(NS, OWNER)

        assert ids(await env.index.get_library(NS, OWNER, ALICE)) == ["d:cam:m1"]

    @pytest.mark.asyncio
    async def test_rebuild_keeps_prior_rank(self, env):
        """Ranks in the stale index survive; new entries rank by creation time."""
        await env.authz.create_principal(OWNER, "public")
        m0 = await add_meeting(env, "m0", created=1000)
        await add_meeting(env, "m1", created=2000)
        await env.index.get_library(NS, OWNER, ALICE)

        resource = IndexedResource(m0.meeting_id, "cam", "public", created=1000, last_modified=9000)
        await env.index.update(NS, [resource.entry_for(OWNER)])
        await env.index.purge(NS, OWNER)
        await add_meeting(env, "m2", created=3000)

        page = await env.index.get_library(NS, OWNER, ALICE)
        assert [(e.resource_id, e.rank) for e in page.entries] == [
            ("d:cam:m0", 9000),
            ("d:cam:m2", 3000),
            ("d:cam:m1", 2000),
        ]

    @pytest.mark.asyncio
    async def test_forced_rebuild(self, env):
        await env.authz.create_principal(OWNER, "public")
        await add_meeting(env, "m0")
        await env.index.get_library(NS, OWNER, ALICE)
        version = (await env.index.get_state(NS, OWNER)).version

        result = await env.index.rebuild(NS, OWNER)
        assert [e.resource_id for e in result.entries] == ["d:cam:m0"]
        assert result.state.version == version + 1

    # Dangling references

    @pytest.mark.asyncio
    async def test_dangling_references_are_skipped_and_cleaned(self, env):
        """N live + M dangling references yield exactly N entries."""
        await env.authz.create_principal(OWNER, "public")
        for i in range(4):
            await add_meeting(env, f"live{i}", created=1000 + i)
        for i in range(5):
            await env.authz.update_roles(f"d:cam:gone{i}", {OWNER: "manager", "u:cam:bob": "member"})

        page = await env.index.get_library(NS, OWNER, ALICE)
        assert sorted(ids(page)) == [f"d:cam:live{i}" for i in range(4)]

        for i in range(5):
            assert await env.authz.get_roles(f"d:cam:gone{i}") == {"u:cam:bob": "member"}

    @pytest.mark.asyncio
    async def test_only_dangling_references(self, env):
        await env.authz.create_principal(OWNER, "public")
        for i in range(7):
            await env.authz.update_roles(f"d:cam:gone{i}", {OWNER: "manager"})

        result = await env.index.rebuild(NS, OWNER)
        assert result.entries == []
        assert len(result.dangling) == 7
        assert result.cleaned == 7
        assert (await env.index.get_state(NS, OWNER)).is_built

    @pytest.mark.asyncio
    async def test_dangling_roles_kept_without_cleanup(self, env):
        env.rebuilder.cleanup_dangling = False
        await env.authz.create_principal(OWNER, "public")
        await env.authz.update_roles("d:cam:gone", {OWNER: "manager"})

        result = await env.index.rebuild(NS, OWNER)
        assert result.dangling == ["d:cam:gone"]
        assert result.cleaned == 0
        assert await env.authz.get_roles("d:cam:gone") == {OWNER: "manager"}

    # Concurrency

    @pytest.mark.asyncio
    async def test_concurrent_reads_rebuild_once(self, env, count_rebuilds):
        await env.authz.create_principal(OWNER, "public")
        for i in range(5):
            await add_meeting(env, f"m{i}", created=1000 + i)

        pages = await asyncio.gather(*[env.index.get_library(NS, OWNER, ALICE) for _ in range(6)])

        assert count_rebuilds == [OWNER]
        assert all(ids(page) == ids(pages[0]) for page in pages)
        assert len(pages[0].entries) == 5

    @pytest.mark.asyncio
    async def test_distinct_owners_rebuild_independently(self, env, count_rebuilds):
        await env.authz.create_principal(OWNER, "public")
        await env.authz.create_principal("u:cam:bob", "public")
        await add_meeting(env, "a", owner_id=OWNER)
        await add_meeting(env, "b", owner_id="u:cam:bob")

        alice_page, bob_page = await asyncio.gather(
            env.index.get_library(NS, OWNER, ALICE),
            env.index.get_library(NS, "u:cam:bob", BOB),
        )

        assert sorted(count_rebuilds) == [OWNER, "u:cam:bob"]
        assert ids(alice_page) == ["d:cam:a"]
        assert ids(bob_page) == ["d:cam:b"]

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, env, count_rebuilds):
        """Per-owner locks don't outlive the work that needed them."""
        owners = [f"u:cam:user{i}" for i in range(20)]
        for owner_id in owners:
            await env.authz.create_principal(owner_id, "public")

        await asyncio.gather(*[env.index.get_library(NS, owner_id, ANONYMOUS) for owner_id in owners * 2])
        await asyncio.gather(*[env.index.purge(NS, owner_id) for owner_id in owners])
        await env.index.remove(NS, owners, "d:cam:m0")

        assert sorted(count_rebuilds) == sorted(owners)
        assert env.index._locks == {}
        assert env.index._lock_users == {}

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, env, monkeypatch):
        await env.authz.create_principal(OWNER, "public")
        await add_meeting(env, "m0")

        async def unavailable(meeting_ids):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(env.meetings, "get_meetings_by_id", unavailable)

        with pytest.raises(TransientStoreError):
            await env.index.get_library(NS, OWNER, ALICE)
        assert env.index._locks == {}

    # Store failures

    @pytest.mark.asyncio
    async def test_store_failure_leaves_index_unchanged(self, env, monkeypatch):
        await env.authz.create_principal(OWNER, "public")
        await add_meeting(env, "m0", created=1000)
        await env.index.get_library(NS, OWNER, ALICE)
        stale = await env.index.purge(NS, OWNER)

        async def unavailable(meeting_ids):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(env.meetings, "get_meetings_by_id", unavailable)

        with pytest.raises(TransientStoreError) as exc_info:
            await env.index.get_library(NS, OWNER, ALICE)
        assert exc_info.value.retryable
        assert exc_info.value.status == 503

        state = await env.index.get_state(NS, OWNER)
        assert state.state == IndexState.STALE
        assert state.version == stale.version
        assert await env.library.get_ranks(NS, OWNER) == {"d:cam:m0": 1000}

        monkeypatch.undo()
        assert ids(await env.index.get_library(NS, OWNER, ALICE)) == ["d:cam:m0"]

    # Mutations

    @pytest.mark.asyncio
    async def test_mutations_skipped_when_not_built(self, env):
        entry = LibraryEntry(OWNER, "d:cam:m0", 1000, "public", "cam")

        assert await env.index.insert(NS, [entry]) == 0
        assert await env.index.update(NS, [entry]) == 0
        assert await env.index.remove(NS, [OWNER], "d:cam:m0") == 0

        assert (await env.index.get_state(NS, OWNER)).state == IndexState.ABSENT
        assert await env.library.count_entries(NS, OWNER) == 0

    @pytest.mark.asyncio
    async def test_insert_update_remove(self, env):
        await env.authz.create_principal(OWNER, "public")
        await env.index.get_library(NS, OWNER, ALICE)
        await env.authz.update_roles("d:cam:m0", {OWNER: "manager"})

        entry = LibraryEntry(OWNER, "d:cam:m0", 1000, "public", "cam")
        assert await env.index.insert(NS, [entry]) == 1
        assert await env.index.insert(NS, [entry]) == 1
        assert await env.library.count_entries(NS, OWNER) == 1

        moved = LibraryEntry(OWNER, "d:cam:m0", 2000, "private", "cam")
        assert await env.index.update(NS, [moved]) == 1
        page = await env.index.get_library(NS, OWNER, ALICE)
        assert [(e.rank, e.visibility) for e in page.entries] == [(2000, "private")]

        assert await env.index.remove(NS, [OWNER, OWNER], "d:cam:m0") == 1
        assert await env.index.remove(NS, [OWNER], "d:cam:m0") == 0
        assert (await env.index.get_library(NS, OWNER, ALICE)).entries == []

    @pytest.mark.asyncio
    async def test_mutations_reject_unknown_namespace(self, env):
        with pytest.raises(InvalidArgumentError):
            await env.index.insert("unknown:namespace", [])

    # Owner validation

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["not-an-id", "garbage::", "d:cam:m1", "x:cam:alice"])
    async def test_malformed_owner_rejected(self, env, owner_id):
        with pytest.raises(InvalidArgumentError):
            await env.index.purge(NS, owner_id)
        with pytest.raises(InvalidArgumentError):
            await env.index.rebuild(NS, owner_id)
        with pytest.raises(InvalidArgumentError):
            await env.index.ensure_built(NS, owner_id)
        with pytest.raises(InvalidArgumentError):
            await env.index.get_state(NS, owner_id)

        assert (await env.library.get_state(NS, owner_id)).state == IndexState.ABSENT

    @pytest.mark.asyncio
    async def test_mutations_reject_malformed_owner(self, env):
        """A malformed owner fails the whole call before any listing is written."""
        await env.authz.create_principal(OWNER, "public")
        await env.index.get_library(NS, OWNER, ALICE)

        good = LibraryEntry(OWNER, "d:cam:m0", 1000, "public", "cam")
        bad = LibraryEntry("not-an-id", "d:cam:m0", 1000, "public", "cam")

        with pytest.raises(InvalidArgumentError):
            await env.index.insert(NS, [good, bad])
        with pytest.raises(InvalidArgumentError):
            await env.index.update(NS, [good, bad])
        assert await env.library.count_entries(NS, OWNER) == 0

        await env.index.insert(NS, [good])
        with pytest.raises(InvalidArgumentError):
            await env.index.remove(NS, [OWNER, "garbage::"], "d:cam:m0")
        assert await env.library.count_entries(NS, OWNER) == 1

    # Events

    @pytest.mark.asyncio
    async def test_index_publishes_events(self, env):
        stream = InMemoryEventStream()
        await stream.connect()
        env.index.publisher = EventPublisher(stream, "library")

        await env.authz.create_principal(OWNER, "public")
        await add_meeting(env, "m0")
        await env.index.get_library(NS, OWNER, ALICE)
        await env.index.purge(NS, OWNER)
        await env.index.remove(NS, [OWNER], "d:cam:m0")

        names = [event.name for event in stream.get_events("library", key=OWNER)]
        assert names == [EventNames.LIBRARY_REBUILT, EventNames.LIBRARY_PURGED]
