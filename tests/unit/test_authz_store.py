"""
Unit tests for the authorization SQLite store.

Tests cover:
- Principals and group memberships
- Viewer context construction
- Role records and paging through them
"""

import tempfile

import pytest

from meeting_library.authz.store import AuthzStore
from meeting_library.errors import InvalidArgumentError


class TestAuthzStore:
    """Tests for AuthzStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create authorization store."""
        return AuthzStore(data_dir)

    @pytest.mark.asyncio
    async def test_create_and_get_principal(self, store):
        """Principals take their tenant from the id."""
        await store.create_principal("u:cam:alice", "loggedin", display_name="Alice")

        principal = await store.get_principal("u:cam:alice")
        assert principal is not None
        assert principal.tenant_alias == "cam"
        assert principal.visibility == "loggedin"
        assert principal.display_name == "Alice"
        assert not principal.is_group

    @pytest.mark.asyncio
    async def test_get_missing_principal(self, store):
        assert await store.get_principal("u:cam:nobody") is None

    @pytest.mark.asyncio
    async def test_create_principal_validates(self, store):
        with pytest.raises(InvalidArgumentError):
            await store.create_principal("d:cam:m1", "public")
        with pytest.raises(InvalidArgumentError):
            await store.create_principal("u:cam:alice", "hidden")

    @pytest.mark.asyncio
    async def test_get_principals_returns_existing_only(self, store):
        await store.create_principal("u:cam:alice", "public")
        principals = await store.get_principals(["u:cam:alice", "u:cam:ghost"])
        assert set(principals) == {"u:cam:alice"}

    @pytest.mark.asyncio
    async def test_set_principal_visibility(self, store):
        await store.create_principal("u:cam:alice", "public")
        assert await store.set_principal_visibility("u:cam:alice", "private")
        assert (await store.get_principal("u:cam:alice")).visibility == "private"
        assert not await store.set_principal_visibility("u:cam:ghost", "private")

    @pytest.mark.asyncio
    async def test_group_members(self, store):
        await store.set_group_members("g:cam:team", {"u:cam:alice": "manager", "u:cam:bob": "member"})
        await store.set_group_members("g:cam:team", {"u:cam:bob": None})

        assert await store.get_group_members("g:cam:team") == {"u:cam:alice": "manager"}

    @pytest.mark.asyncio
    async def test_set_group_members_requires_group(self, store):
        with pytest.raises(InvalidArgumentError):
            await store.set_group_members("u:cam:alice", {"u:cam:bob": "member"})

    @pytest.mark.asyncio
    async def test_nested_group_ids(self, store):
        """Group membership is transitive."""
        await store.set_group_members("g:cam:inner", {"u:cam:alice": "member"})
        await store.set_group_members("g:cam:outer", {"g:cam:inner": "member"})

        assert await store.get_member_group_ids("u:cam:alice") == {"g:cam:inner", "g:cam:outer"}

    @pytest.mark.asyncio
    async def test_build_context(self, store):
        await store.set_group_members("g:gt:team", {"u:cam:alice": "member"})

        ctx = await store.build_context("u:cam:alice", is_tenant_admin=True)
        assert ctx.tenant_alias == "cam"
        assert ctx.is_admin_of("cam")
        assert ctx.acts_as("g:gt:team")

        anonymous = await store.build_context(None, tenant_alias="cam")
        assert not anonymous.is_authenticated

    @pytest.mark.asyncio
    async def test_update_and_revoke_roles(self, store):
        await store.update_roles("d:cam:m1", {"u:cam:alice": "manager", "u:cam:bob": "member"})
        await store.update_roles("d:cam:m1", {"u:cam:bob": "manager"})
        await store.update_roles("d:cam:m1", {"u:cam:alice": None})

        assert await store.get_roles("d:cam:m1") == {"u:cam:bob": "manager"}

    @pytest.mark.asyncio
    async def test_get_roles_for_principals(self, store):
        await store.update_roles("d:cam:m1", {"u:cam:alice": "manager", "g:cam:team": "member"})
        await store.update_roles("d:cam:m2", {"u:cam:bob": "manager"})

        roles = await store.get_roles_for_principals(["d:cam:m1", "d:cam:m2"], ["g:cam:team", "u:cam:carol"])
        assert roles == {"d:cam:m1": {"g:cam:team": "member"}}

    @pytest.mark.asyncio
    async def test_list_resource_ids_pages(self, store):
        """Paging returns every resource once, in id order."""
        for i in range(5):
            await store.update_roles(f"d:cam:m{i}", {"u:cam:alice": "member"})
        await store.update_roles("d:cam:other", {"u:cam:bob": "member"})

        seen = []
        start = None
        while True:
            rows, start = await store.list_resource_ids_for_principal("u:cam:alice", "d", start=start, limit=2)
            seen.extend(resource_id for resource_id, _ in rows)
            if start is None:
                break

        assert seen == [f"d:cam:m{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_list_resource_ids_exact_page(self, store):
        """No continuation token when the last page is exactly full."""
        for i in range(2):
            await store.update_roles(f"d:cam:m{i}", {"u:cam:alice": "member"})

        rows, next_token = await store.list_resource_ids_for_principal("u:cam:alice", "d", limit=2)
        assert len(rows) == 2
        assert next_token is None

    @pytest.mark.asyncio
    async def test_delete_resource_roles(self, store):
        await store.update_roles("d:cam:m1", {"u:cam:alice": "manager", "u:cam:bob": "member"})

        assert await store.delete_resource_roles("d:cam:m1", ["u:cam:bob"]) == 1
        assert await store.get_roles("d:cam:m1") == {"u:cam:alice": "manager"}
        assert await store.delete_resource_roles("d:cam:m1") == 1
        assert await store.get_roles("d:cam:m1") == {}
