"""
Unit tests for the model-level cache-aside wrappers.
"""

import re
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from service_gateway.app.caching.cache_manager import CacheManager
from service_gateway.app.caching.model_cache import (
    AutoClearRepository,
    CacheableRepository,
    ModelCacheOptions,
    contains_complex_operators,
    stable_hash,
)
from service_gateway.app.caching.policy import CachePrefix, CacheTTL
from service_gateway.app.persistence import MemoryRepository, Op, RepositoryEvent, User


def user_data(username, tenant_id="tenant-1", **extra):
    return {"username": username, "email": f"{username}@example.com", "tenant_id": tenant_id, **extra}


@pytest.fixture
def repository():
    return MemoryRepository(User)


@pytest.fixture
def users(repository, cache_manager):
    return AutoClearRepository(repository, cache_manager, ModelCacheOptions.for_entity("User"))


@pytest_asyncio.fixture
async def two_users(users):
    alice = await users.create(user_data("alice"))
    bob = await users.create(user_data("bob"))
    await users.find_by_pk(alice.id)
    await users.find_by_pk(bob.id)
    return alice, bob


class TestCacheableRepository:
    """Test cases for cached lookups."""

    def test_options_from_policy_table(self):
        options = ModelCacheOptions.for_entity("Shop", disable_cache=True)

        assert options.prefix is CachePrefix.MERCHANT
        assert options.ttl == CacheTTL.LONG
        assert options.disable_cache is True

    def test_unknown_cached_method_is_rejected(self, repository, cache_manager):
        with pytest.raises(AttributeError):
            CacheableRepository(repository, cache_manager, ModelCacheOptions(methods=("find_everything",)))

    @pytest.mark.asyncio
    async def test_find_by_pk_is_served_from_cache(self, users, repository, store):
        created = await users.create(user_data("alice"))

        with patch.object(repository, "find_by_pk", wraps=repository.find_by_pk) as find_by_pk:
            first = await users.find_by_pk(created.id)
            second = await users.find_by_pk(created.id)

        assert find_by_pk.await_count == 1
        assert isinstance(second, User)
        assert first == second == created
        assert store.ttl("user:User:pk:1") == CacheTTL.MEDIUM

    @pytest.mark.asyncio
    async def test_string_and_int_pk_share_entry(self, users, repository):
        await users.create(user_data("alice"))

        with patch.object(repository, "find_by_pk", wraps=repository.find_by_pk) as find_by_pk:
            await users.find_by_pk(1)
            assert (await users.find_by_pk("1")).username == "alice"

        assert find_by_pk.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_record_is_not_cached(self, users, store):
        assert await users.find_by_pk(99) is None
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_find_one_key_is_stable_over_criteria_order(self, users, repository, store):
        await users.create(user_data("alice", status="active"))

        with patch.object(repository, "find_one", wraps=repository.find_one) as find_one:
            await users.find_one({"username": "alice", "status": "active"})
            found = await users.find_one({"status": "active", "username": "alice"})

        assert found.username == "alice"
        assert find_one.await_count == 1
        expected = stable_hash({"username": "alice", "status": "active"})
        assert f"user:User:one:{expected}" in store.data

    @pytest.mark.asyncio
    async def test_find_one_without_criteria(self, users, store):
        await users.create(user_data("alice"))

        assert (await users.find_one()).username == "alice"
        assert f"user:User:one:{stable_hash('all')}" in store.data

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"disable_cache": True},
        {"include": ["shops"]},
        {"transaction": object()},
    ])
    async def test_find_by_pk_bypass_conditions(self, users, store, kwargs):
        await users.create(user_data("alice"))

        assert (await users.find_by_pk(1, **kwargs)).username == "alice"
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_complex_operators_bypass_cache(self, users, store):
        await users.create(user_data("alice"))

        found = await users.find_one({Op.OR: [{"username": "alice"}, {"username": "bob"}]})

        assert found.username == "alice"
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_model_level_disable(self, repository, cache_manager, store):
        users = CacheableRepository(repository, cache_manager, ModelCacheOptions(disable_cache=True))
        await repository.create(user_data("alice"))

        await users.find_by_pk(1)
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_unwrapped_methods_are_delegated(self, users, repository):
        await users.create(user_data("alice", tenant_id="t1"))
        await users.create(user_data("bob", tenant_id="t2"))

        found = await users.find_all({"tenant_id": "t1"})

        assert [user.username for user in found] == ["alice"]
        assert users.record_type is User
        assert users.repository is repository

    @pytest.mark.asyncio
    async def test_additional_methods_can_be_wrapped(self, repository, cache_manager, store):
        options = ModelCacheOptions(methods=("find_by_pk", "find_one", "find_all"))
        users = CacheableRepository(repository, cache_manager, options)
        await repository.create(user_data("alice"))

        with patch.object(repository, "find_all", wraps=repository.find_all) as find_all:
            first = await users.find_all({"tenant_id": "tenant-1"})
            second = await users.find_all({"tenant_id": "tenant-1"})

        assert find_all.await_count == 1
        assert [user.username for user in second] == [user.username for user in first] == ["alice"]
        assert isinstance(second[0], User)
        assert any(key.startswith("user:User:find_all:") for key in store.data)

    @pytest.mark.asyncio
    async def test_store_outage_falls_back_to_repository(self, repository):
        broken = AsyncMock()
        broken.get.side_effect = ConnectionError("redis down")
        broken.set.side_effect = ConnectionError("redis down")
        users = CacheableRepository(repository, CacheManager(broken), ModelCacheOptions())
        await repository.create(user_data("alice"))

        assert (await users.find_by_pk(1)).username == "alice"


class TestClearCache:
    """Test cases for explicit model cache invalidation."""

    @pytest.mark.asyncio
    async def test_clear_single_record_is_exact(self, users, store):
        for index in range(12):
            await users.create(user_data(f"user{index}"))
        await users.find_by_pk(1)
        await users.find_by_pk(12)

        cleared = await users.clear_cache(1)

        assert cleared == ["user:User:pk:1"]
        assert "user:User:pk:12" in store.data

    @pytest.mark.asyncio
    async def test_clear_all_entries_of_model(self, users, cache_manager, store, two_users):
        await users.find_one({"username": "alice"})
        await cache_manager.set(CachePrefix.USER, "username:alice", {"id": 1}, 60)

        cleared = await users.clear_cache()

        assert len(cleared) == 3
        assert list(store.data) == ["user:username:alice"]

    @pytest.mark.asyncio
    async def test_clear_by_regex(self, users, store, two_users):
        await users.find_one({"username": "alice"})

        cleared = await users.clear_cache(re.compile(r"^User:one:"))

        assert len(cleared) == 1
        assert "user:User:pk:1" in store.data

    @pytest.mark.asyncio
    async def test_glob_string_is_treated_as_primary_key(self, users, store, two_users):
        assert await users.clear_cache("*") == []
        assert "user:User:pk:1" in store.data
        assert "user:User:pk:2" in store.data

    @pytest.mark.asyncio
    async def test_clear_missing_record_returns_nothing(self, users):
        assert await users.clear_cache(404) == []

    @pytest.mark.asyncio
    async def test_clear_failure_is_logged(self, users, cache_manager):
        with patch.object(cache_manager, "clear_by_pattern", AsyncMock(side_effect=RuntimeError("boom"))):
            assert await users.clear_cache() == []


class TestAutoClearRepository:
    """Test cases for write-triggered invalidation."""

    def test_hooks_registered_for_every_event(self, repository, users):
        for event in RepositoryEvent:
            assert users._invalidate in repository._hooks[event]

    @pytest.mark.asyncio
    async def test_create_then_fetch_returns_fresh_record(self, users):
        assert await users.find_by_pk(1) is None

        await users.create(user_data("alice"))

        assert (await users.find_by_pk(1)).username == "alice"

    @pytest.mark.asyncio
    async def test_update_clears_only_its_own_key(self, users, store, two_users):
        alice, bob = two_users

        await users.update(alice.id, {"email": "new@example.com"})

        assert "user:User:pk:1" not in store.data
        assert "user:User:pk:2" in store.data
        assert (await users.find_by_pk(alice.id)).email == "new@example.com"

    @pytest.mark.asyncio
    async def test_delete_clears_its_key(self, users, store, two_users):
        alice, _ = two_users

        assert await users.delete(alice.id) is True

        assert "user:User:pk:1" not in store.data
        assert await users.find_by_pk(alice.id) is None

    @pytest.mark.asyncio
    async def test_bulk_update_clears_whole_model(self, users, store, two_users):
        await users.find_one({"username": "alice"})

        updated = await users.bulk_update({"tenant_id": "tenant-1"}, {"status": "suspended"})

        assert updated == 2
        assert not any(key.startswith("user:User:") for key in store.data)
        assert (await users.find_by_pk(2)).status == "suspended"

    @pytest.mark.asyncio
    async def test_bulk_delete_clears_whole_model(self, users, store, two_users):
        assert await users.bulk_delete({"username": {Op.IN: ["alice", "bob"]}}) == 2
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_invalidation_failure_does_not_fail_write(self, users, two_users):
        alice, _ = two_users

        with patch.object(users, "clear_cache", AsyncMock(side_effect=RuntimeError("redis down"))):
            updated = await users.update(alice.id, {"email": "kept@example.com"})

        assert updated.email == "kept@example.com"

    @pytest.mark.asyncio
    async def test_selected_hooks_only(self, repository, cache_manager, store):
        users = AutoClearRepository(
            repository,
            cache_manager,
            ModelCacheOptions(),
            hooks=(RepositoryEvent.AFTER_DELETE,),
        )
        await users.create(user_data("alice"))
        await users.find_by_pk(1)

        await users.update(1, {"email": "stale@example.com"})

        assert (await users.find_by_pk(1)).email == "alice@example.com"


def test_contains_complex_operators():
    assert not contains_complex_operators({"username": "alice", "age": {Op.GT: 3}})
    assert contains_complex_operators({"name": {Op.LIKE: "a%"}})
    assert contains_complex_operators({"and": [{"name": {Op.NOT_BETWEEN: [1, 2]}}]})
    assert not contains_complex_operators(None)
