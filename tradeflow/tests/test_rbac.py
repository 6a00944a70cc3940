"""
Tests for identity alias matching and the permission cache.
"""
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from tradeflow.api.deps import get_caller
from tradeflow.core.rbac import (
    PermissionCache, belongs_to, get_current_user_context, identity_set, resolve_seller_ids,
)


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestBelongsTo:

    def test_matches_any_alias(self):
        assert belongs_to({"user-1", "profile-1"}, "profile-1")

    def test_missing_owner_never_matches(self):
        assert not belongs_to({"user-1"}, None)
        assert not belongs_to({None, ""}, "")

    def test_identity_set_drops_empty_ids(self):
        assert identity_set("user-1", ["", None, "profile-1"]) == frozenset({"user-1", "profile-1"})


class TestResolveSellerIds:

    def test_profile_id_is_an_alias(self, db, profiles):
        _, seller = profiles
        assert resolve_seller_ids(db, "seller-1") == frozenset({"seller-1", seller.id})

    def test_user_without_profile(self, db):
        assert resolve_seller_ids(db, "buyer-9") == frozenset({"buyer-9"})


class TestPermissionCache:

    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = PermissionCache(ttl_seconds=60, clock=clock)
        loader = MagicMock(return_value=frozenset({"u1"}))

        cache.get("u1", loader)
        clock.now += 59
        cache.get("u1", loader)

        assert loader.call_count == 1

    def test_reload_after_expiry(self):
        clock = FakeClock()
        cache = PermissionCache(ttl_seconds=60, clock=clock)
        loader = MagicMock(side_effect=[frozenset({"old"}), frozenset({"new"})])

        cache.get("u1", loader)
        clock.now += 61

        assert cache.get("u1", loader) == frozenset({"new"})

    def test_invalidate_forces_reload(self):
        cache = PermissionCache(ttl_seconds=60, clock=FakeClock())
        loader = MagicMock(return_value=frozenset({"u1"}))

        cache.get("u1", loader)
        cache.invalidate("u1")
        cache.get("u1", loader)

        assert loader.call_count == 2

    def test_clear(self):
        cache = PermissionCache(ttl_seconds=60, clock=FakeClock())
        cache.get("u1", lambda: frozenset({"u1"}))
        cache.get("u2", lambda: frozenset({"u2"}))

        cache.clear()

        assert len(cache) == 0


class TestCallerDependencies:

    @pytest.mark.asyncio
    async def test_context_from_headers(self):
        context = await get_current_user_context(x_user_id="seller-1", x_user_role="seller")
        assert context == {"user_id": "seller-1", "role": "seller"}

    @pytest.mark.asyncio
    async def test_missing_user_id(self):
        with pytest.raises(HTTPException) as exc:
            await get_current_user_context(x_user_id=None, x_user_role="buyer")
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_caller_aliases_are_cached(self, db, profiles):
        _, seller = profiles
        cache = PermissionCache(ttl_seconds=60, clock=FakeClock())
        context = {"user_id": "seller-1", "role": "seller"}

        caller = await get_caller(user_context=context, cache=cache, db=db)

        assert caller["aliases"] == frozenset({"seller-1", seller.id})
        assert len(cache) == 1
