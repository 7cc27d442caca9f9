"""Tests for dependency-driven invalidation."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.cache.changes import ChangeDetector
from rubriccache.cache.invalidation import DependencyMap, InvalidationEngine, InvalidationResult
from rubriccache.cache.keys import NoParams, RoleParams, UserParams
from rubriccache.cache.store import CacheStore
from rubriccache.config import DEFAULT_CACHE_DEPENDENCIES

ALICE = UserParams(user_id="alice@school.org")
BOB = UserParams(user_id="bob@school.org")
TEACHER = RoleParams(role="Teacher")
ADMIN = RoleParams(role="Administrator")


@pytest.fixture
def invalidation(db_session: AsyncSession, store: CacheStore) -> InvalidationEngine:
    return InvalidationEngine(db_session, store, dependencies=DependencyMap(DEFAULT_CACHE_DEPENDENCIES))


async def _write(invalidation: InvalidationEngine, namespace: str, params, payload) -> str:
    key = await invalidation.keys.build_key(namespace, params)
    await invalidation.store.set(key, payload, 300)
    return key


async def _read(invalidation: InvalidationEngine, namespace: str, params):
    key = await invalidation.keys.build_key(namespace, params)
    return await invalidation.store.get(key)


class TestDependencyMap:
    def test_exact_source(self) -> None:
        deps = DependencyMap(DEFAULT_CACHE_DEPENDENCIES)
        assert deps.dependents("staff_data") == ("user_*", "role_mappings")
        assert deps.dependents("role_sheet_*") == ()

    def test_wildcard_source_covers_concrete_name(self) -> None:
        deps = DependencyMap(DEFAULT_CACHE_DEPENDENCIES)
        assert deps.dependents("user_profile") == ("role_sheet_*",)
        assert "user_profile" in deps

    def test_unknown_source(self) -> None:
        deps = DependencyMap(DEFAULT_CACHE_DEPENDENCIES)
        assert deps.dependents("attendance") == ()
        assert "attendance" not in deps

    def test_merges_overlapping_wildcards(self) -> None:
        deps = DependencyMap({"user_*": ["a", "b"], "user_p*": ["b", "c"]})
        assert deps.dependents("user_profile") == ("a", "b", "c")

    def test_defaults_from_settings(self) -> None:
        assert DependencyMap().as_dict() == DEFAULT_CACHE_DEPENDENCIES

    def test_sources(self) -> None:
        assert DependencyMap({"b": [], "a": ["x"]}).sources() == ["a", "b"]


class TestInvalidate:
    @pytest.mark.asyncio
    async def test_staff_change_orphans_user_family(self, invalidation: InvalidationEngine) -> None:
        """A wildcard bump changes the keys of every covered namespace."""
        before_profile = await _write(invalidation, "user_profile", ALICE, {"name": "Alice"})
        before_context = await _write(invalidation, "user_context", BOB, {"cohort": "2026"})

        result = await invalidation.invalidate("staff_data")

        assert result.bumped == {"user_*": 1}
        assert await invalidation.keys.build_key("user_profile", ALICE) != before_profile
        assert await invalidation.keys.build_key("user_context", BOB) != before_context
        assert await _read(invalidation, "user_profile", ALICE) is None
        assert await _read(invalidation, "user_context", BOB) is None

    @pytest.mark.asyncio
    async def test_singleton_dependent_is_deleted(
        self, invalidation: InvalidationEngine, redis_client
    ) -> None:
        key = await _write(invalidation, "role_mappings", NoParams(), {"Teacher": "T"})

        result = await invalidation.invalidate("staff_data")

        assert key in result.deleted_keys
        assert await redis_client.exists(key) == 0
        # Key derivation for role_mappings is unaffected
        assert await invalidation.keys.build_key("role_mappings") == key

    @pytest.mark.asyncio
    async def test_unrelated_namespaces_survive(self, invalidation: InvalidationEngine) -> None:
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        await _write(invalidation, "domain_mappings", NoParams(), {"D1": "Planning"})

        await invalidation.invalidate("staff_data")

        assert await _read(invalidation, "role_sheet", TEACHER) == {"rows": 3}
        assert await _read(invalidation, "domain_mappings", NoParams()) == {"D1": "Planning"}

    @pytest.mark.asyncio
    async def test_settings_change(self, invalidation: InvalidationEngine) -> None:
        """role_sheet_* covers the role_sheet namespace through its stem."""
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        await _write(invalidation, "role_sheet", ADMIN, {"rows": 5})
        domain_key = await _write(invalidation, "domain_mappings", NoParams(), {"D1": "x"})
        await _write(invalidation, "user_profile", ALICE, {"name": "Alice"})

        result = await invalidation.invalidate("settings_data")

        assert result.bumped == {"role_sheet_*": 1}
        assert result.deleted_keys == [domain_key]
        assert await _read(invalidation, "role_sheet", TEACHER) is None
        assert await _read(invalidation, "role_sheet", ADMIN) is None
        assert await _read(invalidation, "domain_mappings", NoParams()) is None
        assert await _read(invalidation, "user_profile", ALICE) == {"name": "Alice"}

    @pytest.mark.asyncio
    async def test_repeated_bumps_keep_moving(self, invalidation: InvalidationEngine) -> None:
        seen = {await invalidation.keys.build_key("user_profile", ALICE)}
        for expected in (1, 2, 3):
            result = await invalidation.invalidate("staff_data")
            assert result.bumped["user_*"] == expected
            key = await invalidation.keys.build_key("user_profile", ALICE)
            assert key not in seen
            seen.add(key)

    @pytest.mark.asyncio
    async def test_no_dependents(self, invalidation: InvalidationEngine) -> None:
        result = await invalidation.invalidate("attendance")
        assert result.source_id == "attendance"
        assert result.empty

    @pytest.mark.asyncio
    async def test_no_transitive_cascade(self, invalidation: InvalidationEngine) -> None:
        """Only direct dependents go stale; user_* -> role_sheet_* is not followed."""
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        await invalidation.invalidate("staff_data")
        assert await _read(invalidation, "role_sheet", TEACHER) == {"rows": 3}

    @pytest.mark.asyncio
    async def test_exact_parameterized_namespace_is_bumped(
        self, db_session: AsyncSession, store: CacheStore
    ) -> None:
        invalidation = InvalidationEngine(
            db_session, store, dependencies=DependencyMap({"rubric_source": ["role_sheet", "legacy"]})
        )
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})

        result = await invalidation.invalidate("rubric_source")

        assert result.bumped == {"role_sheet": 1, "legacy": 1}
        assert result.deleted_keys == []
        assert await _read(invalidation, "role_sheet", TEACHER) is None


class TestInvalidateAll:
    @pytest.mark.asyncio
    async def test_every_key_is_orphaned(self, invalidation: InvalidationEngine) -> None:
        await _write(invalidation, "user_profile", ALICE, {"name": "Alice"})
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        await _write(invalidation, "role_mappings", NoParams(), {"Teacher": "T"})
        old_master = await invalidation.versions.get_master_version()

        new_master = await invalidation.invalidate_all()

        assert new_master != old_master
        assert await invalidation.versions.get_master_version() == new_master
        assert await _read(invalidation, "user_profile", ALICE) is None
        assert await _read(invalidation, "role_sheet", TEACHER) is None
        assert await _read(invalidation, "role_mappings", NoParams()) is None

    @pytest.mark.asyncio
    async def test_force_clean_all_clears_hashes(
        self, db_session: AsyncSession, invalidation: InvalidationEngine
    ) -> None:
        detector = ChangeDetector(db_session)
        await detector.has_changed("staff_data", [["a"]])
        await detector.has_changed("settings_data", [["b"]])
        old_master = await invalidation.versions.get_master_version()

        result = await invalidation.force_clean_all()

        assert result.hashes_cleared == 2
        assert result.master_version != old_master
        assert await detector.has_changed("staff_data", [["a"]]) is True


class TestTargetedInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_namespace(self, invalidation: InvalidationEngine) -> None:
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        assert await invalidation.invalidate_namespace("role_sheet") == 1
        assert await _read(invalidation, "role_sheet", TEACHER) is None

    @pytest.mark.asyncio
    async def test_invalidate_keys(self, invalidation: InvalidationEngine) -> None:
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        await _write(invalidation, "role_sheet", ADMIN, {"rows": 5})

        keys = await invalidation.invalidate_keys("role_sheet", [TEACHER])

        assert len(keys) == 1
        assert await _read(invalidation, "role_sheet", TEACHER) is None
        assert await _read(invalidation, "role_sheet", ADMIN) == {"rows": 5}

    @pytest.mark.asyncio
    async def test_invalidate_user(self, invalidation: InvalidationEngine) -> None:
        await _write(invalidation, "user_profile", ALICE, {"name": "Alice"})
        await _write(invalidation, "user_context", ALICE, {"cohort": "2026"})
        await _write(invalidation, "user_profile", BOB, {"name": "Bob"})
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        await _write(invalidation, "role_sheet", ADMIN, {"rows": 5})
        await _write(invalidation, "role_sheet", RoleParams(role="Counselor"), {"rows": 1})

        result = await invalidation.invalidate_user("Alice@School.org", ["Teacher", "Administrator", None])

        assert isinstance(result, InvalidationResult)
        assert result.source_id == "user:alice@school.org"
        assert len(result.deleted_keys) == 4
        assert await _read(invalidation, "user_profile", ALICE) is None
        assert await _read(invalidation, "user_context", ALICE) is None
        assert await _read(invalidation, "role_sheet", TEACHER) is None
        assert await _read(invalidation, "role_sheet", ADMIN) is None
        assert await _read(invalidation, "user_profile", BOB) == {"name": "Bob"}
        assert await _read(invalidation, "role_sheet", RoleParams(role="Counselor")) == {"rows": 1}

    @pytest.mark.asyncio
    async def test_invalidate_user_without_roles(self, invalidation: InvalidationEngine) -> None:
        await _write(invalidation, "role_sheet", TEACHER, {"rows": 3})
        result = await invalidation.invalidate_user("alice@school.org")
        assert len(result.deleted_keys) == 2
        assert await _read(invalidation, "role_sheet", TEACHER) == {"rows": 3}

    def test_merge(self) -> None:
        first = InvalidationResult(source_id="a", bumped={"user_*": 1}, deleted_keys=["k1"])
        first.merge(InvalidationResult(bumped={"role_sheet_*": 2}, deleted_keys=["k1", "k2"]))
        assert first.bumped == {"user_*": 1, "role_sheet_*": 2}
        assert first.deleted_keys == ["k1", "k2"]
        assert not first.empty
