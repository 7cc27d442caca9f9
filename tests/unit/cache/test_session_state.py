"""Tests for per-user state reconciliation."""

import logging
from datetime import timedelta

import pytest

from rubriccache.cache.engine import CacheEngine
from rubriccache.cache.keys import RoleParams, UserParams
from rubriccache.cache.session_state import (
    ChangeReport,
    FieldDiff,
    UserAttributes,
    normalize_user_id,
)
from rubriccache.observability.logging import user_id_var
from rubriccache.persistence.repositories import UserStateRepository, utcnow

ALICE = "alice@school.org"
TEACHER = UserAttributes(role="Teacher", cohort="2026", display_name="Alice")


async def _seed(engine: CacheEngine) -> None:
    await engine.put("user_profile", UserParams(user_id=ALICE), {"name": "Alice"})
    await engine.put("user_context", UserParams(user_id=ALICE), {"cohort": "2026"})
    await engine.put("user_profile", UserParams(user_id="bob@school.org"), {"name": "Bob"})
    await engine.put("role_sheet", RoleParams(role="Teacher"), {"rows": 3})
    await engine.put("role_sheet", RoleParams(role="Administrator"), {"rows": 5})
    await engine.put("role_sheet", RoleParams(role="Counselor"), {"rows": 1})


class TestUserAttributes:
    def test_coerces_optional_text(self) -> None:
        attrs = UserAttributes(role=" Teacher ", cohort=2026, display_name=None)
        assert attrs.role == "Teacher"
        assert attrs.cohort == "2026"
        assert attrs.display_name == ""

    def test_ignores_untracked_fields(self) -> None:
        attrs = UserAttributes.model_validate({"role": "Teacher", "phone": "555"})
        assert attrs.model_dump() == {"role": "Teacher", "cohort": "", "display_name": ""}

    def test_normalize_user_id(self) -> None:
        assert normalize_user_id("  Alice@School.ORG ") == ALICE
        with pytest.raises(ValueError):
            normalize_user_id("   ")


class TestReconcile:
    @pytest.mark.asyncio
    async def test_new_user(self, engine: CacheEngine) -> None:
        report = await engine.reconcile(ALICE, TEACHER)

        assert report == ChangeReport(changed=True, is_new_user=True)
        assert report.should_warm
        assert await engine.tracker.load(ALICE) == TEACHER

    @pytest.mark.asyncio
    async def test_identical_attributes_are_unchanged(self, engine: CacheEngine) -> None:
        await engine.reconcile(ALICE, TEACHER)
        await _seed(engine)

        report = await engine.reconcile(ALICE, TEACHER)

        assert report.changed is False
        assert report.diffs == []
        assert report.invalidation is None
        assert not report.should_warm
        assert await engine.get("user_profile", UserParams(user_id=ALICE)) == {"name": "Alice"}

    @pytest.mark.asyncio
    async def test_user_id_is_case_insensitive(self, engine: CacheEngine) -> None:
        await engine.reconcile("Alice@School.org", TEACHER)
        report = await engine.reconcile(" ALICE@school.org", TEACHER)
        assert report.changed is False

    @pytest.mark.asyncio
    async def test_cohort_change_clears_user_entries_only(self, engine: CacheEngine) -> None:
        await engine.reconcile(ALICE, TEACHER)
        await _seed(engine)

        report = await engine.reconcile(ALICE, TEACHER.model_copy(update={"cohort": "2027"}))

        assert report.changed is True
        assert report.diffs == [FieldDiff("cohort", "2026", "2027")]
        assert report.role_change is None
        assert not report.should_warm
        assert await engine.get("user_profile", UserParams(user_id=ALICE)) is None
        assert await engine.get("user_context", UserParams(user_id=ALICE)) is None
        assert await engine.get("user_profile", UserParams(user_id="bob@school.org")) == {"name": "Bob"}
        assert await engine.get("role_sheet", RoleParams(role="Teacher")) == {"rows": 3}
        assert await engine.tracker.role_history(ALICE) == []

    @pytest.mark.asyncio
    async def test_display_name_change_clears_user_entries(self, engine: CacheEngine) -> None:
        await engine.reconcile(ALICE, TEACHER)
        await _seed(engine)

        report = await engine.reconcile(ALICE, TEACHER.model_copy(update={"display_name": "Alice L."}))

        assert [d.field for d in report.diffs] == ["display_name"]
        assert await engine.get("user_profile", UserParams(user_id=ALICE)) is None

    @pytest.mark.asyncio
    async def test_role_change_cascades(self, engine: CacheEngine) -> None:
        """Teacher -> Administrator clears the user's data and both roles' sheets."""
        await engine.reconcile(ALICE, TEACHER)
        await _seed(engine)
        master = await engine.keys.versions.get_master_version()

        report = await engine.reconcile(ALICE, TEACHER.model_copy(update={"role": "Administrator"}))

        assert report.changed is True
        assert report.role_change == FieldDiff("role", "Teacher", "Administrator")
        assert report.should_warm
        assert report.invalidation is not None
        assert len(report.invalidation.deleted_keys) == 4

        assert await engine.get("user_profile", UserParams(user_id=ALICE)) is None
        assert await engine.get("user_context", UserParams(user_id=ALICE)) is None
        assert await engine.get("role_sheet", RoleParams(role="Teacher")) is None
        assert await engine.get("role_sheet", RoleParams(role="Administrator")) is None
        assert await engine.get("role_sheet", RoleParams(role="Counselor")) == {"rows": 1}
        assert await engine.get("user_profile", UserParams(user_id="bob@school.org")) == {"name": "Bob"}

        history = await engine.tracker.role_history(ALICE)
        assert len(history) == 1
        assert history[0].old_role == "Teacher"
        assert history[0].new_role == "Administrator"
        assert history[0].master_version == master

        assert (await engine.tracker.load(ALICE)).role == "Administrator"

    @pytest.mark.asyncio
    async def test_multiple_fields(self, engine: CacheEngine) -> None:
        await engine.reconcile(ALICE, TEACHER)
        fresh = UserAttributes(role="Counselor", cohort="2027", display_name="Alice")
        report = await engine.reconcile(ALICE, fresh)
        assert [d.field for d in report.diffs] == ["role", "cohort"]

    @pytest.mark.asyncio
    async def test_corrupt_state_is_treated_as_new(self, engine: CacheEngine, db_session) -> None:
        await UserStateRepository(db_session).put(ALICE, b"\x00 not json")
        await _seed(engine)

        report = await engine.reconcile(ALICE, TEACHER)

        assert report.changed is True
        assert report.is_new_user is True
        assert report.diffs == []
        assert report.invalidation is not None
        assert await engine.get("user_profile", UserParams(user_id=ALICE)) is None
        assert await engine.get("role_sheet", RoleParams(role="Teacher")) is None
        assert await engine.tracker.load(ALICE) == TEACHER

    @pytest.mark.asyncio
    async def test_state_missing_required_field_is_corrupt(self, engine: CacheEngine, db_session) -> None:
        await UserStateRepository(db_session).put(ALICE, b'{"cohort": "2026"}')
        assert await engine.tracker.load(ALICE) is None
        report = await engine.reconcile(ALICE, TEACHER)
        assert report.is_new_user is True


class TestRoleHistory:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self, engine: CacheEngine) -> None:
        roles = ["Teacher", "Administrator"] * 7
        for role in roles:
            await engine.reconcile(ALICE, UserAttributes(role=role))

        history = await engine.tracker.role_history(ALICE)

        # First reconcile creates the user, the remaining 13 are role changes
        assert len(history) == 10
        assert history[0].new_role == roles[-1]
        assert history[0].old_role == roles[-2]

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_history(self, engine: CacheEngine) -> None:
        assert await engine.tracker.role_history("nobody@school.org") == []


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_forget(self, engine: CacheEngine) -> None:
        await engine.reconcile(ALICE, TEACHER)
        assert await engine.tracker.forget(ALICE) is True
        assert await engine.tracker.forget(ALICE) is False
        assert (await engine.reconcile(ALICE, TEACHER)).is_new_user is True

    @pytest.mark.asyncio
    async def test_sweep_removes_idle_users(self, engine: CacheEngine, db_session) -> None:
        await engine.reconcile(ALICE, TEACHER)
        await engine.reconcile(ALICE, TEACHER.model_copy(update={"role": "Administrator"}))

        nothing = await engine.tracker.sweep(now=utcnow() + timedelta(days=1))
        assert nothing.user_states == 0
        assert nothing.role_changes == 0

        result = await engine.tracker.sweep(now=utcnow() + timedelta(days=8))
        assert result.user_states == 1
        assert result.role_changes == 0
        assert await UserStateRepository(db_session).count() == 0

        result = await engine.tracker.sweep(now=utcnow() + timedelta(days=31))
        assert result.role_changes == 1
        assert await engine.tracker.role_history(ALICE) == []


class _UserIdRecorder(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.user_ids: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.user_ids.append(user_id_var.get())


class TestLogContext:
    @pytest.fixture
    def recorder(self):
        logger = logging.getLogger("rubriccache")
        handler = _UserIdRecorder()
        previous = logger.level
        logger.setLevel(logging.DEBUG)
        logger.addHandler(handler)
        yield handler
        logger.removeHandler(handler)
        logger.setLevel(previous)

    @pytest.mark.asyncio
    async def test_reconcile_logs_carry_user_id(self, engine: CacheEngine, recorder) -> None:
        await engine.reconcile("Alice@School.org", TEACHER)
        await engine.reconcile(ALICE, TEACHER.model_copy(update={"role": "Administrator"}))

        assert recorder.user_ids
        assert set(recorder.user_ids) == {ALICE}
        assert user_id_var.get() == ""
