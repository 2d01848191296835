"""Unit tests for feature flag loading and plan-based entitlements."""

import pytest

from tokengate.errors import UpstreamFailure
from tokengate.models.entitlements import DisplayMode, FeatureFlag
from tokengate.models.plans import Plan
from tokengate.services.entitlements import (
    FeatureEntitlementResolver,
    FeatureFlagSnapshot,
    InMemoryFeatureFlagSource,
    flag_from_row,
)
from tokengate.services.plan_catalog import PlanCatalog

FLAGS = [
    FeatureFlag(
        feature_key="voice_buddy",
        feature_name="Voice Buddy",
        is_enabled=True,
        enabled_for_plans=frozenset({Plan.PLUS, Plan.PREMIUM}),
        display_mode=DisplayMode.LOCK,
    ),
    FeatureFlag(
        feature_key="ai_discipler",
        feature_name="AI Discipler",
        is_enabled=True,
        enabled_for_plans=frozenset({Plan.PREMIUM}),
        display_mode=DisplayMode.HIDE,
    ),
    FeatureFlag(
        feature_key="study_chat",
        feature_name="Study Chat",
        is_enabled=True,
        enabled_for_plans=frozenset(Plan),
    ),
    FeatureFlag(
        feature_key="reflections",
        feature_name="Reflections",
        is_enabled=False,
        enabled_for_plans=frozenset(Plan),
        display_mode=DisplayMode.LOCK,
    ),
]


class FailingSource:
    async def load_all(self) -> list[FeatureFlag]:
        raise ConnectionError("store down")


async def make_resolver(flags=FLAGS) -> FeatureEntitlementResolver:
    snapshot = FeatureFlagSnapshot(InMemoryFeatureFlagSource(flags))
    await snapshot.refresh()
    return FeatureEntitlementResolver(snapshot, PlanCatalog())


class TestResolve:
    async def test_locked_feature_suggests_cheapest_upgrade(self):
        resolver = await make_resolver()

        access = resolver.resolve("voice_buddy", Plan.STANDARD)

        assert access.has_access is False
        assert access.is_locked is True
        assert access.display_mode == DisplayMode.LOCK
        assert access.required_plans == [Plan.PLUS, Plan.PREMIUM]
        assert access.upgrade_plan == Plan.PLUS

    async def test_top_plan_has_access_and_no_upgrade(self):
        resolver = await make_resolver()

        access = resolver.resolve("voice_buddy", Plan.PREMIUM)

        assert access.has_access is True
        assert access.is_locked is False
        assert access.upgrade_plan is None

    async def test_entitled_plan_still_offered_higher_enabled_plan(self):
        flag = FeatureFlag(
            feature_key="memory_verses",
            is_enabled=True,
            enabled_for_plans=frozenset({Plan.STANDARD, Plan.PLUS}),
            display_mode=DisplayMode.LOCK,
        )
        resolver = await make_resolver([flag])

        access = resolver.resolve("memory_verses", Plan.STANDARD)

        assert access.has_access is True
        assert access.is_locked is False
        assert access.upgrade_plan == Plan.PLUS

    async def test_hidden_feature_is_not_locked(self):
        resolver = await make_resolver()

        access = resolver.resolve("ai_discipler", Plan.FREE)

        assert access.has_access is False
        assert access.is_locked is False
        assert access.display_mode == DisplayMode.HIDE
        assert access.upgrade_plan == Plan.PREMIUM

    async def test_disabled_flag_denies_every_plan(self):
        resolver = await make_resolver()

        for plan in Plan:
            access = resolver.resolve("reflections", plan)
            assert access.has_access is False
            assert access.is_locked is False
            assert access.display_mode == DisplayMode.HIDE
            assert access.upgrade_plan is None

    async def test_unknown_flag_is_hidden(self):
        resolver = await make_resolver()

        access = resolver.resolve("does_not_exist", Plan.PLUS)

        assert access.has_access is False
        assert access.display_mode == DisplayMode.HIDE
        assert access.required_plans == []

    async def test_no_upgrade_when_only_lower_plans_enabled(self):
        flag = FeatureFlag(
            feature_key="legacy_notes",
            is_enabled=True,
            enabled_for_plans=frozenset({Plan.FREE}),
            display_mode=DisplayMode.LOCK,
        )
        resolver = await make_resolver([flag])

        access = resolver.resolve("legacy_notes", Plan.PLUS)

        assert access.has_access is False
        assert access.is_locked is True
        assert access.upgrade_plan is None

    async def test_resolve_all_is_sorted_by_key(self):
        resolver = await make_resolver()

        keys = [access.feature_key for access in resolver.resolve_all(Plan.FREE)]

        assert keys == ["ai_discipler", "reflections", "study_chat", "voice_buddy"]


class TestSnapshot:
    async def test_failed_refresh_keeps_previous_snapshot(self):
        snapshot = FeatureFlagSnapshot(InMemoryFeatureFlagSource(FLAGS))
        await snapshot.refresh()
        snapshot.source = FailingSource()

        with pytest.raises(UpstreamFailure):
            await snapshot.refresh()

        assert len(snapshot.flags) == 4

    async def test_refresh_replaces_snapshot(self):
        source = InMemoryFeatureFlagSource(FLAGS)
        snapshot = FeatureFlagSnapshot(source)
        await snapshot.refresh()
        before = snapshot.flags

        source.flags = FLAGS[:1]
        count = await snapshot.refresh()

        assert count == 1
        assert len(before) == 4
        assert list(snapshot.flags) == ["voice_buddy"]

    def test_snapshot_is_read_only(self):
        snapshot = FeatureFlagSnapshot(InMemoryFeatureFlagSource())

        with pytest.raises(TypeError):
            snapshot.flags["x"] = FLAGS[0]


class TestFlagFromRow:
    def test_display_mode_from_metadata(self):
        flag = flag_from_row(
            {
                "feature_key": "voice_buddy",
                "feature_name": "Voice Buddy",
                "is_enabled": True,
                "enabled_for_plans": ["plus", "premium"],
                "metadata": {"display_mode": "lock"},
            }
        )

        assert flag.display_mode == DisplayMode.LOCK
        assert flag.enabled_for_plans == frozenset({Plan.PLUS, Plan.PREMIUM})

    def test_unknown_plan_and_mode_are_skipped(self):
        flag = flag_from_row(
            {
                "feature_key": "voice_buddy",
                "is_enabled": True,
                "enabled_for_plans": ["plus", "enterprise"],
                "display_mode": "blink",
            }
        )

        assert flag.enabled_for_plans == frozenset({Plan.PLUS})
        assert flag.display_mode == DisplayMode.HIDE
