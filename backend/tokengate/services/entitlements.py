"""Feature flag snapshot and plan-based entitlement resolution."""

import asyncio
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Protocol

import structlog

from tokengate.errors import UpstreamFailure
from tokengate.models.entitlements import DisplayMode, FeatureAccess, FeatureFlag
from tokengate.models.plans import Plan
from tokengate.services import supabase_client as db
from tokengate.services.plan_catalog import PlanCatalog
from tokengate.services.store import call_store

logger = structlog.get_logger(__name__)


class FeatureFlagSource(Protocol):
    """Where feature flags are loaded from."""

    async def load_all(self) -> list[FeatureFlag]:
        """Return every known flag."""


class InMemoryFeatureFlagSource:
    """Static flag list used for tests and local fallback."""

    def __init__(self, flags: Iterable[FeatureFlag] = ()) -> None:
        self.flags = list(flags)

    async def load_all(self) -> list[FeatureFlag]:
        return list(self.flags)


def _parse_plans(feature_key: str, values: Iterable[str] | None) -> frozenset[Plan]:
    plans = set()
    for value in values or []:
        try:
            plans.add(Plan(value))
        except ValueError:
            logger.warning("feature_flag_unknown_plan", feature_key=feature_key, plan=value)
    return frozenset(plans)


def flag_from_row(row: dict) -> FeatureFlag:
    """Build a flag from a ``feature_flags`` row.

    ``display_mode`` may live in its own column or inside ``metadata``.
    """
    feature_key = row["feature_key"]
    metadata = row.get("metadata") or {}
    raw_mode = row.get("display_mode") or metadata.get("display_mode") or DisplayMode.HIDE.value
    try:
        display_mode = DisplayMode(raw_mode)
    except ValueError:
        logger.warning("feature_flag_unknown_display_mode", feature_key=feature_key, display_mode=raw_mode)
        display_mode = DisplayMode.HIDE

    return FeatureFlag(
        feature_key=feature_key,
        feature_name=row.get("feature_name"),
        is_enabled=bool(row.get("is_enabled")),
        enabled_for_plans=_parse_plans(feature_key, row.get("enabled_for_plans")),
        display_mode=display_mode,
    )


class SupabaseFeatureFlagSource:
    """Loads flags from the ``feature_flags`` table."""

    def __init__(self, client, table: str = "feature_flags") -> None:
        self.client = client
        self.table = table

    async def load_all(self) -> list[FeatureFlag]:
        rows = await db.select_rows(self.client, self.table)
        return [flag_from_row(row) for row in rows]


class FeatureFlagSnapshot:
    """Process-wide, read-only view of the flags.

    ``refresh`` builds a new mapping and swaps the reference; readers always see
    a complete snapshot, never a partially loaded one.
    """

    def __init__(self, source: FeatureFlagSource, *, store_timeout: float = 5.0) -> None:
        self.source = source
        self.store_timeout = store_timeout
        self._flags: Mapping[str, FeatureFlag] = MappingProxyType({})

    @property
    def flags(self) -> Mapping[str, FeatureFlag]:
        return self._flags

    def get(self, feature_key: str) -> FeatureFlag | None:
        return self._flags.get(feature_key)

    async def refresh(self) -> int:
        """Reload from the source. On failure the previous snapshot stays in place."""
        flags = await call_store(
            self.source.load_all(), timeout=self.store_timeout, operation="load_feature_flags"
        )
        self._flags = MappingProxyType({flag.feature_key: flag for flag in flags})
        logger.info("feature_flags_refreshed", count=len(flags))
        return len(flags)

    async def refresh_forever(self, interval_seconds: float) -> None:
        """Background refresh loop, cancelled at shutdown."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.refresh()
            except UpstreamFailure as e:
                logger.warning("feature_flags_refresh_failed", error=e.message)


class FeatureEntitlementResolver:
    """Decides access, lock and hide states for features under a plan."""

    def __init__(self, snapshot: FeatureFlagSnapshot, catalog: PlanCatalog) -> None:
        self.snapshot = snapshot
        self.catalog = catalog

    def upgrade_plan(self, flag: FeatureFlag, plan: Plan) -> Plan | None:
        """Cheapest plan above ``plan`` enabled for ``flag``, whether or not ``plan`` already has access."""
        for candidate in self.catalog.plans_above(plan):
            if candidate in flag.enabled_for_plans:
                return candidate
        return None

    def resolve(self, feature_key: str, plan: Plan) -> FeatureAccess:
        flag = self.snapshot.get(feature_key)
        if flag is None or not flag.is_enabled:
            return FeatureAccess(
                feature_key=feature_key,
                has_access=False,
                is_locked=False,
                display_mode=DisplayMode.HIDE,
                required_plans=[],
                current_plan=plan,
                upgrade_plan=None,
            )

        has_access = plan in flag.enabled_for_plans
        return FeatureAccess(
            feature_key=feature_key,
            has_access=has_access,
            is_locked=not has_access and flag.display_mode == DisplayMode.LOCK,
            display_mode=flag.display_mode,
            required_plans=sorted(flag.enabled_for_plans, key=lambda p: p.rank),
            current_plan=plan,
            upgrade_plan=self.upgrade_plan(flag, plan),
        )

    def resolve_all(self, plan: Plan) -> list[FeatureAccess]:
        return [self.resolve(feature_key, plan) for feature_key in sorted(self.snapshot.flags)]
