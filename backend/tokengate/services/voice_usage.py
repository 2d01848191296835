"""Monthly voice conversation counters and their monthly lifecycle job.

Counters are keyed by (identity, ``YYYY-MM``). Nothing is ever zeroed: the first
conversation of a new month simply creates a fresh row. The monthly job only
summarizes the month that just ended and sweeps rows past retention.
"""

import asyncio
from collections import defaultdict
from datetime import UTC, date, datetime
from typing import Protocol

import structlog

from tokengate.config import VoiceUsageConfig
from tokengate.constants import UNLIMITED
from tokengate.errors import InvalidRequest, MonthlyLimitReached, UpstreamFailure
from tokengate.models.identity import AnyIdentity, identity_key
from tokengate.models.plans import Plan
from tokengate.models.voice import (
    MonthlyJobResult,
    MonthlyVoiceUsageRecord,
    TierUsageSummary,
    VoiceQuota,
    VoiceUsageArchive,
)
from tokengate.services import supabase_client as db
from tokengate.services.plan_catalog import PlanCatalog
from tokengate.services.store import call_store

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def month_key(moment: date | datetime) -> str:
    """``YYYY-MM`` for the UTC calendar month containing ``moment``."""
    if isinstance(moment, datetime):
        moment = moment.astimezone(UTC).date()
    return f"{moment.year:04d}-{moment.month:02d}"


def shift_month(month: str, delta: int) -> str:
    """Move a ``YYYY-MM`` key by ``delta`` calendar months."""
    year, mon = (int(part) for part in month.split("-"))
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def _completion_rate(started: int, completed: int) -> float:
    return round(completed / started, 4) if started else 0.0


class VoiceUsageRepository(Protocol):
    """Storage contract for monthly voice counters and their archive."""

    async def get(self, identity_key: str, month: str) -> MonthlyVoiceUsageRecord | None:
        """Fetch the counters for one identity and month."""

    async def try_start(
        self, identity_key: str, month: str, tier: Plan, limit: int | None, now: datetime
    ) -> MonthlyVoiceUsageRecord | None:
        """Insert the month's row if absent, then increment ``conversations_started``.

        Returns None without writing anything when ``limit`` is already reached.
        """

    async def try_complete(
        self, identity_key: str, month: str, tier: Plan, now: datetime
    ) -> MonthlyVoiceUsageRecord | None:
        """Count a completion in ``month``, inserting its row if absent.

        A conversation may have been started in the previous month, so the
        open count spans ``month`` and the one before it. Returns None without
        writing when nothing is open.
        """

    async def list_month(self, month: str) -> list[MonthlyVoiceUsageRecord]:
        """All rows for one month."""

    async def upsert_archive(self, archive: VoiceUsageArchive) -> VoiceUsageArchive:
        """Store the summary for ``archive.month``, replacing any earlier one."""

    async def get_archive(self, month: str) -> VoiceUsageArchive | None:
        """Fetch the summary for a month."""

    async def delete_before(self, month: str) -> int:
        """Delete rows for months strictly before ``month``. Returns the row count."""


class InMemoryVoiceUsageRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], MonthlyVoiceUsageRecord] = {}
        self.archives: dict[str, VoiceUsageArchive] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, identity_key: str, month: str) -> MonthlyVoiceUsageRecord | None:
        record = self.records.get((identity_key, month))
        return record.model_copy() if record else None

    async def try_start(
        self, identity_key: str, month: str, tier: Plan, limit: int | None, now: datetime
    ) -> MonthlyVoiceUsageRecord | None:
        async with self._locks[identity_key]:
            record = self.records.get((identity_key, month))
            started = record.conversations_started if record else 0
            if limit is not None and started >= limit:
                return None
            record = self._get_or_create_locked(identity_key, month, tier)
            record.conversations_started += 1
            record.tier = tier
            record.updated_at = now
            return record.model_copy()

    async def try_complete(
        self, identity_key: str, month: str, tier: Plan, now: datetime
    ) -> MonthlyVoiceUsageRecord | None:
        async with self._locks[identity_key]:
            rows = [self.records.get((identity_key, m)) for m in (shift_month(month, -1), month)]
            open_conversations = sum(
                row.conversations_started - row.conversations_completed
                for row in rows
                if row is not None
            )
            if open_conversations <= 0:
                return None
            record = self._get_or_create_locked(identity_key, month, tier)
            record.conversations_completed += 1
            record.updated_at = now
            return record.model_copy()

    def _get_or_create_locked(self, identity_key: str, month: str, tier: Plan) -> MonthlyVoiceUsageRecord:
        record = self.records.get((identity_key, month))
        if record is None:
            record = MonthlyVoiceUsageRecord(identity_key=identity_key, month=month, tier=tier)
            self.records[(identity_key, month)] = record
        return record

    async def list_month(self, month: str) -> list[MonthlyVoiceUsageRecord]:
        return [record.model_copy() for (_, m), record in self.records.items() if m == month]

    async def upsert_archive(self, archive: VoiceUsageArchive) -> VoiceUsageArchive:
        self.archives[archive.month] = archive.model_copy(deep=True)
        return archive.model_copy(deep=True)

    async def get_archive(self, month: str) -> VoiceUsageArchive | None:
        archive = self.archives.get(month)
        return archive.model_copy(deep=True) if archive else None

    async def delete_before(self, month: str) -> int:
        expired = [key for key in self.records if key[1] < month]
        for key in expired:
            del self.records[key]
        return len(expired)


class SupabaseVoiceUsageRepository:
    """Supabase-backed repository for voice counters and archive rows."""

    def __init__(self, client, usage_table: str, archive_table: str) -> None:
        self.client = client
        self.usage_table = usage_table
        self.archive_table = archive_table

    async def get(self, identity_key: str, month: str) -> MonthlyVoiceUsageRecord | None:
        rows = await db.select_rows(
            self.client, self.usage_table, filters={"identity_key": identity_key, "month": month}
        )
        return MonthlyVoiceUsageRecord.model_validate(rows[0]) if rows else None

    async def _increment(
        self,
        identity_key: str,
        month: str,
        tier: Plan,
        *,
        started: int,
        completed: int,
        limit: int | None,
        now: datetime,
    ) -> MonthlyVoiceUsageRecord | None:
        row = await db.call_rpc_single(
            self.client,
            "increment_monthly_voice_usage",
            {
                "p_identity_key": identity_key,
                "p_month": month,
                "p_tier": tier.value,
                "p_started": started,
                "p_completed": completed,
                "p_limit": limit,
                "p_now": now.isoformat(),
            },
        )
        return MonthlyVoiceUsageRecord.model_validate(row) if row else None

    async def try_start(
        self, identity_key: str, month: str, tier: Plan, limit: int | None, now: datetime
    ) -> MonthlyVoiceUsageRecord | None:
        return await self._increment(
            identity_key, month, tier, started=1, completed=0, limit=limit, now=now
        )

    async def try_complete(
        self, identity_key: str, month: str, tier: Plan, now: datetime
    ) -> MonthlyVoiceUsageRecord | None:
        return await self._increment(
            identity_key, month, tier, started=0, completed=1, limit=None, now=now
        )

    async def list_month(self, month: str) -> list[MonthlyVoiceUsageRecord]:
        rows = await db.select_rows(self.client, self.usage_table, filters={"month": month})
        return [MonthlyVoiceUsageRecord.model_validate(row) for row in rows]

    async def upsert_archive(self, archive: VoiceUsageArchive) -> VoiceUsageArchive:
        row = await db.upsert_row(
            self.client, self.archive_table, archive.model_dump(mode="json"), on_conflict="month"
        )
        return VoiceUsageArchive.model_validate(row)

    async def get_archive(self, month: str) -> VoiceUsageArchive | None:
        rows = await db.select_rows(self.client, self.archive_table, filters={"month": month})
        return VoiceUsageArchive.model_validate(rows[0]) if rows else None

    async def delete_before(self, month: str) -> int:
        return await db.delete_rows_before(self.client, self.usage_table, column="month", value=month)


class VoiceUsageService:
    """Per-request monthly voice quota checks and counters."""

    def __init__(
        self,
        repository: VoiceUsageRepository,
        catalog: PlanCatalog,
        *,
        store_timeout: float = 5.0,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.store_timeout = store_timeout
        self.now_provider = now_provider

    def _quota(self, plan: Plan, month: str, used: int) -> VoiceQuota:
        limit = self.catalog.monthly_voice_limit(plan)
        if limit is None:
            return VoiceQuota(
                can_start=True,
                conversations_used=used,
                limit=UNLIMITED,
                remaining=UNLIMITED,
                tier=plan,
                month=month,
            )
        return VoiceQuota(
            can_start=used < limit,
            conversations_used=used,
            limit=limit,
            remaining=max(0, limit - used),
            tier=plan,
            month=month,
        )

    async def check_quota(self, identity: AnyIdentity, plan: Plan) -> VoiceQuota:
        month = month_key(self.now_provider())
        record = await call_store(
            self.repository.get(identity_key(identity), month),
            timeout=self.store_timeout,
            operation="get_voice_usage",
        )
        return self._quota(plan, month, record.conversations_started if record else 0)

    async def start_conversation(self, identity: AnyIdentity, plan: Plan) -> VoiceQuota:
        now = self.now_provider()
        month = month_key(now)
        key = identity_key(identity)
        limit = self.catalog.monthly_voice_limit(plan)

        record = await call_store(
            self.repository.try_start(key, month, plan, limit, now),
            timeout=self.store_timeout,
            operation="start_voice_conversation",
        )
        if record is None:
            logger.info("voice_monthly_limit_reached", identity_key=key, plan=plan.value, limit=limit)
            raise MonthlyLimitReached(
                f"Monthly limit of {limit} voice conversations reached",
                limit=limit,
                month=month,
                tier=plan.value,
            )

        logger.info(
            "voice_conversation_started",
            identity_key=key,
            month=month,
            conversations_started=record.conversations_started,
        )
        return self._quota(plan, month, record.conversations_started)

    async def complete_conversation(self, identity: AnyIdentity, plan: Plan) -> MonthlyVoiceUsageRecord:
        """Count a completion in the current month, even if the conversation began last month."""
        now = self.now_provider()
        month = month_key(now)
        key = identity_key(identity)
        record = await call_store(
            self.repository.try_complete(key, month, plan, now),
            timeout=self.store_timeout,
            operation="complete_voice_conversation",
        )
        if record is None:
            raise InvalidRequest("No open voice conversation to complete", month=month)
        return record


class MonthlyVoiceUsageJob:
    """Archive the month that just ended, then sweep rows past retention.

    The two phases are independent: a failed archive is logged and the sweep
    still runs. Re-running in the same month rewrites the same archive row and
    finds nothing more to delete.
    """

    def __init__(
        self,
        repository: VoiceUsageRepository,
        config: VoiceUsageConfig | None = None,
        *,
        store_timeout: float = 5.0,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.config = config or VoiceUsageConfig()
        self.store_timeout = store_timeout
        self.now_provider = now_provider

    @staticmethod
    def summarize(
        month: str, records: list[MonthlyVoiceUsageRecord], archived_at: datetime
    ) -> VoiceUsageArchive:
        tiers: dict[Plan, TierUsageSummary] = {}
        for record in records:
            summary = tiers.setdefault(record.tier, TierUsageSummary())
            summary.users += 1
            summary.conversations_started += record.conversations_started
            summary.conversations_completed += record.conversations_completed
        for summary in tiers.values():
            summary.completion_rate = _completion_rate(
                summary.conversations_started, summary.conversations_completed
            )

        started = sum(record.conversations_started for record in records)
        completed = sum(record.conversations_completed for record in records)
        return VoiceUsageArchive(
            month=month,
            total_users=len({record.identity_key for record in records}),
            conversations_started=started,
            conversations_completed=completed,
            completion_rate=_completion_rate(started, completed),
            tiers=dict(sorted(tiers.items(), key=lambda item: item[0].rank)),
            archived_at=archived_at,
        )

    async def archive(self, month: str) -> VoiceUsageArchive:
        records = await call_store(
            self.repository.list_month(month),
            timeout=self.store_timeout,
            operation="list_voice_usage",
        )
        summary = self.summarize(month, records, self.now_provider())
        return await call_store(
            self.repository.upsert_archive(summary),
            timeout=self.store_timeout,
            operation="upsert_voice_archive",
        )

    async def sweep(self, cutoff_month: str) -> int:
        return await call_store(
            self.repository.delete_before(cutoff_month),
            timeout=self.store_timeout,
            operation="delete_voice_usage",
        )

    async def run(self) -> MonthlyJobResult:
        current = month_key(self.now_provider())
        previous = shift_month(current, -1)
        cutoff = shift_month(current, -self.config.retention_months)

        archive: VoiceUsageArchive | None = None
        try:
            archive = await self.archive(previous)
            logger.info(
                "voice_archive_completed",
                month=previous,
                total_users=archive.total_users,
                completion_rate=archive.completion_rate,
            )
        except UpstreamFailure as e:
            logger.error("voice_archive_failed", month=previous, error=e.message)

        deleted = 0
        sweep_succeeded = True
        try:
            deleted = await self.sweep(cutoff)
            logger.info("voice_retention_sweep_completed", cutoff_month=cutoff, deleted=deleted)
        except UpstreamFailure as e:
            sweep_succeeded = False
            logger.error("voice_retention_sweep_failed", cutoff_month=cutoff, error=e.message)

        return MonthlyJobResult(
            archived_month=previous,
            archive_succeeded=archive is not None,
            archive=archive,
            sweep_succeeded=sweep_succeeded,
            deleted_records=deleted,
            retention_cutoff_month=cutoff,
        )
