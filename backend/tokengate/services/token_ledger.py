"""Token ledger service and repositories."""

import asyncio
import math
from collections import defaultdict
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Protocol

import structlog

from tokengate.config import TokenConfig
from tokengate.constants import UNLIMITED
from tokengate.errors import (
    InsufficientTokens,
    InvalidRequest,
    UnsupportedLanguage,
    UpstreamFailure,
)
from tokengate.models.identity import AnyIdentity, AuthenticatedIdentity, identity_key
from tokengate.models.plans import Plan
from tokengate.models.tokens import (
    ConsumptionResult,
    TokenBalance,
    TokenBalanceRecord,
    TokenDebit,
    TokenStatus,
    TokenUsageContext,
    TokenUsagePage,
    TokenUsageRecord,
)
from tokengate.services import supabase_client as db
from tokengate.services.plan_catalog import PlanCatalog
from tokengate.services.store import call_store
from tokengate.services.usage_history import TokenUsageHistoryRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenLedgerRepository(Protocol):
    """Storage contract for daily token rows.

    Implementations must make each method atomic per identity key.
    """

    async def get_or_create_day(
        self, identity_key: str, day: date, now: datetime
    ) -> TokenBalanceRecord:
        """Return the row for ``day``, inserting it if absent.

        A new row starts with ``consumed_today=0`` and carries ``purchased_tokens``
        over from the identity's most recent earlier row.
        """

    async def try_consume(
        self, identity_key: str, day: date, daily_limit: int, amount: int, now: datetime
    ) -> TokenDebit | None:
        """Debit ``amount`` (daily allowance first, then purchased tokens).

        Returns None without touching the row when the balance is insufficient.
        """

    async def add_purchased(
        self, identity_key: str, day: date, amount: int, now: datetime
    ) -> TokenBalanceRecord:
        """Credit purchased tokens onto the row for ``day``."""


class InMemoryTokenLedgerRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, date], TokenBalanceRecord] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _latest_purchased(self, identity_key: str, before: date) -> int:
        earlier = [
            record
            for (key, day), record in self.records.items()
            if key == identity_key and day < before
        ]
        if not earlier:
            return 0
        return max(earlier, key=lambda record: record.day).purchased_tokens

    def _get_or_create_locked(
        self, identity_key: str, day: date, now: datetime
    ) -> TokenBalanceRecord:
        record = self.records.get((identity_key, day))
        if record is None:
            record = TokenBalanceRecord(
                identity_key=identity_key,
                day=day,
                consumed_today=0,
                purchased_tokens=self._latest_purchased(identity_key, day),
                last_reset_at=now,
            )
            self.records[(identity_key, day)] = record
        return record

    async def get_or_create_day(
        self, identity_key: str, day: date, now: datetime
    ) -> TokenBalanceRecord:
        async with self._locks[identity_key]:
            return self._get_or_create_locked(identity_key, day, now).model_copy()

    async def try_consume(
        self, identity_key: str, day: date, daily_limit: int, amount: int, now: datetime
    ) -> TokenDebit | None:
        async with self._locks[identity_key]:
            record = self._get_or_create_locked(identity_key, day, now)
            remaining_daily = max(0, daily_limit - record.consumed_today)
            if amount > remaining_daily + record.purchased_tokens:
                return None

            from_daily = min(amount, remaining_daily)
            from_purchased = amount - from_daily
            record.consumed_today += from_daily
            record.purchased_tokens -= from_purchased
            return TokenDebit(
                record=record.model_copy(),
                daily_tokens_used=from_daily,
                purchased_tokens_used=from_purchased,
            )

    async def add_purchased(
        self, identity_key: str, day: date, amount: int, now: datetime
    ) -> TokenBalanceRecord:
        async with self._locks[identity_key]:
            record = self._get_or_create_locked(identity_key, day, now)
            record.purchased_tokens += amount
            return record.model_copy()


class SupabaseTokenLedgerRepository:
    """Supabase-backed repository. Atomicity lives in the Postgres functions."""

    def __init__(self, client) -> None:
        self.client = client

    @staticmethod
    def _params(identity_key: str, day: date, now: datetime, **extra: Any) -> dict[str, Any]:
        return {
            "p_identity_key": identity_key,
            "p_day": day.isoformat(),
            "p_now": now.isoformat(),
            **extra,
        }

    async def get_or_create_day(
        self, identity_key: str, day: date, now: datetime
    ) -> TokenBalanceRecord:
        row = await db.call_rpc_single(
            self.client, "get_or_create_daily_tokens", self._params(identity_key, day, now)
        )
        if row is None:
            raise RuntimeError("get_or_create_daily_tokens returned no row")
        return TokenBalanceRecord.model_validate(row)

    async def try_consume(
        self, identity_key: str, day: date, daily_limit: int, amount: int, now: datetime
    ) -> TokenDebit | None:
        row = await db.call_rpc_single(
            self.client,
            "consume_daily_tokens",
            self._params(identity_key, day, now, p_daily_limit=daily_limit, p_amount=amount),
        )
        if row is None:
            return None
        return TokenDebit(
            record=TokenBalanceRecord.model_validate(row),
            daily_tokens_used=row["daily_tokens_used"],
            purchased_tokens_used=row["purchased_tokens_used"],
        )

    async def add_purchased(
        self, identity_key: str, day: date, amount: int, now: datetime
    ) -> TokenBalanceRecord:
        row = await db.call_rpc_single(
            self.client,
            "add_purchased_tokens",
            self._params(identity_key, day, now, p_amount=amount),
        )
        if row is None:
            raise RuntimeError("add_purchased_tokens returned no row")
        return TokenBalanceRecord.model_validate(row)


class TokenLedger:
    """Computes operation costs and meters tokens per identity and UTC day."""

    def __init__(
        self,
        repository: TokenLedgerRepository,
        catalog: PlanCatalog,
        config: TokenConfig | None = None,
        *,
        history: TokenUsageHistoryRepository | None = None,
        store_timeout: float = 5.0,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.config = config or TokenConfig()
        self.history = history
        self.store_timeout = store_timeout
        self.now_provider = now_provider

    # -- cost table ---------------------------------------------------------

    def cost_of(self, language_code: str, mode: str | None = None) -> int:
        """Token cost of one operation in ``language_code``, optionally scaled by study mode."""
        base = self.config.language_costs.get((language_code or "").strip().lower())
        if base is None:
            raise UnsupportedLanguage(
                f"Language '{language_code}' is not supported",
                language=language_code,
                supported_languages=sorted(self.config.language_costs),
            )
        if mode is None:
            return base

        multiplier = self.config.mode_multipliers.get(mode)
        if multiplier is None:
            raise InvalidRequest(f"Unknown study mode '{mode}'", mode=mode)
        return math.ceil(base * multiplier)

    # -- plan attributes ----------------------------------------------------

    def daily_limit(self, plan: Plan) -> int:
        return self.catalog.daily_limit(plan)

    def can_purchase_tokens(self, plan: Plan) -> bool:
        return self.catalog.is_purchasable(plan)

    def is_unlimited_plan(self, plan: Plan) -> bool:
        return self.catalog.is_unlimited(plan)

    @staticmethod
    def next_reset_time(now: datetime) -> datetime:
        """Next UTC midnight after ``now``."""
        return datetime.combine(now.astimezone(UTC).date() + timedelta(days=1), time.min, tzinfo=UTC)

    # -- balance ------------------------------------------------------------

    def _balance(self, record: TokenBalanceRecord, plan: Plan) -> TokenBalance:
        if self.is_unlimited_plan(plan):
            return TokenBalance(
                available_tokens=UNLIMITED,
                purchased_tokens=record.purchased_tokens,
                total_tokens=UNLIMITED,
                daily_limit=UNLIMITED,
                consumed_today=record.consumed_today,
                last_reset=record.last_reset_at,
            )

        daily_limit = self.daily_limit(plan)
        available = max(0, daily_limit - record.consumed_today)
        return TokenBalance(
            available_tokens=available,
            purchased_tokens=record.purchased_tokens,
            total_tokens=available + record.purchased_tokens,
            daily_limit=daily_limit,
            consumed_today=record.consumed_today,
            last_reset=record.last_reset_at,
        )

    async def get_balance(self, identity: AnyIdentity, plan: Plan) -> TokenBalance:
        now = self.now_provider()
        record = await call_store(
            self.repository.get_or_create_day(identity_key(identity), now.date(), now),
            timeout=self.store_timeout,
            operation="get_balance",
        )
        return self._balance(record, plan)

    async def status(self, identity: AnyIdentity, plan: Plan) -> TokenStatus:
        balance = await self.get_balance(identity, plan)
        unlimited = self.is_unlimited_plan(plan)
        return TokenStatus(
            available_tokens=balance.available_tokens,
            purchased_tokens=balance.purchased_tokens,
            total_tokens=balance.total_tokens,
            daily_limit=balance.daily_limit,
            total_consumed_today=balance.consumed_today,
            last_reset=balance.last_reset,
            user_plan=plan,
            is_premium=plan == Plan.PREMIUM,
            unlimited_usage=unlimited,
            can_purchase_tokens=self.can_purchase_tokens(plan),
            next_reset_time=None if unlimited else self.next_reset_time(self.now_provider()),
        )

    # -- mutations ----------------------------------------------------------

    def _validate_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidRequest("Token amount must be an integer")
        if amount <= 0 or amount > self.config.max_operation_cost:
            raise InvalidRequest(
                f"Token amount must be between 1 and {self.config.max_operation_cost}",
                amount=amount,
            )

    async def consume(
        self,
        identity: AnyIdentity,
        plan: Plan,
        amount: int,
        context: TokenUsageContext | None = None,
    ) -> ConsumptionResult:
        """Debit ``amount`` tokens all-or-nothing; unlimited plans are never debited.

        A successful metered debit is also appended to the usage history,
        described by ``context``. A failed history write is logged and never
        fails the debit.
        """
        self._validate_amount(amount)
        key = identity_key(identity)

        if self.is_unlimited_plan(plan):
            balance = await self.get_balance(identity, plan)
            logger.debug("tokens_unmetered", identity_key=key, plan=plan.value, amount=amount)
            return ConsumptionResult(tokens_consumed=amount, unlimited=True, balance=balance)

        now = self.now_provider()
        debit = await call_store(
            self.repository.try_consume(key, now.date(), self.daily_limit(plan), amount, now),
            timeout=self.store_timeout,
            operation="consume_tokens",
        )
        if debit is None:
            balance = await self.get_balance(identity, plan)
            logger.info(
                "insufficient_tokens",
                identity_key=key,
                plan=plan.value,
                requested=amount,
                total_tokens=balance.total_tokens,
            )
            raise InsufficientTokens(
                "Not enough tokens available",
                required_tokens=amount,
                available_tokens=balance.available_tokens,
                purchased_tokens=balance.purchased_tokens,
                total_tokens=balance.total_tokens,
                next_reset_time=self.next_reset_time(now).isoformat(),
            )

        logger.info(
            "tokens_consumed",
            identity_key=key,
            plan=plan.value,
            amount=amount,
            daily_tokens_used=debit.daily_tokens_used,
            purchased_tokens_used=debit.purchased_tokens_used,
        )
        await self._record_usage(key, plan, amount, debit, context or TokenUsageContext(), now)
        return ConsumptionResult(
            tokens_consumed=amount,
            daily_tokens_used=debit.daily_tokens_used,
            purchased_tokens_used=debit.purchased_tokens_used,
            balance=self._balance(debit.record, plan),
        )

    async def _record_usage(
        self,
        key: str,
        plan: Plan,
        amount: int,
        debit: TokenDebit,
        context: TokenUsageContext,
        now: datetime,
    ) -> None:
        if self.history is None:
            return
        entry = TokenUsageRecord(
            identity_key=key,
            feature_name=context.feature_name,
            operation_type=context.operation_type,
            study_mode=context.study_mode,
            language=context.language,
            user_plan=plan,
            token_cost=amount,
            daily_tokens_used=debit.daily_tokens_used,
            purchased_tokens_used=debit.purchased_tokens_used,
            created_at=now,
        )
        try:
            await call_store(
                self.history.record(entry),
                timeout=self.store_timeout,
                operation="record_token_usage",
            )
        except UpstreamFailure as e:
            # The debit already happened; the history is analytics only
            logger.warning(
                "token_usage_record_failed",
                identity_key=key,
                feature_name=context.feature_name,
                token_cost=amount,
                error=e.message,
            )

    async def add_purchased_tokens(self, identity: AnyIdentity, plan: Plan, amount: int) -> TokenBalance:
        """Credit tokens bought by an authenticated user on a purchasable plan."""
        if not isinstance(identity, AuthenticatedIdentity):
            raise InvalidRequest("Only signed-in users can purchase tokens")
        if not self.can_purchase_tokens(plan):
            raise InvalidRequest(f"{plan.value} plan users cannot purchase tokens", plan=plan.value)
        if isinstance(amount, bool) or not isinstance(amount, int) or not (
            self.config.min_purchase <= amount <= self.config.max_purchase
        ):
            raise InvalidRequest(
                f"Token purchase amount must be between {self.config.min_purchase} "
                f"and {self.config.max_purchase}",
                amount=amount,
            )

        now = self.now_provider()
        record = await call_store(
            self.repository.add_purchased(identity_key(identity), now.date(), amount, now),
            timeout=self.store_timeout,
            operation="add_purchased_tokens",
        )
        logger.info(
            "purchased_tokens_added",
            identity_key=identity_key(identity),
            amount=amount,
            purchased_tokens=record.purchased_tokens,
        )
        return self._balance(record, plan)

    # -- usage history ------------------------------------------------------

    async def usage_history(
        self,
        identity: AnyIdentity,
        *,
        limit: int = 20,
        offset: int = 0,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> TokenUsagePage:
        """Page through the caller's metered debits, newest first."""
        max_limit = self.config.history_page_max
        if not 1 <= limit <= max_limit:
            raise InvalidRequest(f"limit must be between 1 and {max_limit}", limit=limit)
        if offset < 0:
            raise InvalidRequest("offset must not be negative", offset=offset)
        start, end = _as_utc(start), _as_utc(end)
        if start is not None and end is not None and start >= end:
            raise InvalidRequest("start must be before end")

        if self.history is None:
            return TokenUsagePage(items=[], limit=limit, offset=offset)

        # One extra row tells us whether another page exists
        entries = await call_store(
            self.history.list_for(
                identity_key(identity), limit=limit + 1, offset=offset, start=start, end=end
            ),
            timeout=self.store_timeout,
            operation="list_token_usage",
        )
        return TokenUsagePage(
            items=entries[:limit],
            limit=limit,
            offset=offset,
            has_more=len(entries) > limit,
        )


def _as_utc(moment: datetime | None) -> datetime | None:
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=UTC)
