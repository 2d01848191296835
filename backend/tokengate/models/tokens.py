"""Token ledger models."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, Field

from tokengate.models.plans import Plan


class TokenBalanceRecord(BaseModel):
    """Persisted token counters for one identity on one UTC day.

    A new day gets a new row; earlier rows are never written again.
    ``purchased_tokens`` is carried forward from the previous row on creation.
    """

    identity_key: str
    day: date
    consumed_today: int = Field(default=0, ge=0)
    purchased_tokens: int = Field(default=0, ge=0)
    last_reset_at: datetime


class TokenBalance(BaseModel):
    """Balance view computed from a day record and the caller's plan."""

    available_tokens: int
    purchased_tokens: int
    total_tokens: int
    daily_limit: int
    consumed_today: int
    last_reset: datetime


class ConsumptionResult(BaseModel):
    """Outcome of a successful ``consume`` call."""

    tokens_consumed: int
    daily_tokens_used: int = 0
    purchased_tokens_used: int = 0
    unlimited: bool = False
    balance: TokenBalance


class TokenStatus(BaseModel):
    """Token status returned to clients."""

    available_tokens: int
    purchased_tokens: int
    total_tokens: int
    daily_limit: int
    total_consumed_today: int
    last_reset: datetime
    user_plan: Plan
    is_premium: bool
    unlimited_usage: bool
    can_purchase_tokens: bool
    next_reset_time: datetime | None = None


class TokenDebit(BaseModel):
    """Row state after an accepted debit and how it was split."""

    record: TokenBalanceRecord
    daily_tokens_used: int = Field(ge=0)
    purchased_tokens_used: int = Field(ge=0)


class TokenUsageContext(BaseModel):
    """What a debit paid for. Copied onto its usage history entry."""

    feature_name: str = Field(default="token_consume", min_length=1, max_length=64)
    operation_type: str = Field(default="consume", min_length=1, max_length=64)
    study_mode: str | None = None
    language: str | None = None


class TokenUsageRecord(BaseModel):
    """One metered debit in an identity's usage history.

    Entries are append-only. ``daily_tokens_used + purchased_tokens_used``
    always equals ``token_cost``.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    identity_key: str
    feature_name: str
    operation_type: str
    study_mode: str | None = None
    language: str | None = None
    user_plan: Plan
    token_cost: int = Field(gt=0)
    daily_tokens_used: int = Field(default=0, ge=0)
    purchased_tokens_used: int = Field(default=0, ge=0)
    created_at: datetime


class TokenUsagePage(BaseModel):
    """A page of usage history, newest first."""

    items: list[TokenUsageRecord]
    limit: int
    offset: int
    has_more: bool = False
