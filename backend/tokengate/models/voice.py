"""Monthly voice conversation usage models."""

from datetime import datetime

from pydantic import BaseModel, Field

from tokengate.models.plans import Plan


class MonthlyVoiceUsageRecord(BaseModel):
    """Voice conversation counters for one identity in one calendar month (``YYYY-MM``)."""

    identity_key: str
    month: str
    tier: Plan
    conversations_started: int = Field(default=0, ge=0)
    conversations_completed: int = Field(default=0, ge=0)
    updated_at: datetime | None = None


class VoiceQuota(BaseModel):
    """Monthly quota check result. ``limit``/``remaining`` are -1 when unlimited."""

    can_start: bool
    conversations_used: int
    limit: int
    remaining: int
    tier: Plan
    month: str


class TierUsageSummary(BaseModel):
    """Aggregate voice usage for one tier in one month."""

    users: int = 0
    conversations_started: int = 0
    conversations_completed: int = 0
    completion_rate: float = 0.0


class VoiceUsageArchive(BaseModel):
    """Archived monthly summary, one row per month."""

    month: str
    total_users: int = 0
    conversations_started: int = 0
    conversations_completed: int = 0
    completion_rate: float = 0.0
    tiers: dict[Plan, TierUsageSummary] = Field(default_factory=dict)
    archived_at: datetime


class MonthlyJobResult(BaseModel):
    """What one run of the monthly voice job did."""

    archived_month: str
    archive_succeeded: bool
    archive: VoiceUsageArchive | None = None
    sweep_succeeded: bool
    deleted_records: int = 0
    retention_cutoff_month: str
