"""Scheduler-triggered maintenance jobs."""

import hmac

import structlog
from fastapi import APIRouter, Header

from tokengate.api.v1.deps import MonthlyVoiceJobDep
from tokengate.config import get_settings
from tokengate.errors import AuthenticationRequired
from tokengate.models.voice import MonthlyJobResult

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _check_cron_secret(provided: str | None) -> None:
    expected = get_settings().cron_secret
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        raise AuthenticationRequired("Invalid scheduler credentials")


@router.post("/monthly-voice-reset", response_model=MonthlyJobResult)
async def monthly_voice_reset(
    job: MonthlyVoiceJobDep,
    cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
) -> MonthlyJobResult:
    """Archive last month's voice usage and sweep expired counters. Safe to re-run."""
    _check_cron_secret(cron_secret)
    result = await job.run()
    logger.info(
        "monthly_voice_job_finished",
        archived_month=result.archived_month,
        archive_succeeded=result.archive_succeeded,
        sweep_succeeded=result.sweep_succeeded,
        deleted_records=result.deleted_records,
    )
    return result
