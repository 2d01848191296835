"""Monthly voice conversation quota endpoints."""

from fastapi import APIRouter

from tokengate.api.v1.deps import AdmittedCaller, VoiceUsageDep
from tokengate.models.voice import MonthlyVoiceUsageRecord, VoiceQuota

router = APIRouter(prefix="/voice", tags=["voice"])


@router.get("/quota", response_model=VoiceQuota)
async def voice_quota(caller: AdmittedCaller, service: VoiceUsageDep) -> VoiceQuota:
    """Conversations used and remaining this month."""
    return await service.check_quota(caller.identity, caller.plan)


@router.post("/conversations/start", response_model=VoiceQuota)
async def start_conversation(caller: AdmittedCaller, service: VoiceUsageDep) -> VoiceQuota:
    """Count a new conversation against this month's quota."""
    return await service.start_conversation(caller.identity, caller.plan)


@router.post("/conversations/complete", response_model=MonthlyVoiceUsageRecord)
async def complete_conversation(caller: AdmittedCaller, service: VoiceUsageDep) -> MonthlyVoiceUsageRecord:
    """Mark one started conversation as completed."""
    return await service.complete_conversation(caller.identity, caller.plan)
