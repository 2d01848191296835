"""Shared router dependencies: service lookup and rate-limit admission."""

from typing import Annotated

from fastapi import Depends, Request

from tokengate.auth import CurrentCaller
from tokengate.errors import UpstreamFailure
from tokengate.models.identity import Caller
from tokengate.services.entitlements import FeatureEntitlementResolver
from tokengate.services.rate_limiter import RateLimiter
from tokengate.services.token_ledger import TokenLedger
from tokengate.services.voice_usage import MonthlyVoiceUsageJob, VoiceUsageService


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise UpstreamFailure(f"Service '{name}' unavailable")
    return service


def get_token_ledger(request: Request) -> TokenLedger:
    return _service(request, "token_ledger")


def get_entitlement_resolver(request: Request) -> FeatureEntitlementResolver:
    return _service(request, "entitlement_resolver")


def get_voice_usage_service(request: Request) -> VoiceUsageService:
    return _service(request, "voice_usage_service")


def get_monthly_voice_job(request: Request) -> MonthlyVoiceUsageJob:
    return _service(request, "monthly_voice_job")


async def get_admitted_caller(request: Request, caller: CurrentCaller) -> Caller:
    """Run the rate limiter before any token or feature logic."""
    limiter: RateLimiter = _service(request, "rate_limiter")
    await limiter.enforce(caller.identity, caller.plan)
    return caller


AdmittedCaller = Annotated[Caller, Depends(get_admitted_caller)]
TokenLedgerDep = Annotated[TokenLedger, Depends(get_token_ledger)]
EntitlementResolverDep = Annotated[FeatureEntitlementResolver, Depends(get_entitlement_resolver)]
VoiceUsageDep = Annotated[VoiceUsageService, Depends(get_voice_usage_service)]
MonthlyVoiceJobDep = Annotated[MonthlyVoiceUsageJob, Depends(get_monthly_voice_job)]
