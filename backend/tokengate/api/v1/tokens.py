"""Token balance, consumption and usage history endpoints."""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from tokengate.api.v1.deps import AdmittedCaller, TokenLedgerDep
from tokengate.models.tokens import ConsumptionResult, TokenStatus, TokenUsageContext, TokenUsagePage

router = APIRouter(prefix="/tokens", tags=["tokens"])


class ConsumeRequest(BaseModel):
    """Token consumption request for one paid operation."""

    language: str = Field(min_length=1, max_length=8, description="Content language code")
    mode: str | None = Field(default=None, description="Optional study mode scaling the cost")
    feature: str = Field(
        default="token_consume",
        min_length=1,
        max_length=64,
        description="Feature charged, recorded in the usage history",
    )
    operation_type: str = Field(default="consume", min_length=1, max_length=64)


class ConsumeResponse(ConsumptionResult):
    """Consumption result with the cost that was charged."""

    language: str
    mode: str | None = None


@router.get("/status", response_model=TokenStatus)
async def token_status(caller: AdmittedCaller, ledger: TokenLedgerDep) -> TokenStatus:
    """Return the caller's current token balance."""
    return await ledger.status(caller.identity, caller.plan)


@router.post("/consume", response_model=ConsumeResponse)
async def consume_tokens(
    body: ConsumeRequest,
    caller: AdmittedCaller,
    ledger: TokenLedgerDep,
) -> ConsumeResponse:
    """Charge the caller for one operation in ``language`` (and optional ``mode``)."""
    cost = ledger.cost_of(body.language, body.mode)
    context = TokenUsageContext(
        feature_name=body.feature,
        operation_type=body.operation_type,
        study_mode=body.mode,
        language=body.language.strip().lower(),
    )
    result = await ledger.consume(caller.identity, caller.plan, cost, context)
    return ConsumeResponse(**result.model_dump(), language=body.language, mode=body.mode)


@router.get("/history", response_model=TokenUsagePage)
async def token_history(
    caller: AdmittedCaller,
    ledger: TokenLedgerDep,
    limit: int = 20,
    offset: int = 0,
    start: datetime | None = None,
    end: datetime | None = None,
) -> TokenUsagePage:
    """Page through the caller's metered debits, newest first."""
    return await ledger.usage_history(caller.identity, limit=limit, offset=offset, start=start, end=end)
