"""
Identity and plan resolution for FastAPI endpoints.

A verified ``Authorization: Bearer`` token (checked with Supabase
``auth.get_user()``) yields an authenticated identity; otherwise an
``X-Session-Id`` header yields an anonymous one. Plans come from a
``PlanResolver``.
"""

import re
from typing import Annotated, Protocol

import structlog
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tokengate.constants import ACTIVE_SUBSCRIPTION_STATUSES
from tokengate.errors import AuthenticationRequired, InvalidRequest, TokenGateError, UpstreamFailure
from tokengate.models.identity import (
    AnonymousIdentity,
    AnyIdentity,
    AuthenticatedIdentity,
    Caller,
    identity_key,
)
from tokengate.models.plans import Plan
from tokengate.services import supabase_client as db
from tokengate.services.store import call_store

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


async def get_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    session_id: str | None = Header(default=None, alias="X-Session-Id"),
) -> AnyIdentity:
    """
    FastAPI dependency resolving the caller's identity.

    Raises:
        UpstreamFailure: Supabase client not configured.
        AuthenticationRequired: Token invalid/expired, or no credentials at all.
        InvalidRequest: Malformed session identifier.
    """
    if credentials is not None:
        supabase = getattr(request.app.state, "supabase", None)
        if supabase is None:
            raise UpstreamFailure("Authentication service unavailable")

        try:
            response = await supabase.auth.get_user(credentials.credentials)
            user = response.user if response else None
            if user is None:
                raise AuthenticationRequired("Invalid or expired token")
            return AuthenticatedIdentity(user_id=str(user.id), email=user.email)
        except TokenGateError:
            raise
        except Exception as e:
            logger.warning("auth_token_verification_failed", error=str(e))
            raise AuthenticationRequired("Invalid or expired token")

    if session_id is not None:
        session_id = session_id.strip()
        if not _SESSION_ID_PATTERN.match(session_id):
            raise InvalidRequest("Malformed session identifier")
        return AnonymousIdentity(session_id=session_id)

    raise AuthenticationRequired()


class PlanResolver(Protocol):
    """Resolves the subscription plan of an identity."""

    async def plan_of(self, identity: AnyIdentity) -> Plan:
        """Return the identity's current plan."""


class StaticPlanResolver:
    """Fixed user -> plan mapping used for tests and local fallback."""

    def __init__(self, plans: dict[str, Plan] | None = None, default: Plan = Plan.FREE) -> None:
        self.plans = dict(plans or {})
        self.default = default

    async def plan_of(self, identity: AnyIdentity) -> Plan:
        match identity:
            case AuthenticatedIdentity(user_id=user_id):
                return self.plans.get(user_id, self.default)
            case AnonymousIdentity():
                return Plan.FREE
            case _:
                raise TypeError(f"Unknown identity type: {type(identity).__name__}")


class SupabasePlanResolver:
    """Reads the newest active subscription row; no row means the free plan."""

    def __init__(self, client, table: str = "subscriptions", *, store_timeout: float = 5.0) -> None:
        self.client = client
        self.table = table
        self.store_timeout = store_timeout

    async def _subscribed_plan(self, user_id: str) -> Plan:
        row = await call_store(
            db.select_latest_row(
                self.client,
                self.table,
                filters={"user_id": user_id},
                in_filters={"status": sorted(ACTIVE_SUBSCRIPTION_STATUSES)},
            ),
            timeout=self.store_timeout,
            operation="resolve_plan",
        )
        if row is None:
            return Plan.FREE
        try:
            return Plan(row.get("plan_type"))
        except ValueError:
            logger.warning("subscription_unknown_plan", user_id=user_id, plan_type=row.get("plan_type"))
            return Plan.FREE

    async def plan_of(self, identity: AnyIdentity) -> Plan:
        match identity:
            case AuthenticatedIdentity(user_id=user_id):
                return await self._subscribed_plan(user_id)
            case AnonymousIdentity():
                return Plan.FREE
            case _:
                raise TypeError(f"Unknown identity type: {type(identity).__name__}")


async def get_caller(
    request: Request,
    identity: Annotated[AnyIdentity, Depends(get_identity)],
) -> Caller:
    """FastAPI dependency pairing the identity with its resolved plan."""
    resolver: PlanResolver | None = getattr(request.app.state, "plan_resolver", None)
    if resolver is None:
        raise UpstreamFailure("Plan resolution unavailable")

    plan = await resolver.plan_of(identity)
    structlog.contextvars.bind_contextvars(identity_key=identity_key(identity), plan=plan.value)
    return Caller(identity=identity, plan=plan)


CurrentCaller = Annotated[Caller, Depends(get_caller)]
