"""Caller identity models.

An identity is either an authenticated user or an anonymous session. Both
share the same cost model; the ledger and rate limiter key on ``identity_key``.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from tokengate.models.plans import Plan


class AuthenticatedIdentity(BaseModel):
    """A user whose bearer token was verified."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["authenticated"] = "authenticated"
    user_id: str = Field(min_length=1)
    email: str | None = None


class AnonymousIdentity(BaseModel):
    """A caller known only by a client-issued session identifier."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["anonymous"] = "anonymous"
    session_id: str = Field(min_length=1)


AnyIdentity = AuthenticatedIdentity | AnonymousIdentity

Identity = Annotated[AnyIdentity, Field(discriminator="kind")]


def identity_key(identity: AnyIdentity) -> str:
    """Stable storage key for an identity."""
    match identity:
        case AuthenticatedIdentity(user_id=user_id):
            return f"user:{user_id}"
        case AnonymousIdentity(session_id=session_id):
            return f"session:{session_id}"
        case _:
            raise TypeError(f"Unknown identity type: {type(identity).__name__}")


class Caller(BaseModel):
    """Identity resolved for the current request together with its plan."""

    model_config = ConfigDict(frozen=True)

    identity: Identity
    plan: Plan

    @property
    def key(self) -> str:
        return identity_key(self.identity)

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self.identity, AuthenticatedIdentity)
