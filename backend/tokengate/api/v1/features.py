"""Feature entitlement endpoints."""

from fastapi import APIRouter, Path

from tokengate.api.v1.deps import AdmittedCaller, EntitlementResolverDep
from tokengate.models.entitlements import FeatureAccess

router = APIRouter(prefix="/features", tags=["features"])


@router.get("", response_model=list[FeatureAccess])
async def list_features(caller: AdmittedCaller, resolver: EntitlementResolverDep) -> list[FeatureAccess]:
    """Access decision for every known feature under the caller's plan."""
    return resolver.resolve_all(caller.plan)


@router.get("/{feature_key}/access", response_model=FeatureAccess)
async def feature_access(
    caller: AdmittedCaller,
    resolver: EntitlementResolverDep,
    feature_key: str = Path(min_length=1, max_length=64),
) -> FeatureAccess:
    """Access, lock and upgrade information for one feature."""
    return resolver.resolve(feature_key, caller.plan)
