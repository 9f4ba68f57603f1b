"""Usage/limit endpoints. Advisory: callers check before they write."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from payments_api.context import academy_id_var
from payments_api.db.repo_subscriptions import get_subscription, get_usage_snapshot
from payments_api.db.session import get_db
from payments_api.pricing.enforcement import EffectivePlan, UsageCounts, UsageEnforcement
from payments_api.schemas import FeatureAccessOut, LimitCheckOut, LimitsReportOut
from payments_api.utils.clock import utcnow

router = APIRouter(prefix="/v1/academies/{academy_id}/usage", tags=["usage"])


def get_enforcement(request: Request) -> UsageEnforcement:
    return request.app.state.enforcement


def _effective_plan(db: Session, enforcement: UsageEnforcement, academy_id: str) -> EffectivePlan:
    return enforcement.resolve_plan(get_subscription(db, academy_id), utcnow())


@router.get("/limits", response_model=LimitsReportOut)
async def check_limits(
    academy_id: str,
    db: Session = Depends(get_db),
    enforcement: UsageEnforcement = Depends(get_enforcement),
) -> LimitsReportOut:
    """Every dimension currently over its plan limit."""
    academy_id_var.set(academy_id)
    effective = _effective_plan(db, enforcement, academy_id)
    usage = UsageCounts.from_snapshot(get_usage_snapshot(db, academy_id))
    return enforcement.check_limits(academy_id, effective, usage)


@router.get("/can-add-students", response_model=LimitCheckOut)
async def can_add_students(
    academy_id: str,
    count: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    enforcement: UsageEnforcement = Depends(get_enforcement),
) -> LimitCheckOut:
    academy_id_var.set(academy_id)
    effective = _effective_plan(db, enforcement, academy_id)
    usage = UsageCounts.from_snapshot(get_usage_snapshot(db, academy_id))
    return enforcement.can_add_students(effective.plan, usage.students, count)


@router.get("/can-add-teachers", response_model=LimitCheckOut)
async def can_add_teachers(
    academy_id: str,
    count: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    enforcement: UsageEnforcement = Depends(get_enforcement),
) -> LimitCheckOut:
    academy_id_var.set(academy_id)
    effective = _effective_plan(db, enforcement, academy_id)
    usage = UsageCounts.from_snapshot(get_usage_snapshot(db, academy_id))
    return enforcement.can_add_teachers(effective.plan, usage.teachers, count)


@router.get("/features/{feature}", response_model=FeatureAccessOut)
async def feature_access(
    academy_id: str,
    feature: str,
    db: Session = Depends(get_db),
    enforcement: UsageEnforcement = Depends(get_enforcement),
) -> FeatureAccessOut:
    academy_id_var.set(academy_id)
    effective = _effective_plan(db, enforcement, academy_id)
    if effective.plan.features.has(feature) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown feature '{feature}'")
    return FeatureAccessOut(
        feature=feature,
        plan_tier=effective.plan.tier,
        has_access=enforcement.has_feature_access(effective.plan, feature),
    )
