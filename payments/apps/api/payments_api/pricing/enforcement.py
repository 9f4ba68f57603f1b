"""
Usage/limit enforcement
Read-only comparisons of an academy's usage against its plan limits (-1 = unlimited)

The checks are advisory: they report whether an action would exceed a limit.
Call sites that want a hard gate use the enforce_* variants, which raise
PlanLimitExceededError (rendered as 402 Problem Details).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from payments_api.db.models import Subscription, UsageSnapshot
from payments_api.errors import PlanLimitExceededError
from payments_api.schemas import ExceededDimension, LimitCheckOut, LimitsReportOut
from payments_api.utils.clock import as_utc

from .models import UNLIMITED, PlanCatalogModel, PlanModel


@dataclass(frozen=True)
class UsageCounts:
    """Current usage of one academy (zeros when no snapshot exists yet)"""

    students: int = 0
    teachers: int = 0
    classrooms: int = 0
    storage_gb: float = 0.0
    api_calls_month: int = 0
    sms_sent_month: int = 0
    emails_sent_month: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: Optional[UsageSnapshot]) -> "UsageCounts":
        if snapshot is None:
            return cls()
        return cls(
            students=snapshot.student_count,
            teachers=snapshot.teacher_count,
            classrooms=snapshot.classroom_count,
            storage_gb=snapshot.storage_gb,
            api_calls_month=snapshot.api_calls_month,
            sms_sent_month=snapshot.sms_sent_month,
            emails_sent_month=snapshot.emails_sent_month,
        )


@dataclass(frozen=True)
class EffectivePlan:
    """Plan whose limits currently apply to an academy"""

    plan: PlanModel
    subscription_active: bool


class UsageEnforcement:
    """
    Plan-limit checks:
    1. can-add-N students / teachers
    2. feature access
    3. aggregate check listing every exceeded dimension
    """

    def __init__(self, catalog: PlanCatalogModel):
        self.catalog = catalog

    def resolve_plan(
        self, subscription: Optional[Subscription], now: datetime
    ) -> EffectivePlan:
        """
        Free-tier limits apply when there is no subscription, it is free or
        suspended, or its paid period has ended.
        """
        free = self.catalog.get_plan("free")
        if subscription is None or subscription.status == "free":
            return EffectivePlan(plan=free, subscription_active=True)
        if subscription.status == "suspended":
            return EffectivePlan(plan=free, subscription_active=False)

        period_end = as_utc(subscription.current_period_end)
        if period_end is not None and period_end < now:
            return EffectivePlan(plan=free, subscription_active=False)

        return EffectivePlan(
            plan=self.catalog.get_plan(subscription.plan_tier),
            subscription_active=True,
        )

    # ------------------------------------------------------------------
    # can-add checks
    # ------------------------------------------------------------------

    def can_add_students(self, plan: PlanModel, current: int, count: int = 1) -> LimitCheckOut:
        return self._can_add("Student", plan.limits.student_limit, current, count)

    def can_add_teachers(self, plan: PlanModel, current: int, count: int = 1) -> LimitCheckOut:
        return self._can_add("Teacher", plan.limits.teacher_limit, current, count)

    def enforce_can_add_students(self, plan: PlanModel, current: int, count: int = 1) -> None:
        """
        Raises:
            PlanLimitExceededError: Adding count students would exceed the limit
        """
        self._enforce("students", self.can_add_students(plan, current, count))

    def enforce_can_add_teachers(self, plan: PlanModel, current: int, count: int = 1) -> None:
        """
        Raises:
            PlanLimitExceededError: Adding count teachers would exceed the limit
        """
        self._enforce("teachers", self.can_add_teachers(plan, current, count))

    def _can_add(self, noun: str, limit: int, current: int, count: int) -> LimitCheckOut:
        if limit == UNLIMITED:
            return LimitCheckOut(
                allowed=True,
                current=current,
                limit=limit,
                requested=count,
                message=f"Unlimited {noun.lower()}s",
            )

        allowed = current + count <= limit
        return LimitCheckOut(
            allowed=allowed,
            current=current,
            limit=limit,
            requested=count,
            message=None if allowed else (
                f"{noun} limit reached ({current}/{limit}). Please upgrade your subscription."
            ),
        )

    @staticmethod
    def _enforce(dimension: str, check: LimitCheckOut) -> None:
        if not check.allowed:
            raise PlanLimitExceededError(
                dimension=dimension,
                current=check.current,
                limit=check.limit,
                requested=check.requested,
                detail=check.message,
            )

    # ------------------------------------------------------------------
    # Feature access
    # ------------------------------------------------------------------

    def has_feature_access(self, plan: PlanModel, feature: str) -> bool:
        """Unknown feature names are treated as not included."""
        return plan.features.has(feature) is True

    # ------------------------------------------------------------------
    # Aggregate check
    # ------------------------------------------------------------------

    def check_limits(
        self,
        academy_id: str,
        effective: EffectivePlan,
        usage: UsageCounts,
    ) -> LimitsReportOut:
        """Compare every dimension; returns all exceeded ones at once."""
        limits = effective.plan.limits
        dimensions = [
            ("students", "Students", usage.students, limits.student_limit),
            ("teachers", "Teachers", usage.teachers, limits.teacher_limit),
            ("classrooms", "Classrooms", usage.classrooms, limits.classroom_limit),
            ("storage_gb", "Storage", usage.storage_gb, limits.storage_gb),
            ("api_calls_month", "API Calls", usage.api_calls_month, limits.api_calls_per_month),
            ("sms_month", "SMS", usage.sms_sent_month, limits.sms_per_month),
            ("emails_month", "Emails", usage.emails_sent_month, limits.emails_per_month),
        ]

        exceeded: list[ExceededDimension] = []
        messages: list[str] = []
        for dimension, label, current, limit in dimensions:
            if limit == UNLIMITED or current <= limit:
                continue
            exceeded.append(ExceededDimension(dimension=dimension, current=current, limit=limit))
            if dimension == "storage_gb":
                messages.append(f"{label}: {current:.2f}GB/{limit}GB")
            else:
                messages.append(f"{label}: {current}/{limit}")

        return LimitsReportOut(
            academy_id=academy_id,
            plan_tier=effective.plan.tier,
            subscription_active=effective.subscription_active,
            within_limits=not exceeded,
            exceeded=exceeded,
            messages=messages,
        )
