"""
Pydantic models for the subscription plan catalog
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from payments_api.errors import UnknownPlanError

UNLIMITED = -1

PlanTier = Literal["free", "basic", "pro", "enterprise"]
BillingCycle = Literal["monthly", "yearly"]


class PlanPricesModel(BaseModel):
    """Per-cycle list price in KRW"""
    monthly: int = Field(ge=0)
    yearly: int = Field(ge=0)


class PlanFeaturesModel(BaseModel):
    """Boolean feature flags (camelCase on the wire)"""
    model_config = ConfigDict(populate_by_name=True)

    custom_branding: bool = Field(alias="customBranding")
    advanced_reports: bool = Field(alias="advancedReports")
    api_access: bool = Field(alias="apiAccess")
    priority_support: bool = Field(alias="prioritySupport")
    sms_notifications: bool = Field(alias="smsNotifications")
    email_marketing: bool = Field(alias="emailMarketing")
    data_export: bool = Field(alias="dataExport")
    multiple_locations: bool = Field(alias="multipleLocations")
    custom_integrations: bool = Field(alias="customIntegrations")

    def has(self, feature: str) -> Optional[bool]:
        """Look up a feature by camelCase or snake_case name; None if unknown."""
        for name, info in type(self).model_fields.items():
            if feature in (name, info.alias):
                return getattr(self, name)
        return None


class PlanLimitsModel(BaseModel):
    """Resource limits (-1 = unlimited)"""
    model_config = ConfigDict(populate_by_name=True)

    student_limit: int = Field(alias="studentLimit", ge=UNLIMITED)
    teacher_limit: int = Field(alias="teacherLimit", ge=UNLIMITED)
    classroom_limit: int = Field(alias="classroomLimit", ge=UNLIMITED)
    storage_gb: int = Field(alias="storageGb", ge=UNLIMITED)
    api_calls_per_month: int = Field(alias="apiCallsPerMonth", ge=UNLIMITED)
    sms_per_month: int = Field(alias="smsPerMonth", ge=UNLIMITED)
    emails_per_month: int = Field(alias="emailsPerMonth", ge=UNLIMITED)


class PlanModel(BaseModel):
    """One subscription tier"""
    tier: PlanTier
    display_name: str
    custom_pricing: bool = False
    prices: PlanPricesModel
    features: PlanFeaturesModel
    limits: PlanLimitsModel

    def price(self, cycle: str) -> int:
        return self.prices.yearly if cycle == "yearly" else self.prices.monthly


class PlanCatalogModel(BaseModel):
    """Complete plan catalog; tiers are listed lowest to highest"""
    catalog_version: str
    currency: str = "KRW"
    cycle_days: dict[str, int]
    tiers: List[PlanModel]

    def get_plan(self, tier: str) -> PlanModel:
        """
        Raises:
            UnknownPlanError: tier not in catalog
        """
        for plan in self.tiers:
            if plan.tier == tier:
                return plan
        raise UnknownPlanError(tier)

    def tier_rank(self, tier: str) -> int:
        return self.tiers.index(self.get_plan(tier))

    def price(self, tier: str, cycle: str) -> int:
        return self.get_plan(tier).price(cycle)

    def days_in_cycle(self, cycle: str) -> int:
        return self.cycle_days[cycle]

    @staticmethod
    def is_unlimited(limit: int) -> bool:
        return limit == UNLIMITED
