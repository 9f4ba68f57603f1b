"""
Classraum Pricing Module
Plan catalog and usage-limit enforcement
"""

from .models import (
    UNLIMITED,
    PlanCatalogModel,
    PlanFeaturesModel,
    PlanLimitsModel,
    PlanModel,
    PlanPricesModel,
)

from .catalog_loader import (
    CatalogLoader,
    get_catalog_loader,
    load_plan_catalog,
)

from .enforcement import (
    EffectivePlan,
    UsageCounts,
    UsageEnforcement,
)

__all__ = [
    # Models
    "UNLIMITED",
    "PlanCatalogModel",
    "PlanFeaturesModel",
    "PlanLimitsModel",
    "PlanModel",
    "PlanPricesModel",

    # Catalog loader
    "CatalogLoader",
    "get_catalog_loader",
    "load_plan_catalog",

    # Enforcement
    "EffectivePlan",
    "UsageCounts",
    "UsageEnforcement",
]
