"""Plan catalog endpoint."""

from fastapi import APIRouter, Request

from payments_api.pricing.models import PlanCatalogModel

router = APIRouter(prefix="/v1", tags=["plans"])


@router.get("/plans", response_model=PlanCatalogModel)
async def list_plans(request: Request) -> PlanCatalogModel:
    """Tiers with prices, feature flags and limits (-1 = unlimited)."""
    return request.app.state.catalog
