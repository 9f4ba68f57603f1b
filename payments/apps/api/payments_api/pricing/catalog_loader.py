"""
Plan catalog loader with JSON Schema validation
"""

import json
from pathlib import Path
from typing import Optional

from jsonschema import ValidationError as JsonSchemaValidationError
from jsonschema import validate

from .models import PlanCatalogModel


class CatalogLoader:
    """
    Load the plan catalog JSON and validate it against its JSON Schema
    """

    def __init__(self, catalog_path: Path, schema_path: Path):
        self.catalog_path = catalog_path
        self.schema_path = schema_path
        self._catalog: Optional[PlanCatalogModel] = None

    def load(self) -> PlanCatalogModel:
        """
        Load catalog JSON and validate it

        Raises:
            FileNotFoundError: Catalog or schema file not found
            ValueError: JSON Schema or Pydantic validation failed
        """
        with open(self.schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)

        with open(self.catalog_path, "r", encoding="utf-8") as f:
            catalog_json = json.load(f)

        try:
            validate(instance=catalog_json, schema=schema)
        except JsonSchemaValidationError as e:
            raise ValueError(f"Plan catalog failed JSON Schema validation: {e.message}") from e

        catalog = PlanCatalogModel(**catalog_json)

        tiers = [plan.tier for plan in catalog.tiers]
        if len(set(tiers)) != len(tiers):
            raise ValueError(f"Plan catalog lists a tier more than once: {tiers}")

        self._catalog = catalog
        return catalog

    def get_catalog(self) -> PlanCatalogModel:
        """Get loaded catalog, loading it on first use"""
        if self._catalog is None:
            return self.load()
        return self._catalog


# Singleton instance
_catalog_loader: Optional[CatalogLoader] = None


def get_catalog_loader() -> CatalogLoader:
    """Get singleton catalog loader (bundled fixtures)"""
    global _catalog_loader
    if _catalog_loader is None:
        fixtures_dir = Path(__file__).parent / "fixtures"
        _catalog_loader = CatalogLoader(
            fixtures_dir / "plans.json",
            fixtures_dir / "plans_schema.json",
        )
    return _catalog_loader


def load_plan_catalog() -> PlanCatalogModel:
    """Convenience accessor for the cached catalog"""
    return get_catalog_loader().get_catalog()
