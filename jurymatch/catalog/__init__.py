# catalog/
# 画像目录发现、加载与查询模块。

from jurymatch.catalog.manager import CatalogManager, PersonaCatalog
from jurymatch.catalog.validator import (
    CATALOG_DUPLICATE,
    CATALOG_NOT_FOUND,
    CATALOG_SCHEMA_INVALID,
    CATALOG_UNKNOWN_PERSONA,
    CATALOG_UNKNOWN_SIGNAL,
    CATALOG_WEIGHT_RANGE,
    CatalogValidationError,
)

__all__ = [
    "CatalogManager",
    "CatalogValidationError",
    "PersonaCatalog",
    "CATALOG_DUPLICATE",
    "CATALOG_NOT_FOUND",
    "CATALOG_SCHEMA_INVALID",
    "CATALOG_UNKNOWN_PERSONA",
    "CATALOG_UNKNOWN_SIGNAL",
    "CATALOG_WEIGHT_RANGE",
]
