# validator.py
# =============================================================================
# 画像目录校验错误定义。
#
# 本模块仅保留错误码和异常类，供 PersonaCatalog / CatalogManager 使用。
# =============================================================================

from __future__ import annotations


# -----------------------------------------------------------------------------
# 错误码
# -----------------------------------------------------------------------------
CATALOG_NOT_FOUND = "CATALOG_NOT_FOUND"
CATALOG_SCHEMA_INVALID = "CATALOG_SCHEMA_INVALID"
CATALOG_DUPLICATE = "CATALOG_DUPLICATE"
CATALOG_UNKNOWN_SIGNAL = "CATALOG_UNKNOWN_SIGNAL"
CATALOG_UNKNOWN_PERSONA = "CATALOG_UNKNOWN_PERSONA"
CATALOG_WEIGHT_RANGE = "CATALOG_WEIGHT_RANGE"


class CatalogValidationError(Exception):
    """画像目录校验错误: 携带错误码与诊断信息。"""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")
