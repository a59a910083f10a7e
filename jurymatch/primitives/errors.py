# errors.py
# =============================================================================
# 输入校验错误定义 / Input validation errors.
#
# 只有真正的输入错误（缺失陪审员、空目录、无法转换的信号值）才会抛出；
# 证据不足、外部依赖失败都降级为零置信度结果，不走异常路径。
# / Only genuine input errors raise. Missing evidence and external failures
#   degrade to zero-confidence results instead.
# =============================================================================

from __future__ import annotations


# -----------------------------------------------------------------------------
# 错误码 / Error codes
# -----------------------------------------------------------------------------
JUROR_NOT_FOUND = "JUROR_NOT_FOUND"
EMPTY_CATALOG = "EMPTY_CATALOG"
INVALID_FACT = "INVALID_FACT"
INVALID_EVENT = "INVALID_EVENT"
INVALID_SIGNAL_VALUE = "INVALID_SIGNAL_VALUE"


class MatchInputError(Exception):
    """匹配输入校验错误: 携带错误码与诊断信息。 / Input validation error with code and message."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class SignalValueError(MatchInputError):
    """原始值无法转换为信号声明的类型。 / Raw value cannot be coerced to the signal's type."""

    def __init__(self, message: str) -> None:
        super().__init__(INVALID_SIGNAL_VALUE, message)
