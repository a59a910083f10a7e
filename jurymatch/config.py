# config.py
# =============================================================================
# 匹配引擎参数加载 / Matching engine parameter loading
#
# 优先级（高→低） / Priority (high→low):
#   1. overrides 字典 / code overrides
#   2. 配置文件（显式路径，或自动搜索 jurymatch.yaml）/ config file
#   3. MatchingConfig 默认值 / dataclass defaults
#
# 文件中可用 ${VAR} / ${VAR:-default} 引用环境变量；参数可放在顶层，
# 也可放在 matching: 节下。未知键记录警告后忽略。
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from jurymatch.llm.config import expand_env_vars, read_yaml
from jurymatch.primitives.models import MatchingConfig

logger = logging.getLogger(__name__)

_CONFIG_SEARCH_PATHS = [
    "jurymatch.yaml",
    "jurymatch.yml",
    "config/jurymatch.yaml",
    "config/jurymatch.yml",
]

_FLOAT_FIELDS = {
    "materiality_threshold",
    "confirmation_threshold",
    "logistic_steepness",
    "contradiction_damping",
    "bayes_strength",
    "embedding_timeout",
    "enrichment_timeout",
    "embedding_cache_ttl",
}
_INT_FIELDS = {"top_n", "saturation_chars", "max_retries"}
_BOOL_FIELDS = {"enrich_rationale"}


def load_matching_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> MatchingConfig:
    """加载 MatchingConfig。

    Raises:
        ValueError: 参数值无法转换或不合法（例如 contradiction_damping 越界）。
    """
    values: Dict[str, Any] = {}

    file_path = _find_config_file(path)
    if file_path is not None:
        raw = read_yaml(file_path)
        section = raw.get("matching", raw)
        if isinstance(section, dict):
            values.update(section)
        logger.info("匹配参数配置文件已加载: %s", file_path)

    if overrides:
        values.update(expand_env_vars(overrides))

    return MatchingConfig(**_coerce(values))


def _find_config_file(path: Optional[Union[str, Path]]) -> Optional[Path]:
    if path is not None:
        candidate = Path(path)
        if candidate.exists():
            return candidate
        logger.warning("指定的匹配参数配置文件不存在: %s", candidate)
        return None
    for search_path in _CONFIG_SEARCH_PATHS:
        candidate = Path(search_path)
        if candidate.exists():
            return candidate
    logger.debug("未发现匹配参数配置文件，使用默认值")
    return None


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """按字段类型转换（环境变量展开后的值都是字符串）。"""
    known = {f.name for f in fields(MatchingConfig)}
    result: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            logger.warning("忽略未知的匹配参数: %s", key)
            continue
        if value is None:
            continue
        try:
            if key in _FLOAT_FIELDS:
                result[key] = float(value)
            elif key in _INT_FIELDS:
                result[key] = int(value)
            elif key in _BOOL_FIELDS:
                result[key] = _to_bool(value)
            elif key == "method_reliability":
                if not isinstance(value, dict):
                    raise ValueError("method_reliability 必须是映射")
                result[key] = {str(k): float(v) for k, v in value.items()}
            else:
                result[key] = value
        except (TypeError, ValueError) as e:
            raise ValueError(f"匹配参数 '{key}' 的值无效: {value!r} ({e})") from e
    return result


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"无法解析为布尔值: {value!r}")
