# router.py
# =============================================================================
# 模型路由与调用次数控制
#
# 职责：
#   - 根据角色（rationale / embedding）创建并缓存适配器
#   - 统计调用尝试与成功次数；达到上限后拒绝新的调用
#
# 调用被拒绝时匹配不会失败：解释润色保留确定性文本，向量方法降级。
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from jurymatch.llm.config import (
    API_MODE_ANTHROPIC,
    API_MODE_CHAT,
    API_MODE_EMBEDDINGS,
    API_MODES,
    LLMConfigLoader,
    ModelEndpointConfig,
)

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """端点配置缺失或不完整时抛出的异常。"""
    pass


@dataclass
class BudgetState:
    """外部调用次数预算。max_calls <= 0 表示不限制。"""

    total_calls: int = 0
    max_calls: int = 500
    calls_by_role: Dict[str, int] = field(default_factory=dict)
    # 含失败请求的尝试次数，用于成本审计
    total_attempts: int = 0
    attempts_by_role: Dict[str, int] = field(default_factory=dict)

    @property
    def is_unlimited(self) -> bool:
        return self.max_calls <= 0

    @property
    def is_exceeded(self) -> bool:
        if self.is_unlimited:
            return False
        return self.total_attempts >= self.max_calls

    @property
    def remaining(self) -> int:
        """剩余可用次数；不限制时返回 -1。"""
        if self.is_unlimited:
            return -1
        return max(0, self.max_calls - self.total_attempts)

    def record_attempt(self, role: str) -> None:
        self.total_attempts += 1
        self.attempts_by_role[role] = self.attempts_by_role.get(role, 0) + 1

    def record_call(self, role: str) -> None:
        self.total_calls += 1
        self.calls_by_role[role] = self.calls_by_role.get(role, 0) + 1

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_attempts": self.total_attempts,
            "max_calls": self.max_calls,
            "unlimited": self.is_unlimited,
            "remaining": self.remaining,
            "calls_by_role": dict(self.calls_by_role),
            "attempts_by_role": dict(self.attempts_by_role),
        }


class ModelRouter:
    """按角色选择适配器并管理调用次数。

    - 配置经 LLMConfigLoader 四层合并解析
    - api_mode 决定适配器类型：chat_completions / anthropic / embeddings
    - 适配器按角色缓存
    """

    def __init__(
        self,
        llm_config: Optional[Dict[str, Any]] = None,
        max_calls: int = 500,
        config_file: Optional[str] = None,
    ) -> None:
        self._config_loader = LLMConfigLoader(llm_config=llm_config, config_file=config_file)
        self._budget = BudgetState(max_calls=max_calls)
        self._adapters: Dict[str, Any] = {}

        for role, info in self._config_loader.summary().items():
            logger.info(
                "模型路由: %s → %s/%s [%s] (url=%s, key=%s)",
                role, info["platform"], info["model"], info["api_mode"],
                info["url"], info["api_key"],
            )
        if self._budget.is_unlimited:
            logger.info("外部调用次数: 不限制")
        else:
            logger.info("外部调用次数上限: %d", max_calls)

    @property
    def budget(self) -> BudgetState:
        return self._budget

    @property
    def config_loader(self) -> LLMConfigLoader:
        return self._config_loader

    def has_role(self, role: str) -> bool:
        return self._config_loader.has_role(role)

    def get_endpoint_config(self, role: str) -> ModelEndpointConfig:
        return self._config_loader.resolve(role)

    def get_model_backend(self, role: str) -> Any:
        """角色对应的适配器实例（带缓存）。

        chat_completions / anthropic 适配器暴露 async call(system_prompt, user_message) -> str；
        embeddings 适配器暴露 async embed(texts) -> List[List[float]]。

        Raises:
            ConfigurationError: 角色配置缺失或 api_mode 不受支持。
        """
        if role in self._adapters:
            return self._adapters[role]

        config = self._config_loader.resolve(role)
        adapter = self._create_adapter(config)
        self._adapters[role] = adapter
        logger.info(
            "适配器已创建: role=%s, api_mode=%s, model=%s, url=%s",
            role, config.api_mode, config.model_name, config.url or "(default)",
        )
        return adapter

    @staticmethod
    def _create_adapter(config: ModelEndpointConfig) -> Any:
        if config.api_mode == API_MODE_CHAT:
            from jurymatch.llm.chat_completions_adapter import ChatCompletionsAdapter
            return ChatCompletionsAdapter.from_endpoint_config(config)

        if config.api_mode == API_MODE_ANTHROPIC:
            from jurymatch.llm.anthropic_adapter import AnthropicAdapter
            return AnthropicAdapter.from_endpoint_config(config)

        if config.api_mode == API_MODE_EMBEDDINGS:
            from jurymatch.llm.embeddings_adapter import EmbeddingsAdapter
            return EmbeddingsAdapter.from_endpoint_config(config)

        raise ConfigurationError(
            f"不支持的 api_mode: '{config.api_mode}'。仅支持: {', '.join(API_MODES)}。"
        )

    def clear_adapter_cache(self) -> None:
        self._adapters.clear()

    # =========================================================================
    # 调用次数控制
    # =========================================================================

    def check_budget(self, role: str) -> bool:
        if self._budget.is_exceeded:
            logger.warning(
                "外部调用次数已达上限 (%d/%d)，角色 '%s' 的调用被拒绝",
                self._budget.total_attempts, self._budget.max_calls, role,
            )
            return False
        return True

    def record_attempt(self, role: str) -> None:
        self._budget.record_attempt(role)

    def record_call(self, role: str) -> None:
        self._budget.record_call(role)
