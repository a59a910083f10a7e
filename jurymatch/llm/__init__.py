# llm/__init__.py
# 端点配置、模型路由、调用次数控制与适配器 / Endpoint config, routing, call budget & adapters

from jurymatch.llm.anthropic_adapter import AnthropicAdapter
from jurymatch.llm.chat_completions_adapter import ChatCompletionsAdapter
from jurymatch.llm.config import (
    ROLE_EMBEDDING,
    ROLE_RATIONALE,
    LLMConfigLoader,
    ModelEndpointConfig,
)
from jurymatch.llm.embeddings_adapter import EmbeddingsAdapter
from jurymatch.llm.router import (
    BudgetState,
    ConfigurationError,
    ModelRouter,
)

__all__ = [
    "AnthropicAdapter",
    "BudgetState",
    "ChatCompletionsAdapter",
    "ConfigurationError",
    "EmbeddingsAdapter",
    "LLMConfigLoader",
    "ModelEndpointConfig",
    "ModelRouter",
    "ROLE_EMBEDDING",
    "ROLE_RATIONALE",
]
