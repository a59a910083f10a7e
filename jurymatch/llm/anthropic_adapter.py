# anthropic_adapter.py
# =============================================================================
# Anthropic Messages API 适配器
#
# 请求格式：
#   {"model": ..., "max_tokens": ..., "system": "...",
#    "messages": [{"role": "user", "content": "..."}]}
#   -> 第一个 type == "text" 的 content block
#
# 认证：x-api-key: <key>，anthropic-version: 2023-06-01
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from jurymatch.llm.config import ModelEndpointConfig
from jurymatch.llm.http import ensure_path_suffix, post_json

logger = logging.getLogger(__name__)

_DEFAULT_ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
_ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter:
    """通过 httpx 直连 Anthropic Messages 端点。"""

    def __init__(
        self,
        api_key: str,
        model: str,
        url: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1024,
        timeout: float = 30.0,
        max_retries: int = 1,
    ) -> None:
        self._endpoint = ensure_path_suffix(url, "/messages") if url else _DEFAULT_ANTHROPIC_URL
        self._headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": _ANTHROPIC_VERSION,
        }
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._max_retries = max_retries

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def call(self, system_prompt: str, user_message: str) -> str:
        body: Dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": user_message}],
            "temperature": self._temperature,
        }
        if system_prompt:
            body["system"] = system_prompt

        result = await post_json(
            self._endpoint,
            self._headers,
            body,
            timeout=self._timeout,
            max_retries=self._max_retries,
            label="Anthropic Messages API",
        )
        return self._extract_text(result)

    @staticmethod
    def _extract_text(response_data: Dict[str, Any]) -> str:
        content = response_data.get("content", [])
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    return block.get("text", "")
        logger.warning(
            "Anthropic Messages API 响应中未找到文本内容: %s",
            json.dumps(response_data, ensure_ascii=False)[:300],
        )
        return ""

    @classmethod
    def from_endpoint_config(cls, config: ModelEndpointConfig) -> AnthropicAdapter:
        if not config.api_key:
            raise ValueError(
                "Anthropic 模式需要显式配置 api_key（例如 ${ANTHROPIC_API_KEY}）。"
            )
        return cls(
            api_key=config.api_key,
            model=config.model_name,
            url=config.url,
            temperature=config.temperature,
            max_tokens=config.max_tokens or 1024,
            timeout=config.timeout or 30.0,
            max_retries=config.max_retries,
        )
