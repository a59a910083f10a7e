# chat_completions_adapter.py
# =============================================================================
# OpenAI Chat Completions API 适配器
#
# 职责：
#   - 把 (system_prompt, user_message) 转换为 Chat Completions 请求
#   - 提取 response["choices"][0]["message"]["content"]
#   - 兼容 OpenAI 兼容端点（DeepSeek、Qwen、本地 vLLM 等）与 Azure OpenAI
#
# URL：基础地址自动追加 /chat/completions；完整路径与 query 参数原样保留。
# 认证：标准端点 Authorization: Bearer <key>；Azure 端点 api-key: <key>。
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from jurymatch.llm.config import ModelEndpointConfig
from jurymatch.llm.http import ensure_path_suffix, post_json

logger = logging.getLogger(__name__)

_AZURE_DOMAIN_SUFFIXES = (
    "cognitiveservices.azure.com",
    "openai.azure.com",
    "services.ai.azure.com",
)


def is_azure_endpoint(url: str) -> bool:
    hostname = urlparse(url).hostname or ""
    return any(hostname.endswith(d) for d in _AZURE_DOMAIN_SUFFIXES)


def auth_headers(url: str, api_key: str) -> Dict[str, str]:
    """OpenAI 兼容端点的认证头（Azure 使用 api-key）。"""
    headers = {"Content-Type": "application/json"}
    if is_azure_endpoint(url):
        headers["api-key"] = api_key
    else:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


class ChatCompletionsAdapter:
    """通过 httpx 直连 Chat Completions 端点。"""

    def __init__(
        self,
        url: str,
        api_key: str,
        model: str,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        timeout: float = 30.0,
        max_retries: int = 1,
    ) -> None:
        self._endpoint = ensure_path_suffix(url, "/chat/completions")
        self._headers = auth_headers(url, api_key)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._max_retries = max_retries

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def call(self, system_prompt: str, user_message: str) -> str:
        """调用端点并返回文本。

        Raises:
            RuntimeError: 重试后仍失败。
        """
        result = await post_json(
            self._endpoint,
            self._headers,
            self._build_request(system_prompt, user_message),
            timeout=self._timeout,
            max_retries=self._max_retries,
            label="Chat Completions API",
        )
        return self._extract_text(result)

    def _build_request(self, system_prompt: str, user_message: str) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_message})

        body: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
        }
        if self._max_tokens is not None:
            body["max_tokens"] = self._max_tokens
        return body

    @staticmethod
    def _extract_text(response_data: Dict[str, Any]) -> str:
        choices = response_data.get("choices", [])
        if choices:
            content = choices[0].get("message", {}).get("content")
            if content is not None:
                return content
        logger.warning(
            "Chat Completions API 响应中未找到文本内容: %s",
            json.dumps(response_data, ensure_ascii=False)[:300],
        )
        return ""

    @classmethod
    def from_endpoint_config(cls, config: ModelEndpointConfig) -> ChatCompletionsAdapter:
        """Raises:
            ValueError: 缺少 url 或 api_key。
        """
        if not config.url:
            raise ValueError("Chat Completions 模式需要显式配置 url。")
        if not config.api_key:
            raise ValueError(
                "Chat Completions 模式需要显式配置 api_key（可用 ${ENV} 引用环境变量）。"
            )
        return cls(
            url=config.url,
            api_key=config.api_key,
            model=config.model_name,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout or 30.0,
            max_retries=config.max_retries,
        )
