# embeddings_adapter.py
# =============================================================================
# OpenAI 兼容 Embeddings API 适配器: 实现 EmbeddingProvider 协议。
#
# 请求格式：{"model": "...", "input": ["...", ...], "dimensions": 512?}
#   -> response["data"][i]["embedding"]，按 data[i]["index"] 还原输入顺序
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from jurymatch.llm.chat_completions_adapter import auth_headers
from jurymatch.llm.config import ModelEndpointConfig
from jurymatch.llm.http import ensure_path_suffix, post_json

logger = logging.getLogger(__name__)


class EmbeddingsAdapter:
    """通过 httpx 直连 /embeddings 端点。"""

    def __init__(
        self,
        url: str,
        api_key: str,
        model: str,
        dimensions: Optional[int] = None,
        timeout: float = 10.0,
        max_retries: int = 1,
    ) -> None:
        self._endpoint = ensure_path_suffix(url, "/embeddings")
        self._headers = auth_headers(url, api_key)
        self._model = model
        self._dimensions = dimensions
        self._timeout = timeout
        self._max_retries = max_retries

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def max_retries(self) -> int:
        """传输层（post_json）自带的重试次数。"""
        return self._max_retries

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """批量向量化。

        Raises:
            RuntimeError: 重试后仍失败。
            ValueError: 响应结构不完整。
        """
        if not texts:
            return []
        body: Dict[str, Any] = {"model": self._model, "input": list(texts)}
        if self._dimensions:
            body["dimensions"] = self._dimensions

        result = await post_json(
            self._endpoint,
            self._headers,
            body,
            timeout=self._timeout,
            max_retries=self._max_retries,
            label="Embeddings API",
        )
        return self._extract_vectors(result, len(texts))

    @staticmethod
    def _extract_vectors(response_data: Dict[str, Any], expected: int) -> List[List[float]]:
        data = response_data.get("data")
        if not isinstance(data, list) or len(data) != expected:
            raise ValueError(
                "Embeddings API 响应结构异常: "
                + json.dumps(response_data, ensure_ascii=False)[:300]
            )
        ordered = sorted(
            enumerate(data),
            key=lambda pair: pair[1].get("index", pair[0]) if isinstance(pair[1], dict) else pair[0],
        )
        vectors: List[List[float]] = []
        for _, item in ordered:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list):
                raise ValueError("Embeddings API 响应中缺少 embedding 字段")
            vectors.append([float(x) for x in embedding])
        return vectors

    @classmethod
    def from_endpoint_config(cls, config: ModelEndpointConfig) -> EmbeddingsAdapter:
        if not config.url:
            raise ValueError("Embeddings 模式需要显式配置 url。")
        if not config.api_key:
            raise ValueError("Embeddings 模式需要显式配置 api_key。")
        return cls(
            url=config.url,
            api_key=config.api_key,
            model=config.model_name,
            dimensions=config.dimensions,
            timeout=config.timeout or 10.0,
            max_retries=config.max_retries,
        )
