# test_embeddings_adapter.py
# =============================================================================
# EmbeddingsAdapter 单元测试 / EmbeddingsAdapter unit tests
# - 请求格式与可选维度 / request format and optional dimensions
# - 按 index 还原顺序 / vectors reordered by index
# - 结构异常报错 / malformed responses raise
# =============================================================================

from unittest.mock import AsyncMock, patch

import pytest

from jurymatch.llm.config import ModelEndpointConfig
from jurymatch.llm.embeddings_adapter import EmbeddingsAdapter


class TestEmbed:

    @pytest.mark.asyncio
    async def test_request_body(self):
        adapter = EmbeddingsAdapter(
            "https://api.openai.com/v1", "k", "text-embedding-3-small", dimensions=256,
        )
        response = {"data": [{"index": 0, "embedding": [0.1, 0.2]}]}
        with patch(
            "jurymatch.llm.embeddings_adapter.post_json",
            new=AsyncMock(return_value=response),
        ) as mock_post:
            vectors = await adapter.embed(["juror narrative"])
        assert vectors == [[0.1, 0.2]]
        endpoint, headers, body = mock_post.call_args.args
        assert endpoint == "https://api.openai.com/v1/embeddings"
        assert headers["Authorization"] == "Bearer k"
        assert body == {
            "model": "text-embedding-3-small",
            "input": ["juror narrative"],
            "dimensions": 256,
        }

    @pytest.mark.asyncio
    async def test_empty_input_skips_call(self):
        adapter = EmbeddingsAdapter("https://api.openai.com/v1", "k", "text-embedding-3-small")
        with patch("jurymatch.llm.embeddings_adapter.post_json", new=AsyncMock()) as mock_post:
            assert await adapter.embed([]) == []
        mock_post.assert_not_called()


class TestExtractVectors:

    def test_reordered_by_index(self):
        data = {"data": [
            {"index": 1, "embedding": [2.0]},
            {"index": 0, "embedding": [1.0]},
        ]}
        assert EmbeddingsAdapter._extract_vectors(data, 2) == [[1.0], [2.0]]

    def test_count_mismatch(self):
        with pytest.raises(ValueError):
            EmbeddingsAdapter._extract_vectors({"data": [{"index": 0, "embedding": [1.0]}]}, 2)

    def test_missing_embedding(self):
        with pytest.raises(ValueError):
            EmbeddingsAdapter._extract_vectors({"data": [{"index": 0}]}, 1)

    def test_missing_data(self):
        with pytest.raises(ValueError):
            EmbeddingsAdapter._extract_vectors({"error": "bad"}, 1)


class TestFromEndpointConfig:

    def test_requires_url(self):
        config = ModelEndpointConfig(
            model_platform="openai", model_name="text-embedding-3-small", api_key="k",
            api_mode="embeddings",
        )
        with pytest.raises(ValueError, match="url"):
            EmbeddingsAdapter.from_endpoint_config(config)

    def test_creates_adapter(self):
        config = ModelEndpointConfig.from_dict({
            "model_name": "text-embedding-3-small",
            "url": "https://api.openai.com/v1",
            "api_key": "k",
        })
        adapter = EmbeddingsAdapter.from_endpoint_config(config)
        assert adapter.endpoint == "https://api.openai.com/v1/embeddings"
