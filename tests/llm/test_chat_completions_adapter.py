# test_chat_completions_adapter.py
# =============================================================================
# ChatCompletionsAdapter 单元测试 / ChatCompletionsAdapter unit tests
# - URL 补全逻辑 / URL completion logic
# - Azure 检测与认证头 / Azure detection and auth headers
# - 请求构建 / Request building
# - 响应解析 / Response parsing
# - from_endpoint_config 工厂方法 / Factory method
# =============================================================================

from unittest.mock import AsyncMock, patch

import pytest

from jurymatch.llm.chat_completions_adapter import (
    ChatCompletionsAdapter,
    auth_headers,
    is_azure_endpoint,
)
from jurymatch.llm.config import ModelEndpointConfig


class TestEndpoint:
    """URL 补全逻辑测试。 / URL completion logic tests."""

    def test_appends_chat_completions_to_base_url(self):
        adapter = ChatCompletionsAdapter("https://api.deepseek.com/v1", "k", "deepseek-chat")
        assert adapter.endpoint == "https://api.deepseek.com/v1/chat/completions"

    def test_preserves_existing_path(self):
        url = "https://api.openai.com/v1/chat/completions"
        assert ChatCompletionsAdapter(url, "k", "gpt-4o-mini").endpoint == url

    def test_preserves_query_params(self):
        url = "https://x.cognitiveservices.azure.com/openai/chat/completions?api-version=2025-04-01-preview"
        endpoint = ChatCompletionsAdapter(url, "k", "gpt-4o").endpoint
        assert endpoint.endswith("?api-version=2025-04-01-preview")

    def test_strips_trailing_slash(self):
        adapter = ChatCompletionsAdapter("https://api.openai.com/v1/", "k", "gpt-4o-mini")
        assert adapter.endpoint == "https://api.openai.com/v1/chat/completions"


class TestAzure:
    """Azure 域名检测测试。 / Azure domain detection tests."""

    @pytest.mark.parametrize("url", [
        "https://x.cognitiveservices.azure.com/openai",
        "https://x.openai.azure.com/v1",
        "https://x.services.ai.azure.com/openai",
    ])
    def test_detects_azure(self, url):
        assert is_azure_endpoint(url) is True
        assert auth_headers(url, "secret")["api-key"] == "secret"

    def test_standard_endpoint_uses_bearer(self):
        headers = auth_headers("https://api.openai.com/v1", "secret")
        assert headers["Authorization"] == "Bearer secret"
        assert "api-key" not in headers


class TestBuildRequest:
    """请求构建测试。 / Request building tests."""

    def test_includes_system_and_user_messages(self):
        adapter = ChatCompletionsAdapter("https://api.openai.com/v1", "k", "gpt-4o-mini")
        body = adapter._build_request("Explain the match.", "Persona: The Heart")
        assert body["model"] == "gpt-4o-mini"
        assert body["messages"] == [
            {"role": "system", "content": "Explain the match."},
            {"role": "user", "content": "Persona: The Heart"},
        ]
        assert "max_tokens" not in body

    def test_omits_system_when_empty(self):
        adapter = ChatCompletionsAdapter("https://api.openai.com/v1", "k", "gpt-4o-mini")
        body = adapter._build_request("", "Hello")
        assert body["messages"] == [{"role": "user", "content": "Hello"}]

    def test_includes_max_tokens_when_set(self):
        adapter = ChatCompletionsAdapter(
            "https://api.openai.com/v1", "k", "gpt-4o-mini", max_tokens=256,
        )
        assert adapter._build_request("", "Hello")["max_tokens"] == 256


class TestExtractText:
    """响应解析测试。 / Response parsing tests."""

    def test_extracts_from_standard_response(self):
        data = {"choices": [{"message": {"role": "assistant", "content": '{"rationale": "x"}'}}]}
        assert ChatCompletionsAdapter._extract_text(data) == '{"rationale": "x"}'

    def test_returns_empty_on_missing_choices(self):
        assert ChatCompletionsAdapter._extract_text({}) == ""

    def test_returns_empty_on_null_content(self):
        assert ChatCompletionsAdapter._extract_text({"choices": [{"message": {"content": None}}]}) == ""


class TestCall:

    @pytest.mark.asyncio
    async def test_call_posts_and_extracts(self):
        adapter = ChatCompletionsAdapter(
            "https://api.openai.com/v1", "k", "gpt-4o-mini", timeout=12.0, max_retries=0,
        )
        response = {"choices": [{"message": {"content": "ok"}}]}
        with patch(
            "jurymatch.llm.chat_completions_adapter.post_json",
            new=AsyncMock(return_value=response),
        ) as mock_post:
            assert await adapter.call("sys", "user") == "ok"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://api.openai.com/v1/chat/completions"
        assert args[1]["Authorization"] == "Bearer k"
        assert kwargs["timeout"] == 12.0
        assert kwargs["max_retries"] == 0


class TestFromEndpointConfig:
    """from_endpoint_config 工厂方法测试。 / Factory method tests."""

    def test_raises_without_url(self):
        config = ModelEndpointConfig(model_platform="openai", model_name="gpt-4o-mini", api_key="k")
        with pytest.raises(ValueError, match="url"):
            ChatCompletionsAdapter.from_endpoint_config(config)

    def test_raises_without_api_key(self):
        config = ModelEndpointConfig(
            model_platform="openai", model_name="gpt-4o-mini", url="https://api.openai.com/v1",
        )
        with pytest.raises(ValueError, match="api_key"):
            ChatCompletionsAdapter.from_endpoint_config(config)

    def test_creates_adapter_with_valid_config(self):
        config = ModelEndpointConfig(
            model_platform="deepseek",
            model_name="deepseek-chat",
            url="https://api.deepseek.com/v1",
            api_key="k",
            max_tokens=512,
        )
        adapter = ChatCompletionsAdapter.from_endpoint_config(config)
        assert adapter.endpoint == "https://api.deepseek.com/v1/chat/completions"
        assert adapter._build_request("", "hi")["max_tokens"] == 512
