# test_anthropic_adapter.py
# =============================================================================
# AnthropicAdapter 单元测试 / AnthropicAdapter unit tests
# - URL 默认值与补全 / URL defaults & completion
# - 请求格式（system / messages / headers） / Request format
# - 响应解析 / Response parsing
# - from_endpoint_config 工厂方法 / Factory method
# =============================================================================

from unittest.mock import AsyncMock, patch

import pytest

from jurymatch.llm.anthropic_adapter import AnthropicAdapter
from jurymatch.llm.config import ModelEndpointConfig


class TestEndpoint:
    """URL 解析测试。 / URL resolution tests."""

    def test_uses_default_url_when_none(self):
        adapter = AnthropicAdapter(api_key="k", model="claude-sonnet-4-20250514")
        assert adapter.endpoint == "https://api.anthropic.com/v1/messages"

    def test_uses_default_url_when_empty(self):
        adapter = AnthropicAdapter(api_key="k", model="claude-sonnet-4-20250514", url="")
        assert adapter.endpoint == "https://api.anthropic.com/v1/messages"

    def test_custom_proxy_url(self):
        adapter = AnthropicAdapter(
            api_key="k", model="claude-sonnet-4-20250514",
            url="https://my-proxy.example.com/anthropic/v1",
        )
        assert adapter.endpoint == "https://my-proxy.example.com/anthropic/v1/messages"


class TestCall:
    """请求构建测试。 / Request building tests."""

    @pytest.mark.asyncio
    async def test_request_format_and_headers(self):
        adapter = AnthropicAdapter(api_key="test-key", model="claude-sonnet-4-20250514", max_tokens=800)
        response = {"content": [{"type": "text", "text": "hello"}]}
        with patch(
            "jurymatch.llm.anthropic_adapter.post_json",
            new=AsyncMock(return_value=response),
        ) as mock_post:
            assert await adapter.call("You explain matches.", "Persona: The Captain") == "hello"

        endpoint, headers, body = mock_post.call_args.args
        assert endpoint == "https://api.anthropic.com/v1/messages"
        assert headers["x-api-key"] == "test-key"
        assert headers["anthropic-version"] == "2023-06-01"
        assert body["system"] == "You explain matches."
        assert body["messages"] == [{"role": "user", "content": "Persona: The Captain"}]
        assert body["max_tokens"] == 800

    @pytest.mark.asyncio
    async def test_omits_system_when_empty(self):
        adapter = AnthropicAdapter(api_key="k", model="claude-sonnet-4-20250514")
        with patch(
            "jurymatch.llm.anthropic_adapter.post_json",
            new=AsyncMock(return_value={"content": []}),
        ) as mock_post:
            assert await adapter.call("", "Hello") == ""
        assert "system" not in mock_post.call_args.args[2]


class TestExtractText:
    """响应解析测试。 / Response parsing tests."""

    def test_skips_non_text_blocks(self):
        data = {"content": [
            {"type": "thinking", "thinking": "..."},
            {"type": "text", "text": "first"},
            {"type": "text", "text": "second"},
        ]}
        assert AnthropicAdapter._extract_text(data) == "first"

    def test_returns_empty_on_no_content(self):
        assert AnthropicAdapter._extract_text({}) == ""


class TestFromEndpointConfig:
    """from_endpoint_config 工厂方法测试。 / Factory method tests."""

    def test_raises_without_api_key(self):
        config = ModelEndpointConfig(
            model_platform="anthropic", model_name="claude-sonnet-4-20250514", api_mode="anthropic",
        )
        with pytest.raises(ValueError, match="api_key"):
            AnthropicAdapter.from_endpoint_config(config)

    def test_creates_adapter_with_custom_url(self):
        config = ModelEndpointConfig(
            model_platform="anthropic",
            model_name="claude-sonnet-4-20250514",
            api_key="k",
            url="https://proxy.example.com/v1",
            api_mode="anthropic",
        )
        adapter = AnthropicAdapter.from_endpoint_config(config)
        assert adapter.endpoint == "https://proxy.example.com/v1/messages"
