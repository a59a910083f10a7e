# config.py
# =============================================================================
# LLM / 向量端点配置加载与合并 / LLM and embedding endpoint config loading
#
# 职责 / Responsibilities:
#   - 定义端点配置的数据结构（ModelEndpointConfig）
#     / Define the endpoint config structure (ModelEndpointConfig)
#   - 四层合并：代码角色级 > 代码 _default > 文件角色级 > 文件 _default
#     / Four-layer merge: code role > code _default > file role > file _default
#   - YAML 中的 ${VAR} / ${VAR:-default} 引用在读取时展开
#     / ${VAR} and ${VAR:-default} references expanded at read time
#   - 角色缺失时抛出 ConfigurationError，不提供硬编码默认模型
#     / Missing role raises ConfigurationError; no hardcoded default model
#
# 角色 / Roles:
#   - rationale: 解释润色所用的对话模型 / chat model for rationale polishing
#   - embedding: 叙述文本向量化端点 / embedding endpoint for narratives
# =============================================================================

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ROLE_RATIONALE = "rationale"
ROLE_EMBEDDING = "embedding"
KNOWN_ROLES = (ROLE_RATIONALE, ROLE_EMBEDDING)

API_MODE_CHAT = "chat_completions"
API_MODE_ANTHROPIC = "anthropic"
API_MODE_EMBEDDINGS = "embeddings"
API_MODES = (API_MODE_CHAT, API_MODE_ANTHROPIC, API_MODE_EMBEDDINGS)

_ENV_REF_RE = re.compile(r"\$\{([^}]+)\}")


# =============================================================================
# 数据结构 / Data Structures
# =============================================================================


@dataclass
class ModelEndpointConfig:
    """单个角色的端点配置。 / Endpoint config for one role.

    各适配器通过 from_endpoint_config() 读取本配置创建实例。
    max_retries 被限制在 [0, 1]：面向用户的调用最多静默重试一次。
    """

    model_platform: str  # "openai" / "anthropic" / "deepseek" ...
    model_name: str

    api_key: Optional[str] = None
    url: Optional[str] = None

    # "chat_completions" | "anthropic" | "embeddings"
    api_mode: str = API_MODE_CHAT

    temperature: float = 0.3
    max_tokens: Optional[int] = 1024
    timeout: Optional[float] = None
    max_retries: int = 1

    # 向量端点可选的输出维度 / Optional output dimensions for embeddings
    dimensions: Optional[int] = None

    # 额外参数（透传给适配器） / Extra params passed through to adapters
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.max_retries = max(0, min(int(self.max_retries), 1))

    @classmethod
    def from_dict(cls, data: Any) -> ModelEndpointConfig:
        """从字典或模型名简写构建配置。 / Build from a dict or a model-name shorthand.

        简写（"gpt-4o-mini"）自动推断 model_platform 与 api_mode。
        字段优先级 / Field priority: model_name > model
        """
        if isinstance(data, str):
            platform = _infer_platform(data)
            return cls(
                model_platform=platform,
                model_name=data,
                api_mode=_infer_api_mode(platform, data),
            )

        model_name = data.get("model_name") or data.get("model", "")
        model_platform = data.get("model_platform") or _infer_platform(model_name)
        api_mode = data.get("api_mode") or _infer_api_mode(
            model_platform, model_name, data.get("url"),
        )
        if api_mode not in API_MODES:
            raise ValueError(
                f"不支持的 api_mode: '{api_mode}'。仅支持: {', '.join(API_MODES)}。"
            )

        known = {
            "model", "model_name", "model_platform", "api_key", "url", "api_mode",
            "temperature", "max_tokens", "timeout", "max_retries", "dimensions",
        }
        dimensions = data.get("dimensions")
        return cls(
            model_platform=model_platform,
            model_name=model_name,
            api_key=data.get("api_key"),
            url=data.get("url"),
            api_mode=api_mode,
            temperature=float(data.get("temperature", 0.3)),
            max_tokens=data["max_tokens"] if "max_tokens" in data else 1024,
            timeout=float(data["timeout"]) if data.get("timeout") is not None else None,
            max_retries=int(data.get("max_retries", 1)),
            dimensions=int(dimensions) if dimensions is not None else None,
            extra={k: v for k, v in data.items() if k not in known},
        )


# =============================================================================
# 平台与 API 模式推断 / Platform and API mode inference
# =============================================================================

_PLATFORM_INFERENCE_RULES: List[tuple] = [
    (["claude"], "anthropic"),
    (["gpt-", "o1-", "o3-", "text-embedding", "chatgpt"], "openai"),
    (["gemini"], "google"),
    (["deepseek"], "deepseek"),
    (["qwen", "qwq"], "qwen"),
    (["nomic-embed", "mxbai-embed", "llama"], "ollama"),
]


def _infer_platform(model_name: str) -> str:
    """根据模型名推断平台，未命中时返回 "openai"。"""
    name_lower = model_name.lower()
    for keywords, platform in _PLATFORM_INFERENCE_RULES:
        if any(kw in name_lower for kw in keywords):
            return platform
    logger.debug("无法从模型名称 '%s' 推断平台，使用默认 'openai'", model_name)
    return "openai"


def _infer_api_mode(platform: str, model_name: str = "", url: Optional[str] = None) -> str:
    """推断规则（按优先级） / Inference rules (by priority):

    1. URL 含 /embeddings 或模型名含 "embed" -> "embeddings"
    2. platform == "anthropic" 且无自定义 URL -> "anthropic"
    3. 其他 -> "chat_completions"
    """
    if (url and "/embeddings" in url) or "embed" in model_name.lower():
        return API_MODE_EMBEDDINGS
    if (platform or "").lower() == "anthropic" and not url:
        return API_MODE_ANTHROPIC
    return API_MODE_CHAT


# =============================================================================
# 配置加载器 / Config Loader
# =============================================================================


class LLMConfigLoader:
    """端点配置加载器。 / Endpoint config loader.

    llm_config 字典格式 / Dict format:
    {
        "_default": {"model_platform": "openai", "url": "...", "api_key": "${OPENAI_API_KEY}"},
        "rationale": "gpt-4o-mini",                       # 简写 / shorthand
        "embedding": {"model_name": "text-embedding-3-small", "dimensions": 512},
    }
    """

    _CONFIG_SEARCH_PATHS = [
        "llm_config.yaml",
        "llm_config.yml",
        "config/llm_config.yaml",
        "config/llm_config.yml",
    ]

    def __init__(
        self,
        llm_config: Optional[Dict[str, Any]] = None,
        config_file: Optional[str] = None,
    ) -> None:
        self._code_config = expand_env_vars(llm_config or {})
        self._file_config: Dict[str, Any] = {}
        self._load_config_file(config_file)

    def _load_config_file(self, config_file: Optional[str]) -> None:
        if config_file:
            path = Path(config_file)
            if path.exists():
                self._file_config = read_yaml(path)
                logger.info("LLM 配置文件已加载: %s", path)
            else:
                logger.warning("指定的 LLM 配置文件不存在: %s", path)
            return

        for search_path in self._CONFIG_SEARCH_PATHS:
            path = Path(search_path)
            if path.exists():
                self._file_config = read_yaml(path)
                logger.info("自动发现 LLM 配置文件: %s", path)
                return
        logger.debug("未发现 LLM 配置文件，将依赖代码配置")

    def resolve(self, role: str) -> ModelEndpointConfig:
        """合并四层配置并解析角色端点。

        Raises:
            ConfigurationError: 合并后仍没有 model_name。
        """
        from jurymatch.llm.router import ConfigurationError

        merged: Dict[str, Any] = {}
        for layer in (
            self._file_config.get("_default"),
            self._file_config.get(role),
            self._code_config.get("_default"),
            self._code_config.get(role),
        ):
            if isinstance(layer, str):
                merged["model_name"] = layer
                merged["model_platform"] = _infer_platform(layer)
            elif isinstance(layer, dict):
                merged.update({k: v for k, v in layer.items() if v is not None})

        model_name = merged.get("model_name") or merged.get("model", "")
        if not model_name:
            hint = ""
            if role in KNOWN_ROLES:
                hint = (
                    f"\n提示：'{role}' 是匹配引擎的已知角色，请在 llm_config 参数、"
                    f"llm_config.yaml 或 _default 全局配置中为其指定模型。"
                )
            raise ConfigurationError(
                f"角色 '{role}' 的模型配置缺失：未找到 model_name。{hint}"
            )
        merged["model_name"] = model_name
        return ModelEndpointConfig.from_dict(merged)

    def has_role(self, role: str) -> bool:
        """角色是否有配置（直接配置，或 _default 中带 model_name）。"""
        if role in self._code_config or role in self._file_config:
            return True
        for cfg in (self._code_config, self._file_config):
            default = cfg.get("_default", {})
            if isinstance(default, dict) and (default.get("model_name") or default.get("model")):
                return True
        return False

    def all_configured_roles(self) -> List[str]:
        roles = set()
        for cfg in (self._code_config, self._file_config):
            roles.update(k for k in cfg.keys() if not k.startswith("_"))
        return sorted(roles)

    def summary(self) -> Dict[str, Dict[str, str]]:
        """配置摘要（遮蔽 API Key），用于日志。"""
        result: Dict[str, Dict[str, str]] = {}
        for role in self.all_configured_roles():
            try:
                cfg = self.resolve(role)
            except Exception as e:
                logger.debug("角色 '%s' 配置无法解析，摘要中跳过: %s", role, e)
                continue
            result[role] = {
                "platform": cfg.model_platform,
                "model": cfg.model_name,
                "api_mode": cfg.api_mode,
                "url": cfg.url or "(auto)",
                "api_key": _mask_key(cfg.api_key),
            }
        return result


# =============================================================================
# 工具函数 / Utility Functions
# =============================================================================


def read_yaml(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件并展开环境变量引用。 / Read YAML and expand env var refs."""
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"配置文件顶层必须是映射: {path}")
    return expand_env_vars(raw)


def expand_env_vars(obj: Any) -> Any:
    """递归展开 ${VAR} 与 ${VAR:-default}；未设置且无默认值的引用保持原样。"""
    if isinstance(obj, str):

        def _replace(match: "re.Match[str]") -> str:
            expr = match.group(1)
            if ":-" in expr:
                name, default = expr.split(":-", 1)
                return os.environ.get(name.strip(), default.strip())
            return os.environ.get(expr.strip(), match.group(0))

        return _ENV_REF_RE.sub(_replace, obj)
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    return obj


def _mask_key(key: Optional[str]) -> str:
    if not key:
        return "(env)"
    if len(key) <= 12:
        return key[:3] + "***"
    return key[:8] + "..." + key[-4:]
