# match.py
# =============================================================================
# 公共 API: 匹配引擎入口。
#
# build_matcher() 组装 EnsembleMatcher（参数、路由、向量、解释润色、审计流）；
# match_juror() 是一次性的便捷入口：加载目录、建内存仓储、跑一次完整匹配。
# =============================================================================

"""公共 API: 匹配引擎入口。"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from jurymatch.catalog.manager import CatalogManager, PersonaCatalog
from jurymatch.config import load_matching_config
from jurymatch.engine.ledger import LedgerRecorder
from jurymatch.engine.matcher import EnsembleMatcher, ProgressCallback
from jurymatch.engine.repository import InMemoryRepository, MatchRepository
from jurymatch.llm.config import ROLE_EMBEDDING, ROLE_RATIONALE
from jurymatch.llm.router import ConfigurationError, ModelRouter
from jurymatch.matching.embedding_scorer import (
    EmbeddingProvider,
    EmbeddingScorer,
    HashingEmbedder,
)
from jurymatch.matching.explainer import RationaleEnricher
from jurymatch.matching.extractor import EvidenceExtractor
from jurymatch.primitives.models import (
    EnsembleMatch,
    JurorRecord,
    JurorSignalFact,
    MatchingConfig,
)

logger = logging.getLogger(__name__)


def _make_llm_caller(router: ModelRouter, role: str):
    """创建指定角色的 LLM 调用函数。

    返回 async def(*, system_prompt, user_prompt) -> str 签名的协程函数，
    供 RationaleEnricher 使用。
    """

    async def caller(*, system_prompt: str = "", user_prompt: str = "") -> str:
        if not router.check_budget(role):
            raise RuntimeError(f"外部调用次数已达上限（角色: {role}）")
        router.record_attempt(role)
        budget = router.budget
        limit_str = str(budget.max_calls) if not budget.is_unlimited else "∞"
        logger.debug(f"[{role}] LLM 调用 #{budget.total_attempts}/{limit_str}")
        adapter = router.get_model_backend(role)
        content = await adapter.call(system_prompt, user_prompt)
        router.record_call(role)
        return content

    return caller


class RouterEmbedder:
    """经 ModelRouter 调用 embedding 角色端点的 EmbeddingProvider（计入调用预算）。"""

    def __init__(self, router: ModelRouter, role: str = ROLE_EMBEDDING) -> None:
        self._router = router
        self._role = role

    @property
    def max_retries(self) -> int:
        """端点传输层自带的重试次数（来自角色配置）。"""
        return self._router.get_endpoint_config(self._role).max_retries

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not self._router.check_budget(self._role):
            raise RuntimeError(f"外部调用次数已达上限（角色: {self._role}）")
        self._router.record_attempt(self._role)
        adapter = self._router.get_model_backend(self._role)
        vectors = await adapter.embed(texts)
        self._router.record_call(self._role)
        return vectors


def _make_embedder(router: ModelRouter) -> EmbeddingProvider:
    """配置了 embedding 角色时走远程端点，否则使用本地 HashingEmbedder。"""
    if router.has_role(ROLE_EMBEDDING):
        try:
            router.get_model_backend(ROLE_EMBEDDING)
        except (ConfigurationError, ValueError) as e:
            logger.warning(f"embedding 端点配置无效，回退到 HashingEmbedder: {e}")
            return HashingEmbedder()
        return RouterEmbedder(router)
    logger.info("未配置 embedding 端点，使用本地 HashingEmbedder")
    return HashingEmbedder()


def _resolve_output_path(output_path: str) -> Path:
    """指定目录（或以 / 结尾）时在其中按时间戳命名。"""
    p = Path(output_path)
    if p.is_dir() or str(output_path).endswith("/"):
        p.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        return p / f"{ts}_ledger.json"
    p.parent.mkdir(parents=True, exist_ok=True)
    return p


def build_matcher(
    repository: MatchRepository,
    config: Optional[MatchingConfig] = None,
    matching_config_file: Optional[str] = None,
    llm_config: Optional[Dict[str, Any]] = None,
    config_file: Optional[str] = None,
    max_llm_calls: int = 500,
    embedder: Optional[EmbeddingProvider] = None,
    llm_caller=None,
    output_path: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> EnsembleMatcher:
    """组装 EnsembleMatcher。

    参数：
        repository: 宿主存储（陪审员资料、事实、画像目录、审计记录）
        config: 匹配参数；不传时由 load_matching_config(matching_config_file) 加载
        llm_config: 端点配置（最高优先级），角色 rationale / embedding：
            - 简写: {"rationale": "gpt-4o-mini"}
            - 完整: {"embedding": {"model_name": "text-embedding-3-small",
                                   "url": "https://...", "api_key": "${OPENAI_API_KEY}"}}
        config_file: 端点配置文件路径（不传则自动搜索 llm_config.yaml）
        max_llm_calls: 外部调用总次数上限，<= 0 表示不限制
        embedder: 自定义 EmbeddingProvider（优先于路由配置）
        llm_caller: 自定义解释润色调用函数（优先于路由配置）
        output_path: 审计流 JSON 输出路径（文件或目录）；不传则不写文件
        on_progress: 进度回调，支持同步和异步函数
    """
    config = config or load_matching_config(matching_config_file)
    router = ModelRouter(
        llm_config=llm_config,
        max_calls=max_llm_calls,
        config_file=config_file,
    )

    embedding_scorer = EmbeddingScorer(
        embedder or _make_embedder(router),
        timeout=config.embedding_timeout,
        max_retries=config.max_retries,
        cache_ttl=config.embedding_cache_ttl,
        saturation_chars=config.saturation_chars,
    )

    enricher: Optional[RationaleEnricher] = None
    if config.enrich_rationale:
        if llm_caller is None and router.has_role(ROLE_RATIONALE):
            llm_caller = _make_llm_caller(router, ROLE_RATIONALE)
        if llm_caller is not None:
            enricher = RationaleEnricher(
                llm_caller,
                timeout=config.enrichment_timeout,
                max_retries=config.max_retries,
            )
        else:
            logger.info("未配置 rationale 模型，使用确定性解释文本")

    recorder = LedgerRecorder(_resolve_output_path(output_path)) if output_path else None

    return EnsembleMatcher(
        repository,
        embedding_scorer=embedding_scorer,
        enricher=enricher,
        config=config,
        on_progress=on_progress,
        recorder=recorder,
    )


async def match_juror(
    record: JurorRecord,
    catalog: Optional[PersonaCatalog] = None,
    catalog_name: str = "default",
    catalog_path: Optional[str] = None,
    facts: Optional[List[JurorSignalFact]] = None,
    **matcher_options: Any,
) -> List[EnsembleMatch]:
    """一键匹配单个陪审员。

    参数：
        record: 陪审员资料
        catalog: 已构建的画像目录；不传时用 CatalogManager 加载 catalog_name
        catalog_path: 目录路径（提供时跳过搜索）
        facts: 预先提取 / 人工录入的事实（可选）
        matcher_options: 透传给 build_matcher() 的参数

    返回：
        排序后的前 top_n 个 EnsembleMatch。
    """
    if catalog is None:
        manager = CatalogManager()
        catalog = manager.load(
            catalog_name, catalog_path=Path(catalog_path) if catalog_path else None,
        )
    logger.info(f"开始匹配: juror={record.juror_id}, catalog={catalog.name}")

    repository = InMemoryRepository(catalog)
    repository.add_juror(record)
    if facts:
        # 预置事实时同样先从资料提取，预置事实追加在后
        extracted = EvidenceExtractor(catalog).extract_record(record, datetime.now())
        repository.append_facts(record.juror_id, extracted + list(facts))

    matcher = build_matcher(repository, **matcher_options)
    return await matcher.match_juror(record.juror_id)
