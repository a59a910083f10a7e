# matcher.py
# =============================================================================
# 集成匹配编排器: 陪审员 × 画像目录的完整 / 增量匹配运行。
# / Ensemble matcher: full and incremental juror-to-persona matching runs.
#
# 一次运行 / One run:
#   1. 读取陪审员资料与事实（首次运行且尚无事实时从资料提取）
#   2. 三种方法并发评分：信号 / 向量 / 贝叶斯（asyncio.gather）
#   3. 融合、生成确定性解释、排序
#   4. 仅对前 top_n 名做可选的 LLM 解释润色
#   5. 写入账本并提交该陪审员的缓存状态
#
# 增量运行只对加权了变化信号的画像重算信号得分；贝叶斯后验对全部画像
# 重新归一化；叙述文本摘要不变时复用向量得分。结果与完整重算一致。
#
# 同一陪审员的提取与重算由 asyncio.Lock 串行化；不同陪审员互不影响。
# 状态在所有 await 之后一次性提交，被取消的运行不会留下半写状态。
# =============================================================================

"""集成匹配编排器。 / Ensemble matching orchestrator."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.engine.ledger import LedgerRecorder, MatchUpdateLedger
from jurymatch.engine.repository import MatchRepository
from jurymatch.matching.bayesian import BayesianUpdater, BeliefState
from jurymatch.matching.embedding_scorer import EmbeddingScorer, HashingEmbedder
from jurymatch.matching.explainer import MatchExplainer, ProbeSuggestion, RationaleEnricher
from jurymatch.matching.extractor import EvidenceExtractor
from jurymatch.matching.fusion import fuse, rank_matches
from jurymatch.matching.signal_scorer import SignalBasedScorer, SignalScoreResult
from jurymatch.primitives.errors import EMPTY_CATALOG, MatchInputError
from jurymatch.primitives.events import MatchEvent
from jurymatch.primitives.models import (
    METHOD_BAYESIAN,
    METHOD_EMBEDDING,
    METHOD_SIGNAL_BASED,
    EnsembleMatch,
    EvidenceEvent,
    JurorRecord,
    JurorSignalFact,
    MatchingConfig,
    MethodScore,
    QuestionnaireSubmission,
    ResearchArtifact,
    VoirDireResponse,
    latest_facts,
)

logger = logging.getLogger(__name__)

# 类型别名：支持同步和异步回调 / Type alias: supports sync and async callbacks
ProgressCallback = Union[
    Callable[[MatchEvent], Awaitable[None]],
    Callable[[MatchEvent], None],
]

FULL_MATCH_REF = "full_match"


def evidence_ref_for(event: EvidenceEvent) -> str:
    """原始证据事件的引用标识（与事实 source_ref 一致）。"""
    if isinstance(event, VoirDireResponse):
        return f"voir_dire:{event.response_id}"
    if isinstance(event, ResearchArtifact):
        return f"research:{event.artifact_id}"
    if isinstance(event, QuestionnaireSubmission):
        return f"questionnaire:{event.submission_id}"
    return f"event:{type(event).__name__}"


@dataclass
class JurorMatchState:
    """单个陪审员最近一次匹配运行的缓存状态。"""

    catalog_hash: str
    belief: BeliefState
    fact_keys: Dict[str, str]  # signal_id → 生效事实 key
    signal_results: Dict[str, SignalScoreResult]
    embedding_scores: Dict[str, MethodScore]
    narrative_digest: str
    matches: List[EnsembleMatch] = field(default_factory=list)


class EnsembleMatcher:
    """陪审员 → 画像集成匹配器。 / Juror-to-persona ensemble matcher."""

    def __init__(
        self,
        repository: MatchRepository,
        embedding_scorer: Optional[EmbeddingScorer] = None,
        enricher: Optional[RationaleEnricher] = None,
        config: Optional[MatchingConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        recorder: Optional[LedgerRecorder] = None,
    ) -> None:
        self._repository = repository
        self._config = config or MatchingConfig()
        self._embedding = embedding_scorer or EmbeddingScorer(
            HashingEmbedder(),
            timeout=self._config.embedding_timeout,
            max_retries=self._config.max_retries,
            cache_ttl=self._config.embedding_cache_ttl,
            saturation_chars=self._config.saturation_chars,
        )
        self._enricher = enricher if self._config.enrich_rationale else None
        self._on_progress = on_progress
        self._recorder = recorder
        self._ledger = MatchUpdateLedger(repository, self._config, recorder)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._states: Dict[str, JurorMatchState] = {}

        # 按目录对象缓存的组件 / Components cached per catalog object
        self._catalog: Optional[PersonaCatalog] = None
        self._catalog_hash = ""
        self._extractor: Optional[EvidenceExtractor] = None
        self._signal_scorer: Optional[SignalBasedScorer] = None
        self._bayes: Optional[BayesianUpdater] = None
        self._explainer: Optional[MatchExplainer] = None

    # =========================================================================
    # 属性
    # =========================================================================

    @property
    def config(self) -> MatchingConfig:
        return self._config

    @property
    def ledger(self) -> MatchUpdateLedger:
        return self._ledger

    @property
    def repository(self) -> MatchRepository:
        return self._repository

    def state_for(self, juror_id: str) -> Optional[JurorMatchState]:
        return self._states.get(juror_id)

    def lock_for(self, juror_id: str) -> asyncio.Lock:
        lock = self._locks.get(juror_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[juror_id] = lock
        return lock

    # =========================================================================
    # 公共入口
    # =========================================================================

    async def match_juror(
        self,
        juror_id: str,
        evidence_ref: str = FULL_MATCH_REF,
        at: Optional[datetime] = None,
    ) -> List[EnsembleMatch]:
        """完整匹配运行，返回排序后的前 top_n 个结果。

        Raises:
            MatchInputError: 陪审员不存在或画像目录为空。
        """
        async with self.lock_for(juror_id):
            return await self._full_run(juror_id, evidence_ref, at or datetime.now())

    async def rematch(
        self,
        juror_id: str,
        changed_signals: Iterable[str],
        evidence_ref: str,
        at: Optional[datetime] = None,
    ) -> List[EnsembleMatch]:
        """增量重算；尚无缓存状态或目录已变化时退化为完整运行。"""
        async with self.lock_for(juror_id):
            return await self._incremental_run(
                juror_id, set(changed_signals), evidence_ref, at or datetime.now(),
            )

    def record_evidence(
        self,
        juror_id: str,
        event: EvidenceEvent,
        observed_at: Optional[datetime] = None,
    ) -> Tuple[Set[str], str]:
        """提取并持久化一条原始证据，返回 (变化的信号集合, evidence_ref)。

        不做评分；由调用方（或 RematchQueue）随后调度重算。
        """
        observed_at = observed_at or datetime.now()
        catalog = self._prepare_catalog()
        record = self._repository.get_juror_record(juror_id)
        # 先补齐资料中已有的事实，避免首个事件之后跳过问卷 / 研究提取
        self._bootstrap_facts(record, observed_at)
        facts = self._extractor.extract_event(juror_id, event, observed_at)
        self._repository.append_evidence(juror_id, event)
        if facts:
            self._repository.append_facts(juror_id, facts)
        changed = {f.signal_id for f in facts if catalog.has_signal(f.signal_id)}
        logger.debug(
            "证据已记录: juror=%s ref=%s facts=%d", juror_id, evidence_ref_for(event), len(facts),
        )
        return changed, evidence_ref_for(event)

    async def ingest(
        self,
        juror_id: str,
        event: EvidenceEvent,
        observed_at: Optional[datetime] = None,
    ) -> List[EnsembleMatch]:
        """提取 + 持久化 + 增量重算（同一陪审员串行）。"""
        observed_at = observed_at or datetime.now()
        async with self.lock_for(juror_id):
            changed, evidence_ref = self.record_evidence(juror_id, event, observed_at)
            return await self._incremental_run(juror_id, changed, evidence_ref, observed_at)

    def suggest_probes(self, juror_id: str, top_k: int = 3) -> List[ProbeSuggestion]:
        """基于最近一次匹配，建议可区分前两名画像的预审追问信号。"""
        state = self._states.get(juror_id)
        if state is None or self._explainer is None:
            return []
        return self._explainer.probes(state.matches, set(state.fact_keys), top_k=top_k)

    def latest_matches(self, juror_id: str) -> List[EnsembleMatch]:
        """最近一次运行的完整排序结果（无则为空）。"""
        state = self._states.get(juror_id)
        return list(state.matches) if state else []

    def forget(self, juror_id: str) -> None:
        """丢弃陪审员的缓存状态，下次运行为完整运行。"""
        self._states.pop(juror_id, None)

    async def emit(self, event: MatchEvent) -> None:
        await self._emit(event)

    # =========================================================================
    # 运行
    # =========================================================================

    async def _full_run(
        self, juror_id: str, evidence_ref: str, at: datetime,
    ) -> List[EnsembleMatch]:
        catalog = self._prepare_catalog()
        record = self._repository.get_juror_record(juror_id)

        facts = self._bootstrap_facts(record, at)
        current = self._current_facts(catalog, facts)

        await self._emit(MatchEvent(
            type="match_start", juror_id=juror_id,
            detail={"evidence_ref": evidence_ref, "personas": len(catalog), "facts": len(current)},
        ))

        narrative = record.narrative_text()
        digest = EmbeddingScorer.narrative_digest(narrative)
        signal_results, embedding_scores, belief = await asyncio.gather(
            self._score_signals(catalog.persona_ids, current),
            self._embedding.score_all(narrative, catalog.personas),
            self._score_bayesian(current),
        )
        await self._emit_method_events(juror_id, embedding_scores, incremental=False)

        state = JurorMatchState(
            catalog_hash=self._catalog_hash,
            belief=belief,
            fact_keys={sid: fact.key for sid, fact in current.items()},
            signal_results=signal_results,
            embedding_scores=embedding_scores,
            narrative_digest=digest,
        )
        return await self._finish(juror_id, state, evidence_ref, at, incremental=False)

    async def _incremental_run(
        self,
        juror_id: str,
        changed_signals: Set[str],
        evidence_ref: str,
        at: datetime,
    ) -> List[EnsembleMatch]:
        catalog = self._prepare_catalog()
        previous = self._states.get(juror_id)
        if previous is None or previous.catalog_hash != self._catalog_hash:
            return await self._full_run(juror_id, evidence_ref, at)

        record = self._repository.get_juror_record(juror_id)
        current = self._current_facts(catalog, self._repository.get_juror_facts(juror_id))

        # 被取消的上一次运行可能遗留未计入的事实：以生效事实 key 的差异为准
        changed = {sid for sid in changed_signals if catalog.has_signal(sid)}
        for signal_id, fact in current.items():
            if previous.fact_keys.get(signal_id) != fact.key:
                changed.add(signal_id)

        affected: Set[str] = set()
        for signal_id in changed:
            affected.update(catalog.personas_weighting(signal_id))

        await self._emit(MatchEvent(
            type="match_start", juror_id=juror_id, incremental=True,
            detail={
                "evidence_ref": evidence_ref,
                "changed_signals": sorted(changed),
                "affected_personas": sorted(affected),
            },
        ))

        narrative = record.narrative_text()
        digest = EmbeddingScorer.narrative_digest(narrative)

        async def _embedding() -> Dict[str, MethodScore]:
            if digest == previous.narrative_digest:
                return dict(previous.embedding_scores)
            return await self._embedding.score_all(narrative, catalog.personas)

        async def _bayesian() -> BeliefState:
            belief = previous.belief.copy()
            for signal_id in sorted(changed):
                fact = current.get(signal_id)
                if fact is None:
                    belief.retract(signal_id)
                else:
                    self._bayes.apply(belief, fact)
            return belief

        rescored, embedding_scores, belief = await asyncio.gather(
            self._score_signals(sorted(affected), current),
            _embedding(),
            _bayesian(),
        )
        signal_results = dict(previous.signal_results)
        signal_results.update(rescored)
        await self._emit_method_events(juror_id, embedding_scores, incremental=True)

        state = JurorMatchState(
            catalog_hash=self._catalog_hash,
            belief=belief,
            fact_keys={sid: fact.key for sid, fact in current.items()},
            signal_results=signal_results,
            embedding_scores=embedding_scores,
            narrative_digest=digest,
        )
        return await self._finish(juror_id, state, evidence_ref, at, incremental=True)

    async def _finish(
        self,
        juror_id: str,
        state: JurorMatchState,
        evidence_ref: str,
        at: datetime,
        incremental: bool,
    ) -> List[EnsembleMatch]:
        """融合、解释、排序、润色；最后一次性写账本并提交状态。"""
        ranked = self._assemble(juror_id, state)
        top = ranked[: self._config.top_n]
        if self._enricher is not None:
            await self._enrich(top)

        # 以下无 await：账本写入与状态提交不会被取消打断
        records = self._ledger.record(juror_id, ranked, evidence_ref, at)
        state.matches = ranked
        self._states[juror_id] = state
        if self._recorder is not None:
            self._recorder.record_run(juror_id, evidence_ref, top, incremental=incremental)

        if records:
            await self._emit(MatchEvent(
                type="ledger_update", juror_id=juror_id, incremental=incremental,
                detail={"evidence_ref": evidence_ref, "records": [r.to_dict() for r in records]},
            ))
        await self._emit(MatchEvent(
            type="match_end", juror_id=juror_id, incremental=incremental,
            detail={
                "evidence_ref": evidence_ref,
                "top": [(m.persona_id, round(m.probability, 4)) for m in top],
                "degraded": any(m.degraded for m in top),
            },
        ))
        logger.info(
            "匹配完成: juror=%s ref=%s incremental=%s top=%s (%d 条账本记录)",
            juror_id, evidence_ref, incremental,
            top[0].persona_id if top else None, len(records),
        )
        return top

    # =========================================================================
    # 组件
    # =========================================================================

    def _prepare_catalog(self) -> PersonaCatalog:
        catalog = self._repository.get_persona_catalog()
        if catalog is None or len(catalog) == 0:
            raise MatchInputError(EMPTY_CATALOG, "画像目录为空，无法匹配")
        if catalog is not self._catalog:
            self._catalog = catalog
            self._catalog_hash = catalog.content_hash
            self._extractor = EvidenceExtractor(catalog)
            self._signal_scorer = SignalBasedScorer(
                catalog,
                steepness=self._config.logistic_steepness,
                contradiction_damping=self._config.contradiction_damping,
            )
            self._bayes = BayesianUpdater(
                catalog,
                strength=self._config.bayes_strength,
                contradiction_damping=self._config.contradiction_damping,
            )
            self._explainer = MatchExplainer(catalog)
            logger.info(
                "画像目录已加载: %s v%s (%d 画像, %d 信号)",
                catalog.name, catalog.version, len(catalog), len(catalog.signals),
            )
        return catalog

    def _bootstrap_facts(self, record: JurorRecord, at: datetime) -> List[JurorSignalFact]:
        """陪审员尚无任何事实时，从资料全文提取一次；返回当前全部事实。"""
        facts = self._repository.get_juror_facts(record.juror_id)
        if facts:
            return facts
        extracted = self._extractor.extract_record(record, at)
        if extracted:
            self._repository.append_facts(record.juror_id, extracted)
            logger.debug("资料提取: juror=%s facts=%d", record.juror_id, len(extracted))
        return extracted

    @staticmethod
    def _current_facts(
        catalog: PersonaCatalog, facts: List[JurorSignalFact],
    ) -> Dict[str, JurorSignalFact]:
        """每个信号的生效事实；引用未知信号的事实记录警告后跳过。"""
        known: List[JurorSignalFact] = []
        for fact in facts:
            if not catalog.has_signal(fact.signal_id):
                logger.warning(
                    "事实引用了目录中不存在的信号，跳过: juror=%s signal=%s",
                    fact.juror_id, fact.signal_id,
                )
                continue
            known.append(fact)
        return latest_facts(known)

    async def _score_signals(
        self, persona_ids: List[str], facts: Dict[str, JurorSignalFact],
    ) -> Dict[str, SignalScoreResult]:
        return {pid: self._signal_scorer.score(pid, facts) for pid in persona_ids}

    async def _score_bayesian(self, facts: Dict[str, JurorSignalFact]) -> BeliefState:
        return self._bayes.replay(facts.values())

    def _assemble(self, juror_id: str, state: JurorMatchState) -> List[EnsembleMatch]:
        catalog = self._catalog
        bayes_scores = BayesianUpdater.scores(state.belief)
        matches: List[EnsembleMatch] = []
        for persona in catalog.personas:
            pid = persona.persona_id
            signal_result = state.signal_results[pid]
            method_scores = {
                METHOD_SIGNAL_BASED: signal_result.score,
                METHOD_EMBEDDING: state.embedding_scores.get(pid)
                or MethodScore.neutral(METHOD_EMBEDDING, detail="not scored"),
                METHOD_BAYESIAN: bayes_scores[pid],
            }
            probability, confidence = fuse(method_scores, self._config.method_reliability)
            match = EnsembleMatch(
                juror_id=juror_id,
                persona_id=pid,
                persona_name=persona.name,
                archetype=persona.archetype,
                probability=probability,
                confidence=confidence,
                method_scores=method_scores,
                supporting=list(signal_result.supporting),
                contradicting=list(signal_result.contradicting),
                missing=[w.signal_id for w in signal_result.missing],
            )
            match.rationale = self._explainer.rationale(match)
            match.counterfactual = self._explainer.counterfactual(match)
            matches.append(match)
        return rank_matches(matches)

    async def _enrich(self, matches: List[EnsembleMatch]) -> None:
        catalog = self._catalog
        await asyncio.gather(*(
            self._enricher.enrich(match, catalog.persona(match.persona_id))
            for match in matches
        ))

    # =========================================================================
    # 事件
    # =========================================================================

    async def _emit_method_events(
        self, juror_id: str, embedding_scores: Dict[str, MethodScore], incremental: bool,
    ) -> None:
        for method in (METHOD_SIGNAL_BASED, METHOD_BAYESIAN, METHOD_EMBEDDING):
            await self._emit(MatchEvent(
                type="method_done", juror_id=juror_id, method=method, incremental=incremental,
            ))
        degraded = sorted(pid for pid, s in embedding_scores.items() if s.degraded)
        if degraded:
            reason = embedding_scores[degraded[0]].detail
            logger.warning(
                "向量方法降级: juror=%s personas=%d reason=%s", juror_id, len(degraded), reason,
            )
            await self._emit(MatchEvent(
                type="degraded", juror_id=juror_id, method=METHOD_EMBEDDING,
                incremental=incremental,
                detail={"personas": degraded, "reason": reason},
            ))

    async def _emit(self, event: MatchEvent) -> None:
        """触发进度回调（支持同步和异步回调）。 / Emit progress callback (sync and async)."""
        if self._on_progress is None:
            return
        result = self._on_progress(event)
        if inspect.isawaitable(result):
            await result
