# bayesian.py
# =============================================================================
# 贝叶斯更新器: 把画像归属视为离散概率分布，按证据逐条乘以似然比。
# / Bayesian updater: persona membership as a discrete distribution updated by
#   likelihood ratios, one signal at a time.
#
# 似然比 / Likelihood ratio (persona p, fact f on signal s):
#   LR_p = exp(strength × w_ps × agreement × confidence)
#   未对 s 声明权重的画像 LR = 1（保持不变）
#
# 取代语义 / Supersession:
#   每个信号只保留最新一条事实的似然比；新事实先"除掉"旧似然比再乘上
#   新似然比，同一信号的证据永不重复相乘。
#
# 后验在对数空间中按 signal_id 固定顺序累加后归一化，因此与证据到达
# 顺序无关，重放完整事实历史与逐条增量更新结果一致。
# =============================================================================

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.matching.signal_scorer import agreement
from jurymatch.primitives.models import (
    METHOD_BAYESIAN,
    JurorSignalFact,
    MethodScore,
    Persona,
    SignalValue,
    latest_facts,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedEvidence:
    """某信号当前生效的证据及其对各画像的对数似然比。"""

    signal_id: str
    fact_key: str
    value: SignalValue
    confidence: float
    log_ratios: Dict[str, float] = field(default_factory=dict)


class BeliefState:
    """单个陪审员在当前画像集合上的信念分布。

    posterior 任何时刻都在活跃画像集合上归一化（和为 1）。
    """

    def __init__(self, priors: Dict[str, float]) -> None:
        if not priors:
            raise ValueError("BeliefState 需要至少一个画像")
        self._persona_ids: List[str] = sorted(priors)
        total = sum(priors.values())
        self._log_prior: Dict[str, float] = {
            pid: math.log(priors[pid] / total) for pid in self._persona_ids
        }
        self._applied: Dict[str, AppliedEvidence] = {}
        self._posterior: Dict[str, float] = {}
        self._renormalize()

    # -------------------------------------------------------------------------
    # 查询
    # -------------------------------------------------------------------------

    @property
    def persona_ids(self) -> List[str]:
        return list(self._persona_ids)

    @property
    def posterior(self) -> Dict[str, float]:
        return dict(self._posterior)

    @property
    def applied(self) -> Dict[str, AppliedEvidence]:
        return dict(self._applied)

    @property
    def evidence_count(self) -> int:
        """实际影响过分布的信号数。"""
        return sum(1 for e in self._applied.values() if any(e.log_ratios.values()))

    def entropy(self) -> float:
        return -sum(p * math.log(p) for p in self._posterior.values() if p > 0)

    def confidence(self) -> float:
        """1 - H/ln(N)；无证据或 N ≤ 1 时为 0。"""
        n = len(self._persona_ids)
        if n <= 1 or self.evidence_count == 0:
            return 0.0
        return max(0.0, min(1.0, 1.0 - self.entropy() / math.log(n)))

    # -------------------------------------------------------------------------
    # 更新
    # -------------------------------------------------------------------------

    def supersede(self, evidence: AppliedEvidence) -> bool:
        """以新证据取代该信号的旧证据。证据未变化时返回 False。"""
        current = self._applied.get(evidence.signal_id)
        if current is not None and current.log_ratios == evidence.log_ratios:
            return False
        self._applied[evidence.signal_id] = evidence
        self._renormalize()
        return True

    def retract(self, signal_id: str) -> bool:
        """撤回某信号当前生效的证据（其最新事实已不可用）。无证据时返回 False。"""
        if self._applied.pop(signal_id, None) is None:
            return False
        self._renormalize()
        return True

    def copy(self) -> BeliefState:
        clone = BeliefState.__new__(BeliefState)
        clone._persona_ids = list(self._persona_ids)
        clone._log_prior = dict(self._log_prior)
        clone._applied = dict(self._applied)
        clone._posterior = dict(self._posterior)
        return clone

    def _renormalize(self) -> None:
        # 按 signal_id 固定顺序累加，保证与到达顺序无关
        log_belief = dict(self._log_prior)
        for signal_id in sorted(self._applied):
            for pid, log_ratio in self._applied[signal_id].log_ratios.items():
                if pid in log_belief:
                    log_belief[pid] += log_ratio
        peak = max(log_belief.values())
        unnormalized = {pid: math.exp(v - peak) for pid, v in log_belief.items()}
        total = sum(unnormalized.values())
        self._posterior = {pid: unnormalized[pid] / total for pid in self._persona_ids}

    def to_dict(self) -> Dict[str, object]:
        return {
            "posterior": self.posterior,
            "entropy": self.entropy(),
            "confidence": self.confidence(),
            "applied": {
                sid: {
                    "fact_key": e.fact_key,
                    "value": e.value.to_dict(),
                    "confidence": e.confidence,
                    "log_ratios": dict(e.log_ratios),
                }
                for sid, e in sorted(self._applied.items())
            },
        }


class BayesianUpdater:
    """按信号逐条更新 BeliefState，并导出每个画像的后验得分。"""

    def __init__(
        self,
        catalog: PersonaCatalog,
        strength: float = 2.0,
        contradiction_damping: float = 1.0,
    ) -> None:
        self._catalog = catalog
        self._strength = strength
        self._damping = contradiction_damping

    def new_state(self, personas: Optional[List[Persona]] = None) -> BeliefState:
        """以人群先验（若有）或均匀分布初始化。"""
        personas = personas if personas is not None else self._catalog.personas
        priors: Dict[str, float] = {}
        for persona in personas:
            prior = persona.prior
            if prior is not None and prior <= 0:
                logger.warning(
                    "画像 '%s' 的先验 %s 非正，按 1.0 处理", persona.persona_id, prior,
                )
                prior = None
            priors[persona.persona_id] = prior if prior is not None else 1.0
        return BeliefState(priors)

    def evidence_for(self, fact: JurorSignalFact) -> Optional[AppliedEvidence]:
        """计算一条事实对各画像的对数似然比；信号不在目录中时返回 None。"""
        signal = self._catalog.signal(fact.signal_id)
        if signal is None:
            logger.warning(
                "事实引用了目录中不存在的信号，跳过: %s", fact.signal_id,
            )
            return None
        if fact.value.value_type != signal.value_type:
            logger.warning(
                "事实值类型与信号声明不一致，跳过: %s (%s != %s)",
                fact.signal_id, fact.value.value_type, signal.value_type,
            )
            return None

        log_ratios: Dict[str, float] = {}
        for pid in self._catalog.personas_weighting(fact.signal_id):
            weight = self._catalog.weight(pid, fact.signal_id)
            a = agreement(fact.value, weight, self._damping)
            log_ratios[pid] = self._strength * weight.weight * a * fact.confidence
        return AppliedEvidence(
            signal_id=fact.signal_id,
            fact_key=fact.key,
            value=fact.value,
            confidence=fact.confidence,
            log_ratios=log_ratios,
        )

    def apply(self, state: BeliefState, fact: JurorSignalFact) -> bool:
        """应用（或取代）一条事实；返回分布是否变化。

        最新事实不可用时撤回该信号此前的证据，与 replay 丢弃该信号的结果一致。
        """
        evidence = self.evidence_for(fact)
        if evidence is None:
            return state.retract(fact.signal_id)
        return state.supersede(evidence)

    def replay(
        self,
        facts: Iterable[JurorSignalFact],
        personas: Optional[List[Persona]] = None,
    ) -> BeliefState:
        """从先验开始重放：每个信号取最新事实，按 signal_id 顺序应用。"""
        state = self.new_state(personas)
        current = latest_facts(facts)
        for signal_id in sorted(current):
            self.apply(state, current[signal_id])
        return state

    @staticmethod
    def scores(state: BeliefState) -> Dict[str, MethodScore]:
        confidence = state.confidence()
        detail = f"{state.evidence_count} signals applied"
        return {
            pid: MethodScore(
                method=METHOD_BAYESIAN,
                score=probability,
                confidence=confidence,
                detail=detail,
            )
            for pid, probability in state.posterior.items()
        }
