# signal_scorer.py
# =============================================================================
# 基于信号的评分器: 陪审员事实 × 画像权重档案 → 有界得分 + 置信度。
# / Signal-based scorer: juror facts x persona weight profile -> bounded score.
#
# 算法 / Algorithm:
#   contribution = weight × agreement × fact_confidence
#   score        = logistic(steepness × Σ contribution)
#   confidence   = Σ_observed(|w| × fact_confidence) / Σ_all |w|
#   无覆盖时 score = 0.5, confidence = 0 / zero coverage -> (0.5, 0.0)
# =============================================================================

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.primitives.models import (
    METHOD_SIGNAL_BASED,
    VALUE_BOOLEAN,
    VALUE_CATEGORICAL,
    VALUE_NUMERIC,
    VALUE_TEXT,
    JurorSignalFact,
    MethodScore,
    PersonaSignalWeight,
    SignalContribution,
    SignalValue,
)

logger = logging.getLogger(__name__)


@dataclass
class SignalScoreResult:
    """信号评分结果：方法得分 + 支持 / 反对 / 缺失信号。

    supporting 与 contradicting 按贡献绝对值降序，同值按 signal_id 排序。
    missing 为画像加权但陪审员尚无事实的信号，按 |weight| 降序。
    """

    persona_id: str
    score: MethodScore
    supporting: List[SignalContribution] = field(default_factory=list)
    contradicting: List[SignalContribution] = field(default_factory=list)
    missing: List[PersonaSignalWeight] = field(default_factory=list)


def agreement(
    observed: SignalValue,
    weight: PersonaSignalWeight,
    contradiction_damping: float = 1.0,
) -> float:
    """观测值与权重期望值的一致性，取值 [-1, 1]。 / Agreement in [-1, 1].

    expected 为 None 时，"为真 / 为正 / 出现"即视为一致。
    numeric 带 tolerance 时线性衰减：偏差 0 → 1，偏差 = tolerance → 0，
    偏差 ≥ 2×tolerance → -1。负向一致性乘以 contradiction_damping。
    """
    expected = weight.expected
    value_type = observed.value_type

    if value_type == VALUE_BOOLEAN:
        target = True if expected is None else bool(expected.raw)
        raw = 1.0 if bool(observed.raw) == target else -1.0

    elif value_type == VALUE_NUMERIC:
        number = float(observed.raw)
        if expected is None:
            raw = 1.0 if number > 0 else -1.0
        else:
            distance = abs(number - float(expected.raw))
            tolerance = weight.tolerance
            if tolerance is None or tolerance <= 0:
                raw = 1.0 if distance == 0 else -1.0
            else:
                raw = max(-1.0, 1.0 - distance / tolerance)

    elif value_type == VALUE_CATEGORICAL:
        if expected is None:
            raw = 1.0
        else:
            raw = 1.0 if str(observed.raw).lower() == str(expected.raw).lower() else -1.0

    elif value_type == VALUE_TEXT:
        if expected is None:
            raw = 1.0
        else:
            raw = 1.0 if str(expected.raw).lower() in str(observed.raw).lower() else -1.0

    else:
        raw = 0.0

    if raw < 0:
        raw *= contradiction_damping
    return raw


def logistic(x: float) -> float:
    # 数值稳定的 logistic / numerically stable logistic
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


class SignalBasedScorer:
    """把陪审员当前事实集与画像权重档案合并为有界得分。"""

    def __init__(
        self,
        catalog: PersonaCatalog,
        steepness: float = 2.0,
        contradiction_damping: float = 1.0,
    ) -> None:
        self._catalog = catalog
        self._steepness = steepness
        self._damping = contradiction_damping

    def score(
        self,
        persona_id: str,
        facts: Dict[str, JurorSignalFact],
    ) -> SignalScoreResult:
        """为单个画像评分。

        Args:
            persona_id: 画像 id。
            facts: 每个信号的最新事实（signal_id → fact）。
        """
        profile = self._catalog.weights_for(persona_id)
        total_weight = sum(abs(w.weight) for w in profile.values())

        supporting: List[SignalContribution] = []
        contradicting: List[SignalContribution] = []
        missing: List[PersonaSignalWeight] = []
        covered = 0.0
        total = 0.0

        for signal_id in sorted(profile):
            weight = profile[signal_id]
            fact = facts.get(signal_id)
            if fact is None:
                missing.append(weight)
                continue
            if fact.value.value_type != self._signal_type(signal_id):
                logger.warning(
                    "事实值类型与信号声明不一致，跳过: %s (%s != %s)",
                    signal_id, fact.value.value_type, self._signal_type(signal_id),
                )
                missing.append(weight)
                continue

            a = agreement(fact.value, weight, self._damping)
            contribution = weight.weight * a * fact.confidence
            covered += abs(weight.weight) * fact.confidence
            total += contribution

            item = SignalContribution(
                signal_id=signal_id,
                signal_name=self._signal_name(signal_id),
                observed=fact.value,
                weight=weight.weight,
                agreement=a,
                confidence=fact.confidence,
                contribution=contribution,
                source=fact.source,
                source_ref=fact.source_ref,
            )
            if contribution > 0:
                supporting.append(item)
            elif contribution < 0:
                contradicting.append(item)

        if total_weight <= 0 or covered <= 0:
            score = MethodScore.neutral(
                METHOD_SIGNAL_BASED, detail="no overlapping signals",
            )
        else:
            score = MethodScore(
                method=METHOD_SIGNAL_BASED,
                score=logistic(self._steepness * total),
                confidence=min(1.0, covered / total_weight),
                detail=f"{len(supporting) + len(contradicting)} contributing signals",
            )

        supporting.sort(key=lambda c: (-abs(c.contribution), c.signal_id))
        contradicting.sort(key=lambda c: (-abs(c.contribution), c.signal_id))
        missing.sort(key=lambda w: (-abs(w.weight), w.signal_id))
        return SignalScoreResult(
            persona_id=persona_id,
            score=score,
            supporting=supporting,
            contradicting=contradicting,
            missing=missing,
        )

    def _signal_name(self, signal_id: str) -> str:
        signal = self._catalog.signal(signal_id)
        return signal.name if signal else signal_id

    def _signal_type(self, signal_id: str) -> Optional[str]:
        signal = self._catalog.signal(signal_id)
        return signal.value_type if signal else None
