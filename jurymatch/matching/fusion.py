# fusion.py
# =============================================================================
# 集成融合与排序 / Ensemble fusion and ranking.
#
# 融合概率 = 以各方法自身置信度为权重的加权平均；置信度为 0 的方法不参与，
# 也不会把结果拉向 0.5。三者置信度均为 0 时显式返回 (0.5, 0.0)。
# 融合置信度 = 以方法可靠性为权重的置信度加权平均。
# =============================================================================

from __future__ import annotations

from typing import Dict, List, Tuple

from jurymatch.primitives.models import (
    METHODS,
    NEUTRAL_SCORE,
    EnsembleMatch,
    MethodScore,
)


def fuse(
    method_scores: Dict[str, MethodScore],
    reliability: Dict[str, float],
) -> Tuple[float, float]:
    """融合三种方法得分，返回 (probability, confidence)。"""
    weighted = 0.0
    confidence_mass = 0.0
    for method in METHODS:
        score = method_scores.get(method)
        if score is None or score.confidence <= 0:
            continue
        weighted += score.score * score.confidence
        confidence_mass += score.confidence

    if confidence_mass <= 0:
        return NEUTRAL_SCORE, 0.0

    probability = weighted / confidence_mass

    total_reliability = sum(reliability.get(m, 0.0) for m in METHODS)
    if total_reliability <= 0:
        confidence = confidence_mass / len(METHODS)
    else:
        confidence = sum(
            reliability.get(m, 0.0) * method_scores[m].confidence
            for m in METHODS
            if m in method_scores
        ) / total_reliability

    return (
        max(0.0, min(1.0, probability)),
        max(0.0, min(1.0, confidence)),
    )


def rank_key(match: EnsembleMatch) -> Tuple[float, float, str]:
    """概率降序 → 置信度降序 → persona_id 升序。"""
    return (-match.probability, -match.confidence, match.persona_id)


def rank_matches(matches: List[EnsembleMatch]) -> List[EnsembleMatch]:
    """排序并写入 rank（从 1 开始）。"""
    ordered = sorted(matches, key=rank_key)
    for index, match in enumerate(ordered, start=1):
        match.rank = index
    return ordered
