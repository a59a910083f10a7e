# explainer.py
# =============================================================================
# 解释生成: 确定性的贡献分析 + 可选的 LLM 润色。
# / Explanations: deterministic contribution analysis plus optional LLM polish.
#
# 职责 / Responsibilities:
#   - rationale: 按贡献绝对值描述主要支持 / 反对信号，并标注融合概率
#   - counterfactual: 局部敏感性陈述（最强反对信号，否则最弱支持信号）
#   - probes: 未观测、且最能区分前两名画像的信号（预审追问建议）
#   - RationaleEnricher: LLM 改写（尽力而为，超时 / 失败保留确定性文本）
#
# 核心解释完全不依赖外部调用；LLM 只负责语言润色。
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.prompts import (
    RATIONALE_NO_SIGNALS,
    RATIONALE_SYSTEM_PROMPT,
    RATIONALE_USER_PROMPT,
    RETRY_JSON_PREFIX,
)
from jurymatch.primitives.models import (
    METHODS,
    VALUE_BOOLEAN,
    EnsembleMatch,
    Persona,
    SignalContribution,
)
from jurymatch.utils.json_parser import parse_json_from_llm

logger = logging.getLogger(__name__)

# 画像对某信号的权重差至少达到此值才视为有区分度 / Minimum weight gap for a probe
PROBE_MIN_DISCRIMINATION = 0.3


@dataclass
class ProbeSuggestion:
    """一个值得在预审中追问的未观测信号。"""

    signal_id: str
    signal_name: str
    discrimination: float  # |w_top1 - w_top2|
    weights: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "signal_name": self.signal_name,
            "discrimination": round(self.discrimination, 6),
            "weights": dict(self.weights),
        }


class MatchExplainer:
    """基于信号贡献的确定性解释。"""

    def __init__(self, catalog: PersonaCatalog, top_k: int = 3) -> None:
        self._catalog = catalog
        self._top_k = top_k

    # -------------------------------------------------------------------------
    # rationale
    # -------------------------------------------------------------------------

    def rationale(self, match: EnsembleMatch) -> str:
        header = (
            f"{match.persona_name}: fused probability {match.probability:.0%} "
            f"(confidence {match.confidence:.0%})."
        )
        if not match.supporting and not match.contradicting:
            if match.confidence == 0:
                return f"{header} Insufficient evidence: no method has usable input yet."
            return (
                f"{header} No catalog signal for this persona has been observed; "
                "the score rests on free-text similarity and the belief distribution."
            )

        parts = [header]
        if match.supporting:
            parts.append(
                "Supporting: "
                + "; ".join(self._describe(c) for c in match.supporting[: self._top_k])
                + "."
            )
        if match.contradicting:
            parts.append(
                "Contradicting: "
                + "; ".join(self._describe(c) for c in match.contradicting[: self._top_k])
                + "."
            )
        return " ".join(parts)

    @staticmethod
    def _describe(c: SignalContribution) -> str:
        return (
            f"{c.signal_name} = {c.observed.describe()} "
            f"({c.contribution:+.2f}, {c.source.replace('_', ' ')})"
        )

    # -------------------------------------------------------------------------
    # counterfactual
    # -------------------------------------------------------------------------

    def counterfactual(self, match: EnsembleMatch) -> str:
        if match.contradicting:
            pivot = match.contradicting[0]
            return (
                f"If {pivot.signal_name} were {self._reversed(match.persona_id, pivot)} "
                f"instead of {pivot.observed.describe()}, the match to "
                f"{match.persona_name} would change the most; it currently pulls "
                f"the signal score down by {abs(pivot.contribution):.2f}."
            )
        if match.supporting:
            pivot = match.supporting[-1]
            return (
                f"No observed signal contradicts {match.persona_name}. The weakest "
                f"support is {pivot.signal_name} = {pivot.observed.describe()} "
                f"({pivot.contribution:+.2f}); if it were "
                f"{self._reversed(match.persona_id, pivot)} the match would change the most."
            )
        if match.missing:
            signal_id = match.missing[0]
            weight = self._catalog.weight(match.persona_id, signal_id)
            signal = self._catalog.signal(signal_id)
            name = signal.name if signal else signal_id
            return (
                f"No weighted signal for {match.persona_name} has been observed. "
                f"Observing {name} would move this match the most "
                f"(weight {weight.weight:+.2f})."
            )
        return f"The catalog defines no signal weights for {match.persona_name}."

    def _reversed(self, persona_id: str, c: SignalContribution) -> str:
        """描述"反转观测值"后的取值。"""
        if c.observed.value_type == VALUE_BOOLEAN:
            return "no" if c.observed.raw else "yes"
        weight = self._catalog.weight(persona_id, c.signal_id)
        if c.contribution < 0 and weight is not None and weight.expected is not None:
            if weight.weight > 0:
                return weight.expected.describe()
            return f"something other than {weight.expected.describe()}"
        return f"not {c.observed.describe()}"

    # -------------------------------------------------------------------------
    # probes
    # -------------------------------------------------------------------------

    def probes(
        self,
        ranked: List[EnsembleMatch],
        observed: Set[str],
        top_k: int = 3,
    ) -> List[ProbeSuggestion]:
        """前两名画像之间最具区分度的未观测信号。"""
        if len(ranked) < 2:
            return []
        first, second = ranked[0].persona_id, ranked[1].persona_id
        w1 = self._catalog.weights_for(first)
        w2 = self._catalog.weights_for(second)

        suggestions: List[ProbeSuggestion] = []
        for signal_id in sorted(set(w1) | set(w2)):
            if signal_id in observed:
                continue
            a = w1[signal_id].weight if signal_id in w1 else 0.0
            b = w2[signal_id].weight if signal_id in w2 else 0.0
            gap = abs(a - b)
            if gap < PROBE_MIN_DISCRIMINATION:
                continue
            signal = self._catalog.signal(signal_id)
            suggestions.append(ProbeSuggestion(
                signal_id=signal_id,
                signal_name=signal.name if signal else signal_id,
                discrimination=gap,
                weights={first: a, second: b},
            ))
        suggestions.sort(key=lambda s: (-s.discrimination, s.signal_id))
        return suggestions[:top_k]


# =============================================================================
# RationaleEnricher: LLM 润色（尽力而为）
# =============================================================================


class RationaleEnricher:
    """用 LLM 改写确定性解释文本。失败 / 超时时保留原文本。"""

    def __init__(
        self,
        llm_caller: Callable[..., Awaitable[str]],
        timeout: float = 20.0,
        max_retries: int = 1,
    ) -> None:
        self._llm_caller = llm_caller
        self._timeout = timeout
        self._max_retries = max(0, min(max_retries, 1))

    async def enrich(self, match: EnsembleMatch, persona: Persona) -> bool:
        """就地改写 match.rationale / match.counterfactual；成功返回 True。

        仅在 JSON 解析失败时重试（最多一次）；传输失败与超时直接回退。
        """
        prompt = self._build_prompt(match, persona)
        last_error: Optional[Exception] = None
        for attempt in range(1 + self._max_retries):
            try:
                raw = await asyncio.wait_for(
                    self._llm_caller(
                        system_prompt=RATIONALE_SYSTEM_PROMPT,
                        user_prompt=prompt,
                    ),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "解释润色超时 (%.1fs)，保留确定性文本: %s",
                    self._timeout, match.persona_id,
                )
                return False
            except Exception as e:
                logger.warning(
                    "解释润色调用失败，保留确定性文本: %s: %s", match.persona_id, e,
                )
                return False

            try:
                data = parse_json_from_llm(raw)
                rationale = str(data["rationale"]).strip()
                counterfactual = str(data.get("counterfactual") or "").strip()
            except (json.JSONDecodeError, ValueError, KeyError) as e:
                last_error = e
                logger.warning(
                    f"RationaleEnricher {match.persona_id} attempt {attempt + 1} failed: {e}"
                )
                prompt = RETRY_JSON_PREFIX.format(error=e) + self._build_prompt(match, persona)
                continue

            if not rationale:
                last_error = ValueError("empty rationale")
                continue
            match.rationale = rationale
            if counterfactual:
                match.counterfactual = counterfactual
            return True

        logger.warning(
            f"RationaleEnricher {match.persona_id} failed after retries: {last_error}"
        )
        return False

    @staticmethod
    def _build_prompt(match: EnsembleMatch, persona: Persona) -> str:
        method_lines = "\n".join(
            f"- {m}: score {match.method_scores[m].score:.2f}, "
            f"confidence {match.method_scores[m].confidence:.2f}"
            + (" (degraded)" if match.method_scores[m].degraded else "")
            for m in METHODS
            if m in match.method_scores
        )
        return RATIONALE_USER_PROMPT.format(
            persona_name=persona.name,
            archetype=persona.archetype or "unspecified archetype",
            persona_description=persona.description or "",
            probability=match.probability,
            confidence=match.confidence,
            method_lines=method_lines,
            supporting_lines=_format_signal_lines(match.supporting[:5]),
            contradicting_lines=_format_signal_lines(match.contradicting[:3]),
            draft_rationale=match.rationale,
            draft_counterfactual=match.counterfactual,
        )


def _format_signal_lines(contributions: List[SignalContribution]) -> str:
    if not contributions:
        return RATIONALE_NO_SIGNALS
    return "\n".join(
        f"- {c.signal_name}: {c.observed.describe()} "
        f"(weight {c.weight:+.2f}, confidence {c.confidence:.2f}, "
        f"contribution {c.contribution:+.2f}, source {c.source})"
        for c in contributions
    )
