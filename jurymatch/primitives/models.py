# models.py
# =============================================================================
# 本模块定义陪审员-画像匹配引擎的全部核心数据模型。
# / Core data models of the juror-to-persona matching engine.
#
# 包含 / Contains:
#   SignalValue（带类型标签的信号值）、Signal、PersonaSignalWeight、
#   JurorSignalFact、Persona、原始证据（问卷 / 调研 / 预审问答）、
#   方法得分、EnsembleMatch、MatchUpdateRecord、MatchingConfig。
#
# 目录条目与事实记录均为 frozen：引擎只读取、只追加，不修改。
# / Catalog entries and facts are frozen: the engine reads and appends only.
# =============================================================================

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from jurymatch.primitives.errors import (
    INVALID_FACT,
    MatchInputError,
    SignalValueError,
)


# =============================================================================
# 常量 / Constants
# =============================================================================

VALUE_BOOLEAN = "boolean"
VALUE_NUMERIC = "numeric"
VALUE_CATEGORICAL = "categorical"
VALUE_TEXT = "text"
VALUE_TYPES = (VALUE_BOOLEAN, VALUE_NUMERIC, VALUE_CATEGORICAL, VALUE_TEXT)

SOURCE_QUESTIONNAIRE = "questionnaire"
SOURCE_RESEARCH = "research"
SOURCE_VOIR_DIRE = "voir_dire"
SOURCE_MANUAL = "manual"
SOURCES = (SOURCE_QUESTIONNAIRE, SOURCE_RESEARCH, SOURCE_VOIR_DIRE, SOURCE_MANUAL)

# 同一时刻多来源并存时的优先级（越大越权威） / Tie-break priority when timestamps collide
_SOURCE_PRIORITY = {
    SOURCE_QUESTIONNAIRE: 0,
    SOURCE_RESEARCH: 1,
    SOURCE_VOIR_DIRE: 2,
    SOURCE_MANUAL: 3,
}

METHOD_SIGNAL_BASED = "signal_based"
METHOD_EMBEDDING = "embedding"
METHOD_BAYESIAN = "bayesian"
METHODS = (METHOD_SIGNAL_BASED, METHOD_EMBEDDING, METHOD_BAYESIAN)

NEUTRAL_SCORE = 0.5

_TRUE_STRINGS = {"yes", "y", "true", "t", "1"}
_FALSE_STRINGS = {"no", "n", "false", "f", "0"}


# =============================================================================
# 信号值: 带类型标签的联合体 / Tagged signal value
# =============================================================================


@dataclass(frozen=True)
class SignalValue:
    """信号观测值：boolean / numeric / categorical / text 四选一。

    raw 的 Python 类型与 value_type 一一对应（bool / float / str / str），
    由构造函数和 coerce() 保证，其他代码无需再做类型判断。
    """

    value_type: str
    raw: Union[bool, float, str]

    @classmethod
    def boolean(cls, value: bool) -> SignalValue:
        return cls(VALUE_BOOLEAN, bool(value))

    @classmethod
    def numeric(cls, value: float) -> SignalValue:
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            raise SignalValueError(f"数值信号不能为 NaN/Inf: {value!r}")
        return cls(VALUE_NUMERIC, number)

    @classmethod
    def categorical(cls, value: str) -> SignalValue:
        return cls(VALUE_CATEGORICAL, str(value).strip())

    @classmethod
    def text(cls, value: str) -> SignalValue:
        return cls(VALUE_TEXT, str(value).strip())

    @classmethod
    def coerce(cls, value_type: str, raw: Any) -> SignalValue:
        """把原始输入转换为指定类型的 SignalValue。 / Validate and convert raw input.

        Raises:
            SignalValueError: 值无法转换或 value_type 未知。
        """
        if isinstance(raw, SignalValue):
            if raw.value_type == value_type:
                return raw
            raw = raw.raw

        if raw is None:
            raise SignalValueError(f"{value_type} 信号值不能为空")

        if value_type == VALUE_BOOLEAN:
            if isinstance(raw, bool):
                return cls.boolean(raw)
            if isinstance(raw, (int, float)) and raw in (0, 1):
                return cls.boolean(bool(raw))
            if isinstance(raw, str):
                lowered = raw.strip().lower()
                if lowered in _TRUE_STRINGS:
                    return cls.boolean(True)
                if lowered in _FALSE_STRINGS:
                    return cls.boolean(False)
            raise SignalValueError(f"无法转换为 boolean: {raw!r}")

        if value_type == VALUE_NUMERIC:
            if isinstance(raw, bool):
                raise SignalValueError(f"boolean 不能作为 numeric 信号值: {raw!r}")
            if isinstance(raw, (int, float)):
                return cls.numeric(raw)
            if isinstance(raw, str):
                try:
                    return cls.numeric(raw.strip().replace(",", ""))
                except ValueError as exc:
                    raise SignalValueError(f"无法转换为 numeric: {raw!r}") from exc
            raise SignalValueError(f"无法转换为 numeric: {raw!r}")

        if value_type in (VALUE_CATEGORICAL, VALUE_TEXT):
            if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
                raise SignalValueError(f"无法转换为 {value_type}: {raw!r}")
            text = str(raw).strip()
            if not text:
                raise SignalValueError(f"{value_type} 信号值不能为空字符串")
            return cls(value_type, text)

        raise SignalValueError(f"未知的信号值类型: '{value_type}'")

    def describe(self) -> str:
        """人类可读的简短描述。 / Short human-readable form."""
        if self.value_type == VALUE_BOOLEAN:
            return "yes" if self.raw else "no"
        if self.value_type == VALUE_NUMERIC:
            return f"{self.raw:g}"
        return str(self.raw)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.value_type, "value": self.raw}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SignalValue:
        return cls.coerce(data.get("type", ""), data.get("value"))


# =============================================================================
# 目录条目 / Catalog entries
# =============================================================================


@dataclass(frozen=True)
class Signal:
    """可观测的陪审员事实定义（目录条目，不可变）。"""

    signal_id: str
    name: str
    category: str
    value_type: str
    possible_values: Tuple[str, ...] = ()
    patterns: Tuple[str, ...] = ()
    source_field: Optional[str] = None  # 问卷字段名 / questionnaire field name
    description: str = ""


@dataclass(frozen=True)
class PersonaSignalWeight:
    """(画像, 信号) → 有符号权重与可选期望值。

    expected 为 None 表示"信号出现 / 为真"即支持该画像。
    tolerance 仅对 numeric 信号有意义：期望值 ± tolerance 内视为一致。
    """

    persona_id: str
    signal_id: str
    weight: float  # [-1, 1]
    expected: Optional[SignalValue] = None
    tolerance: Optional[float] = None


@dataclass(frozen=True)
class Persona:
    """行为画像（只读）。"""

    persona_id: str
    name: str
    archetype: str = ""
    description: str = ""
    embedding: Optional[Tuple[float, ...]] = None
    phrases: Tuple[str, ...] = ()
    prior: Optional[float] = None  # 人群先验权重（未归一化） / unnormalised population prior

    def reference_text(self) -> str:
        """构建用于向量化的画像描述文本。 / Build the text that gets embedded."""
        parts = [f"Persona: {self.name}"]
        if self.archetype:
            parts.append(f"Archetype: {self.archetype}")
        if self.description:
            parts.append(f"Description: {self.description}")
        if self.phrases:
            parts.append(
                "Characteristic Phrases: "
                + "; ".join(f'"{p}"' for p in self.phrases)
            )
        return "\n".join(parts)


# =============================================================================
# 陪审员事实 / Juror facts
# =============================================================================


@dataclass(frozen=True)
class JurorSignalFact:
    """一条提取出的陪审员信号事实。只会被新事实取代，不会被修改。"""

    juror_id: str
    signal_id: str
    value: SignalValue
    confidence: float
    source: str
    source_ref: str
    extracted_at: datetime

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise MatchInputError(
                INVALID_FACT,
                f"事实置信度必须在 [0, 1] 内: {self.signal_id}={self.confidence}",
            )
        if self.source not in SOURCES:
            raise MatchInputError(
                INVALID_FACT,
                f"未知的事实来源: '{self.source}'（仅支持: {', '.join(SOURCES)}）",
            )

    @property
    def key(self) -> str:
        """(陪审员, 信号, 来源, 来源引用) 的确定性摘要，用于 upsert。"""
        raw = "|".join((self.juror_id, self.signal_id, self.source, self.source_ref))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "juror_id": self.juror_id,
            "signal_id": self.signal_id,
            "value": self.value.to_dict(),
            "confidence": self.confidence,
            "source": self.source,
            "source_ref": self.source_ref,
            "extracted_at": self.extracted_at.isoformat(),
        }


def _fact_order(fact: JurorSignalFact) -> Tuple[datetime, int, float]:
    return (fact.extracted_at, _SOURCE_PRIORITY[fact.source], fact.confidence)


def latest_facts(facts: Iterable[JurorSignalFact]) -> Dict[str, JurorSignalFact]:
    """每个信号取最新的一条事实。 / Latest fact per signal.

    先在每个 (信号, 来源) 内取最新，再跨来源取最新；时间相同时按来源
    优先级、再按置信度决胜。完全相同的排序键下，后出现者胜出。
    """
    per_source: Dict[Tuple[str, str], JurorSignalFact] = {}
    for fact in facts:
        slot = (fact.signal_id, fact.source)
        current = per_source.get(slot)
        if current is None or fact.extracted_at >= current.extracted_at:
            per_source[slot] = fact

    latest: Dict[str, JurorSignalFact] = {}
    for (signal_id, _), fact in sorted(per_source.items()):
        current = latest.get(signal_id)
        if current is None or _fact_order(fact) >= _fact_order(current):
            latest[signal_id] = fact
    return latest


# =============================================================================
# 原始证据 / Raw evidence
# =============================================================================


@dataclass
class QuestionnaireSubmission:
    """问卷提交：字段名 → 原始值。"""

    submission_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResearchArtifact:
    """调研材料（社交媒体、新闻、公开记录等）的原始文本。"""

    artifact_id: str
    text: str
    summary: str = ""
    source_url: Optional[str] = None


@dataclass
class VoirDireResponse:
    """一条预审问答。yes_no 为 None 表示开放式回答。"""

    response_id: str
    question: str
    answer: str = ""
    yes_no: Optional[bool] = None


EvidenceEvent = Union[QuestionnaireSubmission, ResearchArtifact, VoirDireResponse]


@dataclass
class JurorRecord:
    """陪审员的原始资料汇总。"""

    juror_id: str
    questionnaire: Dict[str, Any] = field(default_factory=dict)
    research: List[ResearchArtifact] = field(default_factory=list)
    voir_dire: List[VoirDireResponse] = field(default_factory=list)
    notes: str = ""

    def narrative_text(self) -> str:
        """拼接所有自由文本（调研摘要、预审回答、备注）。 / Concatenated free text."""
        parts: List[str] = []
        for artifact in self.research:
            text = (artifact.summary or artifact.text or "").strip()
            if text:
                parts.append(text)
        for response in self.voir_dire:
            answer = (response.answer or "").strip()
            if answer:
                parts.append(f"Q: {response.question.strip()}\nA: {answer}")
        if self.notes.strip():
            parts.append(self.notes.strip())
        return "\n\n".join(parts)


# =============================================================================
# 评分输出 / Scoring outputs
# =============================================================================


@dataclass(frozen=True)
class SignalContribution:
    """单个信号对某画像信号得分的贡献。"""

    signal_id: str
    signal_name: str
    observed: SignalValue
    weight: float
    agreement: float  # [-1, 1]
    confidence: float
    contribution: float  # weight × agreement × confidence
    source: str
    source_ref: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "signal_name": self.signal_name,
            "observed": self.observed.describe(),
            "weight": self.weight,
            "agreement": round(self.agreement, 6),
            "confidence": self.confidence,
            "contribution": round(self.contribution, 6),
            "source": self.source,
            "source_ref": self.source_ref,
        }


@dataclass
class MethodScore:
    """单一方法对 (陪审员, 画像) 的得分与置信度。"""

    method: str
    score: float
    confidence: float
    degraded: bool = False  # 外部依赖失败导致的降级 / degraded by an external failure
    detail: str = ""

    @classmethod
    def neutral(cls, method: str, detail: str = "", degraded: bool = False) -> MethodScore:
        """零置信度的中性得分（证据不足或降级）。"""
        return cls(
            method=method,
            score=NEUTRAL_SCORE,
            confidence=0.0,
            degraded=degraded,
            detail=detail,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "score": self.score,
            "confidence": self.confidence,
            "degraded": self.degraded,
            "detail": self.detail,
        }


@dataclass
class EnsembleMatch:
    """一次匹配运行中 (陪审员, 画像) 的融合结果。"""

    juror_id: str
    persona_id: str
    persona_name: str
    archetype: str
    probability: float
    confidence: float
    method_scores: Dict[str, MethodScore]
    supporting: List[SignalContribution] = field(default_factory=list)
    contradicting: List[SignalContribution] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)  # 画像加权但未观测的信号 id
    rationale: str = ""
    counterfactual: str = ""
    rank: int = 0

    @property
    def degraded(self) -> bool:
        return any(m.degraded for m in self.method_scores.values())

    def method(self, name: str) -> MethodScore:
        return self.method_scores[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "juror_id": self.juror_id,
            "persona_id": self.persona_id,
            "persona_name": self.persona_name,
            "archetype": self.archetype,
            "rank": self.rank,
            "probability": self.probability,
            "confidence": self.confidence,
            "degraded": self.degraded,
            "method_scores": {
                name: score.to_dict() for name, score in self.method_scores.items()
            },
            "supporting": [c.to_dict() for c in self.supporting],
            "contradicting": [c.to_dict() for c in self.contradicting],
            "missing": list(self.missing),
            "rationale": self.rationale,
            "counterfactual": self.counterfactual,
        }


@dataclass(frozen=True)
class MatchUpdateRecord:
    """匹配概率变化的审计记录（只追加）。"""

    juror_id: str
    persona_id: str
    evidence_ref: str
    previous_probability: Optional[float]
    new_probability: float
    delta: float
    recorded_at: datetime
    promoted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "juror_id": self.juror_id,
            "persona_id": self.persona_id,
            "evidence_ref": self.evidence_ref,
            "previous_probability": self.previous_probability,
            "new_probability": self.new_probability,
            "delta": self.delta,
            "recorded_at": self.recorded_at.isoformat(),
            "promoted": self.promoted,
        }


# =============================================================================
# 引擎配置 / Engine configuration
# =============================================================================


@dataclass
class MatchingConfig:
    """匹配引擎运行时参数。

    两个阈值（0.01 / 0.3）是业务常量而非推导结果，作为配置项暴露。
    max_retries 被限制在 [0, 1]：面向用户的操作最多静默重试一次。
    """

    materiality_threshold: float = 0.01
    confirmation_threshold: float = 0.3
    top_n: int = 5
    logistic_steepness: float = 2.0
    contradiction_damping: float = 1.0  # 负向一致性缩放 (0, 1] / scale for contradictions
    bayes_strength: float = 2.0
    method_reliability: Dict[str, float] = field(
        default_factory=lambda: {
            METHOD_SIGNAL_BASED: 0.35,
            METHOD_EMBEDDING: 0.30,
            METHOD_BAYESIAN: 0.35,
        }
    )
    embedding_timeout: float = 10.0
    enrichment_timeout: float = 20.0
    embedding_cache_ttl: float = 3600.0
    saturation_chars: int = 2000
    max_retries: int = 1
    enrich_rationale: bool = True

    def __post_init__(self) -> None:
        self.max_retries = max(0, min(int(self.max_retries), 1))
        if self.materiality_threshold < 0:
            raise ValueError("materiality_threshold 不能为负数")
        if not 0.0 < self.contradiction_damping <= 1.0:
            raise ValueError("contradiction_damping 必须在 (0, 1] 内")
        if self.top_n < 1:
            raise ValueError("top_n 至少为 1")
        missing = [m for m in METHODS if m not in self.method_reliability]
        for method in missing:
            self.method_reliability[method] = 1.0 / len(METHODS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "materiality_threshold": self.materiality_threshold,
            "confirmation_threshold": self.confirmation_threshold,
            "top_n": self.top_n,
            "logistic_steepness": self.logistic_steepness,
            "contradiction_damping": self.contradiction_damping,
            "bayes_strength": self.bayes_strength,
            "method_reliability": dict(self.method_reliability),
            "embedding_timeout": self.embedding_timeout,
            "enrichment_timeout": self.enrichment_timeout,
            "embedding_cache_ttl": self.embedding_cache_ttl,
            "saturation_chars": self.saturation_chars,
            "max_retries": self.max_retries,
            "enrich_rationale": self.enrich_rationale,
        }
