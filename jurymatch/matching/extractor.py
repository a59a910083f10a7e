# extractor.py
# =============================================================================
# 证据提取器: 把原始陪审员资料转换为带类型的信号事实。
# / Evidence extractor: raw juror data -> typed JurorSignalFact records.
#
# 三类输入 / Three kinds of input:
#   - 问卷字段（按信号声明的 source_field 映射） / questionnaire fields
#   - 调研文本（按信号的正则模式匹配） / research text (pattern matching)
#   - 预审问答（是/否答案直接观测，其余走模式匹配） / voir dire Q&A
#
# 提取是其输入的纯函数：不读取引擎状态，时间戳由调用方传入。
# / Extraction is a pure function of its inputs; timestamps are passed in.
# =============================================================================

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Pattern, Tuple

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.primitives.errors import INVALID_EVENT, MatchInputError, SignalValueError
from jurymatch.primitives.models import (
    SOURCE_QUESTIONNAIRE,
    SOURCE_RESEARCH,
    SOURCE_VOIR_DIRE,
    VALUE_BOOLEAN,
    VALUE_CATEGORICAL,
    VALUE_NUMERIC,
    VALUE_TEXT,
    EvidenceEvent,
    JurorRecord,
    JurorSignalFact,
    QuestionnaireSubmission,
    ResearchArtifact,
    Signal,
    SignalValue,
    VoirDireResponse,
)

logger = logging.getLogger(__name__)

# 各类提取路径的固定置信度 / Fixed confidence per extraction path
CONFIDENCE_EXACT = 0.9  # 类别精确匹配 / boolean / numeric
CONFIDENCE_TEXT_FIELD = 0.8  # 问卷文本字段存在 / questionnaire text presence
CONFIDENCE_PATTERN = 0.7  # 自由文本模式命中 / free-text pattern hit
CONFIDENCE_YES_NO = 0.9  # 预审是/否直接观测（boolean 信号） / direct yes/no on boolean
CONFIDENCE_DIRECT_OTHER = 0.8  # 预审直接观测（非 boolean 信号）


class EvidenceExtractor:
    """基于目录信号定义的证据提取器。

    构造时一次性编译所有信号的正则模式（忽略大小写）；
    无法编译的模式记录警告后跳过，不影响其他信号。
    """

    def __init__(self, catalog: PersonaCatalog) -> None:
        self._catalog = catalog
        self._patterns: Dict[str, List[Pattern[str]]] = {}
        self._by_field: Dict[str, List[Signal]] = {}

        for signal in catalog.signals:
            compiled: List[Pattern[str]] = []
            for pattern in signal.patterns:
                try:
                    compiled.append(re.compile(pattern, re.IGNORECASE))
                except re.error as exc:
                    logger.warning(
                        "信号 '%s' 的模式无法编译，跳过: %r (%s)",
                        signal.signal_id, pattern, exc,
                    )
            if compiled:
                self._patterns[signal.signal_id] = compiled
            if signal.source_field:
                self._by_field.setdefault(signal.source_field, []).append(signal)

    @property
    def catalog(self) -> PersonaCatalog:
        return self._catalog

    # =========================================================================
    # 入口
    # =========================================================================

    def extract_record(
        self, record: JurorRecord, observed_at: datetime,
    ) -> List[JurorSignalFact]:
        """提取一个陪审员资料中的全部事实。"""
        facts = self.extract_questionnaire(
            record.juror_id, record.questionnaire, observed_at,
        )
        for artifact in record.research:
            facts.extend(self.extract_research(record.juror_id, artifact, observed_at))
        for response in record.voir_dire:
            facts.extend(self.extract_voir_dire(record.juror_id, response, observed_at))
        return facts

    def extract_event(
        self, juror_id: str, event: EvidenceEvent, observed_at: datetime,
    ) -> List[JurorSignalFact]:
        """提取单个原始证据事件。

        Raises:
            MatchInputError: 事件类型不受支持。
        """
        if isinstance(event, VoirDireResponse):
            return self.extract_voir_dire(juror_id, event, observed_at)
        if isinstance(event, ResearchArtifact):
            return self.extract_research(juror_id, event, observed_at)
        if isinstance(event, QuestionnaireSubmission):
            return self.extract_questionnaire(juror_id, event.fields, observed_at)
        raise MatchInputError(
            INVALID_EVENT,
            f"不支持的证据事件类型: {type(event).__name__}",
        )

    # =========================================================================
    # 问卷
    # =========================================================================

    def extract_questionnaire(
        self,
        juror_id: str,
        fields: Dict[str, Any],
        observed_at: datetime,
    ) -> List[JurorSignalFact]:
        """按信号声明的 source_field 映射问卷字段。"""
        facts: List[JurorSignalFact] = []
        for field_name in sorted(fields):
            raw = fields[field_name]
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                continue
            for signal in self._by_field.get(field_name, []):
                matched = self._match_field(signal, raw)
                if matched is None:
                    continue
                value, confidence = matched
                facts.append(JurorSignalFact(
                    juror_id=juror_id,
                    signal_id=signal.signal_id,
                    value=value,
                    confidence=confidence,
                    source=SOURCE_QUESTIONNAIRE,
                    source_ref=f"questionnaire:{field_name}",
                    extracted_at=observed_at,
                ))
        return facts

    def _match_field(
        self, signal: Signal, raw: Any,
    ) -> Optional[Tuple[SignalValue, float]]:
        if signal.value_type == VALUE_CATEGORICAL:
            text = str(raw).strip().lower()
            for candidate in signal.possible_values:
                if candidate.lower() == text:
                    return SignalValue.categorical(candidate), CONFIDENCE_EXACT
            return None

        if signal.value_type == VALUE_BOOLEAN:
            try:
                return SignalValue.coerce(VALUE_BOOLEAN, raw), CONFIDENCE_EXACT
            except SignalValueError:
                pass
            # 自由文本字段（如职业）：有模式则以是否命中为值，否则视为"存在"
            patterns = self._patterns.get(signal.signal_id)
            if patterns:
                hit = self._first_match(patterns, str(raw)) is not None
                return SignalValue.boolean(hit), CONFIDENCE_EXACT
            if signal.patterns:
                # 模式全部无法编译
                return None
            return SignalValue.boolean(True), CONFIDENCE_EXACT

        if signal.value_type == VALUE_NUMERIC:
            try:
                return SignalValue.coerce(VALUE_NUMERIC, raw), CONFIDENCE_EXACT
            except SignalValueError:
                logger.debug("问卷字段无法解析为数值: %s=%r", signal.source_field, raw)
                return None

        if signal.value_type == VALUE_TEXT:
            try:
                return SignalValue.coerce(VALUE_TEXT, raw), CONFIDENCE_TEXT_FIELD
            except SignalValueError:
                return None

        return None

    # =========================================================================
    # 调研文本
    # =========================================================================

    def extract_research(
        self,
        juror_id: str,
        artifact: ResearchArtifact,
        observed_at: datetime,
    ) -> List[JurorSignalFact]:
        """对调研材料文本应用所有信号模式。"""
        text = "\n".join(t for t in (artifact.summary, artifact.text) if t)
        return self._extract_text(
            juror_id,
            text,
            source=SOURCE_RESEARCH,
            source_ref=f"research:{artifact.artifact_id}",
            observed_at=observed_at,
        )

    # =========================================================================
    # 预审问答
    # =========================================================================

    def extract_voir_dire(
        self,
        juror_id: str,
        response: VoirDireResponse,
        observed_at: datetime,
    ) -> List[JurorSignalFact]:
        """提取一条预审问答。

        是/否答案伴随的问题文本命中某信号模式时，该信号视为直接观测：
        boolean 信号取是/否值（0.9），不再对回答文本做模式匹配。
        其余信号仅对回答文本做模式匹配（0.7）。
        """
        source_ref = f"voir_dire:{response.response_id}"
        facts: List[JurorSignalFact] = []
        direct: set = set()

        if response.yes_no is not None and response.question:
            for signal in self._catalog.signals:
                patterns = self._patterns.get(signal.signal_id)
                if not patterns or self._first_match(patterns, response.question) is None:
                    continue
                observed = self._direct_observation(signal, response)
                if observed is None:
                    continue
                value, confidence = observed
                direct.add(signal.signal_id)
                facts.append(JurorSignalFact(
                    juror_id=juror_id,
                    signal_id=signal.signal_id,
                    value=value,
                    confidence=confidence,
                    source=SOURCE_VOIR_DIRE,
                    source_ref=source_ref,
                    extracted_at=observed_at,
                ))

        for fact in self._extract_text(
            juror_id,
            response.answer,
            source=SOURCE_VOIR_DIRE,
            source_ref=source_ref,
            observed_at=observed_at,
        ):
            if fact.signal_id not in direct:
                facts.append(fact)
        return facts

    @staticmethod
    def _direct_observation(
        signal: Signal, response: VoirDireResponse,
    ) -> Optional[Tuple[SignalValue, float]]:
        if signal.value_type == VALUE_BOOLEAN:
            return SignalValue.boolean(bool(response.yes_no)), CONFIDENCE_YES_NO
        if not response.answer:
            return None
        if signal.value_type == VALUE_CATEGORICAL:
            answer = response.answer.strip().lower()
            for candidate in signal.possible_values:
                if candidate.lower() == answer:
                    return SignalValue.categorical(candidate), CONFIDENCE_DIRECT_OTHER
            return None
        try:
            return (
                SignalValue.coerce(signal.value_type, response.answer),
                CONFIDENCE_DIRECT_OTHER,
            )
        except SignalValueError:
            return None

    # =========================================================================
    # 自由文本模式匹配
    # =========================================================================

    def _extract_text(
        self,
        juror_id: str,
        text: str,
        source: str,
        source_ref: str,
        observed_at: datetime,
    ) -> List[JurorSignalFact]:
        facts: List[JurorSignalFact] = []
        if not text or not text.strip():
            return facts

        for signal in self._catalog.signals:
            patterns = self._patterns.get(signal.signal_id)
            if not patterns:
                continue
            match = self._first_match(patterns, text)
            if match is None:
                continue

            value = self._value_from_match(signal, match)
            if value is None:
                continue
            facts.append(JurorSignalFact(
                juror_id=juror_id,
                signal_id=signal.signal_id,
                value=value,
                confidence=CONFIDENCE_PATTERN,
                source=source,
                source_ref=source_ref,
                extracted_at=observed_at,
            ))
        return facts

    @staticmethod
    def _value_from_match(signal: Signal, match: "re.Match[str]") -> Optional[SignalValue]:
        if signal.value_type == VALUE_BOOLEAN:
            return SignalValue.boolean(True)
        matched = match.group(0).strip()
        if not matched:
            return None
        if signal.value_type == VALUE_TEXT:
            return SignalValue.text(matched)
        if signal.value_type == VALUE_CATEGORICAL:
            for candidate in signal.possible_values:
                if candidate.lower() == matched.lower():
                    return SignalValue.categorical(candidate)
            return None
        # numeric 信号不从自由文本模式中取值
        return None

    @staticmethod
    def _first_match(
        patterns: List[Pattern[str]], text: str,
    ) -> "Optional[re.Match[str]]":
        for pattern in patterns:
            match = pattern.search(text)
            if match is not None:
                return match
        return None
