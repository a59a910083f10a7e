# repository.py
# =============================================================================
# 仓储接口: 匹配引擎与宿主存储层之间的唯一边界。
# / Repository interface: the only seam between the engine and host storage.
#
# 引擎通过显式传入的仓储读取陪审员资料 / 事实 / 画像目录，追加事实与
# 审计记录；评分核心本身不接触任何持久化细节。
# InMemoryRepository 是进程内实现，供测试与单机嵌入使用。
# =============================================================================

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.primitives.errors import INVALID_FACT, JUROR_NOT_FOUND, MatchInputError
from jurymatch.primitives.models import (
    EvidenceEvent,
    JurorRecord,
    JurorSignalFact,
    MatchUpdateRecord,
    QuestionnaireSubmission,
    ResearchArtifact,
    VoirDireResponse,
)

logger = logging.getLogger(__name__)


class MatchRepository(Protocol):
    """匹配引擎依赖的存储操作。"""

    def get_juror_record(self, juror_id: str) -> JurorRecord:
        ...

    def get_juror_facts(self, juror_id: str) -> List[JurorSignalFact]:
        ...

    def append_facts(self, juror_id: str, facts: List[JurorSignalFact]) -> None:
        ...

    def append_evidence(self, juror_id: str, event: EvidenceEvent) -> None:
        ...

    def get_persona_catalog(self) -> PersonaCatalog:
        ...

    def append_match_update(self, record: MatchUpdateRecord) -> None:
        ...

    def list_match_updates(self, juror_id: str) -> List[MatchUpdateRecord]:
        ...

    def set_primary_candidate(self, juror_id: str, persona_id: str, probability: float) -> None:
        ...

    def get_primary_candidate(self, juror_id: str) -> Optional[str]:
        ...


class InMemoryRepository:
    """进程内仓储实现。

    事实只追加、历史完整保留（每个信号的生效事实由 latest_facts 决定）；
    审计记录同样只追加。
    """

    def __init__(self, catalog: PersonaCatalog) -> None:
        self._catalog = catalog
        self._records: Dict[str, JurorRecord] = {}
        self._facts: Dict[str, List[JurorSignalFact]] = {}
        self._updates: Dict[str, List[MatchUpdateRecord]] = {}
        self._primary: Dict[str, tuple] = {}

    # -------------------------------------------------------------------------
    # 陪审员
    # -------------------------------------------------------------------------

    def add_juror(self, record: JurorRecord) -> None:
        self._records[record.juror_id] = record
        self._facts.setdefault(record.juror_id, [])

    def get_juror_record(self, juror_id: str) -> JurorRecord:
        record = self._records.get(juror_id)
        if record is None:
            raise MatchInputError(JUROR_NOT_FOUND, f"陪审员不存在: '{juror_id}'")
        return record

    def get_juror_facts(self, juror_id: str) -> List[JurorSignalFact]:
        self.get_juror_record(juror_id)
        return list(self._facts.get(juror_id, []))

    def append_facts(self, juror_id: str, facts: List[JurorSignalFact]) -> None:
        """追加事实。值类型与目录信号声明不一致时整批拒绝。

        引用未知信号的事实照常保存，评分时记录警告后跳过。

        Raises:
            MatchInputError: INVALID_FACT，juror_id 不一致或值类型不匹配。
        """
        self.get_juror_record(juror_id)
        for fact in facts:
            if fact.juror_id != juror_id:
                raise MatchInputError(
                    INVALID_FACT, f"事实属于陪审员 '{fact.juror_id}'，不能写入 '{juror_id}'",
                )
            signal = self._catalog.signal(fact.signal_id)
            if signal is not None and fact.value.value_type != signal.value_type:
                raise MatchInputError(
                    INVALID_FACT,
                    f"事实值类型与信号声明不一致: {fact.signal_id} "
                    f"({fact.value.value_type} != {signal.value_type})",
                )
        self._facts.setdefault(juror_id, []).extend(facts)

    def append_evidence(self, juror_id: str, event: EvidenceEvent) -> None:
        """把原始证据并入陪审员资料（影响叙述文本）。"""
        record = self.get_juror_record(juror_id)
        if isinstance(event, VoirDireResponse):
            record.voir_dire = [
                r for r in record.voir_dire if r.response_id != event.response_id
            ] + [event]
        elif isinstance(event, ResearchArtifact):
            record.research = [
                a for a in record.research if a.artifact_id != event.artifact_id
            ] + [event]
        elif isinstance(event, QuestionnaireSubmission):
            record.questionnaire.update(event.fields)

    # -------------------------------------------------------------------------
    # 画像目录
    # -------------------------------------------------------------------------

    def get_persona_catalog(self) -> PersonaCatalog:
        return self._catalog

    # -------------------------------------------------------------------------
    # 审计记录
    # -------------------------------------------------------------------------

    def append_match_update(self, record: MatchUpdateRecord) -> None:
        self._updates.setdefault(record.juror_id, []).append(record)

    def list_match_updates(self, juror_id: str) -> List[MatchUpdateRecord]:
        return list(self._updates.get(juror_id, []))

    def set_primary_candidate(self, juror_id: str, persona_id: str, probability: float) -> None:
        self._primary[juror_id] = (persona_id, probability)
        logger.info(
            "主要匹配候选已更新: juror=%s persona=%s p=%.3f",
            juror_id, persona_id, probability,
        )

    def get_primary_candidate(self, juror_id: str) -> Optional[str]:
        entry = self._primary.get(juror_id)
        return entry[0] if entry else None
