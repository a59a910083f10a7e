# ledger.py
# =============================================================================
# 匹配更新账本: 记录每次证据导致的概率变化，可回答"这条证据改变了什么"。
# / Match update ledger: records material probability changes per evidence.
#
# 规则 / Rules:
#   - 与该 (陪审员, 画像) 最近一次记录的概率比较；无记录时基线为 0
#   - |delta| > materiality_threshold 才写入一条 MatchUpdateRecord
#   - new_probability > confirmation_threshold 且融合置信度 > 0 标记为 promoted，
#     排名最高的 promoted 画像被设置为主要匹配候选
#   - LedgerRecorder 可选：把只追加的审计流写入 JSON 文件
#     （临时文件 + 原子重命名，失败只记录日志）
# =============================================================================

"""匹配更新账本与 JSON 审计记录器。 / Match update ledger and JSON audit recorder."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from jurymatch.engine.repository import MatchRepository
from jurymatch.primitives.models import (
    EnsembleMatch,
    MatchingConfig,
    MatchUpdateRecord,
)

logger = logging.getLogger(__name__)

# 多条证据合并为一次重算时 evidence_ref 的分隔符 / Separator for merged evidence refs
EVIDENCE_REF_SEPARATOR = "+"


def evaluate_update(
    juror_id: str,
    persona_id: str,
    evidence_ref: str,
    previous: Optional[float],
    new: float,
    confidence: float,
    at: datetime,
    config: MatchingConfig,
) -> Optional[MatchUpdateRecord]:
    """单个画像的账本判定；变化不显著时返回 None。

    零置信度（无任何可用证据的中性状态）不会被标记为 promoted。
    """
    baseline = previous if previous is not None else 0.0
    delta = new - baseline
    if abs(delta) <= config.materiality_threshold:
        return None
    return MatchUpdateRecord(
        juror_id=juror_id,
        persona_id=persona_id,
        evidence_ref=evidence_ref,
        previous_probability=previous,
        new_probability=new,
        delta=delta,
        recorded_at=at,
        promoted=confidence > 0.0 and new > config.confirmation_threshold,
    )


class MatchUpdateLedger:
    """只追加的匹配变化账本，存储委托给仓储。"""

    def __init__(
        self,
        repository: MatchRepository,
        config: Optional[MatchingConfig] = None,
        recorder: Optional[LedgerRecorder] = None,
    ) -> None:
        self._repository = repository
        self._config = config or MatchingConfig()
        self._recorder = recorder

    def record(
        self,
        juror_id: str,
        matches: List[EnsembleMatch],
        evidence_ref: str,
        at: Optional[datetime] = None,
    ) -> List[MatchUpdateRecord]:
        """比较新旧概率并写入显著变化，返回本次新增的记录。

        matches 应为已排序的完整结果；主要候选取其中排名最高的 promoted 画像。
        """
        at = at or datetime.now()
        previous = self.latest(juror_id)
        records: List[MatchUpdateRecord] = []
        for match in matches:
            update = evaluate_update(
                juror_id=juror_id,
                persona_id=match.persona_id,
                evidence_ref=evidence_ref,
                previous=previous.get(match.persona_id),
                new=match.probability,
                confidence=match.confidence,
                at=at,
                config=self._config,
            )
            if update is None:
                continue
            self._repository.append_match_update(update)
            records.append(update)

        promoted = {r.persona_id for r in records if r.promoted}
        for match in matches:
            if match.persona_id in promoted:
                self._repository.set_primary_candidate(
                    juror_id, match.persona_id, match.probability,
                )
                break

        if records:
            logger.debug(
                "账本新增 %d 条记录: juror=%s evidence=%s",
                len(records), juror_id, evidence_ref,
            )
            if self._recorder is not None:
                self._recorder.record_updates(records)
        return records

    def history(
        self, juror_id: str, persona_id: Optional[str] = None,
    ) -> List[MatchUpdateRecord]:
        """按写入顺序返回审计记录，可按画像过滤。"""
        records = self._repository.list_match_updates(juror_id)
        if persona_id is None:
            return records
        return [r for r in records if r.persona_id == persona_id]

    def what_changed(self, juror_id: str, evidence_ref: str) -> List[MatchUpdateRecord]:
        """某条证据引起的所有变化，按 |delta| 降序。

        合并重算的记录（evidence_ref 形如 "a+b"）对其中每条证据都可查询。
        """
        records = [
            r for r in self._repository.list_match_updates(juror_id)
            if evidence_ref in r.evidence_ref.split(EVIDENCE_REF_SEPARATOR)
        ]
        records.sort(key=lambda r: (-abs(r.delta), r.persona_id))
        return records

    def latest(self, juror_id: str) -> Dict[str, float]:
        """每个画像最近一次记录的概率。"""
        latest: Dict[str, float] = {}
        for record in self._repository.list_match_updates(juror_id):
            latest[record.persona_id] = record.new_probability
        return latest


# =============================================================================
# LedgerRecorder: JSON 审计流
# =============================================================================


class LedgerRecorder:
    """把账本记录增量写入 JSON 文件。 / Incremental JSON audit trail.

    输出 JSON 结构 / Output JSON structure:
        {
            "meta": { "created_at", "updated_at", "record_count" },
            "runs": [ { "juror_id", "evidence_ref", "incremental", "top", ... } ],
            "records": [ MatchUpdateRecord.to_dict(), ... ]
        }

    文件在任意时刻都是合法 JSON；写入失败只记录警告，不影响匹配。
    """

    def __init__(self, output_path: Path) -> None:
        self._path = Path(output_path)
        self._data: Dict[str, Any] = {
            "meta": {
                "created_at": datetime.now().isoformat(),
                "updated_at": None,
                "record_count": 0,
            },
            "runs": [],
            "records": [],
        }
        self._flush()

    @property
    def output_path(self) -> Path:
        return self._path

    @property
    def data(self) -> Dict[str, Any]:
        return self._data

    def record_updates(self, records: List[MatchUpdateRecord]) -> None:
        self._data["records"].extend(r.to_dict() for r in records)
        self._data["meta"]["record_count"] = len(self._data["records"])
        self._flush()

    def record_run(
        self,
        juror_id: str,
        evidence_ref: str,
        matches: List[EnsembleMatch],
        incremental: bool = False,
    ) -> None:
        """记录一次匹配运行的摘要（排名、概率、是否降级）。"""
        self._data["runs"].append({
            "juror_id": juror_id,
            "evidence_ref": evidence_ref,
            "incremental": incremental,
            "at": datetime.now().isoformat(),
            "top": [
                {
                    "rank": m.rank,
                    "persona_id": m.persona_id,
                    "probability": round(m.probability, 6),
                    "confidence": round(m.confidence, 6),
                    "degraded": m.degraded,
                }
                for m in matches
            ],
        })
        self._flush()

    def _flush(self) -> None:
        """原子写入：先写临时文件，再重命名覆盖。"""
        self._data["meta"]["updated_at"] = datetime.now().isoformat()
        tmp_path = self._path.with_suffix(".json.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(self._data, ensure_ascii=False, indent=2, default=str),
                encoding="utf-8",
            )
            os.chmod(tmp_path, 0o600)
            tmp_path.replace(self._path)
        except Exception as e:
            logger.warning(f"审计记录写入失败: {self._path}: {e}")
