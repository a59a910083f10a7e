# scheduler.py
# =============================================================================
# 重匹配任务队列: 每个陪审员至多一个进行中的后台重算任务。
# / Rematch queue: at most one in-flight background rematch per juror.
#
# submit() 同步提取并持久化证据（证据永不丢失），然后调度一次增量重算。
# 同一陪审员已有进行中的任务时将其取消，新任务合并被取消任务的
# 变化信号与 evidence_ref，账本记录因此仍可追溯到每一条证据。
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from jurymatch.engine.ledger import EVIDENCE_REF_SEPARATOR
from jurymatch.engine.matcher import EnsembleMatcher
from jurymatch.primitives.events import MatchEvent
from jurymatch.primitives.models import EnsembleMatch, EvidenceEvent

logger = logging.getLogger(__name__)


@dataclass
class _PendingRematch:
    task: asyncio.Task
    changed_signals: Set[str] = field(default_factory=set)
    evidence_refs: List[str] = field(default_factory=list)


class RematchQueue:
    """按陪审员键控的可取消重匹配队列。"""

    def __init__(self, matcher: EnsembleMatcher) -> None:
        self._matcher = matcher
        self._pending: Dict[str, _PendingRematch] = {}
        self._closed = False

    @property
    def in_flight(self) -> Dict[str, asyncio.Task]:
        """当前进行中的任务（juror_id → task）。"""
        return {jid: p.task for jid, p in self._pending.items() if not p.task.done()}

    def submit(
        self,
        juror_id: str,
        event: EvidenceEvent,
        observed_at: Optional[datetime] = None,
    ) -> asyncio.Task:
        """记录证据并调度重算，返回该陪审员的新任务。

        必须在运行中的事件循环内调用。

        Raises:
            RuntimeError: 队列已关闭。
            MatchInputError: 陪审员不存在、目录为空或事件类型不受支持。
        """
        if self._closed:
            raise RuntimeError("RematchQueue 已关闭")
        observed_at = observed_at or datetime.now()
        changed, evidence_ref = self._matcher.record_evidence(juror_id, event, observed_at)

        changed_signals = set(changed)
        superseded: List[str] = []
        stale = self._pending.get(juror_id)
        if stale is not None and not stale.task.done():
            stale.task.cancel()
            changed_signals |= stale.changed_signals
            superseded = list(stale.evidence_refs)
            logger.info(
                "取消过期重匹配: juror=%s superseded=%s",
                juror_id, EVIDENCE_REF_SEPARATOR.join(superseded),
            )
        evidence_refs = superseded + [evidence_ref]

        task = asyncio.ensure_future(self._run(
            juror_id,
            changed_signals,
            EVIDENCE_REF_SEPARATOR.join(evidence_refs),
            observed_at,
            superseded=superseded,
        ))
        self._pending[juror_id] = _PendingRematch(
            task=task, changed_signals=changed_signals, evidence_refs=evidence_refs,
        )
        task.add_done_callback(lambda t, jid=juror_id: self._on_done(jid, t))
        return task

    async def drain(self) -> Dict[str, List[EnsembleMatch]]:
        """等待所有进行中的任务完成，返回各陪审员最新结果。"""
        results: Dict[str, List[EnsembleMatch]] = {}
        while True:
            pending = {jid: p.task for jid, p in self._pending.items() if not p.task.done()}
            if not pending:
                break
            await asyncio.gather(*pending.values(), return_exceptions=True)
        for juror_id, entry in self._pending.items():
            task = entry.task
            if task.cancelled() or task.exception() is not None:
                continue
            results[juror_id] = task.result()
        return results

    async def close(self) -> None:
        """拒绝新提交，取消所有进行中的任务并等待其退出。"""
        self._closed = True
        tasks = [p.task for p in self._pending.values() if not p.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    async def _run(
        self,
        juror_id: str,
        changed_signals: Set[str],
        evidence_ref: str,
        observed_at: datetime,
        superseded: List[str],
    ) -> List[EnsembleMatch]:
        if superseded:
            await self._matcher.emit(MatchEvent(
                type="cancelled", juror_id=juror_id, incremental=True,
                detail={"superseded": superseded, "evidence_ref": evidence_ref},
            ))
        return await self._matcher.rematch(
            juror_id, changed_signals, evidence_ref, at=observed_at,
        )

    def _on_done(self, juror_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"重匹配失败: juror={juror_id}: {exc}")
