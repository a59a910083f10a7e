# events.py
# =============================================================================
# 匹配进度事件: 供宿主应用实时获取匹配状态。
# =============================================================================

"""Matching progress events for host application integration."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class MatchEvent:
    """匹配过程中的结构化进度事件。

    宿主应用通过注册 on_progress 回调接收此类事件，
    用于实时刷新陪审员面板、推送 SSE / WebSocket 等。

    Attributes:
        type: 事件类型。
            - "match_start": 一次匹配运行开始
            - "method_done": 某个评分方法完成
            - "degraded": 某个方法降级（外部依赖失败 / 超时）
            - "match_end": 匹配运行结束
            - "ledger_update": 新增审计记录
            - "cancelled": 过期的重匹配任务被取消
        juror_id: 相关陪审员。
        timestamp: 单调时钟（秒），用于计算耗时。
        method: 相关评分方法（仅 method_done / degraded）。
        incremental: 是否为增量重匹配。
        detail: 附加数据，结构因 type 而异。
    """

    type: str
    juror_id: str
    timestamp: float = field(default_factory=time.monotonic)
    method: Optional[str] = None
    incremental: bool = False
    detail: Optional[Dict[str, Any]] = None
