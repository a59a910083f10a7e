# engine/
# =============================================================================
# 匹配引擎: 仓储边界、账本、匹配编排与重匹配队列。
# =============================================================================

from jurymatch.engine.ledger import LedgerRecorder, MatchUpdateLedger
from jurymatch.engine.matcher import EnsembleMatcher, JurorMatchState, ProgressCallback
from jurymatch.engine.repository import InMemoryRepository, MatchRepository
from jurymatch.engine.scheduler import RematchQueue

__all__ = [
    "EnsembleMatcher",
    "InMemoryRepository",
    "JurorMatchState",
    "LedgerRecorder",
    "MatchRepository",
    "MatchUpdateLedger",
    "ProgressCallback",
    "RematchQueue",
]
