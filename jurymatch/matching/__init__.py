# matching/
# =============================================================================
# 评分核心: 证据提取、三种评分方法、融合与解释。
# / Scoring core: extraction, the three methods, fusion and explanation.
# =============================================================================

from jurymatch.matching.bayesian import BayesianUpdater, BeliefState
from jurymatch.matching.embedding_scorer import (
    EmbeddingProvider,
    EmbeddingScorer,
    HashingEmbedder,
)
from jurymatch.matching.explainer import (
    MatchExplainer,
    ProbeSuggestion,
    RationaleEnricher,
)
from jurymatch.matching.extractor import EvidenceExtractor
from jurymatch.matching.fusion import fuse, rank_matches
from jurymatch.matching.signal_scorer import SignalBasedScorer, SignalScoreResult

__all__ = [
    "BayesianUpdater",
    "BeliefState",
    "EmbeddingProvider",
    "EmbeddingScorer",
    "EvidenceExtractor",
    "HashingEmbedder",
    "MatchExplainer",
    "ProbeSuggestion",
    "RationaleEnricher",
    "SignalBasedScorer",
    "SignalScoreResult",
    "fuse",
    "rank_matches",
]
