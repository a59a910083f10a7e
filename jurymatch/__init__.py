# jurymatch/__init__.py
# =============================================================================
# Jurymatch: 陪审员 → 行为画像集成匹配引擎。 / Juror-to-persona ensemble matching engine.
# =============================================================================

"""Jurymatch: 陪审员 → 行为画像集成匹配引擎。 / Juror-to-persona ensemble matching engine."""

from jurymatch.api.match import build_matcher, match_juror

__version__ = "0.1.0"
__all__ = ["build_matcher", "match_juror", "__version__"]
