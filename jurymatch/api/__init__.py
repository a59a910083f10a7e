# api/
# 公共入口 / Public entry points

from jurymatch.api.match import build_matcher, match_juror

__all__ = ["build_matcher", "match_juror"]
