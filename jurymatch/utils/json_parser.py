"""JSON extraction from LLM output.

Models asked for a JSON object often wrap it: markdown fences, a sentence
of preamble, typographic quotes. This module peels those layers off and
always returns a dict, or raises ValueError.
"""

import json
import re
from typing import Any, Dict, Iterator

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n(.*?)\n\s*```", re.DOTALL)
_SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
}


def _candidates(text: str) -> Iterator[str]:
    yield text
    for match in _FENCE_RE.finditer(text):
        yield match.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        yield text[start:end + 1]


def parse_json_from_llm(raw: str) -> Dict[str, Any]:
    """Return the first JSON object found in an LLM reply.

    Tried in order: the whole reply, each fenced code block, the outermost
    ``{ ... }`` span. If none parses, typographic quotes are normalised and
    the same candidates are tried once more.

    Raises:
        ValueError: No JSON object could be parsed.
    """
    if not raw or not raw.strip():
        raise ValueError("Empty input")

    text = raw.strip()
    normalised = text
    for smart, plain in _SMART_QUOTES.items():
        normalised = normalised.replace(smart, plain)

    for variant in (text, normalised) if normalised != text else (text,):
        for candidate in _candidates(variant):
            try:
                result = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(result, dict):
                return result

    raise ValueError(f"No valid JSON found in LLM output: {text[:200]}")
