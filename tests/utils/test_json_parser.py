"""Tests for JSON extraction from LLM rationale replies."""

import pytest
from jurymatch.utils.json_parser import parse_json_from_llm


class TestParseJsonFromLlm:
    def test_plain_json(self):
        result = parse_json_from_llm('{"rationale": "Leans toward The Heart."}')
        assert result == {"rationale": "Leans toward The Heart."}

    def test_json_in_codeblock(self):
        result = parse_json_from_llm('```json\n{"rationale": "x"}\n```')
        assert result == {"rationale": "x"}

    def test_json_with_preamble(self):
        raw = 'Here is the rewrite:\n{"rationale": "x", "counterfactual": "y"}\nHope this helps.'
        assert parse_json_from_llm(raw) == {"rationale": "x", "counterfactual": "y"}

    def test_smart_quotes_normalised(self):
        raw = "{“rationale”: “x”}"
        assert parse_json_from_llm(raw) == {"rationale": "x"}

    def test_top_level_list_rejected(self):
        with pytest.raises(ValueError):
            parse_json_from_llm('["rationale"]')

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            parse_json_from_llm("not json at all")

    def test_empty_string_raises(self):
        with pytest.raises(ValueError):
            parse_json_from_llm("   ")
