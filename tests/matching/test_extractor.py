# tests/matching/test_extractor.py
# =============================================================================
# EvidenceExtractor 单元测试 / EvidenceExtractor unit tests
# - 问卷字段映射 / questionnaire field mapping
# - 调研文本与预审回答的模式匹配 / pattern matching on free text
# - 是/否直接观测 / direct yes/no observation
# - 无法编译的模式被跳过 / malformed patterns skipped
# =============================================================================

import logging
from datetime import datetime

import pytest

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.matching.extractor import (
    CONFIDENCE_EXACT,
    CONFIDENCE_PATTERN,
    CONFIDENCE_TEXT_FIELD,
    CONFIDENCE_YES_NO,
    EvidenceExtractor,
)
from jurymatch.primitives.errors import INVALID_EVENT, MatchInputError
from jurymatch.primitives.models import (
    JurorRecord,
    QuestionnaireSubmission,
    ResearchArtifact,
    VoirDireResponse,
)

NOW = datetime(2024, 5, 1, 10, 0, 0)


def _by_signal(facts):
    return {f.signal_id: f for f in facts}


class TestQuestionnaire:

    def test_type_specific_mapping(self, catalog):
        extractor = EvidenceExtractor(catalog)
        facts = _by_signal(extractor.extract_questionnaire("j1", {
            "age": "42",
            "education": "Bachelors",
            "occupation": "nurse",
            "prior_jury_service": "yes",
            "favourite_color": "blue",
        }, NOW))

        assert sorted(facts) == ["AGE", "EDUCATION", "OCCUPATION", "SERVED_ON_JURY"]
        assert facts["AGE"].value.raw == 42.0
        assert facts["AGE"].confidence == CONFIDENCE_EXACT
        assert facts["EDUCATION"].value.raw == "bachelors"
        assert facts["OCCUPATION"].value.raw == "nurse"
        assert facts["OCCUPATION"].confidence == CONFIDENCE_TEXT_FIELD
        assert facts["SERVED_ON_JURY"].value.raw is True
        assert facts["AGE"].source == "questionnaire"
        assert facts["AGE"].source_ref == "questionnaire:age"
        assert facts["AGE"].extracted_at == NOW

    def test_unlisted_category_yields_nothing(self, catalog):
        extractor = EvidenceExtractor(catalog)
        assert extractor.extract_questionnaire("j1", {"education": "trade school"}, NOW) == []

    def test_blank_and_unparseable_values_skipped(self, catalog):
        extractor = EvidenceExtractor(catalog)
        facts = extractor.extract_questionnaire(
            "j1", {"age": "forty", "occupation": "  ", "education": None}, NOW,
        )
        assert facts == []

    def test_free_text_boolean_field_uses_patterns(self):
        catalog = PersonaCatalog.from_dict({
            "signals": [{
                "id": "HEALTHCARE",
                "value_type": "boolean",
                "source_field": "occupation",
                "patterns": [r"\b(nurse|doctor)\b"],
            }],
            "personas": [{"id": "p", "weights": {"HEALTHCARE": 0.5}}],
        })
        extractor = EvidenceExtractor(catalog)
        hit = extractor.extract_questionnaire("j1", {"occupation": "ER nurse"}, NOW)
        miss = extractor.extract_questionnaire("j1", {"occupation": "plumber"}, NOW)
        assert hit[0].value.raw is True
        assert miss[0].value.raw is False


class TestFreeText:

    def test_research_pattern_hit(self, catalog):
        extractor = EvidenceExtractor(catalog)
        artifact = ResearchArtifact(
            artifact_id="fb-1", text="Posted that corporations are greedy and lie.",
        )
        facts = extractor.extract_research("j1", artifact, NOW)
        assert len(facts) == 1
        fact = facts[0]
        assert fact.signal_id == "DISTRUSTS_CORPORATIONS"
        assert fact.value.raw is True
        assert fact.confidence == CONFIDENCE_PATTERN
        assert fact.source == "research"
        assert fact.source_ref == "research:fb-1"

    def test_case_insensitive(self, catalog):
        extractor = EvidenceExtractor(catalog)
        response = VoirDireResponse(
            response_id="r1", question="How do you feel?", answer="My HEART GOES OUT to them.",
        )
        facts = extractor.extract_voir_dire("j1", response, NOW)
        assert [f.signal_id for f in facts] == ["EMPATHY"]
        assert facts[0].source_ref == "voir_dire:r1"

    def test_numeric_signals_not_read_from_text(self, catalog):
        extractor = EvidenceExtractor(catalog)
        artifact = ResearchArtifact(artifact_id="a", text="She is 35 years old.")
        assert extractor.extract_research("j1", artifact, NOW) == []

    def test_empty_text(self, catalog):
        extractor = EvidenceExtractor(catalog)
        assert extractor.extract_research("j1", ResearchArtifact("a", ""), NOW) == []


class TestVoirDireDirectObservation:

    def test_yes_no_on_matching_question(self, catalog):
        extractor = EvidenceExtractor(catalog)
        response = VoirDireResponse(
            response_id="q7", question="Have you ever served on a jury?", yes_no=False,
        )
        facts = extractor.extract_voir_dire("j1", response, NOW)
        assert len(facts) == 1
        assert facts[0].signal_id == "SERVED_ON_JURY"
        assert facts[0].value.raw is False
        assert facts[0].confidence == CONFIDENCE_YES_NO

    def test_direct_observation_bypasses_answer_patterns(self, catalog):
        extractor = EvidenceExtractor(catalog)
        response = VoirDireResponse(
            response_id="q7",
            question="Have you ever served on a jury?",
            answer="No, but my wife served on a jury once.",
            yes_no=False,
        )
        facts = extractor.extract_voir_dire("j1", response, NOW)
        assert len(facts) == 1
        assert facts[0].value.raw is False

    def test_other_signals_still_matched_in_answer(self, catalog):
        extractor = EvidenceExtractor(catalog)
        response = VoirDireResponse(
            response_id="q8",
            question="Have you ever served on a jury?",
            answer="Yes. Honestly I distrust big corporations.",
            yes_no=True,
        )
        facts = _by_signal(extractor.extract_voir_dire("j1", response, NOW))
        assert facts["SERVED_ON_JURY"].value.raw is True
        assert facts["DISTRUSTS_CORPORATIONS"].confidence == CONFIDENCE_PATTERN

    def test_yes_no_without_matching_question(self, catalog):
        extractor = EvidenceExtractor(catalog)
        response = VoirDireResponse(response_id="q9", question="Can you be fair?", yes_no=True)
        assert extractor.extract_voir_dire("j1", response, NOW) == []


class TestExtractorContract:

    def test_deterministic(self, catalog):
        extractor = EvidenceExtractor(catalog)
        record = JurorRecord(
            juror_id="j1",
            questionnaire={"age": 61, "prior_jury_service": "no"},
            research=[ResearchArtifact("a1", "says corporations are greedy")],
            voir_dire=[VoirDireResponse("r1", "Feelings?", "my heart goes out to her")],
        )
        first = extractor.extract_record(record, NOW)
        second = EvidenceExtractor(catalog).extract_record(record, NOW)
        assert first == second
        assert {f.signal_id for f in first} == {
            "AGE", "SERVED_ON_JURY", "DISTRUSTS_CORPORATIONS", "EMPATHY",
        }

    def test_malformed_pattern_skipped(self, caplog):
        catalog = PersonaCatalog.from_dict({
            "signals": [
                {"id": "BROKEN", "value_type": "boolean", "patterns": ["([unclosed"]},
                {"id": "OK", "value_type": "boolean", "patterns": [r"\bfine\b"]},
            ],
            "personas": [{"id": "p", "weights": {"BROKEN": 0.5, "OK": 0.5}}],
        })
        with caplog.at_level(logging.WARNING):
            extractor = EvidenceExtractor(catalog)
        assert "BROKEN" in caplog.text
        facts = extractor.extract_research("j1", ResearchArtifact("a", "all fine ([unclosed"), NOW)
        assert [f.signal_id for f in facts] == ["OK"]

    def test_event_dispatch(self, catalog):
        extractor = EvidenceExtractor(catalog)
        facts = extractor.extract_event(
            "j1", QuestionnaireSubmission("sub-1", {"age": "30"}), NOW,
        )
        assert facts[0].signal_id == "AGE"

    def test_unsupported_event(self, catalog):
        extractor = EvidenceExtractor(catalog)
        with pytest.raises(MatchInputError) as exc_info:
            extractor.extract_event("j1", {"text": "raw dict"}, NOW)
        assert exc_info.value.code == INVALID_EVENT
