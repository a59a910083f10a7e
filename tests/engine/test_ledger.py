# tests/engine/test_ledger.py
# =============================================================================
# MatchUpdateLedger / LedgerRecorder 测试
# - 显著性阈值与基线 / materiality threshold and baseline
# - promoted 与主要候选 / promotion and primary candidate
# - what_changed 合并引用查询 / merged evidence refs
# - JSON 审计文件 / JSON audit file
# =============================================================================

import json
import stat
from datetime import datetime

import pytest

from jurymatch.engine.ledger import (
    EVIDENCE_REF_SEPARATOR,
    LedgerRecorder,
    MatchUpdateLedger,
    evaluate_update,
)
from jurymatch.engine.repository import InMemoryRepository
from jurymatch.primitives.models import EnsembleMatch, JurorRecord, MatchingConfig

T0 = datetime(2024, 5, 1, 9, 0, 0)


def _match(persona_id, probability, rank=0, confidence=0.5):
    return EnsembleMatch(
        juror_id="j1",
        persona_id=persona_id,
        persona_name=persona_id.title(),
        archetype="",
        probability=probability,
        confidence=confidence,
        method_scores={},
        rank=rank,
    )


@pytest.fixture
def repo(catalog):
    repository = InMemoryRepository(catalog)
    repository.add_juror(JurorRecord(juror_id="j1"))
    return repository


class TestEvaluateUpdate:

    def test_baseline_is_zero_without_history(self):
        record = evaluate_update("j1", "p", "full_match", None, 0.25, 0.5, T0, MatchingConfig())
        assert record.previous_probability is None
        assert record.delta == pytest.approx(0.25)
        assert record.promoted is False

    def test_change_at_threshold_not_recorded(self):
        config = MatchingConfig(materiality_threshold=0.05)
        assert evaluate_update("j1", "p", "r", 0.40, 0.44, 0.5, T0, config) is None
        assert evaluate_update("j1", "p", "r", 0.40, 0.46, 0.5, T0, config) is not None

    def test_negative_delta_recorded(self):
        record = evaluate_update("j1", "p", "r", 0.6, 0.2, 0.5, T0, MatchingConfig())
        assert record.delta == pytest.approx(-0.4)

    def test_promoted_above_confirmation_threshold(self):
        record = evaluate_update("j1", "p", "r", 0.2, 0.31, 0.5, T0, MatchingConfig())
        assert record.promoted is True

    def test_zero_confidence_never_promoted(self):
        record = evaluate_update("j1", "p", "full_match", None, 0.5, 0.0, T0, MatchingConfig())
        assert record is not None
        assert record.delta == pytest.approx(0.5)
        assert record.promoted is False


class TestMatchUpdateLedger:

    def test_first_run_records_and_promotes_top(self, repo):
        ledger = MatchUpdateLedger(repo)
        matches = [_match("crusader", 0.7, 1), _match("heart", 0.5, 2), _match("captain", 0.005, 3)]
        records = ledger.record("j1", matches, "full_match", at=T0)
        assert [r.persona_id for r in records] == ["crusader", "heart"]
        assert repo.get_primary_candidate("j1") == "crusader"

    def test_second_run_compares_to_last_recorded(self, repo):
        ledger = MatchUpdateLedger(repo)
        ledger.record("j1", [_match("crusader", 0.70)], "full_match", at=T0)
        records = ledger.record("j1", [_match("crusader", 0.705)], "voir_dire:r1", at=T0)
        assert records == []
        records = ledger.record("j1", [_match("crusader", 0.60)], "voir_dire:r2", at=T0)
        assert records[0].previous_probability == pytest.approx(0.70)
        assert records[0].delta == pytest.approx(-0.10)

    def test_primary_only_from_promoted_in_this_run(self, repo):
        ledger = MatchUpdateLedger(repo)
        ledger.record("j1", [_match("heart", 0.25)], "full_match", at=T0)
        assert repo.get_primary_candidate("j1") is None
        ledger.record("j1", [_match("captain", 0.6), _match("heart", 0.45)], "voir_dire:r1", at=T0)
        assert repo.get_primary_candidate("j1") == "captain"

    def test_neutral_run_sets_no_primary(self, repo):
        ledger = MatchUpdateLedger(repo)
        matches = [_match(p, 0.5, i + 1, confidence=0.0) for i, p in enumerate(["bootstrapper", "captain"])]
        records = ledger.record("j1", matches, "full_match", at=T0)
        assert len(records) == 2
        assert not any(r.promoted for r in records)
        assert repo.get_primary_candidate("j1") is None

    def test_what_changed_sorted_and_merged_refs(self, repo):
        ledger = MatchUpdateLedger(repo)
        merged = EVIDENCE_REF_SEPARATOR.join(["voir_dire:r1", "voir_dire:r2"])
        ledger.record("j1", [_match("crusader", 0.2), _match("heart", 0.6)], merged, at=T0)
        ledger.record("j1", [_match("crusader", 0.4)], "voir_dire:r3", at=T0)

        changed = ledger.what_changed("j1", "voir_dire:r2")
        assert [r.persona_id for r in changed] == ["heart", "crusader"]
        assert ledger.what_changed("j1", "voir_dire:r3")[0].delta == pytest.approx(0.2)
        assert ledger.what_changed("j1", "voir_dire") == []

    def test_history_filters_by_persona(self, repo):
        ledger = MatchUpdateLedger(repo)
        ledger.record("j1", [_match("crusader", 0.2), _match("heart", 0.6)], "a", at=T0)
        ledger.record("j1", [_match("crusader", 0.5)], "b", at=T0)
        assert len(ledger.history("j1")) == 3
        assert [r.evidence_ref for r in ledger.history("j1", "crusader")] == ["a", "b"]
        assert ledger.latest("j1") == {"crusader": 0.5, "heart": 0.6}

    def test_recorder_receives_records(self, repo, tmp_path):
        recorder = LedgerRecorder(tmp_path / "ledger.json")
        ledger = MatchUpdateLedger(repo, recorder=recorder)
        ledger.record("j1", [_match("crusader", 0.7)], "full_match", at=T0)
        assert recorder.data["meta"]["record_count"] == 1


class TestLedgerRecorder:

    def test_file_is_valid_json_after_each_write(self, tmp_path):
        path = tmp_path / "out" / "ledger.json"
        recorder = LedgerRecorder(path)
        assert json.loads(path.read_text(encoding="utf-8"))["records"] == []

        recorder.record_run("j1", "full_match", [_match("crusader", 0.7, rank=1)])
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["runs"][0]["top"][0]["persona_id"] == "crusader"
        assert data["runs"][0]["incremental"] is False
        assert not path.with_suffix(".json.tmp").exists()

    def test_file_permissions(self, tmp_path):
        path = tmp_path / "ledger.json"
        LedgerRecorder(path)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_write_failure_does_not_raise(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x", encoding="utf-8")
        recorder = LedgerRecorder(blocker / "ledger.json")
        recorder.record_run("j1", "full_match", [])
        assert recorder.data["runs"][0]["juror_id"] == "j1"
