# tests/matching/test_bayesian.py
# =============================================================================
# BayesianUpdater 单元测试 / BayesianUpdater unit tests
# - 后验归一化、先验初始化 / normalization and priors
# - 到达顺序无关、同信号取代 / order independence and supersession
# - 未知信号跳过 / unknown signals skipped
# =============================================================================

import logging
import math
from datetime import datetime, timedelta

import pytest

from jurymatch.catalog.manager import PersonaCatalog
from jurymatch.matching.bayesian import BayesianUpdater, BeliefState
from jurymatch.primitives.models import METHOD_BAYESIAN, JurorSignalFact, SignalValue

T0 = datetime(2024, 5, 1, 9, 0, 0)


def _fact(signal_id, value, value_type="boolean", confidence=0.9, ref=None, at=T0):
    return JurorSignalFact(
        juror_id="j1",
        signal_id=signal_id,
        value=SignalValue.coerce(value_type, value),
        confidence=confidence,
        source="voir_dire",
        source_ref=ref or f"voir_dire:{signal_id.lower()}",
        extracted_at=at,
    )


class TestBeliefState:

    def test_uniform_start(self):
        state = BeliefState({"a": 1.0, "b": 1.0, "c": 1.0, "d": 1.0})
        assert state.posterior == pytest.approx({"a": 0.25, "b": 0.25, "c": 0.25, "d": 0.25})
        assert state.confidence() == 0.0
        assert state.entropy() == pytest.approx(math.log(4))

    def test_priors_normalized(self):
        state = BeliefState({"a": 3.0, "b": 1.0})
        assert state.posterior["a"] == pytest.approx(0.75)
        # 先验不算作证据
        assert state.confidence() == 0.0

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            BeliefState({})

    def test_copy_is_independent(self, catalog):
        updater = BayesianUpdater(catalog)
        state = updater.new_state()
        clone = state.copy()
        updater.apply(clone, _fact("EMPATHY", True))
        assert state.posterior != clone.posterior
        assert state.evidence_count == 0


class TestBayesianUpdater:

    def test_posterior_sums_to_one(self, catalog):
        updater = BayesianUpdater(catalog)
        state = updater.new_state()
        updater.apply(state, _fact("DISTRUSTS_CORPORATIONS", True))
        updater.apply(state, _fact("AGE", 58, value_type="numeric"))
        assert sum(state.posterior.values()) == pytest.approx(1.0)
        assert 0.0 < state.confidence() <= 1.0

    def test_direction_follows_weight_sign(self, catalog):
        updater = BayesianUpdater(catalog)
        state = updater.new_state()
        updater.apply(state, _fact("DISTRUSTS_CORPORATIONS", True))
        posterior = state.posterior
        assert posterior["crusader"] > 0.25 > posterior["bootstrapper"]
        # 未加权画像只随归一化变化，彼此保持相等
        assert posterior["captain"] == pytest.approx(posterior["heart"])

    def test_order_independent(self, catalog):
        updater = BayesianUpdater(catalog)
        a = _fact("DISTRUSTS_CORPORATIONS", True)
        b = _fact("EMPATHY", True, confidence=0.7)

        first = updater.new_state()
        updater.apply(first, a)
        updater.apply(first, b)

        second = updater.new_state()
        updater.apply(second, b)
        updater.apply(second, a)

        assert first.posterior == pytest.approx(second.posterior)

    def test_same_fact_twice_is_noop(self, catalog):
        updater = BayesianUpdater(catalog)
        state = updater.new_state()
        fact = _fact("EMPATHY", True)
        assert updater.apply(state, fact) is True
        before = state.posterior
        assert updater.apply(state, fact) is False
        assert state.posterior == before

    def test_newer_fact_supersedes(self, catalog):
        updater = BayesianUpdater(catalog)
        state = updater.new_state()
        updater.apply(state, _fact("EMPATHY", True))
        updater.apply(state, _fact("EMPATHY", False, ref="voir_dire:r2", at=T0 + timedelta(minutes=1)))

        expected = updater.new_state()
        updater.apply(expected, _fact("EMPATHY", False, ref="voir_dire:r2"))
        assert state.posterior == pytest.approx(expected.posterior)
        assert list(state.applied) == ["EMPATHY"]

    def test_replay_matches_incremental(self, catalog):
        updater = BayesianUpdater(catalog)
        facts = [
            _fact("SERVED_ON_JURY", True),
            _fact("AGE", 52, value_type="numeric"),
            _fact("EMPATHY", True, confidence=0.6),
        ]
        incremental = updater.new_state()
        for fact in reversed(facts):
            updater.apply(incremental, fact)
        assert updater.replay(facts).posterior == pytest.approx(incremental.posterior)

    def test_unknown_signal_skipped(self, catalog, caplog):
        updater = BayesianUpdater(catalog)
        state = updater.new_state()
        with caplog.at_level(logging.WARNING):
            changed = updater.apply(state, _fact("NOT_IN_CATALOG", True))
        assert changed is False
        assert "NOT_IN_CATALOG" in caplog.text
        assert state.evidence_count == 0

    def test_type_mismatch_skipped(self, catalog):
        updater = BayesianUpdater(catalog)
        assert updater.evidence_for(_fact("AGE", True)) is None

    def test_unusable_latest_fact_retracts_previous_evidence(self, catalog):
        updater = BayesianUpdater(catalog)
        usable = _fact("DISTRUSTS_CORPORATIONS", True)
        unusable = JurorSignalFact(
            juror_id="j1", signal_id="DISTRUSTS_CORPORATIONS", value=SignalValue.text("unsure"),
            confidence=0.9, source="manual", source_ref="manual:1",
            extracted_at=T0 + timedelta(minutes=1),
        )
        state = updater.new_state()
        updater.apply(state, usable)
        assert updater.apply(state, unusable) is True
        assert state.evidence_count == 0
        assert state.posterior == pytest.approx(updater.replay([usable, unusable]).posterior)
        # 无可撤回证据时不变
        assert updater.apply(state, unusable) is False

    def test_log_ratio_formula(self, catalog):
        updater = BayesianUpdater(catalog, strength=2.0)
        evidence = updater.evidence_for(_fact("DISTRUSTS_CORPORATIONS", True, confidence=0.5))
        assert evidence.log_ratios == pytest.approx({
            "bootstrapper": 2.0 * -0.8 * 0.5,
            "crusader": 2.0 * 0.8 * 0.5,
        })

    def test_population_priors_used(self):
        catalog = PersonaCatalog.from_dict({
            "signals": [{"id": "S", "value_type": "boolean"}],
            "personas": [
                {"id": "common", "prior": 3.0, "weights": {"S": 0.5}},
                {"id": "rare", "prior": 1.0, "weights": {"S": 0.5}},
            ],
        })
        state = BayesianUpdater(catalog).new_state()
        assert state.posterior["common"] == pytest.approx(0.75)

    def test_scores_carry_confidence(self, catalog):
        updater = BayesianUpdater(catalog)
        state = updater.replay([_fact("SERVED_ON_JURY", True)])
        scores = BayesianUpdater.scores(state)
        assert set(scores) == set(catalog.persona_ids)
        assert all(s.method == METHOD_BAYESIAN for s in scores.values())
        assert scores["captain"].score == pytest.approx(state.posterior["captain"])
        assert scores["captain"].confidence == pytest.approx(state.confidence())
