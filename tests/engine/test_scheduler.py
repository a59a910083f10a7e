# tests/engine/test_scheduler.py
# =============================================================================
# RematchQueue 测试 / RematchQueue tests
# - 过期任务取消并合并证据引用 / stale task cancelled, refs merged
# - 证据在取消后仍被保留 / evidence survives cancellation
# - drain / close 行为
# =============================================================================

from datetime import datetime

import pytest

from jurymatch.engine.matcher import EnsembleMatcher
from jurymatch.engine.repository import InMemoryRepository
from jurymatch.engine.scheduler import RematchQueue
from jurymatch.primitives.errors import JUROR_NOT_FOUND, MatchInputError
from jurymatch.primitives.models import JurorRecord, MatchingConfig, VoirDireResponse

AT = datetime(2024, 5, 1, 9, 0, 0)

SERVED = VoirDireResponse("r1", "Have you ever served on a jury?", yes_no=True)
FEELINGS = VoirDireResponse("r2", "How do you feel about the plaintiff?", "My heart goes out to her.")


@pytest.fixture
def setup(catalog):
    repo = InMemoryRepository(catalog)
    repo.add_juror(JurorRecord(juror_id="j1"))
    repo.add_juror(JurorRecord(juror_id="j2"))
    events = []
    matcher = EnsembleMatcher(
        repo, config=MatchingConfig(enrich_rationale=False), on_progress=events.append,
    )
    return matcher, repo, events


class TestRematchQueue:

    @pytest.mark.asyncio
    async def test_newer_evidence_cancels_stale_task(self, setup):
        matcher, repo, events = setup
        await matcher.match_juror("j1", at=AT)
        queue = RematchQueue(matcher)

        stale = queue.submit("j1", SERVED, observed_at=AT)
        fresh = queue.submit("j1", FEELINGS, observed_at=AT)
        results = await queue.drain()

        assert stale.cancelled()
        assert fresh.done() and not fresh.cancelled()
        assert results["j1"] == fresh.result()

        # 被取消任务的证据已持久化并计入新一次重算
        assert {f.signal_id for f in repo.get_juror_facts("j1")} == {"SERVED_ON_JURY", "EMPATHY"}
        assert set(matcher.state_for("j1").fact_keys) == {"SERVED_ON_JURY", "EMPATHY"}

        cancelled = [e for e in events if e.type == "cancelled"]
        assert len(cancelled) == 1
        assert cancelled[0].detail["superseded"] == ["voir_dire:r1"]
        assert cancelled[0].detail["evidence_ref"] == "voir_dire:r1+voir_dire:r2"

    @pytest.mark.asyncio
    async def test_ledger_traceable_to_superseded_evidence(self, setup):
        matcher, _, _ = setup
        await matcher.match_juror("j1", at=AT)
        queue = RematchQueue(matcher)
        queue.submit("j1", SERVED, observed_at=AT)
        queue.submit("j1", FEELINGS, observed_at=AT)
        await queue.drain()

        changed = matcher.ledger.what_changed("j1", "voir_dire:r1")
        assert changed
        assert {r.evidence_ref for r in changed} == {"voir_dire:r1+voir_dire:r2"}
        assert matcher.ledger.what_changed("j1", "voir_dire:r2") == changed

    @pytest.mark.asyncio
    async def test_jurors_independent(self, setup):
        matcher, _, _ = setup
        queue = RematchQueue(matcher)
        first = queue.submit("j1", SERVED, observed_at=AT)
        second = queue.submit("j2", FEELINGS, observed_at=AT)
        assert set(queue.in_flight) == {"j1", "j2"}
        results = await queue.drain()
        assert not first.cancelled() and not second.cancelled()
        assert set(results) == {"j1", "j2"}
        assert queue.in_flight == {}

    @pytest.mark.asyncio
    async def test_unknown_juror_raises_synchronously(self, setup):
        matcher, _, _ = setup
        queue = RematchQueue(matcher)
        with pytest.raises(MatchInputError) as exc_info:
            queue.submit("ghost", SERVED)
        assert exc_info.value.code == JUROR_NOT_FOUND
        assert queue.in_flight == {}

    @pytest.mark.asyncio
    async def test_drain_empty(self, setup):
        matcher, _, _ = setup
        assert await RematchQueue(matcher).drain() == {}

    @pytest.mark.asyncio
    async def test_close_cancels_and_rejects(self, setup):
        matcher, repo, _ = setup
        queue = RematchQueue(matcher)
        task = queue.submit("j1", SERVED, observed_at=AT)
        await queue.close()
        assert task.cancelled()
        # 证据在 submit 时已写入
        assert repo.get_juror_facts("j1")
        with pytest.raises(RuntimeError):
            queue.submit("j1", FEELINGS)
