"""
Tests for batch.py - full population matching and aggregate statistics.
"""

import threading

import pytest

from organmatch.batch import (
    AggregateStatistic,
    BatchMatchingEngine,
    StatisticsBoard,
    ai_match_rate,
    get_statistics,
)
from organmatch.orchestrator import MatchOrchestrator


@pytest.fixture
def board():
    return StatisticsBoard()


@pytest.fixture
def engine(registry, board, sink, clock):
    return BatchMatchingEngine(registry, board=board, sink=sink, clock=clock)


@pytest.fixture
def ranked_population(make_donor, make_recipient):
    """One donor and recipients whose scores and tie-breaks give a known order."""
    make_donor()
    return {
        "r96": make_recipient(urgency_level=8, waited_days=120),
        "r98_u9_newer": make_recipient(urgency_level=9, waited_days=110),
        "r98_u10": make_recipient(urgency_level=10, waited_days=90),
        "r100": make_recipient(urgency_level=10, waited_days=120),
        "r98_u9_older": make_recipient(urgency_level=9, waited_days=130),
        "r62": make_recipient(urgency_level=1, waited_days=0),
    }


class TestRunBatch:
    """Test a full batch pass."""

    def test_orders_by_score_then_urgency_then_waiting(self, engine, ranked_population):
        result = engine.run_batch()

        expected = ["r100", "r98_u10", "r98_u9_older", "r98_u9_newer", "r96", "r62"]
        assert [m.recipient_id for m in result.matches] == [ranked_population[k].id for k in expected]
        assert [m.compatibility_score for m in result.matches] == [100, 98, 98, 98, 96, 62]
        assert result.matches_found == 6

    def test_excludes_below_threshold_and_incompatible(self, engine, make_donor, make_recipient):
        make_donor()
        make_recipient(age=55, urgency_level=1, location="Chicago", waited_days=0)
        make_recipient(organ_needed="liver")
        make_donor(blood_type="AB+", organ_type="liver")
        make_recipient(blood_type="O-", organ_needed="liver")

        result = engine.run_batch()

        assert result.matches_found == 1
        assert result.candidates == 1

    def test_second_run_creates_nothing(self, engine, registry, ranked_population):
        engine.run_batch()
        again = engine.run_batch()

        assert again.matches_found == 0
        assert again.matches == []
        assert registry.count_matches() == 6

    def test_respects_existing_orchestrator_matches(self, engine, registry, sink, clock, make_donor, make_recipient):
        make_recipient()
        donor = make_donor()
        MatchOrchestrator(registry, sink=sink, clock=clock).on_donor_registered(donor)
        make_recipient()

        result = engine.run_batch()

        assert result.matches_found == 1
        assert registry.count_matches() == 2

    def test_only_active_donors_and_waiting_recipients(self, engine, make_donor, make_recipient):
        make_donor(status="matched")
        make_donor(is_active=False)
        make_recipient()

        assert engine.run_batch().matches_found == 0

    def test_emits_event_per_created_match(self, engine, sink, ranked_population):
        engine.run_batch()
        assert sink.types() == ["ai_match_found"] * 6

    def test_concurrent_runs_do_not_duplicate(self, db_path, board, clock, make_donor, make_recipient):
        from organmatch.database import get_session
        from organmatch.storage import SqlRegistry

        make_donor()
        for _ in range(3):
            make_recipient()

        results = []

        def run():
            session = get_session(db_path)
            engine = BatchMatchingEngine(SqlRegistry(session), board=board, clock=clock)
            results.append(engine.run_batch().matches_found)
            session.close()

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [0, 3]


class TestStatistics:
    """Test the AI match rate and aggregate snapshot."""

    def test_ai_match_rate(self):
        assert ai_match_rate([100, 98, 98, 98, 96, 62]) == 83.3
        assert ai_match_rate([84, 60]) == 0.0
        assert ai_match_rate([]) == 0.0

    def test_batch_publishes_snapshot(self, engine, board, ranked_population, now):
        result = engine.run_batch()

        snapshot = board.latest()
        assert result.ai_match_rate == 83.3
        assert snapshot.ai_match_rate == 83.3
        assert snapshot.total_donors == 1
        assert snapshot.total_recipients == 6
        assert snapshot.pending_matches == 6
        assert snapshot.completed_matches == 0
        assert snapshot.organ_type_distribution == {"kidney": 1}
        assert snapshot.last_updated == now

    def test_rerun_without_new_matches_keeps_rate(self, engine, board, ranked_population):
        engine.run_batch()
        result = engine.run_batch()

        assert result.matches_found == 0
        assert result.ai_match_rate is None
        assert board.latest().ai_match_rate == 83.3

    def test_no_candidates_keeps_rate(self, engine, board, registry):
        board.publish(AggregateStatistic(ai_match_rate=71.5))

        result = engine.run_batch()

        assert result.ai_match_rate is None
        assert board.latest().ai_match_rate == 71.5

    def test_status_query_builds_snapshot_when_empty(self, registry, board, make_donor):
        make_donor()

        stats = get_statistics(registry, board)

        assert stats.total_donors == 1
        assert board.latest() is stats

    def test_rate_survives_a_new_board(self, engine, registry, ranked_population):
        engine.run_batch()

        assert registry.latest_ai_match_rate() == 83.3
        assert get_statistics(registry, StatisticsBoard()).ai_match_rate == 83.3

    def test_later_process_keeps_stored_rate(self, engine, registry, clock, ranked_population):
        engine.run_batch()

        fresh_board = StatisticsBoard()
        result = BatchMatchingEngine(registry, board=fresh_board, clock=clock).run_batch()

        assert result.ai_match_rate is None
        assert fresh_board.latest().ai_match_rate == 83.3

    def test_malformed_rows_do_not_stop_the_batch(self, engine, make_donor, make_recipient):
        make_donor(age=None)
        make_donor()
        make_recipient()

        assert engine.run_batch().matches_found == 1
