"""
Tests for MemoryDecayEngine
===========================
Decay curves, eligibility, sweeps and access boosts.
"""

import math
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from mnemograph.core.cancellation import CancellationToken
from mnemograph.core.config import DAY_MS, DecayConfig, DecayFunction
from mnemograph.core.decay import (
    MemoryDecayEngine,
    calculate_boosted_score,
    calculate_decay,
    validate_decay_config,
)
from mnemograph.core.exceptions import ConfigError
from mnemograph.core.models import BatchResult, MemoryNode, utc_now


scores = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)
hours = st.floats(min_value=0.0, max_value=24.0 * 365, allow_nan=False)
rates = st.floats(min_value=0.001, max_value=1.0, allow_nan=False)
functions = st.sampled_from(list(DecayFunction))


class TestDecayMath:

    @given(functions, scores, hours, rates)
    @settings(max_examples=200)
    def test_decay_never_increases_and_stays_in_range(self, function, score, elapsed, rate):
        decayed = calculate_decay(function, score, elapsed, rate)
        assert 0.0 <= decayed <= score

    @given(scores, st.floats(min_value=0.01, max_value=10_000, allow_nan=False), rates)
    def test_logarithmic_is_never_faster_than_exponential(self, score, elapsed, rate):
        log = calculate_decay(DecayFunction.LOGARITHMIC, score, elapsed, rate)
        exp = calculate_decay(DecayFunction.EXPONENTIAL, score, elapsed, rate)
        assert log >= exp - 1e-12

    @given(scores, st.floats(min_value=1.0, max_value=3.0), st.integers(min_value=1, max_value=20))
    def test_repeated_boosts_stay_in_range(self, score, factor, repeats):
        for _ in range(repeats):
            score = calculate_boosted_score(score, factor)
            assert 0.0 <= score <= 1.0

    def test_formulas(self):
        assert calculate_decay(DecayFunction.EXPONENTIAL, 1.0, 2.0, 0.1) == pytest.approx(math.exp(-0.2))
        assert calculate_decay(DecayFunction.LINEAR, 1.0, 2.0, 0.1) == pytest.approx(0.8)
        assert calculate_decay(DecayFunction.LINEAR, 0.5, 10.0, 0.1) == 0.0
        assert calculate_decay(DecayFunction.LOGARITHMIC, 1.0, 2.0, 0.1) == pytest.approx(1 / (1 + 0.1 * math.log(3)))

    def test_no_elapsed_time_is_identity(self):
        assert calculate_decay(DecayFunction.EXPONENTIAL, 0.7, 0.0, 0.5) == 0.7

    def test_one_hour_vs_hundred_days(self):
        recent = calculate_decay(DecayFunction.EXPONENTIAL, 1.0, 1.0, 0.1)
        ancient = calculate_decay(DecayFunction.EXPONENTIAL, 1.0, 100 * 24.0, 0.1)
        assert 0.0 < recent < 1.0
        assert recent == pytest.approx(0.9048, abs=1e-4)
        assert ancient == pytest.approx(0.0, abs=1e-9)


class TestConfigValidation:

    @pytest.mark.parametrize("kwargs,message", [
        ({"decay_function": "quadratic"}, "Invalid decay function"),
        ({"decay_rate": 0.0}, "decay_rate must be between 0 and 1"),
        ({"decay_rate": 1.5}, "decay_rate must be between 0 and 1"),
        ({"min_relevance_threshold": -0.1}, "min_relevance_threshold must be between 0 and 1"),
        ({"max_age_ms": 0}, "max_age_ms must be positive"),
    ])
    def test_invalid_values(self, kwargs, message):
        with pytest.raises(ConfigError) as exc_info:
            validate_decay_config(DecayConfig(**kwargs))
        assert exc_info.value.reason == message

    def test_string_function_is_normalised(self):
        config = validate_decay_config(DecayConfig(decay_function="logarithmic"))
        assert config.decay_function is DecayFunction.LOGARITHMIC

    def test_engine_validates_on_construction(self, db):
        with pytest.raises(ConfigError):
            MemoryDecayEngine(db, DecayConfig(decay_rate=2.0))


class TestDecayNode:

    def test_decay_node_uses_decay_factor(self, db):
        engine = MemoryDecayEngine(db)
        now = utc_now()
        slow = MemoryNode(last_accessed=now - timedelta(hours=5), decay_factor=0.5)
        fast = MemoryNode(last_accessed=now - timedelta(hours=5), decay_factor=2.0)
        assert engine.decay_node(slow, now) > engine.decay_node(fast, now)

    def test_below_threshold_is_left_alone(self, db):
        engine = MemoryDecayEngine(db, DecayConfig(min_relevance_threshold=0.2))
        node = MemoryNode(relevance_score=0.15, last_accessed=utc_now() - timedelta(days=3))
        assert engine.decay_node(node) == 0.15

    def test_force_decay_ignores_threshold(self, db):
        engine = MemoryDecayEngine(db, DecayConfig(min_relevance_threshold=0.2, force_decay=True))
        node = MemoryNode(relevance_score=0.15, last_accessed=utc_now() - timedelta(days=3))
        assert engine.decay_node(node) < 0.15

    def test_elapsed_time_is_capped_at_max_age(self, db):
        engine = MemoryDecayEngine(db, DecayConfig(decay_function="linear", decay_rate=0.001, max_age_ms=DAY_MS))
        now = utc_now()
        node = MemoryNode(last_accessed=now - timedelta(days=10))
        assert engine.decay_node(node, now) == pytest.approx(1.0 - 0.024)

    def test_decay_measured_from_last_sweep(self, db):
        engine = MemoryDecayEngine(db)
        now = utc_now()
        node = MemoryNode(last_accessed=now - timedelta(hours=20), decayed_at=now - timedelta(hours=10))
        assert engine.decay_node(node, now) == pytest.approx(math.exp(-1.0))
        assert node.decayed_at == now


class TestApplyDecay:

    def test_sweep_decays_eligible_nodes_only(self, db, make_node):
        old = make_node(age_hours=10)
        fresh = make_node()
        faded = make_node(age_hours=10, relevance_score=0.05)
        ancient = make_node(age_hours=24 * 60)
        pruned = make_node(age_hours=10, is_pruned=True)

        result = MemoryDecayEngine(db).apply_decay()

        assert result.nodes_decayed == 2
        assert result.errors == []
        assert db.get_node(old.id).relevance_score == pytest.approx(math.exp(-1.0), rel=1e-3)
        assert db.get_node(fresh.id).relevance_score == 1.0
        assert db.get_node(faded.id).relevance_score == 0.05
        assert db.get_node(ancient.id).relevance_score < 1e-6
        assert db.get_node(pruned.id).relevance_score == 1.0

    def test_force_decay_includes_old_and_faded_nodes(self, db, make_node):
        ancient = make_node(age_hours=24 * 60)
        faded = make_node(age_hours=10, relevance_score=0.05)
        engine = MemoryDecayEngine(db, DecayConfig(force_decay=True))
        result = engine.apply_decay()
        assert result.nodes_decayed == 2
        assert db.get_node(ancient.id).relevance_score < 1e-6
        assert db.get_node(faded.id).relevance_score < 0.05

    def test_hundred_day_old_node_decays_to_zero(self, db, make_node):
        stale = make_node(age_hours=24 * 100)
        result = MemoryDecayEngine(db).apply_decay()
        assert result.nodes_decayed == 1
        assert db.get_node(stale.id).relevance_score == pytest.approx(0.0, abs=1e-6)

    def test_back_to_back_sweeps_do_not_compound(self, db, make_node):
        node = make_node(age_hours=10)
        engine = MemoryDecayEngine(db)

        first = engine.apply_decay()
        second = engine.apply_decay()

        assert first.nodes_decayed == 1
        assert second.nodes_decayed == 0
        stored = db.get_node(node.id)
        assert stored.relevance_score == pytest.approx(math.exp(-1.0), rel=1e-3)
        assert stored.decayed_at is not None
        assert stored.last_accessed < stored.decayed_at

    def test_later_sweep_charges_only_new_time(self, db, make_node):
        node = make_node(age_hours=10)
        engine = MemoryDecayEngine(db)
        engine.apply_decay()
        # pretend the first sweep ran five hours earlier
        earlier = db.get_node(node.id).decayed_at - timedelta(hours=5)
        db.update_node(node.id, {"decayed_at": earlier})

        engine.apply_decay()

        assert db.get_node(node.id).relevance_score == pytest.approx(math.exp(-1.5), rel=1e-3)

    def test_sweep_spans_multiple_pages_in_one_batch(self, db, make_node):
        for _ in range(20):
            make_node(age_hours=3)
        db.batch_operations = MagicMock(wraps=db.batch_operations)
        result = MemoryDecayEngine(db).apply_decay()
        assert result.nodes_decayed == 20
        assert db.batch_operations.call_count == 1

    def test_no_batch_call_when_nothing_is_eligible(self, db, make_node):
        make_node()
        db.batch_operations = MagicMock()
        result = MemoryDecayEngine(db).apply_decay()
        assert result.nodes_decayed == 0
        db.batch_operations.assert_not_called()

    def test_batch_failure_is_reported_not_raised(self, db, make_node):
        make_node(age_hours=3)
        db.batch_operations = MagicMock(side_effect=RuntimeError("disk full"))
        result = MemoryDecayEngine(db).apply_decay()
        assert result.nodes_decayed == 0
        assert result.errors == ["disk full"]

    def test_partial_batch_errors_are_surfaced(self, db, make_node):
        make_node(age_hours=3)
        db.batch_operations = MagicMock(return_value=BatchResult(affected_nodes=0, errors=["operation 0: x"]))
        result = MemoryDecayEngine(db).apply_decay()
        assert result.errors == ["operation 0: x"]

    def test_cancelled_sweep_persists_nothing(self, db, make_node):
        node = make_node(age_hours=3)
        token = CancellationToken()
        token.cancel()
        result = MemoryDecayEngine(db).apply_decay(token)
        assert result.errors == ["cancelled"]
        assert db.get_node(node.id).relevance_score == 1.0

    def test_disabled_engine_is_noop(self, db, make_node):
        node = make_node(age_hours=3)
        result = MemoryDecayEngine(db, DecayConfig(enabled=False)).apply_decay()
        assert result.nodes_decayed == 0
        assert db.get_node(node.id).relevance_score == 1.0

    def test_history_and_stats(self, db, make_node):
        make_node(age_hours=3)
        make_node(relevance_score=0.05)
        engine = MemoryDecayEngine(db)
        engine.apply_decay()
        engine.apply_decay()
        history = engine.get_decay_history()
        assert len(history) == 2
        assert history[0].started_at >= history[1].started_at
        stats = engine.get_decay_stats()
        assert stats.total_runs == 2
        assert stats.total_nodes == 2
        assert stats.below_threshold == 1
        assert stats.last_run == history[0].started_at


class TestBoosts:

    def test_boost_node_on_access(self, db, make_node):
        node = make_node(relevance_score=0.5, age_hours=5)
        engine = MemoryDecayEngine(db)
        boosted = engine.boost_node_on_access(node.id)
        assert boosted.relevance_score == pytest.approx(0.6)
        assert boosted.access_count == 1
        assert boosted.last_accessed > node.last_accessed

    def test_boost_is_capped(self, db, make_node):
        node = make_node(relevance_score=0.95)
        assert MemoryDecayEngine(db).boost_node_on_access(node.id).relevance_score == 1.0

    def test_boost_missing_node_returns_none(self, db):
        assert MemoryDecayEngine(db).boost_node_on_access("ghost") is None

    def test_boost_swallows_storage_errors(self, db, make_node):
        node = make_node()
        db.update_node = MagicMock(side_effect=RuntimeError("locked"))
        assert MemoryDecayEngine(db).boost_node_on_access(node.id) is None

    def test_boost_edge(self, db, make_node, make_edge):
        a, b = make_node(), make_node()
        edge = make_edge(a.id, b.id, weight=0.5)
        boosted = MemoryDecayEngine(db).boost_edge_on_interaction(edge.id)
        assert boosted.weight == pytest.approx(0.55)


class TestResetDecay:

    def test_reset_all(self, db, make_node):
        a = make_node(relevance_score=0.2, age_hours=50)
        b = make_node(relevance_score=0.4)
        assert MemoryDecayEngine(db).reset_decay() == 2
        assert db.get_node(a.id).relevance_score == 1.0
        assert db.get_node(b.id).relevance_score == 1.0
        assert db.get_node(a.id).age_ms() < DAY_MS

    def test_reset_selected(self, db, make_node):
        a = make_node(relevance_score=0.2)
        b = make_node(relevance_score=0.4)
        assert MemoryDecayEngine(db).reset_decay([a.id]) == 1
        assert db.get_node(b.id).relevance_score == 0.4

    def test_reset_nothing(self, db):
        assert MemoryDecayEngine(db).reset_decay([]) == 0
