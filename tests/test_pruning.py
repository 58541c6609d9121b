"""
Tests for GraphPruningEngine
============================
Eligibility rules, strategies, size-bounded eviction and orphan cleanup.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from mnemograph.core.cancellation import CancellationToken
from mnemograph.core.config import DAY_MS, ImportancePolicy, PruningConfig, PruningStrategy
from mnemograph.core.exceptions import ConfigError
from mnemograph.core.models import MemoryEdge, MemoryNode, utc_now
from mnemograph.core.pruning import GraphPruningEngine, validate_pruning_config


def _old(**fields) -> MemoryNode:
    return MemoryNode(last_accessed=utc_now() - timedelta(days=30), **fields)


class TestConfigValidation:

    @pytest.mark.parametrize("kwargs", [
        {"strategy": "random"},
        {"strategy": "custom"},
        {"max_nodes": 0},
        {"max_edges": -1},
        {"keep_recent_ms": 0},
        {"min_relevance_threshold": 1.5},
        {"min_edge_weight": -0.1},
        {"importance": ImportancePolicy(threshold=2.0)},
        {"importance": ImportancePolicy(degree_norm=0)},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            validate_pruning_config(PruningConfig(**kwargs))

    def test_invalid_strategy_message(self):
        with pytest.raises(ConfigError) as exc_info:
            validate_pruning_config(PruningConfig(strategy="random"))
        assert exc_info.value.reason == "Invalid pruning strategy"

    def test_strategy_normalised(self):
        assert validate_pruning_config(PruningConfig(strategy="age")).strategy is PruningStrategy.AGE


class TestImportance:

    def test_protected_tag_is_critical(self, db):
        engine = GraphPruningEngine(db)
        node = _old(tags={"pinned"}, relevance_score=0.0)
        assert engine.calculate_importance(node) == 1.0
        assert engine.is_critical(node)

    def test_well_connected_node_is_critical(self, db):
        engine = GraphPruningEngine(db)
        hub = _old(degree=20, centrality=0.9, access_count=40, clustering=0.5)
        assert engine.is_critical(hub)

    def test_isolated_node_is_not_critical(self, db):
        engine = GraphPruningEngine(db)
        assert engine.calculate_importance(_old()) == 0.0

    def test_custom_policy(self, db):
        policy = ImportancePolicy(threshold=0.5, degree_weight=1.0, centrality_weight=0.0,
                                  access_weight=0.0, clustering_weight=0.0, degree_norm=4,
                                  protected_tags=frozenset())
        engine = GraphPruningEngine(db, PruningConfig(importance=policy))
        assert engine.is_critical(_old(degree=2))
        assert not engine.is_critical(_old(degree=1, tags={"pinned"}))


class TestShouldPruneNode:

    def test_pruned_node_never_selected(self, db):
        engine = GraphPruningEngine(db, PruningConfig(force_prune=True))
        assert engine.should_prune_node(_old(relevance_score=0.0, is_pruned=True)) is False

    def test_recent_node_kept_unless_forced(self, db):
        node = MemoryNode(relevance_score=0.0)
        assert GraphPruningEngine(db).should_prune_node(node) is False
        forced = GraphPruningEngine(db, PruningConfig(strategy="relevance", force_prune=True))
        assert forced.should_prune_node(node) is True

    def test_critical_node_kept_even_when_forced(self, db):
        engine = GraphPruningEngine(db, PruningConfig(force_prune=True))
        assert engine.should_prune_node(_old(relevance_score=0.0, tags={"critical"})) is False

    @pytest.mark.parametrize("strategy,relevance,expected", [
        ("relevance", 0.05, True),
        ("relevance", 0.5, False),
        ("age", 0.5, True),
        ("hybrid", 0.05, True),
        ("hybrid", 0.5, False),
        ("size", 0.0, False),
    ])
    def test_strategies(self, db, strategy, relevance, expected):
        engine = GraphPruningEngine(db, PruningConfig(strategy=strategy))
        assert engine.should_prune_node(_old(relevance_score=relevance)) is expected

    def test_custom_strategy(self, db):
        config = PruningConfig(strategy="custom", custom_pruning_function=lambda n: "drop" in n.content)
        engine = GraphPruningEngine(db, config)
        assert engine.should_prune_node(_old(content="drop me"))
        assert not engine.should_prune_node(_old(content="keep me"))


class TestShouldPruneEdge:

    def test_weak_old_edge(self, db):
        engine = GraphPruningEngine(db, PruningConfig(min_edge_weight=0.3))
        stale = utc_now() - timedelta(days=30)
        assert engine.should_prune_edge(MemoryEdge(weight=0.1, updated_at=stale))
        assert not engine.should_prune_edge(MemoryEdge(weight=0.5, updated_at=stale))
        assert not engine.should_prune_edge(MemoryEdge(weight=0.1))

    def test_min_edge_weight_defaults_to_relevance_threshold(self, db):
        engine = GraphPruningEngine(db, PruningConfig(min_relevance_threshold=0.25))
        assert engine.min_edge_weight == 0.25

    def test_force_ignores_age(self, db):
        engine = GraphPruningEngine(db, PruningConfig(force_prune=True))
        assert engine.should_prune_edge(MemoryEdge(weight=0.01))


class TestPruneGraph:

    def test_empty_graph(self, db):
        result = GraphPruningEngine(db).prune_graph()
        assert (result.nodes_pruned, result.edges_pruned, result.edges_orphaned, result.errors) == (0, 0, 0, [])

    def test_hybrid_sweep(self, db, make_node, make_edge):
        stale = make_node(age_hours=24 * 30, relevance_score=0.05)
        stale_but_relevant = make_node(age_hours=24 * 30, relevance_score=0.8)
        recent_faded = make_node(relevance_score=0.05)
        make_edge(stale.id, stale_but_relevant.id, weight=0.9)

        result = GraphPruningEngine(db).prune_graph()

        assert result.nodes_pruned == 1
        assert result.edges_orphaned == 1
        assert db.get_node(stale.id) is None
        assert db.get_node(stale_but_relevant.id) is not None
        assert db.get_node(recent_faded.id) is not None
        assert db.query_edges().total == 0

    def test_weak_stale_edges_are_pruned(self, db, make_node, make_edge):
        a, b = make_node(), make_node()
        weak = make_edge(a.id, b.id, weight=0.05)
        strong = make_edge(b.id, a.id, weight=0.9)
        db.update_edge(weak.id, {"updated_at": utc_now() - timedelta(days=30)})
        result = GraphPruningEngine(db).prune_graph()
        assert result.edges_pruned == 1
        assert db.get_edge(weak.id) is None
        assert db.get_edge(strong.id) is not None

    def test_size_strategy_keeps_best_nodes(self, db):
        now = utc_now()
        nodes = [
            db.create_node({
                "content": f"n{i}",
                "relevance_score": (i % 20) / 20.0,
                "last_accessed": now - timedelta(minutes=i),
            })
            for i in range(100)
        ]
        engine = GraphPruningEngine(db, PruningConfig(strategy="size", max_nodes=5))
        result = engine.prune_graph()

        assert result.nodes_pruned == 95
        remaining = db.query_nodes().results
        assert len(remaining) == 5
        # relevance 0.95 is held by i = 19, 39, 59, 79, 99; the most recently accessed win
        expected = sorted(
            nodes,
            key=lambda n: (-n.relevance_score, -n.last_accessed.timestamp(), n.id),
        )[:5]
        assert {n.id for n in remaining} == {n.id for n in expected}

    def test_size_strategy_breaks_full_ties_by_id(self, db):
        stamp = utc_now() - timedelta(hours=1)
        ids = [db.create_node({"id": f"node-{i:02d}", "relevance_score": 0.5, "last_accessed": stamp}).id
               for i in range(6)]
        GraphPruningEngine(db, PruningConfig(strategy="size", max_nodes=4)).prune_graph()
        assert sorted(n.id for n in db.query_nodes().results) == ids[:4]

    def test_size_strategy_spares_critical_nodes(self, db, make_node):
        for _ in range(4):
            make_node(tags={"pinned"}, relevance_score=0.0)
        make_node(relevance_score=0.9)
        result = GraphPruningEngine(db, PruningConfig(strategy="size", max_nodes=2)).prune_graph()
        assert result.nodes_pruned == 1
        assert db.query_nodes().total == 4

    def test_size_strategy_caps_edges(self, db, make_node, make_edge):
        a, b = make_node(), make_node()
        weights = [0.1, 0.9, 0.5, 0.7]
        edges = [make_edge(a.id, b.id, weight=w) for w in weights]
        result = GraphPruningEngine(db, PruningConfig(strategy="size", max_nodes=10, max_edges=2)).prune_graph()
        assert result.edges_pruned == 2
        kept = {e.id for e in db.query_edges().results}
        assert kept == {edges[1].id, edges[3].id}

    def test_failing_custom_predicate_skips_node(self, db, make_node):
        make_node(age_hours=24 * 30, content="boom")
        victim = make_node(age_hours=24 * 30, content="drop")

        def predicate(node):
            if node.content == "boom":
                raise ValueError("bad predicate")
            return True

        engine = GraphPruningEngine(db, PruningConfig(strategy="custom", custom_pruning_function=predicate))
        result = engine.prune_graph()
        assert result.nodes_pruned == 1
        assert len(result.errors) == 1
        assert db.get_node(victim.id) is None

    def test_storage_failure_reports_zero_progress(self, db, make_node):
        make_node(age_hours=24 * 30, relevance_score=0.01)
        db.batch_operations = MagicMock(side_effect=RuntimeError("disk I/O error"))
        result = GraphPruningEngine(db).prune_graph()
        assert (result.nodes_pruned, result.edges_pruned, result.edges_orphaned) == (0, 0, 0)
        assert result.errors == ["disk I/O error"]

    def test_cancelled_sweep(self, db, make_node):
        node = make_node(age_hours=24 * 30, relevance_score=0.01)
        token = CancellationToken()
        token.cancel()
        result = GraphPruningEngine(db).prune_graph(token)
        assert result.errors == ["cancelled"]
        assert db.get_node(node.id) is not None

    def test_cancellation_during_deletes_is_reported_once(self, db, make_node):
        for _ in range(3):
            make_node(age_hours=24 * 30, relevance_score=0.01)
        token = CancellationToken()
        real_batch = db.batch_operations

        def cancel_then_batch(ops, token=None):
            token.cancel()
            return real_batch(ops, token=token)

        db.batch_operations = MagicMock(side_effect=cancel_then_batch)
        result = GraphPruningEngine(db).prune_graph(token)

        assert result.errors.count("cancelled") == 1
        assert result.nodes_pruned == 0
        assert db.query_nodes().total == 3

    def test_disabled(self, db, make_node):
        make_node(age_hours=24 * 30, relevance_score=0.01)
        result = GraphPruningEngine(db, PruningConfig(enabled=False)).prune_graph()
        assert result.nodes_pruned == 0
        assert db.query_nodes().total == 1


class TestOrphansAndManualOps:

    def test_cleanup_orphaned_edges_in_chunks(self, db, make_node, make_edge):
        hub = make_node()
        leaves = [make_node() for _ in range(25)]
        for leaf in leaves:
            make_edge(hub.id, leaf.id)
        survivor_a, survivor_b = make_node(), make_node()
        survivor = make_edge(survivor_a.id, survivor_b.id)
        db.delete_node(hub.id)

        removed = GraphPruningEngine(db).cleanup_orphaned_edges()

        assert removed == 25
        assert [e.id for e in db.query_edges().results] == [survivor.id]

    def test_force_prune_node_leaves_orphans_for_cleanup(self, db, make_node, make_edge):
        a, b = make_node(tags={"critical"}), make_node()
        make_edge(a.id, b.id)
        engine = GraphPruningEngine(db)
        assert engine.force_prune_node(a.id) is True
        assert db.query_edges().total == 1
        assert engine.cleanup_orphaned_edges() == 1

    def test_force_prune_missing(self, db):
        engine = GraphPruningEngine(db)
        assert engine.force_prune_node("ghost") is False
        assert engine.force_prune_edge("ghost") is False

    def test_force_prune_edge(self, db, make_node, make_edge):
        a, b = make_node(), make_node()
        edge = make_edge(a.id, b.id, weight=1.0)
        assert GraphPruningEngine(db).force_prune_edge(edge.id) is True
        assert db.get_edge(edge.id) is None


class TestScheduling:

    def test_should_run_and_stats(self, db, make_node):
        engine = GraphPruningEngine(db, PruningConfig(prune_interval_ms=DAY_MS))
        assert engine.should_run()
        engine.prune_graph()
        assert not engine.should_run()
        assert engine.should_run(utc_now() + timedelta(days=2))
        stats = engine.get_pruning_stats()
        assert stats.total_runs == 1
        assert len(engine.get_pruning_history()) == 1
