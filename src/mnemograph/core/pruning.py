"""
Graph Pruning Engine
====================
Bounded-size, age and relevance based eviction of nodes and edges, with
lazy cleanup of edges left dangling by node deletion.

Node eligibility, in order:
  1. soft-pruned nodes are never considered
  2. nodes accessed within ``keep_recent_ms`` are kept (unless ``force_prune``)
  3. critical nodes are kept: composite importance >= policy threshold,
     or any protected tag
  4. the strategy decides:
       relevance -> relevance_score < min_relevance_threshold
       age       -> last access older than keep_recent_ms
       hybrid    -> both of the above
       custom    -> custom_pruning_function(node)
       size      -> global ranking, see prune_graph()

A sweep pages through the tables, deletes through ``batch_operations`` in
bounded chunks and finally removes orphaned edges. It never raises: any
failure yields a zero-progress result with the error recorded.

Public API:
    engine = GraphPruningEngine(db, PruningConfig(strategy="size", max_nodes=5000))
    result = engine.prune_graph()        # PruneResult(nodes_pruned, edges_pruned, edges_orphaned, errors)
    engine.should_prune_node(node)
    engine.cleanup_orphaned_edges()
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from loguru import logger

from .cancellation import CancellationToken, check_cancelled
from .config import PruningConfig, PruningStrategy
from .exceptions import ConfigError, NotFoundError, OperationCancelledError
from .graph_database import GraphDatabase
from .models import (
    BatchOperation,
    BatchOpType,
    BatchTarget,
    MemoryEdge,
    MemoryNode,
    QueryFilter,
    clamp_unit,
    to_epoch_ms,
    utc_now,
)


# ------------------------------------------------------------------ #
#  Constants                                                          #
# ------------------------------------------------------------------ #

PRUNING_HISTORY_SIZE: int = 100


@dataclass
class PruneResult:
    nodes_pruned: int = 0
    edges_pruned: int = 0
    edges_orphaned: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes_pruned": self.nodes_pruned,
            "edges_pruned": self.edges_pruned,
            "edges_orphaned": self.edges_orphaned,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class PruningStats:
    total_runs: int = 0
    total_nodes_pruned: int = 0
    total_edges_pruned: int = 0
    total_edges_orphaned: int = 0
    last_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "total_nodes_pruned": self.total_nodes_pruned,
            "total_edges_pruned": self.total_edges_pruned,
            "total_edges_orphaned": self.total_edges_orphaned,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


def validate_pruning_config(config: PruningConfig) -> PruningConfig:
    """Return ``config`` with enum fields normalised, or raise ConfigError."""
    try:
        strategy = PruningStrategy(config.strategy)
    except ValueError:
        raise ConfigError("strategy", "Invalid pruning strategy", {"value": str(config.strategy)})
    if strategy is PruningStrategy.CUSTOM and not callable(config.custom_pruning_function):
        raise ConfigError("custom_pruning_function", "custom strategy requires a callable")
    for key in ("max_nodes", "max_edges", "keep_recent_ms", "prune_interval_ms"):
        if getattr(config, key) <= 0:
            raise ConfigError(key, f"{key} must be positive", {"value": getattr(config, key)})
    if not (0.0 <= config.min_relevance_threshold <= 1.0):
        raise ConfigError("min_relevance_threshold", "min_relevance_threshold must be between 0 and 1")
    if config.min_edge_weight is not None and not (0.0 <= config.min_edge_weight <= 1.0):
        raise ConfigError("min_edge_weight", "min_edge_weight must be between 0 and 1")

    policy = config.importance
    if not (0.0 <= policy.threshold <= 1.0):
        raise ConfigError("importance.threshold", "threshold must be between 0 and 1")
    weights = (policy.degree_weight, policy.centrality_weight, policy.access_weight, policy.clustering_weight)
    if any(w < 0 for w in weights):
        raise ConfigError("importance", "weights must not be negative")
    if policy.degree_norm <= 0 or policy.access_norm <= 0:
        raise ConfigError("importance", "normalisers must be positive")
    return replace(config, strategy=strategy)


class GraphPruningEngine:
    """
    Evicts low-value nodes and edges to keep the graph bounded.

    The critical-node exemption is driven by ``PruningConfig.importance``
    so hosts can tune which connectivity or usage patterns protect a node.
    """

    def __init__(self, db: GraphDatabase, config: Optional[PruningConfig] = None) -> None:
        self.db = db
        self.config = validate_pruning_config(config or PruningConfig())
        self._history: Deque[PruneResult] = deque(maxlen=PRUNING_HISTORY_SIZE)
        self._stats = PruningStats()

    @property
    def min_edge_weight(self) -> float:
        if self.config.min_edge_weight is not None:
            return self.config.min_edge_weight
        return self.config.min_relevance_threshold

    # ---- Importance ---------------------------------------------- #

    def calculate_importance(self, node: MemoryNode) -> float:
        """Weighted, normalised blend of connectivity and usage in [0, 1]."""
        policy = self.config.importance
        if node.tags & policy.protected_tags:
            return 1.0
        score = (
            policy.degree_weight * min(1.0, max(0, node.degree) / policy.degree_norm)
            + policy.centrality_weight * clamp_unit(node.centrality)
            + policy.access_weight * min(1.0, max(0, node.access_count) / policy.access_norm)
            + policy.clustering_weight * clamp_unit(node.clustering)
        )
        return clamp_unit(score)

    def is_critical(self, node: MemoryNode) -> bool:
        return self.calculate_importance(node) >= self.config.importance.threshold

    # ---- Decisions ----------------------------------------------- #

    def should_prune_node(self, node: MemoryNode, now: Optional[datetime] = None) -> bool:
        if node.is_pruned:
            return False
        now = now or utc_now()
        age_ms = node.age_ms(now)
        if age_ms < self.config.keep_recent_ms and not self.config.force_prune:
            return False
        if self.is_critical(node):
            return False

        strategy = self.config.strategy
        low_relevance = node.relevance_score < self.config.min_relevance_threshold
        old = age_ms > self.config.keep_recent_ms
        if strategy is PruningStrategy.RELEVANCE:
            return low_relevance
        if strategy is PruningStrategy.AGE:
            return old
        if strategy is PruningStrategy.HYBRID:
            return low_relevance and old
        if strategy is PruningStrategy.CUSTOM:
            return bool(self.config.custom_pruning_function(node))
        if strategy is PruningStrategy.SIZE:
            # Decided by global ranking in prune_graph()
            return False
        raise ConfigError("strategy", "Invalid pruning strategy", {"value": str(strategy)})

    def should_prune_edge(self, edge: MemoryEdge, now: Optional[datetime] = None) -> bool:
        """Weak edges (below ``min_edge_weight``) not touched within ``keep_recent_ms``."""
        if edge.weight >= self.min_edge_weight:
            return False
        if self.config.force_prune:
            return True
        now = now or utc_now()
        age_ms = (now - edge.updated_at).total_seconds() * 1000.0
        return age_ms > self.config.keep_recent_ms

    # ---- Selection ----------------------------------------------- #

    def _active_node_filters(self) -> List[QueryFilter]:
        return [QueryFilter("is_pruned", "eq", False)]

    def _select_nodes(self, now: datetime, token: Optional[CancellationToken],
                      errors: List[str]) -> List[str]:
        if self.config.strategy is PruningStrategy.SIZE:
            return self._select_nodes_by_size(token)

        selected: List[str] = []
        for page in self.db.iter_node_pages(self._active_node_filters()):
            check_cancelled(token, "prune_graph")
            for node in page:
                try:
                    if self.should_prune_node(node, now):
                        selected.append(node.id)
                except Exception as exc:
                    # A faulty custom predicate skips that node only
                    errors.append(f"node {node.id}: {exc}")
                    logger.warning(f"[PruningEngine] Predicate failed for node {node.id}: {exc}")
        return selected

    def _select_nodes_by_size(self, token: Optional[CancellationToken]) -> List[str]:
        """
        Keep the ``max_nodes`` best nodes: highest relevance, then most recent
        access, then id. Critical nodes are never selected, so the graph may
        stay above the cap when many nodes are critical.
        """
        total = 0
        ranked: List[Tuple[float, int, str]] = []
        for page in self.db.iter_node_pages(self._active_node_filters()):
            check_cancelled(token, "prune_graph")
            for node in page:
                total += 1
                if not self.is_critical(node):
                    ranked.append((-node.relevance_score, -to_epoch_ms(node.last_accessed), node.id))
        excess = total - self.config.max_nodes
        if excess <= 0:
            return []
        ranked.sort()
        return [node_id for _, _, node_id in ranked[-excess:]]

    def _select_edges(self, now: datetime, token: Optional[CancellationToken]) -> List[str]:
        if self.config.strategy is PruningStrategy.SIZE:
            total = 0
            ranked: List[Tuple[float, int, str]] = []
            for page in self.db.iter_edge_pages():
                check_cancelled(token, "prune_graph")
                for edge in page:
                    total += 1
                    ranked.append((-edge.weight, -to_epoch_ms(edge.updated_at), edge.id))
            excess = total - self.config.max_edges
            if excess <= 0:
                return []
            ranked.sort()
            return [edge_id for _, _, edge_id in ranked[-excess:]]

        selected: List[str] = []
        for page in self.db.iter_edge_pages():
            check_cancelled(token, "prune_graph")
            selected.extend(edge.id for edge in page if self.should_prune_edge(edge, now))
        return selected

    # ---- Sweeps -------------------------------------------------- #

    def prune_graph(self, token: Optional[CancellationToken] = None) -> PruneResult:
        """
        One pruning cycle: select, delete in chunks, then clean up orphans.
        Never raises; a failure reports zero progress for the cycle.
        """
        result = PruneResult()
        if not self.config.enabled:
            logger.debug("[PruningEngine] Disabled, skipping sweep")
            return result

        now = result.started_at
        try:
            node_ids = self._select_nodes(now, token, result.errors)
            edge_ids = self._select_edges(now, token)

            ops = [BatchOperation(BatchOpType.DELETE, BatchTarget.EDGE, id=i) for i in edge_ids]
            ops.extend(BatchOperation(BatchOpType.DELETE, BatchTarget.NODE, id=i) for i in node_ids)
            if ops:
                batch = self.db.batch_operations(ops, token=token)
                result.nodes_pruned = batch.affected_nodes
                result.edges_pruned = batch.affected_edges
                result.errors.extend(batch.errors)

            result.edges_orphaned = self.cleanup_orphaned_edges(token)
        except OperationCancelledError:
            logger.info("[PruningEngine] Sweep cancelled")
            if "cancelled" not in result.errors:
                result.errors.append("cancelled")
        except Exception as exc:
            logger.error(f"[PruningEngine] Sweep failed: {exc}")
            result = PruneResult(errors=[str(exc)], started_at=now)

        result.duration_ms = (utc_now() - now).total_seconds() * 1000.0
        self._record(result)
        logger.info(
            f"[PruningEngine] Pruned {result.nodes_pruned} nodes, {result.edges_pruned} edges, "
            f"{result.edges_orphaned} orphans ({len(result.errors)} errors)"
        )
        return result

    def cleanup_orphaned_edges(self, token: Optional[CancellationToken] = None) -> int:
        """
        Delete edges whose source or target node no longer exists, one chunk
        at a time. Returns the number removed.
        """
        removed = 0
        while True:
            check_cancelled(token, "cleanup_orphaned_edges")
            orphan_ids = self.db.find_orphaned_edge_ids(limit=self.db.chunk_size)
            if not orphan_ids:
                break
            batch = self.db.batch_operations(
                [BatchOperation(BatchOpType.DELETE, BatchTarget.EDGE, id=i) for i in orphan_ids]
            )
            removed += batch.affected_edges
            if batch.affected_edges == 0:
                logger.warning(f"[PruningEngine] Orphan cleanup made no progress: {batch.errors}")
                break
        if removed:
            logger.debug(f"[PruningEngine] Removed {removed} orphaned edges")
        return removed

    def _record(self, result: PruneResult) -> None:
        self._history.append(result)
        self._stats.total_runs += 1
        self._stats.total_nodes_pruned += result.nodes_pruned
        self._stats.total_edges_pruned += result.edges_pruned
        self._stats.total_edges_orphaned += result.edges_orphaned
        self._stats.last_run = result.started_at

    # ---- Manual operations --------------------------------------- #

    def force_prune_node(self, node_id: str) -> bool:
        """Delete a node regardless of policy. Its edges are left for orphan cleanup."""
        try:
            self.db.delete_node(node_id)
        except NotFoundError:
            return False
        except Exception as exc:
            logger.error(f"[PruningEngine] Force prune of node {node_id} failed: {exc}")
            return False
        logger.info(f"[PruningEngine] Force-pruned node {node_id}")
        return True

    def force_prune_edge(self, edge_id: str) -> bool:
        try:
            self.db.delete_edge(edge_id)
        except NotFoundError:
            return False
        except Exception as exc:
            logger.error(f"[PruningEngine] Force prune of edge {edge_id} failed: {exc}")
            return False
        logger.info(f"[PruningEngine] Force-pruned edge {edge_id}")
        return True

    # ---- Introspection ------------------------------------------- #

    def should_run(self, now: Optional[datetime] = None) -> bool:
        """True once ``prune_interval_ms`` has passed since the last sweep."""
        if self._stats.last_run is None:
            return True
        now = now or utc_now()
        elapsed_ms = (now - self._stats.last_run).total_seconds() * 1000.0
        return elapsed_ms >= self.config.prune_interval_ms

    def get_pruning_stats(self) -> PruningStats:
        return replace(self._stats)

    def get_pruning_history(self, limit: int = 10) -> List[PruneResult]:
        """Most recent sweep results, newest first."""
        return list(reversed(self._history))[:limit]
