"""
Memory Decay Engine
===================
Time-based erosion of node relevance, plus explicit boosts on access.

With ``h`` = hours since the node's decay baseline (the later of
``last_accessed`` and ``decayed_at``) capped at ``max_age_ms``, and
``r`` = ``decay_rate`` times the node's own ``decay_factor``:

    exponential:  s' = s * e^(-r*h)
    linear:       s' = max(0, s - r*h)
    logarithmic:  s' = s / (1 + r*ln(1+h))

Logarithmic never decays faster than exponential for the same inputs,
since r*ln(1+h) <= r*h and 1+x <= e^x.

Each sweep stamps ``decayed_at`` on the nodes it lowers, so a later sweep
only charges the time elapsed since then.

Decay never raises a score. Only ``boost_node_on_access`` and
``boost_edge_on_interaction`` move values upwards, and both clamp at 1.0.

Public API:
    engine = MemoryDecayEngine(db, DecayConfig(decay_rate=0.05))
    result = engine.apply_decay()              # scheduled sweep, never raises
    engine.boost_node_on_access(node_id)       # read path, never raises
    stats = engine.get_decay_stats()
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from .cancellation import CancellationToken
from .config import DecayConfig, DecayFunction
from .exceptions import ConfigError, OperationCancelledError
from .graph_database import GraphDatabase
from .models import (
    BatchOperation,
    BatchOpType,
    BatchTarget,
    MemoryEdge,
    MemoryNode,
    QueryFilter,
    clamp_unit,
    utc_now,
)


# ------------------------------------------------------------------ #
#  Constants                                                          #
# ------------------------------------------------------------------ #

MS_PER_HOUR: float = 3_600_000.0

# Recent sweep results kept for get_decay_history()
DECAY_HISTORY_SIZE: int = 100


@dataclass
class DecayResult:
    nodes_decayed: int = 0
    edges_decayed: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes_decayed": self.nodes_decayed,
            "edges_decayed": self.edges_decayed,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class DecayStats:
    total_nodes: int = 0
    average_relevance: float = 0.0
    below_threshold: int = 0
    total_runs: int = 0
    last_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_nodes": self.total_nodes,
            "average_relevance": round(self.average_relevance, 4),
            "below_threshold": self.below_threshold,
            "total_runs": self.total_runs,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


def validate_decay_config(config: DecayConfig) -> DecayConfig:
    """Return ``config`` with enum fields normalised, or raise ConfigError."""
    try:
        function = DecayFunction(config.decay_function)
    except ValueError:
        raise ConfigError("decay_function", "Invalid decay function", {"value": str(config.decay_function)})
    if not (0.0 < config.decay_rate <= 1.0):
        raise ConfigError("decay_rate", "decay_rate must be between 0 and 1", {"value": config.decay_rate})
    if not (0.0 <= config.min_relevance_threshold <= 1.0):
        raise ConfigError(
            "min_relevance_threshold",
            "min_relevance_threshold must be between 0 and 1",
            {"value": config.min_relevance_threshold},
        )
    if config.max_age_ms <= 0:
        raise ConfigError("max_age_ms", "max_age_ms must be positive", {"value": config.max_age_ms})
    if config.min_elapsed_ms < 0:
        raise ConfigError("min_elapsed_ms", "min_elapsed_ms must not be negative", {"value": config.min_elapsed_ms})
    if config.access_boost < 1.0 or config.edge_boost < 1.0:
        raise ConfigError("access_boost", "boost factors must be >= 1")
    return replace(config, decay_function=function)


def calculate_decay(function: DecayFunction, score: float, elapsed_hours: float, rate: float) -> float:
    """Pure decay curve. Non-positive elapsed time leaves the score unchanged."""
    if elapsed_hours <= 0 or rate <= 0:
        return score
    if function is DecayFunction.EXPONENTIAL:
        decayed = score * math.exp(-rate * elapsed_hours)
    elif function is DecayFunction.LINEAR:
        decayed = max(0.0, score - rate * elapsed_hours)
    elif function is DecayFunction.LOGARITHMIC:
        decayed = score / (1.0 + rate * math.log1p(elapsed_hours))
    else:
        raise ConfigError("decay_function", "Invalid decay function", {"value": str(function)})
    return clamp_unit(min(score, decayed))


def calculate_boosted_score(score: float, factor: float) -> float:
    return clamp_unit(min(1.0, score * factor))


class MemoryDecayEngine:
    """
    Periodically lowers node relevance according to elapsed time since the
    last access or the last sweep, and raises it again when a node is
    surfaced.

    Scheduled operations (``apply_decay``) and read-path operations
    (``boost_*``) never raise; failures are logged and reported.
    """

    def __init__(self, db: GraphDatabase, config: Optional[DecayConfig] = None) -> None:
        self.db = db
        self.config = validate_decay_config(config or DecayConfig())
        self._history: Deque[DecayResult] = deque(maxlen=DECAY_HISTORY_SIZE)
        self._total_runs = 0

    # ---- Core math ----------------------------------------------- #

    def calculate_decay(self, score: float, elapsed_hours: float, decay_factor: float = 1.0) -> float:
        rate = self.config.decay_rate * max(0.0, decay_factor)
        return calculate_decay(self.config.decay_function, score, elapsed_hours, rate)

    def decay_node(self, node: MemoryNode, now: Optional[datetime] = None) -> float:
        """
        Apply the configured curve to ``node.relevance_score`` in place.

        Elapsed time runs from ``node.decay_baseline()`` and is capped at
        ``max_age_ms``. A lowered score also moves ``decayed_at`` to ``now``.
        No-op once the score is at or below ``min_relevance_threshold``,
        unless ``force_decay`` is set. Returns the (possibly unchanged) score.
        """
        current = clamp_unit(node.relevance_score)
        if current <= self.config.min_relevance_threshold and not self.config.force_decay:
            return current
        now = now or utc_now()
        elapsed_hours = self._elapsed_ms(node, now) / MS_PER_HOUR
        node.relevance_score = self.calculate_decay(current, elapsed_hours, node.decay_factor)
        if node.relevance_score < current:
            node.decayed_at = now
        return node.relevance_score

    def _elapsed_ms(self, node: MemoryNode, now: datetime) -> float:
        elapsed = (now - node.decay_baseline()).total_seconds() * 1000.0
        return min(max(0.0, elapsed), float(self.config.max_age_ms))

    # ---- Sweeps -------------------------------------------------- #

    def _eligibility_filters(self, now: datetime) -> List[QueryFilter]:
        filters = [QueryFilter("is_pruned", "eq", False)]
        if not self.config.force_decay:
            filters.append(QueryFilter("relevance_score", "gt", self.config.min_relevance_threshold))
            # decayed_at is checked per node; it may be NULL
            filters.append(QueryFilter(
                "last_accessed", "lte", now - timedelta(milliseconds=self.config.min_elapsed_ms)
            ))
        return filters

    def _is_due(self, node: MemoryNode, now: datetime) -> bool:
        if self.config.force_decay:
            return True
        elapsed = (now - node.decay_baseline()).total_seconds() * 1000.0
        return elapsed >= self.config.min_elapsed_ms

    def apply_decay(self, token: Optional[CancellationToken] = None) -> DecayResult:
        """
        Decay every eligible node and persist all new scores with a single
        ``batch_operations`` call. Never raises.

        Eligible: active, above the relevance floor, and neither accessed
        nor decayed within the last ``min_elapsed_ms``. ``force_decay``
        drops every condition except "active". Each update also writes
        ``decayed_at`` so the next sweep starts from this one.
        """
        result = DecayResult()
        if not self.config.enabled:
            logger.debug("[DecayEngine] Disabled, skipping sweep")
            return result

        now = result.started_at
        updates: List[BatchOperation] = []
        try:
            for page in self.db.iter_node_pages(self._eligibility_filters(now)):
                if token is not None:
                    token.raise_if_cancelled("apply_decay")
                for node in page:
                    if not self._is_due(node, now):
                        continue
                    before = node.relevance_score
                    after = self.decay_node(node, now)
                    if after < before:
                        updates.append(BatchOperation(
                            BatchOpType.UPDATE, BatchTarget.NODE, id=node.id,
                            data={"relevance_score": after, "decayed_at": now},
                        ))

            if updates:
                batch = self.db.batch_operations(updates, token=token)
                result.nodes_decayed = batch.affected_nodes
                result.errors.extend(batch.errors)
        except OperationCancelledError:
            logger.info("[DecayEngine] Sweep cancelled before persisting")
            result.errors.append("cancelled")
        except Exception as exc:
            logger.error(f"[DecayEngine] Sweep failed: {exc}")
            result.nodes_decayed = 0
            result.errors.append(str(exc))

        result.duration_ms = (utc_now() - now).total_seconds() * 1000.0
        self._record(result)
        logger.info(
            f"[DecayEngine] Decayed {result.nodes_decayed} nodes "
            f"({len(result.errors)} errors, {result.duration_ms:.1f} ms)"
        )
        return result

    def _record(self, result: DecayResult) -> None:
        self._total_runs += 1
        self._history.append(result)

    # ---- Boosts -------------------------------------------------- #

    def boost_node_on_access(self, node_id: str) -> Optional[MemoryNode]:
        """
        Multiply relevance by ``access_boost`` (capped at 1.0), increment
        ``access_count`` and refresh ``last_accessed``. Errors are logged
        and swallowed so a read path is never blocked.
        """
        try:
            node = self.db.get_node(node_id)
            if node is None:
                logger.warning(f"[DecayEngine] Boost skipped, node {node_id} not found")
                return None
            return self.db.update_node(node_id, {
                "relevance_score": calculate_boosted_score(node.relevance_score, self.config.access_boost),
                "access_count": node.access_count + 1,
                "last_accessed": utc_now(),
            })
        except Exception as exc:
            logger.error(f"[DecayEngine] Failed to boost node {node_id}: {exc}")
            return None

    def boost_edge_on_interaction(self, edge_id: str) -> Optional[MemoryEdge]:
        """Strengthen an edge that was traversed. Never raises."""
        try:
            edge = self.db.get_edge(edge_id)
            if edge is None:
                logger.warning(f"[DecayEngine] Boost skipped, edge {edge_id} not found")
                return None
            return self.db.update_edge(edge_id, {
                "weight": calculate_boosted_score(edge.weight, self.config.edge_boost),
            })
        except Exception as exc:
            logger.error(f"[DecayEngine] Failed to boost edge {edge_id}: {exc}")
            return None

    # ---- Introspection ------------------------------------------- #

    def get_decay_stats(self) -> DecayStats:
        stats = DecayStats(total_runs=self._total_runs)
        if self._history:
            stats.last_run = self._history[-1].started_at
        total = 0.0
        for page in self.db.iter_node_pages([QueryFilter("is_pruned", "eq", False)]):
            for node in page:
                stats.total_nodes += 1
                total += node.relevance_score
                if node.relevance_score <= self.config.min_relevance_threshold:
                    stats.below_threshold += 1
        if stats.total_nodes:
            stats.average_relevance = total / stats.total_nodes
        return stats

    def get_decay_history(self, limit: int = 10) -> List[DecayResult]:
        """Most recent sweep results, newest first."""
        return list(reversed(self._history))[:limit]

    def reset_decay(self, node_ids: Optional[List[str]] = None) -> int:
        """
        Restore relevance to 1.0 and ``last_accessed`` to now.

        Raises:
            MnemoGraphError: Propagated from the database; this is an
                operator action, not a scheduled job.
        """
        now = utc_now()
        if node_ids is None:
            node_ids = [
                n.id
                for page in self.db.iter_node_pages([QueryFilter("is_pruned", "eq", False)])
                for n in page
            ]
        ops = [
            BatchOperation(BatchOpType.UPDATE, BatchTarget.NODE, id=node_id,
                           data={"relevance_score": 1.0, "last_accessed": now})
            for node_id in node_ids
        ]
        if not ops:
            return 0
        result = self.db.batch_operations(ops)
        if result.errors:
            logger.warning(f"[DecayEngine] Reset finished with {len(result.errors)} errors")
        logger.info(f"[DecayEngine] Reset decay on {result.affected_nodes} nodes")
        return result.affected_nodes
