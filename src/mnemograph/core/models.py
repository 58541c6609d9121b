"""
Memory Graph Data Models
========================
Domain types shared by the graph database and the maintenance engines.

Nodes and edges hold typed Python values (sets, dicts, aware datetimes);
conversion to JSON columns and epoch milliseconds happens only at the
persistence edge inside ``GraphDatabase``.

Public API:
    node = MemoryNode(type=NodeType.ACTIVITY, content="Edited README")
    edge = MemoryEdge(source_id=a.id, target_id=b.id, type=EdgeType.SEMANTIC)
    query = GraphQuery(filters=[QueryFilter("relevance_score", "lt", 0.2)], limit=50)
    op = BatchOperation(BatchOpType.UPDATE, BatchTarget.NODE, id=node.id, data={...})
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from .exceptions import ValidationError


# ------------------------------------------------------------------ #
#  Time helpers                                                       #
# ------------------------------------------------------------------ #

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: Union[int, float]) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def ensure_datetime(value: Any) -> datetime:
    """Accept aware/naive datetimes, ISO strings or epoch milliseconds."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_epoch_ms(value)
    raise ValidationError("timestamp", "unsupported timestamp value", value)


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


# ------------------------------------------------------------------ #
#  Enums                                                              #
# ------------------------------------------------------------------ #

class NodeType(str, Enum):
    ACTIVITY = "activity"
    PATTERN = "pattern"
    RESOURCE = "resource"
    CONCEPT = "concept"
    PROJECT = "project"
    WORKFLOW = "workflow"
    EMAIL = "email"
    CODE = "code"
    GITHUB = "github"
    LEARNING = "learning"


class EdgeType(str, Enum):
    TEMPORAL = "temporal"
    SEMANTIC = "semantic"
    CAUSAL = "causal"
    SPATIAL = "spatial"
    REFERENCE = "reference"
    DEPENDENCY = "dependency"
    ASSOCIATION = "association"


class SourceType(str, Enum):
    EVENT = "event"
    PATTERN = "pattern"
    USER = "user"
    SYSTEM = "system"


class FilterOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"
    NIN = "nin"


class BatchOpType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class BatchTarget(str, Enum):
    NODE = "node"
    EDGE = "edge"


def _coerce_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(field_name, f"must be one of {[m.value for m in enum_cls]}", value)


# ═══════════════════════════════════════════════════════════════════════
# Graph elements
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class MemoryNode:
    """
    A memory in the graph.

    Fields:
        id: Unique identifier (uuid4 when not supplied).
        type: Kind of observation this node represents.
        timestamp: When the underlying observation happened.
        content: Free text used for similarity.
        metadata: Flat string-keyed map of scalars.
        relevance_score: Current usefulness in [0, 1]; eroded by decay.
        decay_factor: Per-node multiplier on the decay rate.
        degree, clustering, centrality: Topology metrics, refreshed out of band.
        tags: Free-form labels.
        access_count: Number of times the node was surfaced.
        last_accessed: Last surfacing time; drives recency for pruning.
        decayed_at: When a decay sweep last lowered the score, or None.
            Decay is measured from the later of this and ``last_accessed``.
        confidence: Belief in the node's accuracy, [0, 1].
        source_type: Which producer created the node.
        is_pruned: Soft-delete flag; pruned nodes are ignored by the engines.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: NodeType = NodeType.ACTIVITY
    timestamp: datetime = field(default_factory=utc_now)
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    relevance_score: float = 1.0
    decay_factor: float = 1.0
    degree: int = 0
    clustering: float = 0.0
    centrality: float = 0.0
    tags: Set[str] = field(default_factory=set)
    access_count: int = 0
    last_accessed: datetime = field(default_factory=utc_now)
    decayed_at: Optional[datetime] = None
    confidence: float = 1.0
    source_type: SourceType = SourceType.EVENT
    is_pruned: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.type = _coerce_enum(NodeType, self.type, "type")
        self.source_type = _coerce_enum(SourceType, self.source_type, "source_type")
        self.tags = set(self.tags or ())
        self.metadata = dict(self.metadata or {})
        self.relevance_score = clamp_unit(self.relevance_score)
        self.confidence = clamp_unit(self.confidence)
        for name in ("timestamp", "last_accessed", "created_at", "updated_at"):
            setattr(self, name, ensure_datetime(getattr(self, name)))
        if self.decayed_at is not None:
            self.decayed_at = ensure_datetime(self.decayed_at)

    def age_ms(self, now: Optional[datetime] = None) -> float:
        """Milliseconds since the node was last accessed."""
        now = now or utc_now()
        return (now - self.last_accessed).total_seconds() * 1000.0

    def decay_baseline(self) -> datetime:
        if self.decayed_at is None or self.decayed_at < self.last_accessed:
            return self.last_accessed
        return self.decayed_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "content": self.content,
            "metadata": self.metadata,
            "relevance_score": self.relevance_score,
            "decay_factor": self.decay_factor,
            "degree": self.degree,
            "clustering": self.clustering,
            "centrality": self.centrality,
            "tags": sorted(self.tags),
            "access_count": self.access_count,
            "last_accessed": self.last_accessed.isoformat(),
            "decayed_at": self.decayed_at.isoformat() if self.decayed_at else None,
            "confidence": self.confidence,
            "source_type": self.source_type.value,
            "is_pruned": self.is_pruned,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "MemoryNode":
        known = {k: v for k, v in d.items() if k in NODE_FIELDS}
        return cls(**known)


@dataclass
class TemporalRange:
    start: datetime
    end: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TemporalRange":
        end = d.get("end")
        return cls(
            start=ensure_datetime(d["start"]),
            end=ensure_datetime(end) if end is not None else None,
        )


@dataclass
class MemoryEdge:
    """
    A typed, weighted relation between two nodes.

    Both endpoints must exist when the edge is written. An edge whose
    endpoint is deleted later is an orphan until the pruning engine's
    cleanup pass removes it.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str = ""
    target_id: str = ""
    type: EdgeType = EdgeType.ASSOCIATION
    weight: float = 0.5
    metadata: Dict[str, Any] = field(default_factory=dict)
    temporal: Optional[TemporalRange] = None
    confidence: float = 1.0
    is_bidirectional: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.type = _coerce_enum(EdgeType, self.type, "type")
        self.metadata = dict(self.metadata or {})
        self.weight = clamp_unit(self.weight)
        self.confidence = clamp_unit(self.confidence)
        if isinstance(self.temporal, dict):
            self.temporal = TemporalRange.from_dict(self.temporal)
        self.created_at = ensure_datetime(self.created_at)
        self.updated_at = ensure_datetime(self.updated_at)

    def connects(self, a: str, b: str) -> bool:
        """True if the edge joins ``a`` and ``b`` in either direction."""
        return {self.source_id, self.target_id} == {a, b}

    def other_end(self, node_id: str) -> str:
        return self.target_id if self.source_id == node_id else self.source_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "type": self.type.value,
            "weight": self.weight,
            "metadata": self.metadata,
            "temporal": self.temporal.to_dict() if self.temporal else None,
            "confidence": self.confidence,
            "is_bidirectional": self.is_bidirectional,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "MemoryEdge":
        known = {k: v for k, v in d.items() if k in EDGE_FIELDS}
        return cls(**known)


NODE_FIELDS = frozenset(MemoryNode.__dataclass_fields__)
EDGE_FIELDS = frozenset(MemoryEdge.__dataclass_fields__)


# ═══════════════════════════════════════════════════════════════════════
# Queries and batches
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class QueryFilter:
    field: str
    operator: FilterOperator
    value: Any

    def __post_init__(self) -> None:
        self.operator = _coerce_enum(FilterOperator, self.operator, "operator")


@dataclass
class GraphQuery:
    """Ordered filter list plus pagination. Filters are AND-ed."""
    filters: List[QueryFilter] = field(default_factory=list)
    limit: Optional[int] = None
    offset: int = 0
    order_by: str = "created_at"
    descending: bool = False


@dataclass
class QueryResult:
    results: List[Any]
    total: int


@dataclass
class BatchOperation:
    op: BatchOpType
    target: BatchTarget
    id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.op = _coerce_enum(BatchOpType, self.op, "op")
        self.target = _coerce_enum(BatchTarget, self.target, "target")


@dataclass
class BatchResult:
    affected_nodes: int = 0
    affected_edges: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class GraphStats:
    total_nodes: int = 0
    total_edges: int = 0
    active_nodes: int = 0
    active_edges: int = 0
    average_degree: float = 0.0
    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "total_nodes": self.total_nodes,
            "total_edges": self.total_edges,
            "active_nodes": self.active_nodes,
            "active_edges": self.active_edges,
            "average_degree": round(self.average_degree, 4),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
