"""
Graph Database
==============
Durable SQLite storage for memory nodes and edges.

Storage layout:
  - ``nodes`` / ``edges``: one row per graph element. Metadata, tags and
    temporal ranges are JSON text; all timestamps are epoch milliseconds.
  - ``audit_log``: append-only record of every create/update/delete.
  - ``graph_stats``: snapshots written by ``update_stats()``.

Concurrency:
  One connection in WAL mode guarded by a re-entrant lock. The lock is
  held for a single statement, a single page of a scan, or a single batch
  chunk, so long maintenance sweeps interleave with read traffic.

Integrity:
  Deleting a node does not touch its edges. Dangling edges are removed
  later by the pruning engine's orphan cleanup pass.

Public API:
    db = GraphDatabase("./data/graph.db")
    db.initialize()
    node = db.create_node({"type": "activity", "content": "Reviewed PR"})
    db.update_node(node.id, {"relevance_score": 0.4})
    page = db.query_nodes(GraphQuery(filters=[QueryFilter("type", "eq", "activity")], limit=20))
    result = db.batch_operations([BatchOperation("delete", "node", id=node.id)])
    db.execute_in_transaction(lambda: (db.create_node(a), db.create_node(b)))
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from loguru import logger

from .cancellation import CancellationToken
from .config import DatabaseConfig
from .exceptions import (
    ConstraintError,
    DataCorruptionError,
    MnemoGraphError,
    NotFoundError,
    ValidationError,
    wrap_storage_exception,
)
from .models import (
    EDGE_FIELDS,
    NODE_FIELDS,
    BatchOperation,
    BatchOpType,
    BatchResult,
    BatchTarget,
    EdgeType,
    FilterOperator,
    GraphQuery,
    GraphStats,
    MemoryEdge,
    MemoryNode,
    NodeType,
    QueryFilter,
    QueryResult,
    SourceType,
    TemporalRange,
    clamp_unit,
    ensure_datetime,
    from_epoch_ms,
    to_epoch_ms,
    utc_now,
)

T = TypeVar("T")


# ------------------------------------------------------------------ #
#  Schema                                                             #
# ------------------------------------------------------------------ #

SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id              TEXT PRIMARY KEY,
    type            TEXT NOT NULL,
    timestamp       INTEGER NOT NULL,
    content         TEXT NOT NULL DEFAULT '',
    metadata        TEXT NOT NULL DEFAULT '{}',
    relevance_score REAL NOT NULL DEFAULT 1.0
                    CHECK (relevance_score >= 0.0 AND relevance_score <= 1.0),
    decay_factor    REAL NOT NULL DEFAULT 1.0,
    degree          INTEGER NOT NULL DEFAULT 0,
    clustering      REAL NOT NULL DEFAULT 0.0,
    centrality      REAL NOT NULL DEFAULT 0.0,
    tags            TEXT NOT NULL DEFAULT '[]',
    access_count    INTEGER NOT NULL DEFAULT 0,
    last_accessed   INTEGER NOT NULL,
    decayed_at      INTEGER,
    confidence      REAL NOT NULL DEFAULT 1.0
                    CHECK (confidence >= 0.0 AND confidence <= 1.0),
    source_type     TEXT NOT NULL DEFAULT 'event',
    is_pruned       INTEGER NOT NULL DEFAULT 0,
    created_at      INTEGER NOT NULL,
    updated_at      INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_nodes_type_timestamp ON nodes(type, timestamp);
CREATE INDEX IF NOT EXISTS idx_nodes_relevance ON nodes(relevance_score);
CREATE INDEX IF NOT EXISTS idx_nodes_last_accessed ON nodes(last_accessed);
CREATE INDEX IF NOT EXISTS idx_nodes_is_pruned ON nodes(is_pruned);

CREATE TABLE IF NOT EXISTS edges (
    id               TEXT PRIMARY KEY,
    source_id        TEXT NOT NULL,
    target_id        TEXT NOT NULL,
    type             TEXT NOT NULL,
    weight           REAL NOT NULL DEFAULT 0.5
                     CHECK (weight >= 0.0 AND weight <= 1.0),
    metadata         TEXT NOT NULL DEFAULT '{}',
    temporal         TEXT,
    confidence       REAL NOT NULL DEFAULT 1.0
                     CHECK (confidence >= 0.0 AND confidence <= 1.0),
    is_bidirectional INTEGER NOT NULL DEFAULT 0,
    created_at       INTEGER NOT NULL,
    updated_at       INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_edges_target_type ON edges(target_id, type);
CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source_id);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    operation   TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id   TEXT NOT NULL,
    timestamp   INTEGER NOT NULL,
    details     TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id);

CREATE TABLE IF NOT EXISTS graph_stats (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    total_nodes    INTEGER NOT NULL,
    total_edges    INTEGER NOT NULL,
    active_nodes   INTEGER NOT NULL,
    active_edges   INTEGER NOT NULL,
    average_degree REAL NOT NULL,
    recorded_at    INTEGER NOT NULL
);
"""


@dataclass(frozen=True)
class _TableSpec:
    """Column typing for one table, used to encode values at the storage edge."""
    name: str
    entity: str
    columns: FrozenSet[str]
    datetimes: FrozenSet[str]
    json_columns: FrozenSet[str]
    booleans: FrozenSet[str]
    enums: Mapping[str, type]
    unit_interval: FrozenSet[str]


_NODES = _TableSpec(
    name="nodes",
    entity="node",
    columns=NODE_FIELDS,
    datetimes=frozenset({"timestamp", "last_accessed", "decayed_at", "created_at", "updated_at"}),
    json_columns=frozenset({"metadata", "tags"}),
    booleans=frozenset({"is_pruned"}),
    enums={"type": NodeType, "source_type": SourceType},
    unit_interval=frozenset({"relevance_score", "confidence"}),
)

_EDGES = _TableSpec(
    name="edges",
    entity="edge",
    columns=EDGE_FIELDS,
    datetimes=frozenset({"created_at", "updated_at"}),
    json_columns=frozenset({"metadata", "temporal"}),
    booleans=frozenset({"is_bidirectional"}),
    enums={"type": EdgeType},
    unit_interval=frozenset({"weight", "confidence"}),
)

_IMMUTABLE = frozenset({"id", "created_at"})

_SQL_OPERATORS = {
    FilterOperator.EQ: "=",
    FilterOperator.NE: "!=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
}


# ------------------------------------------------------------------ #
#  Value encoding                                                     #
# ------------------------------------------------------------------ #

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _encode_json(column: str, value: Any) -> Optional[str]:
    if value is None:
        return None if column == "temporal" else json.dumps([] if column == "tags" else {})
    if column == "tags":
        return json.dumps(sorted(value))
    if isinstance(value, TemporalRange):
        value = value.to_dict()
    return json.dumps(value, default=_json_default)


def _encode_scalar(spec: _TableSpec, column: str, value: Any) -> Any:
    """Encode a single comparable value for a column (no JSON)."""
    if value is None:
        return None
    if column in spec.datetimes:
        return to_epoch_ms(ensure_datetime(value))
    if column in spec.booleans:
        return 1 if value else 0
    if column in spec.enums:
        enum_cls = spec.enums[column]
        try:
            return enum_cls(value).value
        except ValueError:
            raise ValidationError(column, f"must be one of {[m.value for m in enum_cls]}", value)
    if isinstance(value, Enum):
        return value.value
    return value


def _encode_value(spec: _TableSpec, column: str, value: Any) -> Any:
    if column in spec.json_columns:
        return _encode_json(column, value)
    if column in spec.unit_interval and value is not None:
        return clamp_unit(value)
    return _encode_scalar(spec, column, value)


def _node_to_row(node: MemoryNode) -> Dict[str, Any]:
    return {col: _encode_value(_NODES, col, getattr(node, col)) for col in _NODES.columns}


def _edge_to_row(edge: MemoryEdge) -> Dict[str, Any]:
    return {col: _encode_value(_EDGES, col, getattr(edge, col)) for col in _EDGES.columns}


def _row_to_node(row: sqlite3.Row) -> MemoryNode:
    try:
        return MemoryNode(
            id=row["id"],
            type=row["type"],
            timestamp=from_epoch_ms(row["timestamp"]),
            content=row["content"] or "",
            metadata=json.loads(row["metadata"] or "{}"),
            relevance_score=row["relevance_score"],
            decay_factor=row["decay_factor"],
            degree=row["degree"],
            clustering=row["clustering"],
            centrality=row["centrality"],
            tags=json.loads(row["tags"] or "[]"),
            access_count=row["access_count"],
            last_accessed=from_epoch_ms(row["last_accessed"]),
            decayed_at=None if row["decayed_at"] is None else from_epoch_ms(row["decayed_at"]),
            confidence=row["confidence"],
            source_type=row["source_type"],
            is_pruned=bool(row["is_pruned"]),
            created_at=from_epoch_ms(row["created_at"]),
            updated_at=from_epoch_ms(row["updated_at"]),
        )
    except (ValueError, TypeError, ValidationError) as exc:
        raise DataCorruptionError(row["id"], f"Unreadable node row ({exc})") from exc


def _row_to_edge(row: sqlite3.Row) -> MemoryEdge:
    try:
        temporal = json.loads(row["temporal"]) if row["temporal"] else None
        return MemoryEdge(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            type=row["type"],
            weight=row["weight"],
            metadata=json.loads(row["metadata"] or "{}"),
            temporal=TemporalRange.from_dict(temporal) if temporal else None,
            confidence=row["confidence"],
            is_bidirectional=bool(row["is_bidirectional"]),
            created_at=from_epoch_ms(row["created_at"]),
            updated_at=from_epoch_ms(row["updated_at"]),
        )
    except (ValueError, TypeError, KeyError, ValidationError) as exc:
        raise DataCorruptionError(row["id"], f"Unreadable edge row ({exc})") from exc


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ═══════════════════════════════════════════════════════════════════════
# GraphDatabase
# ═══════════════════════════════════════════════════════════════════════

class GraphDatabase:
    """
    SQLite-backed node/edge store.

    CRUD and transactional calls propagate errors to the caller
    (``NotFoundError``, ``ConstraintError``, ``TransientIOError``,
    ``StorageError``). ``batch_operations`` is best-effort and reports
    per-operation failures instead of raising.
    """

    BACKEND = "sqlite"

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        chunk_size: int = 100,
        page_size: int = 500,
        timeout: float = 30.0,
        audit: bool = True,
    ):
        if chunk_size <= 0:
            raise ValidationError("chunk_size", "must be positive", chunk_size)
        if page_size <= 0:
            raise ValidationError("page_size", "must be positive", page_size)
        self.db_path = str(db_path)
        self.chunk_size = chunk_size
        self.page_size = page_size
        self.timeout = timeout
        self.audit = audit
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "GraphDatabase":
        return cls(
            db_path=config.path,
            chunk_size=config.chunk_size,
            page_size=config.page_size,
            timeout=config.timeout,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Open the connection and create tables/indexes if absent. Idempotent."""
        with self._lock:
            try:
                if self._conn is None:
                    if self.db_path != ":memory:":
                        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                    conn = sqlite3.connect(
                        self.db_path,
                        timeout=self.timeout,
                        isolation_level=None,
                        check_same_thread=False,
                    )
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.execute("PRAGMA synchronous=NORMAL")
                    self._conn = conn
                self._conn.executescript(SCHEMA)
                self._migrate()
            except sqlite3.Error as exc:
                raise wrap_storage_exception(self.BACKEND, "initialize", exc) from exc
        logger.info(f"[GraphDatabase] Initialized at {self.db_path}")

    def _migrate(self) -> None:
        """Add columns missing from databases created by older versions."""
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(nodes)")}
        if "decayed_at" not in columns:
            self._conn.execute("ALTER TABLE nodes ADD COLUMN decayed_at INTEGER")
            logger.info("[GraphDatabase] Added nodes.decayed_at column")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug(f"[GraphDatabase] Closed {self.db_path}")

    def __enter__(self) -> "GraphDatabase":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise MnemoGraphError(
                "GraphDatabase is not initialized; call initialize() first",
                {"db_path": self.db_path},
                error_code="DATABASE_NOT_INITIALIZED",
                recoverable=False,
            )
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        BEGIN/COMMIT at the outermost level, SAVEPOINT when nested.

        A nested block that fails rolls back only to its savepoint; the
        exception still propagates to the enclosing block.
        """
        with self._lock:
            conn = self._connection()
            if self._tx_depth == 0:
                conn.execute("BEGIN IMMEDIATE")
                self._tx_depth = 1
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                else:
                    conn.execute("COMMIT")
                finally:
                    self._tx_depth = 0
            else:
                self._tx_depth += 1
                savepoint = f"sp_{self._tx_depth}"
                conn.execute(f"SAVEPOINT {savepoint}")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                        conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                    raise
                else:
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                finally:
                    self._tx_depth -= 1

    def _fetchall(self, sql: str, params: Sequence[Any] = (), operation: str = "query") -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise wrap_storage_exception(self.BACKEND, operation, exc) from exc

    def _scalar(self, sql: str, params: Sequence[Any] = (), operation: str = "query") -> Any:
        rows = self._fetchall(sql, params, operation)
        return rows[0][0] if rows else None

    def _audit(self, conn: sqlite3.Connection, operation: str, entity_type: str,
               entity_id: str, details: Optional[dict] = None) -> None:
        if not self.audit:
            return
        conn.execute(
            "INSERT INTO audit_log (operation, entity_type, entity_id, timestamp, details) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                operation,
                entity_type,
                entity_id,
                to_epoch_ms(utc_now()),
                json.dumps(details, default=_json_default) if details else None,
            ),
        )

    # ── Node CRUD ─────────────────────────────────────────────────────

    def create_node(self, data: Union[MemoryNode, Mapping[str, Any]]) -> MemoryNode:
        """
        Insert a node. Missing id/timestamps are generated.

        Raises:
            ConstraintError: If a node with the same id already exists.
            ValidationError: If ``data`` has unknown fields or bad enum values.
        """
        node = self._build(MemoryNode, NODE_FIELDS, data)
        now = utc_now()
        node.created_at = now
        node.updated_at = now
        row = _node_to_row(node)
        cols = sorted(row)
        sql = f"INSERT INTO nodes ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})"
        try:
            with self._transaction() as conn:
                conn.execute(sql, [row[c] for c in cols])
                self._audit(conn, "create", "node", node.id, {"type": node.type.value})
                stored = self._get_node_locked(conn, node.id)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "create_node", exc, "node", node.id) from exc
        logger.debug(f"[GraphDatabase] Created node {node.id} ({node.type.value})")
        return stored

    def get_node(self, node_id: str) -> Optional[MemoryNode]:
        """Return the node or None. Never raises on a miss."""
        rows = self._fetchall("SELECT * FROM nodes WHERE id = ?", (node_id,), "get_node")
        return _row_to_node(rows[0]) if rows else None

    def _get_node_locked(self, conn: sqlite3.Connection, node_id: str) -> MemoryNode:
        row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        if row is None:
            raise NotFoundError("node", node_id)
        return _row_to_node(row)

    def update_node(self, node_id: str, partial: Mapping[str, Any]) -> MemoryNode:
        """
        Merge ``partial`` into the stored node and bump ``updated_at``.

        Raises:
            NotFoundError: If the node does not exist.
            ValidationError: On unknown or immutable fields.
        """
        assignments, params = self._assignments(_NODES, partial)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE nodes SET {assignments} WHERE id = ?", [*params, node_id]
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("node", node_id)
                self._audit(conn, "update", "node", node_id, {"fields": sorted(partial)})
                return self._get_node_locked(conn, node_id)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "update_node", exc, "node", node_id) from exc

    def delete_node(self, node_id: str) -> None:
        """
        Hard-delete the node row only. Its edges are left in place and become
        orphans until the pruning engine's cleanup pass removes them.

        Raises:
            NotFoundError: If the node does not exist.
        """
        try:
            with self._transaction() as conn:
                cursor = conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
                if cursor.rowcount == 0:
                    raise NotFoundError("node", node_id)
                self._audit(conn, "delete", "node", node_id)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "delete_node", exc, "node", node_id) from exc
        logger.debug(f"[GraphDatabase] Deleted node {node_id}")

    # ── Edge CRUD ─────────────────────────────────────────────────────

    def create_edge(
        self,
        data: Union[MemoryEdge, Mapping[str, Any], None],
        source_id: str,
        target_id: str,
    ) -> MemoryEdge:
        """
        Insert an edge between two existing nodes.

        Raises:
            ConstraintError: On id collision or when an endpoint does not exist.
        """
        payload = dict(data.to_dict() if isinstance(data, MemoryEdge) else (data or {}))
        payload["source_id"] = source_id
        payload["target_id"] = target_id
        edge = self._build(MemoryEdge, EDGE_FIELDS, payload)
        now = utc_now()
        edge.created_at = now
        edge.updated_at = now
        row = _edge_to_row(edge)
        cols = sorted(row)
        sql = f"INSERT INTO edges ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})"
        try:
            with self._transaction() as conn:
                for endpoint in (source_id, target_id):
                    if conn.execute("SELECT 1 FROM nodes WHERE id = ?", (endpoint,)).fetchone() is None:
                        raise ConstraintError("edge", edge.id, f"Endpoint node '{endpoint}' does not exist")
                conn.execute(sql, [row[c] for c in cols])
                self._audit(conn, "create", "edge", edge.id,
                            {"source_id": source_id, "target_id": target_id, "type": edge.type.value})
                stored = self._get_edge_locked(conn, edge.id)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "create_edge", exc, "edge", edge.id) from exc
        logger.debug(f"[GraphDatabase] Created edge {edge.id} {source_id} -> {target_id}")
        return stored

    def get_edge(self, edge_id: str) -> Optional[MemoryEdge]:
        rows = self._fetchall("SELECT * FROM edges WHERE id = ?", (edge_id,), "get_edge")
        return _row_to_edge(rows[0]) if rows else None

    def _get_edge_locked(self, conn: sqlite3.Connection, edge_id: str) -> MemoryEdge:
        row = conn.execute("SELECT * FROM edges WHERE id = ?", (edge_id,)).fetchone()
        if row is None:
            raise NotFoundError("edge", edge_id)
        return _row_to_edge(row)

    def update_edge(self, edge_id: str, partial: Mapping[str, Any]) -> MemoryEdge:
        assignments, params = self._assignments(_EDGES, partial)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE edges SET {assignments} WHERE id = ?", [*params, edge_id]
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("edge", edge_id)
                self._audit(conn, "update", "edge", edge_id, {"fields": sorted(partial)})
                return self._get_edge_locked(conn, edge_id)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "update_edge", exc, "edge", edge_id) from exc

    def delete_edge(self, edge_id: str) -> None:
        try:
            with self._transaction() as conn:
                cursor = conn.execute("DELETE FROM edges WHERE id = ?", (edge_id,))
                if cursor.rowcount == 0:
                    raise NotFoundError("edge", edge_id)
                self._audit(conn, "delete", "edge", edge_id)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "delete_edge", exc, "edge", edge_id) from exc
        logger.debug(f"[GraphDatabase] Deleted edge {edge_id}")

    def get_edges_for_node(self, node_id: str) -> List[MemoryEdge]:
        """All edges where the node is either source or target."""
        rows = self._fetchall(
            "SELECT * FROM edges WHERE source_id = ? "
            "UNION SELECT * FROM edges WHERE target_id = ? "
            "ORDER BY created_at, id",
            (node_id, node_id),
            "get_edges_for_node",
        )
        return [_row_to_edge(r) for r in rows]

    # ── Helpers for CRUD ──────────────────────────────────────────────

    @staticmethod
    def _build(model: type, fields: FrozenSet[str], data: Any) -> Any:
        if isinstance(data, model):
            return model.from_dict(data.to_dict())
        if not isinstance(data, Mapping):
            raise ValidationError("data", f"expected {model.__name__} or mapping", type(data).__name__)
        unknown = set(data) - fields
        if unknown:
            raise ValidationError("data", f"unknown fields {sorted(unknown)}")
        payload = {k: v for k, v in data.items() if v is not None or k == "temporal"}
        if not payload.get("id"):
            payload["id"] = str(uuid.uuid4())
        return model(**payload)

    @staticmethod
    def _assignments(spec: _TableSpec, partial: Mapping[str, Any]) -> Tuple[str, List[Any]]:
        if not partial:
            raise ValidationError("partial", "update requires at least one field")
        unknown = set(partial) - spec.columns
        if unknown:
            raise ValidationError("partial", f"unknown {spec.entity} fields {sorted(unknown)}")
        immutable = set(partial) & _IMMUTABLE
        if immutable:
            raise ValidationError("partial", f"fields {sorted(immutable)} cannot be updated")
        values = {col: _encode_value(spec, col, val) for col, val in partial.items()}
        # An explicit updated_at is kept (imports, replays); otherwise bump to now
        if values.get("updated_at") is None:
            values["updated_at"] = to_epoch_ms(utc_now())
        cols = sorted(values)
        return ", ".join(f"{c} = ?" for c in cols), [values[c] for c in cols]

    # ── Queries ───────────────────────────────────────────────────────

    @staticmethod
    def _where(spec: _TableSpec, filters: Sequence[QueryFilter]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for flt in filters:
            if not isinstance(flt, QueryFilter):
                flt = QueryFilter(**flt)
            if flt.field not in spec.columns:
                raise ValidationError("field", f"unknown {spec.entity} field", flt.field)
            column = flt.field
            op = flt.operator
            if op is FilterOperator.CONTAINS:
                needle = flt.value.value if isinstance(flt.value, Enum) else str(flt.value)
                clauses.append(f"{column} LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(needle)}%")
            elif op in (FilterOperator.IN, FilterOperator.NIN):
                values = list(flt.value or [])
                if not values:
                    # Empty IN matches nothing, empty NOT IN matches everything
                    clauses.append("0" if op is FilterOperator.IN else "1")
                    continue
                keyword = "IN" if op is FilterOperator.IN else "NOT IN"
                clauses.append(f"{column} {keyword} ({', '.join('?' for _ in values)})")
                params.extend(_encode_scalar(spec, column, v) for v in values)
            elif flt.value is None and op in (FilterOperator.EQ, FilterOperator.NE):
                clauses.append(f"{column} IS {'NOT ' if op is FilterOperator.NE else ''}NULL")
            else:
                if column in spec.json_columns:
                    raise ValidationError("operator", f"'{op.value}' is not supported on JSON field", column)
                clauses.append(f"{column} {_SQL_OPERATORS[op]} ?")
                params.append(_encode_scalar(spec, column, flt.value))
        return (" AND ".join(clauses) if clauses else "1"), params

    def _query(self, spec: _TableSpec, query: GraphQuery, convert: Callable[[sqlite3.Row], T],
               operation: str) -> QueryResult:
        if query.order_by not in spec.columns:
            raise ValidationError("order_by", f"unknown {spec.entity} field", query.order_by)
        if query.limit is not None and query.limit < 0:
            raise ValidationError("limit", "must be non-negative", query.limit)
        if query.offset < 0:
            raise ValidationError("offset", "must be non-negative", query.offset)
        where, params = self._where(spec, query.filters)
        direction = "DESC" if query.descending else "ASC"
        limit = query.limit if query.limit is not None else -1
        with self._lock:
            total = self._scalar(f"SELECT COUNT(*) FROM {spec.name} WHERE {where}", params, operation)
            rows = self._fetchall(
                f"SELECT * FROM {spec.name} WHERE {where} "
                f"ORDER BY {query.order_by} {direction}, id ASC LIMIT ? OFFSET ?",
                [*params, limit, query.offset],
                operation,
            )
        return QueryResult(results=[convert(r) for r in rows], total=int(total or 0))

    def query_nodes(self, query: Optional[GraphQuery] = None) -> QueryResult:
        """Filtered, paginated node query. ``total`` ignores limit/offset."""
        return self._query(_NODES, query or GraphQuery(), _row_to_node, "query_nodes")

    def query_edges(self, query: Optional[GraphQuery] = None) -> QueryResult:
        return self._query(_EDGES, query or GraphQuery(), _row_to_edge, "query_edges")

    def _iter_pages(self, spec: _TableSpec, filters: Sequence[QueryFilter], page_size: Optional[int],
                    convert: Callable[[sqlite3.Row], T], operation: str) -> Iterator[List[T]]:
        size = page_size or self.page_size
        where, params = self._where(spec, filters)
        last_id = ""
        while True:
            # The lock is released between pages
            rows = self._fetchall(
                f"SELECT * FROM {spec.name} WHERE ({where}) AND id > ? ORDER BY id LIMIT ?",
                [*params, last_id, size],
                operation,
            )
            if not rows:
                return
            last_id = rows[-1]["id"]
            yield [convert(r) for r in rows]
            if len(rows) < size:
                return

    def iter_node_pages(self, filters: Sequence[QueryFilter] = (),
                        page_size: Optional[int] = None) -> Iterator[List[MemoryNode]]:
        """Keyset-paginated scan over nodes, one bounded page at a time."""
        return self._iter_pages(_NODES, filters, page_size, _row_to_node, "iter_nodes")

    def iter_edge_pages(self, filters: Sequence[QueryFilter] = (),
                        page_size: Optional[int] = None) -> Iterator[List[MemoryEdge]]:
        return self._iter_pages(_EDGES, filters, page_size, _row_to_edge, "iter_edges")

    def find_orphaned_edge_ids(self, limit: Optional[int] = None) -> List[str]:
        """Ids of edges whose source or target node row no longer exists."""
        rows = self._fetchall(
            "SELECT e.id FROM edges e "
            "LEFT JOIN nodes s ON s.id = e.source_id "
            "LEFT JOIN nodes t ON t.id = e.target_id "
            "WHERE s.id IS NULL OR t.id IS NULL "
            "ORDER BY e.id LIMIT ?",
            (limit if limit is not None else -1,),
            "find_orphaned_edges",
        )
        return [r["id"] for r in rows]

    # ── Batches & transactions ────────────────────────────────────────

    def batch_operations(self, ops: Sequence[BatchOperation],
                         token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Apply create/update/delete operations in chunks of ``chunk_size``.

        Each chunk runs in one transaction with every operation isolated in
        its own savepoint: a failing operation is recorded in ``errors`` and
        rolled back alone, its siblings still commit. Never raises for
        individual failures. When ``token`` is cancelled the remaining
        chunks are skipped and ``"cancelled"`` is reported.
        """
        result = BatchResult()
        for start in range(0, len(ops), self.chunk_size):
            if token is not None and token.is_cancelled:
                result.errors.append("cancelled")
                logger.info(f"[GraphDatabase] Batch cancelled at operation {start}/{len(ops)}")
                break
            chunk = ops[start:start + self.chunk_size]
            nodes_done = edges_done = 0
            chunk_errors: List[str] = []
            try:
                with self._transaction():
                    for index, op in enumerate(chunk, start):
                        try:
                            if not isinstance(op, BatchOperation):
                                op = BatchOperation(**op)
                            self._apply(op)
                        except Exception as exc:
                            chunk_errors.append(f"operation {index}: {exc}")
                            logger.warning(f"[GraphDatabase] Batch operation {index} failed: {exc}")
                            continue
                        if op.target is BatchTarget.NODE:
                            nodes_done += 1
                        else:
                            edges_done += 1
            except (MnemoGraphError, sqlite3.Error) as exc:
                # BEGIN or COMMIT failed; nothing from this chunk was kept
                result.errors.append(f"chunk starting at {start}: {exc}")
                logger.error(f"[GraphDatabase] Batch chunk at {start} failed: {exc}")
                continue
            result.affected_nodes += nodes_done
            result.affected_edges += edges_done
            result.errors.extend(chunk_errors)
        logger.debug(
            f"[GraphDatabase] Batch of {len(ops)} ops: {result.affected_nodes} nodes, "
            f"{result.affected_edges} edges, {len(result.errors)} errors"
        )
        return result

    def _apply(self, op: BatchOperation) -> None:
        node = op.target is BatchTarget.NODE
        if op.op is BatchOpType.CREATE:
            data = dict(op.data or {})
            if op.id:
                data["id"] = op.id
            if node:
                self.create_node(data)
            else:
                source_id = data.pop("source_id", None)
                target_id = data.pop("target_id", None)
                if not source_id or not target_id:
                    raise ValidationError("data", "edge create requires source_id and target_id")
                self.create_edge(data, source_id, target_id)
            return
        if not op.id:
            raise ValidationError("id", f"{op.op.value} requires an id")
        if op.op is BatchOpType.UPDATE:
            if node:
                self.update_node(op.id, op.data or {})
            else:
                self.update_edge(op.id, op.data or {})
        elif node:
            self.delete_node(op.id)
        else:
            self.delete_edge(op.id)

    def execute_in_transaction(self, fn: Callable[[], T]) -> T:
        """
        Run ``fn`` inside BEGIN/COMMIT. Any exception rolls everything back
        and propagates. Calls nested inside ``fn`` join this transaction.
        """
        try:
            with self._transaction():
                return fn()
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "execute_in_transaction", exc) from exc

    # ── Stats & maintenance ───────────────────────────────────────────

    def get_stats(self) -> GraphStats:
        """
        Counts for the whole graph. Active nodes are those not soft-pruned;
        active edges are those whose endpoints both exist and are active.
        """
        with self._lock:
            total_nodes = self._scalar("SELECT COUNT(*) FROM nodes", (), "get_stats")
            active_nodes = self._scalar("SELECT COUNT(*) FROM nodes WHERE is_pruned = 0", (), "get_stats")
            total_edges = self._scalar("SELECT COUNT(*) FROM edges", (), "get_stats")
            active_edges = self._scalar(
                "SELECT COUNT(*) FROM edges e "
                "JOIN nodes s ON s.id = e.source_id AND s.is_pruned = 0 "
                "JOIN nodes t ON t.id = e.target_id AND t.is_pruned = 0",
                (),
                "get_stats",
            )
        avg_degree = (2.0 * active_edges / active_nodes) if active_nodes else 0.0
        return GraphStats(
            total_nodes=total_nodes,
            total_edges=total_edges,
            active_nodes=active_nodes,
            active_edges=active_edges,
            average_degree=avg_degree,
            last_updated=utc_now(),
        )

    def update_stats(self) -> GraphStats:
        """
        Refresh each node's ``degree`` from the edges table (one chunk per
        transaction) and record a ``graph_stats`` snapshot.
        """
        for page in self.iter_node_pages(page_size=self.chunk_size):
            ids = [n.id for n in page]
            try:
                with self._transaction() as conn:
                    conn.executemany(
                        "UPDATE nodes SET degree = "
                        "(SELECT COUNT(*) FROM edges WHERE source_id = ?) + "
                        "(SELECT COUNT(*) FROM edges WHERE target_id = ? AND source_id != ?) "
                        "WHERE id = ?",
                        [(i, i, i, i) for i in ids],
                    )
            except sqlite3.Error as exc:
                raise wrap_storage_exception(self.BACKEND, "update_stats", exc) from exc
        stats = self.get_stats()
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO graph_stats (total_nodes, total_edges, active_nodes, active_edges, "
                    "average_degree, recorded_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        stats.total_nodes,
                        stats.total_edges,
                        stats.active_nodes,
                        stats.active_edges,
                        stats.average_degree,
                        to_epoch_ms(stats.last_updated),
                    ),
                )
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "update_stats", exc) from exc
        logger.info(
            f"[GraphDatabase] Stats: {stats.active_nodes}/{stats.total_nodes} nodes, "
            f"{stats.active_edges}/{stats.total_edges} edges"
        )
        return stats

    def get_stats_history(self, limit: int = 20) -> List[GraphStats]:
        rows = self._fetchall(
            "SELECT * FROM graph_stats ORDER BY id DESC LIMIT ?", (limit,), "get_stats_history"
        )
        return [
            GraphStats(
                total_nodes=r["total_nodes"],
                total_edges=r["total_edges"],
                active_nodes=r["active_nodes"],
                active_edges=r["active_edges"],
                average_degree=r["average_degree"],
                last_updated=from_epoch_ms(r["recorded_at"]),
            )
            for r in rows
        ]

    def vacuum(self) -> None:
        """Reclaim free pages and refresh planner statistics."""
        with self._lock:
            if self._tx_depth:
                raise MnemoGraphError(
                    "vacuum() cannot run inside a transaction",
                    error_code="VACUUM_IN_TRANSACTION",
                    recoverable=False,
                )
            try:
                conn = self._connection()
                conn.execute("VACUUM")
                conn.execute("PRAGMA optimize")
            except sqlite3.Error as exc:
                raise wrap_storage_exception(self.BACKEND, "vacuum", exc) from exc
        logger.info(f"[GraphDatabase] Vacuumed {self.db_path}")

    def backup(self, dest_path: Union[str, Path]) -> Path:
        """Online copy of the database to ``dest_path``."""
        dest = Path(dest_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        target = sqlite3.connect(str(dest))
        try:
            with self._lock:
                self._connection().backup(target)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.BACKEND, "backup", exc) from exc
        finally:
            target.close()
        logger.info(f"[GraphDatabase] Backed up to {dest}")
        return dest

    def get_audit_log(self, entity_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent audit entries first."""
        if entity_id is None:
            rows = self._fetchall(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,), "get_audit_log"
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM audit_log WHERE entity_id = ? ORDER BY id DESC LIMIT ?",
                (entity_id, limit),
                "get_audit_log",
            )
        return [
            {
                "operation": r["operation"],
                "entity_type": r["entity_type"],
                "entity_id": r["entity_id"],
                "timestamp": from_epoch_ms(r["timestamp"]),
                "details": json.loads(r["details"]) if r["details"] else None,
            }
            for r in rows
        ]
