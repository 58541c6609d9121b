"""
MnemoGraph Core Module
======================

Storage:
    - GraphDatabase: SQLite node/edge store with queries, batches and audit log

Maintenance Engines:
    - MemoryDecayEngine: time-based relevance erosion and access boosts
    - GraphPruningEngine: bounded-size eviction and orphan cleanup
    - SemanticSimilarityEngine: lexical similarity and semantic edge inference

Configuration:
    All settings are loaded from config.yaml via the config module.
"""

from .cancellation import CancellationToken
from .config import (
    DecayConfig,
    DecayFunction,
    GraphConfig,
    PruningConfig,
    PruningStrategy,
    SemanticConfig,
    load_config,
)
from .container import Container, build_container
from .decay import DecayResult, MemoryDecayEngine
from .exceptions import MnemoGraphError
from .graph_database import GraphDatabase
from .models import (
    BatchOperation,
    BatchResult,
    EdgeType,
    GraphQuery,
    GraphStats,
    MemoryEdge,
    MemoryNode,
    NodeType,
    QueryFilter,
    QueryResult,
)
from .pruning import GraphPruningEngine, PruneResult
from .semantic import SemanticSimilarityEngine

__all__ = [
    "CancellationToken",
    "DecayConfig",
    "DecayFunction",
    "GraphConfig",
    "PruningConfig",
    "PruningStrategy",
    "SemanticConfig",
    "load_config",
    "Container",
    "build_container",
    "DecayResult",
    "MemoryDecayEngine",
    "MnemoGraphError",
    "GraphDatabase",
    "BatchOperation",
    "BatchResult",
    "EdgeType",
    "GraphQuery",
    "GraphStats",
    "MemoryEdge",
    "MemoryNode",
    "NodeType",
    "QueryFilter",
    "QueryResult",
    "GraphPruningEngine",
    "PruneResult",
    "SemanticSimilarityEngine",
]
