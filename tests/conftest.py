import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from mnemograph.core.graph_database import GraphDatabase  # noqa: E402
from mnemograph.core.models import MemoryEdge, MemoryNode, utc_now  # noqa: E402


# =============================================================================
# Environment
# =============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop MNEMOGRAPH_* overrides inherited from the shell."""
    for key in list(os.environ):
        if key.startswith("MNEMOGRAPH_"):
            monkeypatch.delenv(key, raising=False)
    yield


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def db(tmp_path) -> Iterator[GraphDatabase]:
    """Initialized on-disk database in a temporary directory."""
    database = GraphDatabase(tmp_path / "graph.db", chunk_size=10, page_size=7)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def make_node(db) -> Callable[..., MemoryNode]:
    """
    Factory creating stored nodes.

    ``age_hours`` backdates ``last_accessed``; remaining kwargs are node fields.

    Usage:
        node = make_node(content="Reviewed PR", relevance_score=0.4, age_hours=48)
    """
    def _make(age_hours: float = 0.0, **fields) -> MemoryNode:
        if age_hours:
            fields.setdefault("last_accessed", utc_now() - timedelta(hours=age_hours))
        fields.setdefault("content", "memory")
        return db.create_node(fields)

    return _make


@pytest.fixture
def make_edge(db) -> Callable[..., MemoryEdge]:
    """Factory creating stored edges between two existing node ids."""
    def _make(source_id: str, target_id: str, **fields) -> MemoryEdge:
        return db.create_edge(fields, source_id, target_id)

    return _make
