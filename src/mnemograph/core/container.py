"""
Dependency Injection Container
==============================
Builds and wires the graph database and its maintenance engines.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .config import GraphConfig
from .decay import MemoryDecayEngine
from .graph_database import GraphDatabase
from .pruning import GraphPruningEngine
from .semantic import SemanticSimilarityEngine


@dataclass
class Container:
    """
    Container holding all wired application dependencies.
    """
    config: GraphConfig
    database: Optional[GraphDatabase] = None
    decay: Optional[MemoryDecayEngine] = None
    pruning: Optional[GraphPruningEngine] = None
    semantic: Optional[SemanticSimilarityEngine] = None

    def close(self) -> None:
        if self.database is not None:
            self.database.close()

    def __enter__(self) -> "Container":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_container(config: GraphConfig, db_path: Optional[str] = None) -> Container:
    """
    Build and wire all application dependencies.

    Args:
        config: GraphConfig instance.
        db_path: Overrides ``config.database.path`` when given.

    Returns:
        Container with an initialized database and validated engines.

    Raises:
        ConfigError: If an engine rejects its config section.
    """
    container = Container(config=config)

    database = GraphDatabase.from_config(config.database)
    if db_path is not None:
        database.db_path = str(db_path)
    database.initialize()
    container.database = database

    try:
        container.decay = MemoryDecayEngine(database, config.decay)
        container.pruning = GraphPruningEngine(database, config.pruning)
        container.semantic = SemanticSimilarityEngine(database, config.semantic)
    except Exception:
        database.close()
        raise

    logger.debug(f"[Container] Wired engines for {database.db_path}")
    return container
