"""
MnemoGraph Configuration System
===============================
Frozen dataclass configuration with YAML loading and environment variable
overrides.

Priority: ENV (MNEMOGRAPH_<KEY>) > YAML (``mnemograph:`` root key) > defaults.

Engine-specific semantic validation (ranges, weight sums) happens when an
engine is constructed, so configs built directly in code are checked the
same way as configs loaded from disk.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, FrozenSet, Optional

import yaml

from mnemograph.core.exceptions import ConfigError


# ------------------------------------------------------------------ #
#  Constants                                                          #
# ------------------------------------------------------------------ #

HOUR_MS: int = 60 * 60 * 1000
DAY_MS: int = 24 * HOUR_MS

ENV_PREFIX = "MNEMOGRAPH_"


# ------------------------------------------------------------------ #
#  Enums                                                              #
# ------------------------------------------------------------------ #

class DecayFunction(str, Enum):
    """Relevance erosion curves."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    LOGARITHMIC = "logarithmic"


class PruningStrategy(str, Enum):
    """How the pruning engine selects nodes for eviction."""
    RELEVANCE = "relevance"
    SIZE = "size"
    AGE = "age"
    HYBRID = "hybrid"
    CUSTOM = "custom"


# ------------------------------------------------------------------ #
#  Sections                                                           #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class DatabaseConfig:
    path: str = "./data/memory_graph.db"
    chunk_size: int = 100
    page_size: int = 500
    timeout: float = 30.0


@dataclass(frozen=True)
class DecayConfig:
    enabled: bool = True
    decay_function: DecayFunction = DecayFunction.EXPONENTIAL
    decay_rate: float = 0.1
    min_relevance_threshold: float = 0.1
    max_age_ms: int = 30 * DAY_MS
    force_decay: bool = False
    min_elapsed_ms: int = 60 * 1000  # nodes touched within the last minute are skipped
    access_boost: float = 1.2
    edge_boost: float = 1.1


@dataclass(frozen=True)
class ImportancePolicy:
    """Weights for the composite importance score that exempts nodes from pruning."""
    threshold: float = 0.7
    degree_weight: float = 0.25
    centrality_weight: float = 0.35
    access_weight: float = 0.25
    clustering_weight: float = 0.15
    degree_norm: float = 10.0
    access_norm: float = 20.0
    protected_tags: FrozenSet[str] = frozenset({"critical", "important", "pinned"})


@dataclass(frozen=True)
class PruningConfig:
    enabled: bool = True
    strategy: PruningStrategy = PruningStrategy.HYBRID
    prune_interval_ms: int = HOUR_MS
    max_nodes: int = 10_000
    max_edges: int = 50_000
    min_relevance_threshold: float = 0.1
    keep_recent_ms: int = 7 * DAY_MS
    force_prune: bool = False
    min_edge_weight: Optional[float] = None
    custom_pruning_function: Optional[Callable[[Any], bool]] = None
    importance: ImportancePolicy = field(default_factory=ImportancePolicy)


@dataclass(frozen=True)
class SimilarityWeights:
    content: float = 0.5
    tags: float = 0.3
    metadata: float = 0.2


@dataclass(frozen=True)
class NLPConfig:
    use_stemming: bool = True
    use_stop_words: bool = True
    use_synonyms: bool = False
    language: str = "en"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Reserved for a vector similarity backend; unused by the lexical path."""
    enabled: bool = False
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384


@dataclass(frozen=True)
class SemanticConfig:
    enabled: bool = True
    min_similarity: float = 0.3
    max_edges_per_node: int = 10
    similarity_weights: SimilarityWeights = field(default_factory=SimilarityWeights)
    nlp: NLPConfig = field(default_factory=NLPConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    candidate_pool_size: int = 200
    same_type_boost: float = 1.1


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"


@dataclass(frozen=True)
class GraphConfig:
    """Root configuration for a memory graph."""

    version: str = "1.0"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    decay: DecayConfig = field(default_factory=DecayConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)
    semantic: SemanticConfig = field(default_factory=SemanticConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


# ------------------------------------------------------------------ #
#  Loading                                                            #
# ------------------------------------------------------------------ #

def _env_override(key: str, default):
    """Check for MNEMOGRAPH_<KEY> environment variable override."""
    env_key = f"{ENV_PREFIX}{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    if isinstance(default, bool):
        return val.lower() in ("true", "1", "yes")
    if isinstance(default, int):
        return int(val)
    if isinstance(default, float):
        return float(val)
    return val


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(
            config_key=name,
            reason=f"expected a mapping, got {type(value).__name__}",
        )
    return value


def _build_database(raw: dict) -> DatabaseConfig:
    d = DatabaseConfig()
    return DatabaseConfig(
        path=_env_override("DB_PATH", raw.get("path", d.path)),
        chunk_size=_env_override("DB_CHUNK_SIZE", raw.get("chunk_size", d.chunk_size)),
        page_size=_env_override("DB_PAGE_SIZE", raw.get("page_size", d.page_size)),
        timeout=_env_override("DB_TIMEOUT", float(raw.get("timeout", d.timeout))),
    )


def _build_decay(raw: dict) -> DecayConfig:
    d = DecayConfig()
    return DecayConfig(
        enabled=_env_override("DECAY_ENABLED", raw.get("enabled", d.enabled)),
        decay_function=_env_override("DECAY_FUNCTION", raw.get("decay_function", d.decay_function.value)),
        decay_rate=_env_override("DECAY_RATE", float(raw.get("decay_rate", d.decay_rate))),
        min_relevance_threshold=_env_override(
            "DECAY_MIN_RELEVANCE_THRESHOLD",
            float(raw.get("min_relevance_threshold", d.min_relevance_threshold)),
        ),
        max_age_ms=_env_override("DECAY_MAX_AGE_MS", raw.get("max_age_ms", d.max_age_ms)),
        force_decay=_env_override("DECAY_FORCE", raw.get("force_decay", d.force_decay)),
        min_elapsed_ms=_env_override("DECAY_MIN_ELAPSED_MS", raw.get("min_elapsed_ms", d.min_elapsed_ms)),
        access_boost=float(raw.get("access_boost", d.access_boost)),
        edge_boost=float(raw.get("edge_boost", d.edge_boost)),
    )


def _build_importance(raw: dict) -> ImportancePolicy:
    d = ImportancePolicy()
    tags = raw.get("protected_tags")
    return ImportancePolicy(
        threshold=float(raw.get("threshold", d.threshold)),
        degree_weight=float(raw.get("degree_weight", d.degree_weight)),
        centrality_weight=float(raw.get("centrality_weight", d.centrality_weight)),
        access_weight=float(raw.get("access_weight", d.access_weight)),
        clustering_weight=float(raw.get("clustering_weight", d.clustering_weight)),
        degree_norm=float(raw.get("degree_norm", d.degree_norm)),
        access_norm=float(raw.get("access_norm", d.access_norm)),
        protected_tags=frozenset(tags) if tags is not None else d.protected_tags,
    )


def _build_pruning(raw: dict) -> PruningConfig:
    d = PruningConfig()
    min_edge_weight = raw.get("min_edge_weight", d.min_edge_weight)
    return PruningConfig(
        enabled=_env_override("PRUNING_ENABLED", raw.get("enabled", d.enabled)),
        strategy=_env_override("PRUNING_STRATEGY", raw.get("strategy", d.strategy.value)),
        prune_interval_ms=_env_override("PRUNING_INTERVAL_MS", raw.get("prune_interval_ms", d.prune_interval_ms)),
        max_nodes=_env_override("PRUNING_MAX_NODES", raw.get("max_nodes", d.max_nodes)),
        max_edges=_env_override("PRUNING_MAX_EDGES", raw.get("max_edges", d.max_edges)),
        min_relevance_threshold=_env_override(
            "PRUNING_MIN_RELEVANCE_THRESHOLD",
            float(raw.get("min_relevance_threshold", d.min_relevance_threshold)),
        ),
        keep_recent_ms=_env_override("PRUNING_KEEP_RECENT_MS", raw.get("keep_recent_ms", d.keep_recent_ms)),
        force_prune=_env_override("PRUNING_FORCE", raw.get("force_prune", d.force_prune)),
        min_edge_weight=float(min_edge_weight) if min_edge_weight is not None else None,
        importance=_build_importance(_section(raw, "importance")),
    )


def _build_semantic(raw: dict) -> SemanticConfig:
    d = SemanticConfig()
    weights_raw = _section(raw, "similarity_weights")
    nlp_raw = _section(raw, "nlp")
    emb_raw = _section(raw, "embedding")
    return SemanticConfig(
        enabled=_env_override("SEMANTIC_ENABLED", raw.get("enabled", d.enabled)),
        min_similarity=_env_override(
            "SEMANTIC_MIN_SIMILARITY", float(raw.get("min_similarity", d.min_similarity))
        ),
        max_edges_per_node=_env_override(
            "SEMANTIC_MAX_EDGES_PER_NODE", raw.get("max_edges_per_node", d.max_edges_per_node)
        ),
        similarity_weights=SimilarityWeights(
            content=float(weights_raw.get("content", d.similarity_weights.content)),
            tags=float(weights_raw.get("tags", d.similarity_weights.tags)),
            metadata=float(weights_raw.get("metadata", d.similarity_weights.metadata)),
        ),
        nlp=NLPConfig(
            use_stemming=nlp_raw.get("use_stemming", d.nlp.use_stemming),
            use_stop_words=nlp_raw.get("use_stop_words", d.nlp.use_stop_words),
            use_synonyms=nlp_raw.get("use_synonyms", d.nlp.use_synonyms),
            language=nlp_raw.get("language", d.nlp.language),
        ),
        embedding=EmbeddingConfig(
            enabled=emb_raw.get("enabled", d.embedding.enabled),
            model=emb_raw.get("model", d.embedding.model),
            dimension=emb_raw.get("dimension", d.embedding.dimension),
        ),
        candidate_pool_size=_env_override(
            "SEMANTIC_CANDIDATE_POOL_SIZE", raw.get("candidate_pool_size", d.candidate_pool_size)
        ),
        same_type_boost=float(raw.get("same_type_boost", d.same_type_boost)),
    )


def load_config(path: Optional[Path] = None) -> GraphConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Priority: ENV > YAML > defaults.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml and the
            repository root.

    Returns:
        GraphConfig instance.

    Raises:
        ConfigError: If a section has the wrong shape.
        FileNotFoundError: If ``path`` is given explicitly and does not exist.
    """
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path(__file__).parent.parent.parent.parent / "config.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break
    else:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

    raw = {}
    if path is not None and path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(config_key="<root>", reason="config file must contain a mapping")
        raw = loaded.get("mnemograph") or {}

    obs_raw = _section(raw, "observability")
    observability = ObservabilityConfig(
        log_level=_env_override("LOG_LEVEL", obs_raw.get("log_level", "INFO")),
    )

    return GraphConfig(
        version=str(raw.get("version", "1.0")),
        database=_build_database(_section(raw, "database")),
        decay=_build_decay(_section(raw, "decay")),
        pruning=_build_pruning(_section(raw, "pruning")),
        semantic=_build_semantic(_section(raw, "semantic")),
        observability=observability,
    )


__all__ = [
    "HOUR_MS",
    "DAY_MS",
    "DecayFunction",
    "PruningStrategy",
    "DatabaseConfig",
    "DecayConfig",
    "ImportancePolicy",
    "PruningConfig",
    "SimilarityWeights",
    "NLPConfig",
    "EmbeddingConfig",
    "SemanticConfig",
    "ObservabilityConfig",
    "GraphConfig",
    "load_config",
]
