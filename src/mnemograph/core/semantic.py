"""
Semantic Similarity Engine
==========================
Lexical/statistical similarity between memory nodes and inference of
``semantic`` edges.

Similarity between two nodes is a weighted sum of three signals:

  content   strongest of TF-IDF cosine (corpus relative), stemmed keyword
            Jaccard and concept-overlap Jaccard
  tags      Jaccard over tag sets
  metadata  agreement of values on shared keys, averaged over all keys

A signal that neither node carries (no tags on either side, for example)
drops out and its weight is spread over the remaining signals, so any
node is maximally similar to itself.

The embedding section of the config is parsed and validated only; vector
similarity is not part of this engine.

Public API:
    engine = SemanticSimilarityEngine(db, SemanticConfig(min_similarity=0.4))
    engine.build_search_index()                  # scheduled, never raises
    created = engine.create_semantic_edges(node_id)
    hits = engine.search_nodes("quarterly report", limit=5)
"""

from __future__ import annotations

import math
import threading
from numbers import Real
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .cancellation import CancellationToken, check_cancelled
from .config import SemanticConfig
from .exceptions import ConfigError, OperationCancelledError
from .graph_database import GraphDatabase
from .models import EdgeType, GraphQuery, MemoryNode, QueryFilter, clamp_unit
from .text_analysis import TextAnalyzer, TfIdfIndex, jaccard


# ------------------------------------------------------------------ #
#  Constants                                                          #
# ------------------------------------------------------------------ #

WEIGHT_TOLERANCE: float = 1e-6

SUPPORTED_LANGUAGES = frozenset({"en"})


def validate_semantic_config(config: SemanticConfig) -> SemanticConfig:
    if not (0.0 <= config.min_similarity <= 1.0):
        raise ConfigError("min_similarity", "min_similarity must be between 0 and 1",
                          {"value": config.min_similarity})
    if config.max_edges_per_node <= 0:
        raise ConfigError("max_edges_per_node", "max_edges_per_node must be positive",
                          {"value": config.max_edges_per_node})
    w = config.similarity_weights
    if min(w.content, w.tags, w.metadata) < 0:
        raise ConfigError("similarity_weights", "similarity_weights must not be negative")
    if abs(w.content + w.tags + w.metadata - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigError("similarity_weights", "similarity_weights must sum to 1",
                          {"sum": w.content + w.tags + w.metadata})
    if config.nlp.language not in SUPPORTED_LANGUAGES:
        raise ConfigError("nlp.language", f"unsupported language '{config.nlp.language}'")
    if config.embedding.dimension <= 0:
        raise ConfigError("embedding.dimension", "embedding dimension must be positive")
    if config.candidate_pool_size <= 0:
        raise ConfigError("candidate_pool_size", "candidate_pool_size must be positive")
    if config.same_type_boost < 1.0:
        raise ConfigError("same_type_boost", "same_type_boost must be >= 1")
    return config


def _value_similarity(a: Any, b: Any) -> float:
    if isinstance(a, bool) or isinstance(b, bool):
        return 1.0 if a == b else 0.0
    if isinstance(a, Real) and isinstance(b, Real):
        if a == b:
            return 1.0
        scale = max(abs(a), abs(b))
        if scale == 0 or math.isnan(scale):
            return 0.0
        return clamp_unit(1.0 - abs(a - b) / scale)
    if isinstance(a, str) and isinstance(b, str):
        return 1.0 if a.strip().lower() == b.strip().lower() else 0.0
    return 1.0 if a == b else 0.0


class SemanticSimilarityEngine:
    """
    Builds a TF-IDF index over active node content and links similar nodes.

    ``build_search_index`` and ``create_semantic_edges`` are scheduled jobs
    and never raise. The index is replaced atomically on each rebuild so
    concurrent similarity calls always see a complete index.
    """

    def __init__(self, db: GraphDatabase, config: Optional[SemanticConfig] = None) -> None:
        self.db = db
        self.config = validate_semantic_config(config or SemanticConfig())
        self.analyzer = TextAnalyzer(self.config.nlp)
        self._index = TfIdfIndex(self.analyzer.analyze)
        self._index_lock = threading.Lock()
        if self.config.embedding.enabled:
            logger.warning(
                f"[SemanticEngine] Embedding backend '{self.config.embedding.model}' is reserved; "
                f"using lexical similarity"
            )

    @property
    def index(self) -> TfIdfIndex:
        return self._index

    # ---- Index --------------------------------------------------- #

    def build_search_index(self, token: Optional[CancellationToken] = None) -> int:
        """
        Rebuild the corpus from all active nodes, page by page, and return
        the number of indexed documents. On any failure or cancellation the
        previous index stays in place and 0 is returned.
        """
        if not self.config.enabled:
            return 0
        documents: List[Tuple[str, str]] = []
        try:
            for page in self.db.iter_node_pages([QueryFilter("is_pruned", "eq", False)]):
                check_cancelled(token, "build_search_index")
                documents.extend((n.id, n.content) for n in page if n.content)
            fresh = TfIdfIndex(self.analyzer.analyze).build(documents)
        except OperationCancelledError:
            logger.info("[SemanticEngine] Index rebuild cancelled, keeping previous index")
            return 0
        except Exception as exc:
            logger.error(f"[SemanticEngine] Index rebuild failed, keeping previous index: {exc}")
            return 0

        with self._index_lock:
            self._index = fresh
        logger.info(f"[SemanticEngine] Indexed {len(fresh)} documents ({fresh.vocabulary_size} terms)")
        return len(fresh)

    # ---- Similarity signals -------------------------------------- #

    def calculate_content_similarity(self, a: MemoryNode, b: MemoryNode) -> float:
        """
        Strongest of TF-IDF cosine, stemmed keyword Jaccard and concept
        Jaccard. TF-IDF only counts once an index has been built.
        """
        text_a = (a.content or "").strip()
        text_b = (b.content or "").strip()
        if not text_a or not text_b:
            return 0.0
        if text_a.lower() == text_b.lower():
            return 1.0

        scores = [
            jaccard(self.analyzer.keywords(text_a), self.analyzer.keywords(text_b)),
            jaccard(self.analyzer.concept_keys(text_a), self.analyzer.concept_keys(text_b)),
        ]
        index = self._index
        if len(index):
            if a.id in index and b.id in index:
                scores.append(index.similarity(a.id, b.id))
            else:
                scores.append(index.text_similarity(text_a, text_b))
        return clamp_unit(max(scores))

    def calculate_tag_similarity(self, a: MemoryNode, b: MemoryNode) -> float:
        return jaccard({t.lower() for t in a.tags}, {t.lower() for t in b.tags})

    def calculate_metadata_similarity(self, a: MemoryNode, b: MemoryNode) -> float:
        if not a.metadata or not b.metadata:
            return 0.0
        shared = set(a.metadata) & set(b.metadata)
        if not shared:
            return 0.0
        union = set(a.metadata) | set(b.metadata)
        total = sum(_value_similarity(a.metadata[k], b.metadata[k]) for k in shared)
        return clamp_unit(total / len(union))

    def calculate_similarity(self, a: MemoryNode, b: MemoryNode) -> float:
        """Weighted blend of content, tag and metadata similarity in [0, 1]."""
        if not self.config.enabled:
            return 0.0
        w = self.config.similarity_weights
        signals = []
        if a.content or b.content:
            signals.append((w.content, self.calculate_content_similarity(a, b)))
        if a.tags or b.tags:
            signals.append((w.tags, self.calculate_tag_similarity(a, b)))
        if a.metadata or b.metadata:
            signals.append((w.metadata, self.calculate_metadata_similarity(a, b)))
        weight_sum = sum(weight for weight, _ in signals)
        if weight_sum <= 0:
            return 0.0
        return clamp_unit(sum(weight * score for weight, score in signals) / weight_sum)

    def extract_concepts(self, node: MemoryNode) -> List[str]:
        """Salient terms from the node's content; empty on failure."""
        try:
            return self.analyzer.extract_concepts(node.content or "")
        except Exception as exc:
            logger.warning(f"[SemanticEngine] Concept extraction failed for {node.id}: {exc}")
            return []

    # ---- Candidates ---------------------------------------------- #

    def _candidates(self, node: MemoryNode, pool_size: int,
                    token: Optional[CancellationToken]) -> List[MemoryNode]:
        """
        Lexically closest nodes from the index first, then other active
        nodes in id order until ``pool_size`` is reached.
        """
        candidates: Dict[str, MemoryNode] = {}
        ranked_ids = [doc_id for doc_id, _ in self._index.search(node.content, limit=pool_size + 1)
                      if doc_id != node.id][:pool_size]
        if ranked_ids:
            found = self.db.query_nodes(GraphQuery(filters=[
                QueryFilter("id", "in", ranked_ids),
                QueryFilter("is_pruned", "eq", False),
            ]))
            by_id = {n.id: n for n in found.results}
            for doc_id in ranked_ids:
                if doc_id in by_id:
                    candidates[doc_id] = by_id[doc_id]

        if len(candidates) < pool_size:
            filters = [QueryFilter("is_pruned", "eq", False), QueryFilter("id", "ne", node.id)]
            for page in self.db.iter_node_pages(filters):
                check_cancelled(token, "semantic_candidates")
                for other in page:
                    if len(candidates) >= pool_size:
                        break
                    candidates.setdefault(other.id, other)
                if len(candidates) >= pool_size:
                    break
        return list(candidates.values())

    # ---- Edge inference ------------------------------------------ #

    def create_semantic_edges(self, node_id: str, candidate_pool_size: Optional[int] = None,
                              token: Optional[CancellationToken] = None) -> int:
        """
        Link ``node_id`` to its most similar unconnected neighbours.

        At most ``max_edges_per_node`` edges are created per call, never
        between nodes that already share an edge in either direction.
        Returns the number created; never raises.
        """
        if not self.config.enabled:
            return 0
        created = 0
        try:
            node = self.db.get_node(node_id)
            if node is None or node.is_pruned:
                return 0
            if candidate_pool_size is None:
                candidate_pool_size = self.config.candidate_pool_size
            pool = max(0, candidate_pool_size)
            connected = {e.other_end(node_id) for e in self.db.get_edges_for_node(node_id)}

            scored: List[Tuple[float, str]] = []
            for other in self._candidates(node, pool, token):
                if other.id == node_id or other.id in connected or other.is_pruned:
                    continue
                similarity = self.calculate_similarity(node, other)
                if similarity >= self.config.min_similarity:
                    scored.append((similarity, other.id))
            scored.sort(key=lambda item: (-item[0], item[1]))

            for similarity, other_id in scored[: self.config.max_edges_per_node]:
                check_cancelled(token, "create_semantic_edges")
                try:
                    self.db.create_edge(
                        {
                            "type": EdgeType.SEMANTIC,
                            "weight": similarity,
                            "confidence": similarity,
                            "is_bidirectional": True,
                            "metadata": {"method": "lexical", "similarity": round(similarity, 4)},
                        },
                        node_id,
                        other_id,
                    )
                except Exception as exc:
                    logger.warning(f"[SemanticEngine] Could not link {node_id} -> {other_id}: {exc}")
                    continue
                created += 1
        except OperationCancelledError:
            logger.info(f"[SemanticEngine] Edge inference for {node_id} cancelled after {created} edges")
        except Exception as exc:
            logger.error(f"[SemanticEngine] Edge inference for {node_id} failed: {exc}")

        if created:
            logger.debug(f"[SemanticEngine] Created {created} semantic edges for {node_id}")
        return created

    # ---- Retrieval helpers --------------------------------------- #

    def search_nodes(self, query: str, limit: int = 10) -> List[Tuple[MemoryNode, float]]:
        """Active nodes ranked by TF-IDF relevance to ``query``."""
        try:
            hits = self._index.search(query, limit=limit)
            if not hits:
                return []
            found = self.db.query_nodes(GraphQuery(filters=[
                QueryFilter("id", "in", [doc_id for doc_id, _ in hits]),
                QueryFilter("is_pruned", "eq", False),
            ]))
            by_id = {n.id: n for n in found.results}
            return [(by_id[doc_id], score) for doc_id, score in hits if doc_id in by_id]
        except Exception as exc:
            logger.error(f"[SemanticEngine] Search failed: {exc}")
            return []

    def find_similar_nodes(self, node_id: str, limit: int = 10,
                           min_similarity: Optional[float] = None) -> List[Tuple[MemoryNode, float]]:
        """
        Most similar active nodes. Nodes of the same type get
        ``same_type_boost`` (capped at 1.0) after the threshold is applied.
        """
        threshold = self.config.min_similarity if min_similarity is None else min_similarity
        try:
            node = self.db.get_node(node_id)
            if node is None:
                return []
            results: List[Tuple[MemoryNode, float]] = []
            for other in self._candidates(node, self.config.candidate_pool_size, None):
                if other.id == node_id:
                    continue
                similarity = self.calculate_similarity(node, other)
                if similarity < threshold:
                    continue
                if other.type == node.type:
                    similarity = min(1.0, similarity * self.config.same_type_boost)
                results.append((other, similarity))
            results.sort(key=lambda item: (-item[1], item[0].id))
            return results[:limit]
        except Exception as exc:
            logger.error(f"[SemanticEngine] Similar-node lookup for {node_id} failed: {exc}")
            return []
