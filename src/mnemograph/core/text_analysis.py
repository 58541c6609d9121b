"""
Lexical Text Analysis
=====================
Tokenisation, stop-word filtering, Porter stemming, a small synonym table,
shallow part-of-speech concept extraction and a sparse TF-IDF index.

Everything here is deterministic and dependency-light so the semantic
engine works offline; ``numpy`` backs the TF-IDF vectors.

Public API:
    analyzer = TextAnalyzer(NLPConfig())
    terms = analyzer.analyze("Fixed the failing login tests")   # ['fix', 'fail', 'login', 'test']
    concepts = analyzer.extract_concepts("Refactored payment service")
    index = TfIdfIndex(analyzer.analyze)
    index.build([("n1", "payment service"), ("n2", "login page")])
    index.search("payments", limit=5)
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .config import NLPConfig


# ------------------------------------------------------------------ #
#  Vocabulary                                                         #
# ------------------------------------------------------------------ #

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9]*")

STOP_WORDS = frozenset({
    "a", "about", "above", "after", "again", "against", "all", "am", "an", "and",
    "any", "are", "as", "at", "be", "because", "been", "before", "being", "below",
    "between", "both", "but", "by", "can", "could", "did", "do", "does", "doing",
    "down", "during", "each", "few", "for", "from", "further", "had", "has", "have",
    "having", "he", "her", "here", "hers", "herself", "him", "himself", "his", "how",
    "i", "if", "in", "into", "is", "it", "its", "itself", "just", "me", "might",
    "more", "most", "must", "my", "myself", "no", "nor", "not", "now", "of", "off",
    "on", "once", "only", "or", "other", "our", "ours", "ourselves", "out", "over",
    "own", "same", "she", "should", "so", "some", "such", "than", "that", "the",
    "their", "theirs", "them", "themselves", "then", "there", "these", "they",
    "this", "those", "through", "to", "too", "under", "until", "up", "very", "was",
    "we", "were", "what", "when", "where", "which", "while", "who", "whom", "why",
    "will", "with", "would", "you", "your", "yours", "yourself", "yourselves",
    "also", "may", "shall", "via", "per", "etc",
})

# Each group maps onto its first member when synonyms are enabled
_SYNONYM_GROUPS: Tuple[Tuple[str, ...], ...] = (
    ("bug", "defect", "issue", "error", "fault"),
    ("fix", "repair", "patch", "resolve"),
    ("meeting", "call", "sync", "standup"),
    ("document", "doc", "docs", "documentation"),
    ("repository", "repo"),
    ("test", "tests", "spec", "specs"),
    ("build", "compile"),
    ("deploy", "release", "ship"),
    ("email", "mail", "message"),
    ("create", "add", "make"),
    ("remove", "delete", "drop"),
    ("start", "begin", "launch"),
)

SYNONYMS: Dict[str, str] = {
    word: group[0] for group in _SYNONYM_GROUPS for word in group[1:]
}

# Shallow part-of-speech hints by suffix, longest first within each class
_NOUN_SUFFIXES = ("ation", "ition", "ment", "ness", "ship", "ence", "ance", "sion",
                  "tion", "ity", "ism", "ist", "ure", "age", "er", "or")
_VERB_SUFFIXES = ("ising", "izing", "ing", "ize", "ise", "ify", "ate", "ed", "en")
_ADJ_SUFFIXES = ("able", "ible", "less", "ful", "ous", "ive", "ish", "ary", "ic", "al")


# ═══════════════════════════════════════════════════════════════════════
# Porter stemmer
# ═══════════════════════════════════════════════════════════════════════

def _is_consonant(word: str, i: int) -> bool:
    ch = word[i]
    if ch in "aeiou":
        return False
    if ch == "y":
        return i == 0 or not _is_consonant(word, i - 1)
    return True


def _measure(stem: str) -> int:
    """Number of vowel-consonant sequences, the m in [C](VC)^m[V]."""
    m = 0
    i = 0
    n = len(stem)
    while i < n and _is_consonant(stem, i):
        i += 1
    while i < n:
        while i < n and not _is_consonant(stem, i):
            i += 1
        if i >= n:
            break
        while i < n and _is_consonant(stem, i):
            i += 1
        m += 1
    return m


def _has_vowel(stem: str) -> bool:
    return any(not _is_consonant(stem, i) for i in range(len(stem)))


def _double_consonant(word: str) -> bool:
    return len(word) >= 2 and word[-1] == word[-2] and _is_consonant(word, len(word) - 1)


def _cvc(word: str) -> bool:
    if len(word) < 3:
        return False
    return (
        _is_consonant(word, len(word) - 3)
        and not _is_consonant(word, len(word) - 2)
        and _is_consonant(word, len(word) - 1)
        and word[-1] not in "wxy"
    )


_STEP2 = (
    ("ational", "ate"), ("tional", "tion"), ("enci", "ence"), ("anci", "ance"),
    ("izer", "ize"), ("bli", "ble"), ("alli", "al"), ("entli", "ent"), ("eli", "e"),
    ("ousli", "ous"), ("ization", "ize"), ("ation", "ate"), ("ator", "ate"),
    ("alism", "al"), ("iveness", "ive"), ("fulness", "ful"), ("ousness", "ous"),
    ("aliti", "al"), ("iviti", "ive"), ("biliti", "ble"), ("logi", "log"),
)
_STEP3 = (
    ("icate", "ic"), ("ative", ""), ("alize", "al"), ("iciti", "ic"),
    ("ical", "ic"), ("ful", ""), ("ness", ""),
)
_STEP4 = (
    "al", "ance", "ence", "er", "ic", "able", "ible", "ant", "ement", "ment",
    "ent", "ion", "ou", "ism", "ate", "iti", "ous", "ive", "ize",
)


def _replace_suffix(word: str, rules: Iterable[Tuple[str, str]], min_measure: int) -> str:
    for suffix, replacement in sorted(rules, key=lambda r: -len(r[0])):
        if word.endswith(suffix):
            stem = word[: -len(suffix)]
            if _measure(stem) > min_measure:
                return stem + replacement
            return word
    return word


def stem(word: str) -> str:
    """Porter (1980) stemmer for lowercase English words."""
    if len(word) <= 2:
        return word

    # Step 1a
    if word.endswith("sses"):
        word = word[:-2]
    elif word.endswith("ies"):
        word = word[:-2]
    elif word.endswith("ss"):
        pass
    elif word.endswith("s"):
        word = word[:-1]

    # Step 1b
    trimmed = False
    if word.endswith("eed"):
        if _measure(word[:-3]) > 0:
            word = word[:-1]
    elif word.endswith("ed") and _has_vowel(word[:-2]):
        word = word[:-2]
        trimmed = True
    elif word.endswith("ing") and _has_vowel(word[:-3]):
        word = word[:-3]
        trimmed = True
    if trimmed:
        if word.endswith(("at", "bl", "iz")):
            word += "e"
        elif _double_consonant(word) and word[-1] not in "lsz":
            word = word[:-1]
        elif _measure(word) == 1 and _cvc(word):
            word += "e"

    # Step 1c
    if word.endswith("y") and _has_vowel(word[:-1]):
        word = word[:-1] + "i"

    # Steps 2 and 3
    word = _replace_suffix(word, _STEP2, 0)
    word = _replace_suffix(word, _STEP3, 0)

    # Step 4
    for suffix in sorted(_STEP4, key=len, reverse=True):
        if word.endswith(suffix):
            stem_ = word[: -len(suffix)]
            if _measure(stem_) > 1 and (suffix != "ion" or stem_.endswith(("s", "t"))):
                word = stem_
            break

    # Step 5a
    if word.endswith("e"):
        stem_ = word[:-1]
        m = _measure(stem_)
        if m > 1 or (m == 1 and not _cvc(stem_)):
            word = stem_

    # Step 5b
    if _measure(word) > 1 and _double_consonant(word) and word.endswith("l"):
        word = word[:-1]

    return word


# ═══════════════════════════════════════════════════════════════════════
# Analyzer
# ═══════════════════════════════════════════════════════════════════════

def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens of length >= 2."""
    if not text:
        return []
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= 2]


def part_of_speech(word: str) -> str:
    """Crude suffix-based tag: noun, verb, adjective, adverb or other."""
    if word.isdigit():
        return "other"
    if word.endswith("ly") and len(word) > 4:
        return "adverb"
    for suffix in _ADJ_SUFFIXES:
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return "adjective"
    for suffix in _VERB_SUFFIXES:
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return "verb"
    for suffix in _NOUN_SUFFIXES:
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return "noun"
    return "noun" if len(word) >= 4 else "other"


class TextAnalyzer:
    """Applies the configured NLP pipeline to free text."""

    def __init__(self, config: Optional[NLPConfig] = None) -> None:
        self.config = config or NLPConfig()

    def normalize(self, token: str) -> str:
        if self.config.use_synonyms:
            token = SYNONYMS.get(token, token)
        if self.config.use_stemming:
            token = stem(token)
        return token

    def analyze(self, text: str) -> List[str]:
        """Tokens after stop-word removal, synonym folding and stemming."""
        terms = []
        for token in tokenize(text):
            if self.config.use_stop_words and token in STOP_WORDS:
                continue
            terms.append(self.normalize(token))
        return terms

    def keywords(self, text: str) -> set:
        return set(self.analyze(text))

    def extract_concepts(self, text: str) -> List[str]:
        """
        Salient nouns, verbs and adjectives plus capitalised words that do
        not start a sentence. Order of first appearance, de-duplicated.
        """
        if not text:
            return []
        concepts: List[str] = []
        seen = set()
        sentence_start = True
        for match in _WORD_RE.finditer(text):
            raw = match.group(0)
            word = raw.lower()
            preceding = text[max(0, match.start() - 2):match.start()]
            if match.start() > 0 and any(p in preceding for p in ".!?"):
                sentence_start = True
            proper = raw[0].isupper() and not sentence_start and len(word) >= 2
            sentence_start = False
            if word in STOP_WORDS or (len(word) < 3 and not proper):
                continue
            if proper or part_of_speech(word) in ("noun", "verb", "adjective"):
                if word not in seen:
                    seen.add(word)
                    concepts.append(word)
        return concepts

    def concept_keys(self, text: str) -> set:
        """Concepts reduced to their normalised (stemmed) form for comparison."""
        return {self.normalize(c) for c in self.extract_concepts(text)}


def jaccard(a: set, b: set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


# ═══════════════════════════════════════════════════════════════════════
# TF-IDF
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SparseVector:
    """L2-normalised sparse vector; ``indices`` sorted ascending."""
    indices: np.ndarray
    values: np.ndarray

    @classmethod
    def empty(cls) -> "SparseVector":
        return cls(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float64))

    def __len__(self) -> int:
        return int(self.indices.size)

    def dot(self, other: "SparseVector") -> float:
        if not len(self) or not len(other):
            return 0.0
        _, left, right = np.intersect1d(self.indices, other.indices, assume_unique=True, return_indices=True)
        if left.size == 0:
            return 0.0
        return float(np.dot(self.values[left], other.values[right]))


class TfIdfIndex:
    """
    Corpus index with smoothed idf ``ln((1+N)/(1+df)) + 1`` and
    length-normalised term frequency.

    Built in one pass over (doc_id, text) pairs; rebuilding produces a new
    vocabulary, so callers swap whole indexes instead of mutating one.
    """

    def __init__(self, analyzer: Callable[[str], List[str]]) -> None:
        self._analyze = analyzer
        self._vocab: Dict[str, int] = {}
        self._idf = np.zeros(0, dtype=np.float64)
        self._vectors: Dict[str, SparseVector] = {}
        self._postings: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        self._doc_ids: List[str] = []

    def __len__(self) -> int:
        return len(self._doc_ids)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._vectors

    @property
    def vocabulary_size(self) -> int:
        return len(self._vocab)

    def build(self, documents: Iterable[Tuple[str, str]]) -> "TfIdfIndex":
        counts: List[Tuple[str, Counter]] = []
        df: Counter = Counter()
        for doc_id, text in documents:
            terms = Counter(self._analyze(text or ""))
            counts.append((doc_id, terms))
            df.update(terms.keys())

        self._vocab = {term: i for i, term in enumerate(sorted(df))}
        n_docs = len(counts)
        df_arr = np.zeros(len(self._vocab), dtype=np.float64)
        for term, freq in df.items():
            df_arr[self._vocab[term]] = freq
        self._idf = np.log((1.0 + n_docs) / (1.0 + df_arr)) + 1.0

        self._vectors = {}
        self._doc_ids = []
        rows_by_term: Dict[int, List[Tuple[int, float]]] = {}
        for row, (doc_id, terms) in enumerate(counts):
            vector = self._weigh(terms)
            self._vectors[doc_id] = vector
            self._doc_ids.append(doc_id)
            for idx, val in zip(vector.indices.tolist(), vector.values.tolist()):
                rows_by_term.setdefault(idx, []).append((row, val))
        self._postings = {
            idx: (np.array([r for r, _ in entries], dtype=np.int64),
                  np.array([v for _, v in entries], dtype=np.float64))
            for idx, entries in rows_by_term.items()
        }
        return self

    def _weigh(self, terms: Counter) -> SparseVector:
        known = sorted((self._vocab[t], c) for t, c in terms.items() if t in self._vocab)
        if not known:
            return SparseVector.empty()
        indices = np.array([i for i, _ in known], dtype=np.int64)
        tf = np.array([c for _, c in known], dtype=np.float64)
        tf /= tf.sum()
        weights = tf * self._idf[indices]
        norm = float(np.linalg.norm(weights))
        if norm == 0.0:
            return SparseVector.empty()
        return SparseVector(indices, weights / norm)

    def vector(self, doc_id: str) -> Optional[SparseVector]:
        return self._vectors.get(doc_id)

    def vectorize(self, text: str) -> SparseVector:
        """Project unseen text onto the current vocabulary."""
        return self._weigh(Counter(self._analyze(text or "")))

    def similarity(self, doc_a: str, doc_b: str) -> float:
        a = self._vectors.get(doc_a)
        b = self._vectors.get(doc_b)
        if a is None or b is None:
            return 0.0
        return max(0.0, min(1.0, a.dot(b)))

    def text_similarity(self, text_a: str, text_b: str) -> float:
        return max(0.0, min(1.0, self.vectorize(text_a).dot(self.vectorize(text_b))))

    def search(self, query: str, limit: int = 10) -> List[Tuple[str, float]]:
        """Top documents by cosine similarity to ``query``; zero scores omitted."""
        q = self.vectorize(query)
        if not len(q) or not self._doc_ids:
            return []
        scores = np.zeros(len(self._doc_ids), dtype=np.float64)
        for idx, weight in zip(q.indices.tolist(), q.values.tolist()):
            rows, values = self._postings.get(idx, (None, None))
            if rows is not None:
                scores[rows] += weight * values
        order = np.argsort(-scores, kind="stable")[:max(0, limit)]
        return [
            (self._doc_ids[i], float(min(1.0, scores[i])))
            for i in order.tolist()
            if scores[i] > 0.0
        ]


__all__ = [
    "STOP_WORDS",
    "SYNONYMS",
    "stem",
    "tokenize",
    "part_of_speech",
    "jaccard",
    "TextAnalyzer",
    "SparseVector",
    "TfIdfIndex",
]
