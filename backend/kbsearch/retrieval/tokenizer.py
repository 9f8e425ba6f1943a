"""
Lexical helpers shared by the sparse and keyword search paths.

- tokenize(): lowercase word tokens without stopwords
- extract_keywords(): the few most useful terms of a query
- sparse_vector(): hashed term -> weight vector for the index's sparse field

Term ids are derived from an MD5 of the token, so they are stable across
processes (Python's hash() is salted per process and cannot be used).
"""

import hashlib
import re
from collections import Counter
from typing import Dict, List, Tuple

# BM25 term frequency saturation
K1 = 1.5

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "shall", "can", "this",
    "that", "these", "those", "it", "its", "we", "our", "they", "their",
    "what", "where", "when", "why", "how", "who", "which", "i", "you", "he",
    "she", "me", "him", "her", "us", "them", "my", "your", "his", "about", "tell"
})

_TOKEN_RE = re.compile(r"\b[a-z0-9]+(?:[.-][a-z0-9]+)*\b")


def tokenize(text: str) -> List[str]:
    """
    Tokenize text for sparse indexing and querying.

    Handles:
    - Lowercase conversion
    - Punctuation removal (keeps dotted/hyphenated terms like "v2.1", "e-mail")
    - Stopword filtering

    Args:
        text: Text to tokenize

    Returns:
        List of tokens, in order, with repeats
    """
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]


def extract_keywords(query: str, limit: int = 3) -> List[str]:
    """
    Pick up to `limit` non-stopword terms longer than two characters.

    Args:
        query: Raw query text
        limit: Maximum number of keywords

    Returns:
        Keywords in query order, without duplicates
    """
    cleaned = re.sub(r"[^\w\s-]", " ", query.lower())
    keywords: List[str] = []
    for word in cleaned.split():
        if len(word) > 2 and word not in STOPWORDS and word not in keywords:
            keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def term_id(token: str) -> int:
    """Stable 32-bit id for a token."""
    return int(hashlib.md5(token.encode("utf-8")).hexdigest()[:8], 16)


def sparse_vector(text: str, is_query: bool = False) -> Tuple[List[int], List[float]]:
    """
    Build a sparse vector for the index.

    Documents get BM25-saturated term frequencies; queries get 1.0 per
    distinct term. IDF is applied by the index at query time.

    Args:
        text: Passage or query text
        is_query: Build the query-side vector

    Returns:
        (indices, values), indices sorted and unique
    """
    counts = Counter(tokenize(text))
    weights: Dict[int, float] = {}
    for token, tf in counts.items():
        weight = 1.0 if is_query else tf * (K1 + 1) / (tf + K1)
        idx = term_id(token)
        # Hash collisions add up
        weights[idx] = weights.get(idx, 0.0) + weight

    indices = sorted(weights)
    return indices, [weights[i] for i in indices]
