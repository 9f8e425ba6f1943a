"""
Query expansion for multi-variant search.

Derives a handful of reformulations from a query: the subject of
"what is / who are / what are" questions, possessive phrases
("Acme's market share"), capitalized entity names, and common business
terms. Pairs of extracted terms and the terms alone become extra
variants, searched in parallel by the orchestrator.
"""

import re
from typing import List

from kbsearch.retrieval.tokenizer import STOPWORDS

_QUESTION_PATTERNS = [
    re.compile(r"what is ([^?]+?)(?:\s+and\s+|\?|$)", re.IGNORECASE),
    re.compile(r"who are ([^?]+?)(?:\?|$)", re.IGNORECASE),
    re.compile(r"what are ([^?]+?)(?:\?|$)", re.IGNORECASE),
    # Possessive: "Acme Corp's market share"
    re.compile(r"([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*)'s\s+([^?]+?)(?:\s+and\s+|\?|$)"),
]

_CONNECTOR_RE = re.compile(r"\s+(?:and|or|with|for|in|of|by|to|from)\s+", re.IGNORECASE)
_PROPER_NOUN_RE = re.compile(r"\b[A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*\b")
_BUSINESS_TERM_RE = re.compile(
    r"\b(market share|competitors|partnerships|collaborations|university|corporation|"
    r"company|technology|product|service|platform|strategic partnerships)\b",
    re.IGNORECASE
)


def extract_terms(query: str) -> List[str]:
    """Key phrases of a query, in discovery order, without duplicates or stopwords."""
    terms: List[str] = []

    for pattern in _QUESTION_PATTERNS:
        match = pattern.search(query)
        if not match:
            continue
        phrase = match.group(1).strip()
        if match.lastindex and match.lastindex >= 2:
            phrase = f"{phrase} {match.group(2).strip()}"
        terms.extend(part.strip() for part in _CONNECTOR_RE.split(phrase))

    terms.extend(_PROPER_NOUN_RE.findall(query))
    terms.extend(_BUSINESS_TERM_RE.findall(query))

    unique: List[str] = []
    for term in terms:
        if len(term) > 2 and term.lower() not in STOPWORDS and term not in unique:
            unique.append(term)
    return unique


def expand_query(query: str, max_variants: int = 5) -> List[str]:
    """
    Reformulations of `query`, the query itself first.

    Args:
        query: Whitespace-normalized query text (original casing)
        max_variants: Upper bound on returned variants

    Returns:
        Between 1 and max_variants distinct variants
    """
    query = query.strip()
    variants = [query]
    terms = extract_terms(query)

    candidates = [
        f"{terms[i]} {terms[j]}"
        for i in range(len(terms) - 1)
        for j in range(i + 1, len(terms))
    ]
    candidates.extend(terms)

    seen = {query.lower()}
    for candidate in candidates:
        if len(variants) >= max_variants:
            break
        if candidate.lower() not in seen:
            seen.add(candidate.lower())
            variants.append(candidate)

    return variants
