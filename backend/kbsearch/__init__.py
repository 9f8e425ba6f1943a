"""
kbsearch: Knowledge-Base Retrieval Core

Hybrid (dense + sparse) passage retrieval scoped to a tenant and agent,
with reranking and a two-tier cache governed by per-namespace policy.

Version: 0.1.0
"""

__version__ = "0.1.0"
