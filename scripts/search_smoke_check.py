#!/usr/bin/env python3
"""
Search Smoke Check

Runs one search against a live Qdrant collection through the full
retrieval stack (embeddings, dense + sparse fusion, optional rerank,
cache) and prints the ranked hits as JSON.

Optionally indexes a JSONL file of passages into the agent's namespace
first. Each line: {"id": "...", "text": "...", "metadata": {...}}

Examples:
    python scripts/search_smoke_check.py --tenant acme --agent support "How do refunds work?"
    python scripts/search_smoke_check.py --tenant acme --agent support --index passages.jsonl "refund window"
"""

import argparse
import asyncio
import json
import pathlib
import sys

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1] / "backend"))

from kbsearch.config import configure_logging, validate_api_keys
from kbsearch.container import build_orchestrator
from kbsearch.exceptions import KBSearchError
from kbsearch.models import IndexRecord, SearchOptions


async def index_passages(orchestrator, namespace: str, path: pathlib.Path) -> int:
    passages = [
        json.loads(line)
        for line in path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    if not passages:
        return 0

    vectors = await orchestrator.embedding_service.embed_batch([p["text"] for p in passages])
    records = [
        IndexRecord(
            id=str(p["id"]),
            text=p["text"],
            vector=vector,
            metadata={"source_type": "text", **(p.get("metadata") or {})}
        )
        for p, vector in zip(passages, vectors)
    ]

    await orchestrator.vector_store.ensure_collection(len(vectors[0]))
    count = await orchestrator.vector_store.upsert(namespace, records)
    await orchestrator.cache.invalidate_scope(namespace)
    return count


async def run(args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator()
    namespace = orchestrator.vector_store.namespace_for(args.tenant, args.agent)

    if args.index:
        count = await index_passages(orchestrator, namespace, pathlib.Path(args.index))
        print(f"Indexed {count} passages into {namespace}", file=sys.stderr)

    options = SearchOptions(
        top_k=args.top_k,
        enable_reranking=args.rerank,
        expand_query=not args.no_expand,
        enable_cache=not args.no_cache
    )

    try:
        response = await orchestrator.search(args.query, args.tenant, args.agent, options)
    except KBSearchError as e:
        print(f"ERROR: search failed: {e}", file=sys.stderr)
        return 1

    out = {
        "namespace": response.namespace,
        "cache_hit": response.cache_hit,
        "degradations": [d.value for d in response.degradations],
        "query_variants": response.query_variants,
        "timings_ms": {k: round(v, 1) for k, v in response.timings_ms.items()},
        "hits": [
            {
                "id": hit.id,
                "score": round(hit.score, 4),
                "sources": hit.sources,
                "matched_query": hit.matched_query,
                "preview": hit.text[:120],
            }
            for hit in response.hits
        ],
    }
    print(json.dumps(out, indent=2))

    if args.require_hits and not response.hits:
        print("ERROR: search returned no hits", file=sys.stderr)
        return 1

    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Smoke-check retrieval for one tenant/agent namespace."
    )
    parser.add_argument("query", help="Search query")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--agent", required=True, help="Agent id")
    parser.add_argument("--index", metavar="JSONL", help="Index these passages before searching")
    parser.add_argument("--top-k", type=int, default=None, help="Passages to return")
    parser.add_argument("--rerank", action="store_true", default=None, help="Enable reranking")
    parser.add_argument("--no-expand", action="store_true", help="Search the query only, no variants")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the result cache")
    parser.add_argument("--require-hits", action="store_true", help="Fail if nothing is found")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else None)

    keys = validate_api_keys()
    if not keys["openai"]:
        print("Missing OPENAI_API_KEY in env.", file=sys.stderr)
        return 2

    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
