"""
Embedding Service

Generates dense vector embeddings using OpenAI's embedding models.
Handles chunking of long inputs, batching, caching, and bounded retries.

Supported models:
- text-embedding-3-small (1536 dims, recommended)
- text-embedding-3-large (3072 dims, higher quality)
- text-embedding-ada-002 (1536 dims, legacy)

Long inputs are split at paragraph, then sentence, then word breaks and
the chunk vectors are averaged component-wise into a single vector.

Usage:
    service = EmbeddingService(cache=engine)
    vector = await service.embed("What changed in the refund policy?")
    vectors = await service.embed_batch(["Hello world", "Pricing tiers"])
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import openai
from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kbsearch.cache import CacheEngine, CacheNamespace
from kbsearch.config import settings
from kbsearch.exceptions import ConfigurationError, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Client-side errors that a retry cannot fix
_NON_RETRYABLE = (openai.BadRequestError, openai.AuthenticationError, ValueError)

# Break patterns in priority order: (regex, cut after the match?)
_BREAKPOINTS = (
    (re.compile(r"\n\n"), True),
    (re.compile(r"[.!?]\s"), True),
    (re.compile(r"\s"), False),
)


class EmbeddingService:
    """
    Service for generating text embeddings via the OpenAI API.

    Features:
    - Async batch processing
    - Length-driven chunking with component-wise averaging
    - Bounded retry with exponential backoff and a per-call deadline
    - Optional shared cache (embedding namespace)
    """

    # Model specifications
    MODEL_SPECS = {
        "text-embedding-3-small": {"dims": 1536, "max_tokens": 8191, "cost_per_1k": 0.00002},
        "text-embedding-3-large": {"dims": 3072, "max_tokens": 8191, "cost_per_1k": 0.00013},
        "text-embedding-ada-002": {"dims": 1536, "max_tokens": 8191, "cost_per_1k": 0.0001}
    }

    def __init__(
        self,
        model: str = None,
        api_key: str = None,
        cache: Optional[CacheEngine] = None,
        client: Optional[AsyncOpenAI] = None,
        timeout: float = None,
        max_retries: int = None,
        retry_wait=None
    ):
        """
        Initialize embedding service.

        Args:
            model: OpenAI embedding model name
            api_key: OpenAI API key (uses env var if not provided)
            cache: Cache engine for the embedding namespace (None disables caching)
            client: Pre-built AsyncOpenAI client
            timeout: Deadline per API call in seconds
            max_retries: Attempts per API call
            retry_wait: tenacity wait strategy between attempts
        """
        self.model = model or settings.EMBEDDING_MODEL
        if self.model not in self.MODEL_SPECS:
            raise ConfigurationError(f"Unknown embedding model: {self.model}")

        self.client = client or AsyncOpenAI(api_key=api_key or settings.OPENAI_API_KEY)
        self.cache = cache
        self.dimension = self.MODEL_SPECS[self.model]["dims"]

        self.timeout = timeout if timeout is not None else settings.EMBEDDING_TIMEOUT
        self.max_retries = max_retries or settings.EMBEDDING_MAX_RETRIES
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)

        self.batch_size = settings.EMBEDDING_BATCH_SIZE
        self.max_text_length = settings.EMBEDDING_MAX_TEXT_LENGTH
        self.chunk_size = settings.EMBEDDING_CHUNK_SIZE
        self.chunk_overlap = settings.EMBEDDING_CHUNK_OVERLAP
        self.break_search_range = settings.EMBEDDING_BREAK_SEARCH_RANGE

    async def embed(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed (long texts are chunked and averaged)

        Returns:
            Embedding vector as list of floats

        Raises:
            ValueError: text is empty
            UpstreamUnavailable: provider failed after bounded retries
        """
        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def embed_query(self, query: str) -> List[float]:
        """
        Generate embedding for a search query.

        For OpenAI models, query and document embeddings are the same.
        """
        return await self.embed(query)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, aligned with `texts`
        """
        if not texts:
            return []

        cleaned = [self._clean(text) for text in texts]
        embeddings: List[Optional[List[float]]] = [None] * len(cleaned)

        pending: List[int] = []
        for i, text in enumerate(cleaned):
            cached = await self._check_cache(text)
            if cached is not None:
                embeddings[i] = cached
            else:
                pending.append(i)

        if not pending:
            return embeddings

        # Flatten every pending text into chunks; remember each text's span
        flat: List[str] = []
        spans: List[Tuple[int, int, int]] = []
        for i in pending:
            chunks = self.split_text(cleaned[i])
            if len(chunks) > 1:
                logger.debug(f"Long input ({len(cleaned[i])} chars) split into {len(chunks)} chunks")
            spans.append((i, len(flat), len(flat) + len(chunks)))
            flat.extend(chunks)

        logger.info(
            f"Embedding {len(pending)} texts as {len(flat)} inputs "
            f"(cache hit: {len(texts) - len(pending)})"
        )

        batches = [flat[j:j + self.batch_size] for j in range(0, len(flat), self.batch_size)]
        results = await asyncio.gather(*(self._embed_with_retry(batch) for batch in batches))
        vectors = [vector for batch_vectors in results for vector in batch_vectors]

        for i, start, end in spans:
            embedding = self.average_embeddings(vectors[start:end])
            embeddings[i] = embedding
            await self._add_to_cache(cleaned[i], embedding)

        return embeddings

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """
        Embed one API batch with bounded retries and a per-attempt deadline.

        Raises:
            UpstreamUnavailable: all attempts failed
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=self.retry_wait,
                retry=retry_if_not_exception_type(_NON_RETRYABLE),
                reraise=True
            ):
                with attempt:
                    return await asyncio.wait_for(self._embed_batch(texts), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Embedding batch timed out after {self.max_retries} attempts")
            raise UpstreamUnavailable("embedding", "embedding provider timed out") from e
        except Exception as e:
            logger.error(f"Error embedding batch: {e}")
            raise UpstreamUnavailable("embedding", f"embedding provider failed: {e}") from e

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a batch of texts via API.

        Args:
            texts: Batch of texts (max batch_size)

        Returns:
            List of embeddings
        """
        if len(texts) > self.batch_size:
            raise ValueError(f"Batch size {len(texts)} exceeds maximum {self.batch_size}")

        response = await self.client.embeddings.create(
            model=self.model,
            input=texts,
            encoding_format="float"
        )
        return [item.embedding for item in response.data]

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def split_text(self, text: str) -> List[str]:
        """
        Split text longer than max_text_length into overlapping chunks.

        Args:
            text: Text to split

        Returns:
            [text] for short inputs, otherwise chunks of at most chunk_size chars
        """
        if len(text) <= self.max_text_length:
            return [text]

        chunks: List[str] = []
        start = 0
        length = len(text)

        while start < length:
            end = start + self.chunk_size
            if end >= length:
                chunks.append(text[start:])
                break

            actual_end = self._find_break_point(text, start, end)
            chunks.append(text[start:actual_end])

            next_start = actual_end - self.chunk_overlap
            # Always move forward, even when overlap >= chunk length
            start = next_start if next_start > start else actual_end

        return chunks

    def _find_break_point(self, text: str, start: int, preferred_end: int) -> int:
        """
        Find the best cut within the last break_search_range chars before preferred_end.

        Priority: paragraph break > sentence break > word break; the latest
        occurrence of the highest-priority break wins.

        Returns:
            Cut position (preferred_end when no break is found)
        """
        search_start = max(start + 1, preferred_end - self.break_search_range)
        window = text[search_start:preferred_end]

        for pattern, cut_after in _BREAKPOINTS:
            last = None
            for last in pattern.finditer(window):
                pass
            if last is not None:
                cut = search_start + (last.end() if cut_after else last.start())
                if cut > start:
                    return cut

        return preferred_end

    @staticmethod
    def average_embeddings(embeddings: List[List[float]]) -> List[float]:
        """
        Average multiple embeddings component-wise.

        Raises:
            ValueError: empty input or dimension mismatch
        """
        if not embeddings:
            raise ValueError("Cannot average empty embeddings array")
        if len(embeddings) == 1:
            return list(embeddings[0])

        dims = {len(e) for e in embeddings}
        if len(dims) != 1:
            raise ValueError(f"Embedding dimension mismatch: {sorted(dims)}")

        return np.mean(np.asarray(embeddings, dtype=float), axis=0).tolist()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def _clean(text: str) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Cannot embed empty text")
        return cleaned

    def _get_cache_key(self, text: str) -> str:
        """Cache key for a text under the current model."""
        return CacheEngine.hash_key(self.model, text)

    async def _check_cache(self, text: str) -> Optional[List[float]]:
        if self.cache is None:
            return None
        return await self.cache.get(CacheNamespace.EMBEDDING, self._get_cache_key(text))

    async def _add_to_cache(self, text: str, embedding: List[float]) -> None:
        if self.cache is not None:
            await self.cache.set(CacheNamespace.EMBEDDING, self._get_cache_key(text), embedding)

    def estimate_cost(self, texts: List[str]) -> Dict[str, Any]:
        """
        Estimate cost for embedding texts.

        Args:
            texts: Texts to estimate

        Returns:
            Cost estimation details
        """
        # Rough token estimate: ~4 chars per token
        total_chars = sum(len(t) for t in texts)
        estimated_tokens = total_chars / 4
        cost_per_1k = self.MODEL_SPECS[self.model]["cost_per_1k"]

        return {
            "num_texts": len(texts),
            "estimated_tokens": int(estimated_tokens),
            "estimated_cost_usd": (estimated_tokens / 1000) * cost_per_1k,
            "model": self.model
        }
