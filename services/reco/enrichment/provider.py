"""
Enrichment providers — turn recipe text into embedding vectors.

Contract (EnrichmentProvider):
  embed_batch(items) -> one ProviderResult per item, matched by key.
  A result carries either a vector or a per-item error, so one bad recipe
  does not sink the rest of its batch. Whole-call failures raise
  TransientError (timeouts, 408, 425, 429, 5xx) or PermanentProviderError.

Implementations:
  LocalEmbeddingProvider  sentence-transformers model loaded in-process
  HttpEnrichmentProvider  remote batch endpoint over httpx
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import httpx

from services.reco.config import settings
from services.reco.errors import PermanentProviderError, RecoError, TransientError

logger = logging.getLogger(__name__)

# nomic-embed-text-v1.5 requires a task prefix for best results
_SEARCH_DOCUMENT_PREFIX = "search_document: "

# Remote pricing (USD per 1M input tokens) used for the cost log line
INPUT_COST_PER_1M = 0.02

# Request Timeout, Too Early, Too Many Requests
_RETRYABLE_4XX = frozenset({408, 425, 429})


@dataclass(frozen=True)
class ProviderItem:
    key: str
    text: str


@dataclass(frozen=True)
class ProviderResult:
    key: str
    vector: Optional[List[float]] = None
    error: Optional[RecoError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.vector is not None


class EnrichmentProvider(Protocol):
    model_id: str
    max_batch: int

    async def embed_batch(self, items: List[ProviderItem]) -> List[ProviderResult]: ...


# ---------------------------------------------------------------------------
# Local sentence-transformers provider
# ---------------------------------------------------------------------------

class LocalEmbeddingProvider:
    """In-process embedding with a sentence-transformers model.

    Thread-safe lazy model loading. Encoding runs in a worker thread so the
    event loop keeps serving while a batch is encoded.
    """

    def __init__(
        self,
        model_id: str = settings.embedding_model_id,
        *,
        max_batch: int = settings.provider_max_batch,
        document_prefix: str = _SEARCH_DOCUMENT_PREFIX,
    ) -> None:
        self.model_id = model_id
        self.max_batch = max_batch
        self._prefix = document_prefix
        self._model = None
        self._lock = threading.Lock()

    def _load_model(self):
        """Load model on first use. Thread-safe via lock."""
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is not None:
                return self._model
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: %s", self.model_id)
            self._model = SentenceTransformer(self.model_id, trust_remote_code=True)
            logger.info("Embedding model loaded successfully")
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load_model()
        embeddings = model.encode(
            [self._prefix + t for t in texts],
            batch_size=self.max_batch,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return embeddings.tolist()

    async def embed_batch(self, items: List[ProviderItem]) -> List[ProviderResult]:
        if not items:
            return []
        results: list[ProviderResult] = []
        encodable: list[ProviderItem] = []
        for item in items:
            if not item.text.strip():
                results.append(ProviderResult(
                    item.key, error=PermanentProviderError("empty recipe text"),
                ))
            else:
                encodable.append(item)
        if encodable:
            vectors = await asyncio.to_thread(self._encode, [i.text for i in encodable])
            results.extend(ProviderResult(i.key, vector=v) for i, v in zip(encodable, vectors))
        return results


# ---------------------------------------------------------------------------
# Remote HTTP provider
# ---------------------------------------------------------------------------

class HttpEnrichmentProvider:
    """
    Batch embedding over HTTP.

    Request:   POST {url}  {"model": ..., "inputs": [{"id": key, "text": ...}]}
    Response:  {"data": [{"id": key, "embedding": [...]} |
                         {"id": key, "error": {"message": ..., "retryable": bool}}],
                "usage": {"input_tokens": int}}

    Status handling:
      408 / 425 / 429 / 5xx / timeouts / transport errors -> TransientError
      other 4xx                                           -> PermanentProviderError
    """

    def __init__(
        self,
        url: str = settings.provider_url,
        api_key: str = settings.provider_api_key,
        *,
        model_id: str = settings.embedding_model_id,
        max_batch: int = settings.provider_max_batch,
        timeout_s: float = settings.provider_timeout_s,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("provider url is required")
        self.url = url
        self.model_id = model_id
        self.max_batch = max_batch
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def embed_batch(self, items: List[ProviderItem]) -> List[ProviderResult]:
        if not items:
            return []
        if len(items) > self.max_batch:
            raise PermanentProviderError(
                f"batch of {len(items)} exceeds provider limit {self.max_batch}"
            )

        start = time.monotonic()
        try:
            resp = await self._client.post(
                self.url,
                headers=self._headers,
                json={
                    "model": self.model_id,
                    "inputs": [{"id": i.key, "text": i.text} for i in items],
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in _RETRYABLE_4XX or status >= 500:
                raise TransientError(f"provider HTTP {status}") from exc
            raise PermanentProviderError(
                f"provider HTTP {status}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientError(f"provider unreachable: {exc!r}") from exc

        body = resp.json()
        usage = body.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0))
        logger.info(
            "provider_call model=%s items=%d latency_s=%.3f input_tokens=%d cost_usd=%.6f",
            self.model_id,
            len(items),
            time.monotonic() - start,
            input_tokens,
            (input_tokens / 1_000_000) * INPUT_COST_PER_1M,
        )
        return [self._parse_row(row) for row in body.get("data") or []]

    @staticmethod
    def _parse_row(row: dict[str, Any]) -> ProviderResult:
        key = str(row.get("id"))
        err = row.get("error")
        if err:
            message = str(err.get("message", "provider item error"))
            if err.get("retryable", False):
                return ProviderResult(key, error=TransientError(message))
            return ProviderResult(key, error=PermanentProviderError(message))
        vector = row.get("embedding")
        if not isinstance(vector, list):
            return ProviderResult(key, error=TransientError("missing embedding in provider row"))
        return ProviderResult(key, vector=[float(x) for x in vector])
