"""
Embedding enrichment: provider adapters, the batched pipeline, and its
worker pool.

Usage:
    from services.reco.enrichment import EnrichmentPipeline, EnrichmentWorkers
"""

from __future__ import annotations

from services.reco.enrichment.pipeline import (
    CallSpacer,
    EnrichmentOutcome,
    EnrichmentPipeline,
    EnrichmentWorkers,
)
from services.reco.enrichment.provider import (
    EnrichmentProvider,
    HttpEnrichmentProvider,
    LocalEmbeddingProvider,
    ProviderItem,
    ProviderResult,
)

__all__ = [
    "CallSpacer",
    "EnrichmentOutcome",
    "EnrichmentPipeline",
    "EnrichmentProvider",
    "EnrichmentWorkers",
    "HttpEnrichmentProvider",
    "LocalEmbeddingProvider",
    "ProviderItem",
    "ProviderResult",
]
