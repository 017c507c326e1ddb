"""
Embedding layer — recipe vectors and the ANN index over them.

Usage:
    from services.reco.embedding import EmbeddingStore
"""

from __future__ import annotations

from services.reco.embedding.hnsw import HNSWIndex
from services.reco.embedding.store import EmbeddingStore

__all__ = ["EmbeddingStore", "HNSWIndex"]
