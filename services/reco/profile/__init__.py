"""
Per-user taste profiles: full recompute, incremental updates, and
background drift correction.

Usage:
    from services.reco.profile import TasteProfileEngine
"""

from __future__ import annotations

from services.reco.profile.engine import (
    HIGH_CONFIDENCE_THRESHOLD,
    TasteProfileEngine,
    normalize_terms,
)

__all__ = ["HIGH_CONFIDENCE_THRESHOLD", "TasteProfileEngine", "normalize_terms"]
