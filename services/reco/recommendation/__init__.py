"""
Ranked, explainable recommendations with a recency/popularity fallback.

Usage:
    from services.reco.recommendation import RecommendationEngine
"""

from __future__ import annotations

from services.reco.recommendation.engine import RecommendationEngine

__all__ = ["RecommendationEngine"]
