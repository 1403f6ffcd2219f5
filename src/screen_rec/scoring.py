"""Scoring primitives shared by recommendation, similarity and reranker training."""

import math

import numpy as np

from .config import VIEWING_CONFIDENCE_MAX, VIEWING_CONFIDENCE_STEPS
from .weights import ScoringWeights

DEFAULT_WEIGHTS = ScoringWeights()


def sigmoid(x: float) -> float:
    # Split on sign so large magnitudes never overflow exp()
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def jaccard(a, b) -> float:
    """|A ∩ B| / |A ∪ B|; 0 when both sets are empty."""
    if not a and not b:
        return 0.0
    a, b = set(a), set(b)
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity, 0 when either vector has zero norm."""
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    value = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, value))


def viewing_confidence(n_watched: int) -> float:
    """Damping factor for thin profiles: 0.3 for no history up to 1.0 past 15 items."""
    for limit, confidence in VIEWING_CONFIDENCE_STEPS:
        if n_watched <= limit:
            return confidence
    return VIEWING_CONFIDENCE_MAX


def genre_similarity(user_genres, item_genres, confidence: float,
                     weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    return jaccard(user_genres, item_genres) ** weights.genre_exponent * (0.5 + 0.5 * confidence)


def cast_similarity(watched_cast, item_cast) -> float:
    return len(set(watched_cast) & set(item_cast)) / max(1, len(watched_cast))


def content_score(genre_sim: float, cast_sim: float, synopsis_sim: float,
                  weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    return weights.genre * genre_sim + weights.cast * cast_sim + weights.synopsis * synopsis_sim


def meta_score(rating: float, popularity: float, weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    return (
        weights.meta_rating * (rating / weights.rating_scale)
        + weights.meta_popularity * (popularity / weights.popularity_scale)
    )


def blend(cf_score: float, content: float, meta: float, weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """The fixed linear blend used when no reranker is loaded."""
    return weights.cf * cf_score + weights.content * content + weights.meta * meta


def similar_item_score(target, candidate, weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """Item-to-item score between two ItemFeatures (no collaborative signal)."""
    genre = jaccard(target.genres, candidate.genres) ** weights.genre_exponent
    synopsis = jaccard(target.tokens, candidate.tokens)
    cast = len(target.cast & candidate.cast) / max(1, len(target.cast))
    meta = meta_score(candidate.rating, candidate.popularity, weights)
    return (
        weights.similar_genre * genre
        + weights.similar_synopsis * synopsis
        + weights.similar_cast * cast
        + weights.similar_meta * meta
    )


def companion_score(frequency: float, genre_sim: float, popularity: float,
                    weights: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    return (
        weights.entity_frequency * frequency
        + weights.entity_genre * genre_sim
        + weights.entity_popularity * popularity
    )
