import logging
from dataclasses import dataclass

from .feature_cache import FeatureSnapshot
from .scoring import viewing_confidence

logger = logging.getLogger(__name__)


@dataclass
class UserProfile:
    """Per-request view of a user's tastes, built from their library."""
    user_id: str
    watched: frozenset[str] = frozenset()
    marked_cast: frozenset[str] = frozenset()   # cast members the user marked directly
    genres: frozenset[str] = frozenset()
    tokens: frozenset[str] = frozenset()
    watched_cast: frozenset[str] = frozenset()  # cast appearing in watched items
    confidence: float = 0.3

    @property
    def n_watched(self) -> int:
        return len(self.watched)


def build_profile(
    user_id: str,
    watched_ids,
    marked_cast_ids,
    features: FeatureSnapshot,
) -> UserProfile:
    """
    Aggregate genres, synopsis tokens and cast over the watched items found in
    the feature cache. Watched items missing from the cache still count
    towards the viewing confidence.
    """
    watched = frozenset(watched_ids)
    genres: set[str] = set()
    tokens: set[str] = set()
    cast: set[str] = set()

    missing = 0
    for item_id in watched:
        feature = features.get(item_id)
        if feature is None:
            missing += 1
            continue
        genres |= feature.genres
        tokens |= feature.tokens
        cast |= feature.cast

    if missing:
        logger.debug(f"{missing} of {len(watched)} watched items for {user_id} are not in the feature cache")

    return UserProfile(
        user_id=user_id,
        watched=watched,
        marked_cast=frozenset(marked_cast_ids),
        genres=frozenset(genres),
        tokens=frozenset(tokens),
        watched_cast=frozenset(cast),
        confidence=viewing_confidence(len(watched)),
    )
