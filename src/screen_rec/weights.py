"""
The scoring weight table.

Every blend weight used by the engine lives here under a name, so it can be
tuned from a JSON file without touching code. Missing keys keep their
defaults; unknown keys are ignored; values that are not numbers fall back to
the default with a warning.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from .config import SCORING_WEIGHTS_PATH
from .snapshot import atomic_write

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringWeights:
    # final = cf * sigmoid(cf_raw) + content * content_score + meta * meta_score
    cf: float = 0.55
    content: float = 0.40
    meta: float = 0.05

    # content_score components
    genre: float = 0.70
    cast: float = 0.20
    synopsis: float = 0.10
    genre_exponent: float = 2.0

    # meta_score components and the scales that bring them into [0, 1]
    meta_rating: float = 0.7
    meta_popularity: float = 0.3
    rating_scale: float = 10.0
    popularity_scale: float = 100.0

    # item-to-item similarity
    similar_genre: float = 0.70
    similar_synopsis: float = 0.20
    similar_cast: float = 0.05
    similar_meta: float = 0.05

    # companion cast/crew
    entity_frequency: float = 0.6
    entity_genre: float = 0.3
    entity_popularity: float = 0.1
    discovery_boost: float = 3.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScoringWeights":
        defaults = cls()
        values: dict[str, float] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            try:
                values[f.name] = float(data[f.name])
            except (TypeError, ValueError):
                logger.warning(f"Invalid weight {f.name}={data[f.name]!r}, using {getattr(defaults, f.name)}")
        return cls(**values)


def load_scoring_weights(path: Path | None = None) -> ScoringWeights | None:
    """Load weights from JSON. Returns None if the file is missing or unreadable."""
    weights_path = Path(path or SCORING_WEIGHTS_PATH)
    if not weights_path.exists():
        return None

    try:
        with open(weights_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        logger.warning(f"Failed to load scoring weights from {weights_path}: {exc}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Scoring weights file {weights_path} does not contain an object, ignoring")
        return None
    return ScoringWeights.from_dict(data)


def save_scoring_weights(weights: ScoringWeights, path: Path | None = None) -> Path:
    weights_path = Path(path or SCORING_WEIGHTS_PATH)
    with atomic_write(weights_path, "w") as f:
        json.dump(weights.to_dict(), f, indent=2, sort_keys=True)
    logger.info(f"Saved scoring weights to {weights_path}")
    return weights_path
