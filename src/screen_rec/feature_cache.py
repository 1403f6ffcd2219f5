"""
Per-item feature snapshot.

The cache holds one immutable ItemFeature per eligible catalog item (positive
rating, non-empty synopsis). It is rebuilt offline by `build()`, persisted as a
JSON document, and loaded lazily by `ensure_loaded()`.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from tqdm import tqdm

from . import database
from .config import (
    FEATURE_CACHE_PATH,
    ITEM_KINDS,
    MIN_TOKEN_LENGTH,
    SCORING_WORKERS,
    SYNOPSIS_CHAR_LIMIT,
    TOKENIZE_CHUNK_SIZE,
)
from .errors import NotBuiltError
from .snapshot import SnapshotRef, atomic_write
from .utils import check_cancelled, chunked

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
_PUNCTUATION = re.compile(r"[^\w\s]")


def tokenize_synopsis(text: str | None, char_limit: int = SYNOPSIS_CHAR_LIMIT) -> frozenset[str]:
    """Lower-cased, punctuation-free, deduplicated words longer than two characters."""
    if not text:
        return frozenset()
    cleaned = _PUNCTUATION.sub(" ", text[:char_limit]).lower()
    return frozenset(tok for tok in cleaned.split() if len(tok) >= MIN_TOKEN_LENGTH)


@dataclass(frozen=True)
class ItemFeature:
    id: str
    external_id: int | None
    name: str
    image: str | None
    genres: frozenset[str]
    cast: frozenset[str]
    rating: float
    popularity: float
    kind: str
    tokens: frozenset[str]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "image": self.image,
            "genres": sorted(self.genres),
            "cast": sorted(self.cast),
            "rating": self.rating,
            "popularity": self.popularity,
            "kind": self.kind,
            "tokens": sorted(self.tokens),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ItemFeature":
        return cls(
            id=str(data["id"]),
            external_id=data.get("external_id"),
            name=data.get("name") or "",
            image=data.get("image"),
            genres=frozenset(str(g) for g in data.get("genres") or ()),
            cast=frozenset(str(c) for c in data.get("cast") or ()),
            rating=float(data.get("rating") or 0.0),
            popularity=float(data.get("popularity") or 0.0),
            kind=data.get("kind") or "movie",
            tokens=frozenset(data.get("tokens") or ()),
        )


def feature_from_row(row: dict) -> ItemFeature:
    kind = (row.get("kind") or "movie").lower()
    if kind not in ITEM_KINDS:
        logger.debug(f"Unknown kind '{kind}' for item {row['id']}, treating as movie")
        kind = "movie"
    return ItemFeature(
        id=str(row["id"]),
        external_id=row.get("external_id"),
        name=row.get("name") or "",
        image=row.get("image"),
        genres=frozenset(str(g) for g in row.get("genres") or ()),
        cast=frozenset(str(c) for c in row.get("cast") or ()),
        rating=float(row.get("rating") or 0.0),
        popularity=max(0.0, float(row.get("popularity") or 0.0)),
        kind=kind,
        tokens=tokenize_synopsis(row.get("synopsis")),
    )


class FeatureSnapshot:
    """Read-only view over one generation of item features."""

    def __init__(self, features: dict[str, ItemFeature], created_at: str | None = None):
        self._features = features
        self.item_ids: tuple[str, ...] = tuple(sorted(features))
        self.created_at = created_at or datetime.now().isoformat()

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._features

    def get(self, item_id: str) -> ItemFeature | None:
        return self._features.get(item_id)

    def features(self):
        """Features in item-id order."""
        return (self._features[item_id] for item_id in self.item_ids)

    def to_json(self) -> dict:
        return {
            "version": SNAPSHOT_VERSION,
            "created_at": self.created_at,
            "items": [f.to_dict() for f in self.features()],
        }


def load_feature_snapshot(path: Path) -> FeatureSnapshot | None:
    """Read a snapshot from disk. Returns None if missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        features = {}
        for data in payload["items"]:
            feature = ItemFeature.from_dict(data)
            features[feature.id] = feature
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Ignoring unreadable feature cache at {path}: {e}")
        return None
    logger.info(f"Loaded feature cache with {len(features)} items from {path}")
    return FeatureSnapshot(features, payload.get("created_at"))


class ItemFeatureCache:
    def __init__(self, path: Path | None = None, workers: int = SCORING_WORKERS):
        self.path = Path(path or FEATURE_CACHE_PATH)
        self.workers = workers
        self._ref: SnapshotRef[FeatureSnapshot] = SnapshotRef()

    @property
    def snapshot(self) -> FeatureSnapshot | None:
        return self._ref.get()

    def ensure_loaded(self, required: bool = True) -> FeatureSnapshot | None:
        snapshot = self._ref.load_once(lambda: load_feature_snapshot(self.path))
        if snapshot is None and required:
            raise NotBuiltError("feature cache")
        return snapshot

    def build(self, cancel: threading.Event | None = None, show_progress: bool = False) -> FeatureSnapshot:
        """
        Tokenize every eligible catalog item, persist the snapshot and swap it in.

        Tokenization runs in a thread pool over chunks of rows. The cancellation
        event is checked as each chunk finishes; a cancelled build writes nothing
        and leaves the current snapshot in place.
        """
        rows = database.load_catalog_items()
        logger.info(f"Building feature cache for {len(rows)} eligible items")

        features: dict[str, ItemFeature] = {}
        chunks = list(chunked(rows, TOKENIZE_CHUNK_SIZE))
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(lambda chunk: [feature_from_row(r) for r in chunk], c) for c in chunks]
            try:
                for future in tqdm(as_completed(futures), total=len(futures), desc="Tokenizing", disable=not show_progress):
                    check_cancelled(cancel, "Feature cache build")
                    for feature in future.result():
                        features[feature.id] = feature
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        check_cancelled(cancel, "Feature cache build")
        snapshot = FeatureSnapshot(features)
        with atomic_write(self.path, "w") as f:
            json.dump(snapshot.to_json(), f)
        self._ref.swap(snapshot)
        logger.info(f"Feature cache written to {self.path} ({len(snapshot)} items)")
        return snapshot
