"""
Hashed synopsis vectors for content similarity.

Each eligible item's synopsis is truncated, accent-stripped, lower-cased and
stop-word filtered, then its word uni/bi-grams are hashed into a fixed-size
sparse vector. Hash collisions are accepted; the vectors are only compared by
cosine similarity.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path

import numpy as np
from scipy.sparse import csr_matrix, vstack
from sklearn.feature_extraction.text import HashingVectorizer

from . import database
from .config import (
    CONTENT_HASH_BITS,
    CONTENT_INDEX_PATH,
    CONTENT_NGRAM_MAX,
    SYNOPSIS_CHAR_LIMIT,
    TOKENIZE_CHUNK_SIZE,
)
from .errors import NotBuiltError
from .feature_cache import ItemFeatureCache
from .snapshot import SnapshotRef, atomic_write
from .utils import check_cancelled, chunked

logger = logging.getLogger(__name__)


def build_vectorizer(n_bits: int = CONTENT_HASH_BITS) -> HashingVectorizer:
    return HashingVectorizer(
        n_features=2 ** n_bits,
        ngram_range=(1, CONTENT_NGRAM_MAX),
        stop_words="english",
        strip_accents="unicode",
        lowercase=True,
        alternate_sign=False,
        norm=None,
        dtype=np.float32,
    )


class ContentIndexSnapshot:
    """Immutable id -> sparse vector map with precomputed row norms."""

    def __init__(self, item_ids, matrix: csr_matrix, created_at: str | None = None):
        self.item_ids: tuple[str, ...] = tuple(item_ids)
        self.matrix = csr_matrix(matrix, dtype=np.float32)
        if self.matrix.shape[0] != len(self.item_ids):
            raise ValueError(f"{len(self.item_ids)} ids for {self.matrix.shape[0]} vectors")
        self.norms = np.sqrt(np.asarray(self.matrix.multiply(self.matrix).sum(axis=1)).ravel())
        self.created_at = created_at or datetime.now().isoformat()
        self._rows = {item_id: i for i, item_id in enumerate(self.item_ids)}

    def __len__(self) -> int:
        return len(self.item_ids)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._rows

    def similarity(self, a: str, b: str) -> float:
        """Cosine similarity; 0 for unknown ids or zero vectors."""
        if a not in self._rows or b not in self._rows:
            return 0.0
        return float(self.similarities(a, [b])[0])

    def similarities(self, item_id: str, candidate_ids=None) -> np.ndarray:
        """
        Cosine between `item_id` and each candidate (all indexed items when
        `candidate_ids` is None). Unknown candidates score 0.
        """
        if candidate_ids is None:
            rows = np.arange(len(self.item_ids))
            known = np.ones(len(rows), dtype=bool)
        else:
            lookup = [self._rows.get(c, -1) for c in candidate_ids]
            rows = np.array(lookup, dtype=np.int64)
            known = rows >= 0

        result = np.zeros(len(rows), dtype=np.float64)
        source = self._rows.get(item_id)
        if source is None or self.norms[source] == 0.0 or not known.any():
            return result

        target_rows = rows[known]
        dots = np.asarray((self.matrix[target_rows] @ self.matrix[source].T).todense()).ravel()
        denom = self.norms[target_rows] * self.norms[source]
        with np.errstate(divide="ignore", invalid="ignore"):
            cos = np.where(denom > 0, dots / denom, 0.0)
        result[known] = np.clip(cos, -1.0, 1.0)
        return result

    def mean_similarities(self, anchor_ids, candidate_ids) -> np.ndarray:
        """
        Average cosine between each candidate and the anchors present in the
        index. Uses the sum of unit anchor vectors, so the cost is one sparse
        product regardless of how many anchors there are. Zero-norm anchors
        count towards the average with similarity 0.
        """
        candidate_ids = list(candidate_ids)
        result = np.zeros(len(candidate_ids), dtype=np.float64)
        anchor_rows = np.array([self._rows[a] for a in anchor_ids if a in self._rows], dtype=np.int64)
        if len(anchor_rows) == 0 or not candidate_ids:
            return result

        anchor_norms = self.norms[anchor_rows]
        nonzero = anchor_norms > 0
        if not nonzero.any():
            return result
        unit = self.matrix[anchor_rows[nonzero]].multiply(1.0 / anchor_norms[nonzero][:, None])
        centroid = np.asarray(unit.sum(axis=0)).ravel()

        rows = np.array([self._rows.get(c, -1) for c in candidate_ids], dtype=np.int64)
        mask = rows >= 0
        mask[mask] = self.norms[rows[mask]] > 0
        if not mask.any():
            return result
        dots = self.matrix[rows[mask]] @ centroid
        result[mask] = np.asarray(dots).ravel() / (self.norms[rows[mask]] * len(anchor_rows))
        return np.clip(result, -1.0, 1.0)

    def nearest(self, item_id: str, top_k: int, candidate_ids=None, exclude=()) -> list[tuple[str, float]]:
        """Top-k most similar items, best first, ties by id."""
        ids = list(self.item_ids) if candidate_ids is None else list(candidate_ids)
        if not ids or top_k <= 0:
            return []
        scores = self.similarities(item_id, None if candidate_ids is None else ids)
        excluded = set(exclude)
        ranked = sorted(
            ((ids[i], float(scores[i])) for i in range(len(ids)) if ids[i] not in excluded),
            key=lambda pair: (-pair[1], pair[0]),
        )
        return ranked[:top_k]


def load_content_snapshot(path: Path) -> ContentIndexSnapshot | None:
    path = Path(path)
    if not path.exists():
        return None
    try:
        with np.load(path, allow_pickle=False) as data:
            metadata = json.loads(str(data["metadata"]))
            matrix = csr_matrix(
                (data["data"], data["indices"], data["indptr"]),
                shape=tuple(data["shape"]),
            )
            item_ids = [str(i) for i in data["item_ids"]]
        snapshot = ContentIndexSnapshot(item_ids, matrix, metadata.get("created_at"))
    except (OSError, ValueError, KeyError) as e:
        logger.warning(f"Ignoring unreadable content index at {path}: {e}")
        return None
    logger.info(f"Loaded content index with {len(snapshot)} vectors from {path}")
    return snapshot


class ContentVectorIndex:
    def __init__(self, path: Path | None = None):
        self.path = Path(path or CONTENT_INDEX_PATH)
        self._ref: SnapshotRef[ContentIndexSnapshot] = SnapshotRef()

    @property
    def snapshot(self) -> ContentIndexSnapshot | None:
        return self._ref.get()

    def ensure_loaded(self, required: bool = True) -> ContentIndexSnapshot | None:
        snapshot = self._ref.load_once(lambda: load_content_snapshot(self.path))
        if snapshot is None and required:
            raise NotBuiltError("content index")
        return snapshot

    def similarity(self, a: str, b: str) -> float:
        snapshot = self.ensure_loaded()
        return snapshot.similarity(a, b)

    def build(self, feature_cache: ItemFeatureCache, cancel: threading.Event | None = None) -> ContentIndexSnapshot:
        """Vectorize the synopsis of every item in the feature cache."""
        features = feature_cache.ensure_loaded(required=True)
        item_ids = list(features.item_ids)
        synopses = database.load_synopses(item_ids)
        vectorizer = build_vectorizer()

        blocks = []
        for chunk in chunked(item_ids, TOKENIZE_CHUNK_SIZE):
            check_cancelled(cancel, "Content index build")
            texts = [(synopses.get(item_id) or "")[:SYNOPSIS_CHAR_LIMIT] for item_id in chunk]
            blocks.append(vectorizer.transform(texts))

        matrix = vstack(blocks).tocsr() if blocks else csr_matrix((0, vectorizer.n_features), dtype=np.float32)
        snapshot = ContentIndexSnapshot(item_ids, matrix)
        metadata = {
            "created_at": snapshot.created_at,
            "n_items": len(snapshot),
            "n_features": vectorizer.n_features,
            "ngram_range": list(vectorizer.ngram_range),
        }

        check_cancelled(cancel, "Content index build")
        with atomic_write(self.path) as f:
            np.savez_compressed(
                f,
                data=snapshot.matrix.data,
                indices=snapshot.matrix.indices,
                indptr=snapshot.matrix.indptr,
                shape=np.array(snapshot.matrix.shape),
                item_ids=np.array(snapshot.item_ids, dtype=str),
                metadata=json.dumps(metadata),
            )
        self._ref.swap(snapshot)
        logger.info(f"Content index written to {self.path} ({len(snapshot)} items, {vectorizer.n_features} dims)")
        return snapshot
