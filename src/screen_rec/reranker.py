"""
Learned reranker.

A gradient-boosted classifier over six signals per (user, item) pair. Training
rows are assembled per user from two candidate legs: the collaborative model's
top picks from a random catalog sample, and the content neighbours of each
item in the user's library. Candidates the user actually has are positives; a
capped random subset of the others are negatives.

Assembly is resumable: rows are staged in the store one chunk of users at a
time together with a job cursor, so an interrupted run picks up after the last
committed chunk as long as the inputs have not changed.
"""
from __future__ import annotations

import json
import logging
import pickle
import random
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import joblib
import numpy as np
from sklearn.ensemble import GradientBoostingClassifier
from tqdm import tqdm

from . import database
from .config import (
    RERANK_CANDIDATES_PER_USER,
    RERANK_CF_SAMPLE_SIZE,
    RERANK_CONTENT_NEIGHBORS,
    RERANK_CONTENT_SAMPLE_SIZE,
    RERANK_LEAVES,
    RERANK_NEGATIVE_MULTIPLE,
    RERANK_TREES,
    RERANK_USERS_PER_CHUNK,
    RERANKER_PATH,
    TRAINING_SEED,
)
from .content_index import ContentIndexSnapshot
from .errors import NoTrainingDataError
from .feature_cache import FeatureSnapshot, ItemFeature
from .matrix_factorization import CollaborativeModel
from .profile import UserProfile, build_profile
from .scoring import jaccard, sigmoid
from .snapshot import atomic_write
from .utils import check_cancelled, chunked

logger = logging.getLogger(__name__)

JOB_NAME = "train_reranker"
FEATURE_NAMES = database.RERANK_COLUMNS


@dataclass(frozen=True)
class RerankRecord:
    user_id: str
    item_id: str
    cf_score: float
    content_similarity: float
    genre_jaccard: float
    cast_jaccard: float
    rating: float
    popularity: float
    label: int | None = None

    def features(self) -> list[float]:
        return [getattr(self, name) for name in FEATURE_NAMES]

    def to_row(self) -> dict:
        row = {name: getattr(self, name) for name in FEATURE_NAMES}
        row.update(user_id=self.user_id, item_id=self.item_id, label=self.label)
        return row

    @classmethod
    def from_row(cls, row: dict) -> "RerankRecord":
        return cls(
            user_id=row["user_id"],
            item_id=row["item_id"],
            label=row.get("label"),
            **{name: float(row[name]) for name in FEATURE_NAMES},
        )


def build_rerank_record(
    profile: UserProfile,
    feature: ItemFeature,
    cf_score: float,
    content_similarity: float,
    label: int | None = None,
) -> RerankRecord:
    """Feature row for one (user, item) pair. `cf_score` is already squashed."""
    return RerankRecord(
        user_id=profile.user_id,
        item_id=feature.id,
        cf_score=cf_score,
        content_similarity=content_similarity,
        genre_jaccard=jaccard(profile.genres, feature.genres),
        cast_jaccard=jaccard(profile.watched_cast, feature.cast),
        rating=feature.rating,
        popularity=feature.popularity,
        label=label,
    )


class Reranker:
    def __init__(self, model: GradientBoostingClassifier | None = None, metadata: dict | None = None):
        self.model = model
        self.metadata = metadata or {}

    @property
    def is_fitted(self) -> bool:
        return self.model is not None

    def fit(self, records: list[RerankRecord], random_state: int = TRAINING_SEED) -> "Reranker":
        labels = np.array([r.label for r in records], dtype=np.int64)
        if len(records) == 0 or labels.sum() == 0:
            raise NoTrainingDataError("No positive reranker rows were assembled")
        if labels.sum() == len(labels):
            raise NoTrainingDataError("No negative reranker rows were assembled")

        X = np.array([r.features() for r in records], dtype=np.float64)
        model = GradientBoostingClassifier(
            n_estimators=RERANK_TREES,
            max_leaf_nodes=RERANK_LEAVES,
            random_state=random_state,
        )
        model.fit(X, labels)
        self.model = model
        self.metadata = {
            "created_at": datetime.now().isoformat(),
            "n_rows": len(records),
            "n_positive": int(labels.sum()),
            "n_users": len({r.user_id for r in records}),
        }
        logger.info(
            f"Fitted reranker on {len(records)} rows "
            f"({self.metadata['n_positive']} positive, {self.metadata['n_users']} users)"
        )
        return self

    def predict(self, records: list[RerankRecord]) -> np.ndarray:
        """Probability of the positive class for each record."""
        if not records:
            return np.zeros(0)
        X = np.array([r.features() for r in records], dtype=np.float64)
        return self.model.predict_proba(X)[:, 1]

    def scorer(self) -> "RerankScorer":
        return RerankScorer(self)

    def save(self, path: Path = RERANKER_PATH) -> Path:
        if not self.is_fitted:
            raise ValueError("Cannot save an unfitted reranker")
        path = Path(path)
        with atomic_write(path) as f:
            joblib.dump(
                {"model": self.model, "feature_names": list(FEATURE_NAMES), "metadata": self.metadata},
                f,
            )
        logger.info(f"Saved reranker to {path}")
        return path

    @classmethod
    def load(cls, path: Path = RERANKER_PATH) -> "Reranker | None":
        path = Path(path)
        if not path.exists():
            return None
        try:
            payload = joblib.load(path)
            if list(payload["feature_names"]) != list(FEATURE_NAMES):
                logger.warning(f"Reranker at {path} was trained on different features, ignoring")
                return None
            reranker = cls(payload["model"], payload.get("metadata"))
        except (OSError, EOFError, KeyError, TypeError, ValueError, pickle.UnpicklingError) as e:
            logger.warning(f"Failed to load reranker from {path}: {e}")
            return None
        logger.info(f"Loaded reranker from {path}")
        return reranker


class RerankScorer:
    """Per-worker handle scoring a chunk of records in one predict call."""

    def __init__(self, reranker: Reranker):
        self._reranker = reranker

    def score(self, records: list[RerankRecord]) -> np.ndarray:
        if self._reranker is None:
            raise RuntimeError("Scorer has been closed")
        return self._reranker.predict(records)

    def close(self) -> None:
        self._reranker = None

    def __enter__(self) -> "RerankScorer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _user_rng(seed: int, user_id: str) -> random.Random:
    # Seeded per user so a resumed run assembles the same rows
    return random.Random(f"{seed}:{user_id}")


def assemble_user_rows(
    user_id: str,
    positives: set[str],
    features: FeatureSnapshot,
    content: ContentIndexSnapshot,
    cf_scorer,
    candidates_per_user: int = RERANK_CANDIDATES_PER_USER,
    seed: int = TRAINING_SEED,
) -> list[RerankRecord]:
    rng = _user_rng(seed, user_id)
    catalog = list(features.item_ids)
    if not catalog:
        return []

    # Collaborative leg: top half of the candidate budget from a random sample
    sample = rng.sample(catalog, min(RERANK_CF_SAMPLE_SIZE, len(catalog)))
    cf_scores = {item_id: sigmoid(cf_scorer.score(user_id, item_id)) for item_id in sample}
    ranked = sorted(cf_scores, key=lambda item_id: (-cf_scores[item_id], item_id))
    candidates = set(ranked[: candidates_per_user // 2])

    # Content leg: nearest neighbours of each positive within a random sample
    for item_id in sorted(positives):
        if item_id not in content:
            continue
        pool = rng.sample(catalog, min(RERANK_CONTENT_SAMPLE_SIZE, len(catalog)))
        candidates.update(n for n, _ in content.nearest(item_id, RERANK_CONTENT_NEIGHBORS, candidate_ids=pool))

    positive_candidates = sorted(c for c in candidates if c in positives)
    negative_pool = sorted(c for c in candidates if c not in positives)
    n_negative = min(RERANK_NEGATIVE_MULTIPLE * len(positive_candidates), len(negative_pool))
    negative_candidates = rng.sample(negative_pool, n_negative)

    def _record(item_id: str, label: int, profile: UserProfile, content_sim: float) -> RerankRecord:
        cf_score = cf_scores[item_id] if item_id in cf_scores else sigmoid(cf_scorer.score(user_id, item_id))
        return build_rerank_record(profile, features.get(item_id), cf_score, float(content_sim), label)

    # Positives are scored against the rest of the library only
    records = []
    for item_id in positive_candidates:
        held_out = build_profile(user_id, positives - {item_id}, (), features)
        content_sim = content.mean_similarities(held_out.watched, [item_id])[0]
        records.append(_record(item_id, 1, held_out, content_sim))

    profile = build_profile(user_id, positives, (), features)
    content_sims = content.mean_similarities(profile.watched, negative_candidates)
    for item_id, content_sim in zip(negative_candidates, content_sims):
        records.append(_record(item_id, 0, profile, content_sim))
    return records


def _fingerprint(features: FeatureSnapshot, content: ContentIndexSnapshot,
                 cf_model: CollaborativeModel, candidates_per_user: int, seed: int) -> str:
    return json.dumps({
        "features": features.created_at,
        "content": content.created_at,
        "cf": (cf_model.metadata or {}).get("created_at"),
        "candidates_per_user": candidates_per_user,
        "seed": seed,
    }, sort_keys=True)


def train_reranker(
    features: FeatureSnapshot,
    content: ContentIndexSnapshot,
    cf_model: CollaborativeModel,
    candidates_per_user: int = RERANK_CANDIDATES_PER_USER,
    cancel: threading.Event | None = None,
    show_progress: bool = False,
    seed: int = TRAINING_SEED,
) -> Reranker:
    """
    Assemble training rows for every user with a positive interaction and fit
    the classifier. The caller persists the result and then calls
    `finish_training()` to drop the staged rows and the cursor.
    """
    edges = database.load_library_item_edges()
    users = sorted(u for u, items in edges.items() if items)
    if not users:
        raise NoTrainingDataError("No users with positive interactions to train the reranker")

    fingerprint = _fingerprint(features, content, cf_model, candidates_per_user, seed)
    cursor = database.get_job_cursor(JOB_NAME)
    resume_after = None
    if cursor and cursor["fingerprint"] == fingerprint:
        resume_after = cursor["position"]
        logger.info(f"Resuming reranker row assembly after user {resume_after}")
    else:
        if cursor:
            logger.info("Inputs changed since the last interrupted run, restarting row assembly")
        finish_training()

    remaining = [u for u in users if resume_after is None or u > resume_after]
    with cf_model.scorer() as cf_scorer:
        progress = tqdm(total=len(remaining), desc="Assembling rerank rows", disable=not show_progress)
        for chunk in chunked(remaining, RERANK_USERS_PER_CHUNK):
            check_cancelled(cancel, "Reranker training")
            rows = []
            for user_id in chunk:
                records = assemble_user_rows(
                    user_id, set(edges[user_id]), features, content, cf_scorer, candidates_per_user, seed,
                )
                rows.extend(r.to_row() for r in records)
            with database.get_db():
                database.stage_rerank_rows(rows)
                database.save_job_cursor(JOB_NAME, chunk[-1], fingerprint)
            progress.update(len(chunk))
        progress.close()

    check_cancelled(cancel, "Reranker training")
    records = [RerankRecord.from_row(row) for row in database.load_rerank_rows()]
    return Reranker().fit(records, random_state=seed)


def finish_training() -> None:
    """Drop staged rows and the job cursor."""
    with database.get_db():
        database.clear_rerank_rows()
        database.clear_job_cursor(JOB_NAME)
