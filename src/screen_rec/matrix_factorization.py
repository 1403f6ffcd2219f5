import json
import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import svds
from tqdm import tqdm

from .config import (
    CF_EPOCHS,
    CF_FACTORS,
    CF_LEARNING_RATE,
    CF_MAX_NEGATIVES_PER_USER,
    CF_MODEL_PATH,
    CF_NEGATIVE_RATIO,
    CF_REGULARIZATION,
    TRAINING_SEED,
)
from .errors import NoTrainingDataError
from .snapshot import atomic_write
from .utils import check_cancelled

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
_BATCH_SIZE = 256


@dataclass(frozen=True)
class InteractionRecord:
    user_id: str
    item_id: str
    label: int


def build_interactions(
    library_edges: dict[str, list[str]],
    catalog_ids: list[str],
    seed: int = TRAINING_SEED,
    negative_ratio: int = CF_NEGATIVE_RATIO,
    max_negatives: int = CF_MAX_NEGATIVES_PER_USER,
) -> list[InteractionRecord]:
    """
    Positive rows for every library edge plus, per user, up to
    min(negative_ratio * positives, max_negatives) catalog items the user
    does not have, sampled without replacement.
    """
    rng = random.Random(seed)
    catalog = list(dict.fromkeys(catalog_ids))
    in_catalog = set(catalog)
    rows: list[InteractionRecord] = []

    for user_id in sorted(library_edges):
        positives = set(library_edges[user_id])
        rows.extend(InteractionRecord(user_id, item_id, 1) for item_id in sorted(positives))

        available = len(catalog) - len(positives & in_catalog)
        wanted = min(negative_ratio * len(positives), max_negatives, available)
        if wanted <= 0:
            continue

        if available <= 4 * wanted:
            pool = [item_id for item_id in catalog if item_id not in positives]
            negatives = rng.sample(pool, wanted)
        else:
            chosen: set[str] = set()
            negatives = []
            while len(negatives) < wanted:
                item_id = catalog[rng.randrange(len(catalog))]
                if item_id in positives or item_id in chosen:
                    continue
                chosen.add(item_id)
                negatives.append(item_id)
        rows.extend(InteractionRecord(user_id, item_id, 0) for item_id in negatives)

    return rows


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -30.0, 30.0)))


class CollaborativeModel:
    """
    Latent-factor model over 0/1 library labels.

    score(u, i) = global_bias + user_bias[u] + item_bias[i] + P[u] . Q[i]

    The score is a logit: it is fitted with logistic loss by mini-batch SGD, so
    sigmoid(score) estimates the probability that the item belongs in the
    user's library. Factors are warm-started from a truncated SVD of the label
    matrix. Unknown users or items score 0.
    """

    def __init__(
        self,
        n_factors: int = CF_FACTORS,
        n_epochs: int = CF_EPOCHS,
        learning_rate: float = CF_LEARNING_RATE,
        regularization: float = CF_REGULARIZATION,
        random_state: int = TRAINING_SEED,
    ):
        self.n_factors = n_factors
        self.n_epochs = n_epochs
        self.learning_rate = learning_rate
        self.regularization = regularization
        self.random_state = random_state
        self.user_factors = None
        self.item_factors = None
        self.user_biases = None
        self.item_biases = None
        self.global_bias = 0.0
        self.user_index: dict[str, int] = {}
        self.item_index: dict[str, int] = {}
        self.metadata: dict | None = None
        self.is_fitted = False

    def hyperparams(self) -> dict:
        return {
            "n_factors": self.n_factors,
            "n_epochs": self.n_epochs,
            "learning_rate": self.learning_rate,
            "regularization": self.regularization,
            "random_state": self.random_state,
        }

    @staticmethod
    def compute_fingerprint(interactions: list[InteractionRecord], hyperparams: dict | None = None) -> dict:
        """Lightweight fingerprint of the training set."""
        fp = {
            "n_users": len({r.user_id for r in interactions}),
            "n_items": len({r.item_id for r in interactions}),
            "n_positives": sum(r.label for r in interactions),
            "n_rows": len(interactions),
        }
        if hyperparams:
            fp["hyperparams"] = hyperparams
        return fp

    def _warm_start(self, labels: csr_matrix, rng: np.random.Generator) -> tuple[np.ndarray, np.ndarray]:
        n_users, n_items = labels.shape
        P = rng.normal(0.0, 0.01, size=(n_users, self.n_factors))
        Q = rng.normal(0.0, 0.01, size=(n_items, self.n_factors))

        k = min(self.n_factors, min(n_users, n_items) - 1)
        if k < 1:
            return P, Q
        v0 = rng.uniform(0.1, 1.0, size=min(n_users, n_items))
        U, sigma, Vt = svds(labels.astype(np.float64), k=k, v0=v0)
        sigma_sqrt = np.sqrt(np.maximum(sigma, 0.0))
        # Scaled down so the first epochs are not dominated by the SVD reconstruction
        P[:, :k] = 0.1 * U * sigma_sqrt
        Q[:, :k] = 0.1 * Vt.T * sigma_sqrt
        return P, Q

    def fit(
        self,
        interactions: list[InteractionRecord],
        cancel: threading.Event | None = None,
        show_progress: bool = False,
    ) -> 'CollaborativeModel':
        self.is_fitted = False

        if not any(r.label == 1 for r in interactions):
            raise NoTrainingDataError("Cannot train the collaborative model without positive interactions")

        users = sorted({r.user_id for r in interactions})
        items = sorted({r.item_id for r in interactions})
        user_index = {u: i for i, u in enumerate(users)}
        item_index = {it: i for i, it in enumerate(items)}

        u = np.array([user_index[r.user_id] for r in interactions], dtype=np.int64)
        i = np.array([item_index[r.item_id] for r in interactions], dtype=np.int64)
        y = np.array([r.label for r in interactions], dtype=np.float64)
        labels = csr_matrix((y, (u, i)), shape=(len(users), len(items)))

        rng = np.random.default_rng(self.random_state)
        P, Q = self._warm_start(labels, rng)
        bu = np.zeros(len(users))
        bi = np.zeros(len(items))
        mean = float(np.clip(y.mean(), 1e-3, 1 - 1e-3))
        gb = float(np.log(mean / (1.0 - mean)))

        lr, reg = self.learning_rate, self.regularization
        n = len(y)
        for epoch in tqdm(range(self.n_epochs), desc="Training CF", disable=not show_progress):
            check_cancelled(cancel, "Collaborative model training")
            order = rng.permutation(n)
            for start in range(0, n, _BATCH_SIZE):
                b = order[start:start + _BATCH_SIZE]
                ub, ib = u[b], i[b]
                pu, qi = P[ub], Q[ib]
                err = y[b] - _sigmoid(gb + bu[ub] + bi[ib] + np.sum(pu * qi, axis=1))

                gb += lr * float(err.mean())
                np.add.at(bu, ub, lr * (err - reg * bu[ub]))
                np.add.at(bi, ib, lr * (err - reg * bi[ib]))
                np.add.at(P, ub, lr * (err[:, None] * qi - reg * pu))
                np.add.at(Q, ib, lr * (err[:, None] * pu - reg * qi))

            if logger.isEnabledFor(logging.DEBUG):
                p = _sigmoid(gb + bu[u] + bi[i] + np.sum(P[u] * Q[i], axis=1))
                loss = -np.mean(y * np.log(p + 1e-12) + (1 - y) * np.log(1 - p + 1e-12))
                logger.debug(f"CF epoch {epoch + 1}/{self.n_epochs}: log loss {loss:.4f}")

        self.user_factors = P
        self.item_factors = Q
        self.user_biases = bu
        self.item_biases = bi
        self.global_bias = gb
        self.user_index = user_index
        self.item_index = item_index
        self.is_fitted = True
        self.metadata = {
            "schema_version": SCHEMA_VERSION,
            "fingerprint": self.compute_fingerprint(interactions, self.hyperparams()),
            "created_at": datetime.now().isoformat(),
        }
        logger.info(
            f"Fitted collaborative model with {self.n_factors} factors on "
            f"{len(users)} users x {len(items)} items ({int(y.sum())} positives, {n} rows)"
        )
        return self

    def score(self, user_id: str, item_id: str) -> float:
        """Raw (unbounded) score; 0.0 for unknown users or items."""
        if not self.is_fitted:
            return 0.0
        u = self.user_index.get(user_id)
        i = self.item_index.get(item_id)
        if u is None or i is None:
            return 0.0
        return float(
            self.global_bias + self.user_biases[u] + self.item_biases[i]
            + self.user_factors[u] @ self.item_factors[i]
        )

    def scorer(self) -> "CollaborativeScorer":
        return CollaborativeScorer(self)

    def save(self, path: Path = CF_MODEL_PATH) -> Path:
        if not self.is_fitted:
            raise ValueError("Cannot save an unfitted collaborative model")
        path = Path(path)
        metadata = dict(self.metadata or {})
        metadata["hyperparams"] = self.hyperparams()
        with atomic_write(path) as f:
            np.savez_compressed(
                f,
                user_factors=self.user_factors,
                item_factors=self.item_factors,
                user_biases=self.user_biases,
                item_biases=self.item_biases,
                global_bias=np.array(self.global_bias),
                user_ids=np.array(list(self.user_index), dtype=str),
                item_ids=np.array(list(self.item_index), dtype=str),
                metadata=json.dumps(metadata),
            )
        logger.info(f"Saved collaborative model to {path}")
        return path

    @classmethod
    def load(cls, path: Path = CF_MODEL_PATH) -> 'CollaborativeModel | None':
        """Load a saved model; None if the file is missing or unreadable."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            with np.load(path, allow_pickle=False) as data:
                metadata = json.loads(str(data["metadata"]))
                if metadata.get("schema_version") != SCHEMA_VERSION:
                    logger.warning(f"Collaborative model at {path} has schema {metadata.get('schema_version')}, ignoring")
                    return None
                model = cls(**metadata.get("hyperparams", {}))
                model.user_factors = data["user_factors"]
                model.item_factors = data["item_factors"]
                model.user_biases = data["user_biases"]
                model.item_biases = data["item_biases"]
                model.global_bias = float(data["global_bias"])
                model.user_index = {str(u): i for i, u in enumerate(data["user_ids"])}
                model.item_index = {str(it): i for i, it in enumerate(data["item_ids"])}
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load collaborative model from {path}: {e}")
            return None
        model.metadata = metadata
        model.is_fitted = True
        logger.info(f"Loaded collaborative model from {path} ({len(model.user_index)} users, {len(model.item_index)} items)")
        return model


class CollaborativeScorer:
    """
    Per-worker scoring handle.

    Holds the requesting user's factor row so repeated calls for the same user
    skip the index lookup. Not shared between threads; close it when the batch
    is done.
    """

    def __init__(self, model: CollaborativeModel):
        self._model = model
        self._user_id: str | None = None
        self._user_row: np.ndarray | None = None
        self._user_bias = 0.0

    def _bind(self, user_id: str) -> None:
        model = self._model
        self._user_id = user_id
        u = model.user_index.get(user_id) if model is not None else None
        if u is None:
            self._user_row = None
            self._user_bias = 0.0
        else:
            self._user_row = model.user_factors[u]
            self._user_bias = float(model.global_bias + model.user_biases[u])

    def score(self, user_id: str, item_id: str) -> float:
        if self._model is None:
            raise RuntimeError("Scorer has been closed")
        if user_id != self._user_id:
            self._bind(user_id)
        if self._user_row is None:
            return 0.0
        i = self._model.item_index.get(item_id)
        if i is None:
            return 0.0
        return float(self._user_bias + self._model.item_biases[i] + self._user_row @ self._model.item_factors[i])

    def close(self) -> None:
        self._model = None
        self._user_row = None
        self._user_id = None

    def __enter__(self) -> "CollaborativeScorer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
