import logging
import random
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

from . import database
from .config import (
    CAST_ROLES,
    CF_MODEL_PATH,
    CONTENT_INDEX_PATH,
    DEFAULT_COMPANION_N,
    DEFAULT_TOP_N,
    FEATURE_CACHE_PATH,
    FULL_SCAN_LIMIT,
    META_CANDIDATES,
    NEIGHBORS_PER_WATCHED,
    RERANK_CANDIDATES_PER_USER,
    RERANKER_PATH,
    SCORING_WORKERS,
    TRAINING_SEED,
)
from .content_index import ContentIndexSnapshot, ContentVectorIndex
from .errors import MissingEntityError, NotBuiltError
from .feature_cache import FeatureSnapshot, ItemFeature, ItemFeatureCache
from .matrix_factorization import CollaborativeModel, build_interactions
from .profile import UserProfile, build_profile
from .reranker import Reranker, build_rerank_record, finish_training, train_reranker
from .scoring import (
    blend,
    cast_similarity,
    companion_score,
    content_score,
    genre_similarity,
    jaccard,
    meta_score,
    sigmoid,
    similar_item_score,
)
from .snapshot import SnapshotRef
from .utils import split_evenly
from .weights import ScoringWeights, load_scoring_weights

logger = logging.getLogger(__name__)


@dataclass
class Recommendation:
    item_id: str
    name: str
    score: float
    image: str | None = None
    external_id: int | None = None
    kind: str = "movie"
    rating: float = 0.0
    popularity: float = 0.0
    genres: list[str] = field(default_factory=list)
    in_library: bool = False


@dataclass
class CompanionEntity:
    cast_id: str
    name: str
    role: str
    score: float
    photo: str | None = None
    marked: bool = False


@dataclass
class UserRecommendations:
    user_id: str
    items: list[Recommendation]
    actors: list[CompanionEntity]
    directors: list[CompanionEntity]


@dataclass
class EntitySimilarity:
    entity: CompanionEntity
    similar: list[CompanionEntity]
    items: list[Recommendation]


@dataclass
class ScoredCandidate:
    """Final score of one candidate plus the signals that produced it."""
    item_id: str
    score: float
    cf_score: float
    content_score: float
    meta_score: float
    genre_sim: float
    cast_sim: float
    synopsis_sim: float
    reranked: bool = False


class _Resident(NamedTuple):
    features: FeatureSnapshot
    content: ContentIndexSnapshot | None
    cf: CollaborativeModel | None
    reranker: Reranker | None


def _rank_key(candidate: ScoredCandidate):
    return (-candidate.score, candidate.item_id)


class RecommendationEngine:
    """
    Hybrid recommender over the feature cache, content index, collaborative
    model and optional reranker.

    Each snapshot sits behind its own swappable reference. A request reads the
    references once at the start and uses those objects until it returns, so
    a rebuild that swaps in a new snapshot never affects in-flight requests.
    """

    def __init__(
        self,
        snapshot_dir: Path | None = None,
        weights: ScoringWeights | None = None,
        workers: int = SCORING_WORKERS,
    ):
        base = Path(snapshot_dir) if snapshot_dir is not None else None

        def _path(default: Path) -> Path:
            return base / default.name if base is not None else default

        self.workers = max(1, workers)
        self.weights = weights or load_scoring_weights() or ScoringWeights()
        self.feature_cache = ItemFeatureCache(_path(FEATURE_CACHE_PATH), workers=self.workers)
        self.content_index = ContentVectorIndex(_path(CONTENT_INDEX_PATH))
        self.cf_model_path = _path(CF_MODEL_PATH)
        self.reranker_path = _path(RERANKER_PATH)
        self._cf_ref: SnapshotRef[CollaborativeModel] = SnapshotRef()
        self._reranker_ref: SnapshotRef[Reranker] = SnapshotRef()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # --- Snapshot management -------------------------------------------------

    def ensure_loaded(self) -> _Resident:
        """
        Load whatever is on disk and not yet in memory. The feature cache is
        required; the content index and both models are optional.
        """
        return _Resident(
            features=self.feature_cache.ensure_loaded(required=True),
            content=self.content_index.ensure_loaded(required=False),
            cf=self._cf_ref.load_once(lambda: CollaborativeModel.load(self.cf_model_path)),
            reranker=self._reranker_ref.load_once(lambda: Reranker.load(self.reranker_path)),
        )

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="screen-rec-score")
            return self._executor

    def _run_chunks(self, fn, values: list) -> list:
        """Apply `fn` to contiguous chunks of `values` in parallel and concatenate the results."""
        chunks = split_evenly(values, self.workers)
        if len(chunks) <= 1:
            return [r for chunk in chunks for r in fn(chunk)]
        results = []
        for part in self._pool().map(fn, chunks):
            results.extend(part)
        return results

    # --- Offline jobs --------------------------------------------------------

    def build_feature_cache(self, cancel: threading.Event | None = None, show_progress: bool = False) -> FeatureSnapshot:
        return self.feature_cache.build(cancel=cancel, show_progress=show_progress)

    def build_content_index(self, cancel: threading.Event | None = None) -> ContentIndexSnapshot:
        return self.content_index.build(self.feature_cache, cancel=cancel)

    def train_collaborative_model(
        self,
        cancel: threading.Event | None = None,
        show_progress: bool = False,
        **hyperparams,
    ) -> CollaborativeModel:
        """Train on every non-deleted library edge plus sampled negatives and swap the model in."""
        edges = database.load_library_item_edges()
        interactions = build_interactions(edges, database.load_item_ids())
        model = CollaborativeModel(**hyperparams).fit(interactions, cancel=cancel, show_progress=show_progress)
        model.save(self.cf_model_path)
        self._cf_ref.swap(model)
        return model

    def train_reranker(
        self,
        candidates_per_user: int = RERANK_CANDIDATES_PER_USER,
        cancel: threading.Event | None = None,
        show_progress: bool = False,
    ) -> Reranker:
        features = self.feature_cache.ensure_loaded(required=True)
        content = self.content_index.ensure_loaded(required=True)
        cf_model = self._cf_ref.load_once(lambda: CollaborativeModel.load(self.cf_model_path))
        if cf_model is None:
            raise NotBuiltError("collaborative model")

        reranker = train_reranker(
            features, content, cf_model,
            candidates_per_user=candidates_per_user,
            cancel=cancel,
            show_progress=show_progress,
        )
        reranker.save(self.reranker_path)
        finish_training()
        self._reranker_ref.swap(reranker)
        return reranker

    # --- Scoring -------------------------------------------------------------

    def _candidate_ids(self, profile: UserProfile, resident: _Resident) -> list[str]:
        features = resident.features
        unwatched = [item_id for item_id in features.item_ids if item_id not in profile.watched]
        if len(unwatched) <= FULL_SCAN_LIMIT:
            return unwatched

        # Large catalog: a random sample for the collaborative leg, plus content
        # neighbours of watched items and the best-rated/most popular items.
        rng = random.Random(f"{TRAINING_SEED}:{profile.user_id}")
        candidates = set(rng.sample(unwatched, FULL_SCAN_LIMIT))
        if resident.content is not None:
            for item_id in sorted(profile.watched):
                neighbors = resident.content.nearest(item_id, NEIGHBORS_PER_WATCHED, exclude=profile.watched)
                candidates.update(n for n, _ in neighbors)

        def _meta(item_id: str) -> float:
            feature = features.get(item_id)
            return meta_score(feature.rating, feature.popularity, self.weights)

        candidates.update(sorted(unwatched, key=lambda i: (-_meta(i), i))[:META_CANDIDATES])
        logger.debug(f"Sampled {len(candidates)} of {len(unwatched)} candidates for {profile.user_id}")
        return sorted(candidates)

    def _score_chunk(
        self,
        profile: UserProfile,
        item_ids: list[str],
        resident: _Resident,
        content_sims: dict[str, float],
    ) -> list[ScoredCandidate]:
        weights = self.weights
        cf_scorer = resident.cf.scorer() if resident.cf is not None else None
        rerank_scorer = resident.reranker.scorer() if resident.reranker is not None else None
        try:
            scored: list[ScoredCandidate] = []
            item_features: list[ItemFeature] = []
            for item_id in item_ids:
                feature = resident.features.get(item_id)
                if feature is None:
                    continue
                genre_sim = genre_similarity(profile.genres, feature.genres, profile.confidence, weights)
                cast_sim = cast_similarity(profile.marked_cast, feature.cast)
                synopsis_sim = jaccard(profile.tokens, feature.tokens)
                content = content_score(genre_sim, cast_sim, synopsis_sim, weights)
                meta = meta_score(feature.rating, feature.popularity, weights)

                cf_raw = 0.0
                if cf_scorer is not None:
                    try:
                        cf_raw = cf_scorer.score(profile.user_id, item_id)
                    except Exception as e:
                        logger.debug(f"Collaborative scoring failed for {item_id}: {e}")
                cf_score = sigmoid(cf_raw)

                scored.append(ScoredCandidate(
                    item_id=item_id,
                    score=blend(cf_score, content, meta, weights),
                    cf_score=cf_score,
                    content_score=content,
                    meta_score=meta,
                    genre_sim=genre_sim,
                    cast_sim=cast_sim,
                    synopsis_sim=synopsis_sim,
                ))
                item_features.append(feature)

            if rerank_scorer is not None and scored:
                self._apply_reranker(rerank_scorer, profile, scored, item_features, content_sims)
            return scored
        finally:
            if cf_scorer is not None:
                cf_scorer.close()
            if rerank_scorer is not None:
                rerank_scorer.close()

    def _apply_reranker(self, scorer, profile, scored, features, content_sims) -> None:
        """Replace linear-blend scores with reranker probabilities; keep the blend where inference fails."""
        records = [
            build_rerank_record(profile, feature, cand.cf_score, content_sims.get(cand.item_id, 0.0))
            for cand, feature in zip(scored, features)
        ]
        try:
            probabilities = list(scorer.score(records))
        except Exception as e:
            logger.debug(f"Batch rerank failed ({e}), scoring candidates one at a time")
            probabilities = []
            for record in records:
                try:
                    probabilities.append(float(scorer.score([record])[0]))
                except Exception as inner:
                    logger.debug(f"Rerank failed for {record.item_id}: {inner}")
                    probabilities.append(None)

        for cand, probability in zip(scored, probabilities):
            if probability is not None:
                cand.score = float(probability)
                cand.reranked = True

    def score_candidates(self, profile: UserProfile, item_ids: list[str],
                         resident: _Resident | None = None) -> list[ScoredCandidate]:
        """Score `item_ids` for `profile` in parallel, best first."""
        resident = resident or self.ensure_loaded()
        if resident.reranker is not None and resident.content is None:
            logger.warning("Reranker loaded without a content index, falling back to the linear blend")
            resident = resident._replace(reranker=None)

        content_sims: dict[str, float] = {}
        if resident.reranker is not None:
            sims = resident.content.mean_similarities(profile.watched, item_ids)
            content_sims = dict(zip(item_ids, (float(s) for s in sims)))

        scored = self._run_chunks(
            lambda chunk: self._score_chunk(profile, chunk, resident, content_sims), list(item_ids)
        )
        return sorted(scored, key=_rank_key)

    # --- Online queries ------------------------------------------------------

    def _display(self, ranked: list[tuple[str, float]], features: FeatureSnapshot,
                 library: set[str]) -> list[Recommendation]:
        """Attach store metadata to ranked (item_id, score) pairs, keeping the order."""
        metadata = database.load_items_metadata([item_id for item_id, _ in ranked])
        results = []
        for item_id, score in ranked:
            meta = metadata.get(item_id)
            if meta is None:
                feature = features.get(item_id)
                if feature is None:
                    logger.warning(f"Item {item_id} vanished from the store and the cache, skipping")
                    continue
                meta = {
                    "name": feature.name, "image": feature.image, "external_id": feature.external_id,
                    "kind": feature.kind, "rating": feature.rating, "popularity": feature.popularity,
                    "genres": sorted(feature.genres),
                }
            results.append(Recommendation(
                item_id=item_id,
                name=meta["name"],
                score=score,
                image=meta.get("image"),
                external_id=meta.get("external_id"),
                kind=meta.get("kind") or "movie",
                rating=float(meta.get("rating") or 0.0),
                popularity=float(meta.get("popularity") or 0.0),
                genres=list(meta.get("genres") or []),
                in_library=item_id in library,
            ))
        return results

    def recommend_for_user(
        self,
        user_id: str,
        top_n: int = DEFAULT_TOP_N,
        companions_n: int = DEFAULT_COMPANION_N,
    ) -> UserRecommendations:
        watched, marked_cast = database.load_library(user_id)
        resident = self.ensure_loaded()
        profile = build_profile(user_id, watched, marked_cast, resident.features)

        candidates = self._candidate_ids(profile, resident)
        scored = self.score_candidates(profile, candidates, resident)[:max(0, top_n)]
        items = self._display([(c.item_id, c.score) for c in scored], resident.features, set())

        logger.info(
            f"Recommended {len(items)} items for {user_id} from {len(candidates)} candidates "
            f"(watched={profile.n_watched}, cf={'yes' if resident.cf else 'no'}, "
            f"reranker={'yes' if resident.reranker else 'no'})"
        )
        actor_role, director_role = CAST_ROLES
        return UserRecommendations(
            user_id=user_id,
            items=items,
            actors=self.companion_entities(profile, resident.features, actor_role, companions_n),
            directors=self.companion_entities(profile, resident.features, director_role, companions_n),
        )

    def companion_entities(self, profile: UserProfile, features: FeatureSnapshot,
                           role: str, top_n: int = DEFAULT_COMPANION_N) -> list[CompanionEntity]:
        """
        Cast or crew the user is likely to enjoy, from the cast of their watched
        items. Members the user has not marked yet count three times as much.
        Falls back to the most popular members of the role when the user's
        history yields nobody.
        """
        weights = self.weights
        frequency: Counter = Counter()
        entity_genres: dict[str, set[str]] = {}
        for item_id in profile.watched:
            feature = features.get(item_id)
            if feature is None:
                continue
            for cast_id in feature.cast:
                frequency[cast_id] += 1.0 if cast_id in profile.marked_cast else weights.discovery_boost
                entity_genres.setdefault(cast_id, set()).update(feature.genres)

        members = {
            cast_id: member
            for cast_id, member in database.load_cast_members(frequency).items()
            if member["role"] == role
        }
        ranked: list[CompanionEntity] = []
        if members:
            max_frequency = max(frequency[c] for c in members)
            for cast_id, member in members.items():
                score = companion_score(
                    frequency[cast_id] / max_frequency,
                    jaccard(profile.genres, entity_genres.get(cast_id, ())),
                    float(member["popularity"] or 0.0) / weights.popularity_scale,
                    weights,
                )
                ranked.append(self._entity(member, score, profile.marked_cast))
            ranked.sort(key=lambda e: (-e.score, e.cast_id))
            return ranked[:max(0, top_n)]

        popular = database.load_popular_cast(role, top_n)
        if popular:
            logger.debug(f"No {role} signal for {profile.user_id}, using the {len(popular)} most popular")
        return [
            self._entity(m, float(m["popularity"] or 0.0) / weights.popularity_scale, profile.marked_cast)
            for m in popular
        ]

    @staticmethod
    def _entity(member: dict, score: float, marked: set[str] | frozenset[str]) -> CompanionEntity:
        return CompanionEntity(
            cast_id=member["id"],
            name=member["name"],
            role=member["role"],
            score=score,
            photo=member.get("photo"),
            marked=member["id"] in marked,
        )

    def similar_to_item(self, item_id: str, user_id: str | None = None,
                        top_n: int = DEFAULT_TOP_N) -> list[Recommendation]:
        """Items most like `item_id` by genre, synopsis, cast and metadata."""
        features = self.feature_cache.ensure_loaded(required=True)
        target = features.get(item_id)
        if target is None:
            raise MissingEntityError("item", item_id)
        library = database.load_library(user_id)[0] if user_id else set()

        def _score(chunk: list[str]) -> list[tuple[str, float]]:
            return [(other, similar_item_score(target, features.get(other), self.weights)) for other in chunk]

        others = [other for other in features.item_ids if other != item_id]
        ranked = sorted(self._run_chunks(_score, others), key=lambda pair: (-pair[1], pair[0]))[:max(0, top_n)]
        return self._display(ranked, features, library)

    def similar_to_entity(self, entity_id: str, user_id: str | None = None,
                          top_n: int = DEFAULT_TOP_N) -> EntitySimilarity:
        """
        Same-role members who share the most items with `entity_id`, plus the
        highest-rated items featuring them.
        """
        entity = database.load_cast_member(entity_id)
        if entity is None:
            raise MissingEntityError("cast member", entity_id)
        library, marked = database.load_library(user_id) if user_id else (set(), set())

        counts = database.load_costar_counts(entity_id, entity["role"])
        members = database.load_cast_members(counts)
        order = sorted(
            members,
            key=lambda c: (-counts[c], -float(members[c]["popularity"] or 0.0), c),
        )[:max(0, top_n)]
        similar = [self._entity(members[c], float(counts[c]), marked) for c in order]

        top_items = database.load_top_items_for_cast(order, top_n)
        items = [
            Recommendation(
                item_id=row["id"],
                name=row["name"],
                score=float(row["rating"] or 0.0),
                image=row.get("image"),
                external_id=row.get("external_id"),
                kind=row.get("kind") or "movie",
                rating=float(row["rating"] or 0.0),
                popularity=float(row["popularity"] or 0.0),
                in_library=row["id"] in library,
            )
            for row in top_items
        ]
        return EntitySimilarity(
            entity=self._entity(entity, 0.0, marked),
            similar=similar,
            items=items,
        )
