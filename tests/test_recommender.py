import dataclasses
import threading

import pytest

from screen_rec.errors import JobCancelledError, MissingEntityError, NotBuiltError
from screen_rec.scoring import sigmoid


def _meta(item):
    return 0.7 * item.rating / 10 + 0.3 * item.popularity / 100


@pytest.fixture
def reranked_engine(catalog_engine, fresh_modules, monkeypatch):
    monkeypatch.setattr(fresh_modules["reranker"], "RERANK_TREES", 20)
    catalog_engine.train_collaborative_model(n_factors=2, n_epochs=10)
    catalog_engine.train_reranker(candidates_per_user=40)
    return catalog_engine


def test_recommendations_exclude_library(catalog_engine, library):
    result = catalog_engine.recommend_for_user("alice", top_n=50)

    ids = [r.item_id for r in result.items]
    assert ids
    assert not set(ids) & set(library["alice"])
    assert len(ids) == 12 - len(library["alice"])
    assert all(not r.in_library for r in result.items)
    scores = [r.score for r in result.items]
    assert scores == sorted(scores, reverse=True)


def test_heist_fan_gets_heist_first(catalog_engine):
    result = catalog_engine.recommend_for_user("alice", top_n=3)
    assert result.items[0].item_id == "heist-4"
    assert result.items[0].name == "Heist 4"
    assert result.items[0].genres == ["crime", "thriller"]


def test_soft_deleted_entries_are_unwatched(catalog_engine, fresh_modules):
    fresh_modules["database"].remove_library_entry("alice", item_id="heist-3")
    ids = [r.item_id for r in catalog_engine.recommend_for_user("alice", top_n=50).items]
    assert "heist-3" in ids


def test_zero_history_user_ranks_by_metadata(catalog_engine):
    result = catalog_engine.recommend_for_user("newcomer", top_n=12)

    expected = sorted(result.items, key=lambda r: (-_meta(r), r.item_id))
    assert [r.item_id for r in result.items] == [r.item_id for r in expected]
    assert [r.item_id for r in result.items[:3]] == ["heist-4", "romance-4", "space-4"]
    assert result.items[0].score == pytest.approx(0.55 * 0.5 + 0.05 * _meta(result.items[0]))


def test_single_item_history_blend(fresh_engine, seed_catalog, make_item):
    seed_catalog(
        [
            make_item("a", genres=["drama"], synopsis="alpha bravo charlie"),
            make_item("b", genres=["drama", "crime"], rating=9.0, popularity=20.0, synopsis="delta echo foxtrot"),
        ],
        library={"u": ["a"]},
    )
    fresh_engine.build_feature_cache()

    result = fresh_engine.recommend_for_user("u")
    assert [r.item_id for r in result.items] == ["b"]
    # One watched item: confidence 0.55, so genre_sim = 0.25 * 0.775
    assert result.items[0].score == pytest.approx(0.36375)


def test_candidate_breakdown_with_low_confidence(fresh_engine, fresh_modules, seed_catalog, make_item):
    seed_catalog([
        make_item("a", genres=["drama"], synopsis="alpha bravo charlie"),
        make_item("b", genres=["drama", "crime"], rating=9.0, popularity=20.0, synopsis="delta echo foxtrot"),
    ])
    features = fresh_engine.build_feature_cache()
    profile = fresh_modules["profile"].build_profile("u", ["a"], [], features)
    profile = dataclasses.replace(profile, confidence=0.3)

    [candidate] = fresh_engine.score_candidates(profile, ["b"])
    assert candidate.genre_sim == pytest.approx(0.1625)
    assert candidate.meta_score == pytest.approx(0.69)
    assert candidate.cf_score == 0.5
    assert candidate.synopsis_sim == 0.0
    assert candidate.score == pytest.approx(0.355)
    assert not candidate.reranked


def test_weights_override(fresh_modules, seed_catalog, tmp_path, make_item):
    seed_catalog([make_item("a", rating=8.0, popularity=50.0), make_item("b", rating=6.0, popularity=0.0)])
    weights = fresh_modules["weights"].ScoringWeights(cf=0.0, content=0.0, meta=1.0)
    engine = fresh_modules["recommender"].RecommendationEngine(snapshot_dir=tmp_path / "snapshots", weights=weights)
    try:
        engine.build_feature_cache()
        items = engine.recommend_for_user("nobody").items
    finally:
        engine.close()
    assert [(r.item_id, round(r.score, 6)) for r in items] == [("a", 0.71), ("b", 0.42)]


def test_weights_file_is_picked_up(fresh_modules, tmp_path):
    weights_module = fresh_modules["weights"]
    weights_module.save_scoring_weights(weights_module.ScoringWeights(meta=0.5))
    engine = fresh_modules["recommender"].RecommendationEngine(snapshot_dir=tmp_path / "snapshots")
    assert engine.weights.meta == 0.5
    engine.close()


def test_parallel_scoring_matches_single_worker(catalog_engine, fresh_modules, tmp_path):
    single = fresh_modules["recommender"].RecommendationEngine(snapshot_dir=tmp_path / "snapshots", workers=1)
    try:
        expected = single.recommend_for_user("dave", top_n=20)
    finally:
        single.close()
    parallel = catalog_engine.recommend_for_user("dave", top_n=20)
    assert [(r.item_id, r.score) for r in parallel.items] == [(r.item_id, r.score) for r in expected.items]


def test_large_catalog_candidate_sampling(catalog_engine, fresh_modules, monkeypatch, library):
    recommender = fresh_modules["recommender"]
    monkeypatch.setattr(recommender, "FULL_SCAN_LIMIT", 3)
    monkeypatch.setattr(recommender, "NEIGHBORS_PER_WATCHED", 2)
    monkeypatch.setattr(recommender, "META_CANDIDATES", 2)

    resident = catalog_engine.ensure_loaded()
    profile = fresh_modules["profile"].build_profile("alice", library["alice"], [], resident.features)
    candidates = catalog_engine._candidate_ids(profile, resident)

    assert candidates == catalog_engine._candidate_ids(profile, resident)
    assert not set(candidates) & set(library["alice"])
    assert {"heist-4", "romance-4"} <= set(candidates)
    assert len(candidates) <= 3 + 3 * 2 + 2


def test_collaborative_signal_is_used(catalog_engine, fresh_modules, library):
    catalog_engine.train_collaborative_model(n_factors=2, n_epochs=10)
    resident = catalog_engine.ensure_loaded()
    assert resident.cf is not None

    result = catalog_engine.recommend_for_user("carol", top_n=50)
    assert not {r.item_id for r in result.items} & set(library["carol"])

    profile = fresh_modules["profile"].build_profile("carol", library["carol"], [], resident.features)
    scored = catalog_engine.score_candidates(profile, ["space-3", "romance-4"], resident)
    assert any(c.cf_score != 0.5 for c in scored)


def test_collaborative_failure_scores_neutral(catalog_engine, fresh_modules, monkeypatch, library):
    catalog_engine.train_collaborative_model(n_factors=2, n_epochs=10)
    resident = catalog_engine.ensure_loaded()

    def flaky(self, user_id, item_id):
        if item_id == "space-4":
            raise ValueError("corrupt factor row")
        return 1.0

    monkeypatch.setattr(fresh_modules["matrix_factorization"].CollaborativeScorer, "score", flaky)
    profile = fresh_modules["profile"].build_profile("alice", library["alice"], [], resident.features)
    candidates = catalog_engine._candidate_ids(profile, resident)
    scored = {c.item_id: c for c in catalog_engine.score_candidates(profile, candidates, resident)}

    assert len(scored) == 9
    failed = scored.pop("space-4")
    assert failed.cf_score == 0.5
    assert failed.score == pytest.approx(0.55 * 0.5 + 0.40 * failed.content_score + 0.05 * failed.meta_score)
    assert all(c.cf_score == pytest.approx(sigmoid(1.0)) for c in scored.values())


def test_reranker_replaces_blend(reranked_engine, fresh_modules, library):
    resident = reranked_engine.ensure_loaded()
    assert resident.reranker is not None

    profile = fresh_modules["profile"].build_profile("alice", library["alice"], [], resident.features)
    scored = reranked_engine.score_candidates(profile, ["heist-4", "romance-1", "space-4"], resident)
    assert all(c.reranked for c in scored)
    assert all(0.0 <= c.score <= 1.0 for c in scored)
    assert reranked_engine.recommend_for_user("alice").items


def test_reranker_failure_keeps_blend_score(reranked_engine, fresh_modules, monkeypatch, library):
    def broken(self, records):
        raise ValueError("model exploded")

    monkeypatch.setattr(fresh_modules["reranker"].Reranker, "predict", broken)
    resident = reranked_engine.ensure_loaded()

    profile = fresh_modules["profile"].build_profile("alice", library["alice"], [], resident.features)
    scored = reranked_engine.score_candidates(profile, ["heist-4", "space-4"], resident)
    for c in scored:
        assert not c.reranked
        assert c.score == pytest.approx(0.55 * c.cf_score + 0.40 * c.content_score + 0.05 * c.meta_score)


def test_reranker_without_content_index_uses_blend(reranked_engine, fresh_modules, library, caplog):
    resident = reranked_engine.ensure_loaded()._replace(content=None)
    profile = fresh_modules["profile"].build_profile("alice", library["alice"], [], resident.features)

    scored = reranked_engine.score_candidates(profile, ["heist-4", "space-4"], resident)

    assert "falling back to the linear blend" in caplog.text
    for c in scored:
        assert not c.reranked
        assert c.score == pytest.approx(0.55 * c.cf_score + 0.40 * c.content_score + 0.05 * c.meta_score)


def test_companions_prefer_unmarked_members(catalog_engine):
    result = catalog_engine.recommend_for_user("alice", companions_n=5)

    actors = result.actors
    assert [a.cast_id for a in actors] == ["a-heist2", "a-heist1"]
    assert actors[0].score == pytest.approx(0.6 + 0.3 + 0.1 * 0.2)
    assert actors[1].marked and not actors[0].marked
    assert [d.cast_id for d in result.directors] == ["d-heist"]
    assert all(a.role == "actor" for a in actors)


def test_companions_fall_back_to_popular_members(catalog_engine):
    result = catalog_engine.recommend_for_user("newcomer", companions_n=2)
    assert [a.cast_id for a in result.actors] == ["a-unseen", "a-heist1"]
    assert [d.cast_id for d in result.directors] == ["d-romance", "d-heist"]
    assert result.actors[0].score == pytest.approx(0.9)


def test_similar_to_item_excludes_target_and_flags_library(catalog_engine):
    results = catalog_engine.similar_to_item("heist-1", user_id="alice", top_n=5)

    ids = [r.item_id for r in results]
    assert "heist-1" not in ids
    assert ids[:3] == ["heist-3", "heist-2", "heist-4"]
    flags = {r.item_id: r.in_library for r in results}
    assert flags["heist-2"] and flags["heist-3"]
    assert not flags["heist-4"]

    anonymous = catalog_engine.similar_to_item("heist-1", top_n=5)
    assert not any(r.in_library for r in anonymous)


def test_similar_to_item_unknown_ids(catalog_engine, fresh_modules, make_item):
    with pytest.raises(MissingEntityError):
        catalog_engine.similar_to_item("no-such-item")

    # Present in the store but not eligible for the cache
    fresh_modules["database"].upsert_items([make_item("unrated", rating=0)])
    with pytest.raises(MissingEntityError):
        catalog_engine.similar_to_item("unrated")


def test_similar_to_entity_same_role_only(catalog_engine):
    result = catalog_engine.similar_to_entity("a-heist1", user_id="alice", top_n=5)

    assert result.entity.cast_id == "a-heist1"
    assert result.entity.marked
    assert [(e.cast_id, e.score) for e in result.similar] == [("a-heist2", 3.0)]
    assert [i.item_id for i in result.items] == ["heist-3", "heist-2", "heist-1"]
    assert all(i.in_library for i in result.items)


def test_similar_to_entity_without_costars(catalog_engine):
    result = catalog_engine.similar_to_entity("d-space")
    assert result.similar == []
    assert result.items == []


def test_similar_to_entity_unknown_id(catalog_engine):
    with pytest.raises(MissingEntityError):
        catalog_engine.similar_to_entity("nobody")


def test_missing_feature_cache_is_not_built(fresh_engine):
    with pytest.raises(NotBuiltError):
        fresh_engine.recommend_for_user("alice")
    with pytest.raises(NotBuiltError):
        fresh_engine.similar_to_item("heist-1")
    with pytest.raises(NotBuiltError):
        fresh_engine.build_content_index()


def test_rebuild_does_not_disturb_held_snapshot(catalog_engine, fresh_modules, make_item):
    held = catalog_engine.ensure_loaded()
    fresh_modules["database"].upsert_items([make_item("heist-5", genres=["crime"])])
    catalog_engine.build_feature_cache()

    assert "heist-5" not in held.features
    assert "heist-5" in catalog_engine.ensure_loaded().features
    ids = [r.item_id for r in catalog_engine.recommend_for_user("alice", top_n=50).items]
    assert "heist-5" in ids


def test_cancelled_rebuild_keeps_serving(catalog_engine, fresh_modules, make_item):
    before = catalog_engine.ensure_loaded().features
    fresh_modules["database"].upsert_items([make_item("heist-5")])

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(JobCancelledError):
        catalog_engine.build_feature_cache(cancel=cancel)
    with pytest.raises(JobCancelledError):
        catalog_engine.train_collaborative_model(cancel=cancel)

    assert catalog_engine.ensure_loaded().features is before
    assert not catalog_engine.cf_model_path.exists()
    assert catalog_engine.recommend_for_user("alice").items


def test_negative_limits_return_nothing(catalog_engine):
    result = catalog_engine.recommend_for_user("alice", top_n=-1, companions_n=-1)
    assert result.items == []
    assert result.actors == [] and result.directors == []

    newcomer = catalog_engine.recommend_for_user("newcomer", companions_n=-1)
    assert newcomer.actors == [] and newcomer.directors == []

    assert catalog_engine.similar_to_item("heist-1", top_n=-1) == []
    entity = catalog_engine.similar_to_entity("a-heist1", top_n=-1)
    assert entity.similar == [] and entity.items == []
