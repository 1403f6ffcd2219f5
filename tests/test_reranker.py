import threading

import numpy as np
import pytest

from screen_rec.errors import JobCancelledError, NoTrainingDataError, NotBuiltError


class _ConstantScorer:
    def score(self, user_id, item_id):
        return 0.0


class _TripAfter(threading.Event):
    """Reports cancellation from the n-th check onwards."""

    def __init__(self, checks):
        super().__init__()
        self.remaining = checks

    def is_set(self):
        self.remaining -= 1
        return self.remaining < 0


@pytest.fixture
def trained_engine(catalog_engine, fresh_modules, monkeypatch):
    monkeypatch.setattr(fresh_modules["reranker"], "RERANK_TREES", 20)
    catalog_engine.train_collaborative_model(n_factors=2, n_epochs=10)
    return catalog_engine


def test_assemble_user_rows_labels_and_caps(catalog_engine, fresh_modules, library):
    reranker = fresh_modules["reranker"]
    resident = catalog_engine.ensure_loaded()
    positives = set(library["alice"])

    records = reranker.assemble_user_rows(
        "alice", positives, resident.features, resident.content, _ConstantScorer(), candidates_per_user=40,
    )

    labelled_positive = {r.item_id for r in records if r.label == 1}
    labelled_negative = {r.item_id for r in records if r.label == 0}
    assert labelled_positive == positives
    assert not labelled_negative & positives
    assert len(labelled_negative) <= 3 * len(labelled_positive)
    assert len(records) == len({r.item_id for r in records})

    for record in records:
        assert record.cf_score == pytest.approx(0.5)
        assert -1.0 <= record.content_similarity <= 1.0
        assert 0.0 <= record.genre_jaccard <= 1.0
        assert 0.0 <= record.cast_jaccard <= 1.0


def test_positive_rows_leave_the_item_out_of_the_profile(catalog_engine, fresh_modules, library):
    reranker = fresh_modules["reranker"]
    resident = catalog_engine.ensure_loaded()
    positives = set(library["alice"])

    records = reranker.assemble_user_rows(
        "alice", positives, resident.features, resident.content, _ConstantScorer(), candidates_per_user=40,
    )
    for record in records:
        if record.label == 1:
            others = positives - {record.item_id}
            expected = resident.content.mean_similarities(others, [record.item_id])[0]
            assert record.content_similarity == pytest.approx(expected)

    # With a single positive nothing is left to match it against
    solo = reranker.assemble_user_rows(
        "solo", {"romance-1"}, resident.features, resident.content, _ConstantScorer(), candidates_per_user=40,
    )
    [positive] = [r for r in solo if r.label == 1]
    assert positive.item_id == "romance-1"
    assert (positive.content_similarity, positive.genre_jaccard, positive.cast_jaccard) == (0.0, 0.0, 0.0)


def test_assemble_user_rows_is_reproducible(catalog_engine, fresh_modules, library):
    reranker = fresh_modules["reranker"]
    resident = catalog_engine.ensure_loaded()
    args = ("dave", set(library["dave"]), resident.features, resident.content, _ConstantScorer())
    assert reranker.assemble_user_rows(*args) == reranker.assemble_user_rows(*args)


def test_record_row_conversion(fresh_modules):
    reranker = fresh_modules["reranker"]
    record = reranker.RerankRecord("alice", "x", 0.6, 0.2, 0.5, 0.0, 7.5, 30.0, label=1)
    assert reranker.RerankRecord.from_row(record.to_row()) == record
    assert record.features() == [0.6, 0.2, 0.5, 0.0, 7.5, 30.0]


def test_train_requires_collaborative_model(catalog_engine):
    with pytest.raises(NotBuiltError):
        catalog_engine.train_reranker()


def test_train_without_users_raises(trained_engine, fresh_modules, library):
    database = fresh_modules["database"]
    for user, items in library.items():
        for item_id in items:
            database.remove_library_entry(user, item_id=item_id)

    with pytest.raises(NoTrainingDataError):
        trained_engine.train_reranker()
    assert not trained_engine.reranker_path.exists()


def test_fit_needs_both_classes(fresh_modules):
    reranker = fresh_modules["reranker"]
    only_positive = [reranker.RerankRecord("u", "x", 0.5, 0.1, 0.2, 0.0, 7.0, 10.0, label=1)]
    with pytest.raises(NoTrainingDataError):
        reranker.Reranker().fit(only_positive)
    with pytest.raises(NoTrainingDataError):
        reranker.Reranker().fit([])


def test_train_saves_model_and_clears_staging(trained_engine, fresh_modules, library):
    database = fresh_modules["database"]
    model = trained_engine.train_reranker(candidates_per_user=40)

    assert model.is_fitted
    assert model.metadata["n_users"] == len(library)
    assert trained_engine.reranker_path.exists()
    assert database.load_rerank_rows() == []
    assert database.get_job_cursor("train_reranker") is None

    loaded = fresh_modules["reranker"].Reranker.load(trained_engine.reranker_path)
    records = [fresh_modules["reranker"].RerankRecord("alice", "x", 0.7, 0.3, 1.0, 0.5, 8.0, 40.0)]
    probabilities = loaded.predict(records)
    assert probabilities.shape == (1,)
    assert 0.0 <= probabilities[0] <= 1.0


def test_interrupted_training_resumes_after_cursor(trained_engine, fresh_modules, monkeypatch):
    reranker = fresh_modules["reranker"]
    database = fresh_modules["database"]
    monkeypatch.setattr(reranker, "RERANK_USERS_PER_CHUNK", 1)
    resident = trained_engine.ensure_loaded()

    with pytest.raises(JobCancelledError):
        reranker.train_reranker(resident.features, resident.content, resident.cf, cancel=_TripAfter(1))

    cursor = database.get_job_cursor(reranker.JOB_NAME)
    assert cursor["position"] == "alice"
    assert {row["user_id"] for row in database.load_rerank_rows()} == {"alice"}

    seen = []
    original = reranker.assemble_user_rows

    def spy(user_id, *args, **kwargs):
        seen.append(user_id)
        return original(user_id, *args, **kwargs)

    monkeypatch.setattr(reranker, "assemble_user_rows", spy)
    model = reranker.train_reranker(resident.features, resident.content, resident.cf)

    assert seen == ["bob", "carol", "dave"]
    assert model.metadata["n_users"] == 4


def test_changed_inputs_restart_assembly(trained_engine, fresh_modules, monkeypatch):
    reranker = fresh_modules["reranker"]
    database = fresh_modules["database"]
    monkeypatch.setattr(reranker, "RERANK_USERS_PER_CHUNK", 1)
    resident = trained_engine.ensure_loaded()

    with pytest.raises(JobCancelledError):
        reranker.train_reranker(resident.features, resident.content, resident.cf, cancel=_TripAfter(2))
    assert database.get_job_cursor(reranker.JOB_NAME)["position"] == "bob"

    seen = []
    original = reranker.assemble_user_rows

    def spy(user_id, *args, **kwargs):
        seen.append(user_id)
        return original(user_id, *args, **kwargs)

    monkeypatch.setattr(reranker, "assemble_user_rows", spy)
    reranker.train_reranker(resident.features, resident.content, resident.cf, candidates_per_user=30)
    assert seen == ["alice", "bob", "carol", "dave"]


def test_scorer_closes(fresh_modules):
    reranker = fresh_modules["reranker"]
    records = [
        reranker.RerankRecord("u", f"i{n}", 0.5, 0.1 * n, 0.2, 0.0, 5.0 + n, 10.0, label=n % 2)
        for n in range(10)
    ]
    model = reranker.Reranker().fit(records)

    with model.scorer() as scorer:
        assert np.all((scorer.score(records) >= 0) & (scorer.score(records) <= 1))
    with pytest.raises(RuntimeError):
        scorer.score(records)
