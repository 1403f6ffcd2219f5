import importlib
from pathlib import Path


def test_db_and_snapshot_paths_follow_env(fresh_config, tmp_path):
    assert fresh_config.DB_PATH == tmp_path / "test.db"
    assert fresh_config.SNAPSHOT_DIR == tmp_path / "snapshots"
    assert fresh_config.FEATURE_CACHE_PATH.parent == tmp_path / "snapshots"
    assert fresh_config.CF_MODEL_PATH.suffix == ".npz"
    assert fresh_config.RERANKER_PATH.suffix == ".joblib"
    assert fresh_config.SCORING_WEIGHTS_PATH == tmp_path / "snapshots" / "scoring_weights.json"


def test_env_overrides_are_parsed(monkeypatch, fresh_config):
    monkeypatch.setenv("SCREEN_REC_CF_FACTORS", "8")
    monkeypatch.setenv("SCREEN_REC_CF_LR", "0.2")
    monkeypatch.setenv("SCREEN_REC_WEIGHTS", "/tmp/custom-weights.json")
    config = importlib.reload(fresh_config)

    assert config.CF_FACTORS == 8
    assert config.CF_LEARNING_RATE == 0.2
    assert config.SCORING_WEIGHTS_PATH == Path("/tmp/custom-weights.json")


def test_invalid_env_values_fall_back(monkeypatch, fresh_config):
    monkeypatch.setenv("SCREEN_REC_CF_EPOCHS", "many")
    monkeypatch.setenv("SCREEN_REC_RERANK_LEAVES", "1")
    monkeypatch.setenv("SCREEN_REC_CF_REG", "-1")
    config = importlib.reload(fresh_config)

    assert config.CF_EPOCHS == 40
    assert config.RERANK_LEAVES == 2
    assert config.CF_REGULARIZATION == 0


def test_confidence_steps_are_ordered(fresh_config):
    limits = [limit for limit, _ in fresh_config.VIEWING_CONFIDENCE_STEPS]
    values = [value for _, value in fresh_config.VIEWING_CONFIDENCE_STEPS]
    assert limits == sorted(limits)
    assert values == sorted(values)
    assert values[-1] < fresh_config.VIEWING_CONFIDENCE_MAX
