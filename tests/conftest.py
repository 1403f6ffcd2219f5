import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Modules that read configuration at import time, in dependency order
_RELOAD_ORDER = (
    "screen_rec.config",
    "screen_rec.weights",
    "screen_rec.scoring",
    "screen_rec.database",
    "screen_rec.feature_cache",
    "screen_rec.content_index",
    "screen_rec.matrix_factorization",
    "screen_rec.profile",
    "screen_rec.reranker",
    "screen_rec.recommender",
)


def _isolate(monkeypatch, tmp_path):
    monkeypatch.setenv("SCREEN_REC_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("SCREEN_REC_SNAPSHOT_DIR", str(tmp_path / "snapshots"))
    monkeypatch.setenv("SCREEN_REC_SCORING_WORKERS", "2")
    monkeypatch.delenv("SCREEN_REC_WEIGHTS", raising=False)
    monkeypatch.delenv("SCREEN_REC_WEBHOOK_URL", raising=False)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with temporary database and snapshot paths to keep tests isolated.
    """
    _isolate(monkeypatch, tmp_path)
    import screen_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    _isolate(monkeypatch, tmp_path)

    import screen_rec.config as config
    import screen_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def fresh_modules(monkeypatch, tmp_path):
    """
    Reload every config-dependent module and return them by short name.
    """
    _isolate(monkeypatch, tmp_path)
    modules = {}
    for name in _RELOAD_ORDER:
        module = importlib.import_module(name)
        modules[name.rsplit(".", 1)[1]] = importlib.reload(module)
    modules["database"].init_db()

    yield modules
    modules["database"].close_pool()


@pytest.fixture
def fresh_engine(fresh_modules, tmp_path):
    """A RecommendationEngine over an empty temp catalog."""
    engine = fresh_modules["recommender"].RecommendationEngine(snapshot_dir=tmp_path / "snapshots", workers=2)
    yield engine
    engine.close()


def _item(item_id, genres=(), cast=(), rating=7.0, popularity=10.0, synopsis=None, kind="movie", name=None):
    return {
        "id": item_id,
        "external_id": None,
        "name": name or item_id.replace("-", " ").title(),
        "image": f"https://img.example/{item_id}.jpg",
        "synopsis": synopsis if synopsis is not None else f"Story about {item_id} and its adventures",
        "kind": kind,
        "rating": rating,
        "popularity": popularity,
        "genres": list(genres),
        "cast": list(cast),
    }


def _member(cast_id, role="actor", popularity=10.0, name=None):
    return {
        "id": cast_id,
        "name": name or cast_id.replace("-", " ").title(),
        "role": role,
        "popularity": popularity,
        "photo": None,
    }


@pytest.fixture
def make_item():
    return _item


@pytest.fixture
def make_member():
    return _member


@pytest.fixture
def seed_catalog(fresh_modules):
    """Populate the store: seed_catalog(items, cast=(), library={user: [item ids]}, marked={user: [cast ids]})."""
    database = fresh_modules["database"]

    def _seed(items, cast=(), library=None, marked=None):
        database.upsert_cast_members(list(cast))
        database.upsert_items(list(items))
        for user_id, item_ids in (library or {}).items():
            for item_id in item_ids:
                database.add_library_item(user_id, item_id)
        for user_id, cast_ids in (marked or {}).items():
            for cast_id in cast_ids:
                database.add_library_cast(user_id, cast_id)
        return database

    return _seed


_SYNOPSES = {
    "heist": "A crew of thieves plans a daring bank heist to crack the vault {n}",
    "romance": "Two strangers fall in love over a summer of letters on the island {n}",
    "space": "Astronauts aboard an orbital station race to reach a distant planet {n}",
}
_GENRES = {"heist": ["crime", "thriller"], "romance": ["romance", "drama"], "space": ["scifi", "adventure"]}
_CAST = {
    "heist": ["a-heist1", "a-heist2", "d-heist"],
    "romance": ["a-romance", "d-romance"],
    "space": ["a-space", "d-space"],
}

LIBRARY = {
    "alice": ["heist-1", "heist-2", "heist-3"],
    "bob": ["romance-1", "romance-2", "romance-3"],
    "carol": ["space-1", "space-2", "heist-1"],
    "dave": ["heist-2", "romance-2", "space-3"],
}


def standard_catalog():
    """Twelve items in three themed groups of four, with their cast."""
    items = []
    for theme in ("heist", "romance", "space"):
        for n in range(1, 5):
            items.append(_item(
                f"{theme}-{n}",
                genres=_GENRES[theme],
                cast=_CAST[theme] if n != 4 else _CAST[theme][-1:],
                rating=5.0 + n,
                popularity=10.0 * n,
                synopsis=_SYNOPSES[theme].format(n=n),
            ))
    cast = [
        _member("a-heist1", popularity=40),
        _member("a-heist2", popularity=20),
        _member("a-romance", popularity=30),
        _member("a-space", popularity=10),
        _member("a-unseen", popularity=90),
        _member("d-heist", role="director", popularity=15),
        _member("d-romance", role="director", popularity=25),
        _member("d-space", role="director", popularity=5),
    ]
    return items, cast


@pytest.fixture
def library():
    return {user: list(items) for user, items in LIBRARY.items()}


@pytest.fixture
def catalog_engine(fresh_engine, seed_catalog):
    """An engine over the standard catalog with the feature cache and content index built."""
    items, cast = standard_catalog()
    seed_catalog(items, cast=cast, library=LIBRARY, marked={"alice": ["a-heist1"]})
    fresh_engine.build_feature_cache()
    fresh_engine.build_content_index()
    return fresh_engine
