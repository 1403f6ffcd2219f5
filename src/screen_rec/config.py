"""
Configuration constants for the screen_rec recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Storage
DB_PATH = Path(os.environ.get("SCREEN_REC_DB", "data/catalog.db"))
SNAPSHOT_DIR = Path(os.environ.get("SCREEN_REC_SNAPSHOT_DIR", "data/snapshots"))
FEATURE_CACHE_PATH = SNAPSHOT_DIR / "feature_cache.json"
CONTENT_INDEX_PATH = SNAPSHOT_DIR / "content_index.npz"
CF_MODEL_PATH = SNAPSHOT_DIR / "collaborative.npz"
RERANKER_PATH = SNAPSHOT_DIR / "reranker.joblib"
SCORING_WEIGHTS_PATH = Path(os.environ.get("SCREEN_REC_WEIGHTS", str(SNAPSHOT_DIR / "scoring_weights.json")))

# Catalog roles
ROLE_ACTOR = "actor"
ROLE_DIRECTOR = "director"
CAST_ROLES = (ROLE_ACTOR, ROLE_DIRECTOR)
ITEM_KINDS = ("movie", "series")

# Feature cache
SYNOPSIS_CHAR_LIMIT = _get_int_env("SCREEN_REC_SYNOPSIS_CHARS", 2000)
MIN_TOKEN_LENGTH = 3  # tokens of two characters or fewer are dropped
TOKENIZE_CHUNK_SIZE = _get_int_env("SCREEN_REC_TOKENIZE_CHUNK", 500)

# Content vectors (hashing trick)
CONTENT_HASH_BITS = _get_int_env("SCREEN_REC_CONTENT_HASH_BITS", 10)
CONTENT_NGRAM_MAX = _get_int_env("SCREEN_REC_CONTENT_NGRAM_MAX", 2)

# Collaborative model
CF_FACTORS = _get_int_env("SCREEN_REC_CF_FACTORS", 32)
CF_EPOCHS = _get_int_env("SCREEN_REC_CF_EPOCHS", 40)
CF_LEARNING_RATE = _get_float_env("SCREEN_REC_CF_LR", 0.05, min_val=1e-6)
CF_REGULARIZATION = _get_float_env("SCREEN_REC_CF_REG", 0.02)
CF_NEGATIVE_RATIO = _get_int_env("SCREEN_REC_CF_NEGATIVE_RATIO", 2)
CF_MAX_NEGATIVES_PER_USER = _get_int_env("SCREEN_REC_CF_MAX_NEGATIVES", 100)
TRAINING_SEED = _get_int_env("SCREEN_REC_SEED", 0, min_val=0)

# Reranker
RERANK_CANDIDATES_PER_USER = _get_int_env("SCREEN_REC_RERANK_CANDIDATES", 200, min_val=2)
RERANK_CF_SAMPLE_SIZE = _get_int_env("SCREEN_REC_RERANK_CF_SAMPLE", 200)
RERANK_CONTENT_SAMPLE_SIZE = _get_int_env("SCREEN_REC_RERANK_CONTENT_SAMPLE", 1000)
RERANK_CONTENT_NEIGHBORS = _get_int_env("SCREEN_REC_RERANK_NEIGHBORS", 10)
RERANK_NEGATIVE_MULTIPLE = _get_int_env("SCREEN_REC_RERANK_NEGATIVE_MULTIPLE", 3)
RERANK_TREES = _get_int_env("SCREEN_REC_RERANK_TREES", 200)
RERANK_LEAVES = _get_int_env("SCREEN_REC_RERANK_LEAVES", 50, min_val=2)
RERANK_USERS_PER_CHUNK = _get_int_env("SCREEN_REC_RERANK_CHUNK", 50)

# Online recommendation
DEFAULT_TOP_N = 20
DEFAULT_COMPANION_N = 10
FULL_SCAN_LIMIT = _get_int_env("SCREEN_REC_FULL_SCAN_LIMIT", 20000)
NEIGHBORS_PER_WATCHED = _get_int_env("SCREEN_REC_NEIGHBORS_PER_WATCHED", 50)
META_CANDIDATES = _get_int_env("SCREEN_REC_META_CANDIDATES", 200)
SCORING_WORKERS = _get_int_env("SCREEN_REC_SCORING_WORKERS", max(1, min(8, (os.cpu_count() or 2) - 1)))

# Viewing confidence steps: (max watched count, confidence)
VIEWING_CONFIDENCE_STEPS = (
    (0, 0.3),
    (3, 0.55),
    (8, 0.75),
    (15, 0.9),
)
VIEWING_CONFIDENCE_MAX = 1.0

# Notifications
NOTIFICATION_WEBHOOK_URL = os.environ.get("SCREEN_REC_WEBHOOK_URL")
NOTIFICATION_RETRIES = _get_int_env("SCREEN_REC_WEBHOOK_RETRIES", 3)

# Import
IMPORT_CHUNK_SIZE = _get_int_env("SCREEN_REC_IMPORT_CHUNK", 1000)

# Onboarding quiz
QUIZ_SIZE = _get_int_env("SCREEN_REC_QUIZ_SIZE", 400)
QUIZ_MIN_POPULARITY = _get_float_env("SCREEN_REC_QUIZ_MIN_POPULARITY", 10.0)
QUIZ_MIN_RATING = _get_float_env("SCREEN_REC_QUIZ_MIN_RATING", 5.0)
