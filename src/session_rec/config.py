"""
Configuration constants for the session recommender.

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


DAY_MS = 24 * 60 * 60 * 1000

# Storage
DB_PATH = Path(os.environ.get("SESSION_REC_DB", "data/session_rec.db"))
DEFAULT_WEIGHTS_PATH = Path(os.environ.get("SESSION_REC_WEIGHTS", "data/default_weights.json"))
CATALOG_URL = os.environ.get("SESSION_REC_CATALOG_URL") or None
HTTP_TIMEOUT = _get_float_env("SESSION_REC_HTTP_TIMEOUT", 10.0, min_val=0.5)
MAX_HTTP_RETRIES = 3

# Sessions
SESSION_TIMEOUT_MINUTES = _get_int_env("SESSION_REC_SESSION_TIMEOUT_MINUTES", 30, min_val=1)
SESSION_TIMEOUT_MS = SESSION_TIMEOUT_MINUTES * 60 * 1000

# Retention windows, one per stored kind
RETENTION_DAYS = {
    "page_view": _get_int_env("SESSION_REC_RETENTION_PAGE_VIEWS_DAYS", 30),
    "search": _get_int_env("SESSION_REC_RETENTION_SEARCH_DAYS", 60),
    "interaction": _get_int_env("SESSION_REC_RETENTION_INTERACTIONS_DAYS", 90),
    "feedback": _get_int_env("SESSION_REC_RETENTION_FEEDBACK_DAYS", 30),
    "preferences": _get_int_env("SESSION_REC_RETENTION_PREFERENCES_DAYS", 365),
}
METRICS_RETENTION_DAYS = 90

# Preference analysis
MIN_PROFILE_EVENTS = _get_int_env("SESSION_REC_MIN_PROFILE_EVENTS", 2)
MIN_ITEM_INTERACTIONS = _get_int_env("SESSION_REC_MIN_ITEM_INTERACTIONS", 1)
PAGE_SCORE_CAP = 100.0
INTERACTION_WEIGHTS = {
    "view": 5,
    "tag_click": 10,
    "like": 15,
    "comment": 20,
    "share": 25,
    "favorite": 30,
}
TOP_ACTIVE_HOURS = 8
TOP_ACTIVE_DAYS = 4

# Engagement score components (max points each)
ENGAGEMENT_DWELL_POINTS = 50
ENGAGEMENT_SCROLL_POINTS = 30
ENGAGEMENT_INTERACTION_POINTS = 20

# Weight adaptation
DEFAULT_STRATEGY_WEIGHTS = {
    "content_based": 0.4,
    "collaborative": 0.3,
    "popularity": 0.2,
    "recency": 0.1,
}
ENGAGEMENT_HIGH_THRESHOLD = _get_float_env("SESSION_REC_ENGAGEMENT_HIGH", 60.0)
ENGAGEMENT_LOW_THRESHOLD = _get_float_env("SESSION_REC_ENGAGEMENT_LOW", 30.0)
ENGAGEMENT_NUDGE = 0.1
SEARCH_NUDGE = 0.1

# Aggregation
MAX_LIMIT = 50
DEFAULT_LIMIT = 10
CANDIDATE_EXPANSION = 2
GENERATOR_TIMEOUT = _get_float_env("SESSION_REC_GENERATOR_TIMEOUT", 5.0, min_val=0.05)
CONTENT_TYPES = ("movie", "character", "review", "guide")

# Content-based similarity
# Genre tags are scored inside "tag" at their category weight
CONTENT_FEATURE_WEIGHTS = {
    "director": 0.3,
    "era": 0.15,
    "tag": 0.4,
    "rating": 0.1,
    "duration": 0.05,
}
CONTENT_YEAR_TOLERANCE = 8
CONTENT_RATING_RANGE = 2.0
CONTENT_DURATION_RANGE = 30
CONTENT_MIN_SCORE = _get_float_env("SESSION_REC_CONTENT_MIN_SCORE", 0.2)
TAG_CATEGORY_WEIGHTS = {
    "theme": 1.0,
    "genre": 0.9,
    "mood": 0.8,
    "style": 0.7,
    "audience": 0.6,
    "setting": 0.5,
    "quality": 0.4,
    "character": 0.3,
    "other": 0.2,
}

# Collaborative filtering
SIMILARITY_THRESHOLD = _get_float_env("SESSION_REC_SIMILARITY_THRESHOLD", 0.3)
SIMILARITY_WEIGHTS = {
    "content": 0.5,
    "keywords": 0.3,
    "hours": 0.2,
}
SESSION_INDEX_SALT = os.environ.get("SESSION_REC_INDEX_SALT", "session-rec")
MIN_SESSION_INTERACTIONS = _get_int_env("SESSION_REC_MIN_SESSION_INTERACTIONS", 3)
MAX_SIMILAR_SESSIONS = 10
COLLAB_TRENDING_FACTOR = 0.3
COLLAB_TRENDING_VIEWS = 100
COLLAB_TRENDING_LIMIT = 5

# Fixed baselines for the non-personalized strategies
POPULARITY_SCORES = {"movie": 0.8, "character": 0.75}
POPULARITY_DEFAULT_SCORE = 0.7
RECENCY_SCORES = {"review": 0.6, "guide": 0.55, "character": 0.5, "movie": 0.5}
RECENCY_DEFAULT_SCORE = 0.5

# Response shaping
DESCRIPTION_MAX_CHARS = 150

# Analytics
ANALYTICS_WINDOW_DAYS = 30
CONVERSION_CTR_WEIGHT = 0.7
CONVERSION_ENGAGEMENT_WEIGHT = 0.3
DWELL_PREFERENCE_MS = 30000
SUGGESTION_MIN_CONVERSION = 0.1
SUGGESTION_MIN_POSITION_CTR = 0.1
SUGGESTION_MIN_TYPE_SPREAD = 0.05
SUGGESTION_MIN_DIVERSITY = 0.6
SUGGESTION_RECENT_POINTS = 7
SUGGESTION_RECENT_CTR_RATIO = 0.8
TREND_CHANGE_THRESHOLD = 0.05
