"""
Strategy weights and per-session weight adaptation.

WeightVector is an immutable value: every adjustment returns a new vector, and
``normalized()`` always clamps negative components to zero before rescaling so
the result is non-negative and sums to one. Operator-approved defaults live in
a JSON file; analytics suggestions are never written there automatically.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from .config import (
    DEFAULT_STRATEGY_WEIGHTS,
    DEFAULT_WEIGHTS_PATH,
    ENGAGEMENT_HIGH_THRESHOLD,
    ENGAGEMENT_LOW_THRESHOLD,
    ENGAGEMENT_NUDGE,
    SEARCH_NUDGE,
)
from .profile import PreferenceProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightVector:
    content_based: float = DEFAULT_STRATEGY_WEIGHTS["content_based"]
    collaborative: float = DEFAULT_STRATEGY_WEIGHTS["collaborative"]
    popularity: float = DEFAULT_STRATEGY_WEIGHTS["popularity"]
    recency: float = DEFAULT_STRATEGY_WEIGHTS["recency"]

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

    def total(self) -> float:
        return sum(self.as_dict().values())

    def nudge(self, **deltas: float) -> "WeightVector":
        """New vector with ``deltas`` added; components may go negative until normalized."""
        unknown = set(deltas) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown weight components: {sorted(unknown)}")
        return replace(self, **{name: getattr(self, name) + delta for name, delta in deltas.items()})

    def clamped(self) -> "WeightVector":
        return WeightVector(**{name: max(0.0, value) for name, value in self.as_dict().items()})

    def normalized(self) -> "WeightVector":
        """Clamp to >= 0, then rescale to sum 1. An all-zero vector falls back to the defaults."""
        clamped = self.clamped()
        total = clamped.total()
        if total <= 0:
            logger.warning("Weight vector collapsed to zero; using defaults")
            return WeightVector().normalized()
        return WeightVector(**{name: value / total for name, value in clamped.as_dict().items()})

    def to_response(self) -> dict[str, float]:
        return {
            "contentBased": round(self.content_based, 4),
            "collaborative": round(self.collaborative, 4),
            "popularity": round(self.popularity, 4),
            "recency": round(self.recency, 4),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WeightVector":
        aliases = {"contentBased": "content_based", "content": "content_based"}
        values = {}
        for key, value in (payload or {}).items():
            name = aliases.get(key, key)
            if name not in DEFAULT_STRATEGY_WEIGHTS:
                continue
            try:
                values[name] = float(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric weight {key}={value!r}")
        return cls(**values)


class WeightAdapter:
    """Maps a session's PreferenceProfile (or its absence) to strategy weights."""

    def __init__(
        self,
        defaults: WeightVector | None = None,
        high_threshold: float = ENGAGEMENT_HIGH_THRESHOLD,
        low_threshold: float = ENGAGEMENT_LOW_THRESHOLD,
    ):
        self.defaults = defaults if defaults is not None else WeightVector()
        self.high_threshold = high_threshold
        self.low_threshold = low_threshold

    def adapt(self, profile: PreferenceProfile | None) -> WeightVector:
        """
        Weights for one request.

        Without a profile the configured defaults are returned untouched
        (cold start). Otherwise engagement and search behavior nudge the
        defaults, and the result is clamped and renormalized.
        """
        if profile is None:
            return self.defaults

        weights = self.defaults
        if profile.engagement_level > self.high_threshold:
            weights = weights.nudge(
                content_based=ENGAGEMENT_NUDGE,
                collaborative=ENGAGEMENT_NUDGE,
                popularity=-2 * ENGAGEMENT_NUDGE,
            )
        elif profile.engagement_level < self.low_threshold:
            weights = weights.nudge(
                content_based=-ENGAGEMENT_NUDGE,
                collaborative=-ENGAGEMENT_NUDGE,
                popularity=2 * ENGAGEMENT_NUDGE,
            )

        if profile.search_patterns:
            weights = weights.nudge(content_based=SEARCH_NUDGE, popularity=-SEARCH_NUDGE)

        return weights.normalized()


def load_default_weights(path: str | Path | None = None) -> WeightVector:
    """Operator-approved defaults from disk, or the built-in defaults if missing or invalid."""
    weight_path = Path(path) if path else DEFAULT_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Default weights file not found at %s; using built-in defaults", weight_path)
        return WeightVector()

    try:
        return WeightVector.from_dict(json.loads(weight_path.read_text())).normalized()
    except (OSError, ValueError, TypeError) as exc:
        logger.warning("Failed to load default weights from %s: %s", weight_path, exc)
        return WeightVector()


def save_default_weights(weights: WeightVector, path: str | Path | None = None) -> Path:
    weight_path = Path(path) if path else DEFAULT_WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(weights.normalized().as_dict(), indent=2))
    return weight_path
