"""
Restore a training artifact and score encoded rows with it.

Scoring applies the artifact's preprocessing in the order training used it:
imputer -> z-score with the stored means/std devs -> sample normaliser. Rows
are scored in fixed-size chunks so peak memory does not grow with the
dataset.

Request parameters (all optional):

    center         {"lat": .., "lng": ..}, {"latitude": .., "longitude": ..}
                   or [lng, lat]
    radius_km      great-circle radius around center; ignored without one
    observed_at    ISO timestamp the forecast is anchored at
    horizon_hours  window of +-horizon around observed_at (default 24); a
                   zero window keeps the 24 hours before observed_at

Usage:

    scorer = PredictionScorer(artifact, registry.load_classifier(artifact))
    points = scorer.score(entries)
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from risk_heatmap.artifacts import TrainingArtifact
from risk_heatmap.data.timestamps import parse_timestamp
from risk_heatmap.errors import ArtifactError
from risk_heatmap.features.encoding import EncodedRow
from risk_heatmap.prediction.probability import positive_scores
from risk_heatmap.training.preprocessing import FittedImputer, SampleNormalizer
from risk_heatmap.training.statistics import normalize_safely, standardize

EARTH_RADIUS_KM = 6371.0
SCORING_CHUNK_SIZE = 1000
DEFAULT_HORIZON_HOURS = 24.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = math.sin(d_lat / 2) ** 2 + math.sin(d_lng / 2) ** 2 * math.cos(math.radians(lat1)) * math.cos(
        math.radians(lat2)
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def resolve_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, np.number)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def resolve_center(value: Any) -> tuple[float, float] | None:
    """``(lat, lng)`` from a mapping or a ``[lng, lat]`` pair, else None."""
    if isinstance(value, Mapping):
        lat = resolve_float(_first(value, "lat", "latitude"))
        lng = resolve_float(_first(value, "lng", "lon", "longitude"))
    elif isinstance(value, Sequence) and not isinstance(value, str) and len(value) >= 2:
        lng, lat = resolve_float(value[0]), resolve_float(value[1])
    else:
        return None
    if lat is None or lng is None:
        return None
    return lat, lng


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _resolve_observed_at(value: Any) -> pd.Timestamp | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return parse_timestamp(value)


@dataclass(frozen=True)
class PredictionFilter:
    center: tuple[float, float] | None = None
    radius_km: float | None = None
    start: pd.Timestamp | None = None
    end: pd.Timestamp | None = None

    @classmethod
    def from_parameters(
        cls,
        parameters: Mapping[str, Any] | None,
        default_horizon_hours: float = DEFAULT_HORIZON_HOURS,
    ) -> "PredictionFilter":
        params = parameters or {}
        center = resolve_center(params.get("center"))
        radius = resolve_float(_first(params, "radius_km", "radiusKm"))
        if center is None:
            radius = None

        observed_at = _resolve_observed_at(_first(params, "observed_at", "timestamp", "ts_end"))
        horizon = resolve_float(_first(params, "horizon_hours", "horizon", "horizonHours"))

        start = end = None
        if observed_at is not None:
            hours = max(0.0, horizon) if horizon is not None else default_horizon_hours
            window = pd.Timedelta(minutes=round(hours * 60.0))
            if window > pd.Timedelta(0):
                start, end = observed_at - window, observed_at + window
            else:
                start, end = observed_at - pd.Timedelta(hours=24), observed_at

        return cls(center=center, radius_km=radius, start=start, end=end)

    @property
    def is_empty(self) -> bool:
        return self.radius_km is None and self.start is None and self.end is None

    def matches(self, entry: EncodedRow) -> bool:
        if self.center is not None and self.radius_km is not None:
            distance = haversine_km(self.center[0], self.center[1], entry.latitude, entry.longitude)
            if distance > self.radius_km:
                return False
        if entry.timestamp is not None:
            if self.start is not None and entry.timestamp < self.start:
                return False
            if self.end is not None and entry.timestamp > self.end:
                return False
        return True

    def apply(self, entries: Iterable[EncodedRow]) -> Iterator[EncodedRow]:
        return (entry for entry in entries if self.matches(entry))


@dataclass
class ScoredPoint:
    timestamp: pd.Timestamp | None
    latitude: float
    longitude: float
    category: str
    score: float
    features: np.ndarray | None = None


class ArtifactPreprocessor:
    """The preprocessing chain stored in an artifact, ready to apply."""

    def __init__(self, artifact: TrainingArtifact) -> None:
        self.width = artifact.width
        self.means = np.asarray(artifact.feature_means, dtype=float)
        self.std_devs = np.asarray(artifact.feature_std_devs, dtype=float)
        self.imputer = FittedImputer.from_config(artifact.imputer)
        self.normalizer = SampleNormalizer.from_config(artifact.normalization)

    def check_width(self, features: Sequence[float]) -> None:
        if len(features) != self.width:
            raise ArtifactError(
                f"Feature vector has {len(features)} values but the model expects {self.width}."
            )

    def transform(self, samples: np.ndarray) -> np.ndarray:
        X = np.asarray(samples, dtype=float).reshape(-1, self.width)
        return normalize_safely(self.normalizer, standardize(self.imputer.transform(X), self.means, self.std_devs))


class PredictionScorer:
    def __init__(
        self,
        artifact: TrainingArtifact,
        classifier: Any,
        chunk_size: int = SCORING_CHUNK_SIZE,
    ) -> None:
        self.artifact = artifact
        self.classifier = classifier
        self.chunk_size = max(1, int(chunk_size))
        self.preprocessor = ArtifactPreprocessor(artifact)

    def _chunks(self, entries: Iterable[EncodedRow]) -> Iterator[list[EncodedRow]]:
        chunk: list[EncodedRow] = []
        for entry in entries:
            chunk.append(entry)
            if len(chunk) >= self.chunk_size:
                yield chunk
                chunk = []
        if chunk:
            yield chunk

    def score_chunk(self, chunk: Sequence[EncodedRow], keep_features: bool = False) -> list[ScoredPoint]:
        for entry in chunk:
            self.preprocessor.check_width(entry.features)
        X = self.preprocessor.transform(np.array([entry.features for entry in chunk], dtype=float))
        scores = np.clip(positive_scores(self.classifier, X), 0.0, 1.0)
        return [
            ScoredPoint(
                timestamp=entry.timestamp,
                latitude=entry.latitude,
                longitude=entry.longitude,
                category=entry.category,
                score=float(score),
                features=row if keep_features else None,
            )
            for entry, row, score in zip(chunk, X, scores)
        ]

    def score(self, entries: Iterable[EncodedRow], keep_features: bool = False) -> list[ScoredPoint]:
        """
        Score every entry, one chunk at a time.

        Args:
            keep_features: Retain each preprocessed feature row on its point
                (needed only for the correlation fallback of feature ranking).

        Raises:
            ArtifactError: If an entry does not match the artifact feature width.
        """
        scored: list[ScoredPoint] = []
        for chunk in self._chunks(entries):
            scored.extend(self.score_chunk(chunk, keep_features))
        return scored
