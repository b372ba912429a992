"""
Turn scored points into the prediction response: summary, heatmap grid and
ranked feature influences.

Grid cells are latitude/longitude rounded to three decimals (about 100 m);
a cell's intensity is the mean score of its points.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np

from risk_heatmap.artifacts import TrainingArtifact
from risk_heatmap.evaluation.importance import FeatureImportanceCalculator, prettify_feature_name
from risk_heatmap.prediction.scorer import ScoredPoint, resolve_float

logger = logging.getLogger(__name__)

GRID_PRECISION = 3
HOTSPOT_COUNT = 5
TOP_FEATURES = 5
SCORE_DECIMALS = 4

HIGH_CONFIDENCE_MIN_COUNT = 60
HIGH_CONFIDENCE_MAX_STD = 0.15
HIGH_CONFIDENCE_MIN_SCORE = 0.7
MEDIUM_CONFIDENCE_MIN_COUNT = 25
MEDIUM_CONFIDENCE_MIN_SCORE = 0.5


def confidence_tier(
    count: int,
    std_dev: float,
    max_score: float,
    *,
    high_min_count: int = HIGH_CONFIDENCE_MIN_COUNT,
    high_max_std: float = HIGH_CONFIDENCE_MAX_STD,
    high_min_score: float = HIGH_CONFIDENCE_MIN_SCORE,
    medium_min_count: int = MEDIUM_CONFIDENCE_MIN_COUNT,
    medium_min_score: float = MEDIUM_CONFIDENCE_MIN_SCORE,
) -> str:
    if count >= high_min_count and std_dev <= high_max_std and max_score >= high_min_score:
        return "High"
    if count >= medium_min_count and max_score >= medium_min_score:
        return "Medium"
    return "Low"


def build_summary(
    points: Sequence[ScoredPoint],
    parameters: Mapping[str, Any] | None = None,
    **tiers: Any,
) -> dict[str, Any]:
    """
    Score statistics plus the confidence tier.

    The standard deviation is the population one. ``tiers`` overrides the
    thresholds of ``confidence_tier``.
    """
    params = parameters or {}
    scores = np.array([p.score for p in points], dtype=float)
    count = len(scores)
    if count:
        mean, high, low, std = float(scores.mean()), float(scores.max()), float(scores.min()), float(scores.std())
    else:
        mean = high = low = std = 0.0

    horizon = resolve_float(params.get("horizon_hours", params.get("horizon")))
    radius = resolve_float(params.get("radius_km", params.get("radiusKm")))

    return {
        "mean_score": round(mean, SCORE_DECIMALS),
        "max_score": round(high, SCORE_DECIMALS),
        "min_score": round(low, SCORE_DECIMALS),
        "count": count,
        "confidence": confidence_tier(count, std, high, **tiers),
        "horizon_hours": horizon,
        "radius_km": radius,
    }


class HeatmapAggregator:
    def __init__(self, precision: int = GRID_PRECISION, hotspot_count: int = HOTSPOT_COUNT) -> None:
        self.precision = precision
        self.hotspot_count = hotspot_count

    def cell_key(self, latitude: float, longitude: float) -> tuple[str, float, float]:
        lat = round(latitude, self.precision)
        lng = round(longitude, self.precision)
        return f"{lat}:{lng}", lat, lng

    def aggregate(self, points: Sequence[ScoredPoint]) -> dict[str, list[dict[str, Any]]]:
        """
        Returns:
            ``{"points": [...], "hotspots": [...]}``; every cell is
            ``{id, lat, lng, intensity, count}``, ordered by intensity
            descending, and hotspots are the first ``hotspot_count`` cells.
        """
        cells: dict[str, dict[str, Any]] = {}
        for point in points:
            key, lat, lng = self.cell_key(point.latitude, point.longitude)
            cell = cells.get(key)
            if cell is None:
                cell = cells[key] = {"lat": lat, "lng": lng, "sum": 0.0, "count": 0}
            cell["sum"] += point.score
            cell["count"] += 1

        grid = [
            {
                "id": key,
                "lat": cell["lat"],
                "lng": cell["lng"],
                "intensity": round(cell["sum"] / cell["count"], SCORE_DECIMALS),
                "count": cell["count"],
            }
            for key, cell in cells.items()
        ]
        # stable: equal intensities keep first-seen order
        grid.sort(key=lambda item: item["intensity"], reverse=True)
        return {"points": grid, "hotspots": grid[: self.hotspot_count]}


def _stored_importances(artifact: TrainingArtifact) -> list[dict[str, Any]]:
    ranked = []
    for item in artifact.feature_importances or []:
        if not isinstance(item, Mapping):
            continue
        name = str(item.get("name") or "")
        if not name:
            continue
        entry: dict[str, Any] = {
            "name": prettify_feature_name(name),
            "contribution": round(resolve_float(item.get("contribution")) or 0.0, SCORE_DECIMALS),
        }
        details = item.get("details")
        if details is not None:
            entry["details"] = details if isinstance(details, Mapping) else {"value": details}
        ranked.append(entry)
    return ranked


def rank_features(
    artifact: TrainingArtifact,
    points: Sequence[ScoredPoint] = (),
    top_n: int = TOP_FEATURES,
    calculator: FeatureImportanceCalculator | None = None,
) -> list[dict[str, Any]]:
    """
    Feature influences for the response, largest absolute contribution first.

    Prefers the importances stored at training time. Without them, features
    kept on the scored points are correlated with the predicted class
    (score >= 0.5); failing that every feature is listed with 0.0.
    """
    ranked = _stored_importances(artifact)

    if not ranked:
        rows = [p.features for p in points if p.features is not None]
        if rows:
            logger.info("Artifact has no stored importances, correlating %d scored rows", len(rows))
            predicted = [1.0 if p.score >= 0.5 else 0.0 for p in points if p.features is not None]
            calculator = calculator or FeatureImportanceCalculator()
            ranked = calculator.calculate(np.vstack(rows), predicted, artifact.feature_names)

    if not ranked:
        ranked = [{"name": prettify_feature_name(str(n)), "contribution": 0.0} for n in artifact.feature_names]

    ranked.sort(key=lambda item: abs(item["contribution"]), reverse=True)
    return ranked[:top_n]
