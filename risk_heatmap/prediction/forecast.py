"""
One prediction run: active artifact + dataset + request parameters ->
JSON-serialisable forecast payload.

    10  restore the artifact and classifier
    45  rows encoded, filtered and scored
    75  summary, heatmap and feature ranking built
   100  done

When the request filter leaves nothing to score, the run retries once
against the whole dataset before failing.

Usage:

    payload = generate_forecast(
        registry,
        CsvRowSource(path, column_map),
        column_map,
        {"center": {"lat": 51.5, "lng": -0.12}, "radius_km": 2},
        model_key="burglary",
    )
"""

from __future__ import annotations

import gc
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import datetime, timezone
from typing import Any

from risk_heatmap.artifacts import ArtifactRegistry
from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.errors import PredictionError
from risk_heatmap.features.analysis import MAX_TRACKED_CATEGORIES, CategoryVocabulary, DatasetAnalyzer
from risk_heatmap.features.encoding import EncodedRow, RowFeatureEncoder
from risk_heatmap.prediction.heatmap import (
    GRID_PRECISION,
    HOTSPOT_COUNT,
    TOP_FEATURES,
    HeatmapAggregator,
    build_summary,
    rank_features,
)
from risk_heatmap.prediction.scorer import (
    DEFAULT_HORIZON_HOURS,
    SCORING_CHUNK_SIZE,
    PredictionFilter,
    PredictionScorer,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, "str | None"], None]


def _noop_progress(percent: int, message: str | None = None) -> None:
    pass


def encode_rows(rows: Iterable[Mapping[str, Any]], encoder: RowFeatureEncoder) -> Iterator[EncodedRow]:
    for row in rows:
        entry = encoder.encode(row)
        if entry is not None:
            yield entry


def generate_forecast(
    registry: ArtifactRegistry,
    rows: Iterable[Mapping[str, Any]],
    column_map: ColumnMap,
    parameters: Mapping[str, Any] | None = None,
    *,
    model_key: str,
    progress: ProgressCallback | None = None,
    chunk_size: int = SCORING_CHUNK_SIZE,
    default_horizon_hours: float = DEFAULT_HORIZON_HOURS,
    max_categories: int = MAX_TRACKED_CATEGORIES,
    grid_precision: int = GRID_PRECISION,
    hotspot_count: int = HOTSPOT_COUNT,
    top_features: int = TOP_FEATURES,
    confidence: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Args:
        rows: A re-iterable row source; read twice, three times on fallback.
        parameters: Request parameters, see ``risk_heatmap.prediction.scorer``.
        confidence: Keyword overrides for ``confidence_tier``.

    Raises:
        ArtifactError: No usable artifact or model file for ``model_key``.
        PredictionError: No row could be scored, even unfiltered.
    """
    progress = progress or _noop_progress
    params = dict(parameters or {})

    progress(10, "Restoring trained model and preparing forecast inputs")
    artifact = registry.latest(model_key)
    classifier = registry.load_classifier(artifact)
    logger.info("Scoring with %s/%s (%s)", model_key, artifact.version, artifact.model_type)

    vocabulary = CategoryVocabulary.from_list(artifact.categories)
    analysis = DatasetAnalyzer(column_map, max_categories).analyze(rows)
    scorer = PredictionScorer(artifact, classifier, chunk_size)
    request_filter = PredictionFilter.from_parameters(params, default_horizon_hours)
    keep_features = not artifact.feature_importances

    encoder = RowFeatureEncoder(column_map, vocabulary, analysis)
    points = scorer.score(request_filter.apply(encode_rows(rows, encoder)), keep_features)

    if not points:
        logger.warning("Request filter left no rows to score, retrying against the full dataset")
        encoder = RowFeatureEncoder(column_map, vocabulary, analysis)
        points = scorer.score(encode_rows(rows, encoder), keep_features)
        if not points:
            raise PredictionError("No usable dataset rows found for prediction.")

    progress(45, "Scoring dataset entries with the trained model")
    summary = build_summary(points, params, **dict(confidence or {}))
    heatmap = HeatmapAggregator(grid_precision, hotspot_count).aggregate(points)
    ranked = rank_features(artifact, points, top_features)
    logger.info(
        "Scored %d rows into %d cells (confidence %s)",
        summary["count"],
        len(heatmap["points"]),
        summary["confidence"],
    )

    progress(75, "Assembling forecast payload")
    payload = {
        "model_key": model_key,
        "model_version": artifact.version,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "parameters": params,
        "summary": summary,
        "heatmap": heatmap,
        "top_features": ranked,
    }
    del points
    gc.collect()
    progress(100, "Prediction complete")
    return payload
