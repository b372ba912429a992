"""
Tests for risk_heatmap.prediction: probability extraction, request filters,
scoring, heatmap aggregation, summaries, feature ranking and the full
forecast run.
"""

from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from risk_heatmap.artifacts import ArtifactRegistry, TrainingArtifact
from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.data.sources import RecordRowSource
from risk_heatmap.errors import ArtifactError, PredictionError
from risk_heatmap.features.analysis import CategoryVocabulary, DatasetAnalyzer
from risk_heatmap.features.encoding import EncodedRow, RowFeatureEncoder
from risk_heatmap.prediction.forecast import encode_rows, generate_forecast
from risk_heatmap.prediction.heatmap import (
    HeatmapAggregator,
    build_summary,
    confidence_tier,
    rank_features,
)
from risk_heatmap.prediction.probability import extract_probability, positive_scores
from risk_heatmap.prediction.scorer import (
    ArtifactPreprocessor,
    PredictionFilter,
    PredictionScorer,
    ScoredPoint,
    haversine_km,
    resolve_center,
)


def _point(score: float, lat: float = 51.5, lng: float = -0.12, features: list[float] | None = None) -> ScoredPoint:
    return ScoredPoint(
        timestamp=None,
        latitude=lat,
        longitude=lng,
        category="theft",
        score=score,
        features=np.array(features) if features is not None else None,
    )


def _artifact(importances: list | None = None) -> TrainingArtifact:
    return TrainingArtifact(
        feature_names=["hour_of_day", "latitude", "category_theft"],
        feature_means=[0.0, 0.0, 0.0],
        feature_std_devs=[1.0, 1.0, 1.0],
        categories=["theft"],
        model_file="burglary/00000000000000000001.joblib",
        feature_importances=importances or [],
    )


def _encoded(records: list[dict], artifact: TrainingArtifact) -> list[EncodedRow]:
    cm = ColumnMap()
    source = RecordRowSource(records)
    encoder = RowFeatureEncoder(cm, CategoryVocabulary.from_list(artifact.categories), DatasetAnalyzer(cm).analyze(source))
    return list(encode_rows(source, encoder))


class TestExtractProbability:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ({"0": 0.3, "1": 0.7}, 0.7),
            ({"no": 0.9, "yes": 0.6}, 0.6),
            ({"positive": "0.25", "negative": 0.75}, 0.25),
            ({"a": 0.2, "b": 0.8}, 0.8),
            ({1: 0.4, 0: 0.6}, 0.4),
            (0.42, 0.42),
            ("0.9", 0.9),
            (1.5, 1.0),
            (-2, 0.0),
            (math.inf, 1.0),
            (float("nan"), 0.0),
            (None, 0.0),
            ({}, 0.0),
            ("likely", 0.0),
        ],
    )
    def test_values(self, value: object, expected: float) -> None:
        assert extract_probability(value) == pytest.approx(expected)

    def test_hard_predictions_without_predict_proba(self) -> None:
        class HardClassifier:
            def predict(self, X: np.ndarray) -> np.ndarray:
                return np.array([0, 2, 1])

        assert positive_scores(HardClassifier(), np.zeros((3, 2))).tolist() == [0.0, 1.0, 1.0]
        assert positive_scores(HardClassifier(), np.empty((0, 2))).size == 0


class TestGeometry:
    def test_one_degree_of_latitude(self) -> None:
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.195, abs=0.01)

    def test_same_point(self) -> None:
        assert haversine_km(51.5, -0.12, 51.5, -0.12) == 0.0

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ({"lat": 51.5, "lng": -0.12}, (51.5, -0.12)),
            ({"latitude": "40.7", "longitude": "-74"}, (40.7, -74.0)),
            ({"lat": 1, "lon": 2}, (1.0, 2.0)),
            ([-0.12, 51.5], (51.5, -0.12)),
            ({"lat": 51.5}, None),
            ([True, 1], None),
            ("51.5,-0.12", None),
            (None, None),
        ],
    )
    def test_resolve_center(self, value: object, expected: tuple | None) -> None:
        assert resolve_center(value) == expected


class TestPredictionFilter:
    def test_empty_parameters(self) -> None:
        assert PredictionFilter.from_parameters(None).is_empty

    def test_radius_needs_a_center(self) -> None:
        assert PredictionFilter.from_parameters({"radius_km": 5}).radius_km is None
        assert PredictionFilter.from_parameters({"radiusKm": 5, "center": [0, 0]}).radius_km == 5.0

    def test_window_around_observed_at(self) -> None:
        f = PredictionFilter.from_parameters({"observed_at": "2024-03-04T12:00:00", "horizon_hours": 2})
        assert f.start == pd.Timestamp("2024-03-04T10:00:00")
        assert f.end == pd.Timestamp("2024-03-04T14:00:00")

    def test_default_horizon(self) -> None:
        f = PredictionFilter.from_parameters({"timestamp": "2024-03-04T12:00:00"}, default_horizon_hours=6)
        assert f.end - f.start == pd.Timedelta(hours=12)

    def test_zero_window_keeps_previous_day(self) -> None:
        f = PredictionFilter.from_parameters({"observed_at": "2024-03-04T12:00:00", "horizon": 0})
        assert f.start == pd.Timestamp("2024-03-03T12:00:00")
        assert f.end == pd.Timestamp("2024-03-04T12:00:00")

    def test_matches(self) -> None:
        f = PredictionFilter(
            center=(51.5, -0.12),
            radius_km=1.0,
            start=pd.Timestamp("2024-03-04T10:00:00"),
            end=pd.Timestamp("2024-03-04T14:00:00"),
        )
        inside = EncodedRow(features=[], risk=0.0, timestamp=pd.Timestamp("2024-03-04T11:00"), latitude=51.501, longitude=-0.12)
        too_far = EncodedRow(features=[], risk=0.0, timestamp=pd.Timestamp("2024-03-04T11:00"), latitude=51.6, longitude=-0.12)
        too_late = EncodedRow(features=[], risk=0.0, timestamp=pd.Timestamp("2024-03-04T15:00"), latitude=51.5, longitude=-0.12)
        undated = EncodedRow(features=[], risk=0.0, timestamp=None, latitude=51.5, longitude=-0.12)
        assert list(f.apply([inside, too_far, too_late, undated])) == [inside, undated]


class TestScorer:
    def test_chunking_does_not_change_scores(
        self, registry: ArtifactRegistry, trained_artifact: TrainingArtifact, labeled_records: list[dict]
    ) -> None:
        classifier = registry.load_classifier(trained_artifact)
        entries = _encoded(labeled_records, trained_artifact)
        whole = PredictionScorer(trained_artifact, classifier).score(entries)
        chunked = PredictionScorer(trained_artifact, classifier, chunk_size=7).score(entries)
        assert len(whole) == 100
        assert [p.score for p in whole] == pytest.approx([p.score for p in chunked])
        assert all(0.0 <= p.score <= 1.0 for p in whole)
        assert all(p.features is None for p in whole)

    def test_positives_score_higher(
        self, registry: ArtifactRegistry, trained_artifact: TrainingArtifact, labeled_records: list[dict]
    ) -> None:
        classifier = registry.load_classifier(trained_artifact)
        points = PredictionScorer(trained_artifact, classifier).score(_encoded(labeled_records, trained_artifact))
        positive = [p.score for p, r in zip(points, labeled_records) if r["Label"] == 1]
        negative = [p.score for p, r in zip(points, labeled_records) if r["Label"] == 0]
        assert np.mean(positive) > np.mean(negative)

    def test_keep_features(
        self, registry: ArtifactRegistry, trained_artifact: TrainingArtifact, labeled_records: list[dict]
    ) -> None:
        classifier = registry.load_classifier(trained_artifact)
        points = PredictionScorer(trained_artifact, classifier).score(
            _encoded(labeled_records[:3], trained_artifact), keep_features=True
        )
        assert points[0].features.shape == (trained_artifact.width,)

    def test_width_mismatch(self, trained_artifact: TrainingArtifact) -> None:
        with pytest.raises(ArtifactError, match="expects 8"):
            ArtifactPreprocessor(trained_artifact).check_width([0.0] * 5)


class TestHeatmap:
    def test_points_share_a_cell(self) -> None:
        aggregator = HeatmapAggregator()
        grid = aggregator.aggregate([_point(0.2, 51.50001), _point(0.4, 51.50002), _point(0.9, 51.6)])
        assert [cell["id"] for cell in grid["points"]] == ["51.6:-0.12", "51.5:-0.12"]
        assert grid["points"][1]["intensity"] == pytest.approx(0.3)
        assert grid["points"][1]["count"] == 2

    def test_hotspots_are_the_top_cells(self) -> None:
        points = [_point(i / 10, lat=50.0 + i) for i in range(8)]
        heatmap = HeatmapAggregator(hotspot_count=3).aggregate(points)
        assert len(heatmap["points"]) == 8
        assert [h["intensity"] for h in heatmap["hotspots"]] == [0.7, 0.6, 0.5]

    def test_empty(self) -> None:
        assert HeatmapAggregator().aggregate([]) == {"points": [], "hotspots": []}


class TestSummary:
    @pytest.mark.parametrize(
        ("count", "std", "max_score", "expected"),
        [
            (60, 0.15, 0.7, "High"),
            (60, 0.2, 0.9, "Medium"),
            (59, 0.0, 0.9, "Medium"),
            (25, 0.5, 0.5, "Medium"),
            (24, 0.0, 0.9, "Low"),
            (100, 0.0, 0.49, "Low"),
        ],
    )
    def test_confidence_tier(self, count: int, std: float, max_score: float, expected: str) -> None:
        assert confidence_tier(count, std, max_score) == expected

    def test_tier_overrides(self) -> None:
        assert confidence_tier(3, 0.0, 0.9, high_min_count=2) == "High"

    def test_statistics(self) -> None:
        summary = build_summary([_point(0.2), _point(0.4)], {"horizon": "12", "radiusKm": 3})
        assert summary["mean_score"] == pytest.approx(0.3)
        assert summary["max_score"] == pytest.approx(0.4)
        assert summary["min_score"] == pytest.approx(0.2)
        assert summary["count"] == 2
        assert summary["confidence"] == "Low"
        assert summary["horizon_hours"] == 12.0
        assert summary["radius_km"] == 3.0

    def test_high_confidence(self) -> None:
        summary = build_summary([_point(0.8)] * 60)
        assert summary["confidence"] == "High"
        assert summary["horizon_hours"] is None

    def test_empty(self) -> None:
        summary = build_summary([])
        assert summary["count"] == 0
        assert summary["mean_score"] == 0.0


class TestRankFeatures:
    def test_stored_importances(self) -> None:
        artifact = _artifact([
            {"name": "hour_of_day", "contribution": 0.123456},
            {"name": "latitude", "contribution": -0.9, "details": 3},
            "junk",
            {"name": "", "contribution": 1.0},
        ])
        ranked = rank_features(artifact)
        assert ranked == [
            {"name": "Latitude", "contribution": -0.9, "details": {"value": 3}},
            {"name": "Hour Of Day", "contribution": 0.1235},
        ]

    def test_correlation_fallback(self) -> None:
        points = [
            _point(0.9, features=[1.0, 0.3, 0.0]),
            _point(0.8, features=[1.0, 0.1, 0.0]),
            _point(0.1, features=[0.0, 0.2, 0.0]),
            _point(0.2, features=[0.0, 0.4, 0.0]),
        ]
        ranked = rank_features(_artifact(), points)
        assert ranked[0] == {"name": "Hour Of Day", "contribution": 1.0}
        assert ranked[-1]["contribution"] == 0.0

    def test_zero_fallback(self) -> None:
        ranked = rank_features(_artifact(), [_point(0.5)], top_n=2)
        assert ranked == [
            {"name": "Hour Of Day", "contribution": 0.0},
            {"name": "Latitude", "contribution": 0.0},
        ]


class TestGenerateForecast:
    def test_payload(
        self,
        registry: ArtifactRegistry,
        trained_artifact: TrainingArtifact,
        labeled_source: RecordRowSource,
        column_map: ColumnMap,
    ) -> None:
        milestones: list[int] = []
        payload = generate_forecast(
            registry,
            labeled_source,
            column_map,
            {"center": {"lat": 51.515, "lng": -0.115}, "radius_km": 5},
            model_key="burglary",
            progress=lambda pct, msg=None: milestones.append(pct),
        )
        assert milestones == [10, 45, 75, 100]
        assert payload["model_version"] == trained_artifact.version
        assert payload["summary"]["count"] == 100
        assert payload["summary"]["radius_km"] == 5.0
        assert payload["summary"]["confidence"] in {"High", "Medium", "Low"}
        assert 0 < len(payload["heatmap"]["hotspots"]) <= 5
        assert len(payload["top_features"]) == 5
        intensities = [cell["intensity"] for cell in payload["heatmap"]["points"]]
        assert intensities == sorted(intensities, reverse=True)

    def test_empty_filter_falls_back_to_full_dataset(
        self,
        registry: ArtifactRegistry,
        trained_artifact: TrainingArtifact,
        labeled_source: RecordRowSource,
        column_map: ColumnMap,
    ) -> None:
        payload = generate_forecast(
            registry,
            labeled_source,
            column_map,
            {"center": [151.2, -33.87], "radius_km": 1},
            model_key="burglary",
        )
        assert payload["summary"]["count"] == 100

    def test_time_window_limits_rows(
        self,
        registry: ArtifactRegistry,
        trained_artifact: TrainingArtifact,
        labeled_source: RecordRowSource,
        column_map: ColumnMap,
    ) -> None:
        # Monday evening rows only: days=0, hours=20
        payload = generate_forecast(
            registry,
            labeled_source,
            column_map,
            {"observed_at": "2024-03-04T20:00:00", "horizon_hours": 1},
            model_key="burglary",
        )
        assert payload["summary"]["count"] == sum(1 for i in range(100) if i % 7 == 0 and i % 5 in (0, 1))

    def test_ranking_falls_back_to_correlation(
        self,
        registry: ArtifactRegistry,
        trained_artifact: TrainingArtifact,
        labeled_source: RecordRowSource,
        column_map: ColumnMap,
    ) -> None:
        fields = trained_artifact.to_dict()
        for key in ("model_key", "version", "model_file"):
            fields.pop(key)
        fields["feature_importances"] = []
        registry.put("bare", fields, registry.load_classifier(trained_artifact))

        payload = generate_forecast(registry, labeled_source, column_map, model_key="bare")
        names = {n.replace("_", " ").title() for n in trained_artifact.feature_names}
        assert payload["top_features"]
        assert {f["name"] for f in payload["top_features"]} <= names

    def test_no_rows_raises(
        self, registry: ArtifactRegistry, trained_artifact: TrainingArtifact, column_map: ColumnMap
    ) -> None:
        with pytest.raises(PredictionError, match="No usable dataset rows"):
            generate_forecast(registry, RecordRowSource([]), column_map, model_key="burglary")

    def test_untrained_key_raises(self, registry: ArtifactRegistry, labeled_source: RecordRowSource, column_map: ColumnMap) -> None:
        with pytest.raises(ArtifactError):
            generate_forecast(registry, labeled_source, column_map, model_key="burglary")
