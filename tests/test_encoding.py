"""
Tests for risk_heatmap.features.analysis and risk_heatmap.features.encoding.

Vocabulary, feature layout and the risk resolution order (explicit risk,
explicit label, synthetic score).
"""

from __future__ import annotations

import pandas as pd
import pytest

from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.data.sources import RecordRowSource
from risk_heatmap.features.analysis import (
    DEFAULT_KEY,
    OVERFLOW_KEY,
    CategoryVocabulary,
    DatasetAnalysis,
    DatasetAnalyzer,
    extract_numeric,
    normalize_category,
)
from risk_heatmap.features.encoding import (
    BASE_FEATURE_NAMES,
    RISK_FEATURE_INDEX,
    RowFeatureEncoder,
    build_feature_names,
    category_feature_slug,
    round_label,
    synthetic_risk,
)


def _encoder(records: list[dict], max_categories: int = 64) -> RowFeatureEncoder:
    cm = ColumnMap()
    source = RecordRowSource(records)
    analysis = DatasetAnalyzer(cm, max_categories).analyze(source)
    return RowFeatureEncoder(cm, CategoryVocabulary.from_analysis(analysis), analysis)


class TestCellParsing:
    def test_normalize_category(self) -> None:
        assert normalize_category("  Burglary ") == "burglary"
        assert normalize_category(None) == ""
        assert normalize_category(["a"]) == ""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("0.25", 0.25), (3, 3.0), (" 7 ", 7.0), ("", None), ("abc", None), ("nan", None), (True, None), (None, None)],
    )
    def test_extract_numeric(self, value: object, expected: float | None) -> None:
        assert extract_numeric(value) == expected


class TestDatasetAnalyzer:
    def test_counts_and_time_span(self, unlabeled_source: RecordRowSource) -> None:
        analysis = DatasetAnalyzer(ColumnMap()).analyze(unlabeled_source)
        assert analysis.category_counts == {"burglary": 50, "theft": 30, "assault": 20}
        assert (analysis.min_count, analysis.max_count) == (20, 50)
        assert analysis.time_span == pytest.approx(99 * 99 * 3600.0)
        assert analysis.row_count == 100
        assert not analysis.has_numeric_risk and not analysis.has_numeric_label

    def test_detects_explicit_label(self, labeled_source: RecordRowSource) -> None:
        analysis = DatasetAnalyzer(ColumnMap()).analyze(labeled_source)
        assert analysis.has_numeric_label
        assert not analysis.has_numeric_risk

    def test_overflow_bucket_beyond_cap(self, unlabeled_source: RecordRowSource) -> None:
        analysis = DatasetAnalyzer(ColumnMap(), max_categories=2).analyze(unlabeled_source)
        assert analysis.overflowed
        assert analysis.category_counts == {"burglary": 50, "theft": 30, OVERFLOW_KEY: 20}

    def test_rows_without_timestamp_are_ignored(self) -> None:
        rows = RecordRowSource([
            {"timestamp": "garbage", "category": "a"},
            {"timestamp": "2024-01-01", "category": "b"},
        ])
        analysis = DatasetAnalyzer(ColumnMap()).analyze(rows)
        assert analysis.category_counts == {"b": 1}
        assert analysis.row_count == 1

    def test_no_categories_uses_default_key(self) -> None:
        analysis = DatasetAnalyzer(ColumnMap()).analyze(RecordRowSource([{"timestamp": "2024-01-01"}]))
        assert analysis.category_counts == {DEFAULT_KEY: 0}
        assert CategoryVocabulary.from_analysis(analysis).categories == ()


class TestCategoryVocabulary:
    def test_sorted_with_overflow_last(self) -> None:
        vocab = CategoryVocabulary.from_counts({"theft": 3, OVERFLOW_KEY: 1, "assault": 2}, overflowed=True)
        assert vocab.categories == ("assault", "theft", OVERFLOW_KEY)
        assert vocab.overflowed

    def test_unknown_category_resolves_to_overflow(self) -> None:
        vocab = CategoryVocabulary(("assault", OVERFLOW_KEY))
        assert vocab.index_of("arson") == 1
        assert vocab.index_of("assault") == 0

    def test_unknown_category_without_overflow_has_no_slot(self) -> None:
        assert CategoryVocabulary(("assault",)).index_of("arson") is None

    def test_from_list_keeps_order(self) -> None:
        assert CategoryVocabulary.from_list(["b", "a"]).categories == ("b", "a")


class TestFeatureNames:
    def test_slugs(self) -> None:
        assert category_feature_slug("anti-social behaviour") == "anti_social_behaviour"
        assert category_feature_slug(OVERFLOW_KEY) == "other"
        assert category_feature_slug("!!!") == "unknown"

    def test_layout(self) -> None:
        names = build_feature_names(CategoryVocabulary(("assault", "theft", OVERFLOW_KEY)))
        assert names[:5] == list(BASE_FEATURE_NAMES)
        assert names[5:] == ["category_assault", "category_theft", "category_other"]


class TestSyntheticRisk:
    @pytest.fixture()
    def analysis(self) -> DatasetAnalysis:
        return DatasetAnalysis(
            category_counts={"burglary": 50, "theft": 30, "assault": 20},
            min_count=20,
            max_count=50,
            min_time=0.0,
            max_time=100.0,
            time_span=100.0,
        )

    def test_most_frequent_oldest(self, analysis: DatasetAnalysis) -> None:
        assert synthetic_risk("burglary", pd.Timestamp(0, unit="s"), analysis) == pytest.approx(0.6)

    def test_least_frequent_newest(self, analysis: DatasetAnalysis) -> None:
        assert synthetic_risk("assault", pd.Timestamp(100, unit="s"), analysis) == pytest.approx(0.4)

    def test_middle(self, analysis: DatasetAnalysis) -> None:
        # (30 - 20) / 30 frequency, 0.5 recency
        assert synthetic_risk("theft", pd.Timestamp(50, unit="s"), analysis) == pytest.approx(0.2 + 0.2)

    def test_equal_counts_and_empty_span(self) -> None:
        flat = DatasetAnalysis(category_counts={"a": 4, "b": 4}, min_count=4, max_count=4, time_span=0.0, min_time=5.0)
        assert synthetic_risk("a", pd.Timestamp(5, unit="s"), flat) == pytest.approx(0.5)

    def test_overflow_bucket_missing_from_dataset_scores_as_least_frequent(self) -> None:
        analysis = DatasetAnalysis(
            category_counts={"a": 2, "b": 4}, min_count=2, max_count=4, min_time=0.0, max_time=10.0, time_span=10.0
        )
        assert synthetic_risk(OVERFLOW_KEY, pd.Timestamp(10, unit="s"), analysis) == pytest.approx(0.4)


class TestRowFeatureEncoder:
    def test_vector_length_is_constant(self, unlabeled_records: list[dict]) -> None:
        encoder = _encoder(unlabeled_records)
        widths = {len(encoder.encode(row).features) for row in RecordRowSource(unlabeled_records)}
        assert widths == {5 + 3}
        assert encoder.width == 8

    def test_vector_length_with_overflow(self, unlabeled_records: list[dict]) -> None:
        encoder = _encoder(unlabeled_records, max_categories=1)
        assert encoder.feature_names[-1] == "category_other"
        assert {len(encoder.encode(r).features) for r in RecordRowSource(unlabeled_records)} == {5 + 1 + 1}

    def test_time_and_location_features(self, labeled_records: list[dict]) -> None:
        encoder = _encoder(labeled_records)
        row = next(iter(RecordRowSource(labeled_records)))  # Monday 20:00, burglary, label 1
        encoded = encoder.encode(row)
        assert encoded.features[0] == pytest.approx(20 / 23)
        assert encoded.features[1] == pytest.approx(0.0)
        assert encoded.features[2] == pytest.approx(51.52)
        assert encoded.features[3] == pytest.approx(-0.11)
        # vocabulary: assault, burglary, theft
        assert encoded.features[5:] == [0.0, 1.0, 0.0]

    def test_explicit_label_is_the_risk(self, labeled_records: list[dict]) -> None:
        encoder = _encoder(labeled_records)
        encoded = [encoder.encode(r) for r in RecordRowSource(labeled_records)]
        assert encoder.synthetic_rows == 0
        assert [e.features[RISK_FEATURE_INDEX] for e in encoded[:3]] == [1.0, 1.0, 0.0]
        assert [e.raw_label for e in encoded[:3]] == [1, 1, 0]

    def test_explicit_risk_is_clamped(self) -> None:
        records = [
            {"timestamp": "2024-01-01", "category": "a", "risk_score": "1.7"},
            {"timestamp": "2024-01-02", "category": "a", "risk_score": "-3"},
        ]
        encoder = _encoder(records)
        risks = [encoder.encode(r).risk for r in RecordRowSource(records)]
        assert risks == [1.0, 0.0]
        assert encoder.synthetic_rows == 0

    def test_synthetic_risk_without_signal(self, unlabeled_records: list[dict]) -> None:
        encoder = _encoder(unlabeled_records)
        encoded = [encoder.encode(r) for r in RecordRowSource(unlabeled_records)]
        assert encoder.synthetic_rows == 100
        assert all(e.synthetic_risk and e.raw_label is None for e in encoded)
        assert all(0.0 <= e.risk <= 1.0 for e in encoded)

    def test_unparsable_timestamp_is_skipped(self) -> None:
        records = [{"timestamp": "2024-01-01", "category": "a"}, {"timestamp": "soon", "category": "a"}]
        encoder = _encoder(records)
        rows = list(RecordRowSource(records))
        assert encoder.encode(rows[1]) is None
        assert encoder.skipped_rows == 1

    def test_blank_coordinates_become_zero(self) -> None:
        records = [{"timestamp": "2024-01-01", "category": "a", "latitude": "", "longitude": "x"}]
        encoded = _encoder(records).encode(next(iter(RecordRowSource(records))))
        assert (encoded.latitude, encoded.longitude) == (0.0, 0.0)

    def test_unseen_category_against_overflowed_vocabulary(self) -> None:
        records = [
            {"timestamp": "2024-01-01", "category": "a"},
            {"timestamp": "2024-01-02", "category": "b"},
            {"timestamp": "2024-01-03", "category": "b"},
            {"timestamp": "2024-01-05", "category": "arson"},
        ]
        cm = ColumnMap()
        analysis = DatasetAnalyzer(cm).analyze(RecordRowSource(records))
        encoder = RowFeatureEncoder(cm, CategoryVocabulary(("a", "b", OVERFLOW_KEY)), analysis)
        encoded = encoder.encode(records[-1])
        # arson counts as the least frequent category, newest timestamp
        assert encoded.features[5:] == [0.0, 0.0, 1.0]
        assert encoded.risk == pytest.approx(0.4)

    def test_fractional_labels_round_half_up(self) -> None:
        records = [
            {"timestamp": "2024-01-01", "category": "a", "label": "0.5"},
            {"timestamp": "2024-01-02", "category": "a", "label": "1.5"},
            {"timestamp": "2024-01-03", "category": "a", "label": "0.49"},
        ]
        encoder = _encoder(records)
        assert [encoder.encode(r).raw_label for r in RecordRowSource(records)] == [1, 2, 0]

    @pytest.mark.parametrize(("value", "expected"), [(0.5, 1), (1.5, 2), (2.5, 3), (-0.5, -1), (0.4999, 0)])
    def test_round_label(self, value: float, expected: int) -> None:
        assert round_label(value) == expected
