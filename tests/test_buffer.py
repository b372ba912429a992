"""
Tests for risk_heatmap.features.buffer and risk_heatmap.features.preparation.

Covers the label-threshold policy, re-readable disk-spilling storage and the
two-pass dataset preparation, including a dataset with no label or risk
column at all.
"""

from __future__ import annotations

import pandas as pd
import pytest

from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.data.sources import RecordRowSource
from risk_heatmap.features.analysis import CategoryVocabulary
from risk_heatmap.features.buffer import (
    HISTOGRAM_BINS,
    NO_THRESHOLD,
    LabelPolicy,
    StreamingRowBuffer,
    determine_risk_threshold,
)
from risk_heatmap.features.encoding import EncodedRow
from risk_heatmap.features.preparation import prepare_evaluation_data, prepare_training_data


def _row(risk: float, raw_label: int | None = None, ts: str | None = "2024-01-01T10:00:00") -> EncodedRow:
    return EncodedRow(
        features=[0.1, 0.2, 51.5, -0.1, risk],
        risk=risk,
        raw_label=raw_label,
        timestamp=pd.Timestamp(ts) if ts else None,
    )


def _histogram(bins: dict[int, int]) -> list[int]:
    histogram = [0] * HISTOGRAM_BINS
    for index, count in bins.items():
        histogram[index] = count
    return histogram


class TestRiskThreshold:
    def test_percentile_bin(self) -> None:
        # rank = floor(0.75 * 3) + 1 = 3, reached in bin 50
        assert determine_risk_threshold(_histogram({10: 2, 50: 1, 90: 1}), 4) == pytest.approx(0.5)

    def test_single_active_bin_has_no_threshold(self) -> None:
        assert determine_risk_threshold(_histogram({30: 10}), 10) == NO_THRESHOLD

    def test_empty_histogram(self) -> None:
        assert determine_risk_threshold(_histogram({}), 0) == NO_THRESHOLD


class TestLabelPolicy:
    def test_explicit_labels_win(self) -> None:
        policy = LabelPolicy(threshold=0.5)
        assert policy.resolve(2, 0.0) == 1
        assert policy.resolve(0, 0.9) == 0

    def test_generated_labels(self) -> None:
        policy = LabelPolicy(threshold=0.5)
        assert policy.resolve(None, 0.5) == 1
        assert policy.resolve(None, 0.49) == 0

    def test_zero_risk_is_never_positive(self) -> None:
        assert LabelPolicy(threshold=0.0).resolve(None, 0.0) == 0

    def test_no_threshold_means_negative(self) -> None:
        assert LabelPolicy().resolve(None, 1.0) == 0


class TestStreamingRowBuffer:
    def test_must_be_sealed_before_reading(self) -> None:
        with StreamingRowBuffer() as buffer:
            buffer.append(_row(0.2, 0))
            with pytest.raises(RuntimeError):
                list(buffer)

    def test_cannot_append_after_seal(self) -> None:
        with StreamingRowBuffer() as buffer:
            buffer.seal()
            with pytest.raises(RuntimeError):
                buffer.append(_row(0.2, 0))

    def test_seal_is_idempotent(self) -> None:
        with StreamingRowBuffer() as buffer:
            buffer.append(_row(0.2, 1))
            assert buffer.seal() is buffer.seal()

    def test_repeated_and_nested_iteration(self) -> None:
        with StreamingRowBuffer() as buffer:
            for i in range(5):
                buffer.append(_row(i / 10, i % 2))
            buffer.seal()
            outer = []
            for row in buffer:
                outer.append(row.risk)
                assert len(list(buffer)) == 5
            assert outer == [0.0, 0.1, 0.2, 0.3, 0.4]
            assert [r.label for r in buffer] == [0, 1, 0, 1, 0]

    def test_spills_past_threshold(self) -> None:
        with StreamingRowBuffer(spill_threshold=256) as buffer:
            for i in range(50):
                buffer.append(_row(0.5, i % 2))
            buffer.seal()
            assert buffer.spilled
            assert len(buffer) == 50
            assert sum(r.label for r in buffer) == 25

    def test_timestamps_are_kept_for_training(self) -> None:
        with StreamingRowBuffer(include_timestamps=True) as buffer:
            buffer.append(_row(0.5, 1))
            buffer.seal()
            assert next(iter(buffer)).timestamp == pd.Timestamp("2024-01-01T10:00:00")

    def test_timestamps_are_dropped_for_evaluation(self) -> None:
        with StreamingRowBuffer(include_timestamps=False) as buffer:
            buffer.append(_row(0.5, 1))
            buffer.seal()
            assert next(iter(buffer)).timestamp is None

    def test_generated_labels_split_at_percentile(self) -> None:
        with StreamingRowBuffer() as buffer:
            for risk in (0.1, 0.1, 0.5, 0.9):
                buffer.append(_row(risk))
            policy = buffer.seal()
            assert policy.threshold == pytest.approx(0.5)
            assert [r.label for r in buffer] == [0, 0, 1, 1]
            assert buffer.generated_labels
            assert buffer.positive_count == 2

    def test_forces_first_max_risk_row_positive(self) -> None:
        with StreamingRowBuffer() as buffer:
            for risk in (0.2, 0.4, 0.4, 0.1):
                buffer.append(_row(risk, raw_label=0))
            policy = buffer.seal()
            assert policy.force_max_risk_positive
            assert [r.label for r in buffer] == [0, 1, 0, 0]
            # the forced row is chosen again on every pass
            assert [r.label for r in buffer] == [0, 1, 0, 0]

    def test_single_risk_level_still_gets_a_positive(self) -> None:
        with StreamingRowBuffer() as buffer:
            for _ in range(4):
                buffer.append(_row(0.3))
            policy = buffer.seal()
            assert policy.threshold == NO_THRESHOLD
            assert sum(r.label for r in buffer) == 1
            assert not buffer.generated_labels

    def test_all_zero_risk_cannot_be_forced(self) -> None:
        with StreamingRowBuffer() as buffer:
            buffer.append(_row(0.0, raw_label=0))
            assert not buffer.seal().force_max_risk_positive


class TestPrepareTrainingData:
    def test_labelled_dataset(self, labeled_source: RecordRowSource, column_map: ColumnMap) -> None:
        prepared = prepare_training_data(labeled_source, column_map)
        with prepared.buffer as buffer:
            labels = [r.label for r in buffer]
            assert labels.count(1) == 40 and labels.count(0) == 60
            assert not buffer.generated_labels
        assert not prepared.synthetic_risk_used
        assert prepared.categories == ["assault", "burglary", "theft"]
        assert len(prepared.feature_names) == 8

    def test_unlabelled_dataset_gets_both_classes(
        self, unlabeled_source: RecordRowSource, column_map: ColumnMap
    ) -> None:
        prepared = prepare_training_data(unlabeled_source, column_map)
        with prepared.buffer as buffer:
            labels = [r.label for r in buffer]
            assert buffer.generated_labels
            assert 0.0 < buffer.label_policy.threshold <= 1.0
            train_labels = labels[:80]
        assert prepared.synthetic_risk_used
        assert prepared.synthetic_risk_rows == 100
        assert 1 in labels and 0 in labels
        assert 1 in train_labels and 0 in train_labels

    def test_label_percentile_is_configurable(
        self, unlabeled_source: RecordRowSource, column_map: ColumnMap
    ) -> None:
        strict = prepare_training_data(unlabeled_source, column_map, label_percentile=0.95)
        loose = prepare_training_data(unlabeled_source, column_map, label_percentile=0.5)
        with strict.buffer as s, loose.buffer as lo:
            assert s.positive_count < lo.positive_count


class TestPrepareEvaluationData:
    def test_uses_the_frozen_vocabulary(self, column_map: ColumnMap) -> None:
        vocabulary = CategoryVocabulary(("assault", "burglary", "theft"))
        source = RecordRowSource([
            {"timestamp": "2024-01-01", "category": "theft", "label": 1},
            {"timestamp": "2024-01-02", "category": "arson", "label": 0},
        ])
        prepared = prepare_evaluation_data(source, column_map, vocabulary)
        with prepared.buffer as buffer:
            rows = list(buffer)
        assert prepared.feature_names[5:] == ["category_assault", "category_burglary", "category_theft"]
        assert rows[0].features[5:] == [0.0, 0.0, 1.0]
        assert rows[1].features[5:] == [0.0, 0.0, 0.0]
        assert [r.timestamp for r in rows] == [None, None]
