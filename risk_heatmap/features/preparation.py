"""
Two-pass preparation of a row source into a sealed StreamingRowBuffer.

Pass 1 (DatasetAnalyzer) learns the vocabulary and time span; pass 2 encodes
every row through RowFeatureEncoder into the buffer. Training derives its
vocabulary from the data; evaluation and prediction reuse the vocabulary
frozen in the training artifact so the feature layout matches the model.

Usage:

    from risk_heatmap.features.preparation import prepare_training_data

    prepared = prepare_training_data(CsvRowSource(path, column_map), column_map)
    with prepared.buffer:
        ...
"""

from __future__ import annotations

import gc
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.features.analysis import (
    ANALYSIS_GC_INTERVAL,
    MAX_TRACKED_CATEGORIES,
    CategoryVocabulary,
    DatasetAnalysis,
    DatasetAnalyzer,
)
from risk_heatmap.features.buffer import (
    ITERATION_GC_INTERVAL,
    LABEL_PERCENTILE,
    SPILL_THRESHOLD_BYTES,
    StreamingRowBuffer,
)
from risk_heatmap.features.encoding import RowFeatureEncoder

logger = logging.getLogger(__name__)

ENCODING_GC_INTERVAL = 2_500


@dataclass
class PreparedDataset:
    buffer: StreamingRowBuffer
    feature_names: list[str]
    vocabulary: CategoryVocabulary
    analysis: DatasetAnalysis
    synthetic_risk_rows: int = 0

    @property
    def categories(self) -> list[str]:
        return list(self.vocabulary.categories)

    @property
    def category_overflowed(self) -> bool:
        return self.analysis.overflowed

    @property
    def synthetic_risk_used(self) -> bool:
        return self.synthetic_risk_rows > 0


def encode_into_buffer(
    rows: Iterable[Mapping[str, Any]],
    encoder: RowFeatureEncoder,
    buffer: StreamingRowBuffer,
    gc_interval: int = ENCODING_GC_INTERVAL,
) -> int:
    """Encode every usable row into the buffer. Returns the number of rows written."""
    written = 0
    for row in rows:
        encoded = encoder.encode(row)
        if encoded is None:
            continue
        buffer.append(encoded)
        written += 1
        if written % gc_interval == 0:
            gc.collect()
    return written


def _prepare(
    rows: Iterable[Mapping[str, Any]],
    column_map: ColumnMap,
    vocabulary: CategoryVocabulary | None,
    include_timestamps: bool,
    max_categories: int,
    spill_threshold: int,
    analysis_gc_interval: int,
    encoding_gc_interval: int,
    iteration_gc_interval: int,
    label_percentile: float,
) -> PreparedDataset:
    analysis = DatasetAnalyzer(column_map, max_categories, analysis_gc_interval).analyze(rows)
    if vocabulary is None:
        vocabulary = CategoryVocabulary.from_analysis(analysis)

    encoder = RowFeatureEncoder(column_map, vocabulary, analysis)
    buffer = StreamingRowBuffer(
        include_timestamps=include_timestamps,
        spill_threshold=spill_threshold,
        gc_interval=iteration_gc_interval,
        label_percentile=label_percentile,
    )
    try:
        written = encode_into_buffer(rows, encoder, buffer, encoding_gc_interval)
        buffer.seal()
    except Exception:
        buffer.close()
        raise

    logger.info(
        "Encoded %d rows into %d features (%d synthetic risk, spilled=%s)",
        written,
        encoder.width,
        encoder.synthetic_rows,
        buffer.spilled,
    )
    return PreparedDataset(
        buffer=buffer,
        feature_names=encoder.feature_names,
        vocabulary=vocabulary,
        analysis=analysis,
        synthetic_risk_rows=encoder.synthetic_rows,
    )


def prepare_training_data(
    rows: Iterable[Mapping[str, Any]],
    column_map: ColumnMap,
    *,
    max_categories: int = MAX_TRACKED_CATEGORIES,
    spill_threshold: int = SPILL_THRESHOLD_BYTES,
    analysis_gc_interval: int = ANALYSIS_GC_INTERVAL,
    encoding_gc_interval: int = ENCODING_GC_INTERVAL,
    iteration_gc_interval: int = ITERATION_GC_INTERVAL,
    label_percentile: float = LABEL_PERCENTILE,
) -> PreparedDataset:
    """
    Analyse and encode a training dataset, deriving its own vocabulary.

    Args:
        rows: A re-iterable row source; it is read twice.
        column_map: Resolved column map for the dataset.

    Returns:
        The prepared dataset. The caller owns ``prepared.buffer`` and must close it.
    """
    return _prepare(
        rows,
        column_map,
        None,
        True,
        max_categories,
        spill_threshold,
        analysis_gc_interval,
        encoding_gc_interval,
        iteration_gc_interval,
        label_percentile,
    )


def prepare_evaluation_data(
    rows: Iterable[Mapping[str, Any]],
    column_map: ColumnMap,
    vocabulary: CategoryVocabulary,
    *,
    max_categories: int = MAX_TRACKED_CATEGORIES,
    spill_threshold: int = SPILL_THRESHOLD_BYTES,
    analysis_gc_interval: int = ANALYSIS_GC_INTERVAL,
    encoding_gc_interval: int = ENCODING_GC_INTERVAL,
    iteration_gc_interval: int = ITERATION_GC_INTERVAL,
    label_percentile: float = LABEL_PERCENTILE,
) -> PreparedDataset:
    """Analyse and encode a dataset against a vocabulary frozen by a training run."""
    return _prepare(
        rows,
        column_map,
        vocabulary,
        False,
        max_categories,
        spill_threshold,
        analysis_gc_interval,
        encoding_gc_interval,
        iteration_gc_interval,
        label_percentile,
    )
