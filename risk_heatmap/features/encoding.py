"""
Raw row -> fixed-length numeric feature vector.

Feature layout (constant for one dataset / one artifact):

  hour_of_day    hour / 23
  day_of_week    (ISO weekday - 1) / 6, Monday = 0
  latitude       raw degrees, 0.0 when blank or non-numeric
  longitude      raw degrees, 0.0 when blank or non-numeric
  risk_score     explicit risk, explicit label, or the synthetic score
  category_*     one-hot block, one slot per vocabulary entry

The synthetic risk score is used only when a row carries neither an explicit
numeric risk nor an explicit numeric label:

    risk = 0.6 * category_frequency_score + 0.4 * recency_score

so that even a dataset without any risk signal yields a trainable label.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import pandas as pd

from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.data.timestamps import epoch_seconds, parse_timestamp
from risk_heatmap.features.analysis import (
    OVERFLOW_KEY,
    CategoryVocabulary,
    DatasetAnalysis,
    extract_numeric,
    normalize_category,
)

BASE_FEATURE_NAMES: tuple[str, ...] = (
    "hour_of_day",
    "day_of_week",
    "latitude",
    "longitude",
    "risk_score",
)
RISK_FEATURE_INDEX = 4

CATEGORY_WEIGHT = 0.6
RECENCY_WEIGHT = 0.4

_SLUG = re.compile(r"[^a-z0-9]+")


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def round_label(value: float) -> int:
    """Round half away from zero: 0.5 -> 1, 1.5 -> 2, -0.5 -> -1."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def category_feature_slug(category: str) -> str:
    """``"Anti-social behaviour"`` -> ``"anti_social_behaviour"``; overflow -> ``"other"``."""
    if category == OVERFLOW_KEY:
        return "other"
    slug = _SLUG.sub("_", category.lower()).strip("_")
    return slug or "unknown"


def build_feature_names(vocabulary: CategoryVocabulary) -> list[str]:
    return list(BASE_FEATURE_NAMES) + [
        f"category_{category_feature_slug(c)}" for c in vocabulary.categories
    ]


def synthetic_risk(category: str, timestamp: pd.Timestamp, analysis: DatasetAnalysis) -> float:
    """
    Blend category frequency and recency into a score in [0, 1].

    The frequency score places the category's row count between the
    dataset's least and most frequent category; when every category is
    equally frequent it is 0.5. The recency score places the timestamp in the
    observed time span, 0.5 when the span is empty.
    """
    count = analysis.count_for(category)
    if analysis.max_count == analysis.min_count:
        category_score = 0.5 if analysis.max_count > 0 else 0.0
    else:
        # an overflow slot absent from this dataset counts 0, below min_count
        category_score = _clamp((count - analysis.min_count) / max(analysis.max_count - analysis.min_count, 1))

    recency_score = 0.5
    if analysis.time_span and analysis.min_time is not None:
        recency_score = _clamp((epoch_seconds(timestamp) - analysis.min_time) / analysis.time_span)

    return _clamp(CATEGORY_WEIGHT * category_score + RECENCY_WEIGHT * recency_score)


@dataclass
class EncodedRow:
    """One dataset record reduced to a feature vector plus its risk and label."""

    features: list[float]
    risk: float
    raw_label: int | None = None
    timestamp: pd.Timestamp | None = None
    latitude: float = 0.0
    longitude: float = 0.0
    category: str = ""
    synthetic_risk: bool = False


class RowFeatureEncoder:
    """
    Encode raw rows against a frozen vocabulary and a dataset analysis.

    ``encode`` returns None for rows without a parsable timestamp; nothing
    else causes a row to be dropped.
    """

    def __init__(
        self,
        column_map: ColumnMap,
        vocabulary: CategoryVocabulary,
        analysis: DatasetAnalysis,
    ) -> None:
        self.column_map = column_map
        self.vocabulary = vocabulary
        self.analysis = analysis
        self.feature_names = build_feature_names(vocabulary)
        self.synthetic_rows = 0
        self.skipped_rows = 0

    @property
    def width(self) -> int:
        return len(self.feature_names)

    def resolve_risk(self, row: Mapping[str, Any], category: str, timestamp: pd.Timestamp) -> tuple[float, bool]:
        """Return ``(risk, is_synthetic)`` for one row."""
        cm = self.column_map
        if self.analysis.has_numeric_risk:
            explicit = extract_numeric(row.get(cm.risk_score))
            if explicit is not None:
                return _clamp(explicit), False
        if self.analysis.has_numeric_label:
            label = extract_numeric(row.get(cm.label))
            if label is not None:
                return _clamp(label), False
        return synthetic_risk(category, timestamp, self.analysis), True

    def encode(self, row: Mapping[str, Any]) -> EncodedRow | None:
        cm = self.column_map
        timestamp = parse_timestamp(row.get(cm.timestamp))
        if timestamp is None:
            self.skipped_rows += 1
            return None

        latitude = extract_numeric(row.get(cm.latitude)) or 0.0
        longitude = extract_numeric(row.get(cm.longitude)) or 0.0
        category = normalize_category(row.get(cm.category))
        encoded_category = self.vocabulary.resolve(category)

        risk, synthetic = self.resolve_risk(row, encoded_category, timestamp)
        if synthetic:
            self.synthetic_rows += 1

        raw = extract_numeric(row.get(cm.label))
        raw_label = round_label(raw) if raw is not None else None

        one_hot = [0.0] * len(self.vocabulary)
        slot = self.vocabulary.index_of(category)
        if slot is not None:
            one_hot[slot] = 1.0

        features = [
            timestamp.hour / 23.0,
            (timestamp.isoweekday() - 1) / 6.0,
            float(latitude),
            float(longitude),
            risk,
        ] + one_hot

        return EncodedRow(
            features=features,
            risk=risk,
            raw_label=raw_label,
            timestamp=timestamp,
            latitude=float(latitude),
            longitude=float(longitude),
            category=category,
            synthetic_risk=synthetic,
        )
