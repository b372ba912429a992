"""
First streaming pass over a dataset: category vocabulary and time span.

Before any row can be encoded the pipeline needs to know which categories
exist (to size the one-hot block), how often each one occurs and over which
time range the rows were observed (both feed the synthetic risk score), and
whether the dataset carries explicit risk or label values at all.

Cardinality is capped: the first 64 distinct categories are tracked, any
further category is counted in a single overflow bucket.

Usage:

    from risk_heatmap.features.analysis import CategoryVocabulary, DatasetAnalyzer

    analysis = DatasetAnalyzer(column_map).analyze(source)
    vocabulary = CategoryVocabulary.from_analysis(analysis)
"""

from __future__ import annotations

import gc
import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.data.timestamps import epoch_seconds, parse_timestamp

logger = logging.getLogger(__name__)

MAX_TRACKED_CATEGORIES = 64
OVERFLOW_KEY = "__other__"
DEFAULT_KEY = "__default__"
ANALYSIS_GC_INTERVAL = 5_000


def normalize_category(value: Any) -> str:
    """Trim and case-fold a raw category cell. Non-scalar values become ""."""
    if value is None or isinstance(value, (list, dict, tuple, set)):
        return ""
    return str(value).strip().casefold()


def extract_numeric(value: Any) -> float | None:
    """
    Read a cell as a finite float, or None when it is blank or not numeric.

    Booleans are not numbers here; "nan" and "inf" strings are rejected.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


@dataclass
class DatasetAnalysis:
    """Everything the encoding pass needs to know about a dataset up front."""

    category_counts: dict[str, int] = field(default_factory=dict)
    min_count: int = 0
    max_count: int = 0
    min_time: float | None = None
    max_time: float | None = None
    time_span: float | None = None
    has_numeric_risk: bool = False
    has_numeric_label: bool = False
    overflowed: bool = False
    row_count: int = 0

    def count_for(self, category: str) -> int:
        """
        Row count used by the category frequency score.

        Unknown categories fall back to the overflow bucket when one exists;
        a blank category scores as the least frequent one.
        """
        if category:
            if category in self.category_counts:
                return self.category_counts[category]
            return self.category_counts.get(OVERFLOW_KEY, 0)
        return self.min_count if self.category_counts else 0


@dataclass(frozen=True)
class CategoryVocabulary:
    """
    Ordered, frozen set of categories for the one-hot block.

    Categories are sorted alphabetically; the overflow bucket, when present,
    always occupies the last slot.
    """

    categories: tuple[str, ...] = ()

    @classmethod
    def from_counts(cls, counts: Mapping[str, int], overflowed: bool = False) -> "CategoryVocabulary":
        keys = sorted(k for k in counts if k not in (OVERFLOW_KEY, DEFAULT_KEY))
        if overflowed or OVERFLOW_KEY in counts:
            keys.append(OVERFLOW_KEY)
        return cls(tuple(keys))

    @classmethod
    def from_analysis(cls, analysis: DatasetAnalysis) -> "CategoryVocabulary":
        return cls.from_counts(analysis.category_counts, analysis.overflowed)

    @classmethod
    def from_list(cls, categories: Sequence[Any]) -> "CategoryVocabulary":
        """Restore a vocabulary stored in a training artifact, keeping its order."""
        return cls(tuple(str(c) for c in categories))

    @property
    def overflowed(self) -> bool:
        return OVERFLOW_KEY in self.categories

    def __len__(self) -> int:
        return len(self.categories)

    def index_of(self, category: str) -> int | None:
        """One-hot slot for an already normalised category, or None for no match."""
        if not category:
            return None
        try:
            return self.categories.index(self.resolve(category))
        except ValueError:
            return None

    def resolve(self, category: str) -> str:
        """Map a category outside the vocabulary to the overflow bucket, if there is one."""
        if category and category not in self.categories and self.overflowed:
            return OVERFLOW_KEY
        return category


class DatasetAnalyzer:
    """
    Single streaming pass that learns the dataset's vocabulary and time span.

    Rows whose timestamp cannot be parsed are ignored, exactly as the
    encoding pass will ignore them later.
    """

    def __init__(
        self,
        column_map: ColumnMap,
        max_categories: int = MAX_TRACKED_CATEGORIES,
        gc_interval: int = ANALYSIS_GC_INTERVAL,
    ) -> None:
        self.column_map = column_map
        self.max_categories = max(0, int(max_categories))
        self.gc_interval = max(1, int(gc_interval))

    def analyze(self, rows: Iterable[Mapping[str, Any]]) -> DatasetAnalysis:
        cm = self.column_map
        counts: dict[str, int] = {}
        tracked = 0
        overflowed = False
        min_time: float | None = None
        max_time: float | None = None
        has_risk = False
        has_label = False
        processed = 0
        skipped = 0

        for row in rows:
            ts = parse_timestamp(row.get(cm.timestamp))
            if ts is None:
                skipped += 1
                continue

            category = normalize_category(row.get(cm.category))
            if category:
                if category in counts:
                    counts[category] += 1
                elif tracked < self.max_categories:
                    counts[category] = 1
                    tracked += 1
                else:
                    overflowed = True
                    counts[OVERFLOW_KEY] = counts.get(OVERFLOW_KEY, 0) + 1

            seconds = epoch_seconds(ts)
            min_time = seconds if min_time is None else min(min_time, seconds)
            max_time = seconds if max_time is None else max(max_time, seconds)

            if not has_risk:
                has_risk = extract_numeric(row.get(cm.risk_score)) is not None
            if not has_label:
                has_label = extract_numeric(row.get(cm.label)) is not None

            processed += 1
            if processed % self.gc_interval == 0:
                gc.collect()

        if not counts:
            counts[DEFAULT_KEY] = 0

        time_span = max(max_time - min_time, 0.0) if min_time is not None and max_time is not None else None

        analysis = DatasetAnalysis(
            category_counts=counts,
            min_count=min(counts.values()),
            max_count=max(counts.values()),
            min_time=min_time,
            max_time=max_time,
            time_span=time_span,
            has_numeric_risk=has_risk,
            has_numeric_label=has_label,
            overflowed=overflowed,
            row_count=processed,
        )
        logger.info(
            "Analysed %d rows (%d skipped): %d categories%s, explicit risk=%s, explicit label=%s",
            processed,
            skipped,
            len([k for k in counts if k not in (DEFAULT_KEY, OVERFLOW_KEY)]),
            " + overflow" if overflowed else "",
            has_risk,
            has_label,
        )
        return analysis
