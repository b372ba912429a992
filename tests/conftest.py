"""
Shared pytest fixtures for the Risk Heatmap test suite.

All fixtures are synthetic: no real dataset files required. Rows are laid
out so that both classes always land in the positional training split.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest

from risk_heatmap.artifacts import ArtifactRegistry, TrainingArtifact
from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.data.sources import RecordRowSource
from risk_heatmap.memory import MemoryMonitor
from risk_heatmap.training.trainer import ModelTrainer

_BASE_TIME = datetime(2024, 3, 4, 0, 0, 0)  # a Monday
_CATEGORIES = ("burglary", "theft", "assault")


# ---------------------------------------------------------------------------
# Column map
# ---------------------------------------------------------------------------

@pytest.fixture()
def column_map() -> ColumnMap:
    return ColumnMap()


# ---------------------------------------------------------------------------
# Labelled dataset: 100 rows, 60 negatives / 40 positives
# ---------------------------------------------------------------------------

def make_labeled_records(n: int = 100) -> list[dict]:
    """
    Positives are every row with ``i % 5 in (0, 1)``: 40 of 100, spread
    evenly so the first 80 rows already contain both classes.

    Positives sit about 1 km north-east of the negatives and in the evening,
    which makes the classes easy to separate.
    """
    records = []
    for i in range(n):
        label = 1 if i % 5 in (0, 1) else 0
        ts = _BASE_TIME + timedelta(days=i % 7, hours=20 if label else 8)
        records.append({
            "Timestamp": ts.isoformat(),
            "Latitude": 51.51 + (0.01 if label else 0.0) + (i % 3) * 0.0001,
            "Longitude": -0.12 + (0.01 if label else 0.0),
            "Category": _CATEGORIES[i % 3],
            "Label": label,
        })
    return records


@pytest.fixture()
def labeled_records() -> list[dict]:
    return make_labeled_records()


@pytest.fixture()
def labeled_source(labeled_records: list[dict]) -> RecordRowSource:
    return RecordRowSource(labeled_records)


# ---------------------------------------------------------------------------
# Unlabelled dataset: no label/risk column, 3 categories, skewed time range
# ---------------------------------------------------------------------------

def make_unlabeled_records(n: int = 100) -> list[dict]:
    """
    Category counts 50 / 30 / 20 (burglary / theft / assault).

    Row i is timestamped i**2 hours after the start, so most rows crowd the
    beginning of the range and the recency score grows quadratically.
    """
    records = []
    for i in range(n):
        slot = i % 10
        category = "burglary" if slot < 5 else "theft" if slot < 8 else "assault"
        ts = _BASE_TIME + timedelta(hours=i * i)
        records.append({
            "timestamp": ts.isoformat(),
            "latitude": 40.70 + (i % 10) * 0.002,
            "longitude": -74.00 - (i % 7) * 0.002,
            "category": category,
        })
    return records


@pytest.fixture()
def unlabeled_records() -> list[dict]:
    return make_unlabeled_records()


@pytest.fixture()
def unlabeled_source(unlabeled_records: list[dict]) -> RecordRowSource:
    return RecordRowSource(unlabeled_records)


# ---------------------------------------------------------------------------
# CSV files
# ---------------------------------------------------------------------------

@pytest.fixture()
def labeled_csv_file(tmp_path: Path, labeled_records: list[dict]) -> Path:
    """The labelled dataset written as CSV with mixed-case, BOM-prefixed headers."""
    p = tmp_path / "incidents.csv"
    pd.DataFrame(labeled_records).to_csv(p, index=False, encoding="utf-8-sig")
    return p


# ---------------------------------------------------------------------------
# Registry and training collaborators
# ---------------------------------------------------------------------------

@pytest.fixture()
def registry(tmp_path: Path) -> ArtifactRegistry:
    return ArtifactRegistry(tmp_path / "models")


@pytest.fixture()
def relaxed_memory_monitor() -> MemoryMonitor:
    """A monitor that never reports pressure, so training never subsamples."""
    return MemoryMonitor(threshold_bytes=1 << 50)


@pytest.fixture()
def trained_artifact(
    registry: ArtifactRegistry,
    labeled_source: RecordRowSource,
    column_map: ColumnMap,
    relaxed_memory_monitor: MemoryMonitor,
) -> TrainingArtifact:
    """A naive Bayes model trained on the labelled dataset and published as ``burglary``."""
    trainer = ModelTrainer(registry, memory_monitor=relaxed_memory_monitor)
    result = trainer.train(labeled_source, column_map, {"model_type": "naive_bayes"}, model_key="burglary")
    return result.artifact
