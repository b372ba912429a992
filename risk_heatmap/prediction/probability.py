"""
Scalar positive-class probability from heterogeneous classifier output.

A score can arrive as a bare number or as a mapping of class -> probability.
Mappings prefer an explicit positive-class key ('1', 1, 'true', True, 'yes',
'positive', checked in that order) and otherwise take the largest value.
Every result is clamped to [0, 1].

    extract_probability({"0": 0.3, "1": 0.7})  # 0.7
    extract_probability(0.42)                  # 0.42
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from typing import Any

import numpy as np

POSITIVE_KEYS: tuple[Any, ...] = ("1", 1, "true", True, "yes", "positive")


def _clamp(value: float) -> float:
    if not math.isfinite(value):
        return 1.0 if value > 0 else 0.0
    return max(0.0, min(1.0, value))


def _as_number(value: Any) -> float | None:
    if isinstance(value, (int, float, np.number)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def extract_probability(value: Any) -> float:
    number = _as_number(value)
    if number is not None:
        return _clamp(number)

    if isinstance(value, Mapping):
        for key in POSITIVE_KEYS:
            if key in value:
                return extract_probability(value[key])
        scores = [extract_probability(v) for v in value.values()]
        return max(scores) if scores else 0.0

    return 0.0


def extract_probabilities(values: Iterable[Any]) -> list[float]:
    return [extract_probability(v) for v in values]


def probability_mappings(classifier: Any, samples: np.ndarray) -> list[dict[Any, float]]:
    """``predict_proba`` rows keyed by the classifier's class labels."""
    classes = [c.item() if isinstance(c, np.generic) else c for c in classifier.classes_]
    matrix = classifier.predict_proba(samples)
    return [dict(zip(classes, (float(p) for p in row))) for row in matrix]


def positive_scores(classifier: Any, samples: np.ndarray) -> np.ndarray:
    """
    Positive-class score per sample.

    Uses ``predict_proba`` where the estimator offers it; otherwise the hard
    prediction is mapped to 1.0 (label >= 1) or 0.0.
    """
    X = np.asarray(samples, dtype=float)
    if len(X) == 0:
        return np.array([], dtype=float)
    if hasattr(classifier, "predict_proba"):
        return np.asarray(extract_probabilities(probability_mappings(classifier, X)), dtype=float)
    predicted = classifier.predict(X)
    return np.asarray([1.0 if float(p) >= 1 else 0.0 for p in predicted], dtype=float)
