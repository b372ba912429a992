"""
Classification metrics: confusion matrix, per-class / macro / weighted
precision-recall-F1, accuracy and a Mann-Whitney AUC.

The label set is the union of observed and predicted values in order of
first appearance (observed first), so nothing assumes the labels are exactly
{0, 1}. Every ratio with a zero denominator is 0.0 instead of raising.

Usage:

    from risk_heatmap.evaluation.metrics import evaluate_predictions

    metrics = evaluate_predictions(y_true, y_pred, scores)
    metrics["accuracy"], metrics["macro"]["f1"], metrics["auc"]
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np
from sklearn.metrics import confusion_matrix

DECIMALS = 4


def derive_labels(actual: Sequence[Any], predicted: Sequence[Any]) -> list[Any]:
    labels: list[Any] = []
    seen: set[Any] = set()
    for value in list(actual) + list(predicted):
        key = value.item() if isinstance(value, np.generic) else value
        if key not in seen:
            seen.add(key)
            labels.append(key)
    return labels


def _ratio(numerator: float, denominator: float) -> float:
    return float(numerator) / denominator if denominator else 0.0


def _f1(precision: float, recall: float) -> float:
    return _ratio(2 * precision * recall, precision + recall)


def classification_report(actual: Sequence[Any], predicted: Sequence[Any]) -> dict[str, Any]:
    """
    Unrounded report derived from the confusion matrix.

    Returns:
        ``{labels, accuracy, per_class, macro, weighted, confusion_matrix}``
        where rows of the matrix are actual labels and columns predicted
        ones, both indexed by ``labels``.
    """
    actual = list(actual)
    predicted = list(predicted)
    if len(actual) != len(predicted):
        raise ValueError(
            f"actual and predicted differ in length: {len(actual)} != {len(predicted)}"
        )

    labels = derive_labels(actual, predicted)
    if not labels:
        empty = {"precision": 0.0, "recall": 0.0, "f1": 0.0}
        return {
            "labels": [],
            "accuracy": 0.0,
            "per_class": {},
            "macro": dict(empty),
            "weighted": dict(empty),
            "confusion_matrix": [],
        }

    matrix = confusion_matrix(actual, predicted, labels=labels)
    total = int(matrix.sum())
    accuracy = _ratio(np.trace(matrix), total)

    per_class: dict[Any, dict[str, float]] = {}
    for i, label in enumerate(labels):
        tp = float(matrix[i, i])
        support = int(matrix[i, :].sum())
        fp = float(matrix[:, i].sum()) - tp
        precision = _ratio(tp, tp + fp)
        recall = _ratio(tp, support)
        per_class[label] = {
            "precision": precision,
            "recall": recall,
            "f1": _f1(precision, recall),
            "support": support,
        }

    supported = [m for m in per_class.values() if m["support"] > 0] or list(per_class.values())
    macro = {
        key: sum(m[key] for m in supported) / len(supported)
        for key in ("precision", "recall", "f1")
    }
    weighted = {
        key: _ratio(sum(m[key] * m["support"] for m in per_class.values()), total)
        for key in ("precision", "recall", "f1")
    }

    return {
        "labels": labels,
        "accuracy": accuracy,
        "per_class": per_class,
        "macro": macro,
        "weighted": weighted,
        "confusion_matrix": matrix.astype(int).tolist(),
    }


def compute_auc(labels: Sequence[Any], scores: Sequence[float]) -> float:
    """
    Exact AUC as the Mann-Whitney U statistic.

    Rows labelled 1 are positive, every other row negative. Each
    positive/negative pair scores 1 when the positive is strictly higher and
    0.5 on a tie. Returns 0.0 when either side is empty.

    Raises:
        ValueError: If labels and scores differ in length.
    """
    y = np.asarray(labels)
    s = np.asarray(scores, dtype=float)
    if len(y) != len(s):
        raise ValueError(f"labels and scores differ in length: {len(y)} != {len(s)}")
    positives = s[y == 1]
    negatives = np.sort(s[y != 1])
    if len(positives) == 0 or len(negatives) == 0:
        return 0.0
    below = np.searchsorted(negatives, positives, side="left")
    at_or_below = np.searchsorted(negatives, positives, side="right")
    wins = below.sum()
    ties = (at_or_below - below).sum()
    return float((wins + 0.5 * ties) / (len(positives) * len(negatives)))


def format_metrics(report: dict[str, Any], actual: Sequence[Any], scores: Sequence[float]) -> dict[str, Any]:
    """Round a classification report to 4 decimals and attach the AUC."""

    def rounded(metrics: dict[str, float]) -> dict[str, float]:
        return {k: round(float(v), DECIMALS) for k, v in metrics.items()}

    return {
        "accuracy": round(float(report["accuracy"]), DECIMALS),
        "macro": rounded(report["macro"]),
        "weighted": rounded(report["weighted"]),
        "per_class": {
            str(label): {
                "precision": round(m["precision"], DECIMALS),
                "recall": round(m["recall"], DECIMALS),
                "f1": round(m["f1"], DECIMALS),
                "support": int(m["support"]),
            }
            for label, m in report["per_class"].items()
        },
        "labels": [str(label) for label in report["labels"]],
        "confusion_matrix": report["confusion_matrix"],
        "auc": round(compute_auc(actual, scores), DECIMALS),
    }


def evaluate_predictions(
    actual: Sequence[Any],
    predicted: Sequence[Any],
    scores: Sequence[float],
) -> dict[str, Any]:
    """Full evaluation report, JSON-serialisable and rounded to 4 decimals."""
    actual = [a.item() if isinstance(a, np.generic) else a for a in actual]
    predicted = [p.item() if isinstance(p, np.generic) else p for p in predicted]
    return format_metrics(classification_report(actual, predicted), actual, scores)
