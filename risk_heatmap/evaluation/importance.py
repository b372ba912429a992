"""
Feature importance as the absolute Pearson correlation with the label.

Model-agnostic and cheap: works for every classifier family, including
those without native importances (k-NN, naive Bayes, SVM with non-linear
kernels).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

TOP_IMPORTANCES = 10


def prettify_feature_name(name: str) -> str:
    """``"category_anti_social"`` -> ``"Category Anti Social"``."""
    words = name.replace("_", " ").replace("-", " ").strip().split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)


class FeatureImportanceCalculator:
    def __init__(self, top_n: int = TOP_IMPORTANCES) -> None:
        self.top_n = top_n

    def correlations(self, samples: np.ndarray, labels: Sequence[float]) -> np.ndarray:
        """
        Pearson correlation of every feature column with the labels.

        Uses sample standard deviations (divisor n - 1); a zero deviation
        is replaced by 1 so constant columns correlate at 0.
        """
        X = np.asarray(samples, dtype=float)
        y = np.asarray(labels, dtype=float)
        if X.size == 0 or y.size == 0:
            return np.array([])
        dof = max(1, len(y) - 1)
        y_centered = y - y.mean()
        y_std = np.sqrt((y_centered ** 2).sum() / dof)
        y_std = y_std if y_std > 0 else 1.0
        X_centered = X - X.mean(axis=0)
        x_std = np.sqrt((X_centered ** 2).sum(axis=0) / dof)
        x_std = np.where(x_std > 0, x_std, 1.0)
        covariance = (X_centered * y_centered[:, None]).sum(axis=0)
        return covariance / (dof * x_std * y_std)

    def calculate(
        self,
        samples: np.ndarray,
        labels: Sequence[float],
        feature_names: Sequence[str],
    ) -> list[dict[str, Any]]:
        """
        Returns:
            Up to ``top_n`` entries ``{name, contribution}`` sorted by
            contribution (absolute correlation, 4 decimals) descending.
        """
        correlations = self.correlations(samples, labels)
        importances = [
            {
                "name": prettify_feature_name(
                    feature_names[i] if i < len(feature_names) else f"Feature {i + 1}"
                ),
                "contribution": round(abs(float(c)), 4),
            }
            for i, c in enumerate(correlations)
        ]
        importances.sort(key=lambda item: item["contribution"], reverse=True)
        return importances[: self.top_n]
