"""
Imputation and per-sample normalisation with serialisable configs.

Both transforms are fitted (or configured) at training time and stored in
the artifact so evaluation and prediction apply exactly the same steps.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import numpy as np
from sklearn.impute import SimpleImputer
from sklearn.preprocessing import StandardScaler, normalize

from risk_heatmap.errors import InsufficientSamplesError

logger = logging.getLogger(__name__)

NORMALIZATION_TYPES = ("l1", "l2", "max", "std")
DEFAULT_NORMALIZATION = "l2"
_NORMALIZATION_ALIASES = {
    "l1": "l1",
    "l2": "l2",
    "max": "max",
    "linf": "max",
    "inf": "max",
    "maxnorm": "max",
    "std": "std",
    "zscore": "std",
}

IMPUTATION_STRATEGIES = ("mean", "median", "most_frequent", "constant")
DEFAULT_IMPUTATION = "mean"
_IMPUTATION_ALIASES = {
    "mean": "mean",
    "median": "median",
    "most_frequent": "most_frequent",
    "mostfrequent": "most_frequent",
    "constant": "constant",
}


def resolve_normalization(value: Any) -> str:
    """Canonical normalisation name for a user value; unknown values become "l2"."""
    if isinstance(value, str):
        return _NORMALIZATION_ALIASES.get(value.strip().lower(), DEFAULT_NORMALIZATION)
    return DEFAULT_NORMALIZATION


def resolve_imputation(value: Any) -> str:
    """Canonical imputation strategy for a user value; unknown values become "mean"."""
    if isinstance(value, str):
        return _IMPUTATION_ALIASES.get(value.strip().lower(), DEFAULT_IMPUTATION)
    return DEFAULT_IMPUTATION


class SampleNormalizer:
    """
    Vector normalisation applied after standardisation.

    l1 / l2 / max scale each sample (row) to unit norm. std rescales each
    feature (column) of the batch being transformed to zero mean and unit
    variance, which is undefined for fewer than two samples.
    """

    def __init__(self, kind: str = DEFAULT_NORMALIZATION) -> None:
        self.kind = resolve_normalization(kind)

    def transform(self, samples: np.ndarray) -> np.ndarray:
        X = np.asarray(samples, dtype=float)
        if X.shape[0] == 0:
            raise InsufficientSamplesError("Cannot normalise zero elements")
        if self.kind == "std":
            if X.shape[0] < 2:
                raise InsufficientSamplesError("Std normalisation needs at least 2 elements")
            return StandardScaler().fit_transform(X)
        return normalize(X, norm=self.kind)

    def to_config(self) -> dict[str, str]:
        return {"type": self.kind}

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | str | None) -> "SampleNormalizer":
        if isinstance(config, Mapping):
            return cls(config.get("type", DEFAULT_NORMALIZATION))
        return cls(config if isinstance(config, str) else DEFAULT_NORMALIZATION)

    def __repr__(self) -> str:
        return f"SampleNormalizer({self.kind!r})"


class FittedImputer:
    """
    Missing-value imputation fitted on training rows only.

    Fitting uses scikit-learn's SimpleImputer; the learned per-feature fill
    values are kept as a plain list so the imputer round-trips through the
    JSON artifact.
    """

    def __init__(
        self,
        strategy: str = DEFAULT_IMPUTATION,
        fill_value: float = 0.0,
        statistics: list[float] | None = None,
    ) -> None:
        self.strategy = resolve_imputation(strategy)
        self.fill_value = float(fill_value)
        self.statistics = None if statistics is None else np.asarray(statistics, dtype=float)

    def fit(self, samples: np.ndarray) -> "FittedImputer":
        X = np.asarray(samples, dtype=float)
        imputer = SimpleImputer(
            strategy=self.strategy,
            fill_value=self.fill_value,
            keep_empty_features=True,
        )
        imputer.fit(X)
        self.statistics = np.nan_to_num(imputer.statistics_.astype(float), nan=self.fill_value)
        return self

    def transform(self, samples: np.ndarray) -> np.ndarray:
        X = np.asarray(samples, dtype=float)
        if X.size == 0:
            return X
        mask = np.isnan(X)
        if not mask.any():
            return X
        if self.statistics is None or len(self.statistics) != X.shape[1]:
            return np.where(mask, self.fill_value, X)
        return np.where(mask, self.statistics, X)

    def fit_transform(self, samples: np.ndarray) -> np.ndarray:
        return self.fit(samples).transform(samples)

    def to_config(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "fill_value": self.fill_value,
            "statistics": [] if self.statistics is None else [float(v) for v in self.statistics],
        }

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | str | None) -> "FittedImputer":
        if not isinstance(config, Mapping):
            return cls(config if isinstance(config, str) else DEFAULT_IMPUTATION)
        statistics = config.get("statistics")
        return cls(
            strategy=config.get("strategy", DEFAULT_IMPUTATION),
            fill_value=config.get("fill_value", 0.0),
            statistics=list(statistics) if statistics else None,
        )
