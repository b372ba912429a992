"""
Streaming statistics, train/validation split and standardisation.

Positional partitioning runs in one pass over a sealed buffer and
accumulates the per-feature mean and variance of the training rows with
Welford's online algorithm, so no second pass (and no sum of squares) is
needed however large the buffer is.

Standard deviations are floored to 1.0 when they are effectively zero: a
constant feature standardises to all zeros instead of dividing by zero.

Usage:

    from risk_heatmap.training.statistics import split_dataset, standardize

    split = split_dataset(buffer, validation_split=0.2)
    X_train = standardize(split.train_samples, split.means, split.std_devs)
"""

from __future__ import annotations

import gc
import logging
import math
from collections.abc import Iterable, Sized
from dataclasses import dataclass

import numpy as np

from risk_heatmap.errors import EmptyDatasetError, InsufficientSamplesError

logger = logging.getLogger(__name__)

STD_EPSILON = 1e-12


def _floor_std(std: np.ndarray) -> np.ndarray:
    return np.where(std > STD_EPSILON, std, 1.0)


class RunningStatistics:
    """
    Welford's single-pass mean / variance accumulator over feature vectors.

    ``std_devs`` is the population standard deviation (divisor n), floored
    to 1.0 for near-constant features.
    """

    def __init__(self) -> None:
        self.count = 0
        self._mean: np.ndarray | None = None
        self._m2: np.ndarray | None = None

    def update(self, features: Iterable[float]) -> None:
        x = np.asarray(list(features), dtype=float)
        if self._mean is None:
            self._mean = x.copy()
            self._m2 = np.zeros_like(x)
            self.count = 1
            return
        self.count += 1
        delta = x - self._mean
        self._mean += delta / self.count
        self._m2 += delta * (x - self._mean)

    @property
    def means(self) -> np.ndarray:
        return np.array([]) if self._mean is None else self._mean.copy()

    @property
    def variances(self) -> np.ndarray:
        if self._m2 is None:
            return np.array([])
        return self._m2 / max(1, self.count)

    @property
    def std_devs(self) -> np.ndarray:
        return _floor_std(np.sqrt(self.variances))


@dataclass
class DatasetSplit:
    train_samples: np.ndarray
    train_labels: np.ndarray
    validation_samples: np.ndarray
    validation_labels: np.ndarray
    means: np.ndarray
    std_devs: np.ndarray
    validation_cloned: bool = False


def split_dataset(rows: Iterable, validation_split: float) -> DatasetSplit:
    """
    Partition buffered rows by position into training and validation sets.

    The first ``total - round(total * validation_split)`` rows train, the
    rest validate. Training always keeps at least one row; when the
    validation share rounds to zero, the training rows are cloned into the
    validation set instead of leaving it empty.

    Args:
        rows: A sealed StreamingRowBuffer (anything sized that yields objects
            with ``features`` and ``label``).
        validation_split: Fraction of rows reserved for validation.

    Raises:
        EmptyDatasetError: If there are no rows at all.
    """
    total = len(rows) if isinstance(rows, Sized) else None
    if total is None:
        rows = list(rows)
        total = len(rows)
    if total == 0:
        raise EmptyDatasetError("Dataset does not contain any usable rows.")

    validation_count = int(math.floor(total * validation_split + 0.5))
    validation_count = max(0, min(validation_count, total - 1))
    train_count = total - validation_count
    clone = validation_count == 0

    stats = RunningStatistics()
    train_x: list[list[float]] = []
    train_y: list[int] = []
    val_x: list[list[float]] = []
    val_y: list[int] = []

    for index, row in enumerate(rows):
        if index < train_count or clone:
            train_x.append(row.features)
            train_y.append(int(row.label))
            stats.update(row.features)
        if clone or index >= train_count:
            val_x.append(row.features)
            val_y.append(int(row.label))

    if stats.count == 0:
        raise EmptyDatasetError("Training split did not produce any rows.")

    split = DatasetSplit(
        train_samples=np.asarray(train_x, dtype=float),
        train_labels=np.asarray(train_y, dtype=int),
        validation_samples=np.asarray(val_x, dtype=float),
        validation_labels=np.asarray(val_y, dtype=int),
        means=stats.means,
        std_devs=stats.std_devs,
        validation_cloned=clone,
    )
    del train_x, val_x
    gc.collect()

    logger.info(
        "Split %d rows: %d train / %d validation%s",
        total,
        len(split.train_labels),
        len(split.validation_labels),
        " (cloned from train)" if clone else "",
    )
    return split


def compute_statistics(samples: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Two-pass per-feature mean and sample standard deviation (divisor n - 1).

    Returns two empty arrays for an empty sample set.
    """
    X = np.asarray(samples, dtype=float)
    if X.size == 0:
        return np.array([]), np.array([])
    n = X.shape[0]
    means = X.sum(axis=0) / n
    squared = ((X - means) ** 2).sum(axis=0)
    std = np.sqrt(squared / max(1, n - 1))
    return means, _floor_std(std)


def standardize(samples: np.ndarray, means: np.ndarray, std_devs: np.ndarray) -> np.ndarray:
    """Per-feature z-score ``(x - mean) / std``, treating a near-zero std as 1."""
    X = np.asarray(samples, dtype=float)
    if X.size == 0:
        return X.reshape(0, len(means))
    std = _floor_std(np.asarray(std_devs, dtype=float))
    return (X - np.asarray(means, dtype=float)) / std


def normalize_safely(normalizer, samples: np.ndarray) -> np.ndarray:
    """
    Apply a sample normalizer, tolerating too-small sample sets.

    An InsufficientSamplesError (e.g. std normalisation of one row) leaves
    the samples unchanged and is logged; any other error propagates.
    """
    X = np.asarray(samples, dtype=float)
    if X.shape[0] == 0:
        return X
    try:
        return normalizer.transform(X)
    except InsufficientSamplesError as exc:
        logger.debug("Skipping normalisation: %s", exc)
        return X


def subsample(
    samples: np.ndarray,
    labels: np.ndarray,
    ratio: float = 0.5,
    random_state: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Uniform random sample without replacement.

    Keeps ``ceil(n * ratio)`` rows, at least one and at most all of them.
    Only used to relieve memory pressure.
    """
    X = np.asarray(samples)
    y = np.asarray(labels)
    n = len(X)
    if n == 0:
        return X, y
    size = max(1, min(n, int(np.ceil(n * ratio))))
    rng = np.random.default_rng(random_state)
    indices = np.sort(rng.choice(n, size=size, replace=False))
    return X[indices], y[indices]
