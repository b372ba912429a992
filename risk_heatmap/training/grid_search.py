"""
Cross-validated hyperparameter search.

For every combination in the expanded grid, ``cv_folds`` repetitions of

    random train/validation split -> impute -> standardise (train-only
    statistics) -> normalise -> train -> predict -> evaluate

are run and their accuracy and macro-F1 averaged. The best combination is
the one with the highest mean accuracy, ties broken by a strictly higher
macro-F1 (so the earlier combination wins a full tie).

A repetition that hits a degenerate sample set (too few rows for a
transform, a single class in the training split, fewer rows than k-NN
neighbours) is skipped; every other error propagates.

Usage:

    engine = GridSearchEngine()
    result = engine.search(X, y, params)
    result.best_hyperparameters, result.to_metrics()
"""

from __future__ import annotations

import gc
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from sklearn.model_selection import ShuffleSplit

from risk_heatmap.errors import InsufficientSamplesError
from risk_heatmap.evaluation.metrics import classification_report
from risk_heatmap.training.classifiers import ClassifierFactory, fit_classifier
from risk_heatmap.training.hyperparameters import DEFAULT_RANDOM_STATE, HyperparameterResolver
from risk_heatmap.training.preprocessing import FittedImputer, SampleNormalizer
from risk_heatmap.training.statistics import compute_statistics, normalize_safely, standardize

logger = logging.getLogger(__name__)

FOLD_GC_INTERVAL = 3
COMBINATION_GC_INTERVAL = 2
TOP_EVALUATIONS = 10

# Fragments of scikit-learn ValueError messages raised for degenerate sample sets.
_DEGENERATE_MARKERS = (
    "at least 2 classes",
    "only one class",
    "number of classes has to be greater than one",
    "n_neighbors <= n_samples",
    "resulting train set will be empty",
    "zero elements",
    "at least 2 elements",
    "0 sample(s)",
)


def is_degenerate_sample_error(exc: BaseException) -> bool:
    if isinstance(exc, InsufficientSamplesError):
        return True
    if isinstance(exc, ValueError):
        message = str(exc).lower()
        return any(marker in message for marker in _DEGENERATE_MARKERS)
    return False


@dataclass
class GridSearchResult:
    best_hyperparameters: dict[str, Any]
    best_accuracy: float
    best_macro_f1: float
    evaluations: list[dict[str, Any]] = field(default_factory=list)
    cycles: int = 0
    skipped: int = 0

    def to_metrics(self) -> dict[str, Any]:
        return {
            "evaluations": self.evaluations,
            "best_accuracy": round(self.best_accuracy, 4),
            "best_macro_f1": round(self.best_macro_f1, 4),
            "best_hyperparameters": self.best_hyperparameters,
        }


class GridSearchEngine:
    """
    Args:
        factory: Builds one estimator per repetition. Anything with the
            ``ClassifierFactory.create`` signature works.
        resolver: Expands the grid when ``search`` is not given one.
    """

    def __init__(
        self,
        factory: ClassifierFactory | None = None,
        resolver: HyperparameterResolver | None = None,
        fold_gc_interval: int = FOLD_GC_INTERVAL,
        combination_gc_interval: int = COMBINATION_GC_INTERVAL,
        top_evaluations: int = TOP_EVALUATIONS,
    ) -> None:
        self.factory = factory or ClassifierFactory()
        self.resolver = resolver or HyperparameterResolver()
        self.fold_gc_interval = max(1, fold_gc_interval)
        self.combination_gc_interval = max(1, combination_gc_interval)
        self.top_evaluations = top_evaluations

    def search(
        self,
        samples: np.ndarray,
        labels: np.ndarray,
        params: Mapping[str, Any],
        grid: list[dict[str, Any]] | None = None,
    ) -> GridSearchResult:
        X = np.asarray(samples, dtype=float)
        y = np.asarray(labels)
        grid = grid if grid is not None else self.resolver.generate_grid(params)
        folds = max(1, int(params.get("cv_folds", 3)))
        test_size = max(0.1, min(0.5, float(params.get("cv_validation_split", 0.25))))
        splitter = ShuffleSplit(
            n_splits=folds,
            test_size=test_size,
            random_state=params.get("random_state", DEFAULT_RANDOM_STATE),
        )

        logger.info("Grid search: %d combinations x %d folds on %d rows", len(grid), folds, len(y))

        evaluations: list[dict[str, Any]] = []
        best_params: dict[str, Any] = {}
        best_accuracy = -np.inf
        best_macro = -np.inf
        cycles = 0
        skipped = 0

        for index, candidate in enumerate(grid):
            accuracies: list[float] = []
            macros: list[float] = []

            try:
                splits = list(splitter.split(X))
            except ValueError as exc:
                if not is_degenerate_sample_error(exc):
                    raise
                logger.debug("Cannot split %d rows: %s", len(y), exc)
                splits = []
                skipped += folds

            for fold, (train_idx, test_idx) in enumerate(splits):
                try:
                    report = self._run_fold(X[train_idx], y[train_idx], X[test_idx], y[test_idx], candidate, params)
                except (InsufficientSamplesError, ValueError) as exc:
                    if not is_degenerate_sample_error(exc):
                        raise
                    logger.debug("Skipping fold %d of %s: %s", fold + 1, candidate, exc)
                    skipped += 1
                    continue

                cycles += 1
                accuracies.append(report["accuracy"])
                macros.append(report["macro"]["f1"])

                if fold > 0 and fold % self.fold_gc_interval == 0:
                    gc.collect()

            accuracy = float(np.mean(accuracies)) if accuracies else 0.0
            macro_f1 = float(np.mean(macros)) if macros else 0.0
            evaluations.append({
                "hyperparameters": candidate,
                "accuracy": round(accuracy, 4),
                "macro_f1": round(macro_f1, 4),
                "folds": len(accuracies),
            })
            logger.debug("Combination %d/%d %s -> acc=%.4f macro_f1=%.4f", index + 1, len(grid), candidate, accuracy, macro_f1)

            if accuracy > best_accuracy or (accuracy == best_accuracy and macro_f1 > best_macro):
                best_accuracy = accuracy
                best_macro = macro_f1
                best_params = dict(candidate)

            if index > 0 and index % self.combination_gc_interval == 0:
                gc.collect()

        evaluations.sort(key=lambda e: e["accuracy"], reverse=True)
        result = GridSearchResult(
            best_hyperparameters=best_params,
            best_accuracy=max(best_accuracy, 0.0),
            best_macro_f1=max(best_macro, 0.0),
            evaluations=evaluations[: self.top_evaluations],
            cycles=cycles,
            skipped=skipped,
        )
        logger.info(
            "Grid search best: %s (accuracy=%.4f, macro_f1=%.4f, %d cycles, %d skipped)",
            result.best_hyperparameters,
            result.best_accuracy,
            result.best_macro_f1,
            cycles,
            skipped,
        )
        return result

    def _run_fold(
        self,
        X_train: np.ndarray,
        y_train: np.ndarray,
        X_test: np.ndarray,
        y_test: np.ndarray,
        candidate: Mapping[str, Any],
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        imputer = FittedImputer(params.get("imputation_strategy", "mean")).fit(X_train)
        X_train = imputer.transform(X_train)
        X_test = imputer.transform(X_test)

        means, std_devs = compute_statistics(X_train)
        X_train = standardize(X_train, means, std_devs)
        X_test = standardize(X_test, means, std_devs)

        normalizer = SampleNormalizer(params.get("normalization", "l2"))
        X_train = normalize_safely(normalizer, X_train)
        X_test = normalize_safely(normalizer, X_test)

        classifier = self.factory.create(params.get("model_type", "logistic_regression"), candidate, params)
        fit_classifier(classifier, X_train, y_train)
        predictions = classifier.predict(X_test)
        return classification_report(list(y_test), list(predictions))
