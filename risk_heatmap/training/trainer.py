"""
End-to-end training run: row source -> published artifact.

    10  analyse the dataset and resolve hyperparameters
    30  encode every row into the streaming buffer
    40  positional train/validation split with Welford statistics
    50  cross-validated grid search on the training split
    62  train the winning configuration on the whole training split
    75  evaluate it on the validation split
    82  Pearson feature importances
    87  persist classifier + artifact
    92  record metadata
   100  done

Nothing is published unless every step succeeds, so a failed run leaves the
previously active artifact in place.

Usage:

    trainer = ModelTrainer(ArtifactRegistry("models"))
    result = trainer.train(CsvRowSource(path, column_map), column_map, {"model_type": "knn"}, model_key="burglary")
"""

from __future__ import annotations

import gc
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import numpy as np

from risk_heatmap.artifacts import ArtifactRegistry, TrainingArtifact
from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.errors import EmptyDatasetError
from risk_heatmap.evaluation.importance import FeatureImportanceCalculator
from risk_heatmap.evaluation.metrics import evaluate_predictions
from risk_heatmap.features.preparation import prepare_training_data
from risk_heatmap.memory import MemoryMonitor
from risk_heatmap.prediction.probability import positive_scores
from risk_heatmap.training.classifiers import ClassifierFactory, fit_classifier
from risk_heatmap.training.grid_search import GridSearchEngine, GridSearchResult
from risk_heatmap.training.hyperparameters import HyperparameterResolver
from risk_heatmap.training.preprocessing import FittedImputer, SampleNormalizer
from risk_heatmap.training.statistics import normalize_safely, split_dataset, standardize, subsample

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, "str | None"], None]

SAMPLING_RATIO = 0.5


def _noop_progress(percent: int, message: str | None = None) -> None:
    pass


@dataclass
class TrainingResult:
    artifact: TrainingArtifact
    metrics: dict[str, Any]
    grid_search: GridSearchResult
    hyperparameters: dict[str, Any]


class ModelTrainer:
    """
    Args:
        registry: Where the finished artifact is published.
        memory_monitor: Decides when the training split is subsampled.
        sampling_ratio: Share of training rows kept under memory pressure.
        preparation_options: Keyword overrides for ``prepare_training_data``
            (vocabulary cap, spill threshold, gc intervals, label percentile).
    """

    def __init__(
        self,
        registry: ArtifactRegistry,
        resolver: HyperparameterResolver | None = None,
        factory: ClassifierFactory | None = None,
        grid_search: GridSearchEngine | None = None,
        importance: FeatureImportanceCalculator | None = None,
        memory_monitor: MemoryMonitor | None = None,
        sampling_ratio: float = SAMPLING_RATIO,
        preparation_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.registry = registry
        self.resolver = resolver or HyperparameterResolver()
        self.factory = factory or ClassifierFactory()
        self.grid_search = grid_search or GridSearchEngine(self.factory, self.resolver)
        self.importance = importance or FeatureImportanceCalculator()
        self.memory_monitor = memory_monitor or MemoryMonitor()
        self.sampling_ratio = sampling_ratio
        self.preparation_options = dict(preparation_options or {})

    def train(
        self,
        rows: Iterable[Mapping[str, Any]],
        column_map: ColumnMap,
        hyperparameters: Mapping[str, Any] | None = None,
        *,
        model_key: str,
        progress: ProgressCallback | None = None,
    ) -> TrainingResult:
        progress = progress or _noop_progress

        progress(10, "Analysing dataset schema")
        params = self.resolver.resolve(hyperparameters)
        logger.info("Training %s model %r", params["model_type"], model_key)

        prepared = prepare_training_data(rows, column_map, **self.preparation_options)
        with prepared.buffer as buffer:
            if len(buffer) == 0:
                raise EmptyDatasetError("Dataset does not contain any usable rows.")
            generated_labels = buffer.generated_labels
            progress(30, "Buffered dataset rows for streaming")

            split = split_dataset(buffer, params["validation_split"])
        gc.collect()
        progress(40, "Computed training splits and statistics")

        train_x, train_y = split.train_samples, split.train_labels
        if self.memory_monitor.under_pressure():
            before = len(train_y)
            train_x, train_y = subsample(train_x, train_y, self.sampling_ratio, params["random_state"])
            self.memory_monitor.collect("subsampling")
            logger.warning("Memory pressure: subsampled training rows %d -> %d", before, len(train_y))

        if len(np.unique(train_y)) < 2:
            raise EmptyDatasetError(
                "Training split contains a single class; at least one positive and one negative row are required."
            )

        progress(50, "Running cross validation grid search")
        search = self.grid_search.search(train_x, train_y, params)
        best = dict(search.best_hyperparameters)
        final_params = {**params, **best}
        final_params.pop("search_grid", None)

        imputer = FittedImputer(params["imputation_strategy"]).fit(train_x)
        normalizer = SampleNormalizer(params["normalization"])
        X_train = normalize_safely(normalizer, standardize(imputer.transform(train_x), split.means, split.std_devs))
        X_val = normalize_safely(
            normalizer, standardize(imputer.transform(split.validation_samples), split.means, split.std_devs)
        )

        progress(62, "Training selected algorithm")
        classifier = self.factory.create(params["model_type"], best, params)
        fit_classifier(classifier, X_train, train_y)

        progress(75, "Evaluating validation dataset")
        predicted = classifier.predict(X_val)
        scores = positive_scores(classifier, X_val)
        metrics = evaluate_predictions(split.validation_labels, predicted, scores)
        logger.info(
            "Validation: accuracy=%.4f macro_f1=%.4f auc=%.4f",
            metrics["accuracy"],
            metrics["macro"]["f1"],
            metrics["auc"],
        )

        progress(82, "Computing feature importances")
        importances = self.importance.calculate(X_train, train_y, prepared.feature_names)

        progress(87, "Persisting trained model")
        artifact = self.registry.put(
            model_key,
            {
                "trained_at": datetime.now(timezone.utc).isoformat(),
                "model_type": params["model_type"],
                "feature_names": list(prepared.feature_names),
                "feature_means": [float(v) for v in split.means],
                "feature_std_devs": [float(v) for v in split.std_devs],
                "imputer": imputer.to_config(),
                "categories": prepared.categories,
                "category_overflowed": prepared.category_overflowed,
                "hyperparameters": final_params,
                "metrics": metrics,
                "grid_search": search.to_metrics(),
                "normalization": normalizer.to_config(),
                "feature_importances": importances,
                "generated_labels": generated_labels,
                "synthetic_risk": prepared.synthetic_risk_used,
            },
            classifier,
        )

        progress(92, "Recording training metadata")
        del X_train, X_val, split
        gc.collect()
        progress(100, "Training complete")

        return TrainingResult(
            artifact=artifact,
            metrics=metrics,
            grid_search=search,
            hyperparameters=final_params,
        )
