"""
Evaluate a published artifact against an external labelled dataset.

The dataset is encoded with the vocabulary frozen in the artifact and goes
through the artifact's own imputer, standardisation and normaliser, so the
classifier sees exactly the feature layout it was trained on.

Usage:

    evaluator = ModelEvaluator(ArtifactRegistry("models"))
    metrics = evaluator.evaluate(CsvRowSource(path, column_map), column_map, model_key="burglary")
"""

from __future__ import annotations

import gc
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import numpy as np

from risk_heatmap.artifacts import ArtifactRegistry, TrainingArtifact
from risk_heatmap.data.columns import ColumnMap
from risk_heatmap.errors import EmptyDatasetError
from risk_heatmap.evaluation.metrics import evaluate_predictions
from risk_heatmap.features.analysis import CategoryVocabulary
from risk_heatmap.features.preparation import prepare_evaluation_data
from risk_heatmap.prediction.probability import positive_scores
from risk_heatmap.prediction.scorer import SCORING_CHUNK_SIZE, ArtifactPreprocessor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, "str | None"], None]


def _noop_progress(percent: int, message: str | None = None) -> None:
    pass


class ModelEvaluator:
    def __init__(
        self,
        registry: ArtifactRegistry,
        chunk_size: int = SCORING_CHUNK_SIZE,
        preparation_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.registry = registry
        self.chunk_size = max(1, int(chunk_size))
        self.preparation_options = dict(preparation_options or {})

    def evaluate(
        self,
        rows: Iterable[Mapping[str, Any]],
        column_map: ColumnMap,
        *,
        model_key: str | None = None,
        version: str | None = None,
        artifact: TrainingArtifact | None = None,
        progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """
        Score a labelled dataset and report its metrics.

        The artifact is either given directly, pinned by ``model_key`` and
        ``version``, or the active one for ``model_key``.

        Raises:
            ArtifactError: Missing artifact or model file, or a feature
                vector that does not match the artifact width.
            EmptyDatasetError: No row of the dataset could be encoded.
        """
        progress = progress or _noop_progress

        progress(15, "Restoring trained model")
        if artifact is None:
            if model_key is None:
                raise ValueError("Either an artifact or a model_key is required.")
            artifact = self.registry.get(model_key, version) if version else self.registry.latest(model_key)
        classifier = self.registry.load_classifier(artifact)
        preprocessor = ArtifactPreprocessor(artifact)

        progress(35, "Preparing evaluation dataset")
        vocabulary = CategoryVocabulary.from_list(artifact.categories)
        prepared = prepare_evaluation_data(rows, column_map, vocabulary, **self.preparation_options)

        actual: list[int] = []
        predicted: list[Any] = []
        scores: list[float] = []

        with prepared.buffer as buffer:
            if len(buffer) == 0:
                raise EmptyDatasetError("No usable rows were found in the evaluation dataset.")
            progress(55, "Scoring evaluation dataset")

            samples: list[list[float]] = []
            for row in buffer:
                preprocessor.check_width(row.features)
                samples.append(row.features)
                actual.append(row.label)
                if len(samples) >= self.chunk_size:
                    self._score(classifier, preprocessor, samples, predicted, scores)
                    samples = []
            if samples:
                self._score(classifier, preprocessor, samples, predicted, scores)

        progress(85, "Computing evaluation metrics")
        metrics = evaluate_predictions(actual, predicted, scores)
        logger.info(
            "Evaluated %s/%s on %d rows: accuracy=%.4f auc=%.4f",
            artifact.model_key,
            artifact.version,
            len(actual),
            metrics["accuracy"],
            metrics["auc"],
        )
        gc.collect()
        progress(100, "Evaluation complete")
        return metrics

    @staticmethod
    def _score(
        classifier: Any,
        preprocessor: ArtifactPreprocessor,
        samples: list[list[float]],
        predicted: list[Any],
        scores: list[float],
    ) -> None:
        X = preprocessor.transform(np.asarray(samples, dtype=float))
        predicted.extend(v.item() if isinstance(v, np.generic) else v for v in classifier.predict(X))
        scores.extend(float(s) for s in positive_scores(classifier, X))
