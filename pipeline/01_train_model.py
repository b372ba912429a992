"""
01_train_model.py: Train a risk classifier and publish it as an artifact.

Streams the training CSV twice (analysis, then encoding), runs the
cross-validated grid search, trains the winning configuration and publishes
the artifact to the registry. The previously active artifact stays active
if anything fails.

Usage:
    python -m pipeline.01_train_model

Input:
    data/raw/training.csv              (configs/pipeline.yaml: data.training_csv)
Output:
    models/<model_key>/<version>.json  artifact metadata
    models/<model_key>/<version>.joblib fitted estimator
"""

from __future__ import annotations

import sys
import uuid
from pathlib import Path

_PROJECT_ROOT = Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from risk_heatmap.artifacts import ArtifactRegistry  # noqa: E402
from risk_heatmap.config import load_config  # noqa: E402
from risk_heatmap.data.columns import ColumnMap  # noqa: E402
from risk_heatmap.data.sources import CsvRowSource  # noqa: E402
from risk_heatmap.errors import RiskHeatmapError  # noqa: E402
from risk_heatmap.evaluation.importance import FeatureImportanceCalculator  # noqa: E402
from risk_heatmap.logging_utils import get_logger  # noqa: E402
from risk_heatmap.memory import MemoryMonitor  # noqa: E402
from risk_heatmap.runs import RunCoordinator  # noqa: E402
from risk_heatmap.training.classifiers import ClassifierFactory  # noqa: E402
from risk_heatmap.training.grid_search import GridSearchEngine  # noqa: E402
from risk_heatmap.training.hyperparameters import HyperparameterResolver  # noqa: E402
from risk_heatmap.training.trainer import ModelTrainer  # noqa: E402

_pipeline_cfg = load_config("pipeline")
logger = get_logger(__name__, level=_pipeline_cfg["logging"]["level"])
_cfg = load_config("model_training")
_prep_cfg = _cfg["preparation"]
_search_cfg = _cfg["grid_search"]

TRAINING_CSV: str = _pipeline_cfg["data"]["training_csv"]
CHUNK_SIZE: int = _pipeline_cfg["data"]["chunk_size"]
COLUMNS: dict = _pipeline_cfg["columns"]
REGISTRY_ROOT: str = _pipeline_cfg["registry"]["root"]
MODEL_KEY: str = _pipeline_cfg["registry"]["model_key"]

HYPERPARAMETERS: dict = _cfg["hyperparameters"]
PREPARATION_OPTIONS: dict = {
    "max_categories": _prep_cfg["max_categories"],
    "spill_threshold": _prep_cfg["spill_threshold_bytes"],
    "analysis_gc_interval": _prep_cfg["analysis_gc_interval"],
    "encoding_gc_interval": _prep_cfg["encoding_gc_interval"],
    "iteration_gc_interval": _prep_cfg["iteration_gc_interval"],
    "label_percentile": _prep_cfg["label_percentile"],
}


def _build_trainer(registry: ArtifactRegistry) -> ModelTrainer:
    resolver = HyperparameterResolver()
    factory = ClassifierFactory()
    return ModelTrainer(
        registry,
        resolver=resolver,
        factory=factory,
        grid_search=GridSearchEngine(
            factory,
            resolver,
            fold_gc_interval=_search_cfg["fold_gc_interval"],
            combination_gc_interval=_search_cfg["combination_gc_interval"],
            top_evaluations=_search_cfg["top_evaluations"],
        ),
        importance=FeatureImportanceCalculator(_cfg["importance"]["top_n"]),
        memory_monitor=MemoryMonitor(_cfg["memory"]["threshold_bytes"]),
        sampling_ratio=_cfg["memory"]["sampling_ratio"],
        preparation_options=PREPARATION_OPTIONS,
    )


def main() -> None:
    logger.info("Risk model training")

    training_csv = _PROJECT_ROOT / TRAINING_CSV
    if not training_csv.exists():
        logger.error("Training dataset not found: %s", training_csv)
        return

    column_map = ColumnMap.from_mapping(COLUMNS)
    source = CsvRowSource(training_csv, column_map, chunksize=CHUNK_SIZE)
    registry = ArtifactRegistry(_PROJECT_ROOT / REGISTRY_ROOT)
    trainer = _build_trainer(registry)

    run_id = f"training-{uuid.uuid4().hex[:12]}"
    coordinator = RunCoordinator()
    try:
        result = coordinator.execute(
            run_id,
            lambda progress: trainer.train(
                source, column_map, HYPERPARAMETERS, model_key=MODEL_KEY, progress=progress
            ),
        )
    except RiskHeatmapError:
        logger.error("Training failed: %s", coordinator.get(run_id).error_message)
        return

    logger.info(
        "Published %s/%s | accuracy=%.4f macro_f1=%.4f auc=%.4f",
        MODEL_KEY,
        result.artifact.version,
        result.metrics["accuracy"],
        result.metrics["macro"]["f1"],
        result.metrics["auc"],
    )
    for item in result.artifact.feature_importances:
        logger.info("  %-28s %.4f", item["name"], item["contribution"])


if __name__ == "__main__":
    main()
