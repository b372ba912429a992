"""
02_evaluate_model.py: Evaluate the active artifact on a labelled dataset.

The dataset is encoded with the vocabulary frozen in the artifact, so its
categories do not have to match the training data. Metrics are written next
to the artifact as <version>.evaluation.json.

Usage:
    python -m pipeline.02_evaluate_model

Input:
    data/raw/evaluation.csv            (configs/pipeline.yaml: data.evaluation_csv)
    models/<model_key>/ACTIVE
Output:
    models/<model_key>/<version>.evaluation.json
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

_PROJECT_ROOT = Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from risk_heatmap.artifacts import ArtifactRegistry  # noqa: E402
from risk_heatmap.config import load_config  # noqa: E402
from risk_heatmap.data.columns import ColumnMap  # noqa: E402
from risk_heatmap.data.sources import CsvRowSource  # noqa: E402
from risk_heatmap.errors import RiskHeatmapError  # noqa: E402
from risk_heatmap.evaluation.evaluator import ModelEvaluator  # noqa: E402
from risk_heatmap.logging_utils import get_logger  # noqa: E402
from risk_heatmap.runs import RunCoordinator  # noqa: E402

_pipeline_cfg = load_config("pipeline")
logger = get_logger(__name__, level=_pipeline_cfg["logging"]["level"])

EVALUATION_CSV: str = _pipeline_cfg["data"]["evaluation_csv"]
CHUNK_SIZE: int = _pipeline_cfg["data"]["chunk_size"]
COLUMNS: dict = _pipeline_cfg["columns"]
REGISTRY_ROOT: str = _pipeline_cfg["registry"]["root"]
MODEL_KEY: str = _pipeline_cfg["registry"]["model_key"]
SCORING_CHUNK_SIZE: int = load_config("prediction")["scoring"]["chunk_size"]


def main() -> None:
    logger.info("Risk model evaluation")

    evaluation_csv = _PROJECT_ROOT / EVALUATION_CSV
    if not evaluation_csv.exists():
        logger.error("Evaluation dataset not found: %s", evaluation_csv)
        return

    column_map = ColumnMap.from_mapping(COLUMNS)
    registry = ArtifactRegistry(_PROJECT_ROOT / REGISTRY_ROOT)
    evaluator = ModelEvaluator(registry, chunk_size=SCORING_CHUNK_SIZE)

    try:
        artifact = registry.latest(MODEL_KEY)
    except RiskHeatmapError as exc:
        logger.error("%s Run 01_train_model first.", exc)
        return

    run_id = f"evaluation-{MODEL_KEY}-{artifact.version}"
    coordinator = RunCoordinator()
    try:
        metrics = coordinator.execute(
            run_id,
            lambda progress: evaluator.evaluate(
                CsvRowSource(evaluation_csv, column_map, chunksize=CHUNK_SIZE),
                column_map,
                artifact=artifact,
                progress=progress,
            ),
        )
    except RiskHeatmapError:
        logger.error("Evaluation failed: %s", coordinator.get(run_id).error_message)
        return

    output_path = registry.root / MODEL_KEY / f"{artifact.version}.evaluation.json"
    output_path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")

    logger.info(
        "accuracy=%.4f | macro P/R/F1=%.4f/%.4f/%.4f | auc=%.4f",
        metrics["accuracy"],
        metrics["macro"]["precision"],
        metrics["macro"]["recall"],
        metrics["macro"]["f1"],
        metrics["auc"],
    )
    logger.info("Confusion matrix (labels %s): %s", metrics["labels"], metrics["confusion_matrix"])
    logger.info("Metrics written to %s", output_path)


if __name__ == "__main__":
    main()
