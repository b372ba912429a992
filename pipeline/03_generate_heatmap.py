"""
03_generate_heatmap.py: Score a dataset with the active artifact and write
the forecast payload (summary, heatmap grid, hotspots, top features).

Request parameters come from configs/prediction.yaml. If the radius/time
filter leaves no rows, the whole dataset is scored instead.

Usage:
    python -m pipeline.03_generate_heatmap

Input:
    data/raw/prediction.csv            (configs/pipeline.yaml: data.prediction_csv)
    models/<model_key>/ACTIVE
Output:
    data/predictions/<model_key>_<timestamp>.json
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

_PROJECT_ROOT = Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from risk_heatmap.artifacts import ArtifactRegistry  # noqa: E402
from risk_heatmap.config import load_config  # noqa: E402
from risk_heatmap.data.columns import ColumnMap  # noqa: E402
from risk_heatmap.data.sources import CsvRowSource  # noqa: E402
from risk_heatmap.errors import RiskHeatmapError  # noqa: E402
from risk_heatmap.logging_utils import get_logger  # noqa: E402
from risk_heatmap.prediction.forecast import generate_forecast  # noqa: E402
from risk_heatmap.runs import RunCoordinator  # noqa: E402

_pipeline_cfg = load_config("pipeline")
logger = get_logger(__name__, level=_pipeline_cfg["logging"]["level"])
_cfg = load_config("prediction")

PREDICTION_CSV: str = _pipeline_cfg["data"]["prediction_csv"]
CHUNK_SIZE: int = _pipeline_cfg["data"]["chunk_size"]
COLUMNS: dict = _pipeline_cfg["columns"]
REGISTRY_ROOT: str = _pipeline_cfg["registry"]["root"]
MODEL_KEY: str = _pipeline_cfg["registry"]["model_key"]
OUTPUT_DIR: str = _pipeline_cfg["output"]["prediction_dir"]
MAX_CATEGORIES: int = load_config("model_training")["preparation"]["max_categories"]

PARAMETERS: dict = {k: v for k, v in _cfg["parameters"].items() if v is not None}


def main() -> None:
    logger.info("Risk heatmap generation")

    prediction_csv = _PROJECT_ROOT / PREDICTION_CSV
    if not prediction_csv.exists():
        logger.error("Prediction dataset not found: %s", prediction_csv)
        return

    column_map = ColumnMap.from_mapping(COLUMNS)
    registry = ArtifactRegistry(_PROJECT_ROOT / REGISTRY_ROOT)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    run_id = f"prediction-{MODEL_KEY}-{stamp}"

    coordinator = RunCoordinator()
    try:
        payload = coordinator.execute(
            run_id,
            lambda progress: generate_forecast(
                registry,
                CsvRowSource(prediction_csv, column_map, chunksize=CHUNK_SIZE),
                column_map,
                PARAMETERS,
                model_key=MODEL_KEY,
                progress=progress,
                chunk_size=_cfg["scoring"]["chunk_size"],
                default_horizon_hours=_cfg["scoring"]["default_horizon_hours"],
                max_categories=MAX_CATEGORIES,
                grid_precision=_cfg["heatmap"]["grid_precision"],
                hotspot_count=_cfg["heatmap"]["hotspot_count"],
                top_features=_cfg["heatmap"]["top_features"],
                confidence=_cfg["confidence"],
            ),
        )
    except RiskHeatmapError:
        logger.error("Prediction failed: %s", coordinator.get(run_id).error_message)
        return

    output_path = _PROJECT_ROOT / OUTPUT_DIR / f"{MODEL_KEY}_{stamp}.json"
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")

    summary = payload["summary"]
    logger.info(
        "%d rows scored | mean=%.4f max=%.4f | confidence %s",
        summary["count"],
        summary["mean_score"],
        summary["max_score"],
        summary["confidence"],
    )
    for spot in payload["heatmap"]["hotspots"]:
        logger.info("  hotspot %-22s intensity=%.4f n=%d", spot["id"], spot["intensity"], spot["count"])
    logger.info("Forecast written to %s", output_path)


if __name__ == "__main__":
    main()
