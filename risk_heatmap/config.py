"""
Config loader for the Risk Heatmap project.

All configuration lives in the configs/ directory as YAML files. The library
itself never reads them: every tunable is a keyword argument whose default
matches the shipped YAML value. The pipeline scripts load their settings
through this module and pass them in explicitly.

Usage:

    from risk_heatmap.config import load_config

    cfg = load_config("pipeline")
    registry_dir = cfg["registry"]["root"]

    training_cfg = load_config("model_training")
    folds = training_cfg["hyperparameters"]["cv_folds"]
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

# Resolve the configs/ directory relative to this file so the package works
# regardless of the working directory the caller uses.
_CONFIGS_DIR = Path(__file__).parent.parent / "configs"


def available_configs() -> list[str]:
    """Names of every YAML config shipped in configs/, sorted."""
    return sorted(p.stem for p in _CONFIGS_DIR.glob("*.yaml"))


def load_config(name: str) -> dict[str, Any]:
    """
    Load a named YAML config file from the configs/ directory.

    Args:
        name: Config file name without the .yaml extension.
              Valid options: "pipeline", "model_training", "prediction".

    Returns:
        The parsed YAML contents as a nested dictionary. An empty file
        yields an empty dictionary.

    Raises:
        FileNotFoundError: If configs/<name>.yaml does not exist.
        yaml.YAMLError: If the file contains invalid YAML.
    """
    path = _CONFIGS_DIR / f"{name}.yaml"
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            f"Expected one of: {available_configs()}"
        )
    with path.open(encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
