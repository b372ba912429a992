"""
Training artifacts and the on-disk artifact registry.

An artifact is everything scoring needs besides the estimator itself:
feature layout, standardisation statistics, the fitted imputer, the
normalisation type, the frozen category vocabulary and the training-time
feature importances. It is written once at the end of a successful training
run and never modified; a later run supersedes it with a new version.

Layout under the registry root:

    <model_key>/<version>.joblib   fitted scikit-learn estimator (joblib)
    <model_key>/<version>.json     artifact metadata, written last
    <model_key>/ACTIVE             version selected for scoring

Both files are written under a temporary name and moved into place with
os.replace, the JSON after the model file, so a reader never sees an
artifact whose model file is missing. A failed run therefore leaves the
previous artifact untouched and active.

``latest`` follows the ACTIVE pointer. When the pointer is missing or
dangling it scans the directory for the newest valid version; that scan is
a recovery path and is logged as such. ``rollback`` re-points ACTIVE at an
older version.

Usage:

    registry = ArtifactRegistry("models")
    artifact = registry.put("burglary", fields, classifier)
    artifact = registry.latest("burglary")
    classifier = registry.load_classifier(artifact)
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import joblib

from risk_heatmap.errors import ArtifactError

logger = logging.getLogger(__name__)

ACTIVE_POINTER = "ACTIVE"
_VERSION = re.compile(r"^\d{20}$")
_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class TrainingArtifact:
    """Immutable metadata of one completed training run."""

    feature_names: list[str]
    feature_means: list[float]
    feature_std_devs: list[float]
    categories: list[str]
    model_file: str
    normalization: dict[str, Any] = field(default_factory=lambda: {"type": "l2"})
    imputer: dict[str, Any] = field(default_factory=lambda: {"strategy": "mean", "statistics": []})
    feature_importances: list[dict[str, Any]] = field(default_factory=list)
    model_key: str = ""
    version: str = ""
    trained_at: str = ""
    model_type: str = "logistic_regression"
    category_overflowed: bool = False
    hyperparameters: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    grid_search: dict[str, Any] = field(default_factory=dict)
    generated_labels: bool = False
    synthetic_risk: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            ArtifactError: If a required field is missing or inconsistent.
        """
        names = self.feature_names
        if not isinstance(names, list) or not names:
            raise ArtifactError("Artifact has no feature names.")
        for label, values in (("feature means", self.feature_means), ("feature std devs", self.feature_std_devs)):
            if not isinstance(values, list) or not values or not all(_is_number(v) for v in values):
                raise ArtifactError(f"Artifact {label} must be a non-empty list of numbers.")
            if len(values) != len(names):
                raise ArtifactError(
                    f"Artifact {label} cover {len(values)} features, expected {len(names)}."
                )
        if not isinstance(self.model_file, str) or not self.model_file:
            raise ArtifactError("Artifact does not reference a model file.")
        if not isinstance(self.categories, list):
            raise ArtifactError("Artifact categories must be a list.")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrainingArtifact":
        if not isinstance(data, Mapping):
            raise ArtifactError("Artifact metadata is not an object.")
        known = {name for name in cls.__dataclass_fields__}
        missing = [k for k in ("feature_names", "feature_means", "feature_std_devs", "categories", "model_file") if k not in data]
        if missing:
            raise ArtifactError(f"Artifact is missing required fields: {', '.join(missing)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def width(self) -> int:
        return len(self.feature_names)


def new_version(now: datetime | None = None) -> str:
    """Sortable version string with microsecond resolution: ``YYYYmmddHHMMSSffffff``."""
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S%f")


def _atomic_write_bytes(path: Path, payload: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ArtifactRegistry:
    """put / get / latest / rollback over a directory of versioned artifacts."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _dir(self, model_key: str) -> Path:
        if not _KEY.match(model_key):
            raise ArtifactError(f"Invalid model key: {model_key!r}")
        return self.root / model_key

    def versions(self, model_key: str) -> list[str]:
        """Every published version of a model, oldest first."""
        directory = self._dir(model_key)
        if not directory.is_dir():
            return []
        return sorted(p.stem for p in directory.glob("*.json") if _VERSION.match(p.stem))

    def put(
        self,
        model_key: str,
        fields: Mapping[str, Any],
        classifier: Any,
        activate: bool = True,
    ) -> TrainingArtifact:
        """
        Publish a new artifact version.

        Args:
            model_key: Logical model identity (one directory per key).
            fields: Artifact fields except model_key, version, model_file.
            classifier: The fitted estimator, persisted with joblib.
            activate: Point ACTIVE at the new version once it is complete.
        """
        directory = self._dir(model_key)
        directory.mkdir(parents=True, exist_ok=True)

        now = datetime.now(timezone.utc)
        version = new_version(now)
        while (directory / f"{version}.json").exists():
            version = str(int(version) + 1)

        model_file = f"{model_key}/{version}.joblib"
        data = dict(fields)
        data.setdefault("trained_at", now.isoformat())
        data.update(model_key=model_key, version=version, model_file=model_file)
        artifact = TrainingArtifact.from_dict(data)

        model_path = self.root / model_file
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{version}.", suffix=".tmp")
        os.close(fd)
        try:
            joblib.dump(classifier, tmp)
            os.replace(tmp, model_path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        payload = json.dumps(artifact.to_dict(), indent=2, default=_json_default).encode("utf-8")
        _atomic_write_bytes(directory / f"{version}.json", payload)
        if activate:
            self.activate(model_key, version)

        logger.info("Published artifact %s/%s (%d features)", model_key, version, artifact.width)
        return artifact

    def get(self, model_key: str, version: str) -> TrainingArtifact:
        path = self._dir(model_key) / f"{version}.json"
        if not path.exists():
            raise ArtifactError(f"Model artifact not found: {model_key}/{version}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ArtifactError(f"Model artifact {model_key}/{version} is not valid JSON.") from exc
        return TrainingArtifact.from_dict(data)

    def active_version(self, model_key: str) -> str | None:
        pointer = self._dir(model_key) / ACTIVE_POINTER
        if not pointer.exists():
            return None
        version = pointer.read_text(encoding="utf-8").strip()
        return version or None

    def activate(self, model_key: str, version: str) -> None:
        directory = self._dir(model_key)
        if not (directory / f"{version}.json").exists():
            raise ArtifactError(f"Model artifact not found: {model_key}/{version}")
        _atomic_write_bytes(directory / ACTIVE_POINTER, version.encode("utf-8"))

    def rollback(self, model_key: str, version: str) -> TrainingArtifact:
        """Re-select an older version for scoring. The newer versions are kept."""
        artifact = self.get(model_key, version)
        self.activate(model_key, version)
        logger.info("Rolled back %s to version %s", model_key, version)
        return artifact

    def latest(self, model_key: str) -> TrainingArtifact:
        """
        The artifact currently selected for scoring.

        Raises:
            ArtifactError: If no valid artifact has been published for the key.
        """
        version = self.active_version(model_key)
        if version is not None:
            try:
                return self.get(model_key, version)
            except ArtifactError as exc:
                logger.warning("Active artifact %s/%s unusable: %s", model_key, version, exc)

        for candidate in reversed(self.versions(model_key)):
            try:
                artifact = self.get(model_key, candidate)
            except ArtifactError as exc:
                logger.warning("Skipping artifact %s/%s: %s", model_key, candidate, exc)
                continue
            logger.warning("No active pointer for %s, recovered newest version %s from disk", model_key, candidate)
            return artifact

        raise ArtifactError(f"No trained model artifact found for {model_key!r}.")

    def load_classifier(self, artifact: TrainingArtifact) -> Any:
        path = self.root / artifact.model_file
        if not path.exists():
            raise ArtifactError("Model file referenced by the artifact was not found.")
        return joblib.load(path)


def _json_default(value: Any) -> Any:
    # numpy scalars and arrays
    if hasattr(value, "tolist"):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
