"""
Exception taxonomy for the risk pipeline.

Malformed rows never raise: they are skipped during the streaming passes.
Everything else that can end a run has a dedicated type here so the run
coordinator and the pipeline scripts can tell fatal failures apart from the
locally recovered degenerate cases.
"""

from __future__ import annotations


class RiskHeatmapError(Exception):
    """Base class for every error raised deliberately by this package."""


class DatasetError(RiskHeatmapError):
    """The data source cannot be read or does not yield a trainable dataset."""


class EmptyDatasetError(DatasetError):
    """No usable rows (or only one class) remained after the preparation passes."""


class ArtifactError(RiskHeatmapError):
    """A training artifact is missing, incomplete or inconsistent with its inputs."""


class PredictionError(RiskHeatmapError):
    """Nothing could be scored, even after retrying without filters."""


class RunAlreadyActiveError(RiskHeatmapError):
    """A run with the same identity is already executing."""


class InsufficientSamplesError(RiskHeatmapError, ValueError):
    """
    A statistical transform was asked to work on too few samples.

    Subclasses ValueError so callers that already guard scikit-learn's
    ValueErrors treat it the same way.
    """
