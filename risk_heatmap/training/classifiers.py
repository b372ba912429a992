"""
Classifier factory: one resolved hyperparameter set -> one scikit-learn estimator.

Each model family has a single builder with an explicit parameter list.
Unknown families fall back to logistic regression, and unknown SVM kernels
to rbf.

    logistic_regression  SGDClassifier with log loss (gradient-descent logistic regression)
    svc                  SVC
    knn                  KNeighborsClassifier
    naive_bayes          GaussianNB
    decision_tree        DecisionTreeClassifier
    mlp                  MLPClassifier
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable, Mapping
from typing import Any

import numpy as np
from sklearn.base import ClassifierMixin
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import SGDClassifier
from sklearn.naive_bayes import GaussianNB
from sklearn.neighbors import KNeighborsClassifier
from sklearn.neural_network import MLPClassifier
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeClassifier

from risk_heatmap.training.hyperparameters import (
    DEFAULT_HIDDEN_LAYERS,
    DEFAULT_MODEL_TYPE,
    DEFAULT_RANDOM_STATE,
    normalize_boolean,
    resolve_hidden_layers,
    resolve_kernel,
    resolve_kernel_options,
)

logger = logging.getLogger(__name__)

_SKLEARN_KERNELS = {"linear": "linear", "polynomial": "poly", "rbf": "rbf", "sigmoid": "sigmoid"}


def _build_logistic(p: Mapping[str, Any]) -> ClassifierMixin:
    return SGDClassifier(
        loss="log_loss",
        penalty="l2",
        alpha=float(p.get("l2_penalty", 0.01)),
        learning_rate="constant",
        eta0=float(p.get("learning_rate", 0.3)),
        max_iter=int(p.get("iterations", 600)),
        tol=1e-3,
        random_state=p.get("random_state", DEFAULT_RANDOM_STATE),
    )


def _build_svc(p: Mapping[str, Any]) -> ClassifierMixin:
    kernel = resolve_kernel(p.get("kernel"))
    options = resolve_kernel_options(kernel, p.get("kernel_options"))
    return SVC(
        kernel=_SKLEARN_KERNELS[kernel],
        C=float(p.get("cost", 1.0)),
        degree=int(options.get("degree", 3)),
        gamma=float(options["gamma"]) if "gamma" in options else "scale",
        coef0=float(options.get("coef0", 0.0)),
        tol=float(p.get("tolerance", 0.001)),
        cache_size=float(p.get("cache_size", 100.0)),
        shrinking=normalize_boolean(p.get("shrinking", True)),
        probability=normalize_boolean(p.get("probability_estimates", True)),
        random_state=p.get("random_state", DEFAULT_RANDOM_STATE),
    )


def _build_knn(p: Mapping[str, Any]) -> ClassifierMixin:
    return KNeighborsClassifier(n_neighbors=max(1, int(p.get("k", 5))))


def _build_naive_bayes(p: Mapping[str, Any]) -> ClassifierMixin:
    return GaussianNB()


def _build_decision_tree(p: Mapping[str, Any]) -> ClassifierMixin:
    return DecisionTreeClassifier(
        max_depth=int(p.get("max_depth", 5)),
        min_samples_split=int(p.get("min_samples_split", 2)),
        random_state=p.get("random_state", DEFAULT_RANDOM_STATE),
    )


def _build_mlp(p: Mapping[str, Any]) -> ClassifierMixin:
    return MLPClassifier(
        hidden_layer_sizes=tuple(resolve_hidden_layers(p.get("hidden_layers", DEFAULT_HIDDEN_LAYERS))),
        learning_rate_init=float(p.get("learning_rate", 0.3)),
        max_iter=int(p.get("iterations", 600)),
        random_state=p.get("random_state", DEFAULT_RANDOM_STATE),
    )


class ClassifierFactory:
    """Builds an untrained estimator for a model family and parameter set."""

    builders: dict[str, Callable[[Mapping[str, Any]], ClassifierMixin]] = {
        "logistic_regression": _build_logistic,
        "svc": _build_svc,
        "knn": _build_knn,
        "naive_bayes": _build_naive_bayes,
        "decision_tree": _build_decision_tree,
        "mlp": _build_mlp,
    }

    def create(
        self,
        model_type: str,
        params: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> ClassifierMixin:
        """
        Args:
            model_type: One of the supported families; anything else builds
                logistic regression.
            params: Parameters for this particular candidate (e.g. a grid point).
            defaults: The resolved hyperparameter set filling any gap in ``params``.
        """
        merged = {**(defaults or {}), **params}
        builder = self.builders.get(model_type)
        if builder is None:
            logger.warning("No builder for model type %r, using %s", model_type, DEFAULT_MODEL_TYPE)
            builder = self.builders[DEFAULT_MODEL_TYPE]
        return builder(merged)


def fit_classifier(estimator: ClassifierMixin, samples: np.ndarray, labels: np.ndarray) -> ClassifierMixin:
    """
    Fit an estimator, shrinking k-NN's neighbour count to the sample count.

    Convergence warnings are silenced; iteration counts are capped by the
    resolver.
    """
    if isinstance(estimator, KNeighborsClassifier) and estimator.n_neighbors > len(samples):
        estimator.set_params(n_neighbors=max(1, len(samples)))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        estimator.fit(samples, labels)
    return estimator
