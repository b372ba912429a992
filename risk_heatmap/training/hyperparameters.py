"""
Bounded hyperparameter resolution and search-grid expansion.

Every parameter has a default and a closed range. Resolution always clamps,
so the search space is finite and every training run terminates in bounded
time. Unknown model families and kernels fall back to the defaults
(logistic regression, rbf) rather than failing: hyperparameters are tuning
advice, never correctness-critical.

Usage:

    from risk_heatmap.training.hyperparameters import HyperparameterResolver

    resolver = HyperparameterResolver()
    params = resolver.resolve({"model_type": "knn", "k": 7})
    grid = resolver.generate_grid(params)    # [{"k": 3}, {"k": 5}, {"k": 7}]
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from sklearn.model_selection import ParameterGrid

from risk_heatmap.training.preprocessing import resolve_imputation, resolve_normalization

logger = logging.getLogger(__name__)

MODEL_TYPES = ("logistic_regression", "svc", "knn", "naive_bayes", "decision_tree", "mlp")
DEFAULT_MODEL_TYPE = "logistic_regression"
KERNELS = ("linear", "polynomial", "rbf", "sigmoid")
DEFAULT_KERNEL = "rbf"
DEFAULT_HIDDEN_LAYERS = [16]

# name: (default, minimum, maximum, type)
PARAMETER_BOUNDS: dict[str, tuple[Any, Any, Any, type]] = {
    "learning_rate": (0.3, 0.0001, 1.0, float),
    "iterations": (600, 100, 5000, int),
    "validation_split": (0.2, 0.1, 0.5, float),
    "l2_penalty": (0.01, 0.0, 10.0, float),
    "lambda": (0.0001, 0.0, 1.0, float),
    "cost": (1.0, 0.0001, 1000.0, float),
    "tolerance": (0.001, 1e-6, 0.1, float),
    "cache_size": (100.0, 1.0, 4096.0, float),
    "k": (5, 1, 21, int),
    "max_depth": (5, 2, 20, int),
    "min_samples_split": (2, 2, 20, int),
    "cv_folds": (3, 2, 10, int),
    "cv_validation_split": (0.25, 0.1, 0.5, float),
}
DEFAULT_LOG_INTERVAL = 200
DEFAULT_RANDOM_STATE = 42

# kernel: {option: (default, minimum, maximum, type)}
KERNEL_OPTION_BOUNDS: dict[str, dict[str, tuple[Any, Any, Any, type]]] = {
    "polynomial": {
        "degree": (3, 1, 10, int),
        "gamma": (1.0, 1e-4, 10.0, float),
        "coef0": (0.0, -10.0, 10.0, float),
    },
    "sigmoid": {
        "gamma": (0.5, 1e-4, 10.0, float),
        "coef0": (0.0, -10.0, 10.0, float),
    },
    "rbf": {
        "gamma": (0.5, 1e-4, 10.0, float),
    },
    "linear": {},
}

_TRUE = {"1", "true", "on", "yes"}
_FALSE = {"0", "false", "off", "no", ""}


def _coerce(value: Any, default: Any, kind: type) -> Any:
    if value is None or isinstance(value, bool):
        return default
    try:
        return kind(float(value)) if kind is int else kind(value)
    except (TypeError, ValueError):
        return default


def clamp_parameter(name: str, value: Any) -> Any:
    """Coerce and clamp one bounded parameter. Unbounded names pass through unchanged."""
    if name not in PARAMETER_BOUNDS:
        return value
    default, low, high, kind = PARAMETER_BOUNDS[name]
    return max(low, min(high, _coerce(value, default, kind)))


def normalize_boolean(value: Any, default: bool = True) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    return default


def resolve_kernel(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in KERNELS:
        return value.strip().lower()
    return DEFAULT_KERNEL


def resolve_kernel_options(kernel: str, options: Mapping[str, Any] | None) -> dict[str, Any]:
    """Clamp the options of one SVM kernel against its bound table, dropping unknown keys."""
    options = options if isinstance(options, Mapping) else {}
    bounds = KERNEL_OPTION_BOUNDS.get(kernel.lower(), {})
    resolved = {}
    for name, (default, low, high, kind) in bounds.items():
        resolved[name] = max(low, min(high, _coerce(options.get(name), default, kind)))
    return resolved


def resolve_hidden_layers(value: Any) -> list[int]:
    """Hidden-layer sizes from a list or a JSON string such as ``"[16, 8]"``."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return list(DEFAULT_HIDDEN_LAYERS)
    if isinstance(value, (list, tuple)) and value:
        try:
            return [max(1, int(v)) for v in value]
        except (TypeError, ValueError):
            pass
    return list(DEFAULT_HIDDEN_LAYERS)


def resolve_grid(grid: Any) -> dict[str, list[Any]]:
    """Keep string keys with at least one non-null value; scalars are wrapped in a list."""
    if not isinstance(grid, Mapping):
        return {}
    resolved = {}
    for key, values in grid.items():
        if not isinstance(key, str):
            continue
        if not isinstance(values, (list, tuple)):
            values = [values]
        values = [v for v in values if v is not None]
        if values:
            resolved[key] = values
    return resolved


def _unique(values: list[Any]) -> list[Any]:
    seen: list[Any] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


class HyperparameterResolver:
    """Validates, clamps and defaults hyperparameters, and expands search grids."""

    def resolve(self, raw: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """
        Resolve a raw (user supplied, JSON-compatible) mapping.

        Returns:
            A complete hyperparameter set: every bounded parameter clamped,
            model type / kernel / normalisation / imputation validated, and
            the user search grid (``grid`` or ``search_grid``) under
            ``search_grid``.
        """
        raw = dict(raw or {})
        model_type = raw.get("model_type")
        model_type = model_type.strip().lower() if isinstance(model_type, str) else DEFAULT_MODEL_TYPE
        if model_type not in MODEL_TYPES:
            logger.warning("Unknown model type %r, falling back to %s", raw.get("model_type"), DEFAULT_MODEL_TYPE)
            model_type = DEFAULT_MODEL_TYPE

        resolved: dict[str, Any] = {"model_type": model_type}
        for name in PARAMETER_BOUNDS:
            resolved[name] = clamp_parameter(name, raw.get(name))

        log_interval = _coerce(raw.get("log_interval"), DEFAULT_LOG_INTERVAL, int)
        resolved["log_interval"] = max(1, min(log_interval, resolved["iterations"]))
        resolved["normalization"] = resolve_normalization(raw.get("normalization"))
        resolved["imputation_strategy"] = resolve_imputation(raw.get("imputation_strategy"))
        resolved["shrinking"] = normalize_boolean(raw.get("shrinking", True))
        resolved["probability_estimates"] = normalize_boolean(raw.get("probability_estimates", True))
        resolved["kernel"] = resolve_kernel(raw.get("kernel"))
        resolved["kernel_options"] = resolve_kernel_options(resolved["kernel"], raw.get("kernel_options"))
        resolved["hidden_layers"] = resolve_hidden_layers(raw.get("hidden_layers", DEFAULT_HIDDEN_LAYERS))
        resolved["random_state"] = _coerce(raw.get("random_state"), DEFAULT_RANDOM_STATE, int)
        grid = raw.get("grid")
        resolved["search_grid"] = resolve_grid(grid if grid is not None else raw.get("search_grid"))
        return resolved

    def generate_grid(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        """
        Expand the search grid for a resolved hyperparameter set.

        A per-family default grid is overridden axis by axis by the user grid
        (values deduplicated and clamped), then expanded with scikit-learn's
        ``ParameterGrid``: keys sorted, last key varying fastest, so the
        first combination is the first value of every axis. The SVM family
        has its own axes, see ``_svc_grid``.
        """
        model_type = params["model_type"]
        user_grid = params.get("search_grid") or {}
        if model_type == "svc":
            return self._svc_grid(params, user_grid)

        if model_type == "knn":
            axes: dict[str, list[Any]] = {"k": [3, 5, max(1, int(params["k"]))]}
        elif model_type == "naive_bayes":
            axes = {}
        elif model_type == "decision_tree":
            axes = {
                "max_depth": [3, max(3, int(params["max_depth"]))],
                "min_samples_split": [2, max(2, int(params["min_samples_split"]))],
            }
        elif model_type == "mlp":
            axes = {
                "hidden_layers": [list(params["hidden_layers"]), [8], [16, 8]],
                "learning_rate": [0.05, float(params["learning_rate"])],
                "iterations": [300, int(params["iterations"])],
            }
        else:
            axes = {
                "learning_rate": [0.1, float(params["learning_rate"])],
                "iterations": [400, int(params["iterations"])],
                "l2_penalty": [0.0, float(params["l2_penalty"])],
            }

        for key, values in user_grid.items():
            if not isinstance(values, (list, tuple)) or not values:
                continue
            axes[key] = _unique([self._grid_value(key, v) for v in values])

        if not axes:
            return [{"iterations": params["iterations"]}]

        axes = {key: _unique([self._grid_value(key, v) for v in values]) for key, values in axes.items()}
        return list(ParameterGrid(axes))

    @staticmethod
    def _grid_value(key: str, value: Any) -> Any:
        if key == "hidden_layers":
            return resolve_hidden_layers(value)
        if key in PARAMETER_BOUNDS:
            return clamp_parameter(key, value)
        return value

    def _svc_grid(self, params: Mapping[str, Any], user_grid: Mapping[str, Any]) -> list[dict[str, Any]]:
        """
        SVM grid: cost x tolerance x cache size x shrinking x probability
        estimates x every distinct (kernel, kernel options) combination.
        """
        def numeric_axis(key: str, defaults: list[Any]) -> list[Any]:
            values = list(defaults) + list(user_grid.get(key, []))
            return _unique([clamp_parameter(key, v) for v in values])

        def boolean_axis(key: str) -> list[bool]:
            values = [params[key]] + list(user_grid.get(key, []))
            return _unique([normalize_boolean(v) for v in values]) or [True, False]

        costs = numeric_axis("cost", [0.5, 1.0, params["cost"]])
        tolerances = numeric_axis("tolerance", [0.0001, params["tolerance"], 0.01])
        cache_sizes = numeric_axis("cache_size", [50.0, params["cache_size"]])
        shrinking = boolean_axis("shrinking")
        probability = boolean_axis("probability_estimates")
        kernels = self._svc_kernel_combinations(params, user_grid)

        grid = ParameterGrid({
            "cost": costs,
            "tolerance": tolerances,
            "cache_size": cache_sizes,
            "shrinking": shrinking,
            "probability_estimates": probability,
            "kernel": kernels,
        })
        return [
            {
                **point,
                "kernel": point["kernel"]["kernel"],
                "kernel_options": dict(point["kernel"]["kernel_options"]),
            }
            for point in grid
        ]

    def _svc_kernel_combinations(self, params: Mapping[str, Any], user_grid: Mapping[str, Any]) -> list[dict[str, Any]]:
        default_kernel = resolve_kernel(params.get("kernel"))
        kernels = [default_kernel, "rbf", "linear"]
        kernels += [resolve_kernel(k) for k in user_grid.get("kernel", []) if isinstance(k, str)]

        options_by_kernel: dict[str, list[dict[str, Any]]] = {}
        for option in user_grid.get("kernel_options", []):
            if not isinstance(option, Mapping):
                continue
            kernel = resolve_kernel(option.get("kernel", option.get("type", default_kernel)))
            option_set = {k: v for k, v in option.items() if k not in ("kernel", "type")}
            options_by_kernel.setdefault(kernel, []).append(option_set)
            kernels.append(kernel)

        combinations: list[dict[str, Any]] = []
        seen: set[str] = set()
        for kernel in _unique(kernels):
            option_sets = options_by_kernel.get(kernel) or [
                params.get("kernel_options", {}) if kernel == default_kernel else {}
            ]
            for option_set in option_sets:
                options = resolve_kernel_options(kernel, option_set)
                key = f"{kernel}:{json.dumps(options, sort_keys=True)}"
                if key in seen:
                    continue
                seen.add(key)
                combinations.append({"kernel": kernel, "kernel_options": options})
        return combinations
