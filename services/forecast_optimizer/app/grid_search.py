"""Exhaustive parameter search for a single model and series."""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .config import get_validation_ratio
from .errors import GridSearchError, ModelFitError
from .models import ModelSpec

ProgressCallback = Callable[[float], None]


@dataclass
class GridSearchResult:
    model_id: str
    parameters: Dict[str, Any]
    mape: Optional[float]
    rmse: Optional[float]
    mae: Optional[float]
    accuracy: Optional[float]
    candidates_evaluated: int
    candidates_total: int
    candidates_failed: int
    training_size: int
    validation_size: int
    searched: bool = True
    errors: List[str] = field(default_factory=list)

    def to_result(self) -> Dict[str, Any]:
        return {
            "parameters": dict(self.parameters),
            "mape": self.mape,
            "rmse": self.rmse,
            "mae": self.mae,
            "accuracy": self.accuracy,
            "candidatesEvaluated": self.candidates_evaluated,
            "candidatesTotal": self.candidates_total,
            "candidatesFailed": self.candidates_failed,
            "trainingDataSize": self.training_size,
            "validationDataSize": self.validation_size,
        }


def split_sizes(observations: int, validation_ratio: Optional[float] = None) -> Tuple[int, int]:
    """Training and validation lengths for a series of ``observations`` points."""

    ratio = get_validation_ratio() if validation_ratio is None else validation_ratio
    split = max(0, int(math.floor(observations * (1 - ratio))))
    return split, observations - split


def required_length(min_training: int, validation_ratio: Optional[float] = None) -> int:
    """Shortest series whose split leaves ``min_training`` points to train on."""

    ratio = get_validation_ratio() if validation_ratio is None else validation_ratio
    if not 0 < ratio < 1:
        raise ModelFitError("validation ratio must be between 0 and 1", {"validationRatio": ratio})
    observations = max(1, min_training)
    while True:
        training, validation = split_sizes(observations, ratio)
        if training >= min_training and validation >= 1:
            return observations
        observations += 1


def split_series(values: Sequence[float], validation_ratio: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Hold out the tail of the series for validation."""

    ratio = get_validation_ratio() if validation_ratio is None else validation_ratio
    series = np.asarray(values, dtype=float)
    split, _ = split_sizes(series.size, ratio)
    training, validation = series[:split], series[split:]
    if training.size == 0 or validation.size == 0:
        raise ModelFitError(
            "insufficient data for training and validation split",
            {"observations": int(series.size), "validationRatio": ratio},
        )
    return training, validation


def searchable_ranges(ranges: Mapping[str, Sequence[Any]]) -> Dict[str, List[Any]]:
    return {key: list(values) for key, values in ranges.items() if len(values) > 0}


def count_candidates(ranges: Mapping[str, Sequence[Any]]) -> int:
    if not ranges:
        return 0
    return math.prod(len(values) for values in ranges.values())


def parameter_grid(ranges: Mapping[str, Sequence[Any]]) -> Iterator[Dict[str, Any]]:
    keys = list(ranges)
    for combo in itertools.product(*(ranges[key] for key in keys)):
        yield dict(zip(keys, combo))


def evaluate_candidate(
    spec: ModelSpec,
    parameters: Mapping[str, Any],
    training: Sequence[float],
    validation: Sequence[float],
    seasonal_period: int,
) -> Dict[str, float]:
    model = spec.create(parameters, seasonal_period=seasonal_period)
    with np.errstate(all="ignore"):
        model.train(training)
        metrics = model.validate(validation)
    if not all(math.isfinite(metrics[key]) for key in ("mape", "rmse", "mae")):
        raise ModelFitError("non-finite validation metrics", {"parameters": dict(parameters)})
    return {key: float(metrics[key]) for key in ("mape", "rmse", "mae", "accuracy")}


def run_grid_search(
    spec: ModelSpec,
    values: Sequence[float],
    *,
    seasonal_period: int,
    validation_ratio: Optional[float] = None,
    ranges: Optional[Mapping[str, Sequence[Any]]] = None,
    progress: Optional[ProgressCallback] = None,
) -> GridSearchResult:
    """Evaluate every combination and keep the one with the lowest validation MAE.

    Ties keep the first candidate in enumeration order. A candidate that fails
    to fit counts as a loss; the search fails only when every candidate does.
    """

    training, validation = split_series(values, validation_ratio)
    space = searchable_ranges(spec.optimization_parameters if ranges is None else ranges)

    if not space:
        defaults = dict(spec.default_parameters)
        try:
            metrics: Dict[str, Optional[float]] = dict(
                evaluate_candidate(spec, defaults, training, validation, seasonal_period)
            )
        except Exception:
            metrics = {"mape": None, "rmse": None, "mae": None, "accuracy": None}
        if progress is not None:
            progress(1.0)
        return GridSearchResult(
            model_id=spec.id,
            parameters=defaults,
            candidates_evaluated=0,
            candidates_total=0,
            candidates_failed=0,
            training_size=int(training.size),
            validation_size=int(validation.size),
            searched=False,
            **metrics,
        )

    total = count_candidates(space)
    best_params: Optional[Dict[str, Any]] = None
    best_metrics: Optional[Dict[str, float]] = None
    failed = 0
    errors: List[str] = []
    evaluated = 0
    for evaluated, candidate in enumerate(parameter_grid(space), start=1):
        try:
            metrics = evaluate_candidate(spec, candidate, training, validation, seasonal_period)
        except Exception as exc:
            failed += 1
            if len(errors) < 5:
                errors.append(f"{type(exc).__name__}: {exc}")
        else:
            if best_metrics is None or metrics["mae"] < best_metrics["mae"]:
                best_params, best_metrics = candidate, metrics
        if progress is not None:
            progress(evaluated / total)

    if best_params is None or best_metrics is None:
        raise GridSearchError(
            f"all {total} candidates failed for {spec.id}",
            {"modelId": spec.id, "candidates": total, "errors": errors},
        )
    return GridSearchResult(
        model_id=spec.id,
        parameters=best_params,
        mape=best_metrics["mape"],
        rmse=best_metrics["rmse"],
        mae=best_metrics["mae"],
        accuracy=best_metrics["accuracy"],
        candidates_evaluated=evaluated,
        candidates_total=total,
        candidates_failed=failed,
        training_size=int(training.size),
        validation_size=int(validation.size),
        errors=errors,
    )
