"""Forecast model registry.

Every model follows the same small contract used by grid search and the AI
optimizer:

* ``train(values)`` fits internal state on a 1-D history,
* ``predict(periods)`` returns ``periods`` future points,
* ``validate(actual)`` predicts ``len(actual)`` points and scores them.

Models raise ``ModelFitError`` for insufficient history or numerically
unusable output so callers can treat the configuration as a losing candidate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from .errors import ModelFitError, JobValidationError

FREQUENCY_SEASONAL_PERIODS = {
    "daily": 7,
    "weekly": 52,
    "monthly": 12,
    "quarterly": 4,
    "yearly": 1,
}
DEFAULT_SEASONAL_PERIOD = 12


def seasonal_period_for(frequency: Optional[str]) -> int:
    return FREQUENCY_SEASONAL_PERIODS.get((frequency or "").lower(), DEFAULT_SEASONAL_PERIOD)


def forecast_metrics(actual: Sequence[float], predicted: Sequence[float]) -> Dict[str, float]:
    """Return MAPE (percent, non-zero actuals only), RMSE, MAE and accuracy."""

    y = np.asarray(actual, dtype=float)
    yhat = np.asarray(predicted, dtype=float)
    if y.size == 0:
        raise ModelFitError("validation slice is empty")
    if y.shape != yhat.shape:
        raise ModelFitError("prediction length does not match validation slice")
    errors = y - yhat
    nonzero = y != 0
    mape = float(np.mean(np.abs(errors[nonzero] / y[nonzero])) * 100.0) if nonzero.any() else 0.0
    rmse = float(np.sqrt(np.mean(errors ** 2)))
    mae = float(np.mean(np.abs(errors)))
    return {
        "mape": mape,
        "rmse": rmse,
        "mae": mae,
        "accuracy": max(0.0, 100.0 - mape),
    }


class ForecastModel:
    """Base class; subclasses implement ``_fit`` and ``_forecast``."""

    min_observations = 2

    def __init__(self, parameters: Optional[Mapping[str, Any]] = None, seasonal_period: int = DEFAULT_SEASONAL_PERIOD):
        self.parameters: Dict[str, Any] = dict(parameters or {})
        self.seasonal_period = max(1, int(seasonal_period))
        self.trained = False

    def required_observations(self) -> int:
        return self.min_observations

    def train(self, values: Sequence[float]) -> "ForecastModel":
        history = np.asarray(values, dtype=float)
        needed = self.required_observations()
        if history.ndim != 1 or history.size < needed:
            raise ModelFitError(
                f"{type(self).__name__} needs at least {needed} observations",
                {"observations": int(history.size), "required": needed},
            )
        if not np.all(np.isfinite(history)):
            raise ModelFitError("history contains non-finite values")
        self._fit(history)
        self.trained = True
        return self

    def predict(self, periods: int) -> np.ndarray:
        if not self.trained:
            raise ModelFitError("model must be trained before predicting")
        forecast = np.asarray(self._forecast(int(periods)), dtype=float)
        if not np.all(np.isfinite(forecast)):
            raise ModelFitError("model produced non-finite predictions", {"parameters": self.parameters})
        return forecast

    def validate(self, actual: Sequence[float]) -> Dict[str, Any]:
        predictions = self.predict(len(actual))
        metrics = forecast_metrics(actual, predictions)
        metrics["predictions"] = predictions.tolist()
        return metrics

    def _fit(self, history: np.ndarray) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _forecast(self, periods: int) -> np.ndarray:  # pragma: no cover - abstract
        raise NotImplementedError


def _window(parameters: Mapping[str, Any], default: int = 3) -> int:
    try:
        value = int(parameters.get("window", default))
    except (TypeError, ValueError) as exc:
        raise ModelFitError("window must be an integer") from exc
    if value < 1:
        raise ModelFitError("window must be positive")
    return value


def _smoothing(parameters: Mapping[str, Any], name: str, default: float) -> float:
    try:
        value = float(parameters.get(name, default))
    except (TypeError, ValueError) as exc:
        raise ModelFitError(f"{name} must be a number") from exc
    if not 0.0 < value <= 1.0:
        raise ModelFitError(f"{name} must be in (0, 1]", {name: value})
    return value


class MovingAverage(ForecastModel):
    def required_observations(self) -> int:
        return max(self.min_observations, _window(self.parameters))

    def _fit(self, history: np.ndarray) -> None:
        self._history = history.copy()

    def _forecast(self, periods: int) -> np.ndarray:
        window = _window(self.parameters)
        buffer = list(self._history)
        out = []
        for _ in range(periods):
            value = float(np.mean(buffer[-window:]))
            out.append(value)
            buffer.append(value)
        return np.asarray(out)


class SimpleExponentialSmoothing(ForecastModel):
    def _fit(self, history: np.ndarray) -> None:
        alpha = _smoothing(self.parameters, "alpha", 0.3)
        level = history[0]
        for value in history[1:]:
            level = alpha * value + (1 - alpha) * level
        self._level = level

    def _forecast(self, periods: int) -> np.ndarray:
        return np.full(periods, self._level, dtype=float)


class HoltLinearTrend(ForecastModel):
    def _fit(self, history: np.ndarray) -> None:
        alpha = _smoothing(self.parameters, "alpha", 0.3)
        beta = _smoothing(self.parameters, "beta", 0.1)
        level = history[0]
        trend = history[1] - history[0]
        for value in history[1:]:
            prev_level = level
            level = alpha * value + (1 - alpha) * (prev_level + trend)
            trend = beta * (level - prev_level) + (1 - beta) * trend
        self._level, self._trend = level, trend

    def _forecast(self, periods: int) -> np.ndarray:
        steps = np.arange(1, periods + 1, dtype=float)
        return self._level + steps * self._trend


class HoltWinters(ForecastModel):
    def required_observations(self) -> int:
        return self.seasonal_period * 2

    def _fit(self, history: np.ndarray) -> None:
        alpha = _smoothing(self.parameters, "alpha", 0.3)
        beta = _smoothing(self.parameters, "beta", 0.1)
        gamma = _smoothing(self.parameters, "gamma", 0.1)
        kind = str(self.parameters.get("type", "additive"))
        if kind not in ("additive", "multiplicative"):
            raise ModelFitError("type must be additive or multiplicative", {"type": kind})
        multiplicative = kind == "multiplicative"
        if multiplicative and np.any(history <= 0):
            raise ModelFitError("multiplicative seasonality requires positive values")

        m = self.seasonal_period
        seasons = history.size // m
        blocks = history[: seasons * m].reshape(seasons, m)
        block_means = blocks.mean(axis=1, keepdims=True)
        if multiplicative:
            seasonal = (blocks / block_means).mean(axis=0)
        else:
            seasonal = (blocks - block_means).mean(axis=0)

        level = float(history[:m].mean())
        trend = float((history[m : 2 * m] - history[:m]).sum() / (m * m))
        for i in range(m, history.size):
            idx = i % m
            prev_level = level
            if multiplicative:
                level = alpha * (history[i] / seasonal[idx]) + (1 - alpha) * (prev_level + trend)
                trend = beta * (level - prev_level) + (1 - beta) * trend
                seasonal[idx] = gamma * (history[i] / level) + (1 - gamma) * seasonal[idx]
            else:
                level = alpha * (history[i] - seasonal[idx]) + (1 - alpha) * (prev_level + trend)
                trend = beta * (level - prev_level) + (1 - beta) * trend
                seasonal[idx] = gamma * (history[i] - level) + (1 - gamma) * seasonal[idx]
        self._level, self._trend, self._seasonal = level, trend, seasonal
        self._multiplicative = multiplicative
        self._offset = history.size

    def _forecast(self, periods: int) -> np.ndarray:
        m = self.seasonal_period
        out = np.empty(periods, dtype=float)
        for h in range(1, periods + 1):
            season = self._seasonal[(self._offset + h - 1) % m]
            base = self._level + h * self._trend
            out[h - 1] = base * season if self._multiplicative else base + season
        return np.clip(out, 0.0, None)


class SeasonalMovingAverage(ForecastModel):
    def required_observations(self) -> int:
        return max(self.seasonal_period, _window(self.parameters))

    def _fit(self, history: np.ndarray) -> None:
        m = self.seasonal_period
        sums = np.zeros(m)
        counts = np.zeros(m)
        for i, value in enumerate(history):
            sums[i % m] += value
            counts[i % m] += 1
        averages = sums / counts
        overall = averages.mean()
        if overall == 0:
            raise ModelFitError("seasonal indices undefined for an all-zero history")
        self._indices = averages / overall
        if np.any(self._indices == 0):
            raise ModelFitError("seasonal index of zero cannot be de-seasonalized")
        self._history = history.copy()

    def _forecast(self, periods: int) -> np.ndarray:
        m = self.seasonal_period
        window = _window(self.parameters)
        n = self._history.size
        buffer = list(self._history / self._indices[np.arange(n) % m])
        out = np.empty(periods, dtype=float)
        for i in range(periods):
            value = float(np.mean(buffer[-window:]))
            buffer.append(value)
            out[i] = value * self._indices[(n + i) % m]
        return out


class SeasonalNaive(ForecastModel):
    def required_observations(self) -> int:
        return self.seasonal_period

    def _fit(self, history: np.ndarray) -> None:
        self._last_season = history[-self.seasonal_period :].copy()

    def _forecast(self, periods: int) -> np.ndarray:
        return np.resize(self._last_season, periods)


class LinearTrend(ForecastModel):
    def _fit(self, history: np.ndarray) -> None:
        x = np.arange(history.size, dtype=float)
        self._slope, self._intercept = np.polyfit(x, history, 1)
        self._n = history.size

    def _forecast(self, periods: int) -> np.ndarray:
        x = np.arange(self._n, self._n + periods, dtype=float)
        return np.clip(self._slope * x + self._intercept, 0.0, None)


_ALPHAS = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9]
_HW_RATES = [0.1, 0.2, 0.3, 0.4, 0.5]


@dataclass(frozen=True)
class ModelSpec:
    id: str
    display_name: str
    category: str
    description: str
    is_seasonal: bool
    model_class: Callable[..., ForecastModel]
    default_parameters: Dict[str, Any] = field(default_factory=dict)
    optimization_parameters: Dict[str, List[Any]] = field(default_factory=dict)

    @property
    def grid_eligible(self) -> bool:
        return any(len(values) > 0 for values in self.optimization_parameters.values())

    def create(self, parameters: Optional[Mapping[str, Any]] = None, seasonal_period: int = DEFAULT_SEASONAL_PERIOD) -> ForecastModel:
        merged = dict(self.default_parameters)
        merged.update(parameters or {})
        return self.model_class(merged, seasonal_period=seasonal_period)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "category": self.category,
            "description": self.description,
            "isSeasonal": self.is_seasonal,
            "defaultParameters": dict(self.default_parameters),
            "optimizationParameters": {k: list(v) for k, v in self.optimization_parameters.items()},
            "gridEligible": self.grid_eligible,
        }


MODEL_SPECS: List[ModelSpec] = [
    ModelSpec(
        id="moving_average",
        display_name="Simple Moving Average",
        category="Basic Statistical",
        description="Average of the most recent window of observations.",
        is_seasonal=False,
        model_class=MovingAverage,
        default_parameters={"window": 3},
        optimization_parameters={"window": [2, 3, 4, 5, 6, 7, 8, 9, 10]},
    ),
    ModelSpec(
        id="simple_exponential_smoothing",
        display_name="Simple Exponential Smoothing",
        category="Exponential Smoothing",
        description="Exponentially weighted level without trend or seasonality.",
        is_seasonal=False,
        model_class=SimpleExponentialSmoothing,
        default_parameters={"alpha": 0.3},
        optimization_parameters={"alpha": list(_ALPHAS)},
    ),
    ModelSpec(
        id="holt_linear_trend",
        display_name="Holt's Linear Trend",
        category="Exponential Smoothing",
        description="Double exponential smoothing of level and trend.",
        is_seasonal=False,
        model_class=HoltLinearTrend,
        default_parameters={"alpha": 0.3, "beta": 0.1},
        optimization_parameters={
            "alpha": list(_ALPHAS),
            "beta": [0.05, 0.1, 0.15, 0.2, 0.25, 0.3, 0.35, 0.4],
        },
    ),
    ModelSpec(
        id="holt_winters",
        display_name="Holt-Winters",
        category="Exponential Smoothing",
        description="Triple exponential smoothing with additive or multiplicative seasonality.",
        is_seasonal=True,
        model_class=HoltWinters,
        default_parameters={"alpha": 0.3, "beta": 0.1, "gamma": 0.1, "type": "additive"},
        optimization_parameters={
            "alpha": list(_HW_RATES),
            "beta": list(_HW_RATES),
            "gamma": list(_HW_RATES),
            "type": ["additive", "multiplicative"],
        },
    ),
    ModelSpec(
        id="seasonal_moving_average",
        display_name="Seasonal Moving Average",
        category="Seasonal",
        description="Moving average over de-seasonalized history, re-seasonalized on output.",
        is_seasonal=True,
        model_class=SeasonalMovingAverage,
        default_parameters={"window": 3},
        optimization_parameters={"window": [2, 3, 4, 5, 6, 7, 8, 9, 10]},
    ),
    ModelSpec(
        id="seasonal_naive",
        display_name="Seasonal Naive",
        category="Seasonal",
        description="Repeats the last observed season.",
        is_seasonal=True,
        model_class=SeasonalNaive,
    ),
    ModelSpec(
        id="linear_trend",
        display_name="Linear Trend",
        category="Trend",
        description="Least-squares straight line through the history.",
        is_seasonal=False,
        model_class=LinearTrend,
    ),
]

_REGISTRY: Dict[str, ModelSpec] = {spec.id: spec for spec in MODEL_SPECS}


def register_model(spec: ModelSpec) -> None:
    _REGISTRY[spec.id] = spec


def unregister_model(model_id: str) -> None:
    _REGISTRY.pop(model_id, None)


def has_model(model_id: str) -> bool:
    return model_id in _REGISTRY


def get_model_spec(model_id: str) -> ModelSpec:
    spec = _REGISTRY.get(model_id)
    if spec is None:
        raise JobValidationError(f"unknown model: {model_id}", {"modelId": model_id})
    return spec


def list_model_specs() -> List[ModelSpec]:
    return list(_REGISTRY.values())
