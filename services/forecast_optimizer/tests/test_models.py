import math

import numpy as np
import pytest

from services.forecast_optimizer.app.errors import JobValidationError, ModelFitError
from services.forecast_optimizer.app.models import (
    ForecastModel,
    ModelSpec,
    forecast_metrics,
    get_model_spec,
    has_model,
    list_model_specs,
    register_model,
    seasonal_period_for,
    unregister_model,
)


def seasonal_series(periods=36, season=12):
    t = np.arange(periods)
    return list(100 + 2 * t + 10 * np.sin(2 * np.pi * t / season))


def test_forecast_metrics_skips_zero_actuals_for_mape():
    metrics = forecast_metrics([0, 10, 20], [1, 11, 18])
    assert metrics["mape"] == pytest.approx((0.1 + 0.1) / 2 * 100)
    assert metrics["mae"] == pytest.approx((1 + 1 + 2) / 3)
    assert metrics["rmse"] == pytest.approx(math.sqrt((1 + 1 + 4) / 3))
    assert metrics["accuracy"] == pytest.approx(90.0)


def test_accuracy_floors_at_zero():
    metrics = forecast_metrics([1, 1], [5, 5])
    assert metrics["mape"] == pytest.approx(400.0)
    assert metrics["accuracy"] == 0.0


@pytest.mark.parametrize(
    "frequency,expected",
    [("daily", 7), ("weekly", 52), ("monthly", 12), ("quarterly", 4), ("yearly", 1), (None, 12), ("hourly", 12)],
)
def test_seasonal_period_for(frequency, expected):
    assert seasonal_period_for(frequency) == expected


def test_grid_eligibility_follows_declared_ranges():
    eligibility = {spec.id: spec.grid_eligible for spec in list_model_specs()}
    assert eligibility["seasonal_naive"] is False
    assert eligibility["linear_trend"] is False
    assert eligibility["holt_winters"] is True
    assert eligibility["simple_exponential_smoothing"] is True


def test_unknown_model_raises_validation_error():
    with pytest.raises(JobValidationError):
        get_model_spec("arima_xl")


@pytest.mark.parametrize("spec", list_model_specs(), ids=lambda spec: spec.id)
def test_every_model_predicts_finite_values(spec):
    series = seasonal_series()
    model = spec.create(seasonal_period=12).train(series[:30])
    result = model.validate(series[30:])
    assert len(result["predictions"]) == 6
    assert all(math.isfinite(value) for value in result["predictions"])
    assert result["mae"] >= 0


def test_holt_winters_requires_two_seasons():
    model = get_model_spec("holt_winters").create(seasonal_period=12)
    with pytest.raises(ModelFitError):
        model.train(seasonal_series(periods=20))


def test_multiplicative_holt_winters_rejects_non_positive_history():
    model = get_model_spec("holt_winters").create({"type": "multiplicative"}, seasonal_period=4)
    with pytest.raises(ModelFitError):
        model.train([0, 1, 2, 3, 4, 5, 6, 7])


def test_predict_before_train_fails():
    model = get_model_spec("moving_average").create()
    with pytest.raises(ModelFitError):
        model.predict(3)


def test_moving_average_uses_latest_window():
    model = get_model_spec("moving_average").create({"window": 2}).train([1, 2, 3, 5])
    assert model.predict(1).tolist() == [4.0]


def test_seasonal_naive_repeats_last_season():
    model = get_model_spec("seasonal_naive").create(seasonal_period=3).train([1, 2, 3, 4, 5, 6])
    assert model.predict(5).tolist() == [4.0, 5.0, 6.0, 4.0, 5.0]


class LastValue(ForecastModel):
    def _fit(self, history):
        self._last = float(history[-1]) + float(self.parameters.get("offset", 0))

    def _forecast(self, periods):
        return np.full(periods, self._last)


def test_registered_models_are_listed_and_removable():
    spec = ModelSpec(
        id="last_value",
        display_name="Last Value",
        category="Baseline",
        description="Repeats the last observation.",
        is_seasonal=False,
        model_class=LastValue,
        default_parameters={"offset": 0},
        optimization_parameters={"offset": [0, 1]},
    )
    register_model(spec)
    try:
        assert has_model("last_value")
        assert get_model_spec("last_value").grid_eligible
        assert get_model_spec("last_value").create({"offset": 1}).train([3, 4]).predict(2).tolist() == [5.0, 5.0]
    finally:
        unregister_model("last_value")
    assert not has_model("last_value")
    assert "last_value" not in {s.id for s in list_model_specs()}
