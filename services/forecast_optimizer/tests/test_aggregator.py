import io

import pandas as pd
import pytest

from services.forecast_optimizer.app.aggregator import (
    EXPORT_COLUMNS,
    best_results_per_model,
    export_frame,
    safe_metric,
    score_group,
)
from services.forecast_optimizer.app.fingerprint import DEFAULT_METRIC_WEIGHTS
from services.forecast_optimizer.app.models import list_model_specs


def job(job_id, model_id="holt_winters", method="grid", sku="X", batch="batch-1", **metrics):
    return {
        "id": job_id,
        "modelId": model_id,
        "method": method,
        "sku": sku,
        "batchId": batch,
        "datasetIdentifier": "dataset_1",
        "reason": "dataset_upload",
        "createdAt": "2024-01-01T00:00:00+00:00",
        "startedAt": "2024-01-01T00:00:01+00:00",
        "completedAt": "2024-01-01T00:00:04+00:00",
        "error": None,
        "result": {"parameters": {"alpha": 0.1 * job_id}, **metrics},
    }


def test_safe_metric_falls_back_for_missing_values():
    assert safe_metric(None, 7.0) == 7.0
    assert safe_metric(float("nan"), 7.0) == 7.0
    assert safe_metric(float("inf"), 7.0) == 7.0
    assert safe_metric("n/a", 7.0) == 7.0
    assert safe_metric("3.5", 7.0) == 3.5


def test_lower_errors_and_higher_accuracy_win():
    jobs = [
        job(1, mape=10, rmse=5, mae=3, accuracy=90),
        job(2, mape=30, rmse=15, mae=9, accuracy=60),
    ]
    first, second = score_group(jobs, DEFAULT_METRIC_WEIGHTS)
    assert first.composite_score > second.composite_score
    assert first.is_best and not second.is_best
    assert first.normalized["mape"] == pytest.approx(1 - 10 / 30)
    assert second.normalized["mape"] == pytest.approx(0.0)
    assert first.composite_score == pytest.approx(0.9 * (2 / 3) + 0.1 * 0.9)


def test_missing_metrics_score_as_worst():
    jobs = [
        job(1, mape=20, rmse=4, mae=2, accuracy=80),
        job(2, accuracy=None),
    ]
    first, second = score_group(jobs, DEFAULT_METRIC_WEIGHTS)
    assert second.metrics["mape"] == 20
    assert second.metrics["accuracy"] == 0.0
    assert second.composite_score == pytest.approx(0.0)
    assert first.is_best


def test_maxima_floor_at_one():
    (only,) = score_group([job(1, mape=0.5, rmse=0.5, mae=0.5, accuracy=99.5)], DEFAULT_METRIC_WEIGHTS)
    assert only.normalized["mape"] == pytest.approx(0.5)


def test_ties_keep_first_seen():
    jobs = [job(1, mape=5, rmse=5, mae=5, accuracy=95), job(2, mape=5, rmse=5, mae=5, accuracy=95)]
    first, second = score_group(jobs, DEFAULT_METRIC_WEIGHTS)
    assert first.is_best and not second.is_best


@pytest.mark.parametrize("bump", [1, 5, 20])
def test_raising_accuracy_never_lowers_relative_score(bump):
    base = [job(1, mape=10, rmse=5, mae=3, accuracy=70), job(2, mape=12, rmse=6, mae=4, accuracy=75)]
    improved = [job(1, mape=10, rmse=5, mae=3, accuracy=70 + bump), base[1]]
    before = score_group(base, DEFAULT_METRIC_WEIGHTS)
    after = score_group(improved, DEFAULT_METRIC_WEIGHTS)
    assert after[0].composite_score - after[1].composite_score >= before[0].composite_score - before[1].composite_score


def test_best_results_group_by_model_method_sku_batch():
    jobs = [
        job(1, mape=10, rmse=5, mae=3, accuracy=90),
        job(2, mape=30, rmse=15, mae=9, accuracy=60),
        job(3, method="ai", mape=8, rmse=4, mae=2, accuracy=92),
        job(4, batch="batch-2", mape=1, rmse=1, mae=1, accuracy=99),
    ]
    entries = best_results_per_model(jobs, DEFAULT_METRIC_WEIGHTS)
    real = [e for e in entries if e["methods"][0]["bestResult"]["status"] == "completed"]
    assert len(real) == 3
    grid_batch1 = next(e for e in real if e["batchId"] == "batch-1" and e["methods"][0]["method"] == "grid")
    assert grid_batch1["methods"][0]["bestResult"]["jobId"] == 1
    assert grid_batch1["displayName"] == "Holt-Winters"
    assert grid_batch1["isSeasonal"] is True


def test_placeholders_fill_every_eligible_model_and_method():
    jobs = [job(1, mape=10, rmse=5, mae=3, accuracy=90)]
    entries = best_results_per_model(jobs, DEFAULT_METRIC_WEIGHTS)
    eligible = [spec.id for spec in list_model_specs() if spec.grid_eligible]

    combos = {(e["modelType"], e["methods"][0]["method"]) for e in entries}
    assert combos == {(model_id, method) for model_id in eligible for method in ("grid", "ai")}
    placeholders = [e for e in entries if e["methods"][0]["bestResult"]["status"] == "ineligible"]
    assert len(placeholders) == len(eligible) * 2 - 1
    assert all(p["methods"][0]["bestResult"]["mape"] is None for p in placeholders)
    assert "seasonal_naive" not in {e["modelType"] for e in entries}


def test_placeholders_respect_method_filter():
    entries = best_results_per_model([job(1, mape=10, rmse=5, mae=3, accuracy=90)], method="grid")
    assert {e["methods"][0]["method"] for e in entries} == {"grid"}


def test_export_frame_flags_best_rows():
    jobs = [
        job(1, mape=10, rmse=5, mae=3, accuracy=90, trainingDataSize=28, validationDataSize=8),
        job(2, mape=30, rmse=15, mae=9, accuracy=60),
    ]
    frame = export_frame(jobs, dataset_names={"dataset_1": "Monthly sales"})
    assert list(frame.columns) == EXPORT_COLUMNS
    assert frame["Is Best Result"].tolist() == [True, False]
    assert frame["Dataset"].tolist() == ["Monthly sales", "Monthly sales"]
    assert frame["Duration (s)"].tolist() == [3.0, 3.0]

    best = export_frame(jobs, best_only=True)
    assert best["Job ID"].tolist() == [1]

    parsed = pd.read_csv(io.StringIO(frame.to_csv(index=False)))
    assert parsed["Composite Score"].iloc[0] > parsed["Composite Score"].iloc[1]
