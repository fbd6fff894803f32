import asyncio
import csv
import io

import pytest
from fastapi.testclient import TestClient

from services.forecast_optimizer.app import factory
from services.forecast_optimizer.app import observability as obs
from services.forecast_optimizer.app.datasets import get_dataset_store
from services.forecast_optimizer.app.main import app
from services.forecast_optimizer.app.scheduler import Scheduler
from services.forecast_optimizer.app.store import configure_store

client = TestClient(app)

OWNER_HEADERS = {"x-owner-id": "owner-1"}


def payload(**overrides):
    body = {
        "skus": ["X"],
        "models": ["moving_average"],
        "method": "grid",
        "datasetIdentifier": "dataset_1",
        "reason": "dataset_upload",
    }
    body.update(overrides)
    return body


@pytest.fixture(autouse=True)
def reset_state(monkeypatch):
    monkeypatch.setattr(obs, "_write", lambda payload: None)
    monkeypatch.setattr(factory, "emit_metric", lambda *a, **k: None)
    store = configure_store("sqlite://")
    datasets = get_dataset_store()
    datasets.clear()
    datasets.put(
        "dataset_1",
        {"X": [float(10 + (i % 12)) for i in range(36)], "Y": [float(20 + i) for i in range(36)], "EMPTY": []},
        name="Monthly sales",
        frequency="monthly",
    )
    yield store
    datasets.clear()


def post_jobs(**overrides):
    return client.post("/jobs", json=payload(**overrides), headers=OWNER_HEADERS)


def run_all(store):
    return asyncio.run(Scheduler(budget=2, poll_interval=1, store=store).drain())


def test_health_reports_service():
    response = client.get("/internal/health")
    assert response.status_code == 200
    assert response.json()["service"] == "forecast-optimizer"


def test_models_lists_catalogue():
    models = {m["id"]: m for m in client.get("/models").json()["models"]}
    assert models["holt_winters"]["gridEligible"] is True
    assert models["linear_trend"]["gridEligible"] is False


def test_create_jobs_returns_counts():
    response = post_jobs(skus=["X", "Y"], models=["moving_average", "linear_trend"], reason="csv_upload_data_cleaning")
    assert response.status_code == 201
    data = response.json()
    assert data["jobsCreated"] == 2
    assert data["jobsSkipped"] == 2
    assert data["priority"] == 1
    assert set(data["optimizationIds"]) == {"X", "Y"}


def test_resubmission_is_merged():
    assert post_jobs().json()["jobsCreated"] == 1
    second = post_jobs().json()
    assert second["jobsCreated"] == 0
    assert second["jobsMerged"] == 1
    statuses = [job["status"] for job in client.get("/jobs/status", headers=OWNER_HEADERS).json()]
    assert sorted(statuses) == ["merged", "pending"]


@pytest.mark.parametrize(
    "body",
    [
        {"skus": []},
        {"models": []},
        {"method": "random"},
        {"datasetIdentifier": "customers"},
        {"skus": ["EMPTY"]},
        {"models": ["prophet"]},
    ],
)
def test_invalid_requests_are_400(body):
    response = post_jobs(**body)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "E.PARAM_INVALID"


@pytest.mark.parametrize("body", [{"datasetIdentifier": "dataset_9"}, {"skus": ["X", "MISSING"]}])
def test_missing_dataset_or_sku_is_404(body):
    response = post_jobs(**body)
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "E.NOT_FOUND"


def test_jobs_are_scoped_by_owner():
    post_jobs()
    assert client.get("/jobs/status", headers={"x-owner-id": "owner-2"}).json() == []
    assert len(client.get("/jobs/status", headers=OWNER_HEADERS).json()) == 1


def test_status_lists_in_scheduler_order():
    post_jobs(skus=["Y"], reason="dataset_upload")
    post_jobs(skus=["X"], reason="settings_change")
    post_jobs(skus=["X"], method="ai", reason="csv_upload_data_cleaning")
    jobs = client.get("/jobs/status", headers=OWNER_HEADERS).json()
    assert [(job["method"], job["priority"], job["sku"]) for job in jobs] == [
        ("grid", 2, "X"),
        ("grid", 3, "Y"),
        ("ai", 1, "X"),
    ]


def test_summary_counts_statuses():
    post_jobs(skus=["X", "Y"])
    post_jobs(skus=["X"])
    summary = client.get("/jobs/summary", headers=OWNER_HEADERS).json()
    assert summary["pending"] == 2
    assert summary["merged"] == 1
    assert summary["total"] == 3
    assert summary["isOptimizing"] is True
    assert summary["progress"] == 0


def test_clear_and_reset():
    post_jobs(skus=["X", "Y"])
    assert client.post("/jobs/clear-completed", headers=OWNER_HEADERS).json() == {"deletedCount": 0}
    assert client.post("/jobs/clear-pending", headers=OWNER_HEADERS).json() == {"deletedCount": 2}
    post_jobs()
    assert client.post("/jobs/reset", headers=OWNER_HEADERS).json() == {"deletedCount": 1}
    assert client.get("/jobs/status", headers=OWNER_HEADERS).json() == []


def test_cancel_pending_by_sku():
    post_jobs(skus=["X", "Y"], models=["moving_average", "holt_winters"])
    response = client.post("/jobs/cancel", json={"sku": "X", "modelId": "holt_winters"}, headers=OWNER_HEADERS)
    assert response.json() == {"cancelledJobs": 1}
    cancelled = [j for j in client.get("/jobs/status", headers=OWNER_HEADERS).json() if j["status"] == "cancelled"]
    assert [(j["sku"], j["modelId"]) for j in cancelled] == [("X", "holt_winters")]


def test_cancel_by_optimization_id(reset_state):
    created = post_jobs(skus=["X", "Y"], models=["moving_average", "holt_winters"]).json()
    optimization_id = created["optimizationIds"]["X"]
    response = client.post(f"/optimizations/{optimization_id}/cancel", headers=OWNER_HEADERS)
    assert response.json() == {"cancelledJobs": 2}

    run_all(reset_state)
    jobs = client.get("/jobs/status", headers=OWNER_HEADERS).json()
    assert {j["sku"]: j["status"] for j in jobs if j["status"] == "cancelled"} == {"X": "cancelled"}
    assert all(j["status"] == "completed" for j in jobs if j["sku"] == "Y")


def test_cancel_unknown_optimization_is_404():
    response = client.post("/optimizations/nope/cancel", headers=OWNER_HEADERS)
    assert response.status_code == 404


def test_best_results_after_run(reset_state):
    post_jobs(skus=["X"], models=["moving_average", "simple_exponential_smoothing"], batchId="batch-1")
    run_all(reset_state)

    response = client.get("/jobs/best-results-per-model", params={"method": "grid"}, headers=OWNER_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["totalJobs"] == 2
    completed = {
        e["modelType"]: e["methods"][0]["bestResult"]
        for e in data["bestResultsPerModelMethod"]
        if e["methods"][0]["bestResult"]["status"] == "completed"
    }
    assert set(completed) == {"moving_average", "simple_exponential_smoothing"}
    assert all(r["batchId"] == "batch-1" for r in completed.values())


def test_best_results_empty_and_invalid_method():
    empty = client.get("/jobs/best-results-per-model", headers=OWNER_HEADERS).json()
    assert empty["totalJobs"] == 0
    assert empty["bestResultsPerModelMethod"] == []

    bad = client.get("/jobs/best-results-per-model", params={"method": "bayes"}, headers=OWNER_HEADERS)
    assert bad.status_code == 400
    negative = client.get("/jobs/best-results-per-model", params={"mapeWeight": -1}, headers=OWNER_HEADERS)
    assert negative.status_code == 400


def test_export_results_csv(reset_state):
    assert client.get("/jobs/export-results", headers=OWNER_HEADERS).status_code == 404

    post_jobs(skus=["X", "Y"])
    run_all(reset_state)
    response = client.get("/jobs/export-results", params={"bestOnly": "true"}, headers=OWNER_HEADERS)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert {row["SKU"] for row in rows} == {"X", "Y"}
    assert all(row["Dataset"] == "Monthly sales" for row in rows)
    assert all(row["Is Best Result"] == "True" for row in rows)


def test_models_report_data_requirements(monkeypatch):
    monkeypatch.delenv("OPT_VALIDATION_RATIO", raising=False)
    models = {m["id"]: m for m in client.get("/models", params={"seasonalPeriod": 4}).json()["models"]}
    assert models["holt_winters"]["dataRequirements"]["requiredObservations"] == 10

    requirements = client.get("/models/data-requirements").json()
    assert requirements["holt_winters"]["minObservations"] == 24
    assert requirements["holt_winters"]["requiredObservations"] == 30


def test_check_compatibility_endpoint(monkeypatch):
    monkeypatch.delenv("OPT_VALIDATION_RATIO", raising=False)
    response = client.post(
        "/models/check-compatibility",
        json={"modelTypes": ["holt_winters", "moving_average"], "dataLength": 20},
    )
    assert response.status_code == 200
    data = response.json()
    assert [m["modelType"] for m in data["compatibleModels"]] == ["moving_average"]
    assert data["incompatibleCount"] == 1

    bad = client.post("/models/check-compatibility", json={"modelTypes": ["moving_average"], "dataLength": -1})
    assert bad.status_code == 400


def test_create_jobs_reports_filtered_models(monkeypatch):
    monkeypatch.delenv("OPT_VALIDATION_RATIO", raising=False)
    get_dataset_store().put("dataset_2", {"SHORT": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]}, frequency="monthly")
    data = post_jobs(skus=["SHORT"], models=["moving_average", "holt_winters"], datasetIdentifier="dataset_2").json()
    assert data["jobsCreated"] == 1
    assert data["jobsFiltered"] == 1
    assert data["jobsSkipped"] == 0
