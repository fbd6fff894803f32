"""Composite scoring of completed attempts and best-result selection."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .fingerprint import DEFAULT_METRIC_WEIGHTS
from .models import ModelSpec, list_model_specs

METHODS = ("grid", "ai")
ERROR_METRICS = ("mape", "rmse", "mae")

GroupKey = Tuple[str, str, str, str]

EXPORT_COLUMNS = [
    "Dataset",
    "Job ID",
    "SKU",
    "Model ID",
    "Model Name",
    "Category",
    "Description",
    "Is Seasonal",
    "Method",
    "Reason",
    "Batch ID",
    "Created At",
    "Completed At",
    "Duration (s)",
    "Parameters",
    "Accuracy (%)",
    "MAPE (%)",
    "RMSE",
    "MAE",
    "Normalized Accuracy",
    "Normalized MAPE",
    "Normalized RMSE",
    "Normalized MAE",
    "Composite Score",
    "Weight MAPE",
    "Weight RMSE",
    "Weight MAE",
    "Weight Accuracy",
    "Success",
    "Error",
    "Training Data Size",
    "Validation Data Size",
    "Is Best Result",
]


def safe_metric(value: Any, fallback: float) -> float:
    """Numeric value of ``value``, or ``fallback`` when missing or not finite."""

    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def group_key(job: Mapping[str, Any]) -> GroupKey:
    batch = job.get("batchId") or job.get("datasetIdentifier") or ""
    return (job["modelId"], job["method"], job["sku"], batch)


@dataclass
class ScoredAttempt:
    job: Dict[str, Any]
    metrics: Dict[str, float]
    normalized: Dict[str, float]
    composite_score: float
    is_best: bool = False

    @property
    def result(self) -> Dict[str, Any]:
        return self.job.get("result") or {}


def _group_maxima(results: Sequence[Mapping[str, Any]]) -> Dict[str, float]:
    maxima = {}
    for name in ERROR_METRICS:
        observed = [safe_metric(r.get(name), 0.0) for r in results]
        maxima[name] = max(observed + [1.0])
    return maxima


def score_group(jobs: Sequence[Dict[str, Any]], weights: Mapping[str, float]) -> List[ScoredAttempt]:
    """Score every attempt of one group and flag the best one.

    Ties keep the earliest attempt in input order.
    """

    results = [job.get("result") or {} for job in jobs]
    maxima = _group_maxima(results)
    scored: List[ScoredAttempt] = []
    for job, result in zip(jobs, results):
        metrics = {name: safe_metric(result.get(name), maxima[name]) for name in ERROR_METRICS}
        metrics["accuracy"] = safe_metric(result.get("accuracy"), 0.0)
        normalized = {
            "accuracy": clamp01(metrics["accuracy"] / 100.0),
            "mape": clamp01(1 - metrics["mape"] / maxima["mape"]),
            "rmse": clamp01(1 - metrics["rmse"] / maxima["rmse"]),
            "mae": clamp01(1 - metrics["mae"] / maxima["mae"]),
        }
        score = sum(float(weights.get(name, 0.0)) * normalized[name] for name in ("mape", "rmse", "mae", "accuracy"))
        scored.append(ScoredAttempt(job=job, metrics=metrics, normalized=normalized, composite_score=score))
    best: Optional[ScoredAttempt] = None
    for attempt in scored:
        if best is None or attempt.composite_score > best.composite_score:
            best = attempt
    if best is not None:
        best.is_best = True
    return scored


def score_attempts(
    jobs: Iterable[Dict[str, Any]],
    weights: Optional[Mapping[str, float]] = None,
) -> Dict[GroupKey, List[ScoredAttempt]]:
    weights = dict(weights or DEFAULT_METRIC_WEIGHTS)
    groups: Dict[GroupKey, List[Dict[str, Any]]] = {}
    for job in jobs:
        groups.setdefault(group_key(job), []).append(job)
    return {key: score_group(members, weights) for key, members in groups.items()}


def _spec_lookup() -> Dict[str, ModelSpec]:
    return {spec.id: spec for spec in list_model_specs()}


def _model_fields(model_id: str, specs: Mapping[str, ModelSpec]) -> Dict[str, Any]:
    spec = specs.get(model_id)
    return {
        "modelType": model_id,
        "displayName": spec.display_name if spec else model_id,
        "category": spec.category if spec else "Other",
        "description": spec.description if spec else "",
        "isSeasonal": spec.is_seasonal if spec else False,
    }


def _best_result(attempt: ScoredAttempt) -> Dict[str, Any]:
    job, result = attempt.job, attempt.result
    return {
        "jobId": job["id"],
        "sku": job["sku"],
        "batchId": job.get("batchId"),
        "datasetIdentifier": job.get("datasetIdentifier"),
        "parameters": result.get("parameters"),
        "accuracy": result.get("accuracy"),
        "mape": result.get("mape"),
        "rmse": result.get("rmse"),
        "mae": result.get("mae"),
        "normalized": dict(attempt.normalized),
        "compositeScore": attempt.composite_score,
        "reasoning": result.get("reasoning"),
        "createdAt": job.get("createdAt"),
        "completedAt": job.get("completedAt"),
        "status": "completed",
    }


def _placeholder(sku: str, batch_id: Optional[str], dataset_identifier: Optional[str]) -> Dict[str, Any]:
    return {
        "jobId": None,
        "sku": sku,
        "batchId": batch_id,
        "datasetIdentifier": dataset_identifier,
        "parameters": None,
        "accuracy": None,
        "mape": None,
        "rmse": None,
        "mae": None,
        "compositeScore": None,
        "createdAt": None,
        "completedAt": None,
        "status": "ineligible",
        "reason": "No result available for this model/method (ineligible, failed, or not run)",
    }


def best_results_per_model(
    jobs: Sequence[Dict[str, Any]],
    weights: Optional[Mapping[str, float]] = None,
    *,
    method: str = "all",
) -> List[Dict[str, Any]]:
    """One entry per (model, method, sku, batch) with its best attempt.

    Grid-eligible models that have no attempt for a (method, sku, batch)
    combination seen in ``jobs`` get an ``ineligible`` placeholder.
    """

    specs = _spec_lookup()
    groups = score_attempts(jobs, weights)
    entries: List[Dict[str, Any]] = []
    combos: Dict[Tuple[str, str], Tuple[Optional[str], Optional[str]]] = {}
    for key, attempts in groups.items():
        model_id, job_method, sku, batch = key
        best = next(a for a in attempts if a.is_best)
        entry = _model_fields(model_id, specs)
        entry.update(
            sku=sku,
            batchId=best.job.get("batchId"),
            datasetIdentifier=best.job.get("datasetIdentifier"),
            methods=[{"method": job_method, "bestResult": _best_result(best)}],
        )
        entries.append(entry)
        combos.setdefault((sku, batch), (best.job.get("batchId"), best.job.get("datasetIdentifier")))

    methods = METHODS if method == "all" else (method,)
    for (sku, batch), (batch_id, dataset_identifier) in combos.items():
        for spec in specs.values():
            if not spec.grid_eligible:
                continue
            for job_method in methods:
                if (spec.id, job_method, sku, batch) in groups:
                    continue
                entry = _model_fields(spec.id, specs)
                entry.update(
                    sku=sku,
                    batchId=batch_id,
                    datasetIdentifier=dataset_identifier,
                    methods=[{"method": job_method, "bestResult": _placeholder(sku, batch_id, dataset_identifier)}],
                )
                entries.append(entry)
    return entries


def _duration_seconds(started: Optional[str], completed: Optional[str]) -> Optional[float]:
    if not started or not completed:
        return None
    try:
        return round((datetime.fromisoformat(completed) - datetime.fromisoformat(started)).total_seconds(), 3)
    except ValueError:
        return None


def export_frame(
    jobs: Sequence[Dict[str, Any]],
    weights: Optional[Mapping[str, float]] = None,
    *,
    best_only: bool = False,
    dataset_names: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    """One row per attempt with normalized metrics and the best-result flag."""

    weights = dict(weights or DEFAULT_METRIC_WEIGHTS)
    specs = _spec_lookup()
    names = dict(dataset_names or {})
    rows = []
    for attempts in score_attempts(jobs, weights).values():
        for attempt in attempts:
            if best_only and not attempt.is_best:
                continue
            job, result = attempt.job, attempt.result
            model = _model_fields(job["modelId"], specs)
            identifier = job.get("datasetIdentifier") or ""
            rows.append(
                {
                    "Dataset": names.get(identifier, identifier),
                    "Job ID": job["id"],
                    "SKU": job["sku"],
                    "Model ID": job["modelId"],
                    "Model Name": model["displayName"],
                    "Category": model["category"],
                    "Description": model["description"],
                    "Is Seasonal": model["isSeasonal"],
                    "Method": job["method"],
                    "Reason": job.get("reason") or "",
                    "Batch ID": job.get("batchId") or "",
                    "Created At": job.get("createdAt"),
                    "Completed At": job.get("completedAt"),
                    "Duration (s)": _duration_seconds(job.get("startedAt"), job.get("completedAt")),
                    "Parameters": json.dumps(result.get("parameters") or {}, sort_keys=True),
                    "Accuracy (%)": result.get("accuracy"),
                    "MAPE (%)": result.get("mape"),
                    "RMSE": result.get("rmse"),
                    "MAE": result.get("mae"),
                    "Normalized Accuracy": attempt.normalized["accuracy"],
                    "Normalized MAPE": attempt.normalized["mape"],
                    "Normalized RMSE": attempt.normalized["rmse"],
                    "Normalized MAE": attempt.normalized["mae"],
                    "Composite Score": attempt.composite_score,
                    "Weight MAPE": weights.get("mape"),
                    "Weight RMSE": weights.get("rmse"),
                    "Weight MAE": weights.get("mae"),
                    "Weight Accuracy": weights.get("accuracy"),
                    "Success": job.get("error") is None,
                    "Error": job.get("error") or "",
                    "Training Data Size": result.get("trainingDataSize"),
                    "Validation Data Size": result.get("validationDataSize"),
                    "Is Best Result": attempt.is_best,
                }
            )
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)
