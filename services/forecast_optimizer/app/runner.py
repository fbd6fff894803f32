"""Optimization runner: executes one job and records its outcome."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .ai_optimizer import AIOptimizer, get_ai_optimizer
from .datasets import DatasetStore, get_dataset_store
from .errors import AIOptimizationError, OptimizerError
from .grid_search import evaluate_candidate, run_grid_search, split_series, split_sizes
from .models import get_model_spec
from .observability import Timer, emit_metric, log, log_end, log_error, log_start, log_stop
from .schemas import DatasetRefPayload, parse_payload
from .store import PENDING, JobStore, get_store


class WorkerError(Exception):
    """Exception raised by job execution with explicit classification."""

    def __init__(self, message: str, kind: str = "internal") -> None:
        super().__init__(message)
        self.kind = kind


async def run_job(
    job: Dict[str, Any],
    *,
    store: Optional[JobStore] = None,
    datasets: Optional[DatasetStore] = None,
    ai_optimizer: Optional[AIOptimizer] = None,
) -> Dict[str, Any]:
    """Run a claimed (or still pending) job to a terminal state.

    The terminal write happens in ``finally`` so an exception anywhere in the
    execution path still leaves the row failed rather than running.
    """

    store = store or get_store()
    job_id = job["id"]
    owner_id = job["ownerId"]
    if job.get("status") == PENDING and not store.claim(job_id):
        return {"status": "skipped", "jobId": job_id}

    tags = {"jobId": job_id, "ownerId": owner_id, "method": job["method"], "modelId": job["modelId"]}
    emit_metric("queue_wait_seconds", _wait_seconds(job.get("createdAt")), tags=tags)
    timer = log_start(job_id, owner_id, extra={"sku": job["sku"], "modelId": job["modelId"], "method": job["method"]})

    result: Optional[Dict[str, Any]] = None
    error_code = "INTERNAL_ERROR"
    error_message = "job interrupted before completion"
    try:
        result = await _execute(job, store, datasets or get_dataset_store(), ai_optimizer)
    except WorkerError as exc:
        error_code, error_message = _map_kind(exc.kind), str(exc)
    except OptimizerError as exc:
        error_code, error_message = _map_kind(_classify(exc)), str(exc)
    except Exception as exc:
        error_code, error_message = "INTERNAL_ERROR", str(exc)[:200] or type(exc).__name__
    finally:
        written = False
        if result is not None:
            try:
                written = store.complete(job_id, result)
            except Exception as exc:
                result = None
                error_code, error_message = "INTERNAL_ERROR", f"result write failed: {exc}"[:200]
        if result is None:
            written = store.fail(job_id, f"{error_code}: {error_message}")
        _emit_exec_metrics(store, job_id, owner_id, timer, tags)

    if not written:
        log_stop(job_id, owner_id, "cancelled", reason={"kind": "cancelled", "note": "result discarded"})
        return {"status": "cancelled", "jobId": job_id}
    if result is None:
        log_error(job_id, owner_id, code=error_code, message=error_message, extra={"modelId": job["modelId"]})
        return {"status": "failed", "jobId": job_id, "error": error_code, "message": error_message}
    log_end(job_id, owner_id, timer)
    return {"status": "completed", "jobId": job_id, "result": result}


async def _execute(
    job: Dict[str, Any],
    store: JobStore,
    datasets: DatasetStore,
    ai_optimizer: Optional[AIOptimizer],
) -> Dict[str, Any]:
    values, seasonal_period, context = _resolve_series(job, datasets)
    spec = get_model_spec(job["modelId"])
    job_id = job["id"]

    if job["method"] == "grid":
        last = {"value": 0}

        def on_progress(fraction: float) -> None:
            percent = int(fraction * 100)
            if percent > last["value"]:
                last["value"] = percent
                store.update_progress(job_id, percent)

        search = await asyncio.to_thread(
            run_grid_search,
            spec,
            values,
            seasonal_period=seasonal_period,
            progress=on_progress,
        )
        payload = search.to_result()
        if search.searched:
            payload["reasoning"] = (
                f"Grid search evaluated {search.candidates_evaluated} of {search.candidates_total} "
                f"candidates ({search.candidates_failed} failed) and kept the lowest validation MAE."
            )
        else:
            payload["reasoning"] = "Model has no tunable parameters; default parameters evaluated."
        if search.candidates_failed:
            emit_metric("grid_candidates_failed", search.candidates_failed, tags={"jobId": job_id})
        payload["method"] = "grid"
        return payload

    if job["method"] == "ai":
        optimizer = ai_optimizer or get_ai_optimizer()
        store.update_progress(job_id, 10)
        reply = await optimizer.optimize(
            spec,
            values,
            seasonal_period=seasonal_period,
            business_context=context,
        )
        store.update_progress(job_id, 90)
        parameters = {**spec.default_parameters, **reply.optimizedParameters}
        metrics = _ai_metrics(reply, spec, parameters, values, seasonal_period)
        training_size, validation_size = split_sizes(len(values))
        return {
            "parameters": parameters,
            **metrics,
            "expectedAccuracy": reply.expectedAccuracy,
            "confidence": reply.confidence,
            "factors": reply.factors,
            "reasoning": reply.reasoning,
            "trainingDataSize": training_size,
            "validationDataSize": validation_size,
            "method": "ai",
        }

    raise WorkerError(f"unsupported method: {job['method']}", kind="param")


def _emit_exec_metrics(store: JobStore, job_id: int, owner_id: str, timer: Timer, tags: Dict[str, Any]) -> None:
    try:
        emit_metric("job_exec_seconds", timer.ms() / 1000.0, tags=tags)
        emit_metric("active_jobs", float(store.count_running()), tags={"ownerId": owner_id})
    except Exception as exc:
        log("warn", "job metrics not recorded", jobId=job_id, ownerId=owner_id, code="METRICS", extra={"error": str(exc)})


def _resolve_series(job: Dict[str, Any], datasets: DatasetStore) -> Tuple[list, int, Optional[Dict[str, Any]]]:
    try:
        payload = parse_payload(job.get("payload"))
    except ValidationError as exc:
        raise WorkerError(f"invalid job payload: {exc.errors()[0]['msg']}", kind="param") from exc
    if isinstance(payload, DatasetRefPayload):
        values = datasets.series_for(payload.datasetIdentifier, payload.sku)
    else:
        values = list(payload.rows)
    if not values:
        raise WorkerError("job has no historical data", kind="param")
    return values, payload.seasonalPeriod, payload.businessContext


def _ai_metrics(reply, spec, parameters, values, seasonal_period) -> Dict[str, Optional[float]]:
    if reply.mape is not None and reply.rmse is not None and reply.mae is not None:
        accuracy = reply.accuracy if reply.accuracy is not None else max(0.0, 100.0 - reply.mape)
        return {"mape": reply.mape, "rmse": reply.rmse, "mae": reply.mae, "accuracy": accuracy}
    try:
        training, validation = split_series(values)
        return dict(evaluate_candidate(spec, parameters, training, validation, seasonal_period))
    except Exception:
        return {"mape": None, "rmse": None, "mae": None, "accuracy": reply.expectedAccuracy}


def _classify(exc: OptimizerError) -> str:
    if isinstance(exc, AIOptimizationError):
        return "upstream"
    if exc.status < 500:
        return "param"
    return "internal"


def _map_kind(kind: Optional[str]) -> str:
    mapping = {
        "param": "PARAM_ERROR",
        "upstream": "UPSTREAM_ERROR",
        "internal": "INTERNAL_ERROR",
    }
    return mapping.get((kind or "internal").lower(), "INTERNAL_ERROR")


def _wait_seconds(created_at: Optional[str]) -> float:
    if not created_at:
        return 0.0
    try:
        created = datetime.fromisoformat(created_at)
    except ValueError:
        return 0.0
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return max((datetime.now(timezone.utc) - created).total_seconds(), 0.0)
