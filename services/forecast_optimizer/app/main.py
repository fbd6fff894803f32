from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .aggregator import best_results_per_model, export_frame
from .config import DEFAULT_OWNER_ID, get_datasets_file, scheduler_enabled
from .datasets import get_dataset_store
from .errors import JobValidationError, OptimizerError, ResourceNotFoundError
from .factory import check_compatibility, create_jobs, data_requirements
from .fingerprint import DEFAULT_METRIC_WEIGHTS
from .models import list_model_specs
from .observability import emit_metric, log_stop
from .scheduler import Scheduler
from .schemas import CancelReq, CompatibilityReq, JobCreateReq
from .store import CANCELLED, COMPLETED, FAILED, MERGED, PENDING, RUNNING, get_store

logger = structlog.get_logger()

METHOD_FILTERS = ("grid", "ai", "all")


@asynccontextmanager
async def lifespan(app: FastAPI):
    datasets_file = get_datasets_file()
    if datasets_file:
        loaded = get_dataset_store().load_file(datasets_file)
        logger.info("datasets_loaded", path=datasets_file, count=loaded)
    scheduler: Optional[Scheduler] = None
    if scheduler_enabled():
        scheduler = Scheduler()
        scheduler.recover()
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        app.state.scheduler = None


app = FastAPI(title="Forecast Optimization Service", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    errors = [
        {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": "E.PARAM_INVALID", "message": "invalid request", "details": {"errors": errors}}},
    )


def _http_error(exc: OptimizerError) -> HTTPException:
    return HTTPException(status_code=exc.status, detail=exc.to_detail())


def _owner(owner_header: Optional[str]) -> str:
    return (owner_header or "").strip() or DEFAULT_OWNER_ID


def _wake_scheduler(request: Request) -> None:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.wake()


def _validate_method(method: Optional[str]) -> Optional[str]:
    value = (method or "all").strip().lower()
    if value not in METHOD_FILTERS:
        raise _http_error(
            JobValidationError('method must be "grid", "ai", or "all"', {"method": method})
        )
    return None if value == "all" else value


def _weights(mape: Optional[float], rmse: Optional[float], mae: Optional[float], accuracy: Optional[float]) -> Dict[str, float]:
    supplied = {"mape": mape, "rmse": rmse, "mae": mae, "accuracy": accuracy}
    return {name: DEFAULT_METRIC_WEIGHTS[name] if value is None else float(value) for name, value in supplied.items()}


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/internal/health")
async def internal_health(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    payload = {
        "service": "forecast-optimizer",
        "status": "up",
        "details": {
            "scheduler": "running" if scheduler is not None and scheduler.is_active else "stopped",
            "budget": scheduler.budget if scheduler is not None else None,
            "runningJobs": scheduler.running if scheduler is not None else 0,
        },
        "ts": _ts(),
    }
    logger.info("internal_health", **payload)
    return payload


@app.get("/models")
async def models(seasonalPeriod: int = Query(12, ge=1)):
    return {
        "models": [
            {**spec.to_dict(), "dataRequirements": data_requirements(spec, seasonalPeriod)}
            for spec in list_model_specs()
        ]
    }


@app.get("/models/data-requirements")
async def models_data_requirements(seasonalPeriod: int = Query(12, ge=1)):
    return {spec.id: data_requirements(spec, seasonalPeriod) for spec in list_model_specs()}


@app.post("/models/check-compatibility")
async def models_check_compatibility(req: CompatibilityReq):
    return check_compatibility(req.modelTypes, req.dataLength, req.seasonalPeriod)


@app.post("/jobs", status_code=201)
async def create_optimization_jobs(
    req: JobCreateReq,
    request: Request,
    owner_header: Optional[str] = Header(None, alias="x-owner-id"),
):
    owner_id = _owner(owner_header)
    try:
        result = create_jobs(req, owner_id)
    except OptimizerError as exc:
        logger.info("optimization_jobs_rejected", code=exc.code, message=str(exc), details=exc.details)
        raise _http_error(exc) from exc
    except Exception as exc:
        logger.exception("optimization_jobs_failed", exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail={"code": "E.INTERNAL", "message": "failed to create optimization jobs"},
        ) from exc
    payload = result.to_dict()
    logger.info("optimization_jobs_created", ownerId=owner_id, **{k: payload[k] for k in ("jobsCreated", "jobsMerged", "jobsSkipped", "priority")})
    if result.jobs_created:
        _wake_scheduler(request)
    return payload


@app.get("/jobs/status")
async def jobs_status(owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    return get_store().list_jobs(_owner(owner_header))


@app.get("/jobs/summary")
async def jobs_summary(owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    counts = get_store().status_counts(_owner(owner_header))
    schedulable = sum(counts[status] for status in (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED))
    finished = counts[COMPLETED] + counts[FAILED] + counts[CANCELLED]
    return {
        **counts,
        "total": schedulable + counts[MERGED],
        "isOptimizing": counts[PENDING] + counts[RUNNING] > 0,
        "progress": round(finished * 100 / schedulable) if schedulable else 0,
    }


@app.post("/jobs/reset")
async def jobs_reset(owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    deleted = get_store().delete_jobs(_owner(owner_header))
    logger.info("jobs_reset", deletedCount=deleted)
    return {"deletedCount": deleted}


@app.post("/jobs/clear-completed")
async def jobs_clear_completed(owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    return {"deletedCount": get_store().delete_jobs(_owner(owner_header), COMPLETED)}


@app.post("/jobs/clear-pending")
async def jobs_clear_pending(owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    return {"deletedCount": get_store().delete_jobs(_owner(owner_header), PENDING)}


def _record_cancellations(owner_id: str, rows, reason: Dict[str, Any]) -> int:
    for row in rows:
        log_stop(row["id"], owner_id, CANCELLED, reason=reason)
    emit_metric("jobs_cancelled_total", float(len(rows)), tags={"ownerId": owner_id})
    return len(rows)


@app.post("/jobs/cancel")
async def jobs_cancel(req: CancelReq, owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    owner_id = _owner(owner_header)
    rows = get_store().cancel(
        owner_id,
        optimization_id=req.optimizationId,
        sku=req.sku,
        model_id=req.modelId,
    )
    cancelled = _record_cancellations(owner_id, rows, {"kind": "user", **req.model_dump(exclude_none=True)})
    return {"cancelledJobs": cancelled}


@app.post("/optimizations/{optimization_id}/cancel")
async def optimization_cancel(optimization_id: str, owner_header: Optional[str] = Header(None, alias="x-owner-id")):
    owner_id = _owner(owner_header)
    store = get_store()
    if not store.list_jobs(owner_id, optimization_id=optimization_id):
        raise _http_error(ResourceNotFoundError("optimization not found", {"optimizationId": optimization_id}))
    rows = store.cancel(owner_id, optimization_id=optimization_id, statuses=(PENDING, RUNNING))
    cancelled = _record_cancellations(owner_id, rows, {"kind": "user", "optimizationId": optimization_id})
    return {"cancelledJobs": cancelled}


@app.get("/jobs/best-results-per-model")
async def best_results(
    method: Optional[str] = None,
    datasetIdentifier: Optional[str] = None,
    sku: Optional[str] = None,
    mapeWeight: Optional[float] = Query(None, ge=0),
    rmseWeight: Optional[float] = Query(None, ge=0),
    maeWeight: Optional[float] = Query(None, ge=0),
    accuracyWeight: Optional[float] = Query(None, ge=0),
    owner_header: Optional[str] = Header(None, alias="x-owner-id"),
):
    method_filter = _validate_method(method)
    jobs = get_store().completed_jobs(
        _owner(owner_header),
        method=method_filter,
        sku=sku,
        dataset_identifier=datasetIdentifier,
    )
    if not jobs:
        return {"totalJobs": 0, "bestResultsPerModelMethod": [], "timestamp": _ts()}
    weights = _weights(mapeWeight, rmseWeight, maeWeight, accuracyWeight)
    entries = best_results_per_model(jobs, weights, method=method_filter or "all")
    return {"totalJobs": len(jobs), "bestResultsPerModelMethod": entries, "timestamp": _ts()}


@app.get("/jobs/export-results")
async def export_results(
    method: Optional[str] = None,
    datasetIdentifier: Optional[str] = None,
    sku: Optional[str] = None,
    bestOnly: bool = False,
    mapeWeight: Optional[float] = Query(None, ge=0),
    rmseWeight: Optional[float] = Query(None, ge=0),
    maeWeight: Optional[float] = Query(None, ge=0),
    accuracyWeight: Optional[float] = Query(None, ge=0),
    owner_header: Optional[str] = Header(None, alias="x-owner-id"),
):
    method_filter = _validate_method(method)
    jobs = get_store().completed_jobs(
        _owner(owner_header),
        method=method_filter,
        sku=sku,
        dataset_identifier=datasetIdentifier,
    )
    if not jobs:
        raise _http_error(ResourceNotFoundError("no completed optimization jobs to export"))
    datasets = get_dataset_store()
    names: Dict[str, str] = {}
    for identifier in {job.get("datasetIdentifier") for job in jobs if job.get("datasetIdentifier")}:
        try:
            names[identifier] = datasets.get(identifier).name
        except OptimizerError:
            names[identifier] = identifier
    frame = export_frame(
        jobs,
        _weights(mapeWeight, rmseWeight, maeWeight, accuracyWeight),
        best_only=bestOnly,
        dataset_names=names,
    )
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return Response(
        content=frame.to_csv(index=False),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="optimization-results-{stamp}.csv"'},
    )
