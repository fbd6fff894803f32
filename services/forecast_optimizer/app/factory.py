"""Job factory: validation, fingerprint dedup and priority assignment."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, List, Optional

from .config import get_validation_ratio
from .datasets import DatasetStore, get_dataset_store, validate_identifier
from .errors import JobValidationError, ResourceNotFoundError
from .fingerprint import optimization_hash
from .grid_search import required_length
from .models import DEFAULT_SEASONAL_PERIOD, ModelSpec, get_model_spec, has_model
from .observability import emit_metric, log_enqueue
from .schemas import DatasetRefPayload, JobCreateReq, MetricWeights
from .store import COMPLETED, MERGED, PENDING, RUNNING, JobStore, get_store

# Reason names do not line up with the priority constants they were once
# grouped under; the values below are the observed behaviour.
PRIORITY_BY_REASON = {
    "settings_change": 2,
    "config": 2,
    "metric_weight_change": 2,
    "csv_upload_data_cleaning": 1,
    "manual_edit_data_cleaning": 1,
    "dataset_upload": 3,
    "initial_import": 3,
}
DEFAULT_PRIORITY = 3
DEDUP_STATUSES = (PENDING, RUNNING, COMPLETED)

_CREATE_LOCK = RLock()


def priority_from_reason(reason: Optional[str]) -> int:
    return PRIORITY_BY_REASON.get((reason or "").strip(), DEFAULT_PRIORITY)


@dataclass
class JobBatchResult:
    priority: int
    batch_id: str
    skus_processed: int
    models_per_sku: int
    jobs_created: int = 0
    jobs_merged: int = 0
    jobs_skipped: int = 0
    jobs_filtered: int = 0
    optimization_ids: Dict[str, str] = field(default_factory=dict)
    job_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": "Optimization jobs created",
            "jobsCreated": self.jobs_created,
            "jobsCancelled": 0,
            "jobsMerged": self.jobs_merged,
            "jobsSkipped": self.jobs_skipped,
            "jobsFiltered": self.jobs_filtered,
            "skusProcessed": self.skus_processed,
            "modelsPerSku": self.models_per_sku,
            "priority": self.priority,
            "batchId": self.batch_id,
            "optimizationIds": dict(self.optimization_ids),
        }


def data_requirements(
    spec: ModelSpec,
    seasonal_period: int = DEFAULT_SEASONAL_PERIOD,
    validation_ratio: Optional[float] = None,
) -> Dict[str, Any]:
    """Observations a series needs before a job for ``spec`` is worth creating."""

    min_training = spec.create(seasonal_period=seasonal_period).required_observations()
    required = required_length(min_training, validation_ratio)
    return {
        "minObservations": min_training,
        "requiredObservations": required,
        "seasonalPeriod": seasonal_period,
        "isSeasonal": spec.is_seasonal,
        "description": f"Requires at least {required} observations ({min_training} for training)",
    }


def check_compatibility(
    model_ids: List[str],
    observations: int,
    seasonal_period: int = DEFAULT_SEASONAL_PERIOD,
) -> Dict[str, Any]:
    ratio = get_validation_ratio()
    compatible: List[Dict[str, Any]] = []
    incompatible: List[Dict[str, Any]] = []
    for model_id in model_ids:
        if not has_model(model_id):
            incompatible.append({"modelType": model_id, "requirements": None, "reason": "unknown model"})
            continue
        requirements = data_requirements(get_model_spec(model_id), seasonal_period, ratio)
        if observations >= requirements["requiredObservations"]:
            compatible.append({"modelType": model_id, "requirements": requirements})
        else:
            incompatible.append(
                {
                    "modelType": model_id,
                    "requirements": requirements,
                    "reason": f"Requires at least {requirements['requiredObservations']} observations (you have {observations})",
                }
            )
    return {
        "dataLength": observations,
        "seasonalPeriod": seasonal_period,
        "compatibleModels": compatible,
        "incompatibleModels": incompatible,
        "totalModels": len(model_ids),
        "compatibleCount": len(compatible),
        "incompatibleCount": len(incompatible),
    }


def _validate_batch(req: JobCreateReq, datasets: DatasetStore):
    identifier = validate_identifier(req.datasetIdentifier)
    dataset = datasets.get(identifier)

    missing = [sku for sku in req.skus if sku not in dataset.series]
    if missing:
        raise ResourceNotFoundError(
            "skus not found in dataset",
            {"datasetIdentifier": identifier, "skus": missing},
        )
    empty = [sku for sku in req.skus if not dataset.series.get(sku)]
    if empty:
        raise JobValidationError(
            "skus have no historical data",
            {"datasetIdentifier": identifier, "skus": empty},
        )
    unknown = [model_id for model_id in req.models if not has_model(model_id)]
    if unknown:
        raise JobValidationError("unknown models", {"models": unknown})
    return dataset


def create_jobs(
    req: JobCreateReq,
    owner_id: str,
    *,
    store: Optional[JobStore] = None,
    datasets: Optional[DatasetStore] = None,
) -> JobBatchResult:
    """Create one job per (sku, model) pair.

    Validation is all-or-nothing; once it passes each pair is deduplicated
    and inserted independently.
    """

    store = store or get_store()
    dataset = _validate_batch(req, datasets or get_dataset_store())
    weights = (req.metricWeights or MetricWeights()).model_dump()
    context = req.businessContext.model_dump(exclude_none=True) if req.businessContext else None
    priority = priority_from_reason(req.reason)
    ratio = get_validation_ratio()
    required = {
        model_id: data_requirements(get_model_spec(model_id), dataset.seasonal_period, ratio)["requiredObservations"]
        for model_id in req.models
    }
    result = JobBatchResult(
        priority=priority,
        batch_id=req.batchId or str(uuid.uuid4()),
        skus_processed=len(req.skus),
        models_per_sku=len(req.models),
    )

    for sku in req.skus:
        optimization_id = str(uuid.uuid4())
        result.optimization_ids[sku] = optimization_id
        for model_id in req.models:
            if len(dataset.series[sku]) < required[model_id]:
                result.jobs_filtered += 1
                continue
            spec = get_model_spec(model_id)
            if req.method == "grid" and not spec.grid_eligible:
                result.jobs_skipped += 1
                continue

            digest = optimization_hash(
                sku=sku,
                model_id=model_id,
                method=req.method,
                dataset_identifier=dataset.identifier,
                parameters={},
                metric_weights=weights,
            )
            payload = DatasetRefPayload(
                datasetIdentifier=dataset.identifier,
                sku=sku,
                seasonalPeriod=dataset.seasonal_period,
                businessContext=context,
            ).model_dump()
            row = {
                "optimization_id": optimization_id,
                "optimization_hash": digest,
                "owner_id": owner_id,
                "sku": sku,
                "model_id": model_id,
                "method": req.method,
                "dataset_identifier": dataset.identifier,
                "batch_id": result.batch_id,
                "reason": req.reason,
                "priority": priority,
                "payload": payload,
            }
            with _CREATE_LOCK:
                existing = store.latest_by_hash(digest, owner_id)
                if existing is not None and existing["status"] in DEDUP_STATUSES:
                    row["status"] = MERGED
                    store.insert_job(row)
                    result.jobs_merged += 1
                    continue
                row["status"] = PENDING
                created = store.insert_job(row)
            result.jobs_created += 1
            result.job_ids.append(created["id"])
            log_enqueue(
                created["id"],
                owner_id,
                extra={"sku": sku, "modelId": model_id, "method": req.method, "priority": priority},
            )

    tags = {"ownerId": owner_id, "method": req.method}
    emit_metric("jobs_created_total", result.jobs_created, tags=tags)
    emit_metric("jobs_merged_total", result.jobs_merged, tags=tags)
    emit_metric("jobs_skipped_total", result.jobs_skipped, tags=tags)
    emit_metric("jobs_filtered_total", result.jobs_filtered, tags=tags)
    return result
