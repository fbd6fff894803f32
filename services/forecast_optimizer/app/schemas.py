"""Request bodies, job payload variants and the AI optimizer reply."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .fingerprint import DEFAULT_METRIC_WEIGHTS

Method = Literal["grid", "ai"]


class MetricWeights(BaseModel):
    mape: float = Field(DEFAULT_METRIC_WEIGHTS["mape"], ge=0)
    rmse: float = Field(DEFAULT_METRIC_WEIGHTS["rmse"], ge=0)
    mae: float = Field(DEFAULT_METRIC_WEIGHTS["mae"], ge=0)
    accuracy: float = Field(DEFAULT_METRIC_WEIGHTS["accuracy"], ge=0)


class BusinessContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    costOfError: Optional[str] = None
    planningPurpose: Optional[str] = None
    updateFrequency: Optional[str] = None
    interpretabilityNeeds: Optional[str] = None


class JobCreateReq(BaseModel):
    skus: List[str]
    models: List[str]
    method: Method = "grid"
    datasetIdentifier: Optional[str] = None
    reason: Optional[str] = None
    metricWeights: Optional[MetricWeights] = None
    batchId: Optional[str] = None
    businessContext: Optional[BusinessContext] = None

    @field_validator("skus", "models")
    @classmethod
    def validate_non_empty(cls, value: List[str]):
        cleaned = [str(item).strip() for item in value if str(item).strip()]
        if not cleaned:
            raise ValueError("must be a non-empty array")
        return cleaned


class CancelReq(BaseModel):
    sku: Optional[str] = None
    modelId: Optional[str] = None
    optimizationId: Optional[str] = None


class CompatibilityReq(BaseModel):
    modelTypes: List[str]
    dataLength: int = Field(ge=0)
    seasonalPeriod: int = Field(12, ge=1)


class DatasetRefPayload(BaseModel):
    variant: Literal["dataset-ref"] = "dataset-ref"
    datasetIdentifier: str
    sku: str
    seasonalPeriod: int = Field(12, ge=1)
    businessContext: Optional[Dict[str, Any]] = None


class SkuDataPayload(BaseModel):
    variant: Literal["sku-data"] = "sku-data"
    rows: List[float]
    seasonalPeriod: int = Field(12, ge=1)
    businessContext: Optional[Dict[str, Any]] = None


JobPayload = Annotated[Union[DatasetRefPayload, SkuDataPayload], Field(discriminator="variant")]
_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(raw: Any) -> Union[DatasetRefPayload, SkuDataPayload]:
    return _PAYLOAD_ADAPTER.validate_python(raw)


class AIOptimizationReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    optimizedParameters: Dict[str, Any]
    expectedAccuracy: Optional[float] = None
    confidence: Optional[float] = None
    reasoning: str = ""
    factors: Optional[Dict[str, Any]] = None
    mape: Optional[float] = None
    rmse: Optional[float] = None
    mae: Optional[float] = None
    accuracy: Optional[float] = None

    @field_validator("optimizedParameters")
    @classmethod
    def validate_parameters(cls, value: Dict[str, Any]):
        if not value:
            raise ValueError("optimizedParameters must be a non-empty object")
        return value
