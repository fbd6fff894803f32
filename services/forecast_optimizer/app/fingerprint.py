"""Content fingerprint for a unit of optimization work."""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any, Dict, Mapping, Optional

DEFAULT_METRIC_WEIGHTS: Dict[str, float] = {
    "mape": 0.4,
    "rmse": 0.3,
    "mae": 0.2,
    "accuracy": 0.1,
}


def _plain_numbers(value: Any) -> Any:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {key: _plain_numbers(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain_numbers(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no insignificant whitespace.

    Integral floats are written without a fraction (``1.0`` becomes ``1``),
    the way JSON.stringify writes them, so clients hashing the same request
    in a browser get the same digest.
    """

    return json.dumps(_plain_numbers(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def optimization_hash(
    *,
    sku: str,
    model_id: str,
    method: str,
    dataset_identifier: str,
    parameters: Optional[Mapping[str, Any]] = None,
    metric_weights: Optional[Mapping[str, Any]] = None,
) -> str:
    """Return the sha256 hex digest identifying the request.

    Key order of the nested mappings does not affect the digest.
    """

    payload = {
        "sku": sku,
        "modelId": model_id,
        "method": method,
        "dataHash": dataset_identifier,
        "parameters": dict(parameters or {}),
        "metricWeights": dict(metric_weights or DEFAULT_METRIC_WEIGHTS),
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
