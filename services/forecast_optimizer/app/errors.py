"""Error types shared by the job factory, runner and HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class OptimizerError(Exception):
    """Base error carrying a machine code, HTTP status and details."""

    code = "E.INTERNAL"
    status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "details": self.details}


class JobValidationError(OptimizerError):
    """Raised when a creation request cannot be accepted as a batch."""

    code = "E.PARAM_INVALID"
    status = 400


class ResourceNotFoundError(OptimizerError):
    """Raised when a dataset, SKU or optimization does not exist."""

    code = "E.NOT_FOUND"
    status = 404


class ModelFitError(OptimizerError):
    """A single model configuration could not be trained or validated."""

    code = "E.MODEL_FIT"
    status = 422


class GridSearchError(OptimizerError):
    """No candidate in the parameter grid produced a usable fit."""

    code = "E.GRID_SEARCH"
    status = 422


class AIOptimizationError(OptimizerError):
    """The external AI optimizer failed or returned an unusable payload."""

    code = "E.UPSTREAM"
    status = 502
