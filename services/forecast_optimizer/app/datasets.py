"""In-memory dataset store resolving identifiers to per-SKU series."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Sequence

from .errors import JobValidationError, ResourceNotFoundError
from .models import seasonal_period_for

_DATASET_ID = re.compile(r"^dataset_(\d+)$")


@dataclass
class DatasetRecord:
    identifier: str
    name: str
    frequency: Optional[str] = None
    series: Dict[str, List[float]] = field(default_factory=dict)

    @property
    def seasonal_period(self) -> int:
        return seasonal_period_for(self.frequency)


def validate_identifier(identifier: Optional[str]) -> str:
    """Accept ``dataset_<n>`` and legacy ``uploads/<file>`` identifiers."""

    value = (identifier or "").strip()
    if not value:
        raise JobValidationError("datasetIdentifier is required")
    if _DATASET_ID.match(value) or (value.startswith("uploads/") and len(value) > len("uploads/")):
        return value
    raise JobValidationError(
        "invalid dataset identifier format",
        {"datasetIdentifier": value, "expected": "dataset_<id>"},
    )


class DatasetStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self._datasets: Dict[str, DatasetRecord] = {}

    def put(
        self,
        identifier: str,
        series: Dict[str, Sequence[float]],
        *,
        name: Optional[str] = None,
        frequency: Optional[str] = None,
    ) -> DatasetRecord:
        key = validate_identifier(identifier)
        record = DatasetRecord(
            identifier=key,
            name=name or key,
            frequency=frequency,
            series={str(sku): [float(v) for v in values] for sku, values in series.items()},
        )
        with self._lock:
            self._datasets[key] = record
        return record

    def get(self, identifier: str) -> DatasetRecord:
        key = validate_identifier(identifier)
        with self._lock:
            record = self._datasets.get(key)
        if record is None:
            raise ResourceNotFoundError("dataset not found", {"datasetIdentifier": key})
        return record

    def series_for(self, identifier: str, sku: str) -> List[float]:
        record = self.get(identifier)
        if sku not in record.series:
            raise ResourceNotFoundError(
                "sku not found in dataset",
                {"datasetIdentifier": record.identifier, "sku": sku},
            )
        return list(record.series[sku])

    def clear(self) -> None:
        with self._lock:
            self._datasets.clear()

    def load_file(self, path: str) -> int:
        """Load ``[{identifier, name?, frequency?, series: {sku: [..]}}]`` from JSON."""

        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = raw if isinstance(raw, list) else raw.get("datasets", [])
        for entry in entries:
            self.put(
                entry["identifier"],
                entry.get("series") or {},
                name=entry.get("name"),
                frequency=entry.get("frequency"),
            )
        return len(entries)


_DATASETS = DatasetStore()


def get_dataset_store() -> DatasetStore:
    return _DATASETS
