import json

import pytest

from services.forecast_optimizer.app.datasets import DatasetStore, validate_identifier
from services.forecast_optimizer.app.errors import JobValidationError, ResourceNotFoundError


@pytest.mark.parametrize("identifier", ["dataset_1", "dataset_42", "uploads/sales.csv"])
def test_accepts_known_identifier_shapes(identifier):
    assert validate_identifier(identifier) == identifier


@pytest.mark.parametrize("identifier", [None, "", "dataset_", "dataset_x", "sales.csv"])
def test_rejects_other_identifiers(identifier):
    with pytest.raises(JobValidationError):
        validate_identifier(identifier)


def test_series_lookup_and_missing_entries():
    store = DatasetStore()
    store.put("dataset_1", {"X": [1, 2, 3]}, frequency="weekly")
    assert store.series_for("dataset_1", "X") == [1.0, 2.0, 3.0]
    assert store.get("dataset_1").seasonal_period == 52
    with pytest.raises(ResourceNotFoundError):
        store.series_for("dataset_1", "Y")
    with pytest.raises(ResourceNotFoundError):
        store.get("dataset_2")


def test_load_file(tmp_path):
    path = tmp_path / "datasets.json"
    path.write_text(
        json.dumps([{"identifier": "dataset_7", "name": "Stores", "frequency": "monthly", "series": {"A": [4, 5]}}]),
        encoding="utf-8",
    )
    store = DatasetStore()
    assert store.load_file(str(path)) == 1
    record = store.get("dataset_7")
    assert record.name == "Stores"
    assert record.seasonal_period == 12
