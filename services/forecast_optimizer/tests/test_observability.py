from services.forecast_optimizer.app import observability as obs


def capture(monkeypatch):
    events = []
    monkeypatch.setattr(obs, "_write", events.append)
    return events


def test_log_error_emits_json(monkeypatch):
    events = capture(monkeypatch)
    monkeypatch.setenv("OBS_ENABLED", "true")

    obs.log_error(7, "owner-1", code="PARAM_ERROR", message="bad input", extra={"k": "v"})

    assert events, "no log emitted"
    data = events[-1]
    assert data["level"] == "error"
    assert data["jobId"] == 7
    assert data["ownerId"] == "owner-1"
    assert data["code"] == "PARAM_ERROR"
    assert data["phase"] == "error"
    assert data["extra"] == {"k": "v"}


def test_log_disabled_by_toggle(monkeypatch):
    events = capture(monkeypatch)
    monkeypatch.setenv("OBS_ENABLED", "false")
    obs.log_enqueue(1, "owner-1")
    assert not events


def test_log_stop_carries_reason_kind(monkeypatch):
    events = capture(monkeypatch)
    monkeypatch.setenv("OBS_ENABLED", "true")
    obs.log_stop(3, "owner-1", "cancelled", reason={"kind": "user", "sku": "X"})
    data = events[-1]
    assert data["phase"] == "stop"
    assert data["code"] == "user"
    assert data["message"] == "job cancelled"
    assert data["extra"]["sku"] == "X"


def test_emit_metric_respects_toggle(monkeypatch):
    events = capture(monkeypatch)
    monkeypatch.setenv("OBS_METRICS_ENABLED", "true")
    obs.emit_metric("queue_wait_seconds", 1.5, tags={"jobId": 1})
    assert events and events[-1]["name"] == "queue_wait_seconds"
    assert events[-1]["tags"] == {"jobId": "1"}

    events.clear()
    monkeypatch.setenv("OBS_METRICS_ENABLED", "false")
    obs.emit_metric("queue_wait_seconds", 1.5, tags={"jobId": 1})
    assert not events
