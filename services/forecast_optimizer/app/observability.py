"""
Structured logging helpers for optimization jobs.
- Prints JSON lines to stdout through a single sink (`_write`).
- Fields: ts, level, component, jobId, ownerId, phase, duration_ms, code, message
- Job lifecycle: enqueue -> start -> end | error | stop
- Enabled by OBS_ENABLED, metrics by OBS_METRICS_ENABLED (both default true).
"""
from __future__ import annotations

import json
import os
import sys
import time
from typing import Any, Dict, Optional


def _enabled(name: str) -> bool:
    return os.getenv(name, "true").lower() != "false"


def _component() -> str:
    return os.getenv("WORKER_COMPONENT", "forecast-optimizer")


def _ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


def _write(payload: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()


def log(
    level: str,
    message: str,
    *,
    jobId: Optional[Any] = None,
    ownerId: Optional[str] = None,
    phase: Optional[str] = None,
    duration_ms: Optional[float] = None,
    code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    if not _enabled("OBS_ENABLED"):
        return
    payload: Dict[str, Any] = {
        "ts": _ts(),
        "level": level.lower(),
        "component": _component(),
        "message": message,
    }
    if jobId is not None:
        payload["jobId"] = jobId
    if ownerId:
        payload["ownerId"] = ownerId
    if phase:
        payload["phase"] = phase
    if duration_ms is not None:
        payload["duration_ms"] = round(float(duration_ms), 2)
    if code:
        payload["code"] = code
    if extra:
        try:
            payload["extra"] = json.loads(json.dumps(extra, default=str))
        except (TypeError, ValueError):
            payload["extra"] = {"note": "unserializable_extra"}
    _write(payload)


def emit_metric(name: str, value: float, tags: Optional[Dict[str, Any]] = None) -> None:
    if not _enabled("OBS_METRICS_ENABLED"):
        return
    payload: Dict[str, Any] = {
        "ts": _ts(),
        "type": "metric",
        "component": _component(),
        "name": name,
        "value": float(value),
    }
    if tags:
        payload["tags"] = {key: str(val) for key, val in tags.items()}
    _write(payload)


class Timer:
    def __init__(self):
        self._start = time.perf_counter()

    def ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0


# Convenience wrappers

def log_enqueue(jobId: Any, ownerId: str, *, code: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
    log("info", "job enqueued", jobId=jobId, ownerId=ownerId, phase="enqueue", code=code, extra=extra)


def log_start(jobId: Any, ownerId: str, *, extra: Optional[Dict[str, Any]] = None) -> Timer:
    log("info", "job started", jobId=jobId, ownerId=ownerId, phase="start", extra=extra)
    return Timer()


def log_end(jobId: Any, ownerId: str, timer: Timer) -> None:
    log("info", "job finished", jobId=jobId, ownerId=ownerId, phase="end", duration_ms=timer.ms())


def log_error(
    jobId: Any,
    ownerId: str,
    *,
    code: str,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    # code is one of: PARAM_ERROR | UPSTREAM_ERROR | INTERNAL_ERROR
    safe_msg = (message or "").strip()[:300]
    log(
        "error",
        safe_msg,
        jobId=jobId,
        ownerId=ownerId,
        phase="error",
        code=code,
        extra=extra,
    )


def log_stop(
    jobId: Any,
    ownerId: str,
    status: str,
    *,
    reason: Optional[Dict[str, Any]] = None,
) -> None:
    log(
        "info",
        f"job {status}",
        jobId=jobId,
        ownerId=ownerId,
        phase="stop",
        code=(reason or {}).get("kind"),
        extra=reason,
    )
