"""Environment helpers for the optimization service."""

from __future__ import annotations

import os
from typing import Optional

DEFAULT_CONCURRENCY_BUDGET = 1
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
MIN_POLL_INTERVAL_SECONDS = 0.05
DEFAULT_VALIDATION_RATIO = 0.2
MAX_VALIDATION_RATIO = 0.9
DEFAULT_DB_DSN = "sqlite://"
DEFAULT_AI_BASE_URL = "https://api.x.ai/v1"
DEFAULT_AI_MODEL = "grok-3"
DEFAULT_AI_TIMEOUT_SECONDS = 60.0
DEFAULT_OWNER_ID = "default"


def get_concurrency_budget() -> int:
    raw = os.getenv("OPT_CONCURRENCY_BUDGET")
    if not raw:
        return DEFAULT_CONCURRENCY_BUDGET
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_CONCURRENCY_BUDGET
    return max(1, value)


def get_poll_interval_seconds() -> float:
    raw = os.getenv("OPT_POLL_INTERVAL_SECONDS")
    if not raw:
        return DEFAULT_POLL_INTERVAL_SECONDS
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_POLL_INTERVAL_SECONDS
    return max(MIN_POLL_INTERVAL_SECONDS, value)


def get_validation_ratio() -> float:
    raw = os.getenv("OPT_VALIDATION_RATIO")
    if not raw:
        return DEFAULT_VALIDATION_RATIO
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_VALIDATION_RATIO
    if value <= 0:
        return DEFAULT_VALIDATION_RATIO
    return min(value, MAX_VALIDATION_RATIO)


def scheduler_enabled() -> bool:
    return os.getenv("OPT_SCHEDULER_ENABLED", "true").lower() != "false"


def get_db_dsn() -> str:
    return (os.getenv("OPTIMIZATION_DB_DSN") or "").strip() or DEFAULT_DB_DSN


def get_datasets_file() -> Optional[str]:
    return (os.getenv("OPT_DATASETS_FILE") or "").strip() or None


def get_ai_api_key() -> Optional[str]:
    return (os.getenv("OPT_AI_API_KEY") or "").strip() or None


def get_ai_base_url() -> str:
    return (os.getenv("OPT_AI_BASE_URL") or "").strip() or DEFAULT_AI_BASE_URL


def get_ai_model() -> str:
    return (os.getenv("OPT_AI_MODEL") or "").strip() or DEFAULT_AI_MODEL


def get_ai_timeout_seconds() -> float:
    raw = os.getenv("OPT_AI_TIMEOUT_SECONDS")
    if not raw:
        return DEFAULT_AI_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_AI_TIMEOUT_SECONDS
    return max(1.0, value)
