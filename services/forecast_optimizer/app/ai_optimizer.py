"""AI-assisted parameter suggestion through an OpenAI-compatible chat API."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import openai
from pydantic import ValidationError

from .config import get_ai_api_key, get_ai_base_url, get_ai_model, get_ai_timeout_seconds
from .errors import AIOptimizationError
from .models import ModelSpec
from .schemas import AIOptimizationReply

SYSTEM_PROMPT = (
    "You are an expert time series forecasting analyst. Balance accuracy, "
    "stability, interpretability and business impact, and explain the "
    "trade-offs behind the parameters you recommend. Respond with JSON only."
)
MAX_PROMPT_POINTS = 100
_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def data_stats(values: Sequence[float]) -> Dict[str, Any]:
    """Summary statistics quoted in the prompt."""

    series = np.asarray(values, dtype=float)
    mean = float(series.mean()) if series.size else 0.0
    std = float(series.std()) if series.size else 0.0
    slope = float(np.polyfit(np.arange(series.size), series, 1)[0]) if series.size >= 2 else 0.0
    trend = "stable"
    if mean and abs(slope) / abs(mean) > 0.02:
        trend = "increasing" if slope > 0 else "decreasing"
    volatility = std / abs(mean) if mean else 0.0

    cycles: List[int] = []
    for lag in range(2, min(12, series.size // 3) + 1):
        avg_diff = float(np.mean(np.abs(series[lag:] - series[:-lag])))
        if avg_diff < std * 0.5:
            cycles.append(lag)

    return {
        "mean": round(mean, 2),
        "std": round(std, 2),
        "trend": trend,
        "volatility": round(volatility, 2),
        "seasonality": bool(cycles) or (volatility > 0.15 and series.size >= 12),
        "cycles": cycles[:3],
    }


def build_prompt(
    spec: ModelSpec,
    values: Sequence[float],
    *,
    seasonal_period: int,
    current_parameters: Mapping[str, Any],
    business_context: Optional[Mapping[str, Any]] = None,
) -> str:
    stats = data_stats(values)
    points = ", ".join(f"{v:g}" for v in list(values)[-MAX_PROMPT_POINTS:])
    lines = [
        f"Optimize the parameters of the {spec.display_name} ({spec.id}) forecasting model.",
        f"HISTORICAL DATA (last {MAX_PROMPT_POINTS} points): {points}",
        "DATA STATISTICS:",
        f"- Mean: {stats['mean']}",
        f"- Standard Deviation: {stats['std']}",
        f"- Trend: {stats['trend']}",
        f"- Volatility: {stats['volatility']}",
        f"- Has Seasonality: {stats['seasonality']}",
        f"- Detected Cycles: {', '.join(map(str, stats['cycles'])) or 'none'}",
        f"- Seasonal Period: {seasonal_period}",
        f"- Data Length: {len(values)} points",
    ]
    if business_context:
        context = dict(business_context)
        lines += [
            "BUSINESS CONTEXT:",
            f"- Cost of Forecast Error: {context.get('costOfError') or 'medium'}",
            f"- Planning Purpose: {context.get('planningPurpose') or 'tactical'}",
            f"- Update Frequency: {context.get('updateFrequency') or 'weekly'}",
            f"- Interpretability Needs: {context.get('interpretabilityNeeds') or 'medium'}",
        ]
    lines += [
        f"CURRENT PARAMETERS: {json.dumps(dict(current_parameters), sort_keys=True)}",
        f"CANDIDATE VALUES: {json.dumps(spec.optimization_parameters, sort_keys=True)}",
        "Respond in JSON format only:",
        '{"optimizedParameters": {...}, "expectedAccuracy": 0-100, "confidence": 0-100, '
        '"reasoning": "...", "factors": {"stability": 0-100, "interpretability": 0-100, '
        '"complexity": 0-100, "businessImpact": "..."}}',
    ]
    return "\n".join(lines)


def parse_reply(raw_text: str) -> AIOptimizationReply:
    text = (raw_text or "").strip()
    match = _FENCE.search(text)
    if match:
        text = match.group(1).strip()
    try:
        return AIOptimizationReply.model_validate_json(text)
    except ValidationError as exc:
        raise AIOptimizationError(
            "AI optimizer returned an unusable response",
            {"errors": [err["msg"] for err in exc.errors()][:5], "raw": (raw_text or "")[:200]},
        ) from exc


class AIOptimizer:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key or get_ai_api_key()
        self.base_url = base_url or get_ai_base_url()
        self.model = model or get_ai_model()
        self.timeout = timeout or get_ai_timeout_seconds()
        self._client: Optional[openai.AsyncOpenAI] = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if not self.api_key:
            raise AIOptimizationError("OPT_AI_API_KEY is not configured")
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def optimize(
        self,
        spec: ModelSpec,
        values: Sequence[float],
        *,
        seasonal_period: int,
        business_context: Optional[Mapping[str, Any]] = None,
    ) -> AIOptimizationReply:
        client = self._get_client()
        prompt = build_prompt(
            spec,
            values,
            seasonal_period=seasonal_period,
            current_parameters=spec.default_parameters,
            business_context=business_context,
        )
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                max_tokens=1500,
                temperature=0.05,
            )
        except openai.OpenAIError as exc:
            raise AIOptimizationError(f"AI optimizer request failed: {exc}", {"model": self.model}) from exc
        content = response.choices[0].message.content or ""
        return parse_reply(content)


_OPTIMIZER: Optional[AIOptimizer] = None


def get_ai_optimizer() -> AIOptimizer:
    global _OPTIMIZER
    if _OPTIMIZER is None:
        _OPTIMIZER = AIOptimizer()
    return _OPTIMIZER


def set_ai_optimizer(optimizer: Optional[AIOptimizer]) -> None:
    global _OPTIMIZER
    _OPTIMIZER = optimizer
