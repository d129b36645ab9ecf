# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Conversion of raw quota RPC payloads into QuotaSnapshot objects.

Both RPCs describe models with the same ``clientModelConfigs`` entries:

    {
        "label": "Gemini Pro (Low)",
        "modelOrAlias": {"model": "MODEL_PLACEHOLDER_M7"},
        "quotaInfo": {"remainingFraction": 0.2, "resetTime": "2026-01-01T12:00:00Z"}
    }

``remainingFraction`` is omitted by the server once a model is used up.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .core.constants import (
    DEFAULT_CRITICAL_THRESHOLD,
    DEFAULT_PACE_CRITICAL_GAP,
    DEFAULT_PACE_MARGIN,
    DEFAULT_PACE_WARNING_GAP,
    DEFAULT_QUOTA_CYCLE_HOURS,
    DEFAULT_WARNING_THRESHOLD,
)
from .core.types import (
    ModelConfigResponse,
    ModelQuotaInfo,
    PaceStatus,
    PromptCreditsInfo,
    QuotaApiMethod,
    QuotaLevel,
    QuotaResponse,
    QuotaSnapshot,
    UserStatusResponse,
)
from .error_handler import ResponseParseError

lib_logger = logging.getLogger("quota_watcher")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# HELPERS
# =============================================================================


@dataclass(frozen=True)
class PaceSettings:
    """Usage pace tracking parameters. Gaps and margin are in percentage points."""

    enabled: bool = True
    cycle_hours: float = DEFAULT_QUOTA_CYCLE_HOURS
    margin: float = DEFAULT_PACE_MARGIN
    warning_gap: float = DEFAULT_PACE_WARNING_GAP
    critical_gap: float = DEFAULT_PACE_CRITICAL_GAP


def wrap_response(method: QuotaApiMethod, payload: Dict[str, Any]) -> QuotaResponse:
    """Tag a raw payload with the RPC that produced it."""
    if method is QuotaApiMethod.GET_USER_STATUS:
        return UserStatusResponse(payload)
    return ModelConfigResponse(payload)


def format_time_until_reset(delta: timedelta) -> str:
    """
    Human readable countdown using the two largest units.

    Examples: ``"2d 3h from now"``, ``"1h 0m from now"``, ``"45s from now"``.
    """
    total_seconds = math.floor(delta.total_seconds())
    if total_seconds <= 0:
        return "expired"

    minutes, seconds = divmod(total_seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days > 0:
        return f"{days}d {hours}h from now"
    if hours > 0:
        return f"{hours}h {minutes}m from now"
    if minutes > 0:
        return f"{minutes}m {seconds}s from now"
    return f"{seconds}s from now"


def quota_level(
    remaining_percentage: Optional[float],
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD,
) -> QuotaLevel:
    if remaining_percentage is None or remaining_percentage <= 0:
        return QuotaLevel.DEPLETED
    if remaining_percentage <= critical_threshold:
        return QuotaLevel.CRITICAL
    if remaining_percentage <= warning_threshold:
        return QuotaLevel.WARNING
    return QuotaLevel.NORMAL


def classify_pace(gap: float, settings: PaceSettings) -> PaceStatus:
    if gap <= -settings.margin:
        return PaceStatus.AHEAD
    if gap >= settings.critical_gap:
        return PaceStatus.CRITICAL
    if gap >= settings.warning_gap:
        return PaceStatus.BEHIND
    return PaceStatus.ON_TRACK


def _parse_reset_time(value: Any, now: datetime) -> datetime:
    if value is None or value == "":
        return now
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str):
        raise ResponseParseError(f"Invalid resetTime: {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ResponseParseError(f"Invalid resetTime: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
# NORMALIZER
# =============================================================================


class ResponseNormalizer:
    """
    Builds QuotaSnapshots from tagged RPC responses.

    Args:
        pace_settings: Usage pace tracking; None disables it.
        clock: Returns the current time as an aware datetime.
    """

    def __init__(self, pace_settings: Optional[PaceSettings] = None, clock: Optional[Clock] = None):
        self.pace_settings = pace_settings
        self._clock = clock or utc_now

    def normalize(self, response: QuotaResponse) -> QuotaSnapshot:
        now = self._clock()
        match response:
            case UserStatusResponse(payload=payload):
                return self._from_user_status(payload, now)
            case ModelConfigResponse(payload=payload):
                return self._from_model_configs(payload, now)
            case _:
                raise TypeError(f"Unsupported response type: {type(response).__name__}")

    def _from_user_status(self, payload: Dict[str, Any], now: datetime) -> QuotaSnapshot:
        user_status = payload.get("userStatus")
        if not isinstance(user_status, dict):
            raise ResponseParseError("Malformed API response: userStatus is missing")

        plan_status = user_status.get("planStatus") or {}
        plan_info = plan_status.get("planInfo") or {}

        prompt_credits = None
        monthly = _to_float(plan_info.get("monthlyPromptCredits"))
        available = _to_float(plan_status.get("availablePromptCredits"))
        if monthly is not None and monthly > 0 and available is not None:
            prompt_credits = PromptCreditsInfo(
                available=available,
                monthly=monthly,
                used_percentage=(monthly - available) / monthly * 100,
                remaining_percentage=available / monthly * 100,
            )

        configs = (user_status.get("cascadeModelConfigData") or {}).get("clientModelConfigs")
        return QuotaSnapshot(
            timestamp=now,
            models=tuple(self._parse_models(configs, now)),
            prompt_credits=prompt_credits,
            plan_name=plan_info.get("planName") or None,
        )

    def _from_model_configs(self, payload: Dict[str, Any], now: datetime) -> QuotaSnapshot:
        return QuotaSnapshot(
            timestamp=now,
            models=tuple(self._parse_models(payload.get("clientModelConfigs"), now)),
        )

    def _parse_models(self, configs: Any, now: datetime) -> List[ModelQuotaInfo]:
        if configs is None:
            return []
        if not isinstance(configs, list):
            raise ResponseParseError("Malformed API response: clientModelConfigs is not a list")

        models = []
        for config in configs:
            if not isinstance(config, dict) or not isinstance(config.get("quotaInfo"), dict):
                continue
            models.append(self._parse_model(config, now))
        lib_logger.debug(f"Normalized {len(models)} of {len(configs)} model entries")
        return models

    def _parse_model(self, config: Dict[str, Any], now: datetime) -> ModelQuotaInfo:
        quota_info = config["quotaInfo"]
        fraction = _to_float(quota_info.get("remainingFraction"))
        percentage = fraction * 100 if fraction is not None else None
        reset_time = _parse_reset_time(quota_info.get("resetTime"), now)
        time_until_reset = reset_time - now

        model_id = (config.get("modelOrAlias") or {}).get("model") or ""
        gap, pace = self._usage_pace(percentage, time_until_reset)

        return ModelQuotaInfo(
            label=config.get("label") or model_id,
            model_id=model_id,
            remaining_fraction=fraction,
            remaining_percentage=percentage,
            is_exhausted=fraction is None or fraction == 0,
            reset_time=reset_time,
            time_until_reset=time_until_reset,
            time_until_reset_formatted=format_time_until_reset(time_until_reset),
            usage_pace_gap=gap,
            pace_status=pace,
        )

    def _usage_pace(self, remaining_percentage, time_until_reset):
        """
        Compare actual usage with a linear spend over the quota cycle.

        The gap is ideal used minus actual used, in percentage points;
        positive means less was used than the elapsed time allows.
        """
        settings = self.pace_settings
        if settings is None or not settings.enabled or remaining_percentage is None:
            return None, None
        cycle = settings.cycle_hours * 3600
        if cycle <= 0:
            return None, None

        remaining = time_until_reset.total_seconds()
        elapsed = min(max(cycle - remaining, 0.0), cycle)
        ideal_used = elapsed / cycle * 100
        actual_used = 100 - remaining_percentage
        gap = ideal_used - actual_used
        return gap, classify_pace(gap, settings)
