# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Watcher configuration.

Values come from ``QUOTA_WATCHER_*`` environment variables, optionally
loaded from a ``.env`` file first. Invalid values are logged and replaced by
their defaults.

    QUOTA_WATCHER_ENABLED=true
    QUOTA_WATCHER_POLLING_INTERVAL=60        # seconds, minimum 10
    QUOTA_WATCHER_WARNING_THRESHOLD=50       # percent
    QUOTA_WATCHER_CRITICAL_THRESHOLD=30      # percent
    QUOTA_WATCHER_API_METHOD=GET_USER_STATUS # or COMMAND_MODEL_CONFIG
    QUOTA_WATCHER_SHOW_PROMPT_CREDITS=false
    QUOTA_WATCHER_SHOW_PLAN_NAME=false
    QUOTA_WATCHER_QUOTA_CYCLE_HOURS=5
    QUOTA_WATCHER_PACE_ENABLED=true
    QUOTA_WATCHER_PACE_MARGIN=5
    QUOTA_WATCHER_PACE_WARNING_GAP=15
    QUOTA_WATCHER_PACE_CRITICAL_GAP=30
    QUOTA_WATCHER_FORCE_POWERSHELL=false
    QUOTA_WATCHER_DISCOVERY_ATTEMPTS=3
    QUOTA_WATCHER_DISCOVERY_RETRY_DELAY=2
    QUOTA_WATCHER_REQUEST_TIMEOUT=5
    QUOTA_WATCHER_SUCCESS_CODES=0,ok,success
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Mapping, Optional, Union

from dotenv import load_dotenv

from .core.constants import (
    DEFAULT_CRITICAL_THRESHOLD,
    DEFAULT_DISCOVERY_ATTEMPTS,
    DEFAULT_DISCOVERY_RETRY_DELAY,
    DEFAULT_PACE_CRITICAL_GAP,
    DEFAULT_PACE_MARGIN,
    DEFAULT_PACE_WARNING_GAP,
    DEFAULT_POLLING_INTERVAL,
    DEFAULT_QUOTA_CYCLE_HOURS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SUCCESS_CODES,
    DEFAULT_WARNING_THRESHOLD,
    MIN_POLLING_INTERVAL,
)
from .core.types import QuotaApiMethod
from .normalizer import PaceSettings

lib_logger = logging.getLogger("quota_watcher")

ENV_PREFIX = "QUOTA_WATCHER_"


@dataclass(frozen=True)
class WatcherConfig:
    enabled: bool = True
    polling_interval: int = DEFAULT_POLLING_INTERVAL
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
    api_method: QuotaApiMethod = QuotaApiMethod.GET_USER_STATUS
    show_prompt_credits: bool = False
    show_plan_name: bool = False
    quota_cycle_hours: float = DEFAULT_QUOTA_CYCLE_HOURS
    pace_enabled: bool = True
    pace_margin: float = DEFAULT_PACE_MARGIN
    pace_warning_gap: float = DEFAULT_PACE_WARNING_GAP
    pace_critical_gap: float = DEFAULT_PACE_CRITICAL_GAP
    force_powershell: bool = False
    discovery_attempts: int = DEFAULT_DISCOVERY_ATTEMPTS
    discovery_retry_delay: float = DEFAULT_DISCOVERY_RETRY_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    success_codes: FrozenSet[Union[int, str]] = field(
        default_factory=lambda: DEFAULT_SUCCESS_CODES
    )

    def __post_init__(self):
        if self.polling_interval < MIN_POLLING_INTERVAL:
            object.__setattr__(self, "polling_interval", MIN_POLLING_INTERVAL)

    def pace_settings(self) -> PaceSettings:
        return PaceSettings(
            enabled=self.pace_enabled,
            cycle_hours=self.quota_cycle_hours,
            margin=self.pace_margin,
            warning_gap=self.pace_warning_gap,
            critical_gap=self.pace_critical_gap,
        )

    def with_overrides(self, **changes) -> "WatcherConfig":
        """Copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


# =============================================================================
# ENVIRONMENT PARSING
# =============================================================================


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    val = env.get(key, "").strip().lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    if val:
        lib_logger.warning(f"Invalid boolean for {key}: {val!r}, using {default}")
    return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    val = env.get(key)
    if val:
        try:
            return int(val)
        except ValueError:
            lib_logger.warning(f"Invalid integer for {key}: {val!r}, using {default}")
    return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    val = env.get(key)
    if val:
        try:
            return float(val)
        except ValueError:
            lib_logger.warning(f"Invalid number for {key}: {val!r}, using {default}")
    return default


def parse_success_codes(value: str) -> FrozenSet[Union[int, str]]:
    """Parse a comma separated list; numeric entries match both as int and string."""
    codes = set()
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        codes.add(item.lower())
        try:
            codes.add(int(item))
        except ValueError:
            pass
    return frozenset(codes)


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
    load_env_file: bool = True,
) -> WatcherConfig:
    """
    Build a WatcherConfig from the environment.

    Args:
        environ: Mapping to read instead of ``os.environ``.
        dotenv_path: Explicit ``.env`` file; default is python-dotenv's lookup.
        load_env_file: Whether to load a ``.env`` file into ``os.environ`` first.
    """
    if load_env_file:
        load_dotenv(dotenv_path=dotenv_path, override=False)
    env = os.environ if environ is None else environ
    p = ENV_PREFIX

    api_method = QuotaApiMethod.GET_USER_STATUS
    raw_method = env.get(f"{p}API_METHOD")
    if raw_method:
        try:
            api_method = QuotaApiMethod.parse(raw_method)
        except ValueError:
            lib_logger.warning(f"Invalid {p}API_METHOD {raw_method!r}, using {api_method.value}")

    polling_interval = _env_int(env, f"{p}POLLING_INTERVAL", DEFAULT_POLLING_INTERVAL)
    if polling_interval < MIN_POLLING_INTERVAL:
        lib_logger.warning(
            f"{p}POLLING_INTERVAL={polling_interval} is below {MIN_POLLING_INTERVAL}s, clamping"
        )

    success_codes = DEFAULT_SUCCESS_CODES
    raw_codes = env.get(f"{p}SUCCESS_CODES")
    if raw_codes:
        success_codes = parse_success_codes(raw_codes) or DEFAULT_SUCCESS_CODES

    config = WatcherConfig(
        enabled=_env_bool(env, f"{p}ENABLED", True),
        polling_interval=polling_interval,
        warning_threshold=_env_float(env, f"{p}WARNING_THRESHOLD", DEFAULT_WARNING_THRESHOLD),
        critical_threshold=_env_float(env, f"{p}CRITICAL_THRESHOLD", DEFAULT_CRITICAL_THRESHOLD),
        api_method=api_method,
        show_prompt_credits=_env_bool(env, f"{p}SHOW_PROMPT_CREDITS", False),
        show_plan_name=_env_bool(env, f"{p}SHOW_PLAN_NAME", False),
        quota_cycle_hours=_env_float(env, f"{p}QUOTA_CYCLE_HOURS", DEFAULT_QUOTA_CYCLE_HOURS),
        pace_enabled=_env_bool(env, f"{p}PACE_ENABLED", True),
        pace_margin=_env_float(env, f"{p}PACE_MARGIN", DEFAULT_PACE_MARGIN),
        pace_warning_gap=_env_float(env, f"{p}PACE_WARNING_GAP", DEFAULT_PACE_WARNING_GAP),
        pace_critical_gap=_env_float(env, f"{p}PACE_CRITICAL_GAP", DEFAULT_PACE_CRITICAL_GAP),
        force_powershell=_env_bool(env, f"{p}FORCE_POWERSHELL", False),
        discovery_attempts=max(
            1, _env_int(env, f"{p}DISCOVERY_ATTEMPTS", DEFAULT_DISCOVERY_ATTEMPTS)
        ),
        discovery_retry_delay=_env_float(
            env, f"{p}DISCOVERY_RETRY_DELAY", DEFAULT_DISCOVERY_RETRY_DELAY
        ),
        request_timeout=_env_float(env, f"{p}REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        success_codes=success_codes,
    )

    if config.critical_threshold > config.warning_threshold:
        lib_logger.warning(
            f"Critical threshold ({config.critical_threshold}%) is above the warning "
            f"threshold ({config.warning_threshold}%)"
        )
    return config
