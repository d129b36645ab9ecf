# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions shared across the quota watcher.

Value objects handed between components (credential bundles, snapshots)
are frozen dataclasses so they can be passed around by reference without
anyone editing them in place.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .constants import GET_COMMAND_MODEL_CONFIGS_PATH, GET_USER_STATUS_PATH


# =============================================================================
# ENUMS
# =============================================================================


class QuotaApiMethod(str, Enum):
    """Which RPC is used to read quota data."""

    GET_USER_STATUS = "GET_USER_STATUS"  # Plan, prompt credits and models
    COMMAND_MODEL_CONFIG = "COMMAND_MODEL_CONFIG"  # Models only

    @property
    def path(self) -> str:
        if self is QuotaApiMethod.GET_USER_STATUS:
            return GET_USER_STATUS_PATH
        return GET_COMMAND_MODEL_CONFIGS_PATH

    @classmethod
    def parse(cls, value: Union[str, "QuotaApiMethod"]) -> "QuotaApiMethod":
        """Accept enum members, exact values or loose spellings like 'user_status'."""
        if isinstance(value, QuotaApiMethod):
            return value
        normalized = value.strip().upper().replace("-", "_")
        for member in cls:
            if normalized in (member.value, member.name):
                return member
        if normalized in ("USER_STATUS", "GETUSERSTATUS"):
            return cls.GET_USER_STATUS
        if normalized in ("MODEL_CONFIG", "COMMAND_MODEL_CONFIGS", "MODEL_CONFIGS"):
            return cls.COMMAND_MODEL_CONFIG
        raise ValueError(f"Unknown quota API method: {value!r}")


class PaceStatus(str, Enum):
    """Usage pace relative to a linear spend over the quota cycle."""

    AHEAD = "ahead"
    ON_TRACK = "on_track"
    BEHIND = "behind"
    CRITICAL = "critical"


class QuotaLevel(str, Enum):
    """Severity bucket for a remaining-quota percentage."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    DEPLETED = "depleted"


class FetchStatus(str, Enum):
    """Transient status reported to the status observer."""

    FETCHING = "fetching"
    RETRYING = "retrying"


class PollingPhase(str, Enum):
    """Coarse state of the polling engine."""

    IDLE = "idle"
    FIRST_FETCH = "first_fetch"
    STEADY_POLLING = "steady_polling"
    RETRYING = "retrying"
    STOPPED = "stopped"


# =============================================================================
# DISCOVERY TYPES
# =============================================================================


@dataclass(frozen=True)
class ProcessCandidate:
    """One process block parsed from a process-list command."""

    pid: int
    command_line: str


@dataclass(frozen=True)
class ProcessCredentials:
    """Credentials extracted from the selected process's command line."""

    pid: int
    extension_port: int  # 0 when the flag is missing
    csrf_token: str


@dataclass(frozen=True)
class CredentialBundle:
    """
    Everything needed to talk to the language server.

    Replaced wholesale on re-discovery, never edited field by field.
    """

    extension_port: int  # Plain HTTP fallback port, 0 if unknown
    connect_port: int  # HTTPS port found by probing
    csrf_token: str = field(repr=False)

    @property
    def has_http_fallback(self) -> bool:
        return self.extension_port > 0

    @property
    def masked_token(self) -> str:
        return mask_token(self.csrf_token)


@dataclass(frozen=True)
class PlatformErrorMessages:
    """OS-specific guidance surfaced when discovery gives up."""

    process_not_found: str
    command_not_available: str
    requirements: Tuple[str, ...]


# =============================================================================
# RPC RESPONSE VARIANTS
# =============================================================================


@dataclass(frozen=True)
class UserStatusResponse:
    """Raw GetUserStatus payload."""

    payload: Dict[str, Any]


@dataclass(frozen=True)
class ModelConfigResponse:
    """Raw GetCommandModelConfigs payload."""

    payload: Dict[str, Any]


QuotaResponse = Union[UserStatusResponse, ModelConfigResponse]


# =============================================================================
# SNAPSHOT TYPES
# =============================================================================


@dataclass(frozen=True)
class PromptCreditsInfo:
    available: float
    monthly: float
    used_percentage: float
    remaining_percentage: float


@dataclass(frozen=True)
class ModelQuotaInfo:
    """Normalized quota state of a single model."""

    label: str
    model_id: str
    remaining_fraction: Optional[float]
    remaining_percentage: Optional[float]
    is_exhausted: bool
    reset_time: datetime
    time_until_reset: timedelta
    time_until_reset_formatted: str
    usage_pace_gap: Optional[float] = None
    pace_status: Optional[PaceStatus] = None


@dataclass(frozen=True)
class QuotaSnapshot:
    """
    Result of one successful fetch.

    Produced fresh per poll and handed to the update observer.
    """

    timestamp: datetime
    models: Tuple[ModelQuotaInfo, ...]
    prompt_credits: Optional[PromptCreditsInfo] = None
    plan_name: Optional[str] = None

    @property
    def exhausted_models(self) -> List[ModelQuotaInfo]:
        return [m for m in self.models if m.is_exhausted]


# =============================================================================
# POLLING STATE
# =============================================================================


@dataclass
class PollingState:
    """
    Mutable bookkeeping of the polling engine.

    Only the engine mutates this, and only from the event loop thread.
    """

    consecutive_errors: int = 0
    retry_count: int = 0
    is_retrying: bool = False
    is_first_attempt: bool = True
    transition_lock: bool = False

    def reset_counters(self) -> None:
        self.consecutive_errors = 0
        self.retry_count = 0


def mask_token(token: Optional[str]) -> str:
    """Shorten a secret for logging."""
    if not token:
        return "<none>"
    return f"{token[:8]}..."
