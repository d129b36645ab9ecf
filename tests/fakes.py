"""Test doubles shared by the test modules."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from quota_watcher.core.types import PlatformErrorMessages
from quota_watcher.discovery import CommandResult
from quota_watcher.error_handler import ProcessNotFoundError

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def model_entry(
    label: str,
    model: str,
    fraction: Optional[float] = 0.5,
    reset_in: timedelta = timedelta(hours=1),
    with_quota: bool = True,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"label": label, "modelOrAlias": {"model": model}}
    if with_quota:
        quota: Dict[str, Any] = {"resetTime": iso(FIXED_NOW + reset_in)}
        if fraction is not None:
            quota["remainingFraction"] = fraction
        entry["quotaInfo"] = quota
    return entry


def user_status_payload(models: List[Dict[str, Any]], **plan) -> Dict[str, Any]:
    plan_status = {
        "planInfo": {
            "planName": plan.get("plan_name", "Pro"),
            "monthlyPromptCredits": plan.get("monthly", 500),
        },
        "availablePromptCredits": plan.get("available", 400),
    }
    return {
        "userStatus": {
            "name": "Test User",
            "planStatus": plan_status,
            "cascadeModelConfigData": {"clientModelConfigs": models},
        }
    }


# =============================================================================
# SUBPROCESS
# =============================================================================


class FakeRunner:
    """
    Command runner returning canned results.

    ``responses`` maps a substring of the command to an outcome: a
    CommandResult, an exception instance to raise, or a list of those used
    in order (the last one repeats).
    """

    def __init__(self, responses: Dict[str, Any]):
        self.responses = responses
        self.calls: List[Tuple[str, float]] = []

    async def __call__(self, command: str, timeout: float) -> CommandResult:
        self.calls.append((command, timeout))
        for marker, outcome in self.responses.items():
            if marker not in command:
                continue
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return CommandResult(returncode=1, stdout="", stderr="")

    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]


def ok(stdout: str) -> CommandResult:
    return CommandResult(returncode=0, stdout=stdout, stderr="")


def failed(stderr: str, returncode: int = 1) -> CommandResult:
    return CommandResult(returncode=returncode, stdout="", stderr=stderr)


# =============================================================================
# HTTP
# =============================================================================


class RecordingHandler:
    """httpx.MockTransport handler that records requests and delegates to ``respond``."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


def client_factory(handler: Callable[[httpx.Request], httpx.Response]):
    def build() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return build


# =============================================================================
# SCHEDULER
# =============================================================================


class ManualHandle:
    def __init__(self, delay: float, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers only fire when a test says so."""

    def __init__(self):
        self.one_shots: List[ManualHandle] = []
        self.repeating: List[ManualHandle] = []

    def call_later(self, delay, callback) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.one_shots.append(handle)
        return handle

    def call_every(self, interval, callback) -> ManualHandle:
        handle = ManualHandle(interval, callback)
        self.repeating.append(handle)
        return handle

    @property
    def pending_one_shots(self) -> List[ManualHandle]:
        return [h for h in self.one_shots if not h.cancelled and not h.fired]

    @property
    def active_repeating(self) -> List[ManualHandle]:
        return [h for h in self.repeating if not h.cancelled]

    async def fire_one_shots(self) -> int:
        """Fire the one-shot timers pending right now; returns how many fired."""
        pending = self.pending_one_shots
        for handle in pending:
            handle.fired = True
            await handle.callback()
        return len(pending)

    async def tick(self) -> None:
        for handle in self.active_repeating:
            await handle.callback()


# =============================================================================
# QUOTA CLIENT
# =============================================================================


class FakeQuotaClient:
    """Stands in for QuotaClient; outcomes are payload dicts or exceptions (last repeats)."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.closed = False
        self.success_codes = frozenset()
        self.timeout = None

    async def call(self, method, bundle, timeout=None):
        self.calls.append((method, bundle))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def aclose(self):
        self.closed = True


# =============================================================================
# DISCOVERY
# =============================================================================


class FakeDiscovery:
    """Stands in for CredentialDiscovery; None entries simulate a failed discovery."""

    def __init__(self, *bundles):
        self.bundles = list(bundles)
        self.calls = []
        self.last_error = None

    async def discover(self, max_attempts=3, retry_delay=2.0):
        self.calls.append((max_attempts, retry_delay))
        bundle = self.bundles.pop(0) if len(self.bundles) > 1 else self.bundles[0]
        if bundle is None:
            self.last_error = ProcessNotFoundError("language_server process not found")
        return bundle

    def error_messages(self):
        return PlatformErrorMessages(
            process_not_found="language_server process not found",
            command_not_available="ps unavailable",
            requirements=("Antigravity is running", "language_server_linux process is running"),
        )
