# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Quota polling state machine.

    idle -> first_fetch -> steady_polling <-> retrying -> stopped(error)

A repeating timer fetches quota every interval. A failed fetch arms a
one-shot retry after RETRY_DELAY; while it is pending, timer ticks are
skipped. After MAX_RETRY_COUNT retries the repeating timer is stopped and a
single terminal error is reported.

Timers go through a Scheduler so tests can drive the engine without real
time passing.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

from .client import QuotaClient
from .core.constants import DEFAULT_REQUEST_TIMEOUT, MAX_RETRY_COUNT, RETRY_DELAY
from .core.types import (
    CredentialBundle,
    FetchStatus,
    PollingPhase,
    PollingState,
    QuotaApiMethod,
    QuotaSnapshot,
)
from .error_handler import describe_error, is_retryable_fetch_error
from .failure_logger import log_fetch_failure
from .normalizer import ResponseNormalizer, wrap_response

lib_logger = logging.getLogger("quota_watcher")

AsyncCallback = Callable[[], Awaitable[None]]
UpdateCallback = Callable[[QuotaSnapshot], Any]
ErrorCallback = Callable[[BaseException], Any]
StatusCallback = Callable[[FetchStatus, int], Any]


# =============================================================================
# SCHEDULING
# =============================================================================


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: AsyncCallback) -> TimerHandle: ...

    def call_every(self, interval: float, callback: AsyncCallback) -> TimerHandle: ...


class _RepeatingHandle:
    def __init__(self, task: "asyncio.Task[None]"):
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()


class AsyncioScheduler:
    """Runs callbacks on the current event loop; each firing becomes a task."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, callback: AsyncCallback) -> None:
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def call_later(self, delay: float, callback: AsyncCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self._spawn, callback)

    def call_every(self, interval: float, callback: AsyncCallback) -> TimerHandle:
        async def _loop():
            while True:
                await asyncio.sleep(interval)
                self._spawn(callback)

        return _RepeatingHandle(asyncio.ensure_future(_loop()))


# =============================================================================
# ENGINE
# =============================================================================


class PollingEngine:
    """
    Periodically fetches quota and reports snapshots, status and errors.

    Observers are single slots; registering a callback replaces the previous
    one. All fetches are serialized, so at most one request is in flight.
    """

    def __init__(
        self,
        client: QuotaClient,
        normalizer: ResponseNormalizer,
        *,
        api_method: QuotaApiMethod = QuotaApiMethod.GET_USER_STATUS,
        credentials: Optional[CredentialBundle] = None,
        scheduler: Optional[Scheduler] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_retry_count: int = MAX_RETRY_COUNT,
        retry_delay: float = RETRY_DELAY,
    ):
        self.client = client
        self.normalizer = normalizer
        self.api_method = api_method
        self.credentials = credentials
        self.scheduler = scheduler or AsyncioScheduler()
        self.request_timeout = request_timeout
        self.max_retry_count = max_retry_count
        self.retry_delay = retry_delay

        self.state = PollingState()
        self.phase = PollingPhase.IDLE
        self.last_snapshot: Optional[QuotaSnapshot] = None
        self.last_error: Optional[BaseException] = None

        self._timer: Optional[TimerHandle] = None
        self._retry_handle: Optional[TimerHandle] = None
        # Interval to arm once a fetch started by retry_from_error succeeds
        self._rearm_interval: Optional[float] = None
        # Set by stop_polling; a retry that fails afterwards ends quietly
        self._stopped = False
        self._fetch_lock = asyncio.Lock()

        self._update_callback: Optional[UpdateCallback] = None
        self._error_callback: Optional[ErrorCallback] = None
        self._status_callback: Optional[StatusCallback] = None

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def on_quota_update(self, callback: UpdateCallback) -> None:
        self._update_callback = callback

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callback = callback

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callback = callback

    def _emit_status(self, status: FetchStatus, retry_count: int = 0) -> None:
        self._notify("status", self._status_callback, status, retry_count)

    def _notify(self, kind: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            lib_logger.warning(f"{kind.capitalize()} observer failed: {e}")

    # =========================================================================
    # CONTROL
    # =========================================================================

    @property
    def is_polling(self) -> bool:
        return self._timer is not None

    async def start_polling(self, interval: float) -> None:
        """Fetch once and arm the repeating timer. Ignored while a start is in progress."""
        if self.state.transition_lock:
            lib_logger.debug("start_polling already in progress, ignoring")
            return

        self.state.transition_lock = True
        try:
            self.stop_polling()
            self._stopped = False
            self.phase = PollingPhase.FIRST_FETCH
            lib_logger.info(f"Starting quota polling every {interval}s ({self.api_method.value})")
            await self._fetch()
            if self.phase is PollingPhase.STOPPED:
                return
            self._timer = self.scheduler.call_every(interval, self._tick)
        finally:
            self.state.transition_lock = False

    def stop_polling(self) -> None:
        """Cancel the repeating timer. A pending retry still runs once but arms and reports nothing."""
        self._rearm_interval = None
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            lib_logger.debug("Polling timer stopped")
        if self.phase is not PollingPhase.STOPPED:
            self.phase = PollingPhase.IDLE

    async def retry_from_error(self, interval: float) -> None:
        """Reset the retry ladder and fetch once; polling resumes only after a success."""
        lib_logger.info("Retrying quota fetch after error")
        self.state.reset_counters()
        self.state.is_first_attempt = True
        self.stop_polling()
        self._stopped = False
        self.phase = PollingPhase.FIRST_FETCH
        self._rearm_interval = interval
        try:
            await self._fetch()
        finally:
            # Only this fetch may re-arm; a later success from the retry ladder does not
            self._rearm_interval = None

    async def quick_refresh(self) -> Optional[QuotaSnapshot]:
        """
        Fetch once right now, even while a retry is pending.

        Counters and timers are left alone; a failure is only logged.
        """
        async with self._fetch_lock:
            try:
                snapshot = await self._request_snapshot()
            except Exception as e:
                lib_logger.warning(f"Quick refresh failed: {describe_error(e)}")
                return None
        self.last_snapshot = snapshot
        self._notify("update", self._update_callback, snapshot)
        return snapshot

    def set_credentials(self, bundle: CredentialBundle) -> None:
        self.credentials = bundle
        self.state.reset_counters()
        lib_logger.debug(
            f"Credentials updated: connect_port={bundle.connect_port}, "
            f"extension_port={bundle.extension_port}"
        )

    def set_api_method(self, method: QuotaApiMethod) -> None:
        self.api_method = method
        self.state.reset_counters()
        lib_logger.info(f"Switched quota API to {method.value}")

    def dispose(self) -> None:
        self.stop_polling()

    def cancel_retry(self) -> None:
        """Drop a scheduled retry. Only used on shutdown, once the HTTP client is closed."""
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self.state.is_retrying = False

    # =========================================================================
    # FETCH CYCLE
    # =========================================================================

    async def _tick(self) -> None:
        if self.state.is_retrying:
            lib_logger.debug("Retry pending, skipping scheduled poll")
            return
        await self._fetch()

    async def _retry(self) -> None:
        self._retry_handle = None
        self.state.is_retrying = False
        await self._fetch()

    async def _request_snapshot(self) -> QuotaSnapshot:
        payload = await self.client.call(self.api_method, self.credentials, self.request_timeout)
        return self.normalizer.normalize(wrap_response(self.api_method, payload))

    async def _fetch(self) -> None:
        async with self._fetch_lock:
            if self.state.is_first_attempt:
                self._emit_status(FetchStatus.FETCHING)
            try:
                snapshot = await self._request_snapshot()
            except Exception as e:
                self._handle_failure(e)
                return
            self._handle_success(snapshot)

    def _handle_success(self, snapshot: QuotaSnapshot) -> None:
        self.state.reset_counters()
        self.state.is_first_attempt = False
        self.last_snapshot = snapshot
        self.last_error = None
        lib_logger.debug(f"Quota fetched: {len(snapshot.models)} model(s)")

        if self._rearm_interval is not None and self._timer is None:
            self._timer = self.scheduler.call_every(self._rearm_interval, self._tick)
        self._rearm_interval = None
        # start_polling arms its timer right after this first fetch returns
        if self._timer is not None or self.state.transition_lock:
            self.phase = PollingPhase.STEADY_POLLING
        elif self.phase is not PollingPhase.STOPPED:
            self.phase = PollingPhase.IDLE

        if self._update_callback is None:
            lib_logger.warning("No quota update observer registered")
        self._notify("update", self._update_callback, snapshot)

    def _handle_failure(self, error: BaseException) -> None:
        self.state.consecutive_errors += 1
        self.last_error = error
        lib_logger.error(
            f"Quota fetch failed ({self.state.consecutive_errors} in a row): "
            f"{describe_error(error)}"
        )
        log_fetch_failure(error, self.state.consecutive_errors, self.api_method.value)

        if self._stopped:
            lib_logger.info("Polling was stopped, not retrying")
            self.state.is_retrying = False
            return

        if not is_retryable_fetch_error(error):
            self._enter_error(error)
            return

        if self.state.retry_count < self.max_retry_count:
            self.state.retry_count += 1
            self.state.is_retrying = True
            self.phase = PollingPhase.RETRYING
            lib_logger.info(
                f"Retry {self.state.retry_count}/{self.max_retry_count} "
                f"in {self.retry_delay}s"
            )
            self._emit_status(FetchStatus.RETRYING, self.state.retry_count)
            self._retry_handle = self.scheduler.call_later(self.retry_delay, self._retry)
            return

        lib_logger.error(f"Reached max retry count ({self.max_retry_count}), stopping polling")
        self._enter_error(error)

    def _enter_error(self, error: BaseException) -> None:
        self.stop_polling()
        self.state.is_retrying = False
        self.phase = PollingPhase.STOPPED
        self._notify("error", self._error_callback, error)
