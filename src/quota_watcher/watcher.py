# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
High-level watcher tying discovery, the RPC client and the polling engine
together.

Typical usage:

    watcher = QuotaWatcher(load_config())
    watcher.on_quota_update(render)
    watcher.on_error(report)
    await watcher.start()
    ...
    await watcher.stop()
"""

import logging
from typing import Any, Callable, Optional

from .client import QuotaClient
from .config import WatcherConfig
from .core.types import CredentialBundle, ModelQuotaInfo, QuotaLevel, QuotaSnapshot
from .discovery import CredentialDiscovery
from .error_handler import DiscoveryError
from .normalizer import ResponseNormalizer, quota_level, wrap_response
from .platforms import PlatformDetector
from .polling import ErrorCallback, PollingEngine, Scheduler, StatusCallback, UpdateCallback
from .version_info import VersionInfo

lib_logger = logging.getLogger("quota_watcher")


class QuotaWatcher:
    """
    Discovers the language server and keeps quota snapshots flowing to observers.

    Every collaborator can be injected; anything left out is built from
    ``config``.
    """

    def __init__(
        self,
        config: Optional[WatcherConfig] = None,
        *,
        detector: Optional[PlatformDetector] = None,
        discovery: Optional[CredentialDiscovery] = None,
        client: Optional[QuotaClient] = None,
        normalizer: Optional[ResponseNormalizer] = None,
        scheduler: Optional[Scheduler] = None,
        version_info: Optional[VersionInfo] = None,
        clock: Optional[Callable[[], Any]] = None,
    ):
        self.config = config or WatcherConfig()
        self.version_info = version_info or VersionInfo.detect()

        if discovery is None:
            detector = detector or PlatformDetector(force_powershell=self.config.force_powershell)
            discovery = CredentialDiscovery(detector, version_info=self.version_info)
        self.discovery = discovery

        self.client = client or QuotaClient(
            self.version_info,
            success_codes=self.config.success_codes,
            timeout=self.config.request_timeout,
        )
        self.normalizer = normalizer or ResponseNormalizer(self.config.pace_settings(), clock)
        self.engine = PollingEngine(
            self.client,
            self.normalizer,
            api_method=self.config.api_method,
            scheduler=scheduler,
            request_timeout=self.config.request_timeout,
        )
        self.credentials: Optional[CredentialBundle] = None
        self._error_callback: Optional[ErrorCallback] = None

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def on_quota_update(self, callback: UpdateCallback) -> None:
        self.engine.on_quota_update(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callback = callback
        self.engine.on_error(callback)

    def on_status(self, callback: StatusCallback) -> None:
        self.engine.on_status(callback)

    @property
    def last_snapshot(self) -> Optional[QuotaSnapshot]:
        return self.engine.last_snapshot

    def level_for(self, model: ModelQuotaInfo) -> QuotaLevel:
        if model.is_exhausted:
            return QuotaLevel.DEPLETED
        return quota_level(
            model.remaining_percentage,
            self.config.warning_threshold,
            self.config.critical_threshold,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> bool:
        """
        Discover credentials and start polling if enabled.

        Returns:
            False when discovery failed; the error observer receives a
            DiscoveryError carrying the platform requirements.
        """
        lib_logger.info(f"Starting {self.version_info.describe()}")
        if not await self.detect():
            return False
        if self.config.enabled:
            await self.engine.start_polling(self.config.polling_interval)
        else:
            lib_logger.info("Quota watching is disabled, not polling")
        return True

    async def redetect(self) -> bool:
        """Re-run discovery, swap in the new credentials and restart polling."""
        lib_logger.info("Re-detecting language server")
        self.engine.stop_polling()
        return await self.start()

    async def refresh(self) -> None:
        """Recover from a terminal error: reset the retry ladder and fetch again."""
        if self.engine.api_method is not self.config.api_method:
            self.engine.set_api_method(self.config.api_method)
        await self.engine.retry_from_error(self.config.polling_interval)

    async def quick_refresh(self) -> Optional[QuotaSnapshot]:
        return await self.engine.quick_refresh()

    async def apply_config(self, config: WatcherConfig) -> None:
        """Apply changed settings to the running components."""
        previous = self.config
        self.config = config

        if config.api_method is not previous.api_method:
            self.engine.set_api_method(config.api_method)
        self.normalizer.pace_settings = config.pace_settings()
        self.client.success_codes = frozenset(config.success_codes)
        self.client.timeout = config.request_timeout
        self.engine.request_timeout = config.request_timeout

        if not config.enabled:
            lib_logger.info("Quota watching disabled, stopping polling")
            self.engine.stop_polling()
            return
        if self.credentials is None:
            return
        if not self.engine.is_polling or config.polling_interval != previous.polling_interval:
            await self.engine.start_polling(config.polling_interval)

    async def stop(self) -> None:
        self.engine.dispose()
        self.engine.cancel_retry()
        await self.client.aclose()
        lib_logger.info("Quota watcher stopped")

    async def fetch_once(self) -> QuotaSnapshot:
        """
        Fetch a single snapshot outside the polling loop.

        Unlike :meth:`quick_refresh`, failures are raised to the caller.
        """
        method = self.config.api_method
        payload = await self.client.call(method, self.credentials, self.config.request_timeout)
        return self.normalizer.normalize(wrap_response(method, payload))

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    async def detect(self) -> bool:
        """Run discovery and hand the credentials to the engine."""
        bundle = await self.discovery.discover(
            self.config.discovery_attempts,
            self.config.discovery_retry_delay,
        )
        if bundle is None:
            error = self._discovery_failure()
            if self._error_callback:
                self._error_callback(error)
            return False

        self.credentials = bundle
        self.engine.set_credentials(bundle)
        return True

    def _discovery_failure(self) -> DiscoveryError:
        messages = self.discovery.error_messages()
        steps = "; ".join(
            f"{index}. {requirement}"
            for index, requirement in enumerate(messages.requirements, start=1)
        )
        error = DiscoveryError(f"{messages.process_not_found}. Please ensure: {steps}")
        error.__cause__ = self.discovery.last_error
        return error
