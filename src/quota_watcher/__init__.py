# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from typing import TYPE_CHECKING

from .config import WatcherConfig, load_config
from .core.types import (
    CredentialBundle,
    ModelQuotaInfo,
    PaceStatus,
    QuotaApiMethod,
    QuotaLevel,
    QuotaSnapshot,
)
from .watcher import QuotaWatcher

# Lower-level building blocks are lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .client import QuotaClient
    from .discovery import CredentialDiscovery
    from .normalizer import ResponseNormalizer
    from .polling import PollingEngine
    from .platforms import PlatformDetector

__all__ = [
    "QuotaWatcher",
    "WatcherConfig",
    "load_config",
    "CredentialBundle",
    "ModelQuotaInfo",
    "PaceStatus",
    "QuotaApiMethod",
    "QuotaLevel",
    "QuotaSnapshot",
    "QuotaClient",
    "CredentialDiscovery",
    "ResponseNormalizer",
    "PollingEngine",
    "PlatformDetector",
]


def __getattr__(name):
    """Lazy-load the individual components."""
    if name == "QuotaClient":
        from .client import QuotaClient

        return QuotaClient
    if name == "CredentialDiscovery":
        from .discovery import CredentialDiscovery

        return CredentialDiscovery
    if name == "ResponseNormalizer":
        from .normalizer import ResponseNormalizer

        return ResponseNormalizer
    if name == "PollingEngine":
        from .polling import PollingEngine

        return PollingEngine
    if name == "PlatformDetector":
        from .platforms import PlatformDetector

        return PlatformDetector
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
