# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Selects the platform strategy and process name for the running OS."""

import platform
from typing import Optional

from ..core.constants import (
    LINUX_PROCESS_NAME,
    MACOS_PROCESS_NAME,
    WINDOWS_PROCESS_NAME,
)
from ..error_handler import UnsupportedPlatformError
from .base import PlatformStrategy
from .unix import UnixStrategy
from .windows import WindowsStrategy

_SYSTEM_ALIASES = {
    "windows": "windows",
    "win32": "windows",
    "cygwin": "windows",
    "darwin": "darwin",
    "macos": "darwin",
    "linux": "linux",
}


class PlatformDetector:
    """
    Pure function of the OS, packaged as an object so tests can pin the OS.

    Args:
        system: OS name as reported by ``platform.system()`` or ``sys.platform``.
            Defaults to the running OS.
        force_powershell: Start the Windows strategy in PowerShell mode.
    """

    def __init__(
        self,
        system: Optional[str] = None,
        force_powershell: bool = False,
    ):
        raw = system or platform.system()
        self.system = _SYSTEM_ALIASES.get(raw.lower())
        if self.system is None:
            raise UnsupportedPlatformError(f"Unsupported platform: {raw}")
        self.force_powershell = force_powershell

    def process_name(self) -> str:
        if self.system == "windows":
            return WINDOWS_PROCESS_NAME
        if self.system == "darwin":
            # ps is grepped by substring, which also covers the _arm build
            return MACOS_PROCESS_NAME
        return LINUX_PROCESS_NAME

    def strategy(self) -> PlatformStrategy:
        if self.system == "windows":
            return WindowsStrategy(force_powershell=self.force_powershell)
        return UnixStrategy(self.system)
