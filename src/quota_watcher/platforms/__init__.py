# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .base import PlatformStrategy, is_target_process
from .detector import PlatformDetector
from .unix import UnixStrategy
from .windows import EnumerationMode, WindowsStrategy

__all__ = [
    "PlatformStrategy",
    "PlatformDetector",
    "UnixStrategy",
    "WindowsStrategy",
    "EnumerationMode",
    "is_target_process",
]
