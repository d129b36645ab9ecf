# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Windows process discovery.

Processes are listed with WMIC. WMIC is gone from recent Windows builds
(21H1+ / Windows 11), so once it is reported missing the strategy moves to
PowerShell's ``Get-CimInstance`` for the rest of the process lifetime.
Ports come from ``netstat -ano``.
"""

import logging
import os
import re
from enum import Enum
from typing import List, Optional

from ..core.types import PlatformErrorMessages, ProcessCandidate
from ..error_handler import is_command_unavailable
from .base import (
    PlatformStrategy,
    parse_json_processes,
    parse_key_value_blocks,
    parse_listen_addresses,
)

lib_logger = logging.getLogger("quota_watcher")

# TCP    127.0.0.1:2873    0.0.0.0:0    LISTENING    4412
# TCP    [::1]:2873        [::]:0       LISTENING    4412
NETSTAT_LISTEN_RE = re.compile(
    r"(?P<addr>\d{1,3}(?:\.\d{1,3}){3}|\[[0-9a-fA-F:]*\]):(?P<port>\d+)\s+\S+\s+LISTENING",
    re.IGNORECASE,
)


class EnumerationMode(str, Enum):
    """How the Windows strategy lists processes."""

    WMIC = "wmic"
    POWERSHELL = "powershell"


class WindowsStrategy(PlatformStrategy):
    platform_name = "Windows"

    def __init__(self, force_powershell: bool = False, system_root: Optional[str] = None):
        root = system_root or os.environ.get("SystemRoot") or "C:\\Windows"
        self._powershell = f'"{root}\\System32\\WindowsPowerShell\\v1.0\\powershell.exe"'
        self._wmic = f'"{root}\\System32\\wbem\\wmic.exe"'
        self._netstat = f'"{root}\\System32\\netstat.exe"'
        self._findstr = f'"{root}\\System32\\findstr.exe"'
        self.mode = EnumerationMode.POWERSHELL if force_powershell else EnumerationMode.WMIC

    # =========================================================================
    # ENUMERATION MODE
    # =========================================================================

    @property
    def uses_powershell(self) -> bool:
        return self.mode is EnumerationMode.POWERSHELL

    def switch_to_powershell(self) -> bool:
        """
        Move from WMIC to PowerShell. The transition is one-way.

        Returns:
            True if the mode changed, False if PowerShell was already in use.
        """
        if self.mode is EnumerationMode.POWERSHELL:
            return False
        self.mode = EnumerationMode.POWERSHELL
        lib_logger.warning("WMIC is unavailable, switching to PowerShell process enumeration")
        return True

    def handle_command_error(self, error_text: str) -> bool:
        if self.mode is EnumerationMode.WMIC and is_command_unavailable(error_text):
            return self.switch_to_powershell()
        return False

    # =========================================================================
    # PROCESS LIST
    # =========================================================================

    def list_processes_command(self, process_name: str) -> str:
        if self.mode is EnumerationMode.POWERSHELL:
            return (
                f"{self._powershell} -NoProfile -Command "
                f"\"Get-CimInstance Win32_Process -Filter \\\"name='{process_name}'\\\" "
                f"| Select-Object ProcessId,CommandLine | ConvertTo-Json\""
            )
        return (
            f"{self._wmic} process where \"name='{process_name}'\" "
            f"get ProcessId,CommandLine /format:list"
        )

    def parse_process_candidates(self, output: str) -> List[ProcessCandidate]:
        # Output shape follows the tool, not the mode: a fallback may have
        # produced JSON while we still think we are on WMIC, or vice versa.
        from_json = parse_json_processes(output)
        if from_json is not None:
            return from_json
        return parse_key_value_blocks(output)

    # =========================================================================
    # LISTENING PORTS
    # =========================================================================

    def listening_ports_command(self, pid: int) -> str:
        return f'{self._netstat} -ano | {self._findstr} "{pid}" | {self._findstr} "LISTENING"'

    def parse_listening_ports(self, output: str, pid: Optional[int] = None) -> List[int]:
        lines = output.splitlines()
        if pid is not None:
            # findstr matches the PID anywhere, e.g. inside a port number
            lines = [line for line in lines if line.split()[-1:] == [str(pid)]]
        return parse_listen_addresses(lines, NETSTAT_LISTEN_RE)

    def error_messages(self) -> PlatformErrorMessages:
        if self.uses_powershell:
            command_not_available = "PowerShell command failed; please check system permissions"
            permission = "The system has permission to run PowerShell and netstat commands"
        else:
            command_not_available = (
                "wmic/PowerShell command unavailable; please check the system environment"
            )
            permission = (
                "The system has permission to run wmic/PowerShell and netstat commands "
                "(auto-fallback supported)"
            )
        return PlatformErrorMessages(
            process_not_found="language_server process not found",
            command_not_available=command_not_available,
            requirements=(
                "Antigravity is running",
                "language_server_windows_x64.exe process is running",
                permission,
            ),
        )
