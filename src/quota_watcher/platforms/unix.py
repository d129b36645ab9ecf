# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
macOS and Linux process discovery.

Processes are listed with ``ps``; listening ports with ``lsof`` (macOS) or
``ss`` with an ``lsof`` fallback (Linux).
"""

import logging
import re
import shlex
from typing import List, Optional

from ..core.types import PlatformErrorMessages, ProcessCandidate
from .base import PlatformStrategy, parse_listen_addresses

lib_logger = logging.getLogger("quota_watcher")

PS_LINE_RE = re.compile(r"^\s*(\d+)\s+(.*\S)\s*$")

# language_ 4412 user 10u IPv4 0x0 0t0 TCP 127.0.0.1:42100 (LISTEN)
LSOF_LISTEN_RE = re.compile(
    r"TCP\s+(?P<addr>\[[^\]]*\]|[^\s:\[\]%]+)(?:%\S+)?:(?P<port>\d+)\s+\(LISTEN\)"
)
# LISTEN 0 4096 127.0.0.1:42100 0.0.0.0:* users:(("language_server",pid=4412,fd=10))
SS_LISTEN_RE = re.compile(
    r"^LISTEN\s+\d+\s+\d+\s+(?P<addr>\[[^\]]*\]|[^\s:\[\]%]+)(?:%\S+)?:(?P<port>\d+)\s"
)


class UnixStrategy(PlatformStrategy):
    def __init__(self, system: str):
        self.system = system.lower()
        self.platform_name = "macOS" if self.system == "darwin" else "Linux"

    def list_processes_command(self, process_name: str) -> str:
        # The bracket trick keeps grep from matching its own command line
        pattern = f"[{process_name[0]}]{process_name[1:]}"
        return f"ps -ww -eo pid,args | grep -- {shlex.quote(pattern)}"

    def parse_process_candidates(self, output: str) -> List[ProcessCandidate]:
        candidates = []
        for line in output.splitlines():
            match = PS_LINE_RE.match(line)
            if not match:
                continue
            candidates.append(
                ProcessCandidate(pid=int(match.group(1)), command_line=match.group(2))
            )
        return candidates

    def listening_ports_command(self, pid: int) -> str:
        lsof = f"lsof -nP -a -iTCP -sTCP:LISTEN -p {pid}"
        if self.system == "darwin":
            return lsof
        return f"ss -tlnpH 2>/dev/null | grep 'pid={pid},' || {lsof}"

    def parse_listening_ports(self, output: str, pid: Optional[int] = None) -> List[int]:
        lsof_lines = []
        ss_lines = []
        for line in output.splitlines():
            stripped = line.strip()
            if stripped.startswith("LISTEN"):
                if pid is not None and "pid=" in stripped and f"pid={pid}," not in stripped:
                    continue
                ss_lines.append(stripped)
            elif "(LISTEN)" in stripped:
                fields = stripped.split()
                if pid is not None and len(fields) > 1 and fields[1].isdigit() and int(fields[1]) != pid:
                    continue
                lsof_lines.append(stripped)

        ports = set(parse_listen_addresses(lsof_lines, LSOF_LISTEN_RE))
        ports.update(parse_listen_addresses(ss_lines, SS_LISTEN_RE))
        return sorted(ports)

    def error_messages(self) -> PlatformErrorMessages:
        port_tool = "lsof" if self.system == "darwin" else "ss or lsof"
        binary = "language_server_macos" if self.system == "darwin" else "language_server_linux"
        return PlatformErrorMessages(
            process_not_found="language_server process not found",
            command_not_available=f"ps/{port_tool} command unavailable; please install it",
            requirements=(
                "Antigravity is running",
                f"{binary} process is running",
                f"The system has permission to run ps and {port_tool} commands",
            ),
        )
