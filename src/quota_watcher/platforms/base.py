# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Platform strategy interface for language server discovery.

A strategy knows how to build the shell commands that list processes and
their listening ports on one OS family, and how to parse their output.
Candidate selection and credential extraction are shared.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Tuple

from ..core.constants import APP_NAME, LOOPBACK_ADDRESSES
from ..core.types import PlatformErrorMessages, ProcessCandidate, ProcessCredentials

lib_logger = logging.getLogger("quota_watcher")

EXTENSION_PORT_RE = re.compile(r"--extension_server_port[=\s]+(\d+)")
CSRF_TOKEN_RE = re.compile(r"--csrf_token[=\s]+([a-f0-9\-]+)", re.IGNORECASE)
APP_DATA_DIR_RE = re.compile(rf"--app_data_dir[=\s]+[\"']?{APP_NAME}\b", re.IGNORECASE)


def is_target_process(command_line: str) -> bool:
    """
    Check whether a command line belongs to the Antigravity language server.

    Other IDEs ship a same-named binary, so the process name alone is not
    enough. Matches ``--app_data_dir antigravity`` or an ``antigravity``
    path segment.
    """
    if not command_line:
        return False
    if APP_DATA_DIR_RE.search(command_line):
        return True
    lowered = command_line.lower()
    return f"/{APP_NAME}/" in lowered or f"\\{APP_NAME}\\" in lowered


def parse_json_processes(output: str) -> Optional[List[ProcessCandidate]]:
    """
    Parse ``ConvertTo-Json`` style output (a single object or an array).

    Returns None when the text is not JSON so callers can try other formats.
    """
    text = output.strip()
    if not text or text[0] not in "[{":
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None

    items = data if isinstance(data, list) else [data]
    candidates = []
    for item in items:
        if not isinstance(item, dict):
            continue
        pid = _coerce_pid(item.get("ProcessId"))
        command_line = item.get("CommandLine") or ""
        if pid is None:
            continue
        candidates.append(ProcessCandidate(pid=pid, command_line=str(command_line)))
    return candidates


def parse_key_value_blocks(output: str) -> List[ProcessCandidate]:
    """
    Parse ``Key=Value`` blocks separated by blank lines (WMIC list format).

    Each block describes one process, so arguments of different processes
    never get mixed up.
    """
    text = output.replace("\r", "")
    candidates = []
    for block in re.split(r"\n\s*\n", text):
        if not block.strip():
            continue
        pid_match = re.search(r"^\s*ProcessId=(\d+)\s*$", block, re.MULTILINE)
        command_match = re.search(r"^\s*CommandLine=(.*)$", block, re.MULTILINE)
        if not pid_match or not command_match:
            continue
        candidates.append(
            ProcessCandidate(
                pid=int(pid_match.group(1)),
                command_line=command_match.group(1).strip(),
            )
        )
    return candidates


def parse_listen_addresses(lines: Iterable[str], pattern: "re.Pattern[str]") -> List[int]:
    """
    Collect ports from lines matched by ``pattern``.

    The pattern must expose ``addr`` and ``port`` groups. Only loopback and
    any-interface bindings are kept. Result is deduplicated and sorted.
    """
    ports = set()
    for line in lines:
        for match in pattern.finditer(line):
            address = match.group("addr").lower()
            if address not in LOOPBACK_ADDRESSES:
                continue
            try:
                port = int(match.group("port"))
            except ValueError:
                continue
            if 0 < port < 65536:
                ports.add(port)
    return sorted(ports)


def _coerce_pid(value: Any) -> Optional[int]:
    try:
        pid = int(value)
    except (TypeError, ValueError):
        return None
    return pid if pid > 0 else None


class PlatformStrategy(ABC):
    """Builds and parses the process inspection commands for one OS family."""

    platform_name: str = "unknown"

    @abstractmethod
    def list_processes_command(self, process_name: str) -> str:
        """Shell command listing processes named ``process_name`` with their arguments."""

    @abstractmethod
    def parse_process_candidates(self, output: str) -> List[ProcessCandidate]:
        """Split process-list output into one candidate per process, in output order."""

    @abstractmethod
    def listening_ports_command(self, pid: int) -> str:
        """Shell command listing the TCP LISTEN sockets owned by ``pid``."""

    @abstractmethod
    def parse_listening_ports(self, output: str, pid: Optional[int] = None) -> List[int]:
        """
        Extract loopback listening ports, deduplicated and ascending.

        When ``pid`` is given, lines that clearly belong to another process
        are ignored.
        """

    @abstractmethod
    def error_messages(self) -> PlatformErrorMessages:
        """Static guidance shown when discovery gives up."""

    def handle_command_error(self, error_text: str) -> bool:
        """
        React to a failed process-list command.

        Returns True when the strategy changed how it enumerates processes
        and the same discovery attempt should be re-run.
        """
        return False

    def extract_credentials(self, command_line: str) -> Optional[Tuple[int, str]]:
        """
        Extract ``(extension_port, csrf_token)`` from a command line.

        The extension port defaults to 0 when the flag is missing. Returns
        None without a CSRF token.
        """
        token_match = CSRF_TOKEN_RE.search(command_line)
        if not token_match:
            return None
        port_match = EXTENSION_PORT_RE.search(command_line)
        extension_port = int(port_match.group(1)) if port_match else 0
        return extension_port, token_match.group(1)

    def parse_process_list(self, output: str) -> Optional[ProcessCredentials]:
        """
        Pick the language server process from process-list output.

        Non-Antigravity processes and candidates without a CSRF token are
        dropped. When several remain the first in output order wins and the
        others are logged as skipped.
        """
        candidates = self.parse_process_candidates(output)
        matching = [c for c in candidates if is_target_process(c.command_line)]
        lib_logger.debug(
            f"[{self.platform_name}] Found {len(candidates)} language_server process(es), "
            f"{len(matching)} belong to Antigravity"
        )

        usable: List[ProcessCredentials] = []
        for candidate in matching:
            credentials = self.extract_credentials(candidate.command_line)
            if credentials is None:
                lib_logger.debug(
                    f"[{self.platform_name}] PID {candidate.pid}: no CSRF token, skipping"
                )
                continue
            extension_port, csrf_token = credentials
            usable.append(
                ProcessCredentials(
                    pid=candidate.pid,
                    extension_port=extension_port,
                    csrf_token=csrf_token,
                )
            )

        if not usable:
            return None

        selected = usable[0]
        for skipped in usable[1:]:
            lib_logger.info(
                f"[{self.platform_name}] Skipping additional Antigravity process PID {skipped.pid}"
            )
        lib_logger.debug(f"[{self.platform_name}] Selected PID {selected.pid}")
        return selected
