# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Language server credential discovery.

Finds the Antigravity language server process, reads the CSRF token and
extension port from its command line, lists the ports it listens on and
probes them one by one until one answers the RPC API.

Flow per attempt:
1. Run the platform's process-list command and pick the right process
2. Run the listening-ports command for its PID
3. POST GetUnleashData to each port (ascending, sequential); first 200 wins
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import httpx

from .client import rpc_headers
from .core.constants import (
    DEFAULT_DISCOVERY_ATTEMPTS,
    DEFAULT_DISCOVERY_RETRY_DELAY,
    GET_UNLEASH_DATA_PATH,
    IDE_NAME,
    PORT_LIST_TIMEOUT,
    PORT_PROBE_TIMEOUT,
    PROCESS_LIST_TIMEOUT,
    RPC_HOST,
)
from .core.types import CredentialBundle, PlatformErrorMessages, mask_token
from .error_handler import (
    CommandUnavailableError,
    DiscoveryError,
    NoListeningPortsError,
    NoResponsivePortError,
    ProcessNotFoundError,
    is_command_unavailable,
)
from .platforms import PlatformDetector, PlatformStrategy
from .version_info import VersionInfo

lib_logger = logging.getLogger("quota_watcher")


# =============================================================================
# COMMAND EXECUTION
# =============================================================================


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[str, float], Awaitable[CommandResult]]
ClientFactory = Callable[[], httpx.AsyncClient]


async def run_shell_command(command: str, timeout: float) -> CommandResult:
    """
    Run a shell command, killing it if it outlives ``timeout``.

    Raises:
        asyncio.TimeoutError: The command did not finish in time.
        OSError: The shell itself could not be started.
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def _default_client_factory() -> httpx.AsyncClient:
    # The language server uses a locally generated certificate
    return httpx.AsyncClient(verify=False, timeout=PORT_PROBE_TIMEOUT)


def _preview(text: str, lines: int = 3) -> str:
    return "\n".join(text.strip().splitlines()[:lines]) or "(empty)"


# =============================================================================
# DISCOVERY
# =============================================================================


class CredentialDiscovery:
    """
    Retryable discovery of the language server's connection credentials.

    Args:
        detector: Platform detector; defaults to the running OS.
        strategy: Override the detector's strategy (tests).
        process_name: Override the detector's process name (tests).
        version_info: Version details sent in the probe request.
        runner: Coroutine running a shell command with a timeout.
        client_factory: Builds the HTTP client used for port probes.
        sleep: Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        detector: Optional[PlatformDetector] = None,
        *,
        strategy: Optional[PlatformStrategy] = None,
        process_name: Optional[str] = None,
        version_info: Optional[VersionInfo] = None,
        runner: Optional[CommandRunner] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if strategy is None or process_name is None:
            detector = detector or PlatformDetector()
        self.strategy = strategy or detector.strategy()
        self.process_name = process_name or detector.process_name()
        self.version_info = version_info or VersionInfo()
        self._runner = runner or run_shell_command
        self._client_factory = client_factory or _default_client_factory
        self._sleep = sleep
        self._inflight: Optional[asyncio.Task] = None
        self.last_error: Optional[DiscoveryError] = None

    def error_messages(self) -> PlatformErrorMessages:
        return self.strategy.error_messages()

    async def discover(
        self,
        max_attempts: int = DEFAULT_DISCOVERY_ATTEMPTS,
        retry_delay: float = DEFAULT_DISCOVERY_RETRY_DELAY,
    ) -> Optional[CredentialBundle]:
        """
        Discover credentials, retrying up to ``max_attempts`` times.

        Overlapping calls share the discovery already in progress.

        Returns:
            The credential bundle, or None once every attempt failed.
        """
        if self._inflight is not None and not self._inflight.done():
            lib_logger.debug("Discovery already running, joining it")
            return await asyncio.shield(self._inflight)

        task = asyncio.ensure_future(self._discover(max_attempts, retry_delay))
        self._inflight = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def _discover(self, max_attempts: int, retry_delay: float) -> Optional[CredentialBundle]:
        platform_name = self.strategy.platform_name
        messages = self.strategy.error_messages()
        self.last_error = None

        attempt = 1
        while attempt <= max_attempts:
            lib_logger.info(
                f"Detecting Antigravity process ({platform_name}, try {attempt}/{max_attempts})..."
            )
            try:
                bundle = await self._attempt()
                lib_logger.info(
                    f"Attempt {attempt} succeeded: extension_port={bundle.extension_port}, "
                    f"connect_port={bundle.connect_port}"
                )
                return bundle
            except CommandUnavailableError as e:
                if self.strategy.handle_command_error(str(e)):
                    # Same attempt again with the new enumeration mode; no retry slot used
                    lib_logger.info(f"Re-running attempt {attempt} with the fallback command")
                    continue
                self.last_error = e
                lib_logger.warning(
                    f"Attempt {attempt} failed: {e} ({messages.command_not_available})"
                )
            except DiscoveryError as e:
                self.last_error = e
                lib_logger.warning(f"Attempt {attempt} failed: {e}")

            if attempt < max_attempts:
                lib_logger.debug(f"Waiting {retry_delay}s before retrying...")
                await self._sleep(retry_delay)
            attempt += 1

        lib_logger.error(f"All {max_attempts} detection attempts failed. Please ensure:")
        for index, requirement in enumerate(messages.requirements, start=1):
            lib_logger.error(f"  {index}. {requirement}")
        return None

    async def _attempt(self) -> CredentialBundle:
        """Run one discovery attempt. Raises a DiscoveryError on any failed step."""
        messages = self.strategy.error_messages()
        command = self.strategy.list_processes_command(self.process_name)
        lib_logger.debug(f"Running process list command: {command}")

        try:
            result = await self._runner(command, PROCESS_LIST_TIMEOUT)
        except asyncio.TimeoutError:
            raise DiscoveryError(
                f"Process list command timed out after {PROCESS_LIST_TIMEOUT:.0f}s"
            )
        except OSError as e:
            raise CommandUnavailableError(str(e)) from e

        if result.returncode != 0:
            error_text = result.stderr.strip() or result.stdout.strip()
            if is_command_unavailable(error_text):
                raise CommandUnavailableError(error_text)
        lib_logger.debug(f"Process list output preview:\n{_preview(result.stdout)}")

        process = self.strategy.parse_process_list(result.stdout)
        if process is None:
            raise ProcessNotFoundError(messages.process_not_found)

        lib_logger.info(
            f"Found process PID {process.pid}: "
            f"extension_server_port={process.extension_port or '(not found)'}, "
            f"csrf_token={mask_token(process.csrf_token)}"
        )

        ports = await self.list_listening_ports(process.pid)
        if not ports:
            raise NoListeningPortsError(f"Process {process.pid} is not listening on any ports")

        connect_port = await self.find_working_port(ports, process.csrf_token)
        if connect_port is None:
            raise NoResponsivePortError("Unable to find a working API port")

        return CredentialBundle(
            extension_port=process.extension_port,
            connect_port=connect_port,
            csrf_token=process.csrf_token,
        )

    # =========================================================================
    # PORTS
    # =========================================================================

    async def list_listening_ports(self, pid: int) -> List[int]:
        command = self.strategy.listening_ports_command(pid)
        lib_logger.debug(f"Running port list command for PID {pid}: {command}")
        try:
            result = await self._runner(command, PORT_LIST_TIMEOUT)
        except (asyncio.TimeoutError, OSError) as e:
            lib_logger.warning(f"Failed to list listening ports for PID {pid}: {e!r}")
            return []

        ports = self.strategy.parse_listening_ports(result.stdout, pid=pid)
        lib_logger.debug(
            f"Listening ports for PID {pid}: {', '.join(map(str, ports)) or '(none)'}"
        )
        return ports

    async def find_working_port(self, ports: List[int], csrf_token: str) -> Optional[int]:
        """
        Probe ``ports`` in ascending order and return the first that answers.

        Probes run strictly one after another; a slow or hung port only costs
        its own timeout.
        """
        async with self._client_factory() as client:
            for port in sorted(ports):
                if await self.probe_port(client, port, csrf_token):
                    lib_logger.info(f"Port {port} answered the API probe")
                    return port
                lib_logger.debug(f"Port {port} probe failed")
        return None

    async def probe_port(self, client: httpx.AsyncClient, port: int, csrf_token: str) -> bool:
        url = f"https://{RPC_HOST}:{port}{GET_UNLEASH_DATA_PATH}"
        body = {
            "context": {
                "properties": {
                    "devMode": "false",
                    "extensionVersion": self.version_info.extension_version,
                    "hasAnthropicModelAccess": "true",
                    "ide": IDE_NAME,
                    "ideVersion": self.version_info.ide_version,
                    "installationId": "quota-watcher-detection",
                    "language": "UNSPECIFIED",
                    "os": self.version_info.os,
                    "requestedModelId": "MODEL_UNSPECIFIED",
                }
            }
        }
        try:
            response = await client.post(
                url,
                json=body,
                headers=rpc_headers(csrf_token),
                timeout=PORT_PROBE_TIMEOUT,
            )
        except httpx.HTTPError as e:
            lib_logger.debug(f"Port {port} connectivity error: {e!r}")
            return False
        lib_logger.debug(f"Port {port} responded with status {response.status_code}")
        return response.status_code == 200
