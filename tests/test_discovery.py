import asyncio
import json

import httpx
import pytest

from fakes import FakeRunner, RecordingHandler, client_factory, failed, ok
from quota_watcher.discovery import CredentialDiscovery
from quota_watcher.error_handler import NoListeningPortsError, NoResponsivePortError, ProcessNotFoundError
from quota_watcher.platforms import EnumerationMode, UnixStrategy, WindowsStrategy
from quota_watcher.version_info import VersionInfo

TOKEN = "abcdef01-2345-6789-abcd-ef0123456789"

PS_OUTPUT = "\n".join(
    [
        " 812 /opt/windsurf/bin/language_server_linux_x64 --extension_server_port 50000 "
        "--csrf_token 0badc0de --app_data_dir windsurf",
        f"4412 /usr/share/antigravity/bin/language_server_linux_x64 "
        f"--extension_server_port 42001 --csrf_token {TOKEN} --app_data_dir antigravity",
    ]
)

SS_OUTPUT = "\n".join(
    [
        'LISTEN 0 4096 127.0.0.1:42105 0.0.0.0:* users:(("language_server",pid=4412,fd=11))',
        'LISTEN 0 4096 127.0.0.1:42100 0.0.0.0:* users:(("language_server",pid=4412,fd=10))',
    ]
)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def status_by_port(statuses):
    def respond(request: httpx.Request) -> httpx.Response:
        outcome = statuses[request.url.port]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={})

    return RecordingHandler(respond)


def linux_discovery(runner, handler, sleep=None) -> CredentialDiscovery:
    return CredentialDiscovery(
        strategy=UnixStrategy("linux"),
        process_name="language_server_linux",
        version_info=VersionInfo(extension_version="1.2.3", ide_version="0.9.0", os="linux"),
        runner=runner,
        client_factory=client_factory(handler),
        sleep=sleep or SleepRecorder(),
    )


@pytest.mark.asyncio
async def test_discover_returns_matching_candidate_and_first_working_port() -> None:
    runner = FakeRunner({"ps -ww": ok(PS_OUTPUT), "-sTCP:LISTEN": ok(SS_OUTPUT)})
    handler = status_by_port({42100: 404, 42105: 200})
    discovery = linux_discovery(runner, handler)

    bundle = await discovery.discover(max_attempts=3, retry_delay=2)

    assert bundle.csrf_token == TOKEN
    assert bundle.extension_port == 42001
    assert bundle.connect_port == 42105
    # Probed one at a time in ascending order
    assert [r.url.port for r in handler.requests] == [42100, 42105]
    assert "pid=4412," in runner.commands()[1]


@pytest.mark.asyncio
async def test_probe_request_shape() -> None:
    runner = FakeRunner({"ps -ww": ok(PS_OUTPUT), "-sTCP:LISTEN": ok(SS_OUTPUT)})
    handler = status_by_port({42100: 200, 42105: 200})

    await linux_discovery(runner, handler).discover(max_attempts=1)

    request = handler.requests[0]
    assert str(request.url) == (
        "https://127.0.0.1:42100/exa.language_server_pb.LanguageServerService/GetUnleashData"
    )
    assert request.headers["X-Codeium-Csrf-Token"] == TOKEN
    assert request.headers["Connect-Protocol-Version"] == "1"
    properties = json.loads(request.content)["context"]["properties"]
    assert properties["ide"] == "antigravity"
    assert properties["extensionVersion"] == "1.2.3"
    assert properties["ideVersion"] == "0.9.0"
    assert properties["os"] == "linux"


@pytest.mark.asyncio
async def test_probe_timeout_counts_as_failed_port() -> None:
    runner = FakeRunner({"ps -ww": ok(PS_OUTPUT), "-sTCP:LISTEN": ok(SS_OUTPUT)})
    handler = status_by_port({42100: httpx.ConnectTimeout("timed out"), 42105: 200})

    bundle = await linux_discovery(runner, handler).discover(max_attempts=1)

    assert bundle.connect_port == 42105


@pytest.mark.asyncio
async def test_exhausted_attempts_return_none_with_retry_delay() -> None:
    runner = FakeRunner({"ps -ww": ok("")})
    sleep = SleepRecorder()
    discovery = linux_discovery(runner, status_by_port({}), sleep)

    bundle = await discovery.discover(max_attempts=3, retry_delay=2)

    assert bundle is None
    assert len(runner.calls) == 3
    assert sleep.delays == [2, 2]
    assert isinstance(discovery.last_error, ProcessNotFoundError)
    messages = discovery.error_messages()
    assert str(discovery.last_error) == messages.process_not_found
    assert messages.requirements


@pytest.mark.asyncio
async def test_no_listening_ports_when_port_command_times_out() -> None:
    runner = FakeRunner({"ps -ww": ok(PS_OUTPUT), "-sTCP:LISTEN": asyncio.TimeoutError()})
    discovery = linux_discovery(runner, status_by_port({}))

    assert await discovery.discover(max_attempts=1) is None
    assert isinstance(discovery.last_error, NoListeningPortsError)


@pytest.mark.asyncio
async def test_no_responsive_port() -> None:
    runner = FakeRunner({"ps -ww": ok(PS_OUTPUT), "-sTCP:LISTEN": ok(SS_OUTPUT)})
    discovery = linux_discovery(runner, status_by_port({42100: 500, 42105: 403}))

    assert await discovery.discover(max_attempts=1) is None
    assert isinstance(discovery.last_error, NoResponsivePortError)


@pytest.mark.asyncio
async def test_later_attempt_can_succeed() -> None:
    runner = FakeRunner({"ps -ww": [ok(""), ok(PS_OUTPUT)], "-sTCP:LISTEN": ok(SS_OUTPUT)})
    sleep = SleepRecorder()
    discovery = linux_discovery(runner, status_by_port({42100: 200, 42105: 200}), sleep)

    bundle = await discovery.discover(max_attempts=3, retry_delay=1.5)

    assert bundle.connect_port == 42100
    assert sleep.delays == [1.5]


@pytest.mark.asyncio
async def test_overlapping_discoveries_share_one_run() -> None:
    runner = FakeRunner({"ps -ww": ok(PS_OUTPUT), "-sTCP:LISTEN": ok(SS_OUTPUT)})
    discovery = linux_discovery(runner, status_by_port({42100: 200, 42105: 200}))

    first, second = await asyncio.gather(discovery.discover(1), discovery.discover(1))

    assert first == second
    assert len([c for c in runner.commands() if c.startswith("ps")]) == 1


# =============================================================================
# WINDOWS POWERSHELL FALLBACK
# =============================================================================

WINDOWS_CMD = (
    r"C:\Users\dev\AppData\Local\Programs\Antigravity\bin\language_server_windows_x64.exe "
    f"--extension_server_port 61234 --csrf_token {TOKEN} --app_data_dir antigravity"
)
NETSTAT_OUTPUT = "  TCP    127.0.0.1:61240    0.0.0.0:0    LISTENING    9001"


@pytest.mark.asyncio
async def test_wmic_missing_switches_to_powershell_without_using_an_attempt() -> None:
    strategy = WindowsStrategy(system_root=r"C:\Windows")
    runner = FakeRunner(
        {
            "wmic.exe": failed("'wmic' is not recognized as an internal or external command"),
            "Get-CimInstance": ok(json.dumps({"ProcessId": 9001, "CommandLine": WINDOWS_CMD})),
            "netstat.exe": ok(NETSTAT_OUTPUT),
        }
    )
    sleep = SleepRecorder()
    discovery = CredentialDiscovery(
        strategy=strategy,
        process_name="language_server_windows_x64.exe",
        runner=runner,
        client_factory=client_factory(status_by_port({61240: 200})),
        sleep=sleep,
    )

    # A single attempt is enough: the PowerShell re-run does not consume it
    bundle = await discovery.discover(max_attempts=1, retry_delay=2)

    assert bundle is not None
    assert bundle.connect_port == 61240
    assert bundle.extension_port == 61234
    assert strategy.mode is EnumerationMode.POWERSHELL
    assert sleep.delays == []
    commands = runner.commands()
    assert "wmic.exe" in commands[0]
    assert "Get-CimInstance" in commands[1]


@pytest.mark.asyncio
async def test_powershell_failure_consumes_attempts() -> None:
    strategy = WindowsStrategy(force_powershell=True)
    runner = FakeRunner(
        {"Get-CimInstance": failed("powershell.exe: command not found", returncode=127)}
    )
    sleep = SleepRecorder()
    discovery = CredentialDiscovery(
        strategy=strategy,
        process_name="language_server_windows_x64.exe",
        runner=runner,
        client_factory=client_factory(status_by_port({})),
        sleep=sleep,
    )

    assert await discovery.discover(max_attempts=2, retry_delay=2) is None
    assert len(runner.calls) == 2
    assert sleep.delays == [2]
