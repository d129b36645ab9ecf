import pytest

from quota_watcher.error_handler import UnsupportedPlatformError, is_retryable_fetch_error
from quota_watcher.platforms import PlatformDetector, UnixStrategy, WindowsStrategy


@pytest.mark.parametrize(
    "system, process_name, strategy_type",
    [
        ("Windows", "language_server_windows_x64.exe", WindowsStrategy),
        ("win32", "language_server_windows_x64.exe", WindowsStrategy),
        ("Darwin", "language_server_macos", UnixStrategy),
        ("Linux", "language_server_linux", UnixStrategy),
    ],
)
def test_detector_maps_os(system, process_name, strategy_type) -> None:
    detector = PlatformDetector(system=system)

    assert detector.process_name() == process_name
    assert isinstance(detector.strategy(), strategy_type)


def test_force_powershell_reaches_windows_strategy() -> None:
    strategy = PlatformDetector(system="Windows", force_powershell=True).strategy()

    assert strategy.uses_powershell


def test_unsupported_platform_fails_fast() -> None:
    with pytest.raises(UnsupportedPlatformError) as exc_info:
        PlatformDetector(system="SunOS")

    assert "SunOS" in str(exc_info.value)
    assert not is_retryable_fetch_error(exc_info.value)
