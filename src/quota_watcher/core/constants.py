# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared constants for the quota watcher.

Wire-level values (RPC paths, header names) mirror what the Antigravity
language server expects. Timing values are in seconds.
"""

from typing import FrozenSet, Tuple, Union

# =============================================================================
# LANGUAGE SERVER RPC
# =============================================================================

RPC_HOST = "127.0.0.1"
RPC_SERVICE_PREFIX = "/exa.language_server_pb.LanguageServerService"

GET_USER_STATUS_PATH = f"{RPC_SERVICE_PREFIX}/GetUserStatus"
GET_COMMAND_MODEL_CONFIGS_PATH = f"{RPC_SERVICE_PREFIX}/GetCommandModelConfigs"
# Answers without a signed-in user, so it doubles as a liveness probe
GET_UNLEASH_DATA_PATH = f"{RPC_SERVICE_PREFIX}/GetUnleashData"

CSRF_HEADER = "X-Codeium-Csrf-Token"
CONNECT_PROTOCOL_HEADER = "Connect-Protocol-Version"
CONNECT_PROTOCOL_VERSION = "1"

IDE_NAME = "antigravity"
EXTENSION_NAME = "antigravity"
DEFAULT_LOCALE = "en"

# Application-level "code" values treated as success. Observed, not documented.
DEFAULT_SUCCESS_CODES: FrozenSet[Union[int, str]] = frozenset({0, "0", "ok", "success"})

# =============================================================================
# PROCESS DISCOVERY
# =============================================================================

WINDOWS_PROCESS_NAME = "language_server_windows_x64.exe"
MACOS_PROCESS_NAME = "language_server_macos"
LINUX_PROCESS_NAME = "language_server_linux"

# Command-line marker identifying the Antigravity flavour of the server
APP_DATA_DIR_MARKER = "--app_data_dir"
APP_NAME = "antigravity"

PROCESS_LIST_TIMEOUT = 15.0
PORT_LIST_TIMEOUT = 3.0
PORT_PROBE_TIMEOUT = 2.0

DEFAULT_DISCOVERY_ATTEMPTS = 3
DEFAULT_DISCOVERY_RETRY_DELAY = 2.0

# Loopback / any-interface forms accepted as local listeners
LOOPBACK_ADDRESSES: Tuple[str, ...] = (
    "127.0.0.1",
    "0.0.0.0",
    "[::1]",
    "[::]",
    "::1",
    "::",
    "*",
    "localhost",
)

# =============================================================================
# POLLING
# =============================================================================

MAX_RETRY_COUNT = 3
RETRY_DELAY = 5.0
DEFAULT_REQUEST_TIMEOUT = 5.0

DEFAULT_POLLING_INTERVAL = 60
MIN_POLLING_INTERVAL = 10

# =============================================================================
# DISPLAY / PACE DEFAULTS
# =============================================================================

DEFAULT_WARNING_THRESHOLD = 50.0
DEFAULT_CRITICAL_THRESHOLD = 30.0

DEFAULT_QUOTA_CYCLE_HOURS = 5.0
DEFAULT_PACE_MARGIN = 5.0
DEFAULT_PACE_WARNING_GAP = 15.0
DEFAULT_PACE_CRITICAL_GAP = 30.0
