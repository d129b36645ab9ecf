# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Connect-style JSON RPC client for the language server quota endpoints.

Requests go over HTTPS to the probed connect port. The server's TLS
listener and its plain HTTP extension listener are separate ports; when a
TLS handshake is answered with plain HTTP the call is retried once over
HTTP on the extension port.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional, Union

import httpx

from .core.constants import (
    CONNECT_PROTOCOL_HEADER,
    CONNECT_PROTOCOL_VERSION,
    CSRF_HEADER,
    DEFAULT_LOCALE,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SUCCESS_CODES,
    EXTENSION_NAME,
    IDE_NAME,
    RPC_HOST,
)
from .core.types import CredentialBundle, QuotaApiMethod
from .error_handler import (
    ApplicationError,
    HttpStatusError,
    MissingCsrfTokenError,
    ProtocolMismatchError,
    RequestTimeoutError,
    ResponseParseError,
    TransportError,
    is_protocol_mismatch,
)
from .version_info import VersionInfo

lib_logger = logging.getLogger("quota_watcher")


def rpc_headers(csrf_token: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        CONNECT_PROTOCOL_HEADER: CONNECT_PROTOCOL_VERSION,
        CSRF_HEADER: csrf_token,
    }


def is_success_code(code: Any, success_codes: Iterable[Union[int, str]]) -> bool:
    """
    Check an embedded application ``code`` against the allow-list.

    A missing code counts as success. Strings compare case-insensitively.
    """
    if code is None:
        return True
    if isinstance(code, str):
        lowered = code.strip().lower()
        return any(isinstance(c, str) and c.lower() == lowered for c in success_codes)
    if isinstance(code, bool):
        return False
    return any(not isinstance(c, str) and c == code for c in success_codes)


class QuotaClient:
    """
    Issues quota RPCs against a credential bundle.

    Args:
        version_info: Sent as ``ideVersion`` in the request metadata.
        success_codes: Application codes treated as success.
        timeout: Default per-request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        version_info: Optional[VersionInfo] = None,
        *,
        success_codes: Optional[Iterable[Union[int, str]]] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.version_info = version_info or VersionInfo()
        self.success_codes = frozenset(
            success_codes if success_codes is not None else DEFAULT_SUCCESS_CODES
        )
        self.timeout = timeout
        self._transport = transport
        self._clients: Dict[str, httpx.AsyncClient] = {}

    def _get_client(self, scheme: str) -> httpx.AsyncClient:
        client = self._clients.get(scheme)
        if client is None or client.is_closed:
            # Self-signed certificate on the local listener
            client = httpx.AsyncClient(verify=False, transport=self._transport)
            self._clients[scheme] = client
        return client

    def _request_body(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "ideName": IDE_NAME,
                "extensionName": EXTENSION_NAME,
                "locale": DEFAULT_LOCALE,
                "ideVersion": self.version_info.ide_version,
            }
        }

    async def call(
        self,
        method: QuotaApiMethod,
        bundle: Optional[CredentialBundle],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Call a quota RPC and return the decoded JSON payload.

        Raises:
            MissingCsrfTokenError: No token available; nothing is sent.
            TransportError: Connection, TLS, timeout or non-200 failures.
            ResponseParseError: The body is not a JSON object.
            ApplicationError: The payload carries a non-success ``code``.
        """
        if bundle is None or not bundle.csrf_token:
            raise MissingCsrfTokenError("CSRF token is missing; run detection first")

        timeout = self.timeout if timeout is None else timeout
        path = method.path
        body = self._request_body()

        try:
            response = await self._post("https", bundle.connect_port, path, body, bundle, timeout)
        except TransportError as e:
            if not is_protocol_mismatch(e):
                raise
            if not bundle.has_http_fallback:
                lib_logger.warning(
                    f"HTTPS to port {bundle.connect_port} hit a protocol mismatch "
                    "and no extension port is known for HTTP fallback"
                )
                raise
            lib_logger.warning(
                f"HTTPS to port {bundle.connect_port} failed with a protocol mismatch, "
                f"retrying over HTTP on port {bundle.extension_port}"
            )
            response = await self._post("http", bundle.extension_port, path, body, bundle, timeout)

        return self._decode(response)

    async def _post(
        self,
        scheme: str,
        port: int,
        path: str,
        body: Dict[str, Any],
        bundle: CredentialBundle,
        timeout: float,
    ) -> httpx.Response:
        url = f"{scheme}://{RPC_HOST}:{port}{path}"
        lib_logger.debug(f"POST {url} (token {bundle.masked_token})")
        try:
            return await self._get_client(scheme).post(
                url,
                json=body,
                headers=rpc_headers(bundle.csrf_token),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request to {url} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            if is_protocol_mismatch(e):
                raise ProtocolMismatchError(f"{scheme.upper()} protocol mismatch: {e}") from e
            raise TransportError(f"Request to {url} failed: {e}") from e

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code != 200:
            raise HttpStatusError(response.status_code, response.text[:500])

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ResponseParseError(f"Failed to parse response JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ResponseParseError(
                f"Expected a JSON object, got {type(payload).__name__}"
            )

        code = payload.get("code")
        if not is_success_code(code, self.success_codes):
            message = payload.get("message")
            lib_logger.warning(f"Quota RPC returned application code {code!r}: {message}")
            raise ApplicationError(code, message)
        return payload

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
