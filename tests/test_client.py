import json

import httpx
import pytest

from fakes import RecordingHandler
from quota_watcher.client import QuotaClient, is_success_code
from quota_watcher.core.types import CredentialBundle, QuotaApiMethod
from quota_watcher.error_handler import (
    ApplicationError,
    HttpStatusError,
    MissingCsrfTokenError,
    ProtocolMismatchError,
    RequestTimeoutError,
    ResponseParseError,
    TransportError,
)
from quota_watcher.version_info import VersionInfo

BUNDLE = CredentialBundle(extension_port=42001, connect_port=42100, csrf_token="tok-123")


def make_client(respond, **kwargs):
    handler = RecordingHandler(respond)
    client = QuotaClient(
        VersionInfo(ide_version="0.9.0"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    return client, handler


@pytest.mark.asyncio
async def test_user_status_request() -> None:
    client, handler = make_client(lambda r: httpx.Response(200, json={"userStatus": {}}))

    payload = await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE)

    assert payload == {"userStatus": {}}
    request = handler.requests[0]
    assert str(request.url) == (
        "https://127.0.0.1:42100/exa.language_server_pb.LanguageServerService/GetUserStatus"
    )
    assert request.headers["X-Codeium-Csrf-Token"] == "tok-123"
    assert request.headers["Connect-Protocol-Version"] == "1"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {
        "metadata": {
            "ideName": "antigravity",
            "extensionName": "antigravity",
            "locale": "en",
            "ideVersion": "0.9.0",
        }
    }
    await client.aclose()


@pytest.mark.asyncio
async def test_model_config_path() -> None:
    client, handler = make_client(lambda r: httpx.Response(200, json={"clientModelConfigs": []}))

    await client.call(QuotaApiMethod.COMMAND_MODEL_CONFIG, BUNDLE)

    assert handler.requests[0].url.path.endswith("/GetCommandModelConfigs")


@pytest.mark.asyncio
async def test_missing_token_fails_before_any_request() -> None:
    client, handler = make_client(lambda r: httpx.Response(200, json={}))
    bundle = CredentialBundle(extension_port=0, connect_port=1, csrf_token="")

    with pytest.raises(MissingCsrfTokenError):
        await client.call(QuotaApiMethod.GET_USER_STATUS, bundle)
    with pytest.raises(MissingCsrfTokenError):
        await client.call(QuotaApiMethod.GET_USER_STATUS, None)

    assert handler.requests == []


def tls_mismatch_then_ok(request: httpx.Request) -> httpx.Response:
    if request.url.scheme == "https":
        raise httpx.ConnectError(
            "[SSL: WRONG_VERSION_NUMBER] wrong version number (_ssl.c:1000)", request=request
        )
    return httpx.Response(200, json={"clientModelConfigs": []})


@pytest.mark.asyncio
async def test_protocol_mismatch_falls_back_to_http_once() -> None:
    client, handler = make_client(tls_mismatch_then_ok)

    payload = await client.call(QuotaApiMethod.COMMAND_MODEL_CONFIG, BUNDLE)

    assert payload == {"clientModelConfigs": []}
    assert [(r.url.scheme, r.url.port) for r in handler.requests] == [
        ("https", 42100),
        ("http", 42001),
    ]


@pytest.mark.asyncio
async def test_protocol_mismatch_without_fallback_port_propagates() -> None:
    client, handler = make_client(tls_mismatch_then_ok)
    bundle = CredentialBundle(extension_port=0, connect_port=42100, csrf_token="tok")

    with pytest.raises(ProtocolMismatchError):
        await client.call(QuotaApiMethod.GET_USER_STATUS, bundle)
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_other_connect_errors_do_not_fall_back() -> None:
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    client, handler = make_client(refuse)

    with pytest.raises(TransportError) as exc_info:
        await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE)
    assert not isinstance(exc_info.value, ProtocolMismatchError)
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_timeout_maps_to_request_timeout() -> None:
    def slow(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    client, _ = make_client(slow)

    with pytest.raises(RequestTimeoutError):
        await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE, timeout=0.1)


@pytest.mark.asyncio
async def test_non_200_raises_http_status_error() -> None:
    client, _ = make_client(lambda r: httpx.Response(503, text="unavailable"))

    with pytest.raises(HttpStatusError) as exc_info:
        await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE)

    assert exc_info.value.status_code == 503
    assert exc_info.value.body == "unavailable"


@pytest.mark.asyncio
async def test_invalid_json_raises_parse_error() -> None:
    client, _ = make_client(lambda r: httpx.Response(200, text="<html>nope</html>"))

    with pytest.raises(ResponseParseError):
        await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE)


@pytest.mark.asyncio
async def test_application_error_code() -> None:
    body = {"code": "unauthenticated", "message": "not signed in"}
    client, _ = make_client(lambda r: httpx.Response(200, json=body))

    with pytest.raises(ApplicationError) as exc_info:
        await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE)

    assert exc_info.value.code == "unauthenticated"
    assert exc_info.value.message == "not signed in"


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [0, "0", "OK", "ok", "Ok", "success", "SUCCESS", None])
async def test_success_codes_pass(code) -> None:
    client, _ = make_client(lambda r: httpx.Response(200, json={"code": code, "x": 1}))

    payload = await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE)

    assert payload["x"] == 1


@pytest.mark.asyncio
async def test_success_codes_are_configurable() -> None:
    client, _ = make_client(
        lambda r: httpx.Response(200, json={"code": "done"}),
        success_codes={"done"},
    )

    assert await client.call(QuotaApiMethod.GET_USER_STATUS, BUNDLE) == {"code": "done"}


def test_is_success_code_edges() -> None:
    codes = {0, "0", "ok", "success"}
    assert is_success_code(None, codes)
    assert is_success_code(" OK ", codes)
    assert not is_success_code(1, codes)
    assert not is_success_code(False, codes)
    assert not is_success_code("error", codes)
