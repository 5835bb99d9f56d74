import httpx
import pytest

from prism_driver.clients.http import RequestFailure, RetryPolicy, request_json


def test_request_json_raises_after_attempts():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code=500, json={"message": "boom"}, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as excinfo:
        request_json(client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0))
    assert len(calls) == 2
    assert excinfo.value.status_code == 500
    assert "HTTP 500: boom" in str(excinfo.value)


def test_request_json_succeeds():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status_code=200, json={"ok": True}, request=request)
    )
    client = httpx.Client(transport=transport)
    assert request_json(client, "GET", "http://example.test", RetryPolicy()) == {"ok": True}


def test_request_json_empty_body_is_empty_dict():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status_code=202, request=request)
    )
    client = httpx.Client(transport=transport)
    assert request_json(client, "DELETE", "http://example.test", RetryPolicy()) == {}


def test_request_json_joins_message_list():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=404,
            json={"message_list": [{"reason": "ENTITY_NOT_FOUND", "message": "VM gone"}]},
            request=request,
        )
    )
    client = httpx.Client(transport=transport)
    with pytest.raises(RequestFailure) as excinfo:
        request_json(client, "GET", "http://example.test", RetryPolicy())
    assert excinfo.value.detail == "HTTP 404: VM gone"


def test_request_json_rejects_non_object_payload():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status_code=200, json=[1, 2], request=request)
    )
    client = httpx.Client(transport=transport)
    with pytest.raises(RequestFailure) as excinfo:
        request_json(client, "GET", "http://example.test", RetryPolicy())
    assert excinfo.value.error_type == "ValueError"
    assert excinfo.value.status_code is None


def test_transport_error_is_not_retried_by_default():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as excinfo:
        request_json(client, "GET", "http://example.test", RetryPolicy())
    assert len(calls) == 1
    assert excinfo.value.error_type == "ConnectError"
