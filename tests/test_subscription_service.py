import hashlib

import httpx
import pytest

from itn_bridge.core.errors import ErrorKind, PipelineError
from itn_bridge.services.subscription_service import SubscriptionService, generate_signature


def _service(handler, sandbox=False) -> SubscriptionService:
    client = httpx.Client(base_url="https://api.gateway.test", transport=httpx.MockTransport(handler))
    return SubscriptionService(client, merchant_id="10000100", passphrase="jt7NOE43FZPn", sandbox=sandbox)


def test_signature_orders_keys_and_appends_passphrase():
    params = {"version": "v1", "timestamp": "2024-01-01T10:00:00+00:00", "merchant-id": "10000100"}

    expected = hashlib.md5(
        b"merchant-id=10000100&passphrase=jt7NOE43FZPn"
        b"&timestamp=2024-01-01T10%3A00%3A00%2B00%3A00&version=v1"
    ).hexdigest()

    assert generate_signature(params, "jt7NOE43FZPn") == expected


def test_signature_without_passphrase_skips_it():
    expected = hashlib.md5(b"a=1&b=x+y").hexdigest()

    assert generate_signature({"b": "x y", "a": "1"}) == expected


def test_signed_headers_carry_signature():
    service = _service(lambda request: httpx.Response(200))

    headers = service.signed_headers(timestamp="2024-01-01T10:00:00+00:00")

    assert headers["merchant-id"] == "10000100"
    assert headers["version"] == "v1"
    unsigned = {key: value for key, value in headers.items() if key != "signature"}
    assert headers["signature"] == generate_signature(unsigned, "jt7NOE43FZPn")


def test_cancel_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["signature"] = request.headers.get("signature")
        return httpx.Response(200, json={"code": 200, "status": "success", "data": {"response": True}})

    body = _service(handler, sandbox=True).cancel_subscription("tok-123")

    assert body["status"] == "success"
    assert seen["method"] == "PUT"
    assert seen["path"] == "/subscriptions/tok-123/cancel"
    assert seen["params"] == {"testing": "true"}
    assert seen["signature"]


def test_cancel_failure_surfaces_gateway_body():
    gateway_body = {"code": 400, "status": "failed", "data": {"message": "Subscription already cancelled"}}
    service = _service(lambda request: httpx.Response(400, json=gateway_body))

    with pytest.raises(PipelineError) as exc:
        service.cancel_subscription("tok-123")

    assert exc.value.kind is ErrorKind.GATEWAY_REJECTED
    assert exc.value.detail == gateway_body


def test_cancel_unreachable_gateway():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PipelineError) as exc:
        _service(handler).cancel_subscription("tok-123")

    assert exc.value.kind is ErrorKind.GATEWAY_REJECTED
