import json
from decimal import Decimal

import httpx
import pytest

from app.core.exceptions import (
    DuplicateSessionCollision,
    GatewayError,
    GatewayUnavailable,
    SessionNotFound,
)
from app.models import GatewayStatus
from app.services.payment.base import format_amount, parse_gateway_status
from app.services.payment.sumup import SumUpGatewayClient


class FakeSumUp:
    """Scripted gateway behind httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.token_calls = 0
        self.checkout_responses = []
        self.status_responses = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"tok{self.token_calls}", "expires_in": 3600})
        if request.method == "POST" and request.url.path == "/v0.1/checkouts":
            return self.checkout_responses.pop(0)
        if request.method == "GET" and request.url.path == "/v0.1/checkouts":
            return httpx.Response(200, json=[{
                "id": "chk_existing",
                "checkout_reference": request.url.params["checkout_reference"],
                "status": "PENDING",
                "amount": 21.98,
                "currency": "EUR",
            }])
        if request.method == "GET":
            return self.status_responses.pop(0)
        return httpx.Response(404)

    def checkout_requests(self):
        return [r for r in self.requests if r.url.path == "/v0.1/checkouts" and r.method == "POST"]


@pytest.fixture
def fake():
    return FakeSumUp()


@pytest.fixture
def sumup(fake):
    return SumUpGatewayClient(
        base_url="https://gateway.test",
        client_id="cid",
        client_secret="csecret",
        merchant_code="MCODE",
        pay_url_base="https://pay.test",
        transport=httpx.MockTransport(fake),
    )


def created(session_id="chk_1", reference="ORD-42", **extra):
    body = {
        "id": session_id,
        "checkout_reference": reference,
        "amount": 21.98,
        "currency": "EUR",
        "status": "PENDING",
        **extra,
    }
    return httpx.Response(201, json=body)


def test_format_amount():
    assert format_amount(Decimal("21.98")) == "21.98"
    assert format_amount(Decimal("5")) == "5.00"
    assert format_amount(Decimal("0.125")) == "0.13"
    assert format_amount("7.5") == "7.50"
    with pytest.raises(TypeError):
        format_amount(21.98)


def test_parse_gateway_status():
    assert parse_gateway_status("PAID") == GatewayStatus.PAID
    assert parse_gateway_status("successful") == GatewayStatus.PAID
    assert parse_gateway_status("FAILED") == GatewayStatus.FAILED
    assert parse_gateway_status("EXPIRED") == GatewayStatus.EXPIRED
    assert parse_gateway_status(None) == GatewayStatus.PENDING


def test_credentials_are_required(fake):
    with pytest.raises(ValueError):
        SumUpGatewayClient(
            base_url="https://gateway.test",
            client_id="cid",
            client_secret=None,
            merchant_code="MCODE",
            transport=httpx.MockTransport(fake),
        )


async def test_create_session_sends_amount_as_string(sumup, fake):
    fake.checkout_responses.append(created())

    session = await sumup.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")

    payload = json.loads(fake.checkout_requests()[0].content)
    assert payload["amount"] == "21.98"
    assert payload["checkout_reference"] == "ORD-42"
    assert payload["merchant_code"] == "MCODE"
    assert payload["hosted_checkout"] == {"enabled": True}
    assert fake.checkout_requests()[0].headers["authorization"] == "Bearer tok1"
    assert session.session_id == "chk_1"
    assert session.pay_url == "https://pay.test/chk_1"
    assert session.status == GatewayStatus.PENDING


async def test_hosted_checkout_url_is_preferred(sumup, fake):
    fake.checkout_responses.append(created(hosted_checkout_url="https://checkout.test/p/chk_1"))

    session = await sumup.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")

    assert session.pay_url == "https://checkout.test/p/chk_1"


async def test_token_is_cached_between_calls(sumup, fake):
    fake.checkout_responses.extend([created("chk_1", "ORD-1"), created("chk_2", "ORD-2")])

    await sumup.create_session("ORD-1", Decimal("1.00"), "EUR", "Order #1")
    await sumup.create_session("ORD-2", Decimal("2.00"), "EUR", "Order #2")

    assert fake.token_calls == 1


async def test_rejected_token_is_refreshed_once(sumup, fake):
    fake.checkout_responses.extend([httpx.Response(401, json={"message": "expired"}), created()])

    session = await sumup.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")

    assert session.session_id == "chk_1"
    assert fake.token_calls == 2
    assert fake.checkout_requests()[1].headers["authorization"] == "Bearer tok2"


async def test_duplicate_reference_maps_to_collision(sumup, fake):
    fake.checkout_responses.append(
        httpx.Response(409, json={"error_code": "DUPLICATED_CHECKOUT", "message": "Checkout exists"})
    )

    with pytest.raises(DuplicateSessionCollision) as exc_info:
        await sumup.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")

    assert exc_info.value.error_code == "DUPLICATED_CHECKOUT"


async def test_duplicate_error_code_without_409(sumup, fake):
    fake.checkout_responses.append(
        httpx.Response(400, json=[{"error_code": "DUPLICATED_CHECKOUT", "message": "dup"}])
    )

    with pytest.raises(DuplicateSessionCollision):
        await sumup.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")


async def test_validation_error_maps_to_gateway_error(sumup, fake):
    fake.checkout_responses.append(
        httpx.Response(400, json={"error_code": "INVALID", "message": "bad currency"})
    )

    with pytest.raises(GatewayError) as exc_info:
        await sumup.create_session("ORD-42", Decimal("21.98"), "XXX", "Order #42")

    assert not isinstance(exc_info.value, DuplicateSessionCollision)
    assert exc_info.value.status_code == 502


@pytest.mark.parametrize("status_code", [500, 502, 503, 429])
async def test_server_errors_are_unavailable(sumup, fake, status_code):
    fake.checkout_responses.append(httpx.Response(status_code, text="upstream"))

    with pytest.raises(GatewayUnavailable):
        await sumup.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")


async def test_timeout_is_unavailable(fake):
    def handler(request):
        if request.url.path == "/token":
            return fake(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = SumUpGatewayClient(
        base_url="https://gateway.test",
        client_id="cid",
        client_secret="csecret",
        merchant_code="MCODE",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(GatewayUnavailable):
        await client.get_session_status("chk_1")


async def test_session_status_with_transaction(sumup, fake):
    fake.status_responses.append(httpx.Response(200, json={
        "id": "chk_1",
        "checkout_reference": "ORD-42",
        "status": "PAID",
        "amount": 21.98,
        "currency": "EUR",
        "transactions": [{"id": "txn_9", "status": "SUCCESSFUL"}],
    }))

    session = await sumup.get_session_status("chk_1")

    assert session.status == GatewayStatus.PAID
    assert session.transaction_id == "txn_9"


async def test_unknown_session(sumup, fake):
    fake.status_responses.append(httpx.Response(404, json={"message": "not found"}))

    with pytest.raises(SessionNotFound):
        await sumup.get_session_status("chk_missing")


async def test_find_session_by_reference(sumup, fake):
    session = await sumup.find_session_by_reference("ORD-42")

    assert session.session_id == "chk_existing"
    assert session.reference == "ORD-42"
    lookup = [r for r in fake.requests if r.method == "GET"][0]
    assert lookup.url.params["checkout_reference"] == "ORD-42"


async def test_health_check_reports_auth_failure(fake):
    client = SumUpGatewayClient(
        base_url="https://gateway.test",
        client_id="cid",
        client_secret="csecret",
        merchant_code="MCODE",
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"error_code": "INVALID_CLIENT"})),
    )

    assert await client.health_check() is False
