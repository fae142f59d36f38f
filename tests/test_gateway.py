"""Tests for the payment gateway adapter and payment sessions."""

import hashlib
import hmac
import json

import httpx
import pytest

from services.shared.errors import InvalidPaymentIntent, PaymentSystemUnavailable
from services.vote_api.gateway import (
    PaymentIntent,
    PaymentSession,
    PaystackGateway,
    SessionSettled,
)

SECRET = "sk_test_123"


def paystack(handler, secret=SECRET, **kwargs) -> PaystackGateway:
    client = httpx.AsyncClient(
        base_url="https://api.paystack.co",
        transport=httpx.MockTransport(handler),
    )
    return PaystackGateway(secret, http_client=client, **kwargs)


def initialize_ok(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={
        "status": True,
        "message": "Authorization URL created",
        "data": {
            "authorization_url": f"https://checkout.paystack.com/{body['reference']}",
            "access_code": "ac_123",
            "reference": body["reference"],
        },
    })


async def record_success(reference, provider_reference, amount=None):
    return ("success", reference, provider_reference)


async def record_cancel(reference):
    return ("cancel", reference)


@pytest.mark.asyncio
class TestPaymentSession:

    async def test_success_fires_once(self):
        session = PaymentSession(PaymentIntent("fan@example.com", 10000, "VOTE_1"), record_success, record_cancel)

        assert await session.succeed("PSK_1") == ("success", "VOTE_1", "PSK_1")
        assert await session.outcome() == ("success", "VOTE_1", "PSK_1")

        with pytest.raises(SessionSettled):
            await session.succeed("PSK_1")
        with pytest.raises(SessionSettled):
            await session.cancel()

    async def test_cancel_fires_once(self):
        session = PaymentSession(PaymentIntent("fan@example.com", 10000, "VOTE_1"), record_success, record_cancel)

        assert await session.cancel() == ("cancel", "VOTE_1")
        assert session.settled
        with pytest.raises(SessionSettled):
            await session.succeed("PSK_1")

    async def test_success_passes_provider_amount(self):
        seen = []

        async def record(reference, provider_reference, amount=None):
            seen.append(amount)

        session = PaymentSession(PaymentIntent("fan@example.com", 10000, "VOTE_1"), record, record_cancel)
        await session.succeed("PSK_1", 10000)

        assert seen == [10000]

    async def test_callback_error_reaches_outcome(self):
        async def failing(reference, provider_reference, amount=None):
            raise RuntimeError("boom")

        session = PaymentSession(PaymentIntent("fan@example.com", 10000, "VOTE_1"), failing, record_cancel)

        with pytest.raises(RuntimeError):
            await session.succeed("PSK_1")
        with pytest.raises(RuntimeError):
            await session.outcome()


@pytest.mark.asyncio
class TestPaystackGateway:

    async def test_initiate_opens_checkout(self):
        seen = []

        def handler(request):
            seen.append(request)
            return initialize_ok(request)

        gateway = paystack(handler, callback_url="https://votes.example.com/callback")
        intent = PaymentIntent("fan@example.com", 50000, "VOTE_1")

        session = await gateway.initiate(intent, record_success, record_cancel)

        assert session.authorization_url == "https://checkout.paystack.com/VOTE_1"
        assert session.access_code == "ac_123"
        assert gateway.has_session("VOTE_1")

        request = seen[0]
        assert request.url.path == "/transaction/initialize"
        assert request.headers["Authorization"] == f"Bearer {SECRET}"
        assert json.loads(request.content) == {
            "email": "fan@example.com",
            "amount": 50000,
            "reference": "VOTE_1",
            "currency": "NGN",
            "callback_url": "https://votes.example.com/callback",
        }

    async def test_claim_session_is_single_use(self):
        gateway = paystack(initialize_ok)
        await gateway.initiate(PaymentIntent("fan@example.com", 10000, "VOTE_1"), record_success, record_cancel)

        assert gateway.claim_session("VOTE_1") is not None
        assert gateway.claim_session("VOTE_1") is None

    async def test_invalid_intent_rejected_before_http(self):
        calls = []

        def handler(request):
            calls.append(request)
            return initialize_ok(request)

        gateway = paystack(handler)

        with pytest.raises(InvalidPaymentIntent) as exc_info:
            await gateway.initiate(PaymentIntent("nope", 0, ""), record_success, record_cancel)

        assert len(exc_info.value.errors) == 3
        assert calls == []

    async def test_unavailable_without_secret(self):
        gateway = paystack(initialize_ok, secret=None)

        assert not gateway.is_available()
        with pytest.raises(PaymentSystemUnavailable):
            await gateway.initiate(PaymentIntent("fan@example.com", 10000, "VOTE_1"), record_success, record_cancel)

    async def test_unavailable_after_close(self):
        gateway = paystack(initialize_ok)
        await gateway.close()
        assert not gateway.is_available()

    @pytest.mark.parametrize("response", [
        httpx.Response(500, text="Internal Server Error"),
        httpx.Response(200, json={"status": False, "message": "Invalid key"}),
        httpx.Response(200, text="not json"),
    ])
    async def test_provider_failures_are_unavailable(self, response):
        gateway = paystack(lambda request: response)

        with pytest.raises(PaymentSystemUnavailable):
            await gateway.initiate(PaymentIntent("fan@example.com", 10000, "VOTE_1"), record_success, record_cancel)

        assert not gateway.has_session("VOTE_1")

    async def test_network_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = paystack(handler)

        with pytest.raises(PaymentSystemUnavailable):
            await gateway.verify("VOTE_1")

    async def test_verify(self):
        def handler(request):
            assert request.url.path == "/transaction/verify/VOTE_1"
            return httpx.Response(200, json={
                "status": True,
                "message": "Verification successful",
                "data": {"id": 4099260516, "status": "success", "reference": "VOTE_1", "amount": 50000},
            })

        result = await paystack(handler).verify("VOTE_1")

        assert result.succeeded
        assert not result.failed
        assert result.provider_reference == "4099260516"
        assert result.amount == 50000

    @pytest.mark.parametrize("status, failed", [
        ("abandoned", True),
        ("failed", True),
        ("reversed", True),
        ("ongoing", False),
        ("pending", False),
    ])
    async def test_verify_non_success(self, status, failed):
        def handler(request):
            return httpx.Response(200, json={
                "status": True,
                "data": {"id": 1, "status": status, "reference": "VOTE_1", "amount": 50000},
            })

        result = await paystack(handler).verify("VOTE_1")

        assert not result.succeeded
        assert result.failed is failed


class TestWebhookSignature:

    def test_valid_signature(self):
        gateway = PaystackGateway(SECRET)
        payload = b'{"event":"charge.success"}'
        signature = hmac.new(SECRET.encode(), payload, hashlib.sha512).hexdigest()

        assert gateway.verify_signature(payload, signature)

    def test_tampered_payload(self):
        gateway = PaystackGateway(SECRET)
        signature = hmac.new(SECRET.encode(), b'{"amount":1}', hashlib.sha512).hexdigest()

        assert not gateway.verify_signature(b'{"amount":1000000}', signature)

    def test_missing_signature_or_secret(self):
        assert not PaystackGateway(SECRET).verify_signature(b"{}", None)
        assert not PaystackGateway(None).verify_signature(b"{}", "abc")
