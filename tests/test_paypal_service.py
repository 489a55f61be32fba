"""
Tests for the PayPal REST client against a mocked transport
"""

import json

import httpx
import pytest

from app.core.exceptions import ProviderError, RetryableProviderError
from app.services.paypal_service import PayPalClient

SIGNATURE_HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-TIME": "2026-03-01T12:00:00Z",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/cert",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
}


def token_response():
    return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})


def make_client(handler, **kwargs):
    options = {
        "client_id": "client",
        "client_secret": "secret",
        "base_url": "https://api-m.sandbox.paypal.com",
        "webhook_id": "WH-TEST",
    }
    options.update(kwargs)
    return PayPalClient(transport=httpx.MockTransport(handler), **options)


class TestCreateSubscription:

    @pytest.mark.asyncio
    async def test_returns_id_and_approval_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(201, json={
                "id": "I-BW452GLLEP1G",
                "status": "APPROVAL_PENDING",
                "links": [
                    {"rel": "approve", "href": "https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=BA-1"},
                    {"rel": "self", "href": "https://api-m.sandbox.paypal.com/v1/billing/subscriptions/I-BW452GLLEP1G"},
                ],
            })

        client = make_client(handler)

        result = await client.create_subscription(
            provider_plan_id="P-MONTHLY",
            return_url="https://app.example.com/subscription/success",
            cancel_url="https://app.example.com/subscription/cancel",
            correlation_id="sub-1",
        )

        assert result.subscription_id == "I-BW452GLLEP1G"
        assert result.approval_url.endswith("ba_token=BA-1")
        create_request = seen[-1]
        assert create_request.headers["Authorization"] == "Bearer A21-token"
        body = json.loads(create_request.content)
        assert body["plan_id"] == "P-MONTHLY"
        assert body["custom_id"] == "sub-1"

    @pytest.mark.asyncio
    async def test_token_is_reused(self):
        token_calls = []

        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                token_calls.append(request)
                return token_response()
            return httpx.Response(204)

        client = make_client(handler)

        await client.cancel_subscription("I-1")
        await client.cancel_subscription("I-2")

        assert len(token_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_approval_link(self):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(201, json={"id": "I-1", "links": []})

        with pytest.raises(ProviderError):
            await make_client(handler).create_subscription("P-1", "https://r", "https://c", "sub-1")


class TestGetSubscription:

    @pytest.mark.asyncio
    async def test_returns_billing_info(self):
        seen = []

        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            seen.append(request)
            return httpx.Response(200, json={
                "id": "I-BW452GLLEP1G",
                "status": "ACTIVE",
                "billing_info": {"next_billing_time": "2026-03-20T10:00:00Z"},
            })

        details = await make_client(handler).get_subscription("I-BW452GLLEP1G")

        assert details["billing_info"]["next_billing_time"] == "2026-03-20T10:00:00Z"
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/v1/billing/subscriptions/I-BW452GLLEP1G"

    @pytest.mark.asyncio
    async def test_unknown_subscription(self):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

        with pytest.raises(ProviderError) as exc_info:
            await make_client(handler).get_subscription("I-MISSING")

        assert not isinstance(exc_info.value, RetryableProviderError)


class TestErrorClassification:

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(503, text="Service Unavailable")

        with pytest.raises(RetryableProviderError) as exc_info:
            await make_client(handler).cancel_subscription("I-1")

        assert exc_info.value.context["status_code"] == 503

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(429)

        with pytest.raises(RetryableProviderError):
            await make_client(handler).activate_subscription("I-1")

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY"})

        with pytest.raises(ProviderError) as exc_info:
            await make_client(handler).cancel_subscription("I-1")

        assert not isinstance(exc_info.value, RetryableProviderError)
        assert exc_info.value.context["status_code"] == 422

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RetryableProviderError):
            await make_client(handler).cancel_subscription("I-1")

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        def handler(request):
            return token_response()

        with pytest.raises(ProviderError):
            await make_client(handler, client_id=None).cancel_subscription("I-1")


class TestVerifyWebhookSignature:

    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"verification_status": "SUCCESS"})

        verified = await make_client(handler).verify_webhook_signature(SIGNATURE_HEADERS, {"id": "WH-1"})

        assert verified is True
        assert seen[0]["webhook_id"] == "WH-TEST"
        assert seen[0]["transmission_id"] == "tx-1"
        assert seen[0]["webhook_event"] == {"id": "WH-1"}

    @pytest.mark.asyncio
    async def test_failure_status(self):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return token_response()
            return httpx.Response(200, json={"verification_status": "FAILURE"})

        assert await make_client(handler).verify_webhook_signature(SIGNATURE_HEADERS, {"id": "WH-1"}) is False

    @pytest.mark.asyncio
    async def test_missing_headers_skip_the_call(self):
        calls = []

        def handler(request):
            calls.append(request)
            return token_response()

        headers = dict(SIGNATURE_HEADERS)
        del headers["PAYPAL-TRANSMISSION-SIG"]

        assert await make_client(handler).verify_webhook_signature(headers, {"id": "WH-1"}) is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_webhook_id(self):
        def handler(request):
            return token_response()

        with pytest.raises(ProviderError):
            await make_client(handler, webhook_id=None).verify_webhook_signature(SIGNATURE_HEADERS, {})
