import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from app.core.config import Settings
from app.core.exceptions import ProviderError, RetryableProviderError

logger = logging.getLogger(__name__)

WEBHOOK_HEADERS = {
    'transmission_id': 'paypal-transmission-id',
    'transmission_time': 'paypal-transmission-time',
    'transmission_sig': 'paypal-transmission-sig',
    'cert_url': 'paypal-cert-url',
    'auth_algo': 'paypal-auth-algo',
}


def parse_provider_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a PayPal RFC 3339 timestamp into a naive UTC datetime"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"parse_provider_time: Unparseable timestamp - {value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class ProviderSubscription(BaseModel):
    """Result of creating a subscription at the provider"""
    subscription_id: str
    approval_url: str


def _raise_for_status(response: httpx.Response, action: str):
    if response.is_success:
        return
    detail = response.text[:500]
    if response.status_code == 429 or response.status_code >= 500:
        raise RetryableProviderError(
            f"PayPal {action} failed with {response.status_code}",
            context={'status_code': response.status_code, 'body': detail},
        )
    raise ProviderError(
        f"PayPal {action} failed with {response.status_code}",
        context={'status_code': response.status_code, 'body': detail},
    )


class PayPalClient:
    """
    Thin async client for the PayPal REST API.

    Transport failures, timeouts, 429 and 5xx responses raise
    RetryableProviderError; any other non-2xx raises ProviderError.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str,
        webhook_id: Optional[str] = None,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url
        self.webhook_id = webhook_id
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayPalClient":
        return cls(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            base_url=settings.paypal_base_url,
            webhook_id=settings.paypal_webhook_id,
            timeout_seconds=settings.paypal_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            follow_redirects=False,
        )

    async def _get_access_token(self) -> str:
        if self._access_token and self._token_expires_at and datetime.utcnow() < self._token_expires_at:
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise ProviderError("Missing PAYPAL_CLIENT_ID or PAYPAL_CLIENT_SECRET")

        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={'grant_type': 'client_credentials'},
                )
        except httpx.HTTPError as e:
            raise RetryableProviderError(f"PayPal token request failed: {e}") from e

        _raise_for_status(response, "token")
        data = response.json()
        self._access_token = data['access_token']
        # Refresh a minute early
        self._token_expires_at = datetime.utcnow() + timedelta(seconds=max(int(data.get('expires_in', 0)) - 60, 0))
        return self._access_token

    async def _request(self, method: str, path: str, action: str, payload: Optional[dict] = None) -> dict:
        token = await self._get_access_token()
        logger.info(f"paypal {action}: Entry - {method} {path}")

        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    path,
                    json=payload,
                    headers={
                        'Authorization': f'Bearer {token}',
                        'Accept': 'application/json',
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"paypal {action}: Failure - {e}")
            raise RetryableProviderError(f"PayPal {action} request failed: {e}") from e

        _raise_for_status(response, action)
        logger.info(f"paypal {action}: Success - {response.status_code}")
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def create_subscription(
        self,
        provider_plan_id: str,
        return_url: str,
        cancel_url: str,
        correlation_id: str,
    ) -> ProviderSubscription:
        """Create a provider subscription and return its id and approval URL"""
        data = await self._request(
            "POST",
            "/v1/billing/subscriptions",
            "create_subscription",
            {
                'plan_id': provider_plan_id,
                'custom_id': correlation_id,
                'application_context': {
                    'brand_name': 'CourseLab',
                    'shipping_preference': 'NO_SHIPPING',
                    'user_action': 'SUBSCRIBE_NOW',
                    'return_url': return_url,
                    'cancel_url': cancel_url,
                },
            },
        )
        approval_url = next(
            (link['href'] for link in data.get('links', []) if link.get('rel') == 'approve'),
            None,
        )
        if not data.get('id') or not approval_url:
            raise ProviderError("PayPal subscription response is missing id or approval URL")
        return ProviderSubscription(subscription_id=data['id'], approval_url=approval_url)

    async def get_subscription(self, provider_ref: str) -> dict:
        return await self._request("GET", f"/v1/billing/subscriptions/{provider_ref}", "get_subscription")

    async def cancel_subscription(self, provider_ref: str, reason: str = "Customer requested cancellation"):
        await self._request(
            "POST",
            f"/v1/billing/subscriptions/{provider_ref}/cancel",
            "cancel_subscription",
            {'reason': reason},
        )

    async def activate_subscription(self, provider_ref: str, reason: str = "Reactivating subscription"):
        await self._request(
            "POST",
            f"/v1/billing/subscriptions/{provider_ref}/activate",
            "activate_subscription",
            {'reason': reason},
        )

    async def create_product(self, name: str, description: str) -> dict:
        return await self._request(
            "POST",
            "/v1/catalogs/products",
            "create_product",
            {'name': name, 'description': description, 'type': 'DIGITAL', 'category': 'EDUCATIONAL_AND_TEXTBOOKS'},
        )

    async def create_plan(
        self,
        product_id: str,
        name: str,
        description: str,
        price: Decimal,
        interval_unit: str,
    ) -> dict:
        return await self._request(
            "POST",
            "/v1/billing/plans",
            "create_plan",
            {
                'product_id': product_id,
                'name': name,
                'description': description,
                'status': 'ACTIVE',
                'billing_cycles': [{
                    'frequency': {'interval_unit': interval_unit, 'interval_count': 1},
                    'tenure_type': 'REGULAR',
                    'sequence': 1,
                    'total_cycles': 0,
                    'pricing_scheme': {
                        'fixed_price': {'value': f"{Decimal(price):.2f}", 'currency_code': 'USD'},
                    },
                }],
                'payment_preferences': {
                    'auto_bill_outstanding': True,
                    'payment_failure_threshold': 3,
                },
            },
        )

    async def capture_order(self, order_id: str) -> dict:
        return await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", "capture_order", {})

    async def verify_webhook_signature(self, headers: dict[str, str], event: dict[str, Any]) -> bool:
        """Ask PayPal whether a webhook delivery is authentic"""
        if not self.webhook_id:
            raise ProviderError("Missing PAYPAL_WEBHOOK_ID")

        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [header for header in WEBHOOK_HEADERS.values() if not lowered.get(header)]
        if missing:
            logger.warning(f"verify_webhook_signature: Missing headers - {missing}")
            return False

        payload = {field: lowered[header] for field, header in WEBHOOK_HEADERS.items()}
        payload['webhook_id'] = self.webhook_id
        payload['webhook_event'] = event
        data = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "verify_webhook_signature",
            payload,
        )
        return data.get('verification_status') == 'SUCCESS'
