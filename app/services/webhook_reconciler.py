"""
PayPal webhook reconciler.

Deliveries are at-least-once and may arrive out of order. Every status
change goes through SubscriptionService, so duplicates collapse into
no-op transitions and illegal ones are rejected instead of applied.
Payload plan and amount fields are never used to change entitlements.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, StateTransitionError
from app.core.redis_cache import RedisCache
from app.models.subscription import Subscription
from app.services.analytics_service import AnalyticsService
from app.services.paypal_service import PayPalClient, parse_provider_time
from app.services.purchase_service import PurchaseService
from app.services.subscription_service import INTERVAL_DAYS, SubscriptionService

logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIVATED = 'BILLING.SUBSCRIPTION.ACTIVATED'
SUBSCRIPTION_REACTIVATED = 'BILLING.SUBSCRIPTION.RE-ACTIVATED'
SUBSCRIPTION_PAYMENT_FAILED = 'BILLING.SUBSCRIPTION.PAYMENT.FAILED'
SUBSCRIPTION_SUSPENDED = 'BILLING.SUBSCRIPTION.SUSPENDED'
SUBSCRIPTION_CANCELLED = 'BILLING.SUBSCRIPTION.CANCELLED'
SUBSCRIPTION_EXPIRED = 'BILLING.SUBSCRIPTION.EXPIRED'
SALE_COMPLETED = 'PAYMENT.SALE.COMPLETED'
CAPTURE_COMPLETED = 'PAYMENT.CAPTURE.COMPLETED'
CAPTURE_REFUNDED = 'PAYMENT.CAPTURE.REFUNDED'

SUBSCRIPTION_EVENTS = {
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_REACTIVATED,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_SUSPENDED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    SALE_COMPLETED,
}
PURCHASE_EVENTS = {CAPTURE_COMPLETED, CAPTURE_REFUNDED}


class ReconcileOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    RETRY = "retry"
    DROPPED = "dropped"


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    provider_ref: Optional[str] = None
    subscription_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def http_status(self) -> int:
        # Only an unmatched reference within the retry budget asks for redelivery
        return 404 if self.outcome == ReconcileOutcome.RETRY else 200


def correlation_key(event: dict[str, Any]) -> Optional[str]:
    """The provider reference an event refers to"""
    event_type = event.get('event_type')
    resource = event.get('resource') or {}
    if event_type == SALE_COMPLETED:
        return resource.get('billing_agreement_id') or resource.get('id')
    if event_type in PURCHASE_EVENTS:
        related = (resource.get('supplementary_data') or {}).get('related_ids') or {}
        return related.get('order_id') or resource.get('id')
    return resource.get('id')


class WebhookReconciler:

    def __init__(
        self,
        subscriptions: SubscriptionService,
        purchases: PurchaseService,
        cache: RedisCache,
        analytics: AnalyticsService,
        provider: Optional[PayPalClient] = None,
        verify_signatures: bool = True,
        max_unmatched_attempts: int = 5,
        retry_window_minutes: int = 60,
        dedupe_ttl_minutes: int = 1440,
    ):
        self.subscriptions = subscriptions
        self.purchases = purchases
        self.cache = cache
        self.analytics = analytics
        self.provider = provider
        self.verify_signatures = verify_signatures
        self.max_unmatched_attempts = max_unmatched_attempts
        self.retry_window_minutes = retry_window_minutes
        self.dedupe_ttl_minutes = dedupe_ttl_minutes

    async def authenticate(self, headers: dict[str, str], event: dict[str, Any]) -> bool:
        """Check the delivery signature with the provider when verification is enabled"""
        if not self.verify_signatures:
            return True
        if self.provider is None:
            logger.error("authenticate: Signature verification enabled but no provider client configured")
            return False
        return await self.provider.verify_webhook_signature(headers, event)

    def process_event(self, db: Session, event: dict[str, Any]) -> ReconcileResult:
        event_id = event.get('id')
        event_type = event.get('event_type')
        provider_ref = correlation_key(event)
        logger.info(f"process_event: Entry - id: {event_id}, type: {event_type}, ref: {provider_ref}")

        base = {'event_id': event_id, 'event_type': event_type, 'provider_ref': provider_ref}

        if event_id and self.cache.exists(self._dedupe_key(event_id)):
            logger.info(f"process_event: Duplicate delivery - {event_id}")
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE, **base)

        if event_type not in SUBSCRIPTION_EVENTS and event_type not in PURCHASE_EVENTS:
            logger.info(f"process_event: Ignored event type - {event_type}")
            self._mark_handled(event_id)
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, **base)

        if not provider_ref:
            logger.warning(f"process_event: Event {event_id} has no correlation key")
            self._mark_handled(event_id)
            return ReconcileResult(outcome=ReconcileOutcome.DROPPED, detail="missing correlation key", **base)

        if event_type in PURCHASE_EVENTS:
            target = self.purchases.find_by_provider_ref(db, provider_ref)
        else:
            target = self.subscriptions.find_by_provider_ref(db, provider_ref)

        if target is None:
            return self._unmatched(event, base)

        try:
            if event_type in PURCHASE_EVENTS:
                self._apply_purchase_event(db, event_type, target)
            else:
                self._apply_subscription_event(db, event, target)
        except (StateTransitionError, ConflictError) as e:
            # Redelivery cannot succeed, so acknowledge and leave it for an operator
            logger.error(f"process_event: Rejected - id: {event_id}, type: {event_type}, ref: {provider_ref}: {e}")
            self.analytics.log_failure(
                action='webhook_reconcile',
                error=str(e),
                user_id=target.user_id,
                parameters={**base, 'outcome': ReconcileOutcome.REJECTED.value},
            )
            self._mark_handled(event_id)
            return ReconcileResult(outcome=ReconcileOutcome.REJECTED, subscription_id=target.id, detail=str(e), **base)

        self._mark_handled(event_id)
        self.analytics.log_success(
            action='webhook_reconcile',
            user_id=target.user_id,
            parameters={**base, 'target_id': target.id},
        )
        logger.info(f"process_event: Success - id: {event_id}, type: {event_type}, target: {target.id}")
        return ReconcileResult(outcome=ReconcileOutcome.PROCESSED, subscription_id=target.id, **base)

    def _apply_subscription_event(self, db: Session, event: dict[str, Any], subscription: Subscription):
        event_type = event['event_type']
        resource = event.get('resource') or {}
        billing_info = resource.get('billing_info') or {}
        self._warn_on_plan_mismatch(subscription, resource)

        if event_type in (SUBSCRIPTION_ACTIVATED, SUBSCRIPTION_REACTIVATED):
            self.subscriptions.activate_subscription(
                db,
                subscription.id,
                start_date=parse_provider_time(resource.get('start_time')),
                end_date=parse_provider_time(billing_info.get('next_billing_time')),
                source='webhook',
            )
        elif event_type == SALE_COMPLETED:
            self.subscriptions.activate_subscription(db, subscription.id, source='webhook')
            paid_at = (
                parse_provider_time(resource.get('create_time'))
                or parse_provider_time(event.get('create_time'))
                or self.subscriptions.clock()
            )
            plan = self.subscriptions.get_subscription_plan(db, subscription)
            self.subscriptions.extend_term(
                db,
                subscription.id,
                paid_at + timedelta(days=INTERVAL_DAYS.get(plan.interval, 30)),
                source='webhook',
            )
        elif event_type in (SUBSCRIPTION_PAYMENT_FAILED, SUBSCRIPTION_SUSPENDED):
            self.subscriptions.mark_past_due(db, subscription.id, source='webhook')
        elif event_type == SUBSCRIPTION_CANCELLED:
            self.subscriptions.apply_provider_cancellation(
                db,
                subscription.id,
                term_end=parse_provider_time(billing_info.get('next_billing_time')),
                source='webhook',
            )
        elif event_type == SUBSCRIPTION_EXPIRED:
            self.subscriptions.expire_subscription(db, subscription.id, source='webhook')

    def _apply_purchase_event(self, db: Session, event_type: str, purchase):
        if event_type == CAPTURE_COMPLETED:
            self.purchases.complete_purchase(db, purchase.id)
        elif event_type == CAPTURE_REFUNDED:
            self.purchases.refund_purchase(db, purchase.id)

    def _unmatched(self, event: dict[str, Any], base: dict) -> ReconcileResult:
        """
        No local row yet. The pending row's provider reference may still be
        in flight, so ask for redelivery a bounded number of times.
        """
        counter_key = f"webhook_unmatched:{base['provider_ref']}:{base['event_id']}"
        attempts = self.cache.incr(counter_key, ttl_seconds=self.retry_window_minutes * 60)

        if attempts is not None and attempts >= self.max_unmatched_attempts:
            logger.error(
                f"process_event: Dropped - no local match for {base['provider_ref']} "
                f"after {attempts} attempts (event {base['event_id']})"
            )
            self.analytics.log_failure(
                action='webhook_reconcile',
                error='unmatched provider reference',
                parameters={**base, 'attempts': attempts, 'outcome': ReconcileOutcome.DROPPED.value},
            )
            self._mark_handled(base['event_id'])
            self.cache.delete(counter_key)
            return ReconcileResult(outcome=ReconcileOutcome.DROPPED, detail=f"unmatched after {attempts} attempts", **base)

        logger.warning(
            f"process_event: No local match for {base['provider_ref']} "
            f"(attempt {attempts or '?'}/{self.max_unmatched_attempts}), requesting redelivery"
        )
        return ReconcileResult(outcome=ReconcileOutcome.RETRY, detail=f"attempt {attempts}", **base)

    def _warn_on_plan_mismatch(self, subscription: Subscription, resource: dict[str, Any]):
        payload_plan = resource.get('plan_id')
        local_plan = subscription.plan.provider_plan_id if subscription.plan else None
        if payload_plan and local_plan and payload_plan != local_plan:
            logger.warning(
                f"process_event: Payload plan {payload_plan} differs from local plan "
                f"{local_plan} for subscription {subscription.id}; keeping local plan"
            )

    def _dedupe_key(self, event_id: str) -> str:
        return f"webhook_event:{event_id}"

    def _mark_handled(self, event_id: Optional[str]):
        if event_id:
            self.cache.set(self._dedupe_key(event_id), 1, ttl_minutes=self.dedupe_ttl_minutes)
