import logging
from datetime import timedelta

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import SubscriptionError
from app.core.middleware import get_current_user
from app.core.redis_cache import RedisCache
from app.models.user import User, UserRole
from app.services.analytics_service import AnalyticsService
from app.services.entitlement_service import EntitlementService
from app.services.enrollment_service import EnrollmentService
from app.services.paypal_service import PayPalClient
from app.services.purchase_service import PurchaseService
from app.services.subscription_service import SubscriptionService
from app.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


def http_error(e: SubscriptionError) -> HTTPException:
    """Translate a domain error into the HTTP response it carries"""
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


def get_analytics_service() -> AnalyticsService:
    return AnalyticsService()


def get_payment_provider(request: Request) -> PayPalClient:
    """Process-wide PayPal client so the OAuth token is reused"""
    return request.app.state.paypal


def get_cache(request: Request) -> RedisCache:
    return request.app.state.cache


def get_subscription_service(
    provider: PayPalClient = Depends(get_payment_provider),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> SubscriptionService:
    return SubscriptionService(
        provider=provider,
        analytics=analytics,
        enrollments=EnrollmentService(),
        allow_expired_reactivation=settings.allow_expired_reactivation,
        pending_checkout_ttl=timedelta(hours=settings.pending_checkout_ttl_hours),
    )


def get_purchase_service(
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> PurchaseService:
    return PurchaseService(analytics=analytics)


def get_entitlement_service(
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> EntitlementService:
    return EntitlementService(analytics=analytics)


def get_reconciler(
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    purchases: PurchaseService = Depends(get_purchase_service),
    cache: RedisCache = Depends(get_cache),
    analytics: AnalyticsService = Depends(get_analytics_service),
    provider: PayPalClient = Depends(get_payment_provider),
) -> WebhookReconciler:
    return WebhookReconciler(
        subscriptions=subscriptions,
        purchases=purchases,
        cache=cache,
        analytics=analytics,
        provider=provider,
        verify_signatures=settings.paypal_webhook_verify,
        max_unmatched_attempts=settings.webhook_max_unmatched_attempts,
        retry_window_minutes=settings.webhook_retry_window_minutes,
        dedupe_ttl_minutes=settings.webhook_dedupe_ttl_minutes,
    )


def get_current_db_user(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> User:
    """Local user row for the authenticated caller, created on first sight"""
    user = db.query(User).filter(User.id == current_user['uid']).first()
    if user:
        return user

    logger.info(f"get_current_db_user: Creating user - {current_user['uid']}")
    user = User(
        id=current_user['uid'],
        email=current_user.get('email') or current_user['uid'],
        role=UserRole.CUSTOMER.value,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def require_admin(user: User = Depends(get_current_db_user)) -> User:
    if user.role != UserRole.ADMIN.value:
        logger.warning(f"require_admin: Unauthorized - user: {user.id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
