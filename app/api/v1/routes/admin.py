from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.api.v1.dependencies import get_subscription_service, http_error, require_admin
from app.core.database import get_db
from app.core.exceptions import SubscriptionError
from app.models.user import User
from app.services.subscription_service import SubscriptionService, serialize_subscription
from pydantic import BaseModel, Field
import logging

router = APIRouter()
logger = logging.getLogger(__name__)


class GrantSubscriptionRequest(BaseModel):
    user_email: str
    plan_type: str
    duration_days: int = Field(30, gt=0)


@router.post("/subscriptions/expire")
async def expire_subscriptions(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Expire subscriptions whose term has ended and revoke their enrollments.
    Intended for an external scheduler.
    """
    logger.info(f"expire_subscriptions: Entry - admin: {admin.id}")

    result = subscription_service.expire_subscriptions(db)
    logger.info(f"expire_subscriptions: Success - expired: {len(result.expired)}, failed: {len(result.failed)}")
    return result.model_dump()


@router.post("/subscriptions/cleanup-pending")
async def cleanup_pending(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Expire abandoned checkouts"""
    logger.info(f"cleanup_pending: Entry - admin: {admin.id}")

    expired = subscription_service.expire_abandoned_checkouts(db)
    return {"expired": expired}


@router.post("/subscriptions/grant")
async def grant_subscription(
    request: GrantSubscriptionRequest,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Give a user an active subscription without payment.
    Only admins can use this endpoint.
    """
    logger.info(f"grant_subscription: Entry - admin: {admin.id}, target: {request.user_email}, plan: {request.plan_type}")

    user = db.query(User).filter(User.email == request.user_email).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User not found: {request.user_email}"
        )

    try:
        subscription = subscription_service.grant_subscription(
            db, user.id, request.plan_type, duration_days=request.duration_days
        )
        logger.info(f"grant_subscription: Success - user: {user.email}, subscription: {subscription.id}")
        return serialize_subscription(subscription)
    except SubscriptionError as e:
        logger.error(f"grant_subscription: {e.error_code} - {e.message}")
        raise http_error(e)


@router.get("/subscriptions/stats")
async def get_subscription_stats(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Subscription counts and recurring revenue"""
    return subscription_service.get_subscription_stats(db)


@router.post("/subscriptions/retry-provider-sync")
async def retry_provider_sync(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Retry provider calls that failed after a local cancel or reactivation"""
    logger.info(f"retry_provider_sync: Entry - admin: {admin.id}")

    results = await subscription_service.retry_provider_sync(db)
    return {
        "retried": len(results),
        "recovered": sum(1 for r in results if r.success),
        "results": [r.model_dump(mode="json") for r in results],
    }


@router.post("/plans/sync")
async def sync_plans(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Create PayPal products and billing plans for plans that lack them.
    Only admins can use this endpoint.
    """
    logger.info(f"sync_plans: Entry - admin: {admin.id}")
    return await subscription_service.sync_plans_with_provider(db)
