import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.v1.dependencies import (get_current_db_user,
                                     get_subscription_service, http_error)
from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import NotFoundError, SubscriptionError
from app.models.subscription import SubscriptionStatus
from app.models.user import User
from app.services.subscription_service import (SubscriptionService,
                                               serialize_subscription)
from app.services.subscription_state import (allowed_transitions,
                                             build_transition_table)

router = APIRouter()

transition_table = build_transition_table(settings.allow_expired_reactivation)
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    plan_type: str


class SubscriptionActionRequest(BaseModel):
    subscription_id: Optional[str] = None  # Defaults to the caller's current subscription


def _resolve_subscription_id(
    db: Session,
    subscription_service: SubscriptionService,
    user_id: str,
    subscription_id: Optional[str],
) -> str:
    if subscription_id:
        return subscription_id
    current = subscription_service.get_current_subscription(db, user_id)
    if not current:
        raise NotFoundError("No subscription found")
    return current.id


@router.get("/plans")
async def get_plans(
    db: Session = Depends(get_db),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Get all available subscription plans.
    Public endpoint - no authentication required.
    """
    logger.info("get_plans: Entry")

    try:
        plans = subscription_service.get_all_plans(db)
        logger.info(f"get_plans: Success - {len(plans)} plans")
        return {"plans": plans}
    except SubscriptionError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"get_plans: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/current")
async def get_current_subscription(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Get current user's subscription details.
    Requires authentication.
    """
    logger.info(f"get_current_subscription: Entry - user: {user.id}")

    subscription = subscription_service.get_current_subscription(db, user.id)
    if not subscription:
        return {"subscription": None}

    logger.info(f"get_current_subscription: Success - user: {user.id}, subscription: {subscription.id}")
    return {"subscription": serialize_subscription(subscription)}


@router.post("/checkout")
async def start_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Start a PayPal subscription checkout.
    Returns the approval URL the client should redirect to.
    Requires authentication.
    """
    logger.info(f"start_checkout: Entry - user: {user.id}, plan: {request.plan_type}")

    try:
        checkout = await subscription_service.start_checkout(
            db,
            user_id=user.id,
            plan_type=request.plan_type,
            return_url=f"{settings.app_base_url}/subscription/success",
            cancel_url=f"{settings.app_base_url}/subscription/cancel",
        )
        logger.info(f"start_checkout: Success - user: {user.id}, subscription: {checkout.subscription_id}")
        return checkout.model_dump()
    except SubscriptionError as e:
        logger.error(f"start_checkout: {e.error_code} - {e.message}")
        raise http_error(e)
    except Exception as e:
        logger.error(f"start_checkout: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/paypal/return")
async def paypal_return(
    subscription_id: str = Query(..., description="PayPal subscription id from the return URL"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Confirm a checkout after the user approved it at PayPal.
    Safe to call more than once; the webhook may have activated it already.
    """
    logger.info(f"paypal_return: Entry - user: {user.id}, provider_ref: {subscription_id}")

    try:
        subscription = subscription_service.confirm_checkout(db, user.id, subscription_id)
        logger.info(f"paypal_return: Success - user: {user.id}, subscription: {subscription.id}")
        return {
            **serialize_subscription(subscription),
            "message": "Subscription activated successfully"
        }
    except SubscriptionError as e:
        logger.error(f"paypal_return: {e.error_code} - {e.message}")
        raise http_error(e)
    except Exception as e:
        logger.error(f"paypal_return: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/cancel")
async def cancel_subscription(
    request: SubscriptionActionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Cancel a subscription.
    Access continues until the end of the paid term.
    Requires authentication.
    """
    logger.info(f"cancel_subscription: Entry - user: {user.id}")

    try:
        subscription_id = _resolve_subscription_id(db, subscription_service, user.id, request.subscription_id)
        subscription = await subscription_service.cancel_subscription(db, subscription_id, user.id)
        logger.info(f"cancel_subscription: Success - user: {user.id}, subscription: {subscription.id}")
        if subscription.status == SubscriptionStatus.EXPIRED:
            message = "Checkout cancelled."
        else:
            message = "Subscription cancelled. Access will continue until end date."
        return {**serialize_subscription(subscription), "message": message}
    except SubscriptionError as e:
        logger.error(f"cancel_subscription: {e.error_code} - {e.message}")
        raise http_error(e)
    except Exception as e:
        logger.error(f"cancel_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/reactivate")
async def reactivate_subscription(
    request: SubscriptionActionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Undo a cancellation before the paid term ends.
    Requires authentication.
    """
    logger.info(f"reactivate_subscription: Entry - user: {user.id}")

    try:
        subscription_id = _resolve_subscription_id(db, subscription_service, user.id, request.subscription_id)
        subscription = await subscription_service.reactivate_subscription(db, subscription_id, user.id)
        logger.info(f"reactivate_subscription: Success - user: {user.id}, subscription: {subscription.id}")
        return {
            **serialize_subscription(subscription),
            "message": "Subscription reactivated"
        }
    except SubscriptionError as e:
        logger.error(f"reactivate_subscription: {e.error_code} - {e.message}")
        raise http_error(e)
    except Exception as e:
        logger.error(f"reactivate_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/history")
async def get_subscription_history(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Get subscription history for current user.
    Requires authentication.
    """
    logger.info(f"get_subscription_history: Entry - user: {user.id}")

    history = subscription_service.get_subscription_history(db, user.id)
    logger.info(f"get_subscription_history: Success - user: {user.id}, count: {len(history)}")
    return {"history": history}


@router.get("/transitions/{subscription_status}")
async def get_allowed_transitions(subscription_status: str):
    """Statuses reachable in one step, for admin and UI display"""
    try:
        allowed = allowed_transitions(subscription_status, transition_table)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown subscription status: {subscription_status}"
        )
    return {
        "status": subscription_status,
        "allowed": sorted(s.value for s in allowed),
    }
