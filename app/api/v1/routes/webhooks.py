import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_reconciler
from app.core.database import get_db
from app.core.exceptions import ProviderError
from app.services.webhook_reconciler import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/paypal")
async def handle_paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Handle PayPal webhook events

    PayPal redelivers any event that is not answered with a 2xx, so only
    an unmatched subscription reference (which may still be in flight)
    returns 404. Everything else that was understood is acknowledged,
    including duplicates and events rejected by the transition guard.

    See: https://developer.paypal.com/api/rest/webhooks/
    """
    try:
        event = json.loads(await request.body())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )
    if not isinstance(event, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid event envelope"
        )

    logger.info(f"handle_paypal_webhook: Entry - id: {event.get('id')}, type: {event.get('event_type')}")

    try:
        verified = await reconciler.authenticate(dict(request.headers), event)
    except ProviderError as e:
        logger.error(f"handle_paypal_webhook: Signature verification failed - {e.message}")
        raise HTTPException(
            status_code=e.status_code,
            detail=e.to_dict()
        )
    if not verified:
        logger.warning(f"handle_paypal_webhook: Invalid signature - id: {event.get('id')}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    result = reconciler.process_event(db, event)
    logger.info(f"handle_paypal_webhook: Done - id: {result.event_id}, outcome: {result.outcome.value}")
    return JSONResponse(
        status_code=result.http_status,
        content=result.model_dump(mode="json"),
    )
