import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.core.database import transaction
from app.core.exceptions import NotFoundError
from app.models.purchase import Purchase, PurchaseStatus
from app.services.analytics_service import AnalyticsService
from app.services.enrollment_service import EnrollmentService

logger = logging.getLogger(__name__)


class PurchaseService:
    """One-off course purchases and the enrollments they grant"""

    def __init__(
        self,
        analytics: AnalyticsService,
        enrollments: Optional[EnrollmentService] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.analytics = analytics
        self.enrollments = enrollments or EnrollmentService()
        self.clock = clock

    def get_purchase(self, db: Session, purchase_id: str) -> Purchase:
        purchase = db.query(Purchase).filter(Purchase.id == purchase_id).first()
        if not purchase:
            raise NotFoundError(f"Purchase not found: {purchase_id}")
        return purchase

    def find_by_provider_ref(self, db: Session, provider_ref: str) -> Optional[Purchase]:
        return db.query(Purchase).filter(Purchase.provider_ref == provider_ref).first()

    def complete_purchase(self, db: Session, purchase_id: str) -> Purchase:
        """Mark a purchase paid and grant its course"""
        logger.info(f"complete_purchase: Entry - purchase: {purchase_id}")

        try:
            purchase = self.get_purchase(db, purchase_id)
            if purchase.status == PurchaseStatus.PAID.value:
                logger.info(f"complete_purchase: Already paid - purchase: {purchase_id}")
                return purchase

            with transaction(db):
                purchase.status = PurchaseStatus.PAID.value
                purchase.updated_at = self.clock()
                self.enrollments.grant_purchase_enrollment(db, purchase)
            db.refresh(purchase)

            self.analytics.log_success(
                action='complete_purchase',
                user_id=purchase.user_id,
                parameters={'purchase_id': purchase.id, 'course_id': purchase.course_id},
            )
            logger.info(f"complete_purchase: Success - purchase: {purchase_id}")
            return purchase
        except Exception as e:
            self.analytics.log_failure(action='complete_purchase', error=str(e), parameters={'purchase_id': purchase_id})
            logger.error(f"complete_purchase: Failure - {e}")
            raise

    def refund_purchase(self, db: Session, purchase_id: str) -> Purchase:
        """Mark a purchase refunded and revoke its enrollment unless a subscription still covers the course"""
        logger.info(f"refund_purchase: Entry - purchase: {purchase_id}")

        try:
            purchase = self.get_purchase(db, purchase_id)
            if purchase.status == PurchaseStatus.REFUNDED.value:
                return purchase

            with transaction(db):
                purchase.status = PurchaseStatus.REFUNDED.value
                purchase.updated_at = self.clock()
                db.flush()
                revoked = self.enrollments.revoke_purchase_enrollment(db, purchase, self.clock())
            db.refresh(purchase)

            self.analytics.log_success(
                action='refund_purchase',
                user_id=purchase.user_id,
                parameters={'purchase_id': purchase.id, 'enrollment_revoked': revoked},
            )
            logger.info(f"refund_purchase: Success - purchase: {purchase_id}, enrollment revoked: {revoked}")
            return purchase
        except Exception as e:
            self.analytics.log_failure(action='refund_purchase', error=str(e), parameters={'purchase_id': purchase_id})
            logger.error(f"refund_purchase: Failure - {e}")
            raise
