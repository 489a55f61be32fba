import logging
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.exceptions import UnauthenticatedError
from app.models.enrollment import Enrollment
from app.models.purchase import Purchase, PurchaseStatus
from app.models.user import User, UserRole
from app.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)


class AccessDecision(BaseModel):
    user_id: str
    course_id: str
    granted: bool
    source: Literal['admin_override', 'purchase', 'enrollment', 'none']
    access_type: Optional[str] = None  # Enrollment access type when granted by enrollment


class EntitlementService:
    """
    Decides course access.

    Access comes from a paid purchase or an enrollment row. Subscription
    status is never read directly: the lifecycle manager keeps enrollments
    in sync with it.
    """

    def __init__(self, analytics: AnalyticsService):
        self.analytics = analytics

    def get_course_access(
        self,
        db: Session,
        user_id: Optional[str],
        user_role: Optional[str],
        course_id: str,
    ) -> AccessDecision:
        logger.info(f"get_course_access: Entry - user: {user_id}, course: {course_id}")

        if not user_id:
            raise UnauthenticatedError("Authentication required")

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UnauthenticatedError(f"Unknown user: {user_id}")

        if user_role == UserRole.ADMIN.value:
            logger.info(f"get_course_access: Admin override - user: {user_id}, course: {course_id}")
            self.analytics.log_success(
                action='course_access_admin_override',
                user_id=user_id,
                parameters={'course_id': course_id},
            )
            return AccessDecision(user_id=user_id, course_id=course_id, granted=True, source='admin_override')

        purchase = db.query(Purchase.id).filter(
            Purchase.user_id == user_id,
            Purchase.course_id == course_id,
            Purchase.status == PurchaseStatus.PAID.value,
        ).first()
        if purchase:
            logger.info(f"get_course_access: Granted by purchase - user: {user_id}, course: {course_id}")
            return AccessDecision(user_id=user_id, course_id=course_id, granted=True, source='purchase')

        enrollment = db.query(Enrollment).filter(
            Enrollment.user_id == user_id,
            Enrollment.course_id == course_id,
        ).first()
        if enrollment:
            logger.info(f"get_course_access: Granted by enrollment - user: {user_id}, course: {course_id}")
            return AccessDecision(
                user_id=user_id,
                course_id=course_id,
                granted=True,
                source='enrollment',
                access_type=enrollment.access_type,
            )

        logger.info(f"get_course_access: Denied - user: {user_id}, course: {course_id}")
        return AccessDecision(user_id=user_id, course_id=course_id, granted=False, source='none')

    def has_course_access(
        self,
        db: Session,
        user_id: Optional[str],
        user_role: Optional[str],
        course_id: str,
    ) -> bool:
        return self.get_course_access(db, user_id, user_role, course_id).granted
