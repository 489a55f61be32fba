import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.v1.dependencies import (get_current_db_user,
                                     get_entitlement_service, http_error)
from app.core.database import get_db
from app.core.exceptions import SubscriptionError
from app.models.course import Course
from app.models.user import User
from app.services.entitlement_service import EntitlementService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{course_id}/access")
async def get_course_access(
    course_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_db_user),
    entitlement_service: EntitlementService = Depends(get_entitlement_service)
):
    """
    Check whether the caller may open a course.
    Requires authentication.
    """
    logger.info(f"get_course_access: Entry - user: {user.id}, course: {course_id}")

    if not db.query(Course.id).filter(Course.id == course_id).first():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Course not found: {course_id}"
        )

    try:
        decision = entitlement_service.get_course_access(db, user.id, user.role, course_id)
        return decision.model_dump()
    except SubscriptionError as e:
        raise http_error(e)
