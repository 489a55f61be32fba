"""
Enrollment fan-out and revocation.

Enrollments are the only thing the entitlement check reads, so every
subscription or purchase status change that affects access must go
through here. Functions only add/flush; the caller owns the transaction.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError
from app.models.course import Course
from app.models.enrollment import AccessType, Enrollment
from app.models.plan import SubscriptionPlan
from app.models.purchase import Purchase, PurchaseStatus
from app.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class EnrollmentService:

    def covered_course_ids(self, db: Session, plan: SubscriptionPlan) -> list[str]:
        """Published courses whose tier the plan grants"""
        tiers = list(plan.course_tiers or [])
        if not tiers:
            return []
        rows = db.query(Course.id).filter(
            Course.is_published == True,  # noqa: E712
            Course.tier.in_(tiers),
        ).order_by(Course.id).all()
        return [row[0] for row in rows]

    def enroll_user_in_all_courses(self, db: Session, user_id: str, subscription_id: str) -> list[Enrollment]:
        """
        Create one subscription enrollment per covered course.

        Courses the user is already enrolled in (by purchase or another
        subscription) are skipped, so re-running is a no-op.

        Returns:
            The newly created enrollments
        """
        logger.info(f"enroll_user_in_all_courses: Entry - user: {user_id}, subscription: {subscription_id}")

        subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not subscription:
            raise NotFoundError(f"Subscription not found: {subscription_id}")

        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.plan_type == subscription.plan_type).first()
        if not plan:
            raise NotFoundError(f"Plan not found: {subscription.plan_type}")

        course_ids = self.covered_course_ids(db, plan)
        existing = {
            row[0] for row in db.query(Enrollment.course_id).filter(
                Enrollment.user_id == user_id,
                Enrollment.course_id.in_(course_ids),
            ).all()
        } if course_ids else set()

        created = []
        for course_id in course_ids:
            if course_id in existing:
                continue
            enrollment = Enrollment(
                id=str(uuid.uuid4()),
                user_id=user_id,
                course_id=course_id,
                access_type=AccessType.SUBSCRIPTION.value,
                subscription_id=subscription_id,
            )
            db.add(enrollment)
            created.append(enrollment)

        db.flush()
        logger.info(
            f"enroll_user_in_all_courses: Success - user: {user_id}, "
            f"created: {len(created)}, skipped: {len(existing)}"
        )
        return created

    def revoke_subscription_enrollments(
        self,
        db: Session,
        subscription: Subscription,
        now: datetime,
    ) -> dict:
        """
        Remove the enrollments a subscription granted, unless something else
        still justifies them. A paid purchase turns the enrollment into a
        purchased one; another live subscription covering the course takes
        it over. Only unjustified enrollments are deleted.
        """
        logger.info(f"revoke_subscription_enrollments: Entry - subscription: {subscription.id}")

        enrollments = db.query(Enrollment).filter(
            Enrollment.subscription_id == subscription.id,
            Enrollment.access_type == AccessType.SUBSCRIPTION.value,
        ).all()

        result = {'revoked': 0, 'kept_by_purchase': 0, 'kept_by_subscription': 0}
        for enrollment in enrollments:
            purchase = self._paid_purchase(db, enrollment.user_id, enrollment.course_id)
            if purchase:
                enrollment.access_type = AccessType.PURCHASED.value
                enrollment.purchase_id = purchase.id
                enrollment.subscription_id = None
                result['kept_by_purchase'] += 1
                continue

            other = self._justifying_subscription(
                db, enrollment.user_id, enrollment.course_id, exclude_id=subscription.id, now=now
            )
            if other:
                enrollment.subscription_id = other.id
                result['kept_by_subscription'] += 1
                continue

            db.delete(enrollment)
            result['revoked'] += 1

        db.flush()
        logger.info(f"revoke_subscription_enrollments: Success - subscription: {subscription.id}, {result}")
        return result

    def grant_purchase_enrollment(self, db: Session, purchase: Purchase) -> Enrollment:
        """Upsert a purchased enrollment for a paid purchase"""
        enrollment = db.query(Enrollment).filter(
            Enrollment.user_id == purchase.user_id,
            Enrollment.course_id == purchase.course_id,
        ).first()

        if enrollment:
            # A purchase outlives any subscription, so it takes over the grant
            enrollment.access_type = AccessType.PURCHASED.value
            enrollment.purchase_id = purchase.id
            enrollment.subscription_id = None
        else:
            enrollment = Enrollment(
                id=str(uuid.uuid4()),
                user_id=purchase.user_id,
                course_id=purchase.course_id,
                access_type=AccessType.PURCHASED.value,
                purchase_id=purchase.id,
            )
            db.add(enrollment)

        db.flush()
        return enrollment

    def revoke_purchase_enrollment(self, db: Session, purchase: Purchase, now: datetime) -> bool:
        """
        Revoke the enrollment granted by a refunded purchase.

        Returns:
            True if the enrollment was deleted, False if it was kept
        """
        enrollment = db.query(Enrollment).filter(
            Enrollment.user_id == purchase.user_id,
            Enrollment.course_id == purchase.course_id,
            Enrollment.purchase_id == purchase.id,
        ).first()
        if not enrollment:
            return False

        other_purchase = self._paid_purchase(db, purchase.user_id, purchase.course_id, exclude_id=purchase.id)
        if other_purchase:
            enrollment.purchase_id = other_purchase.id
            db.flush()
            return False

        subscription = self._justifying_subscription(db, purchase.user_id, purchase.course_id, now=now)
        if subscription:
            enrollment.access_type = AccessType.SUBSCRIPTION.value
            enrollment.subscription_id = subscription.id
            enrollment.purchase_id = None
            db.flush()
            return False

        db.delete(enrollment)
        db.flush()
        return True

    def _paid_purchase(
        self,
        db: Session,
        user_id: str,
        course_id: str,
        exclude_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        query = db.query(Purchase).filter(
            Purchase.user_id == user_id,
            Purchase.course_id == course_id,
            Purchase.status == PurchaseStatus.PAID.value,
        )
        if exclude_id:
            query = query.filter(Purchase.id != exclude_id)
        return query.first()

    def _justifying_subscription(
        self,
        db: Session,
        user_id: str,
        course_id: str,
        now: datetime,
        exclude_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """A live subscription of the user whose plan covers the course"""
        course = db.query(Course).filter(Course.id == course_id).first()
        if not course:
            return None

        query = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            or_(
                Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE]),
                (Subscription.status == SubscriptionStatus.CANCELLED) & (Subscription.end_date > now),
            ),
        )
        if exclude_id:
            query = query.filter(Subscription.id != exclude_id)

        for candidate in query.order_by(Subscription.created_at.desc()).all():
            plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.plan_type == candidate.plan_type).first()
            if plan and course.tier in (plan.course_tiers or []):
                return candidate
        return None
