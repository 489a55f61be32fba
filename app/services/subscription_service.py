import json
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import transaction
from app.core.exceptions import (ConflictError, ExpiredError, ForbiddenError,
                                 NotFoundError, ProviderError)
from app.models.plan import SubscriptionPlan
from app.models.subscription import (CURRENT_STATUSES, PaymentProvider,
                                     Subscription, SubscriptionStatus)
from app.models.subscription_history import SubscriptionHistory
from app.models.user import User
from app.services.analytics_service import AnalyticsService
from app.services.enrollment_service import EnrollmentService
from app.services.paypal_service import PayPalClient, parse_provider_time
from app.services.subscription_state import (assert_transition,
                                             build_transition_table)

logger = logging.getLogger(__name__)

INTERVAL_DAYS = {'month': 30, 'year': 365}

DEFAULT_PLANS = [
    {
        'plan_type': 'starter',
        'name': 'Starter',
        'description': 'Access to all standard courses.',
        'price': Decimal('9.99'),
        'interval': 'month',
        'course_tiers': ['standard'],
        'features': ['All standard courses', 'Progress tracking'],
        'recommended': False,
    },
    {
        'plan_type': 'monthly',
        'name': 'Monthly Premium',
        'description': 'Access to every course, billed monthly.',
        'price': Decimal('29.99'),
        'interval': 'month',
        'course_tiers': ['standard', 'premium'],
        'features': [
            'Access to all courses',
            'Priority support',
            'Certificate issuance',
            'Early access to new courses',
        ],
        'recommended': False,
    },
    {
        'plan_type': 'annual',
        'name': 'Annual Premium',
        'description': 'Access to every course, billed yearly.',
        'price': Decimal('299.99'),
        'interval': 'year',
        'course_tiers': ['standard', 'premium'],
        'features': [
            'Access to all courses',
            'Priority support',
            'Certificate issuance',
            'Early access to new courses',
            '2 months free',
        ],
        'recommended': True,
    },
]


class ProviderSyncResult(BaseModel):
    """Outcome of a best-effort call to the payment provider"""
    action: str
    provider_ref: Optional[str] = None
    success: bool
    error: Optional[str] = None
    attempted_at: datetime


class CheckoutSession(BaseModel):
    subscription_id: str
    provider_ref: str
    approval_url: str


class SweepResult(BaseModel):
    expired: list[str] = []
    failed: list[str] = []
    revoked_enrollments: int = 0


def _is_enrollment_conflict(error: IntegrityError) -> bool:
    message = str(error.orig)
    return 'uq_enrollments_user_course' in message or 'enrollments.' in message


def serialize_subscription(subscription: Subscription) -> dict:
    return {
        'subscription_id': subscription.id,
        'user_id': subscription.user_id,
        'plan_type': subscription.plan_type,
        'status': SubscriptionStatus(subscription.status).value,
        'provider': PaymentProvider(subscription.provider).value if subscription.provider else None,
        'provider_ref': subscription.provider_ref,
        'start_date': subscription.start_date.isoformat() if subscription.start_date else None,
        'end_date': subscription.end_date.isoformat() if subscription.end_date else None,
        'cancelled_at': subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
        'provider_sync_status': subscription.provider_sync_status,
    }


class SubscriptionService:
    """
    Subscription lifecycle manager.

    Every status change goes through _transition, which enforces the
    transition table and writes a history row. Status changes and their
    enrollment side effects share one transaction; provider calls that
    follow a local change are best-effort and never undo it.
    """

    def __init__(
        self,
        provider: PayPalClient,
        analytics: AnalyticsService,
        enrollments: Optional[EnrollmentService] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        allow_expired_reactivation: bool = True,
        pending_checkout_ttl: timedelta = timedelta(hours=24),
    ):
        self.provider = provider
        self.analytics = analytics
        self.enrollments = enrollments or EnrollmentService()
        self.clock = clock
        self.transitions = build_transition_table(allow_expired_reactivation)
        self.pending_checkout_ttl = pending_checkout_ttl
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def get_all_plans(self, db: Session) -> list[dict]:
        """Get all active subscription plans, seeding the catalog when empty"""
        self.logger.info("get_all_plans: Entry")

        self._seed_plans_if_empty(db)
        plans = db.query(SubscriptionPlan).filter(
            SubscriptionPlan.active == True  # noqa: E712
        ).order_by(SubscriptionPlan.price).all()

        result = [
            {
                'plan_type': plan.plan_type,
                'name': plan.name,
                'description': plan.description,
                'price': float(plan.price),
                'interval': plan.interval,
                'features': plan.features,
                'recommended': plan.recommended,
            }
            for plan in plans
        ]
        self.logger.info(f"get_all_plans: Success - {len(result)} plans")
        return result

    def _seed_plans_if_empty(self, db: Session):
        if db.query(SubscriptionPlan).count() > 0:
            return
        self.logger.info("_seed_plans_if_empty: Plans table is empty, seeding plans")
        with transaction(db):
            for plan in DEFAULT_PLANS:
                db.add(SubscriptionPlan(**plan, active=True))

    def get_plan(self, db: Session, plan_type: str) -> SubscriptionPlan:
        plan = db.query(SubscriptionPlan).filter(
            SubscriptionPlan.plan_type == plan_type.lower(),
            SubscriptionPlan.active == True,  # noqa: E712
        ).first()
        if not plan:
            raise NotFoundError(f"Invalid plan type: {plan_type}")
        return plan

    def get_subscription_plan(self, db: Session, subscription: Subscription) -> SubscriptionPlan:
        """
        Plan an existing subscription was sold under. Retired plans still
        resolve here so renewals and restarts keep working; get_plan is
        for new sales only.
        """
        plan = subscription.plan or db.query(SubscriptionPlan).filter(
            SubscriptionPlan.plan_type == subscription.plan_type
        ).first()
        if not plan:
            raise NotFoundError(f"Plan not found: {subscription.plan_type}")
        return plan

    async def sync_plans_with_provider(self, db: Session) -> dict:
        """
        Make sure every active plan has a provider product and billing plan.
        Per-plan provider failures are collected instead of aborting the sync.
        """
        self.logger.info("sync_plans_with_provider: Entry")

        self._seed_plans_if_empty(db)
        plans = db.query(SubscriptionPlan).filter(SubscriptionPlan.active == True).all()  # noqa: E712

        synced = 0
        errors = []
        for plan in plans:
            try:
                if not plan.provider_product_id:
                    product = await self.provider.create_product(
                        name=f"CourseLab - {plan.name}",
                        description=plan.description or f"Subscription for {plan.name}",
                    )
                    with transaction(db):
                        plan.provider_product_id = product['id']

                if not plan.provider_plan_id:
                    provider_plan = await self.provider.create_plan(
                        product_id=plan.provider_product_id,
                        name=plan.name,
                        description=plan.description or plan.name,
                        price=plan.price,
                        interval_unit='YEAR' if plan.interval == 'year' else 'MONTH',
                    )
                    with transaction(db):
                        plan.provider_plan_id = provider_plan['id']
                synced += 1
            except ProviderError as e:
                message = f"Failed to sync plan {plan.name}: {e.message}"
                self.logger.error(f"sync_plans_with_provider: {message}")
                errors.append(message)

        result = {'success': not errors, 'count': synced, 'errors': errors}
        self.analytics.log_success(action='sync_plans_with_provider', parameters={'count': synced, 'errors': len(errors)})
        self.logger.info(f"sync_plans_with_provider: Done - synced: {synced}, errors: {len(errors)}")
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, db: Session, subscription_id: str) -> Subscription:
        subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not subscription:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def find_by_provider_ref(
        self,
        db: Session,
        provider_ref: str,
        provider: PaymentProvider = PaymentProvider.PAYPAL,
    ) -> Optional[Subscription]:
        return db.query(Subscription).filter(
            Subscription.provider == provider,
            Subscription.provider_ref == provider_ref,
        ).first()

    def get_current_subscription(self, db: Session, user_id: str) -> Optional[Subscription]:
        """
        The subscription to show the user: a current one, a cancelled one
        still inside its term, or a recent pending checkout.
        """
        now = self.clock()
        subscription = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            or_(
                Subscription.status.in_(CURRENT_STATUSES),
                (Subscription.status == SubscriptionStatus.CANCELLED) & (Subscription.end_date > now),
            ),
        ).order_by(Subscription.created_at.desc()).first()
        if subscription:
            return subscription

        return db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.PENDING,
            Subscription.created_at > now - self.pending_checkout_ttl,
        ).order_by(Subscription.created_at.desc()).first()

    def get_subscription_history(self, db: Session, user_id: str) -> list[dict]:
        history = db.query(SubscriptionHistory).filter(
            SubscriptionHistory.user_id == user_id
        ).order_by(SubscriptionHistory.created_at.desc()).all()

        return [
            {
                'id': entry.id,
                'subscription_id': entry.subscription_id,
                'action': entry.action,
                'from_status': entry.from_status,
                'to_status': entry.to_status,
                'source': entry.source,
                'created_at': entry.created_at.isoformat() if entry.created_at else None,
                'details': json.loads(entry.details) if entry.details else None,
            }
            for entry in history
        ]

    def get_subscription_stats(self, db: Session) -> dict:
        """Counts per status and plan, plus recurring revenue normalised to months"""
        counts = {status.value: 0 for status in SubscriptionStatus}
        for status, in db.query(Subscription.status).all():
            counts[SubscriptionStatus(status).value] += 1

        plans = {plan.plan_type: plan for plan in db.query(SubscriptionPlan).all()}
        active_by_plan: dict[str, int] = {}
        mrr = Decimal('0')
        for plan_type, in db.query(Subscription.plan_type).filter(
            Subscription.status.in_(CURRENT_STATUSES)
        ).all():
            active_by_plan[plan_type] = active_by_plan.get(plan_type, 0) + 1
            plan = plans.get(plan_type)
            if plan is not None:
                price = Decimal(plan.price)
                mrr += price / 12 if plan.interval == 'year' else price

        mrr = mrr.quantize(Decimal('0.01'))
        return {
            'total': sum(counts.values()),
            'by_status': counts,
            'active_by_plan': active_by_plan,
            'mrr': float(mrr),
            'arr': float(mrr * 12),
        }

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        db: Session,
        user_id: str,
        plan_type: str,
        provider: PaymentProvider = PaymentProvider.PAYPAL,
        provider_ref: Optional[str] = None,
        confirmed: bool = False,
        end_date: Optional[datetime] = None,
        source: str = 'user',
    ) -> Subscription:
        """
        Insert a subscription in pending, or active when the caller's flow
        already has a confirmed provider reference.

        Raises:
            ConflictError: The user already has an active or past_due
                subscription, or the provider reference is taken
        """
        self.logger.info(f"create_subscription: Entry - user: {user_id}, plan: {plan_type}, provider: {provider}")

        try:
            user = db.query(User).filter(User.id == user_id).first()
            if not user:
                raise NotFoundError(f"User not found: {user_id}")
            plan = self.get_plan(db, plan_type)
            if confirmed and not provider_ref:
                raise ConflictError("A confirmed subscription requires a provider reference")

            now = self.clock()
            try:
                with transaction(db):
                    self._ensure_no_current(db, user_id)
                    if provider_ref and self.find_by_provider_ref(db, provider_ref, provider):
                        raise ConflictError(
                            f"Provider reference already in use: {provider_ref}",
                            context={'provider_ref': provider_ref},
                        )

                    # A dangling checkout must not block a new one
                    stale = db.query(Subscription).filter(
                        Subscription.user_id == user_id,
                        Subscription.status == SubscriptionStatus.PENDING,
                    ).all()
                    for pending in stale:
                        self._transition(db, pending, SubscriptionStatus.EXPIRED, source, 'checkout_replaced')

                    subscription = Subscription(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        plan_type=plan.plan_type,
                        status=SubscriptionStatus.PENDING,
                        provider=provider,
                        provider_ref=provider_ref,
                        start_date=now,
                        end_date=end_date or self._term_end(now, plan.interval),
                        created_at=now,
                    )
                    db.add(subscription)
                    db.flush()
                    self._record_history(
                        db, subscription, 'created', None, SubscriptionStatus.PENDING, source,
                        {'plan_type': plan.plan_type, 'provider': PaymentProvider(provider).value},
                    )

                    if confirmed:
                        self._transition(db, subscription, SubscriptionStatus.ACTIVE, source, 'activated')
                        self.enrollments.enroll_user_in_all_courses(db, user_id, subscription.id)
            except IntegrityError as e:
                raise ConflictError(
                    "User already has a current subscription",
                    context={'user_id': user_id},
                ) from e

            db.refresh(subscription)
            self.analytics.log_success(
                action='create_subscription',
                user_id=user_id,
                parameters={'subscription_id': subscription.id, 'plan_type': plan.plan_type, 'confirmed': confirmed},
            )
            self.logger.info(f"create_subscription: Success - user: {user_id}, subscription: {subscription.id}")
            return subscription
        except Exception as e:
            self._log_failure('create_subscription', e, user_id, {'plan_type': plan_type})
            raise

    def activate_subscription(
        self,
        db: Session,
        subscription_id: str,
        provider_ref: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        source: str = 'user',
    ) -> Subscription:
        """
        Move a subscription to active and grant its plan's courses.
        Re-running on an active subscription is a no-op apart from
        repairing missing enrollments.
        """
        self.logger.info(f"activate_subscription: Entry - subscription: {subscription_id}, source: {source}")

        try:
            subscription = self.get_subscription(db, subscription_id)
            for attempt in range(2):
                try:
                    self._apply_activation(db, subscription, provider_ref, start_date, end_date, source)
                    break
                except IntegrityError as e:
                    if attempt == 0 and _is_enrollment_conflict(e):
                        # Another writer enrolled the user first; the rerun skips those courses
                        self.logger.warning(
                            f"activate_subscription: Enrollment race - subscription: {subscription_id}, retrying"
                        )
                        continue
                    raise self._integrity_conflict(e, subscription.user_id) from e

            db.refresh(subscription)
            self.analytics.log_success(
                action='activate_subscription',
                user_id=subscription.user_id,
                parameters={'subscription_id': subscription.id, 'source': source},
            )
            self.logger.info(f"activate_subscription: Success - subscription: {subscription.id}")
            return subscription
        except Exception as e:
            self._log_failure('activate_subscription', e, None, {'subscription_id': subscription_id})
            raise

    def _apply_activation(
        self,
        db: Session,
        subscription: Subscription,
        provider_ref: Optional[str],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        source: str,
    ):
        with transaction(db):
            if provider_ref:
                if subscription.provider_ref and subscription.provider_ref != provider_ref:
                    raise ConflictError(
                        "Provider reference does not match subscription",
                        context={'subscription_id': subscription.id, 'provider_ref': provider_ref},
                    )
                subscription.provider_ref = provider_ref

            from_status = SubscriptionStatus(subscription.status)
            if from_status != SubscriptionStatus.ACTIVE:
                assert_transition(from_status, SubscriptionStatus.ACTIVE, self.transitions)
                self._ensure_no_current(db, subscription.user_id, exclude_id=subscription.id)

            if from_status == SubscriptionStatus.EXPIRED:
                # Resubscription starts a fresh term
                now = self.clock()
                plan = self.get_subscription_plan(db, subscription)
                subscription.start_date = start_date or now
                subscription.end_date = end_date or self._term_end(now, plan.interval)
                subscription.cancelled_at = None
            else:
                if start_date:
                    subscription.start_date = start_date
                if end_date:
                    subscription.end_date = end_date

            self._transition(db, subscription, SubscriptionStatus.ACTIVE, source, 'activated')
            self.enrollments.enroll_user_in_all_courses(db, subscription.user_id, subscription.id)

    async def cancel_subscription(
        self,
        db: Session,
        subscription_id: str,
        user_id: str,
        term_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Cancel a subscription. Access continues until end_date; enrollments
        are only revoked by the expiry sweep. The provider is told
        afterwards on a best-effort basis.

        When the caller supplies no term_end, the provider's current
        billing period end is used if it can be fetched. A checkout that
        was never paid has no term and goes straight to expired.
        """
        self.logger.info(f"cancel_subscription: Entry - user: {user_id}, subscription: {subscription_id}")

        try:
            subscription = self._get_owned(db, subscription_id, user_id)
            status = SubscriptionStatus(subscription.status)
            if status == SubscriptionStatus.PENDING:
                with transaction(db):
                    changed = self._transition(
                        db, subscription, SubscriptionStatus.EXPIRED, 'user', 'checkout_abandoned'
                    )
            else:
                if term_end is None and status == SubscriptionStatus.ACTIVE and self._has_provider_link(subscription):
                    term_end = await self._provider_term_end(subscription)
                now = self.clock()
                with transaction(db):
                    changed = self._transition(
                        db, subscription, SubscriptionStatus.CANCELLED, 'user', 'cancelled',
                        {'term_end': (term_end or subscription.end_date or now).isoformat()},
                    )
                    if changed:
                        subscription.end_date = term_end or subscription.end_date or now
                        subscription.cancelled_at = now
            db.refresh(subscription)

            self.analytics.log_success(
                action='cancel_subscription',
                user_id=user_id,
                parameters={'subscription_id': subscription.id, 'changed': changed},
            )
            self.logger.info(f"cancel_subscription: Success - user: {user_id}, subscription: {subscription.id}")
        except Exception as e:
            self._log_failure('cancel_subscription', e, user_id, {'subscription_id': subscription_id})
            raise

        if changed and self._has_provider_link(subscription):
            await self._sync_with_provider(db, subscription, 'cancel', self.provider.cancel_subscription)
        return subscription

    async def reactivate_subscription(self, db: Session, subscription_id: str, user_id: str) -> Subscription:
        """Bring a cancelled subscription back before its term lapses"""
        self.logger.info(f"reactivate_subscription: Entry - user: {user_id}, subscription: {subscription_id}")

        try:
            subscription = self._get_owned(db, subscription_id, user_id)
            now = self.clock()
            status = SubscriptionStatus(subscription.status)
            if status == SubscriptionStatus.EXPIRED or (
                status == SubscriptionStatus.CANCELLED
                and (subscription.end_date is None or subscription.end_date <= now)
            ):
                raise ExpiredError(
                    "Subscription term has ended; start a new subscription instead",
                    context={'subscription_id': subscription_id},
                )
            if status != SubscriptionStatus.CANCELLED:
                raise ConflictError(
                    f"Only cancelled subscriptions can be reactivated (status: {status.value})",
                    context={'subscription_id': subscription_id},
                )
            if not self._was_ever_active(db, subscription):
                raise ConflictError(
                    "Subscription was never paid for; start a new subscription instead",
                    context={'subscription_id': subscription_id},
                )

            for attempt in range(2):
                try:
                    with transaction(db):
                        self._ensure_no_current(db, user_id, exclude_id=subscription.id)
                        self._transition(db, subscription, SubscriptionStatus.ACTIVE, 'user', 'reactivated')
                        subscription.cancelled_at = None
                        self.enrollments.enroll_user_in_all_courses(db, user_id, subscription.id)
                    break
                except IntegrityError as e:
                    if attempt == 0 and _is_enrollment_conflict(e):
                        continue
                    raise self._integrity_conflict(e, user_id) from e
            db.refresh(subscription)

            self.analytics.log_success(
                action='reactivate_subscription',
                user_id=user_id,
                parameters={'subscription_id': subscription.id},
            )
            self.logger.info(f"reactivate_subscription: Success - user: {user_id}, subscription: {subscription.id}")
        except Exception as e:
            self._log_failure('reactivate_subscription', e, user_id, {'subscription_id': subscription_id})
            raise

        if self._has_provider_link(subscription):
            await self._sync_with_provider(db, subscription, 'activate', self.provider.activate_subscription)
        return subscription

    def find_expirable(self, db: Session, now: Optional[datetime] = None) -> list[Subscription]:
        now = now or self.clock()
        return db.query(Subscription).filter(
            Subscription.status.in_([
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.PAST_DUE,
                SubscriptionStatus.CANCELLED,
            ]),
            Subscription.end_date != None,  # noqa: E711
            Subscription.end_date <= now,
        ).order_by(Subscription.end_date).all()

    def expire_subscriptions(self, db: Session, now: Optional[datetime] = None) -> SweepResult:
        """
        Expire every subscription whose term has ended and revoke the
        enrollments nothing else justifies. Each subscription is its own
        transaction; failures are recorded in the result.
        """
        self.logger.info("expire_subscriptions: Entry")
        now = now or self.clock()
        result = SweepResult()

        for subscription in self.find_expirable(db, now):
            try:
                revocation = self._expire(db, subscription, 'sweep', now)
                result.expired.append(subscription.id)
                result.revoked_enrollments += revocation['revoked']
            except Exception as e:
                self._log_failure('expire_subscriptions', e, subscription.user_id, {'subscription_id': subscription.id})
                result.failed.append(subscription.id)

        self.analytics.log_success(
            action='expire_subscriptions',
            parameters={'expired': len(result.expired), 'failed': len(result.failed)},
        )
        self.logger.info(
            f"expire_subscriptions: Success - expired: {len(result.expired)}, failed: {len(result.failed)}"
        )
        return result

    def expire_subscription(self, db: Session, subscription_id: str, source: str = 'webhook') -> Subscription:
        subscription = self.get_subscription(db, subscription_id)
        self._expire(db, subscription, source, self.clock())
        db.refresh(subscription)
        return subscription

    def expire_abandoned_checkouts(self, db: Session, max_age: Optional[timedelta] = None) -> int:
        """Expire pending checkouts older than the checkout TTL"""
        self.logger.info("expire_abandoned_checkouts: Entry")
        cutoff = self.clock() - (max_age or self.pending_checkout_ttl)

        abandoned = db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.PENDING,
            Subscription.created_at < cutoff,
        ).all()
        with transaction(db):
            for subscription in abandoned:
                self._transition(db, subscription, SubscriptionStatus.EXPIRED, 'sweep', 'checkout_abandoned')

        self.logger.info(f"expire_abandoned_checkouts: Success - expired: {len(abandoned)}")
        return len(abandoned)

    def mark_past_due(self, db: Session, subscription_id: str, source: str = 'webhook') -> Subscription:
        subscription = self.get_subscription(db, subscription_id)
        with transaction(db):
            self._transition(db, subscription, SubscriptionStatus.PAST_DUE, source, 'payment_failed')
        db.refresh(subscription)
        return subscription

    def apply_provider_cancellation(
        self,
        db: Session,
        subscription_id: str,
        term_end: Optional[datetime] = None,
        source: str = 'webhook',
    ) -> Subscription:
        """
        Mirror a cancellation that happened at the provider. Subscriptions
        that never paid, are past due, or whose term already lapsed go
        straight to expired; others keep access until term end.
        """
        subscription = self.get_subscription(db, subscription_id)
        now = self.clock()
        status = SubscriptionStatus(subscription.status)
        end = term_end or subscription.end_date

        if status in (SubscriptionStatus.PENDING, SubscriptionStatus.PAST_DUE, SubscriptionStatus.EXPIRED) or (
            end is not None and end <= now
        ):
            self._expire(db, subscription, source, now)
        else:
            with transaction(db):
                changed = self._transition(db, subscription, SubscriptionStatus.CANCELLED, source, 'cancelled')
                if changed:
                    subscription.end_date = end or now
                    subscription.cancelled_at = now
        db.refresh(subscription)
        return subscription

    def extend_term(
        self,
        db: Session,
        subscription_id: str,
        new_end_date: datetime,
        source: str = 'webhook',
    ) -> Subscription:
        """Move end_date forward after a renewal payment; never shortens the term"""
        subscription = self.get_subscription(db, subscription_id)
        if subscription.end_date is None or new_end_date > subscription.end_date:
            with transaction(db):
                previous = subscription.end_date
                subscription.end_date = new_end_date
                self._record_history(
                    db, subscription, 'term_extended', subscription.status, subscription.status, source,
                    {'from': previous.isoformat() if previous else None, 'to': new_end_date.isoformat()},
                )
            db.refresh(subscription)
        return subscription

    async def start_checkout(
        self,
        db: Session,
        user_id: str,
        plan_type: str,
        return_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create the local pending row, then the provider subscription
        correlated to it, then persist the provider reference.
        """
        self.logger.info(f"start_checkout: Entry - user: {user_id}, plan: {plan_type}")

        plan = self.get_plan(db, plan_type)
        if not plan.provider_plan_id:
            raise ProviderError(
                f"Plan {plan.plan_type} has not been synced with the payment provider",
                context={'plan_type': plan.plan_type},
            )

        subscription = self.create_subscription(db, user_id, plan.plan_type, provider=PaymentProvider.PAYPAL)
        try:
            created = await self.provider.create_subscription(
                provider_plan_id=plan.provider_plan_id,
                return_url=return_url,
                cancel_url=cancel_url,
                correlation_id=subscription.id,
            )
        except ProviderError as e:
            with transaction(db):
                self._transition(
                    db, subscription, SubscriptionStatus.EXPIRED, 'user', 'checkout_failed', {'error': e.message}
                )
            self._log_failure('start_checkout', e, user_id, {'subscription_id': subscription.id})
            raise

        try:
            with transaction(db):
                subscription.provider_ref = created.subscription_id
                self._record_history(
                    db, subscription, 'checkout_started', subscription.status, subscription.status, 'user',
                    {'provider_ref': created.subscription_id},
                )
        except IntegrityError as e:
            raise ConflictError(
                f"Provider reference already in use: {created.subscription_id}",
                context={'provider_ref': created.subscription_id},
            ) from e

        self.analytics.log_success(
            action='start_checkout',
            user_id=user_id,
            parameters={'subscription_id': subscription.id, 'plan_type': plan.plan_type},
        )
        self.logger.info(f"start_checkout: Success - user: {user_id}, subscription: {subscription.id}")
        return CheckoutSession(
            subscription_id=subscription.id,
            provider_ref=created.subscription_id,
            approval_url=created.approval_url,
        )

    def confirm_checkout(self, db: Session, user_id: str, provider_ref: str) -> Subscription:
        """Provider return callback: activate the caller's subscription"""
        subscription = self.find_by_provider_ref(db, provider_ref)
        if not subscription:
            raise NotFoundError(f"Subscription not found for provider reference: {provider_ref}")
        if subscription.user_id != user_id:
            raise ForbiddenError("Subscription belongs to another user")
        if SubscriptionStatus(subscription.status) not in (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE):
            raise ConflictError(
                f"Checkout is no longer open (status: {SubscriptionStatus(subscription.status).value})",
                context={'subscription_id': subscription.id},
            )
        return self.activate_subscription(db, subscription.id, source='return_callback')

    def grant_subscription(
        self,
        db: Session,
        user_id: str,
        plan_type: str,
        duration_days: int = 30,
    ) -> Subscription:
        """Admin grant without a payment provider"""
        return self.create_subscription(
            db,
            user_id,
            plan_type,
            provider=PaymentProvider.MANUAL,
            provider_ref=f"manual_{uuid.uuid4().hex}",
            confirmed=True,
            end_date=self.clock() + timedelta(days=duration_days),
            source='admin',
        )

    async def retry_provider_sync(self, db: Session) -> list[ProviderSyncResult]:
        """Retry best-effort provider calls that previously failed"""
        self.logger.info("retry_provider_sync: Entry")

        failed = db.query(Subscription).filter(
            Subscription.provider_sync_status == 'failed',
            Subscription.provider == PaymentProvider.PAYPAL,
            Subscription.provider_ref != None,  # noqa: E711
        ).all()

        results = []
        for subscription in failed:
            status = SubscriptionStatus(subscription.status)
            if status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
                results.append(
                    await self._sync_with_provider(db, subscription, 'cancel', self.provider.cancel_subscription)
                )
            elif status == SubscriptionStatus.ACTIVE:
                results.append(
                    await self._sync_with_provider(db, subscription, 'activate', self.provider.activate_subscription)
                )

        self.logger.info(
            f"retry_provider_sync: Success - retried: {len(results)}, "
            f"recovered: {sum(1 for r in results if r.success)}"
        )
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        db: Session,
        subscription: Subscription,
        target: SubscriptionStatus,
        source: str,
        action: str,
        details: Optional[dict] = None,
    ) -> bool:
        """
        Apply a guarded status change.

        Returns:
            False for a no-op (already in target), True otherwise
        """
        current = SubscriptionStatus(subscription.status)
        assert_transition(current, target, self.transitions)
        if current == target:
            return False

        if target == SubscriptionStatus.ACTIVE and not subscription.provider_ref:
            raise ConflictError(
                "Cannot activate a subscription without a provider reference",
                context={'subscription_id': subscription.id},
            )

        subscription.status = target
        subscription.updated_at = self.clock()
        self._record_history(db, subscription, action, current, target, source, details)
        db.flush()
        self.logger.info(
            f"_transition: {subscription.id} {current.value} -> {target.value} ({source})"
        )
        return True

    def _expire(self, db: Session, subscription: Subscription, source: str, now: datetime) -> dict:
        with transaction(db):
            changed = self._transition(db, subscription, SubscriptionStatus.EXPIRED, source, 'expired')
            if not changed:
                return {'revoked': 0, 'kept_by_purchase': 0, 'kept_by_subscription': 0}
            if subscription.end_date is None or subscription.end_date > now:
                subscription.end_date = now
            return self.enrollments.revoke_subscription_enrollments(db, subscription, now)

    def _ensure_no_current(self, db: Session, user_id: str, exclude_id: Optional[str] = None):
        query = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(CURRENT_STATUSES),
        )
        if exclude_id:
            query = query.filter(Subscription.id != exclude_id)
        existing = query.first()
        if existing:
            raise ConflictError(
                "User already has a current subscription",
                context={'user_id': user_id, 'subscription_id': existing.id},
            )

    def _get_owned(self, db: Session, subscription_id: str, user_id: str) -> Subscription:
        subscription = self.get_subscription(db, subscription_id)
        if subscription.user_id != user_id:
            raise ForbiddenError(
                "Subscription belongs to another user",
                context={'subscription_id': subscription_id},
            )
        return subscription

    def _has_provider_link(self, subscription: Subscription) -> bool:
        return subscription.provider == PaymentProvider.PAYPAL and bool(subscription.provider_ref)

    def _was_ever_active(self, db: Session, subscription: Subscription) -> bool:
        return db.query(SubscriptionHistory).filter(
            SubscriptionHistory.subscription_id == subscription.id,
            SubscriptionHistory.to_status == SubscriptionStatus.ACTIVE.value,
        ).first() is not None

    async def _provider_term_end(self, subscription: Subscription) -> Optional[datetime]:
        """End of the current billing period as the provider reports it, or None"""
        try:
            details = await self.provider.get_subscription(subscription.provider_ref)
        except ProviderError as e:
            self.logger.warning(f"_provider_term_end: Failure - {subscription.provider_ref}: {e.message}")
            return None
        billing_info = details.get('billing_info') or {}
        return parse_provider_time(billing_info.get('next_billing_time'))

    def _integrity_conflict(self, error: IntegrityError, user_id: str) -> ConflictError:
        if _is_enrollment_conflict(error):
            return ConflictError(
                "Enrollments changed while activating; retry the request",
                context={'user_id': user_id},
            )
        if 'provider_ref' in str(error.orig):
            return ConflictError("Provider reference already in use", context={'user_id': user_id})
        return ConflictError("User already has a current subscription", context={'user_id': user_id})

    async def _sync_with_provider(
        self,
        db: Session,
        subscription: Subscription,
        action: str,
        call: Callable[[str], Awaitable[None]],
    ) -> ProviderSyncResult:
        """
        Run a provider call after the local change has committed and record
        its outcome on the subscription. Provider errors are recorded, not
        raised.
        """
        try:
            await call(subscription.provider_ref)
            result = ProviderSyncResult(
                action=action,
                provider_ref=subscription.provider_ref,
                success=True,
                attempted_at=self.clock(),
            )
        except ProviderError as e:
            self.logger.error(f"_sync_with_provider: Failure - {action} {subscription.provider_ref}: {e.message}")
            result = ProviderSyncResult(
                action=action,
                provider_ref=subscription.provider_ref,
                success=False,
                error=e.message,
                attempted_at=self.clock(),
            )

        with transaction(db):
            subscription.provider_sync_status = 'ok' if result.success else 'failed'
            subscription.provider_sync_error = result.error
            self._record_history(
                db, subscription, f'provider_{action}', subscription.status, subscription.status, 'provider',
                result.model_dump(mode='json'),
            )

        if result.success:
            self.analytics.log_success(
                action=f'provider_{action}',
                user_id=subscription.user_id,
                parameters={'subscription_id': subscription.id},
            )
        else:
            self.analytics.log_failure(
                action=f'provider_{action}',
                error=result.error,
                user_id=subscription.user_id,
                parameters={'subscription_id': subscription.id, 'provider_ref': subscription.provider_ref},
            )
        return result

    def _record_history(
        self,
        db: Session,
        subscription: Subscription,
        action: str,
        from_status,
        to_status,
        source: str,
        details: Optional[dict] = None,
    ):
        db.add(SubscriptionHistory(
            id=str(uuid.uuid4()),
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            action=action,
            from_status=SubscriptionStatus(from_status).value if from_status else None,
            to_status=SubscriptionStatus(to_status).value if to_status else None,
            source=source,
            details=json.dumps(details) if details else None,
            created_at=self.clock(),
        ))

    def _term_end(self, start: datetime, interval: str) -> datetime:
        return start + timedelta(days=INTERVAL_DAYS.get(interval, 30))

    def _log_failure(self, action: str, error: Exception, user_id: Optional[str], parameters: dict):
        self.analytics.log_failure(
            action=action,
            error=str(error),
            user_id=user_id,
            parameters=parameters,
        )
        self.logger.error(f"{action}: Failure - {error}")
