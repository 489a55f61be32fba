import asyncio
import logging
from datetime import timedelta

import click
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import SubscriptionError
from app.core.firebase import init_firebase
from app.models.user import User, UserRole
from app.services.analytics_service import AnalyticsService
from app.services.enrollment_service import EnrollmentService
from app.services.paypal_service import PayPalClient
from app.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


def _build_service() -> SubscriptionService:
    init_firebase()
    return SubscriptionService(
        provider=PayPalClient.from_settings(settings),
        analytics=AnalyticsService(),
        enrollments=EnrollmentService(),
        allow_expired_reactivation=settings.allow_expired_reactivation,
        pending_checkout_ttl=timedelta(hours=settings.pending_checkout_ttl_hours),
    )


@click.group()
def cli():
    """CourseLab admin commands"""
    logging.basicConfig(level=settings.log_level.upper())


@cli.command('expire-subscriptions')
@click.option('--dry-run', 'dry_run', is_flag=True, help='List what would expire without changing anything')
def expire_subscriptions(dry_run):
    """Expire subscriptions past their term end and revoke their enrollments"""
    db = SessionLocal()
    try:
        service = _build_service()
        if dry_run:
            due = service.find_expirable(db)
            click.echo(f"[DRY RUN] {len(due)} subscriptions would expire")
            for subscription in due:
                click.echo(
                    f"  - {subscription.id} (user: {subscription.user_id}, "
                    f"status: {subscription.status.value}, end: {subscription.end_date.isoformat()})"
                )
            return

        result = service.expire_subscriptions(db)
        click.echo(
            f"✓ Expired {len(result.expired)} subscriptions, "
            f"revoked {result.revoked_enrollments} enrollments"
        )
        if result.failed:
            click.echo(f"❌ Failed to expire {len(result.failed)}: {', '.join(result.failed)}", err=True)
            raise SystemExit(1)
    finally:
        db.close()


@cli.command('cleanup-pending')
@click.option('--hours', type=int, default=None, help='Checkout age in hours (defaults to PENDING_CHECKOUT_TTL_HOURS)')
def cleanup_pending(hours):
    """Expire abandoned pending checkouts"""
    db = SessionLocal()
    try:
        service = _build_service()
        max_age = timedelta(hours=hours) if hours else None
        expired = service.expire_abandoned_checkouts(db, max_age=max_age)
        click.echo(f"✓ Expired {expired} abandoned checkouts")
    finally:
        db.close()


@cli.command('sync-plans')
def sync_plans():
    """Create PayPal products and billing plans for unsynced plans"""
    db = SessionLocal()
    try:
        service = _build_service()
        result = asyncio.run(service.sync_plans_with_provider(db))
        click.echo(f"✓ Synced {result['count']} plans")
        for error in result['errors']:
            click.echo(f"❌ {error}", err=True)
        if not result['success']:
            raise SystemExit(1)
    finally:
        db.close()


@cli.command('grant-subscription')
@click.option('--email', required=True, help='User email')
@click.option('--plan', 'plan_type', required=True, help='Plan type (starter, monthly, annual)')
@click.option('--days', type=int, default=30, show_default=True, help='Length of the grant')
def grant_subscription(email, plan_type, days):
    """Give a user an active subscription without payment"""
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            click.echo(f"❌ User not found: {email}", err=True)
            raise SystemExit(1)

        service = _build_service()
        try:
            subscription = service.grant_subscription(db, user.id, plan_type, duration_days=days)
        except SubscriptionError as e:
            click.echo(f"❌ {e.error_code}: {e.message}", err=True)
            raise SystemExit(1)
        click.echo(
            f"✓ Granted {subscription.plan_type} to {email} until {subscription.end_date.isoformat()} "
            f"(subscription: {subscription.id})"
        )
    finally:
        db.close()


@cli.command('retry-provider-sync')
def retry_provider_sync():
    """Retry PayPal cancellations and reactivations that failed"""
    db = SessionLocal()
    try:
        service = _build_service()
        results = asyncio.run(service.retry_provider_sync(db))
        recovered = sum(1 for r in results if r.success)
        click.echo(f"✓ Retried {len(results)} provider calls, {recovered} succeeded")
        for result in results:
            if not result.success:
                click.echo(f"❌ {result.action} {result.provider_ref}: {result.error}", err=True)
    finally:
        db.close()


@cli.command('set-role')
@click.option('--email', required=True, help='User email')
@click.option('--role', type=click.Choice([r.value for r in UserRole]), required=True, help='New role')
def set_role(email, role):
    """Change a user's role"""
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            click.echo(f"❌ User not found: {email}", err=True)
            raise SystemExit(1)

        if user.role == role:
            click.echo(f"✓ User {email} already has role {role}")
            return
        user.role = role
        db.commit()
        click.echo(f"✓ Set role {role} for {email}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


if __name__ == '__main__':
    cli()
