from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Index, Text, UniqueConstraint, text
from sqlalchemy.orm import relationship
from app.core.database import Base
from datetime import datetime
import enum


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentProvider(str, enum.Enum):
    PAYPAL = "paypal"
    MANUAL = "manual"  # Admin grants, no external billing


# A user holds at most one row in these statuses
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)

_current_predicate = text("status IN ('active', 'past_due')")


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint('provider', 'provider_ref', name='uq_subscriptions_provider_ref'),
        Index(
            'uq_subscriptions_current_user',
            'user_id',
            unique=True,
            postgresql_where=_current_predicate,
            sqlite_where=_current_predicate,
        ),
    )

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_type = Column(String, ForeignKey("subscription_plans.plan_type"), nullable=False, index=True)
    status = Column(
        Enum(SubscriptionStatus, name="subscriptionstatus", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatus.PENDING,
        index=True,
    )
    provider = Column(
        Enum(PaymentProvider, name="paymentprovider", values_callable=_enum_values),
        nullable=False,
        default=PaymentProvider.PAYPAL,
    )
    provider_ref = Column(String, nullable=True, index=True)  # Provider subscription id, set by confirmation
    start_date = Column(DateTime, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=True)  # Term end; access lapses after this
    cancelled_at = Column(DateTime, nullable=True)
    provider_sync_status = Column(String, nullable=True)  # 'ok', 'failed' for the last best-effort provider call
    provider_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan")
    enrollments = relationship("Enrollment", back_populates="subscription")
