from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.core.database import Base
from datetime import datetime
import enum


class AccessType(str, enum.Enum):
    PURCHASED = "purchased"
    SUBSCRIPTION = "subscription"


class Enrollment(Base):
    """Single source of truth for course access"""
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint('user_id', 'course_id', name='uq_enrollments_user_course'),
    )

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String, ForeignKey("courses.id"), nullable=False, index=True)
    access_type = Column(String, nullable=False)  # 'purchased', 'subscription'
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True, index=True)
    purchase_id = Column(String, ForeignKey("purchases.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="enrollments")
    course = relationship("Course")
    subscription = relationship("Subscription", back_populates="enrollments")
    purchase = relationship("Purchase")
