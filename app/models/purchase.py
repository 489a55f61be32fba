from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from app.core.database import Base
from datetime import datetime
import enum


class PurchaseStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class Purchase(Base):
    __tablename__ = "purchases"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String, ForeignKey("courses.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=PurchaseStatus.PENDING.value, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default='USD')
    provider = Column(String, nullable=False, default='paypal')
    provider_ref = Column(String, nullable=True, index=True)  # Provider order id
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="purchases")
    course = relationship("Course")
