from sqlalchemy import Column, String, DateTime, Boolean, Numeric, JSON
from app.core.database import Base
from datetime import datetime


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    plan_type = Column(String, primary_key=True)  # 'starter', 'monthly', 'annual'
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    interval = Column(String, nullable=False, default='month')  # 'month', 'year'
    course_tiers = Column(JSON, nullable=False)  # Course tiers the plan grants, e.g. ['standard', 'premium']
    features = Column(JSON, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    recommended = Column(Boolean, default=False, nullable=False)
    provider_product_id = Column(String, nullable=True)
    provider_plan_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
