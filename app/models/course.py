from sqlalchemy import Column, String, DateTime, Boolean
from app.core.database import Base
from datetime import datetime


class Course(Base):
    __tablename__ = "courses"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    tier = Column(String, nullable=False, default='standard', index=True)  # 'standard', 'premium'
    is_published = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
