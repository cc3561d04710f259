from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from privacy_advisor.db.base import Base


class CachedList(Base):
    __tablename__ = "cached_lists"

    id = Column(Integer, primary_key=True)
    source = Column(String, unique=True, index=True, nullable=False)  # easyprivacy | whotracks
    version = Column(String, nullable=True)
    data = Column(JSON, nullable=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
