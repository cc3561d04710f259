from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, Text
from sqlalchemy.sql import func
from privacy_advisor.db.base import Base


class Issue(Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True)
    scan_id = Column(String(36), ForeignKey("scans.id"), index=True, nullable=False)

    key = Column(String, nullable=False)  # e.g. tracking.trackers
    severity = Column(String, nullable=False)  # critical|high|medium|low|info
    category = Column(String, nullable=False)
    title = Column(String, nullable=False)
    summary = Column(Text, nullable=True)
    remediation = Column(Text, nullable=True)
    why_it_matters = Column(Text, nullable=True)
    references = Column(JSON, nullable=True)
    sort_weight = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
