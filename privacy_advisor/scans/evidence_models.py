from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON
from sqlalchemy.sql import func
from privacy_advisor.db.base import Base

EVIDENCE_KINDS = ("header", "cookie", "thirdparty", "tracker", "fingerprint", "insecure", "policy", "tls")


class Evidence(Base):
    __tablename__ = "evidence"

    id = Column(Integer, primary_key=True)
    scan_id = Column(String(36), ForeignKey("scans.id"), index=True, nullable=False)

    kind = Column(String, index=True, nullable=False)
    severity = Column(Integer, nullable=False)  # 1..3
    title = Column(String, nullable=False)
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
