import uuid

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text
from sqlalchemy.sql import func
from privacy_advisor.db.base import Base

SCAN_STATUSES = ("queued", "running", "done", "error")
SCAN_LABELS = ("Safe", "Caution", "High Risk")


def _new_id() -> str:
    return uuid.uuid4().hex


class Scan(Base):
    __tablename__ = "scans"

    id = Column(String(36), primary_key=True, default=_new_id)

    input = Column(String, nullable=False)
    normalized_input = Column(String, index=True, nullable=True)
    target_type = Column(String, nullable=False, default="url")

    status = Column(String, nullable=False, default="queued", index=True)  # queued|running|done|error
    progress = Column(Integer, nullable=False, default=0)

    score = Column(Integer, nullable=True)
    label = Column(String, nullable=True)  # Safe|Caution|High Risk
    summary = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)  # data sharing, domains, tls grade...

    # set once when the job is published; makes enqueue idempotent
    job_id = Column(String(36), nullable=True, unique=True)
    stall_count = Column(Integer, nullable=False, default=0)
    request_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True, index=True)
