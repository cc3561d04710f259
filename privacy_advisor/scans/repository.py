from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from privacy_advisor.scans.evidence_models import Evidence
from privacy_advisor.scans.issues_models import Issue
from privacy_advisor.scans.models import Scan

logger = logging.getLogger(__name__)


class EvidenceWriter:
    """
    Appends evidence rows for one scan. Each write runs in a worker thread with
    its own session so a page's resource writes can go out concurrently.
    Rows are only written while the scan is `running`; failures are logged and
    swallowed (evidence is supplementary).
    """

    def __init__(self, session_factory: sessionmaker, scan_id: str):
        self.session_factory = session_factory
        self.scan_id = scan_id
        self.written = 0
        self.failed = 0

    def _insert(self, kind: str, severity: int, title: str, details: dict) -> bool:
        db: Session = self.session_factory()
        try:
            status = db.query(Scan.status).filter(Scan.id == self.scan_id).scalar()
            if status != "running":
                logger.warning("skip evidence %s for scan %s in status %s", kind, self.scan_id, status)
                return False
            db.add(Evidence(scan_id=self.scan_id, kind=kind, severity=severity, title=title, details=details))
            db.commit()
            return True
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def write(self, kind: str, severity: int, title: str, details: dict | None = None) -> bool:
        try:
            ok = await asyncio.to_thread(self._insert, kind, severity, title, dict(details or {}))
        except SQLAlchemyError as e:
            self.failed += 1
            logger.warning("evidence write failed scan=%s kind=%s: %s", self.scan_id, kind, e)
            return False
        if ok:
            self.written += 1
        return ok


def list_evidence(db: Session, scan_id: str) -> list[Evidence]:
    return db.query(Evidence).filter(Evidence.scan_id == scan_id).order_by(Evidence.id.asc()).all()


def delete_evidence(db: Session, scan_id: str) -> int:
    return db.query(Evidence).filter(Evidence.scan_id == scan_id).delete(synchronize_session=False)


def list_issues(db: Session, scan_id: str) -> list[Issue]:
    return (
        db.query(Issue)
        .filter(Issue.scan_id == scan_id)
        .order_by(Issue.id.asc())
        .all()
    )


def replace_issues(db: Session, scan_id: str, issues: Iterable[dict[str, Any]]) -> list[Issue]:
    """Delete-then-insert inside the caller's transaction (no commit here)."""
    db.query(Issue).filter(Issue.scan_id == scan_id).delete(synchronize_session=False)
    rows = [Issue(scan_id=scan_id, **issue) for issue in issues]
    db.add_all(rows)
    return rows
