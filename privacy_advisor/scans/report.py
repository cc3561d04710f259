from __future__ import annotations

from datetime import timezone
from typing import Any

from sqlalchemy.orm import Session

from privacy_advisor.core.errors import ScanNotFoundError
from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.repository import list_evidence, list_issues
from privacy_advisor.scans.scoring import data_sharing_from_evidence, root_domain_for, select_top_fixes, sort_issues


def _iso(dt):
    if dt is None:
        return None
    # SQLite can return naive -> treat as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def _scan_dict(s: Scan) -> dict:
    return {
        "id": s.id,
        "input": s.input,
        "normalized_input": s.normalized_input,
        "status": s.status,
        "progress": s.progress,
        "score": s.score,
        "label": s.label,
        "summary": s.summary,
        "meta": s.meta,
        "created_at": _iso(s.created_at),
        "started_at": _iso(s.started_at),
        "finished_at": _iso(s.finished_at),
    }


def _issue_dict(i) -> dict:
    return {
        "id": i.id,
        "key": i.key,
        "severity": i.severity,
        "category": i.category,
        "title": i.title,
        "summary": i.summary,
        "remediation": i.remediation,
        "why_it_matters": i.why_it_matters,
        "references": i.references if isinstance(i.references, list) else [],
        "sort_weight": i.sort_weight,
    }


def build_report_payload(scan: Scan, evidence: list, issues: list) -> dict[str, Any]:
    ordered = sort_issues(issues)
    return {
        "scan": _scan_dict(scan),
        "issues": [_issue_dict(i) for i in ordered],
        "evidence": [
            {
                "id": e.id,
                "kind": e.kind,
                "severity": e.severity,
                "title": e.title,
                "details": e.details,
                "created_at": _iso(e.created_at),
            }
            for e in evidence
        ],
        "top_fixes": [_issue_dict(i) for i in select_top_fixes(ordered)],
        "meta": {
            "data_sharing": data_sharing_from_evidence(evidence)["level"],
            "domain": root_domain_for(scan),
        },
    }


def load_report(db: Session, scan_id: str) -> dict[str, Any]:
    scan = db.get(Scan, scan_id)
    if not scan:
        raise ScanNotFoundError(f"Scan {scan_id} not found")
    return build_report_payload(scan, list_evidence(db, scan_id), list_issues(db, scan_id))
