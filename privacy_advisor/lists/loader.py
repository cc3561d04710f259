from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from privacy_advisor.core.errors import ListLoadError
from privacy_advisor.lists.models import CachedList

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
FIXTURES = {
    "easyprivacy": DATA_DIR / "easyprivacy-demo.json",
    "whotracks": DATA_DIR / "whotracks-demo.json",
}


def normalize_list(raw: Any) -> dict | None:
    """
    Keep only well-formed entries:
      domains: [str]
      trackers: [{domain: str, category: str}]
      fingerprinting: [str]
    Returns None when the payload isn't a mapping at all.
    """
    if not isinstance(raw, dict):
        return None

    domains = []
    if isinstance(raw.get("domains"), list):
        domains = [d for d in raw["domains"] if isinstance(d, str)]

    trackers = None
    if isinstance(raw.get("trackers"), list):
        trackers = [
            {"domain": t["domain"], "category": t["category"]}
            for t in raw["trackers"]
            if isinstance(t, dict) and isinstance(t.get("domain"), str) and isinstance(t.get("category"), str)
        ]

    fingerprinting = None
    if isinstance(raw.get("fingerprinting"), list):
        fingerprinting = [f for f in raw["fingerprinting"] if isinstance(f, str)]

    return {"domains": domains, "trackers": trackers, "fingerprinting": fingerprinting}


def _clean_domains(values) -> frozenset[str]:
    return frozenset(v.strip().lower().rstrip(".") for v in values if v and v.strip())


@dataclass(frozen=True)
class TrackerIndex:
    tracker_domains: frozenset[str] = field(default_factory=frozenset)
    fingerprinting_domains: frozenset[str] = field(default_factory=frozenset)
    categories: dict[str, str] = field(default_factory=dict)
    source: str = "fixtures"

    @classmethod
    def from_lists(cls, easyprivacy: dict, whotracks: dict, source: str = "fixtures") -> "TrackerIndex":
        trackers = whotracks.get("trackers") or []
        categories = {t["domain"].strip().lower(): t["category"] for t in trackers}
        return cls(
            tracker_domains=_clean_domains(list(easyprivacy.get("domains") or []) + list(categories)),
            fingerprinting_domains=_clean_domains(whotracks.get("fingerprinting") or []),
            categories=categories,
            source=source,
        )

    def is_tracker(self, domain: str) -> bool:
        return (domain or "").lower() in self.tracker_domains

    def is_fingerprinting(self, domain: str) -> bool:
        return (domain or "").lower() in self.fingerprinting_domains

    def category_for(self, domain: str) -> str | None:
        return self.categories.get((domain or "").lower())


def _read_fixture(source: str) -> Any:
    return json.loads(FIXTURES[source].read_text(encoding="utf-8"))


def load_lists(db: Session) -> TrackerIndex:
    """Cached lists from the DB when both sources are usable, demo fixtures otherwise."""
    rows = {r.source: r for r in db.query(CachedList).filter(CachedList.source.in_(list(FIXTURES))).all()}
    easy = normalize_list(rows["easyprivacy"].data) if "easyprivacy" in rows else None
    who = normalize_list(rows["whotracks"].data) if "whotracks" in rows else None
    if easy and who:
        return TrackerIndex.from_lists(easy, who, source="cache")

    logger.info("tracker lists not cached, falling back to demo fixtures")
    try:
        easy = normalize_list(_read_fixture("easyprivacy"))
        who = normalize_list(_read_fixture("whotracks"))
    except (OSError, ValueError) as e:
        raise ListLoadError("Failed to load privacy lists") from e
    if not easy or not who:
        raise ListLoadError("Failed to load privacy lists")
    return TrackerIndex.from_lists(easy, who, source="fixtures")


def upsert_list(db: Session, source: str, data: dict, version: str | None = None) -> CachedList:
    """Admin refresh; the scan engine only reads."""
    if source not in FIXTURES:
        raise ValueError(f"Unknown list source: {source}")
    row = db.query(CachedList).filter(CachedList.source == source).first()
    if row is None:
        row = CachedList(source=source, data=data, version=version)
        db.add(row)
    else:
        row.data = data
        row.version = version
    db.commit()
    db.refresh(row)
    return row
