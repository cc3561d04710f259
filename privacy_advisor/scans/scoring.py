# privacy_advisor/scans/scoring.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.orm import sessionmaker

from privacy_advisor.core.errors import ScanNotFoundError
from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.repository import list_evidence, replace_issues
from privacy_advisor.scans.urls import hostname_of, is_first_party, registrable_domain

logger = logging.getLogger(__name__)

SEVERITY_ORDER = ["critical", "high", "medium", "low", "info"]
SEVERITY_RANK = {"critical": 5, "high": 4, "medium": 3, "low": 2, "info": 1}

# tunable policy, not a contract
TRACKER_POINTS, TRACKER_CAP = 5, 40
FINGERPRINTING_TRACKER_POINTS = 5
THIRD_PARTY_POINTS, THIRD_PARTY_CAP = 2, 20
MIXED_CONTENT_POINTS, MIXED_CONTENT_CAP = 10, 20
HEADER_POINTS = 3
COOKIE_POINTS, COOKIE_CAP = 2, 10
MISSING_POLICY_POINTS = 5
TLS_PENALTY = {"C": 3, "D": 7, "F": 12}
TLS_BONUS = {"A+": 5, "A": 3}
NO_TRACKERS_BONUS = 5
POLICY_BONUS = 3
FINGERPRINT_POINTS = 5
FINGERPRINT_MIN_SIGNALS = 2
THIRD_PARTY_ISSUE_MIN = 5

# data sharing index weights / thresholds
DS_TRACKER_WEIGHT = 2
DS_THIRDPARTY_WEIGHT = 1
DS_COOKIE_WEIGHT = 1
DS_THRESH_LOW = 3
DS_THRESH_MED = 8


def normalize_severity(sev: str | None) -> str:
    s = (sev or "").strip().lower()
    if s in SEVERITY_RANK:
        return s
    return "info"


def label_for_score(score: int) -> str:
    if score >= 80:
        return "Safe"
    if score >= 50:
        return "Caution"
    return "High Risk"


def data_sharing_index(tracker_domains: int, third_party_domains: int, cookie_issues: int) -> int:
    return (
        tracker_domains * DS_TRACKER_WEIGHT
        + third_party_domains * DS_THIRDPARTY_WEIGHT
        + cookie_issues * DS_COOKIE_WEIGHT
    )


def data_sharing_level(index: int) -> str:
    if index <= 0:
        return "None"
    if index <= DS_THRESH_LOW:
        return "Low"
    if index <= DS_THRESH_MED:
        return "Medium"
    return "High"


def _get(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _details(ev) -> dict:
    d = _get(ev, "details")
    return d if isinstance(d, dict) else {}


def evidence_keys(ev) -> list[str]:
    """Logical identity of a finding, so the same violation seen on N pages counts once."""
    kind = _get(ev, "kind")
    d = _details(ev)
    if kind == "header":
        return [f"header:{d.get('name')}"]
    if kind in ("thirdparty", "tracker"):
        return [f"{kind}:{d.get('domain')}"]
    if kind == "insecure":
        return [f"insecure:{d.get('url')}"]
    if kind == "cookie":
        return [f"cookie:{d.get('name')}"]
    if kind == "fingerprint":
        return [f"fingerprint:{s}" for s in (d.get("signals") or ["unknown"])]
    if kind in ("policy", "tls"):
        return [kind]
    return [f"{kind}:{_get(ev, 'id')}"]


def deduplicate_evidence(evidence: Iterable) -> dict[str, Any]:
    unique: dict[str, Any] = {}
    for ev in evidence:
        for key in evidence_keys(ev):
            unique.setdefault(key, ev)
    return unique


def _domains(unique: dict[str, Any], kind: str) -> list[str]:
    prefix = f"{kind}:"
    return sorted({k[len(prefix):] for k in unique if k.startswith(prefix) and k[len(prefix):] not in ("", "None")})


def data_sharing_from_evidence(evidence: Iterable) -> dict:
    unique = deduplicate_evidence(evidence)
    trackers = _domains(unique, "tracker")
    third = _domains(unique, "thirdparty")
    cookies = _domains(unique, "cookie")
    index = data_sharing_index(len(trackers), len(third), len(cookies))
    return {"index": index, "level": data_sharing_level(index)}


@dataclass
class ScanResult:
    score: int
    label: str
    summary: str
    issues: list[dict] = field(default_factory=list)
    meta: dict = field(default_factory=dict)
    explanations: list[dict] = field(default_factory=list)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n != 1 else ''}"


def _ellipsis(items: list[str], limit: int = 5) -> str:
    head = ", ".join(items[:limit])
    return head + ("…" if len(items) > limit else "")


def sort_issues(issues: list) -> list:
    return sorted(
        issues,
        key=lambda i: (-SEVERITY_RANK[normalize_severity(_get(i, "severity"))], _get(i, "sort_weight") or 0, _get(i, "key") or ""),
    )


def select_top_fixes(issues: list, limit: int = 3) -> list:
    threshold = SEVERITY_RANK["medium"]
    eligible = [i for i in issues if SEVERITY_RANK[normalize_severity(_get(i, "severity"))] >= threshold]
    return sort_issues(eligible)[:limit]


def compute_result(evidence: list, root_domain: str) -> ScanResult:
    """
    score = 100 - deductions + bonuses, clamped to 0..100
    Pure function over the evidence set; order of rows doesn't matter.
    """
    unique = deduplicate_evidence(evidence)
    explanations: list[dict] = []
    score = 100
    bonuses = 0

    # trackers
    tracker_domains = _domains(unique, "tracker")
    fp_trackers = [d for d in tracker_domains if _details(unique[f"tracker:{d}"]).get("fingerprinting")]
    tracker_penalty = min(len(tracker_domains) * TRACKER_POINTS, TRACKER_CAP)
    tracker_penalty += len(fp_trackers) * FINGERPRINTING_TRACKER_POINTS
    if tracker_penalty:
        explanations.append({"points": -tracker_penalty, "reason": "Tracker domains"})
    score -= tracker_penalty

    # third parties (first-party CDNs excluded)
    third_all = _domains(unique, "thirdparty")
    third_party = [d for d in third_all if not is_first_party(d, root_domain)]
    third_penalty = min(len(third_party) * THIRD_PARTY_POINTS, THIRD_PARTY_CAP)
    if third_penalty:
        explanations.append({"points": -third_penalty, "reason": "Third-party requests"})
    score -= third_penalty

    # mixed content
    insecure_urls = [u for u in _domains(unique, "insecure") if u.lower().startswith("http://")]
    insecure_penalty = min(len(insecure_urls) * MIXED_CONTENT_POINTS, MIXED_CONTENT_CAP)
    if insecure_penalty:
        explanations.append({"points": -insecure_penalty, "reason": "Insecure/mixed content"})
    score -= insecure_penalty

    # headers
    headers_missing = _domains(unique, "header")
    header_penalty = len(headers_missing) * HEADER_POINTS
    if header_penalty:
        explanations.append({"points": -header_penalty, "reason": "Missing security headers"})
    score -= header_penalty

    # cookies
    cookie_names = _domains(unique, "cookie")
    cookie_penalty = min(len(cookie_names) * COOKIE_POINTS, COOKIE_CAP)
    if cookie_penalty:
        explanations.append({"points": -cookie_penalty, "reason": "Cookies missing flags"})
    score -= cookie_penalty

    # policy
    policy_found = "policy" in unique
    if policy_found:
        bonuses += POLICY_BONUS
        explanations.append({"points": POLICY_BONUS, "reason": "Privacy policy found"})
    else:
        score -= MISSING_POLICY_POINTS
        explanations.append({"points": -MISSING_POLICY_POINTS, "reason": "No privacy policy found"})

    # tls
    tls_grade = None
    if "tls" in unique:
        tls_grade = _details(unique["tls"]).get("grade") or "A"
        penalty = TLS_PENALTY.get(tls_grade, 0)
        if penalty:
            score -= penalty
            explanations.append({"points": -penalty, "reason": f"TLS grade {tls_grade}"})
        bonus = TLS_BONUS.get(tls_grade, 0)
        if bonus:
            bonuses += bonus
            explanations.append({"points": bonus, "reason": f"TLS grade {tls_grade}"})

    # fingerprinting
    signals = sorted(k.split(":", 1)[1] for k in unique if k.startswith("fingerprint:"))
    fingerprint_detected = len(signals) >= FINGERPRINT_MIN_SIGNALS
    if fingerprint_detected:
        score -= FINGERPRINT_POINTS
        explanations.append({"points": -FINGERPRINT_POINTS, "reason": f"Fingerprinting heuristics ({len(signals)} signals)"})

    if not tracker_domains:
        bonuses += NO_TRACKERS_BONUS
        explanations.append({"points": NO_TRACKERS_BONUS, "reason": "No tracking domains detected"})

    score = max(0, min(100, score + bonuses))

    issues: list[dict] = []

    if tracker_domains:
        issues.append({
            "key": "tracking.trackers",
            "severity": "high",
            "category": "tracking",
            "title": f"{_plural(len(tracker_domains), 'tracker')} observed",
            "summary": f"Trackers detected: {_ellipsis(tracker_domains)}",
            "remediation": "Review marketing and analytics tags. Remove unnecessary trackers or load them only after explicit consent via a consent management platform.",
            "why_it_matters": "Trackers monitor user behaviour and may violate privacy laws if deployed without consent or disclosures.",
            "references": [{"label": "Mozilla: Tracking protection", "url": "https://developer.mozilla.org/en-US/docs/Web/Privacy/Tracking_Protection"}],
            "sort_weight": 10,
        })

    if len(third_party) > THIRD_PARTY_ISSUE_MIN:
        issues.append({
            "key": "tracking.third-party",
            "severity": "medium",
            "category": "tracking",
            "title": f"{len(third_party)} third-party domains contacted",
            "summary": f"Notable domains: {_ellipsis(third_party)}",
            "remediation": "Audit external requests and remove unused libraries. Where possible, self-host critical assets.",
            "why_it_matters": "Each third-party call shares visitor metadata (IP, user agent) with outside companies, which can be used for profiling.",
            "references": [{"label": "OWASP: Third-party JavaScript management", "url": "https://cheatsheetseries.owasp.org/cheatsheets/Third_Party_Javascript_Management_Cheat_Sheet.html"}],
            "sort_weight": 30,
        })

    if headers_missing:
        issues.append({
            "key": "security.headers",
            "severity": "medium",
            "category": "security",
            "title": "Missing security headers",
            "summary": f"Add: {', '.join(headers_missing)}",
            "remediation": "Set the recommended HTTP response headers (CSP, HSTS, Referrer-Policy, Permissions-Policy, X-Content-Type-Options) at the proxy or application layer.",
            "why_it_matters": "Security headers harden the site against clickjacking, XSS and data leakage.",
            "references": [{"label": "MDN: HTTP security headers", "url": "https://developer.mozilla.org/en-US/docs/Web/Security"}],
            "sort_weight": 20,
        })

    if cookie_names:
        issues.append({
            "key": "security.cookies",
            "severity": "medium",
            "category": "security",
            "title": "Cookies missing Secure/SameSite flags",
            "summary": f"{_plural(len(cookie_names), 'cookie')} missing recommended attributes",
            "remediation": "Mark cookies with Secure and SameSite=Strict or Lax, and HttpOnly where appropriate.",
            "why_it_matters": "Without Secure/SameSite, cookies can leak over HTTP or be sent in cross-site requests, enabling session hijacking.",
            "references": [{"label": "MDN: Set-Cookie", "url": "https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/Set-Cookie"}],
            "sort_weight": 35,
        })

    if tls_grade in TLS_PENALTY:
        issues.append({
            "key": "security.tls",
            "severity": "high" if tls_grade == "F" else "medium",
            "category": "security",
            "title": f"TLS configuration graded {tls_grade}",
            "summary": "The site is not served exclusively over HTTPS." if tls_grade == "C" else None,
            "remediation": "Serve the site over HTTPS with a modern TLS configuration and enable HSTS.",
            "why_it_matters": "Weak or missing transport encryption lets attackers intercept or modify traffic.",
            "references": [{"label": "Mozilla TLS guidelines", "url": "https://wiki.mozilla.org/Security/Server_Side_TLS"}],
            "sort_weight": 25,
        })

    if fingerprint_detected:
        issues.append({
            "key": "tracking.fingerprinting",
            "severity": "high",
            "category": "tracking",
            "title": "Browser fingerprinting behaviour observed",
            "summary": f"Signals: {', '.join(signals)}",
            "remediation": "Remove or gate fingerprinting scripts behind consent.",
            "why_it_matters": "Fingerprinting combines browser traits into persistent identifiers that users cannot clear.",
            "references": [{"label": "EFF: Cover Your Tracks", "url": "https://coveryourtracks.eff.org/learn"}],
            "sort_weight": 15,
        })

    if insecure_urls:
        issues.append({
            "key": "security.mixed-content",
            "severity": "high",
            "category": "security",
            "title": "Mixed content detected over HTTPS",
            "summary": f"Insecure references: {_ellipsis(insecure_urls, 3)}",
            "remediation": "Serve all assets over HTTPS. Update hard-coded http:// URLs to https:// or relative paths.",
            "why_it_matters": "Loading HTTP assets on HTTPS pages lets attackers tamper with scripts or leak data.",
            "references": [{"label": "MDN: Mixed content", "url": "https://developer.mozilla.org/en-US/docs/Web/Security/Mixed_content"}],
            "sort_weight": 18,
        })

    if not policy_found:
        issues.append({
            "key": "compliance.policy",
            "severity": "low",
            "category": "compliance",
            "title": "Privacy policy link not found",
            "summary": None,
            "remediation": "Publish a clear privacy policy and link it in the footer or primary navigation.",
            "why_it_matters": "Most privacy laws require transparent disclosure of data collection practices.",
            "references": [{"label": "FTC: Privacy and security", "url": "https://www.ftc.gov/business-guidance/privacy-security"}],
            "sort_weight": 60,
        })

    issues = sort_issues(issues)

    parts: list[str] = []
    if tracker_domains:
        parts.append(f"{_plural(len(tracker_domains), 'tracker')} flagged")
    if headers_missing:
        parts.append(f"{_plural(len(headers_missing), 'security header')} missing")
    if not policy_found:
        parts.append("No privacy policy detected")
    if fingerprint_detected:
        parts.append("Fingerprinting heuristics present")
    if not parts:
        parts.append("No major privacy risks detected")

    ds_index = data_sharing_index(len(tracker_domains), len(third_all), len(cookie_names))
    meta = {
        "tracker_domains": tracker_domains,
        "third_party_domains": third_party,
        "missing_headers": headers_missing,
        "cookie_issues": len(cookie_names),
        "policy_found": policy_found,
        "tls_grade": tls_grade,
        "fingerprint_detected": fingerprint_detected,
        "fingerprint_signals": signals,
        "mixed_content": bool(insecure_urls),
        "data_sharing": {"index": ds_index, "level": data_sharing_level(ds_index)},
    }

    return ScanResult(
        score=score,
        label=label_for_score(score),
        summary="; ".join(parts),
        issues=issues,
        meta=meta,
        explanations=explanations,
    )


def root_domain_for(scan: Scan) -> str:
    raw = scan.normalized_input or scan.input or ""
    host = hostname_of(raw if "://" in raw else f"https://{raw}")
    return registrable_domain(host or raw)


def compile_report(session_factory: sessionmaker, scan_id: str, *, extra_meta: dict | None = None) -> ScanResult:
    """
    One transaction: read evidence, replace issues, write score/label/summary/meta.
    Re-running over the same evidence produces the same issues and score.
    """
    db = session_factory()
    try:
        scan = db.get(Scan, scan_id)
        if not scan:
            raise ScanNotFoundError(f"Scan {scan_id} not found")

        evidence = list_evidence(db, scan_id)
        result = compute_result(evidence, root_domain_for(scan))
        replace_issues(db, scan_id, result.issues)

        scan.score = result.score
        scan.label = result.label
        scan.summary = result.summary
        scan.meta = {**result.meta, **(extra_meta or {})}
        db.commit()
        logger.info("scored scan %s: %s (%s), %d issues", scan_id, result.score, result.label, len(result.issues))
        return result
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
