# privacy_advisor/core/config.py

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv


def _load_env():
    """
    Load .env from the project root (works locally + in containers where env vars exist anyway).
    We don't override existing OS env vars.
    """
    # This file: privacy_advisor/core/config.py -> parents[2] = project root
    root_dir = Path(__file__).resolve().parents[2]
    env_path = root_dir / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
    else:
        # fallback: try current working directory
        load_dotenv(override=False)


_load_env()


def _clean(s: str | None) -> str:
    s = (s or "").strip()
    # remove wrapping quotes if present
    if len(s) >= 2 and ((s[0] == s[-1] == '"') or (s[0] == s[-1] == "'")):
        s = s[1:-1].strip()
    return s


def _int(name: str, default: int, minimum: int = 1) -> int:
    try:
        value = int(_clean(os.getenv(name)) or default)
    except ValueError:
        return default
    return value if value >= minimum else default


def _bool(name: str, default: bool = False) -> bool:
    raw = _clean(os.getenv(name)).lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


DATABASE_URL = _clean(os.getenv("DATABASE_URL")) or "sqlite:///./scanner.db"

# Helpful local fallback: if user kept docker hostname "db", replace with localhost
if DATABASE_URL.startswith("postgresql://") and "@db:" in DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("@db:", "@localhost:")

LOG_LEVEL = _clean(os.getenv("LOG_LEVEL")).upper() or "INFO"

# queue
CELERY_BROKER_URL = _clean(os.getenv("CELERY_BROKER_URL")) or "memory://"
CELERY_RESULT_BACKEND = _clean(os.getenv("CELERY_RESULT_BACKEND")) or "cache+memory://"
CELERY_EAGER = _bool("CELERY_EAGER", True)

SCAN_QUEUE = _clean(os.getenv("SCAN_QUEUE")) or "scan.site"
DEAD_LETTER_QUEUE = _clean(os.getenv("DEAD_LETTER_QUEUE")) or "scan.dead"

WORKER_CONCURRENCY = _int("WORKER_CONCURRENCY", 5)
WORKER_JOB_ATTEMPTS = _int("WORKER_JOB_ATTEMPTS", 3)
WORKER_BACKOFF_MS = _int("WORKER_BACKOFF_MS", 5000)
WORKER_LOCK_DURATION_MS = _int("WORKER_LOCK_DURATION_MS", 120_000)
WORKER_MAX_STALLED_COUNT = _int("WORKER_MAX_STALLED_COUNT", 1, minimum=0)
# includes crawling, scoring and DB writes
WORKER_JOB_TIMEOUT_MS = _int("WORKER_JOB_TIMEOUT_MS", 60_000)
# how long task results (completed and failed) are retained
WORKER_RESULT_EXPIRES_SEC = _int("WORKER_RESULT_EXPIRES_SEC", 86_400)

# crawl
WORKER_PAGE_LIMIT = _int("WORKER_PAGE_LIMIT", 10)
WORKER_CRAWL_BUDGET_MS = _int("WORKER_CRAWL_BUDGET_MS", 10_000)
WORKER_REQUEST_TIMEOUT_MS = _int("WORKER_REQUEST_TIMEOUT_MS", 5000)
WORKER_MAX_CONTENT_BYTES = _int("WORKER_MAX_CONTENT_BYTES", 800_000)
WORKER_MAX_REDIRECTS = _int("WORKER_MAX_REDIRECTS", 5)
WORKER_USER_AGENT = _clean(os.getenv("WORKER_USER_AGENT")) or "PrivacyAdvisorBot/0.1"

SCAN_RESOLVE_DNS = _bool("SCAN_RESOLVE_DNS", False)
SCAN_FIXTURES_DIR = _clean(os.getenv("SCAN_FIXTURES_DIR")) or None

# dedup window for reusing finished scans
CACHE_TTL_MS = _int("CACHE_TTL_MS", 3_600_000)


@dataclass(frozen=True)
class ScanLimits:
    page_limit: int = WORKER_PAGE_LIMIT
    time_budget_sec: float = WORKER_CRAWL_BUDGET_MS / 1000
    request_timeout_sec: float = WORKER_REQUEST_TIMEOUT_MS / 1000
    max_content_bytes: int = WORKER_MAX_CONTENT_BYTES
    max_redirects: int = WORKER_MAX_REDIRECTS
    user_agent: str = WORKER_USER_AGENT
    resolve_dns: bool = SCAN_RESOLVE_DNS


@dataclass(frozen=True)
class JobOptions:
    attempts: int = WORKER_JOB_ATTEMPTS
    backoff_ms: int = WORKER_BACKOFF_MS
    lock_duration_ms: int = WORKER_LOCK_DURATION_MS
    max_stalled_count: int = WORKER_MAX_STALLED_COUNT
    timeout_ms: int = WORKER_JOB_TIMEOUT_MS
    result_expires_sec: int = WORKER_RESULT_EXPIRES_SEC

    def backoff_seconds(self, retries: int) -> float:
        """Exponential: base, 2*base, 4*base, ..."""
        return (self.backoff_ms * (2 ** max(0, retries))) / 1000
