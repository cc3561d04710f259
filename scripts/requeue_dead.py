import sys

from privacy_advisor.core.logging_setup import setup_logging
from privacy_advisor.db.session import SessionLocal
from privacy_advisor.scans.queue import requeue_dead_letters

DEFAULT_LIMIT = 100


def main():
    setup_logging()
    limit = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_LIMIT

    db = SessionLocal()
    try:
        count = requeue_dead_letters(db, limit=limit)
        print(f"OK: requeued {count} dead-lettered scan(s)")
    finally:
        db.close()


if __name__ == "__main__":
    main()
