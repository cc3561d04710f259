import json
import sys

from privacy_advisor.db.init_db import init_db
from privacy_advisor.db.session import SessionLocal
from privacy_advisor.lists.loader import normalize_list, upsert_list

USAGE = "usage: python -m scripts.load_lists <easyprivacy|whotracks> <file.json> [version]"


def main():
    if len(sys.argv) < 3:
        raise SystemExit(USAGE)
    source, path = sys.argv[1], sys.argv[2]
    version = sys.argv[3] if len(sys.argv) > 3 else None

    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    if normalize_list(raw) is None:
        raise SystemExit(f"Not a usable list: {path}")

    init_db()
    db = SessionLocal()
    try:
        row = upsert_list(db, source, raw, version)
        print(f"OK: {row.source} -> version={row.version}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
