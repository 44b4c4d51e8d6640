#!/usr/bin/env python3
"""
Forget sync-ledger entries for one company's emails so the next sync reprocesses them.

Usage (from backend/):
  python scripts/reset_sync.py --user-id 1 --company Acme
"""

from __future__ import annotations

import argparse
import json
import os
import sys

# Ensure jobtrail is importable when run from backend/ or the repo root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reset the Gmail sync ledger for a company's applications.")
    parser.add_argument("--user-id", type=int, required=True, help="Owner of the applications.")
    parser.add_argument("--company", required=True, help="Case-insensitive company name fragment.")
    args = parser.parse_args(argv)

    from jobtrail.database import SessionLocal
    from jobtrail.services.repair_service import RepairError, reset_sync

    db = SessionLocal()
    try:
        result = reset_sync(db, args.user_id, args.company)
    except RepairError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
