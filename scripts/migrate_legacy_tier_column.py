#!/usr/bin/env python3
"""
Copy tiers stored under legacy user columns (tier, plan, subscription_level,
subscriptionLevel) into users.subscription.
Run from the project root: python -m scripts.migrate_legacy_tier_column [--dry-run]
"""
import argparse
import os
import sys

# project root on PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stkpay.db.session import SessionLocal
from stkpay.services.entitlements.migration import migrate_legacy_tiers


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        result = migrate_legacy_tiers(db, dry_run=args.dry_run)
    finally:
        db.close()
    if not result["columns"]:
        print("No legacy tier columns on users; nothing to do.")
        return
    verb = "Would update" if args.dry_run else "Updated"
    print(f"Legacy columns: {', '.join(result['columns'])}")
    print(f"{verb} {result['updated']} of {result['checked']} users.")


if __name__ == "__main__":
    main()
