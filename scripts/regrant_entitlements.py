#!/usr/bin/env python3
"""
Re-apply entitlement grants for PAID upgrade intents that were never stamped.
Same work as the regrant_entitlements beat task, for operators.
Run from the project root: python -m scripts.regrant_entitlements [--limit N] [--grace-seconds S]
"""
import argparse
import os
import sys

# project root on PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stkpay.core.config import get_settings
from stkpay.db.session import SessionLocal
from stkpay.models import audit_log, user  # noqa: F401  (register tables)
from stkpay.services.entitlements.service import EntitlementGrantor


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=settings.entitlement_sweep_batch_size)
    parser.add_argument("--grace-seconds", type=int, default=0)
    args = parser.parse_args()

    db = SessionLocal()
    try:
        counts = EntitlementGrantor(db).regrant_pending(limit=args.limit, grace_seconds=args.grace_seconds)
    finally:
        db.close()
    print(
        f"Checked {counts['checked']}: granted {counts['granted']}, "
        f"already entitled {counts['already_entitled']}, failed {counts['failed']}"
    )


if __name__ == "__main__":
    main()
