import argparse
import asyncio
import json

from relief.core.logging_config import configure_logging
from relief.db import SessionLocal
from relief.services.reconciliation import reconcile_pending_payouts


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-check payout transfers whose outcome is still unknown")
    parser.add_argument("--limit", type=int, default=None, help="maximum records to check")
    args = parser.parse_args()
    configure_logging()
    db = SessionLocal()
    try:
        summary = asyncio.run(reconcile_pending_payouts(db, limit=args.limit))
    finally:
        db.close()
    print(json.dumps(summary, indent=2, default=str))


if __name__ == "__main__":
    main()
