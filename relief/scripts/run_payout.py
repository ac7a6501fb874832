import argparse
import asyncio
import json

from relief.core.logging_config import configure_logging
from relief.db import SessionLocal
from relief.jobs.tasks import run_market_payout


def run_payout(market_id: str) -> dict:
    db = SessionLocal()
    try:
        return asyncio.run(run_market_payout(db, market_id))
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run (or resume) the payout saga for one resolved market")
    parser.add_argument("market_id", help="market UUID")
    args = parser.parse_args()
    configure_logging()
    result = run_payout(args.market_id)
    print(json.dumps(result, indent=2, default=str))
    if not result.get("ok"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
