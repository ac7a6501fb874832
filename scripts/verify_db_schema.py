import argparse
import os
import sys
import uuid

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

from alembic import command
from alembic.config import Config


PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
ALEMBIC_INI = os.path.join(PROJECT_ROOT, "alembic.ini")

EXPECTED_UNIQUE_CONSTRAINTS = {
    "uq_markets_onchain_id",
    "uq_traders_wallet_address",
    "uq_payout_records_market_recipient",
    "uq_payout_runs_market_id",
}

EXPECTED_INDEXES = {
    "ix_markets_state",
    "ix_trades_market_id",
    "ix_trades_trader_id",
    "ix_ngos_onchain_id",
    "ix_bridge_operations_market_id",
    "ix_payout_records_reconcile",
    "ix_payout_records_recipient",
    "ix_deployment_runs_market_status",
}


def _run_alembic_upgrade(db_url: str) -> None:
    config = Config(ALEMBIC_INI)
    config.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(config, "head")


def _create_temp_db(base_url) -> tuple[str, str, str]:
    tmp_name = f"relief_schema_verify_{uuid.uuid4().hex[:8]}"
    admin_url = base_url.set(database="postgres")
    engine = create_engine(admin_url)
    with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
        conn.execute(text(f"CREATE DATABASE {tmp_name}"))
    engine.dispose()
    temp_url = base_url.set(database=tmp_name)
    return temp_url.render_as_string(hide_password=False), tmp_name, admin_url.render_as_string(hide_password=False)


def _drop_temp_db(admin_url: str, db_name: str) -> None:
    engine = create_engine(admin_url)
    with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
        conn.execute(text(f"DROP DATABASE IF EXISTS {db_name}"))
    engine.dispose()


def _check_unique_constraints(conn) -> None:
    rows = conn.execute(
        text(
            "SELECT c.conname "
            "FROM pg_constraint c "
            "JOIN pg_namespace n ON n.oid = c.connamespace "
            "WHERE n.nspname = 'public' AND c.contype = 'u'"
        )
    ).fetchall()
    missing = EXPECTED_UNIQUE_CONSTRAINTS - {row[0] for row in rows}
    if missing:
        raise RuntimeError(f"Missing unique constraints: {sorted(missing)}")


def _check_indexes(conn) -> None:
    rows = conn.execute(
        text("SELECT indexname FROM pg_indexes WHERE schemaname = 'public'")
    ).fetchall()
    missing = EXPECTED_INDEXES - {row[0] for row in rows}
    if missing:
        raise RuntimeError(f"Missing indexes: {sorted(missing)}")


def _run_explain(conn) -> None:
    conn.execute(text("SET LOCAL enable_seqscan = off"))
    plans = {
        "reconcile_queue": conn.execute(
            text(
                "EXPLAIN (COSTS, FORMAT TEXT) "
                "SELECT * FROM payout_records WHERE needs_reconciliation = true ORDER BY id LIMIT 100"
            )
        ).fetchall(),
        "ngo_history": conn.execute(
            text(
                "EXPLAIN (COSTS, FORMAT TEXT) "
                "SELECT * FROM payout_records "
                "WHERE recipient_type = 'NGO' AND recipient_id = :ngo_id "
                "ORDER BY created_at DESC"
            ),
            {"ngo_id": uuid.uuid4()},
        ).fetchall(),
    }

    print("\nExplain plans (enable_seqscan=off):")
    for name, rows in plans.items():
        print(f"\n{name}:")
        for row in rows:
            print(row[0])


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify payout schema migrations + indexes.")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres DATABASE_URL to run migrations against.",
    )
    parser.add_argument(
        "--create-db",
        action="store_true",
        help="Create a temporary database for verification.",
    )
    parser.add_argument(
        "--explain",
        action="store_true",
        help="Print EXPLAIN plans for the reconciliation and NGO history queries.",
    )
    args = parser.parse_args()

    if not args.database_url:
        print("DATABASE_URL is required", file=sys.stderr)
        return 2

    url = make_url(args.database_url)
    if not url.drivername.startswith("postgresql"):
        print("DATABASE_URL must be Postgres.", file=sys.stderr)
        return 2

    temp_db_name = None
    admin_url = None
    db_url = args.database_url

    try:
        if args.create_db:
            db_url, temp_db_name, admin_url = _create_temp_db(url)

        _run_alembic_upgrade(db_url)

        engine = create_engine(db_url)
        with engine.begin() as conn:
            _check_unique_constraints(conn)
            _check_indexes(conn)
            if args.explain:
                _run_explain(conn)
        engine.dispose()
    finally:
        if temp_db_name and admin_url:
            _drop_temp_db(admin_url, temp_db_name)

    print("Schema verification OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
