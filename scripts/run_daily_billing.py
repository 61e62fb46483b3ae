#!/usr/bin/env python3
"""
Run the daily ad spend billing by hand.

Safe to re-run: customers already billed for the date are skipped.

Usage:
    python scripts/run_daily_billing.py                      # yesterday, everyone
    python scripts/run_daily_billing.py --date 2024-01-31
    python scripts/run_daily_billing.py --customer 42 --customer 43
    python scripts/run_daily_billing.py --collaborators myapp.billing:collaborators
"""

import argparse
import asyncio
import json
import sys
from datetime import date

from adspend.core.logging_config import get_logger
from adspend.db import create_db_and_tables
from adspend.services.wiring import build_daily_billing_job, load_collaborators

logger = get_logger("run_daily_billing")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run daily ad spend billing")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Billing date (YYYY-MM-DD), default yesterday UTC")
    parser.add_argument("--customer", type=int, action="append", dest="customers", help="Only bill this customer (repeatable)")
    parser.add_argument("--collaborators", default=None, help="module:factory returning BillingCollaborators")
    parser.add_argument("--concurrency", type=int, default=None, help="Customers billed in parallel")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)

    create_db_and_tables()
    if load_collaborators(args.collaborators) is None:
        logger.error("no_collaborators_configured", hint="pass --collaborators or set BILLING_COLLABORATORS_FACTORY")
        return 2

    job = build_daily_billing_job()
    if args.concurrency:
        job.concurrency = max(1, args.concurrency)

    summary = await job.run(billing_date=args.date, customer_ids=args.customers)
    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.failed or summary.timed_out else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
