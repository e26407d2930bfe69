from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from decimal import Decimal

from cashout.runtime import build_runtime
from settings import validate_env_settings


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"not serializable: {type(value).__name__}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run cash-out reconciliation once, or print a report.")
    parser.add_argument("--provider", default=None, help="orange_money | afrimoney (default: all)")
    parser.add_argument("--max-age-days", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--report", action="store_true", help="print the status report instead of reconciling")
    parser.add_argument("--start-date", type=datetime.fromisoformat, default=None)
    parser.add_argument("--end-date", type=datetime.fromisoformat, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    validate_env_settings()
    runtime = build_runtime()

    if args.report:
        report = runtime.reconciliation.generate_reconciliation_report(
            provider=args.provider,
            start_date=args.start_date,
            end_date=args.end_date,
        )
        print(json.dumps(report, default=_json_default, indent=2))
        return 0

    result = runtime.reconciliation.reconcile_pending_cash_outs(
        provider=args.provider,
        max_age_days=args.max_age_days,
        batch_size=args.batch_size,
    )
    print(
        "counts:",
        f"total={result.total}",
        f"processed={result.processed}",
        f"updated={result.updated}",
        f"unchanged={result.unchanged}",
        f"failed={result.failed}",
    )
    return 1 if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
