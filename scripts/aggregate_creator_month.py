#!/usr/bin/env python3

from __future__ import annotations

import argparse
import json
from typing import Optional

from finance_engine.common.config import load_settings
from finance_engine.common.logging import init_structured_logging
from finance_engine.common.periods import parse_period_key
from finance_engine.service import FinanceEngine


def _parse_yyyy_mm(value: str) -> tuple[int, int]:
    try:
        return parse_period_key(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError("Expected YYYY-MM (e.g. 2025-12)") from e


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Compute one creator's monthly earnings snapshot.")
    parser.add_argument("--uid", required=True, help="Creator user id")
    parser.add_argument("--month", required=True, type=_parse_yyyy_mm, help="Month, format YYYY-MM (e.g. 2025-12)")
    parser.add_argument("--config", default=None, help="Path to engine YAML config.")
    parser.add_argument("--project-id", default=None, help="Firebase project id (default: from env/ADC).")
    parser.add_argument("--write", action="store_true", help="Upsert the snapshot. Default is dry-run.")
    args = parser.parse_args(argv)

    init_structured_logging(service="finance-aggregate-creator")
    year, month = args.month
    engine = FinanceEngine.from_firestore(project_id=args.project_id, settings=load_settings(args.config))

    if args.write:
        snap = engine.aggregate_month(args.uid, year, month, force=True)
    else:
        snap = engine.earnings.compute(args.uid, year, month)

    printable = snap.financial_payload()
    printable["contentHash"] = snap.content_hash
    print(json.dumps(printable, indent=2, sort_keys=True))
    if args.write:
        print(f"Wrote creator_earnings_monthly/{args.uid}__{snap.period}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
