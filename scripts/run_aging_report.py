#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from claimrecon.config import get_settings
from claimrecon.logs import configure_logging
from claimrecon.models import as_json
from claimrecon.service import PaymentService


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Print the accounts-receivable aging report.")
    p.add_argument("--db", type=Path, default=None, help="SQLite database (defaults to CLAIMRECON_DB_PATH)")
    p.add_argument("--as-of", type=date.fromisoformat, default=None, help="YYYY-MM-DD, defaults to today")
    p.add_argument("--payer-id", default=None)
    p.add_argument("--program-id", default=None)
    p.add_argument("--output", type=Path, default=None, help="Optional path to write JSON output")
    p.add_argument("--pdf", type=Path, default=None, help="Optional path to render the report as PDF")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    service = PaymentService(settings, db_path=args.db)
    report = service.get_aging_report(args.as_of, args.payer_id, args.program_id)
    payload = json.dumps(as_json(report), indent=2)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(payload, encoding="utf-8")
    else:
        print(payload)
    if args.pdf:
        service.render_aging_report(report, args.pdf)
        print(f"Wrote {args.pdf}", file=sys.stderr)


if __name__ == "__main__":
    main()
