from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from typing import List, Optional

from wastewatch.app.db import session_scope
from wastewatch.app.detection.detectors import KINDS
from wastewatch.app.detection.errors import ConfigInvalid
from wastewatch.app.services import detection_service


def _parse_date(value: str) -> date:
    return date.fromisoformat(value)


def _parse_kinds(value: str) -> List[str]:
    return [kind.strip() for kind in value.split(",") if kind.strip()]


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a waste-detection pass and print the results as JSON.")
    parser.add_argument("--account", default=None, help="Account id (default: every account)")
    parser.add_argument(
        "--kinds",
        type=_parse_kinds,
        default=["all"],
        help="Comma separated, any of: all,%s" % ",".join(KINDS),
    )
    parser.add_argument("--since", type=_parse_date, default=None, help="YYYY-MM-DD")
    parser.add_argument("--no-oracle", action="store_true", help="Skip the classification oracle")
    parser.add_argument("--force-classification", action="store_true", help="Ignore cached oracle answers")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    oracle = None if args.no_oracle else detection_service.ORACLE_FROM_ENV
    try:
        with session_scope() as db:
            results = detection_service.run_detection(
                db,
                account_id=args.account,
                kinds=args.kinds,
                since=args.since,
                oracle=oracle,
                force_classification=args.force_classification,
            )
    except ConfigInvalid as exc:
        print(f"invalid detection config: {exc}", file=sys.stderr)
        for error in exc.errors:
            print(f"  {error}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    print(json.dumps(results.as_dict(), indent=2, sort_keys=True))
    return 0 if results.status != "failed" else 1


if __name__ == "__main__":
    sys.exit(main())
