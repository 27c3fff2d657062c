"""Batch entry point: run the lifecycle jobs once, from cron."""
import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from deyncare_billing.bootstrap import build_services
from deyncare_billing.config import BillingSettings
from deyncare_billing.errors import FatalError
from deyncare_billing.scheduler import ALL_TASKS, TASKS

EXIT_OK = 0
EXIT_FATAL = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deyncare-billing-cron",
        description="Run DeynCare subscription lifecycle jobs",
    )
    parser.add_argument(
        "task",
        nargs="?",
        choices=TASKS,
        default=ALL_TASKS,
        help="Which job to run (default: all)",
    )
    return parser


def main(argv: Optional[List[str]] = None, services=None) -> int:
    """
    Run one task and return the process exit status.

    Per-subscription failures are reported in the summary and still exit 0.
    """
    args = build_parser().parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    owns_services = services is None
    try:
        if owns_services:
            services = build_services(BillingSettings.from_env())
        summaries = services.scheduler.run(args.task)
    except FatalError as e:
        logging.error(f"Billing run '{args.task}' aborted: {e}", exc_info=True)
        return EXIT_FATAL
    finally:
        if owns_services and services is not None:
            services.close()

    for summary in summaries:
        logging.info(json.dumps(summary.to_dict()))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
