"""
Command-line entry point: infer dimension/fact relationships in a ClickZetta
schema and report orphaned foreign keys.

Example:
    integrity-check --schema SALES --max-workers 4 --output integrity.csv
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from loguru import logger

from integrity_checker.clickzetta_utils import env_vars
from integrity_checker.clickzetta_utils.clickzetta_connector import (
    ClickzettaConnector,
    ClickzettaMetadataProvider,
)
from integrity_checker.data_processing.data_types import (
    MetadataUnavailableError,
    Report,
)
from integrity_checker.scan.accumulator import run_integrity_check
from integrity_checker.scan.progress_tracker import (
    ScanProgressTracker,
    create_log_progress_callback,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="integrity-check",
        description="Data warehouse referential integrity checker.",
    )
    parser.add_argument("--workspace", default=None, help="ClickZetta workspace")
    parser.add_argument("--schema", default=None, help="Only scan tables in this schema")
    parser.add_argument(
        "--exclude-schema", default=None, help="Skip tables in this schema (e.g. raw)"
    )
    parser.add_argument(
        "--dimension-prefix",
        default=env_vars.INTEGRITY_DIMENSION_PREFIX,
        help="Case-insensitive name prefix of dimension tables (default: %(default)s)",
    )
    parser.add_argument(
        "--fact-prefix",
        default=env_vars.INTEGRITY_FACT_PREFIX,
        help="Case-insensitive name prefix of fact tables (default: %(default)s)",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=env_vars.INTEGRITY_MAX_WORKERS,
        help="Concurrent scans (default: %(default)s)",
    )
    parser.add_argument(
        "--local-clock",
        action="store_true",
        default=not env_vars.INTEGRITY_USE_DATABASE_CLOCK,
        help="Stamp RunTime with the local clock instead of the database's",
    )
    parser.add_argument("--output", default=None, help="Write the report to this CSV file")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: %(default)s)")
    return parser


def print_report(report: Report) -> None:
    df = report.to_dataframe()
    if df.empty:
        print("No relationships scanned.")
    else:
        print(df.to_string(index=False))
    if report.failures:
        print()
        print(f"{len(report.failures)} candidate(s) failed:")
        print(report.failures_dataframe().to_string(index=False))
    if report.cancelled:
        print()
        print(f"{len(report.cancelled)} candidate(s) were not scanned (cancelled).")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    connector = ClickzettaConnector(
        overrides={"workspace": args.workspace or "", "schema": args.schema or ""}
    )
    executor = connector.scan_executor()
    try:
        with connector.connect() as session:
            provider = ClickzettaMetadataProvider(
                session,
                workspace=connector.workspace,
                schema=args.schema,
                exclude_schema=args.exclude_schema,
            )
            report = run_integrity_check(
                provider,
                executor,
                dimension_prefix=args.dimension_prefix,
                fact_prefix=args.fact_prefix,
                max_workers=args.max_workers,
                use_database_clock=not args.local_clock,
                progress_tracker=ScanProgressTracker(create_log_progress_callback()),
            )
    except MetadataUnavailableError as exc:
        logger.error("Catalog unavailable: {}", exc)
        return 2
    finally:
        executor.close()

    print_report(report)
    if args.output:
        report.to_dataframe().to_csv(args.output, index=False)
        logger.info("Report written to {}", args.output)
    return 1 if report.has_failures else 0


if __name__ == "__main__":
    sys.exit(main())
