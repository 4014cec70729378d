from __future__ import annotations

import concurrent.futures
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional

import pandas as pd
from loguru import logger

from integrity_checker.data_processing.data_types import (
    NOT_APPLICABLE,
    NULL_VALUE_TEXT,
    IntegrityResult,
    MetadataProvider,
    RelationshipCandidate,
    Report,
    RunSummary,
    ScanExecutor,
    ScanFailure,
)
from integrity_checker.relationships.discovery import (
    DEFAULT_DIMENSION_PREFIX,
    DEFAULT_FACT_PREFIX,
    discover_relationships,
)
from integrity_checker.scan.progress_tracker import ScanProgressTracker, ScanStage
from integrity_checker.scan.query_builder import (
    FACT_ROWS_COL,
    MAX_ORPHANED_VALUE_COL,
    NBR_OF_ORPHANED_VALUES_COL,
    NBR_OF_ORPHANS_COL,
    NBR_OF_SPECIAL_ROWS_COL,
    RUN_TIME_COL,
    build_scan_statement,
)


@dataclass
class _Outcome:
    candidate: RelationshipCandidate
    result: Optional[IntegrityResult] = None
    failure: Optional[ScanFailure] = None
    cancelled: bool = False


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _as_count(row: Mapping[str, Any], column: str) -> int:
    value = row.get(column)
    if _is_missing(value):
        return 0
    count = int(value)
    if count < 0:
        raise ValueError(f"{column} must not be negative, got {count}")
    return count


def _resolve_run_time(
    row: Mapping[str, Any], run_time: datetime, use_database_clock: bool
) -> datetime:
    if not use_database_clock:
        return run_time
    value = row.get(RUN_TIME_COL)
    if _is_missing(value):
        return run_time
    return pd.Timestamp(value).to_pydatetime()


def parse_scan_row(
    candidate: RelationshipCandidate,
    row: Mapping[str, Any],
    *,
    run_time: datetime,
    use_database_clock: bool = False,
) -> IntegrityResult:
    """Turns the single row returned for ``candidate`` into an IntegrityResult."""

    normalized = {str(key).upper(): value for key, value in row.items()}
    fact_rows = _as_count(normalized, FACT_ROWS_COL)
    orphans = _as_count(normalized, NBR_OF_ORPHANS_COL)
    orphaned_values = _as_count(normalized, NBR_OF_ORPHANED_VALUES_COL)
    special_rows = _as_count(normalized, NBR_OF_SPECIAL_ROWS_COL)

    if orphans > fact_rows:
        raise ValueError(
            f"{NBR_OF_ORPHANS_COL} ({orphans}) exceeds {FACT_ROWS_COL} ({fact_rows})"
        )
    if orphaned_values > orphans:
        raise ValueError(
            f"{NBR_OF_ORPHANED_VALUES_COL} ({orphaned_values}) exceeds "
            f"{NBR_OF_ORPHANS_COL} ({orphans})"
        )

    raw_max = normalized.get(MAX_ORPHANED_VALUE_COL)
    if orphaned_values == 0:
        max_orphaned_value = NOT_APPLICABLE
    elif _is_missing(raw_max):
        max_orphaned_value = NULL_VALUE_TEXT
    else:
        max_orphaned_value = str(raw_max)
        if max_orphaned_value == NOT_APPLICABLE:
            raise ValueError(
                f"{MAX_ORPHANED_VALUE_COL} is '{NOT_APPLICABLE}' but "
                f"{orphaned_values} orphaned values were counted"
            )

    return IntegrityResult(
        run_time=_resolve_run_time(normalized, run_time, use_database_clock),
        dimension_table=candidate.dimension.name,
        primary_key=candidate.primary_key,
        fact_table=candidate.fact.name,
        foreign_key=candidate.foreign_key,
        fact_rows=fact_rows,
        nbr_of_orphans=orphans,
        nbr_of_orphaned_values=orphaned_values,
        max_orphaned_value=max_orphaned_value,
        nbr_of_special_rows=special_rows,
    )


def scan_candidate(
    candidate: RelationshipCandidate,
    executor: ScanExecutor,
    *,
    run_time: datetime,
    use_database_clock: bool = False,
) -> IntegrityResult:
    statement = build_scan_statement(candidate)
    logger.debug("Scanning {}:\n{}", candidate.describe(), statement.sql)
    row = executor.execute(statement)
    return parse_scan_row(
        candidate, row, run_time=run_time, use_database_clock=use_database_clock
    )


def sort_results(results: Iterable[IntegrityResult]) -> List[IntegrityResult]:
    """Most orphans first, then the largest fact tables."""
    return sorted(
        results,
        key=lambda result: (
            result.severity_key,
            result.dimension_table,
            result.fact_table,
            result.foreign_key,
        ),
    )


def run_integrity_scan(
    candidates: Iterable[RelationshipCandidate],
    executor: ScanExecutor,
    *,
    max_workers: int = 1,
    use_database_clock: bool = False,
    cancel_event: Optional[threading.Event] = None,
    progress_tracker: Optional[ScanProgressTracker] = None,
) -> Report:
    """
    Scans every candidate and collects one IntegrityResult per success.

    A candidate whose statement fails is recorded in ``Report.failures`` and the
    remaining candidates still run. Setting ``cancel_event`` stops new scans from
    being issued; in-flight ones finish and unstarted candidates end up in
    ``Report.cancelled``. With ``max_workers`` above one the executor must be safe
    to call from several threads.
    """

    if max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}")

    pending = list(candidates)
    total = len(pending)
    run_time = datetime.now(timezone.utc)
    start = time.perf_counter()
    logger.info("Scanning {} candidate relationships", total)

    def _scan(candidate: RelationshipCandidate) -> _Outcome:
        if cancel_event is not None and cancel_event.is_set():
            return _Outcome(candidate=candidate, cancelled=True)
        try:
            result = scan_candidate(
                candidate,
                executor,
                run_time=run_time,
                use_database_clock=use_database_clock,
            )
        except Exception as exc:
            logger.warning("Scan failed for {}: {}", candidate.describe(), exc)
            return _Outcome(
                candidate=candidate,
                failure=ScanFailure(
                    candidate=candidate,
                    error=str(exc),
                    error_type=type(exc).__name__,
                ),
            )
        return _Outcome(candidate=candidate, result=result)

    results: List[IntegrityResult] = []
    failures: List[ScanFailure] = []
    cancelled: List[RelationshipCandidate] = []

    if progress_tracker:
        progress_tracker.update_progress(
            ScanStage.INTEGRITY_SCAN, 0, total, message="Starting scans"
        )

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(_scan, candidate) for candidate in pending]
        for completed, future in enumerate(
            concurrent.futures.as_completed(futures), start=1
        ):
            outcome = future.result()
            if outcome.cancelled:
                cancelled.append(outcome.candidate)
            elif outcome.failure is not None:
                failures.append(outcome.failure)
            elif outcome.result is not None:
                results.append(outcome.result)
            if progress_tracker:
                progress_tracker.update_progress(
                    ScanStage.INTEGRITY_SCAN,
                    completed,
                    total,
                    candidate=outcome.candidate.describe(),
                )

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    logger.info(
        "Integrity scan finished: {} scanned, {} failed, {} cancelled in {} ms",
        len(results),
        len(failures),
        len(cancelled),
        elapsed_ms,
    )
    return Report(
        results=sort_results(results),
        failures=sorted(failures, key=lambda failure: failure.candidate.sort_key),
        cancelled=sorted(cancelled, key=lambda candidate: candidate.sort_key),
        summary=RunSummary(
            total_candidates=total,
            scanned=len(results),
            failed=len(failures),
            cancelled=len(cancelled),
            processing_time_ms=elapsed_ms,
        ),
    )


def run_integrity_check(
    provider: MetadataProvider,
    executor: ScanExecutor,
    *,
    dimension_prefix: str = DEFAULT_DIMENSION_PREFIX,
    fact_prefix: str = DEFAULT_FACT_PREFIX,
    max_workers: int = 1,
    use_database_clock: bool = False,
    cancel_event: Optional[threading.Event] = None,
    progress_tracker: Optional[ScanProgressTracker] = None,
) -> Report:
    """
    Infers relationships from ``provider`` and scans each one through ``executor``.

    Raises MetadataUnavailableError, before any scan is issued, when the catalog
    cannot be read.
    """

    if progress_tracker:
        progress_tracker.update_progress(
            ScanStage.METADATA_FETCH, 0, 1, message="Reading catalog"
        )
    discovery = discover_relationships(
        provider, dimension_prefix=dimension_prefix, fact_prefix=fact_prefix
    )
    if progress_tracker:
        progress_tracker.update_progress(
            ScanStage.CANDIDATE_INFERENCE,
            1,
            1,
            message=f"{len(discovery.relationships)} candidates",
        )

    report = run_integrity_scan(
        discovery.relationships,
        executor,
        max_workers=max_workers,
        use_database_clock=use_database_clock,
        cancel_event=cancel_event,
        progress_tracker=progress_tracker,
    )
    if report.summary is not None and discovery.summary.skipped_dimensions:
        report.summary.notes = (
            f"{discovery.summary.skipped_dimensions} dimension tables skipped "
            "without a single-column primary key."
        )
    if progress_tracker:
        progress_tracker.mark_complete()
    return report
