from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd
import pytest

from integrity_checker.data_processing.data_types import (
    REPORT_COLUMNS,
    MetadataUnavailableError,
    RelationshipCandidate,
    ScanExecutionError,
    ScanStatement,
    TableDescriptor,
    TableKind,
)
from integrity_checker.relationships.discovery import TableDefinitionMetadataProvider
from integrity_checker.scan.accumulator import (
    parse_scan_row,
    run_integrity_check,
    run_integrity_scan,
)
from integrity_checker.scan.progress_tracker import ProgressUpdate, ScanProgressTracker


def _candidate(
    foreign_key: str,
    fact: str = "factSales",
    dimension: str = "dimCustomer",
    primary_key: str = "CustomerKey",
) -> RelationshipCandidate:
    return RelationshipCandidate(
        dimension=TableDescriptor(schema_name="dbo", table_name=dimension, kind=TableKind.DIMENSION),
        primary_key=primary_key,
        fact=TableDescriptor(schema_name="dbo", table_name=fact, kind=TableKind.FACT),
        foreign_key=foreign_key,
    )


def _row(
    fact_rows: int,
    orphans: int = 0,
    orphaned_values: int = 0,
    max_value: Optional[str] = "n/a",
    special_rows: int = 0,
    run_time: Any = None,
) -> Dict[str, Any]:
    return {
        "RUN_TIME": run_time,
        "FACT_ROWS": fact_rows,
        "NBR_OF_ORPHANS": orphans,
        "NBR_OF_ORPHANED_VALUES": orphaned_values,
        "MAX_ORPHANED_VALUE": max_value,
        "NBR_OF_SPECIAL_ROWS": special_rows,
    }


class _FakeExecutor:
    """Answers scans by foreign-key column; exceptions in the mapping are raised."""

    def __init__(self, answers: Mapping[str, Any]):
        self._answers = dict(answers)
        self.statements: List[ScanStatement] = []
        self._lock = threading.Lock()

    def execute(self, statement: ScanStatement) -> Mapping[str, Any]:
        with self._lock:
            self.statements.append(statement)
        answer = self._answers[statement.candidate.foreign_key]
        if isinstance(answer, Exception):
            raise answer
        return answer


def test_orphan_statistics_scenario() -> None:
    executor = _FakeExecutor(
        {"CustomerKey": _row(100, orphans=10, orphaned_values=8, max_value="907", special_rows=2)}
    )

    report = run_integrity_scan([_candidate("CustomerKey")], executor)

    (result,) = report.results
    assert result.dimension_table == "dbo.dimCustomer"
    assert result.primary_key == "CustomerKey"
    assert result.fact_table == "dbo.factSales"
    assert result.foreign_key == "CustomerKey"
    assert result.fact_rows == 100
    assert result.nbr_of_orphans == 10
    assert result.nbr_of_orphaned_values == 8
    assert result.max_orphaned_value == "907"
    assert result.nbr_of_special_rows == 2
    assert "ON f.`CustomerKey` = d.`CustomerKey`" in executor.statements[0].sql


def test_no_orphans_reports_not_applicable() -> None:
    executor = _FakeExecutor({"CustomerKey": _row(50, max_value=None)})

    report = run_integrity_scan([_candidate("CustomerKey")], executor)

    (result,) = report.results
    assert (result.nbr_of_orphans, result.nbr_of_orphaned_values) == (0, 0)
    assert result.max_orphaned_value == "n/a"


def test_null_foreign_key_orphans_render_as_null_text() -> None:
    result = parse_scan_row(
        _candidate("CustomerKey"),
        _row(5, orphans=3, orphaned_values=1, max_value=None),
        run_time=datetime.now(timezone.utc),
    )

    assert result.max_orphaned_value == "Null"


def test_failed_candidate_goes_to_diagnostics_and_others_still_run() -> None:
    executor = _FakeExecutor(
        {
            "CustomerKey": _row(100, orphans=1, orphaned_values=1, max_value="42"),
            "DeliveryCustomerKey": ScanExecutionError(
                "Conversion failed when converting the nvarchar value 'X' to int"
            ),
            "BillToCustomerKey": _row(80),
        }
    )
    candidates = [
        _candidate("CustomerKey"),
        _candidate("DeliveryCustomerKey"),
        _candidate("BillToCustomerKey"),
    ]

    report = run_integrity_scan(candidates, executor)

    assert [result.foreign_key for result in report.results] == [
        "CustomerKey",
        "BillToCustomerKey",
    ]
    (failure,) = report.failures
    assert failure.candidate.foreign_key == "DeliveryCustomerKey"
    assert failure.error_type == "ScanExecutionError"
    assert "Conversion failed" in failure.error
    assert report.has_failures
    assert report.summary.total_candidates == 3
    assert report.summary.scanned == 2
    assert report.summary.failed == 1


def test_inconsistent_row_is_recorded_as_failure() -> None:
    executor = _FakeExecutor({"CustomerKey": _row(5, orphans=9, orphaned_values=2, max_value="7")})

    report = run_integrity_scan([_candidate("CustomerKey")], executor)

    assert report.results == []
    assert report.failures[0].error_type == "ValueError"


def test_report_is_sorted_by_orphans_then_fact_rows() -> None:
    executor = _FakeExecutor(
        {
            "A": _row(100, orphans=5, orphaned_values=1, max_value="1"),
            "B": _row(200, orphans=5, orphaned_values=2, max_value="2"),
            "C": _row(10, orphans=9, orphaned_values=3, max_value="3"),
            "D": _row(1000),
        }
    )
    candidates = [_candidate(key) for key in ("A", "B", "C", "D")]

    report = run_integrity_scan(candidates, executor)

    assert [result.foreign_key for result in report.results] == ["C", "B", "A", "D"]
    for before, after in zip(report.results, report.results[1:]):
        assert before.nbr_of_orphans > after.nbr_of_orphans or (
            before.nbr_of_orphans == after.nbr_of_orphans
            and before.fact_rows >= after.fact_rows
        )


def test_results_share_one_local_run_time_unless_database_clock_is_used() -> None:
    db_time = pd.Timestamp("2024-05-01 12:00:00")
    executor = _FakeExecutor(
        {"A": _row(1, run_time=db_time), "B": _row(2, run_time=db_time)}
    )
    candidates = [_candidate("A"), _candidate("B")]

    local = run_integrity_scan(candidates, executor)
    database = run_integrity_scan(candidates, executor, use_database_clock=True)

    assert len({result.run_time for result in local.results}) == 1
    assert local.results[0].run_time.tzinfo is not None
    assert all(
        result.run_time == datetime(2024, 5, 1, 12, 0) for result in database.results
    )


def test_concurrent_scan_matches_sequential_scan() -> None:
    answers = {
        f"Key{index}": _row(
            100 + index,
            orphans=index % 4,
            orphaned_values=1 if index % 4 else 0,
            max_value=str(index) if index % 4 else "n/a",
        )
        for index in range(12)
    }
    candidates = [_candidate(key) for key in answers]

    sequential = run_integrity_scan(candidates, _FakeExecutor(answers), max_workers=1)
    concurrent = run_integrity_scan(candidates, _FakeExecutor(answers), max_workers=4)

    def _without_run_time(report):
        return report.to_dataframe().drop(columns=["RunTime"]).to_dict("records")

    assert _without_run_time(sequential) == _without_run_time(concurrent)
    assert len(concurrent.results) == len(candidates)


def test_cancellation_stops_issuing_new_scans() -> None:
    cancel_event = threading.Event()

    class _CancellingExecutor(_FakeExecutor):
        def execute(self, statement: ScanStatement) -> Mapping[str, Any]:
            row = super().execute(statement)
            cancel_event.set()
            return row

    executor = _CancellingExecutor({key: _row(10) for key in ("A", "B", "C")})
    candidates = [_candidate(key) for key in ("A", "B", "C")]

    report = run_integrity_scan(candidates, executor, cancel_event=cancel_event)

    assert len(executor.statements) == 1
    assert [result.foreign_key for result in report.results] == ["A"]
    assert [candidate.foreign_key for candidate in report.cancelled] == ["B", "C"]
    assert report.failures == []
    assert report.summary.cancelled == 2


def test_invalid_worker_count() -> None:
    with pytest.raises(ValueError):
        run_integrity_scan([], _FakeExecutor({}), max_workers=0)


def test_run_integrity_check_end_to_end_with_offline_metadata() -> None:
    provider = TableDefinitionMetadataProvider(
        [
            {
                "table_name": "dbo.dimCustomer",
                "columns": [{"name": "CustomerKey", "is_primary_key": True}],
            },
            {"table_name": "dbo.dimGeography", "columns": [{"name": "GeographyKey"}]},
            {
                "table_name": "dbo.factSales",
                "columns": ["CustomerKey", "DeliveryCustomerKey", "Amount"],
            },
        ]
    )
    executor = _FakeExecutor(
        {
            "CustomerKey": _row(100, orphans=10, orphaned_values=8, max_value="907", special_rows=2),
            "DeliveryCustomerKey": _row(100),
        }
    )
    updates: List[ProgressUpdate] = []

    report = run_integrity_check(
        provider, executor, progress_tracker=ScanProgressTracker(updates.append)
    )

    assert [(r.foreign_key, r.nbr_of_orphans) for r in report.results] == [
        ("CustomerKey", 10),
        ("DeliveryCustomerKey", 0),
    ]
    assert "1 dimension tables skipped" in report.summary.notes
    assert updates[-1].percentage == 100.0
    df = report.to_dataframe()
    assert tuple(df.columns) == REPORT_COLUMNS
    assert df["MaxOrphanedValue"].tolist() == ["907", "n/a"]


def test_metadata_failure_aborts_before_any_scan() -> None:
    class _BrokenProvider:
        def list_tables(self, name_prefix):
            raise MetadataUnavailableError("catalog offline")

        def primary_key_column(self, table):
            return None

        def columns(self, table):
            return []

    executor = _FakeExecutor({})

    with pytest.raises(MetadataUnavailableError):
        run_integrity_check(_BrokenProvider(), executor)
    assert executor.statements == []
