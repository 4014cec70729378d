"""Orphan-statistics scans over inferred relationships."""

from .accumulator import run_integrity_check, run_integrity_scan
from .query_builder import build_scan_statement

__all__ = [
    "build_scan_statement",
    "run_integrity_check",
    "run_integrity_scan",
]
