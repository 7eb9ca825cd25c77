"""CSV report generation for bench runs."""

from .csv_report import STOP_ANALYSIS, ReportWriter, ordinal

__all__ = ["ReportWriter", "STOP_ANALYSIS", "ordinal"]
