"""CSV export of reconciliation results."""

from .csv_exporter import CSV_COLUMNS, CsvExporter, ExportResult

__all__ = ["CSV_COLUMNS", "CsvExporter", "ExportResult"]
