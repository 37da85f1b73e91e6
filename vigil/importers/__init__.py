"""Vigil import modules."""

from vigil.importers.csv_import import CsvCredential, import_into, parse_csv

__all__ = ["CsvCredential", "import_into", "parse_csv"]
