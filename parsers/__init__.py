"""
Spreadsheet parsers module.
"""

from parsers.tabular_parser import (
    extract_rows,
    is_supported_file,
    SUPPORTED_EXTENSIONS,
)

__all__ = [
    "extract_rows",
    "is_supported_file",
    "SUPPORTED_EXTENSIONS",
]
