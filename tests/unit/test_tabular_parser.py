"""
Unit tests for the tabular parser.

Run: pytest tests/unit/test_tabular_parser.py -v
"""

from io import BytesIO

import pytest
import pandas as pd

from exceptions import FileParseError
from parsers.tabular_parser import extract_rows, is_supported_file


def make_xlsx(frame: pd.DataFrame) -> bytes:
    buffer = BytesIO()
    frame.to_excel(buffer, index=False, engine="openpyxl")
    return buffer.getvalue()


class TestIsSupportedFile:
    """Tests for is_supported_file()"""

    @pytest.mark.parametrize("name", ["a.csv", "a.xlsx", "a.xls", "A.XLSX"])
    def test_supported(self, name):
        """Should accept csv and Excel names in any case."""
        assert is_supported_file(name) is True

    @pytest.mark.parametrize("name", ["a.txt", "a.pdf", "csv"])
    def test_unsupported(self, name):
        """Should reject other extensions."""
        assert is_supported_file(name) is False


class TestExtractCsv:
    """Tests for extract_rows() on CSV"""

    def test_rows_as_text(self):
        """Should return every cell as text keyed by header."""
        content = b"EMAIL,PHONE,NAME\na@x.com,0012,Ann\nb@x.com,,Bob\n"

        rows = extract_rows(content, "people.csv")

        assert rows == [
            {"EMAIL": "a@x.com", "PHONE": "0012", "NAME": "Ann"},
            {"EMAIL": "b@x.com", "PHONE": "", "NAME": "Bob"},
        ]

    def test_strips_headers_and_bom(self):
        """Should strip whitespace and a UTF-8 BOM from headers."""
        content = "\ufeff EMAIL , NAME\na@x.com,Ann\n".encode("utf-8")

        rows = extract_rows(content, "people.csv")

        assert list(rows[0].keys()) == ["EMAIL", "NAME"]

    def test_skips_empty_rows(self):
        """Should drop rows where every cell is empty."""
        content = b"EMAIL,NAME\na@x.com,Ann\n,\nb@x.com,Bob\n"

        rows = extract_rows(content, "people.csv")

        assert [r["EMAIL"] for r in rows] == ["a@x.com", "b@x.com"]

    def test_blank_header_rejected(self):
        """Should reject a column without a header."""
        with pytest.raises(FileParseError):
            extract_rows(b"EMAIL,\na@x.com,Ann\n", "people.csv")

    def test_duplicate_header_rejected(self):
        """Should reject a CSV that repeats a column header."""
        with pytest.raises(FileParseError) as exc_info:
            extract_rows(b"EMAIL,NAME,NAME\na@x.com,One,Two\n", "people.csv")

        assert exc_info.value.details["columns"] == ["EMAIL", "NAME", "NAME"]

    def test_header_only_file_has_no_rows(self):
        """Should return no rows for a file with just a header."""
        assert extract_rows(b"EMAIL,NAME\n", "people.csv") == []

    def test_empty_file_rejected(self):
        """Should wrap reader failures in FileParseError."""
        with pytest.raises(FileParseError):
            extract_rows(b"", "people.csv")

    def test_unknown_extension_rejected(self):
        """Should reject extensions it cannot read."""
        with pytest.raises(FileParseError):
            extract_rows(b"EMAIL\n", "people.txt")


class TestExtractExcel:
    """Tests for extract_rows() on xlsx"""

    def test_numbers_and_blanks(self):
        """Should render whole numbers without .0 and blanks as empty strings."""
        frame = pd.DataFrame({
            "EMAIL": ["a@x.com", "b@x.com"],
            "PHONE": [5551234, None],
            "SCORE": [1.5, 2.0],
        })

        rows = extract_rows(make_xlsx(frame), "people.xlsx")

        assert rows[0] == {"EMAIL": "a@x.com", "PHONE": "5551234", "SCORE": "1.5"}
        assert rows[1] == {"EMAIL": "b@x.com", "PHONE": "", "SCORE": "2"}

    def test_reads_first_sheet_only(self):
        """Should ignore sheets after the first."""
        buffer = BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            pd.DataFrame({"EMAIL": ["a@x.com"]}).to_excel(writer, sheet_name="First", index=False)
            pd.DataFrame({"OTHER": ["z"]}).to_excel(writer, sheet_name="Second", index=False)

        rows = extract_rows(buffer.getvalue(), "people.xlsx")

        assert rows == [{"EMAIL": "a@x.com"}]

    def test_duplicate_header_rejected(self):
        """Should reject a sheet that repeats a column header."""
        frame = pd.DataFrame([["a@x.com", "One", "Two"]], columns=["EMAIL", "NAME", "NAME"])

        with pytest.raises(FileParseError):
            extract_rows(make_xlsx(frame), "people.xlsx")

    def test_corrupt_workbook_rejected(self):
        """Should raise FileParseError for bytes that are not a workbook."""
        with pytest.raises(FileParseError):
            extract_rows(b"not really a workbook", "people.xlsx")
