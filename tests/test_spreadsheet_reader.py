"""
Tests for reading uploaded CSV and Excel files.
"""

import codecs
from datetime import datetime

import pytest

from donor_import.domain.imports.errors import EmptyFileError, FormatError, SizeLimitError
from donor_import.domain.imports.processors.spreadsheet_reader import (
    detect_file_type,
    disambiguate_headers,
    read_spreadsheet,
)
from tests.utils.fakes import make_csv, make_xlsx


class TestDelimitedText:
    """CSV and other delimited text files."""

    def test_headers_rows_and_sample(self):
        content = make_csv(
            ["firstname", "lastname", "email"],
            [["Ada", "Lovelace", "ada@example.org"]] * 7,
        )
        data = read_spreadsheet(content, sample_size=5)

        assert data.file_type == "csv"
        assert data.headers == ["firstname", "lastname", "email"]
        assert data.total_rows == 7
        assert len(data.sample) == 5
        assert data.sample[0] == {"firstname": "Ada", "lastname": "Lovelace", "email": "ada@example.org"}
        assert len(list(data.rows())) == 7

    def test_byte_order_mark_is_stripped(self):
        content = b"\xef\xbb\xbf" + make_csv(["firstname", "lastname"], [["Ada", "Lovelace"]])
        data = read_spreadsheet(content)
        assert data.headers[0] == "firstname"

    @pytest.mark.parametrize("encoding", ["utf-16", "utf-16-be", "utf-32"])
    def test_wide_unicode_with_byte_order_mark(self, encoding):
        text = "firstname,lastname,email\nZoë,Ångström,zoe@example.org\n"
        if encoding == "utf-16-be":
            content = codecs.BOM_UTF16_BE + text.encode("utf-16-be")
        else:
            content = text.encode(encoding)

        data = read_spreadsheet(content)

        assert data.file_type == "csv"
        assert data.headers == ["firstname", "lastname", "email"]
        assert list(data.rows()) == [{"firstname": "Zoë", "lastname": "Ångström", "email": "zoe@example.org"}]

    def test_short_rows_are_padded_and_long_rows_truncated(self):
        content = b"a,b,c\n1,2\n3,4,5,6\n"
        data = read_spreadsheet(content)
        rows = list(data.rows())
        assert rows[0] == {"a": "1", "b": "2", "c": ""}
        assert rows[1] == {"a": "3", "b": "4", "c": "5"}

    def test_semicolon_delimiter_is_detected(self):
        content = make_csv(
            ["firstname", "lastname", "city"],
            [["Ada", "Lovelace", "London"], ["Alan", "Turing", "Wilmslow"]],
            delimiter=";",
        )
        data = read_spreadsheet(content)
        assert data.headers == ["firstname", "lastname", "city"]
        assert data.sample[1]["city"] == "Wilmslow"

    def test_blank_lines_are_skipped(self):
        content = b"firstname,lastname\n\nAda,Lovelace\n,\nAlan,Turing\n"
        data = read_spreadsheet(content)
        assert data.total_rows == 2
        assert [row["firstname"] for row in data.rows()] == ["Ada", "Alan"]

    def test_cp1252_fallback(self):
        content = "firstname,lastname\nJosé,García\n".encode("cp1252")
        data = read_spreadsheet(content)
        assert data.sample[0] == {"firstname": "José", "lastname": "García"}

    def test_rows_can_only_be_read_once(self):
        data = read_spreadsheet(make_csv(["firstname"], [["Ada"]]))
        list(data.rows())
        with pytest.raises(RuntimeError):
            data.rows()


class TestWorkbooks:
    """Excel .xlsx workbooks."""

    def test_reads_first_sheet_and_renders_cells_as_text(self):
        content = make_xlsx(
            ["First Name", "Last Name", "Class Of", "Last Gift", "Opt In"],
            [
                ["Ada", "Lovelace", 2031, datetime(2024, 3, 1), True],
                ["Alan", "Turing", 2029.0, None, False],
            ],
        )
        data = read_spreadsheet(content)

        assert data.file_type == "excel"
        assert data.total_rows == 2
        first, second = list(data.rows())
        assert first["Class Of"] == "2031"
        assert first["Last Gift"] == "2024-03-01"
        assert first["Opt In"] == "TRUE"
        assert second["Class Of"] == "2029"
        assert second["Last Gift"] == ""

    def test_corrupt_workbook_is_a_format_error(self):
        with pytest.raises(FormatError):
            read_spreadsheet(b"PK\x03\x04this is not really a zip archive")


class TestRejections:
    """Files that must be rejected before any job is created."""

    def test_empty_file(self):
        with pytest.raises(EmptyFileError):
            read_spreadsheet(b"   \n")

    def test_header_without_rows(self):
        with pytest.raises(EmptyFileError):
            read_spreadsheet(b"firstname,lastname,email\n")

    def test_size_limit(self):
        content = make_csv(["firstname"], [["Ada"]] * 10)
        with pytest.raises(SizeLimitError) as excinfo:
            read_spreadsheet(content, max_bytes=10)
        assert excinfo.value.max_bytes == 10
        assert excinfo.value.file_size == len(content)

    def test_legacy_xls_is_rejected(self):
        with pytest.raises(FormatError, match="xlsx"):
            detect_file_type(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 32)

    def test_binary_data_is_rejected(self):
        with pytest.raises(FormatError):
            read_spreadsheet(b"\x00\x01\x02\x03binary\x00")


def test_duplicate_and_blank_headers_are_disambiguated():
    assert disambiguate_headers(["Email", "Email", "", "email", None]) == [
        "Email",
        "Email_2",
        "column_3",
        "email_3",
        "column_5",
    ]
