"""
Read uploaded donor spreadsheets into a header row and a lazy stream of rows.

Delimited text is parsed with the csv module (delimiter sniffed from the
first lines); .xlsx workbooks are streamed with openpyxl in read-only mode.
Only the first few rows are materialized eagerly, for schema inference.
"""
import codecs
import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from donor_import.core.config import settings
from donor_import.domain.imports.errors import EmptyFileError, FormatError, SizeLimitError

logger = logging.getLogger(__name__)

RowRecord = Dict[str, str]

XLSX_MAGIC = b"PK\x03\x04"
OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
SNIFF_BYTES = 16 * 1024
CANDIDATE_DELIMITERS = ",;\t|"

# Byte-order marks of encodings whose text contains NUL bytes; the codecs strip the BOM.
WIDE_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def default_max_bytes() -> int:
    return settings.upload_max_file_size_mb * 1024 * 1024


@dataclass
class SpreadsheetData:
    """
    Parsed view of an uploaded file.

    ``rows()`` yields every data row exactly once; a second call raises
    ``RuntimeError`` so callers cannot silently re-read a consumed stream.
    """
    headers: List[str]
    total_rows: int
    sample: List[RowRecord]
    file_type: str
    _row_factory: Callable[[], Iterator[RowRecord]] = field(repr=False)
    _consumed: bool = field(default=False, repr=False)

    def rows(self) -> Iterator[RowRecord]:
        if self._consumed:
            raise RuntimeError("Spreadsheet rows have already been consumed")
        self._consumed = True
        return self._row_factory()


def disambiguate_headers(raw_headers: Sequence[Any]) -> List[str]:
    """
    Produce unique, non-blank header names.

    Blank headers become ``column_<n>``; repeated names get an index suffix
    (``Email``, ``Email_2``, ``Email_3``).
    """
    headers: List[str] = []
    seen = set()
    for position, raw in enumerate(raw_headers, start=1):
        name = _cell_to_text(raw).strip() or f"column_{position}"
        candidate = name
        suffix = 2
        while candidate.lower() in seen:
            candidate = f"{name}_{suffix}"
            suffix += 1
        seen.add(candidate.lower())
        headers.append(candidate)
    return headers


def _cell_to_text(value: Any) -> str:
    """Render a cell value as the raw string an operator would see."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)


def _is_blank(cells: Sequence[Any]) -> bool:
    return all(not _cell_to_text(cell).strip() for cell in cells)


def _to_record(headers: List[str], cells: Sequence[Any]) -> RowRecord:
    """Pad short rows with empty strings and drop cells beyond the header width."""
    values = [_cell_to_text(cell) for cell in cells[: len(headers)]]
    if len(values) < len(headers):
        values.extend([""] * (len(headers) - len(values)))
    return dict(zip(headers, values))


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

def _decode_text(file_content: bytes) -> str:
    # UTF-32 first: its little-endian BOM starts with the UTF-16 one.
    for bom, encoding in WIDE_BOMS:
        if file_content.startswith(bom):
            try:
                return file_content.decode(encoding)
            except UnicodeDecodeError as exc:
                raise FormatError(f"Could not decode file as {encoding} text: {exc}") from exc
    if b"\x00" in file_content[:SNIFF_BYTES]:
        raise FormatError("File contains binary data and is not a delimited text file")
    try:
        # utf-8-sig strips a leading byte-order mark.
        return file_content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("File is not valid UTF-8; decoding as cp1252")
        try:
            return file_content.decode("cp1252")
        except UnicodeDecodeError as exc:
            raise FormatError(f"Could not decode file as text: {exc}") from exc


def _detect_dialect(text: str) -> Any:
    sample = text[:SNIFF_BYTES]
    try:
        return csv.Sniffer().sniff(sample, delimiters=CANDIDATE_DELIMITERS)
    except csv.Error:
        # Single-column files and files the sniffer cannot decide on.
        return csv.excel


def _iter_delimited_rows(text: str, dialect: Any) -> Iterator[List[str]]:
    reader = csv.reader(io.StringIO(text, newline=""), dialect)
    try:
        for cells in reader:
            if _is_blank(cells):
                continue
            yield cells
    except csv.Error as exc:
        raise FormatError(f"Could not parse delimited text at line {reader.line_num}: {exc}") from exc


# ---------------------------------------------------------------------------
# Workbooks
# ---------------------------------------------------------------------------

def _open_worksheet(file_content: bytes):
    try:
        workbook = load_workbook(io.BytesIO(file_content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise FormatError(f"Could not read Excel workbook: {exc}") from exc
    if not workbook.worksheets:
        workbook.close()
        raise FormatError("Excel workbook contains no worksheets")
    return workbook, workbook.worksheets[0]


def _iter_workbook_rows(file_content: bytes) -> Iterator[Sequence[Any]]:
    workbook, sheet = _open_worksheet(file_content)
    try:
        for cells in sheet.iter_rows(values_only=True):
            if _is_blank(cells):
                continue
            yield cells
    finally:
        workbook.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def detect_file_type(file_content: bytes) -> str:
    """Classify file bytes as 'excel' or 'csv' from their signature."""
    if file_content.startswith(XLSX_MAGIC):
        return "excel"
    if file_content.startswith(OLE2_MAGIC):
        raise FormatError(
            "Legacy .xls workbooks are not supported; save the file as .xlsx or CSV"
        )
    return "csv"


def read_spreadsheet(
    file_content: bytes,
    max_bytes: Optional[int] = None,
    sample_size: Optional[int] = None,
) -> SpreadsheetData:
    """
    Parse an uploaded file into headers, an eager sample and a lazy row stream.

    Args:
        file_content: Raw bytes of the upload
        max_bytes: Size ceiling; defaults to the configured upload limit
        sample_size: Rows materialized eagerly for schema inference

    Raises:
        SizeLimitError: file is larger than ``max_bytes``
        FormatError: file is neither delimited text nor an .xlsx workbook
        EmptyFileError: file has no header or zero data rows
    """
    limit = default_max_bytes() if max_bytes is None else max_bytes
    if len(file_content) > limit:
        raise SizeLimitError(len(file_content), limit)
    if not file_content.strip():
        raise EmptyFileError("File is empty")

    if sample_size is None:
        sample_size = settings.import_sample_rows
    sample_size = max(1, sample_size)

    file_type = detect_file_type(file_content)
    if file_type == "excel":
        def raw_rows() -> Iterator[Sequence[Any]]:
            return _iter_workbook_rows(file_content)
    else:
        text = _decode_text(file_content)
        dialect = _detect_dialect(text)

        def raw_rows() -> Iterator[Sequence[Any]]:
            return _iter_delimited_rows(text, dialect)

    # First pass: header, sample and row count without keeping rows around.
    counting_iter = raw_rows()
    header_cells = next(counting_iter, None)
    if header_cells is None:
        raise EmptyFileError("File contains no header row")
    headers = disambiguate_headers(header_cells)

    sample: List[RowRecord] = []
    total_rows = 0
    for cells in counting_iter:
        if len(sample) < sample_size:
            sample.append(_to_record(headers, cells))
        total_rows += 1

    if total_rows == 0:
        raise EmptyFileError("File contains no data rows")

    def row_factory() -> Iterator[RowRecord]:
        stream = raw_rows()
        next(stream, None)  # header
        for cells in stream:
            yield _to_record(headers, cells)

    logger.info(
        "Read %s file: %d columns, %d data rows", file_type, len(headers), total_rows
    )
    return SpreadsheetData(
        headers=headers,
        total_rows=total_rows,
        sample=sample,
        file_type=file_type,
        _row_factory=row_factory,
    )
