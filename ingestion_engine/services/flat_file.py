"""
Flat-file access: encoding detection, header handling, streaming row reads and
column type inference for delimited text files.
"""
import codecs
import csv
import re
import shutil
import uuid
from collections import Counter
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Sequence

from chardet.universaldetector import UniversalDetector
from dateutil import parser as date_parser

from ingestion_engine.core.config import Settings
from ingestion_engine.core.errors import InvalidRequest, SchemaNotFound
from ingestion_engine.schemas.discovery import ColumnInfo
from ingestion_engine.services.type_mapping import LogicalKind, LogicalType, from_logical

ENCODING_SAMPLE_BYTES = 64 * 1024
ENCODING_READ_CHUNK = 4096

# Codec names (as normalised by codecs.lookup) read through a compatible codec
READ_AS = {
    "ascii": "utf-8",
    "utf-8-sig": "utf-8",
}

INTEGER_RE = re.compile(r"^[+-]?\d+$")
FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
DATE_RE = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}$|^\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}$")
DATETIME_RE = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}[ T]\d{1,2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$")
BOOLEAN_VALUES = {"true", "false"}


def resolve_file_ref(file_ref: str, settings: Settings) -> Path:
    """
    Resolve a file reference to a path inside the upload or export directory.

    Only the base name of ``file_ref`` is used, so references cannot escape
    the configured directories.
    """
    name = Path(file_ref or "").name
    if not name:
        raise InvalidRequest("A file reference is required")
    for directory in (settings.UPLOAD_DIR, settings.EXPORT_DIR):
        candidate = Path(directory) / name
        if candidate.is_file():
            return candidate
    raise SchemaNotFound(f"File not found: {name}")


def save_upload(filename: str, stream: BinaryIO, settings: Settings) -> str:
    """
    Store an uploaded file in ``UPLOAD_DIR``.

    Returns:
        The file reference later used as ``fileRef``.
    """
    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", Path(filename or "upload.csv").name)
    file_ref = f"{uuid.uuid4().hex[:12]}_{safe_name}"
    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    with open(upload_dir / file_ref, "wb") as out:
        shutil.copyfileobj(stream, out)
    return file_ref


def detect_encoding(path: Path, sample_bytes: int = ENCODING_SAMPLE_BYTES) -> str:
    """
    Guess a file's text encoding with chardet from at most ``sample_bytes``.

    ASCII and BOM-marked UTF-8 are reported as utf-8; the reader strips a
    byte order mark itself. Undetectable or unknown encodings fall back to
    utf-8.
    """
    detector = UniversalDetector()
    read = 0
    with open(path, "rb") as f:
        while read < sample_bytes and not detector.done:
            chunk = f.read(min(ENCODING_READ_CHUNK, sample_bytes - read))
            if not chunk:
                break
            detector.feed(chunk)
            read += len(chunk)
    guess = detector.close()["encoding"]
    if not guess:
        return "utf-8"
    try:
        name = codecs.lookup(guess).name
    except LookupError:
        return "utf-8"
    return READ_AS.get(name, name)


def classify_value(value: str) -> LogicalKind:
    """Logical kind a single non-empty text value looks like."""
    text = value.strip()
    if INTEGER_RE.match(text):
        return LogicalKind.INTEGER
    if FLOAT_RE.match(text):
        return LogicalKind.FLOAT
    if text.lower() in BOOLEAN_VALUES:
        return LogicalKind.BOOLEAN
    if DATETIME_RE.match(text) or DATE_RE.match(text):
        try:
            date_parser.parse(text)
        except (ValueError, OverflowError):
            return LogicalKind.STRING
        return LogicalKind.DATETIME if DATETIME_RE.match(text) else LogicalKind.DATE
    return LogicalKind.STRING


def infer_kind(values: Sequence[str]) -> LogicalKind:
    """
    Infer a column's logical kind from sample values by majority vote.

    Integers and floats vote together when every value is numeric. A kind
    needs a strict majority of the non-empty values; otherwise, and for an
    empty sample, the column is a string.
    """
    kinds = [classify_value(v) for v in values if v is not None and v.strip() != ""]
    if not kinds:
        return LogicalKind.STRING
    votes = Counter(kinds)
    numeric = votes[LogicalKind.INTEGER] + votes[LogicalKind.FLOAT]
    if numeric == len(kinds) and votes[LogicalKind.FLOAT]:
        return LogicalKind.FLOAT
    kind, count = votes.most_common(1)[0]
    if count * 2 > len(kinds):
        return kind
    return LogicalKind.STRING


class FlatFileReader:
    """
    Reader for one delimited file.

    Every read opens the file afresh and streams it, so callers can bound how
    much they consume (preview, discovery) or walk it fully (jobs, export).
    """

    def __init__(
        self,
        path: Path,
        delimiter: str = ",",
        has_header: bool = True,
        encoding: Optional[str] = None,
    ):
        """
        Initialize the reader.

        Args:
            path: File to read
            delimiter: Single field separator character
            has_header: Whether the first record holds column names
            encoding: Text encoding; detected with chardet when omitted
        """
        if not path.is_file():
            raise SchemaNotFound(f"File not found: {path.name}")
        if len(delimiter) != 1:
            raise InvalidRequest(f"Delimiter must be a single character, got {delimiter!r}")
        self.path = path
        self.delimiter = delimiter
        self.has_header = has_header
        self.encoding = encoding or detect_encoding(path)
        self._headers: Optional[List[str]] = None

    def _open(self):
        # utf-8-sig drops a leading byte order mark from the first header
        encoding = "utf-8-sig" if self.encoding == "utf-8" else self.encoding
        return open(self.path, "r", encoding=encoding, errors="replace", newline="")

    def headers(self) -> List[str]:
        """Column names: the header record, or ``column_1..n`` for headerless files."""
        if self._headers is None:
            with self._open() as f:
                first = next(csv.reader(f, delimiter=self.delimiter), [])
            if self.has_header:
                self._headers = [name.strip() or f"column_{i}" for i, name in enumerate(first, start=1)]
            else:
                self._headers = [f"column_{i}" for i in range(1, len(first) + 1)]
        return self._headers

    def iter_rows(self) -> Iterator[Dict[str, str]]:
        """Stream every data record as a column-name to text mapping."""
        headers = self.headers()
        width = len(headers)
        with self._open() as f:
            reader = csv.reader(f, delimiter=self.delimiter)
            if self.has_header:
                next(reader, None)
            for record in reader:
                if not record or (len(record) == 1 and record[0] == "" and width > 1):
                    continue
                if len(record) < width:
                    record = record + [""] * (width - len(record))
                yield dict(zip(headers, record))

    def sample(self, limit: int) -> List[Dict[str, str]]:
        rows = []
        for row in self.iter_rows():
            if len(rows) >= limit:
                break
            rows.append(row)
        return rows

    def count_rows(self) -> int:
        return sum(1 for _ in self.iter_rows())

    def infer_columns(self, sample_rows: int) -> List[ColumnInfo]:
        """
        Infer each column's type from a bounded sample.

        Args:
            sample_rows: Maximum number of data records to read

        Returns:
            Columns in file order with native and logical types
        """
        rows = self.sample(sample_rows)
        columns = []
        for name in self.headers():
            values = [row.get(name, "") for row in rows]
            kind = infer_kind(values)
            nullable = any(v.strip() == "" for v in values)
            native = from_logical(LogicalType(kind), nullable=nullable)
            columns.append(ColumnInfo(name=name, type=native, logical_type=kind.value, nullable=nullable))
        return columns
