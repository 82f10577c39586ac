"""Delimited text parsing.

Turns uploaded CSV-like text into row records and a canonical text form
using pandas.
"""

import io
import logging
import warnings
from dataclasses import dataclass, field

import pandas as pd

from tabular_rag.errors import ParseError
from tabular_rag.models import RowRecord

logger = logging.getLogger(__name__)

MISSING_VALUE = "N/A"
CANDIDATE_DELIMITERS = (",", "\t", ";", "|")
_SNIFF_LINES = 10


@dataclass
class ParsedTable:
    """Result of parsing one upload.

    Attributes:
        headers: Column headers in file order.
        rows: One record per non-empty data row.
        canonical_text: Header line plus one line per row.
        delimiter: Field delimiter the text was parsed with.
    """

    headers: list[str] = field(default_factory=list)
    rows: list[RowRecord] = field(default_factory=list)
    canonical_text: str = ""
    delimiter: str = ","

    @property
    def row_count(self) -> int:
        return len(self.rows)


def decode_upload(raw: bytes) -> str:
    """Decode upload bytes as UTF-8, dropping a leading BOM.

    Raises:
        ParseError: If the bytes are not valid UTF-8.
    """
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"Failed to read file: {e}", original_error=e) from e


def detect_delimiter(text: str) -> str:
    """Pick the delimiter that splits the leading lines most consistently.

    Falls back to a comma when no candidate yields more than one column.
    """
    lines = [line for line in text.splitlines() if line.strip()][:_SNIFF_LINES]
    if not lines:
        return ","

    best, best_score = ",", (0, 0)
    for candidate in CANDIDATE_DELIMITERS:
        counts = [line.count(candidate) for line in lines]
        if counts[0] == 0:
            continue
        consistent = sum(1 for c in counts if c == counts[0])
        score = (consistent, counts[0])
        if score > best_score:
            best, best_score = candidate, score
    return best


def flatten_row(headers: list[str], values: dict[str, str]) -> str:
    """Render a row as ``"header: value"`` pairs joined by ``", "``."""
    return ", ".join(
        f"{header}: {values.get(header) or MISSING_VALUE}" for header in headers
    )


def parse_table(text: str, delimiter: str | None = None) -> ParsedTable:
    """Parse delimited text whose first row is the header.

    Args:
        text: Raw file text.
        delimiter: Field delimiter; detected from the text when omitted.

    Returns:
        ParsedTable with row records and canonical text.

    Raises:
        ParseError: If the text is not well-formed delimited data.
    """
    if not text.strip():
        return ParsedTable()

    sep = delimiter or detect_delimiter(text)
    try:
        # A first row wider than the header only warns; treat it as malformed
        with warnings.catch_warnings():
            warnings.simplefilter("error", pd.errors.ParserWarning)
            df = pd.read_csv(
                io.StringIO(text),
                sep=sep,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                index_col=False,
            )
    except (
        pd.errors.ParserError,
        pd.errors.ParserWarning,
        pd.errors.EmptyDataError,
        ValueError,
    ) as e:
        raise ParseError(f"Failed to parse CSV: {e}", original_error=e) from e

    headers = [str(c).strip() for c in df.columns]
    duplicates = sorted({h for h in headers if headers.count(h) > 1})
    if duplicates:
        raise ParseError(f"Failed to parse CSV: duplicate column headers {duplicates}")
    df.columns = headers
    df = df.fillna("")

    rows: list[RowRecord] = []
    for position, record in enumerate(df.to_dict(orient="records"), start=1):
        values = {h: str(record[h]) for h in headers}
        rows.append(
            RowRecord(
                row_number=position,
                values=values,
                content=flatten_row(headers, values),
            )
        )

    canonical_text = df.to_csv(index=False, sep=sep, lineterminator="\n").rstrip("\n")
    logger.debug(f"Parsed {len(rows)} rows with {len(headers)} columns (sep={sep!r})")
    return ParsedTable(
        headers=headers,
        rows=rows,
        canonical_text=canonical_text,
        delimiter=sep,
    )
