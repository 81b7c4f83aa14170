import base64
import binascii
import csv
from io import StringIO
from typing import Sequence

from errors import InvalidFormatError


def decode_payload(value: str) -> bytes:
    """Base64 file content as sent by import clients."""
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidFormatError("failed to decode file content") from exc


def decode_text(data: bytes) -> str:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidFormatError("file is not valid UTF-8") from exc
    return text.replace("\r\n", "\n")


def read_rows(data: bytes) -> list[list[str]]:
    """Parse CSV bytes; rows may have different lengths."""
    reader = csv.reader(StringIO(decode_text(data)))
    try:
        return [row for row in reader]
    except csv.Error as exc:
        raise InvalidFormatError(f"failed to read CSV data: {exc}") from exc


def read_data_rows(data: bytes) -> list[list[str]]:
    """Rows after the header, stopping at the first blank row."""
    rows = read_rows(data)
    if len(rows) <= 1:
        raise InvalidFormatError("empty file")
    body: list[list[str]] = []
    for row in rows[1:]:
        if not row or not row[0].strip():
            break
        body.append(row)
    return body


def row_to_line(row: Sequence[str]) -> str:
    buffer = StringIO()
    csv.writer(buffer, lineterminator="").writerow(row)
    return buffer.getvalue()


def strip_non_printable(value: str) -> str:
    return "".join(ch for ch in value if ch.isprintable()).strip()
