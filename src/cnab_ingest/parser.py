"""Fixed-width CNAB line parser.

Pure functions, no I/O. One line is one transaction::

    [0:1]   nature code        1 char
    [1:9]   date               YYYYMMDD
    [9:19]  amount             integer cents
    [19:30] cpf                11 chars
    [30:42] card               12 chars
    [42:48] time               HHMMSS
    [48:62] store owner        14 chars
    [62:80] store name         18 chars
"""

from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from core.errors.exceptions import ParseError

from cnab_ingest.types import ParseResult, TransactionRecord

LINE_LENGTH = 80


class NatureKind(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"
    NEUTRAL = "neutral"


# code -> (description, kind)
NATURES: dict[str, tuple[str, NatureKind]] = {
    "1": ("Debit", NatureKind.INCOME),
    "2": ("Boleto", NatureKind.EXPENSE),
    "3": ("Financing", NatureKind.EXPENSE),
    "4": ("Credit", NatureKind.INCOME),
    "5": ("Loan Receipt", NatureKind.INCOME),
    "6": ("Sales", NatureKind.INCOME),
    "7": ("TED Receipt", NatureKind.INCOME),
    "8": ("DOC Receipt", NatureKind.INCOME),
    "9": ("Rent", NatureKind.EXPENSE),
}


def nature_description(code: str) -> str:
    return NATURES.get(code, ("Unknown", NatureKind.NEUTRAL))[0]


def signed_amount(code: str, amount: Decimal) -> Decimal:
    """Positive for income, negative for expense, zero for unknown codes."""
    kind = NATURES.get(code, ("Unknown", NatureKind.NEUTRAL))[1]
    if kind == NatureKind.INCOME:
        return amount
    if kind == NatureKind.EXPENSE:
        return -amount
    return Decimal("0.00")


def _field(line: str, start: int, end: int) -> str:
    return line[start:end].strip()


def _parse_amount(raw: str, line_index: int) -> Decimal:
    if not raw.isdigit():
        raise ParseError(
            f"Line {line_index + 1}: invalid amount '{raw}'",
            line_index=line_index,
            field_name="amount",
        )
    try:
        return (Decimal(raw) / 100).quantize(Decimal("0.01"))
    except InvalidOperation as e:
        raise ParseError(
            f"Line {line_index + 1}: invalid amount '{raw}'",
            line_index=line_index,
            field_name="amount",
            cause=e,
        )


def _parse_timestamp(date_raw: str, time_raw: str, line_index: int) -> datetime:
    if len(date_raw) != 8 or not date_raw.isdigit():
        raise ParseError(
            f"Line {line_index + 1}: invalid date '{date_raw}'",
            line_index=line_index,
            field_name="date",
        )
    if len(time_raw) != 6 or not time_raw.isdigit():
        raise ParseError(
            f"Line {line_index + 1}: invalid time '{time_raw}'",
            line_index=line_index,
            field_name="time",
        )
    try:
        return datetime.strptime(date_raw + time_raw, "%Y%m%d%H%M%S").replace(tzinfo=UTC)
    except ValueError as e:
        raise ParseError(
            f"Line {line_index + 1}: invalid date/time '{date_raw} {time_raw}'",
            line_index=line_index,
            field_name="date",
            cause=e,
        )


def parse_record(line: str, line_index: int) -> TransactionRecord:
    """Parse one line or raise ParseError naming the offending field."""
    line = line.rstrip("\r\n")
    if len(line) < LINE_LENGTH:
        raise ParseError(
            f"Line {line_index + 1}: expected at least {LINE_LENGTH} characters, got {len(line)}",
            line_index=line_index,
            field_name="length",
        )

    code = _field(line, 0, 1)
    if code not in NATURES:
        raise ParseError(
            f"Line {line_index + 1}: unknown nature code '{code}'",
            line_index=line_index,
            field_name="nature_code",
        )

    amount = _parse_amount(_field(line, 9, 19), line_index)
    occurred_at = _parse_timestamp(_field(line, 1, 9), _field(line, 42, 48), line_index)

    return TransactionRecord(
        nature_code=code,
        amount=amount,
        signed_amount=signed_amount(code, amount),
        occurred_at=occurred_at,
        cpf=_field(line, 19, 30),
        card=_field(line, 30, 42),
        store_owner=_field(line, 48, 62),
        store_name=_field(line, 62, 80),
    )


def parse(line: str, line_index: int) -> ParseResult:
    """Parse one line into a ParseResult; never raises for bad content."""
    try:
        return ParseResult(record=parse_record(line, line_index))
    except ParseError as e:
        return ParseResult(error=e.message)


def split_lines(content: str) -> list[tuple[int, str]]:
    """Split file content into ``(line_index, line)`` pairs.

    Blank lines are dropped but the remaining lines keep their original
    zero-based position, so idempotency keys are stable across resubmits.
    """
    return [
        (index, line)
        for index, line in enumerate(content.splitlines())
        if line.strip()
    ]
