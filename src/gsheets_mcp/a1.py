"""A1 notation helpers used to size ranges before mutating them."""

import re
from typing import Any

from pydantic import BaseModel

_CELL_PATTERN = re.compile(r"^([A-Za-z]{0,3})(\d*)$")
_RANGE_PATTERN = re.compile(r"^[A-Za-z]{0,3}\d*(:[A-Za-z]{0,3}\d*)?$")


class A1Range(BaseModel):
    sheet_name: str | None = None
    start_column: int | None = None
    start_row: int | None = None
    end_column: int | None = None
    end_row: int | None = None

    @property
    def is_bounded(self) -> bool:
        return None not in (self.start_column, self.start_row, self.end_column, self.end_row)

    def cell_count(self, grid_rows: int | None = None, grid_columns: int | None = None) -> int | None:
        """Number of cells covered, using the grid size for open-ended sides.

        Returns None when the range is unbounded and no grid size is known.
        """
        start_column, end_column = _ordered(self.start_column, self.end_column)
        start_row, end_row = _ordered(self.start_row, self.end_row)
        start_column = start_column if start_column is not None else 0
        start_row = start_row if start_row is not None else 0
        if end_column is None:
            if grid_columns is None:
                return None
            end_column = grid_columns - 1
        if end_row is None:
            if grid_rows is None:
                return None
            end_row = grid_rows - 1
        # A start past the grid edge covers nothing.
        if end_column < start_column or end_row < start_row:
            return 0
        return (end_column - start_column + 1) * (end_row - start_row + 1)

    def row_count(self, grid_rows: int | None = None) -> int | None:
        start_row, end_row = _ordered(self.start_row, self.end_row)
        start_row = start_row if start_row is not None else 0
        end_row = end_row if end_row is not None else (
            grid_rows - 1 if grid_rows is not None else None
        )
        if end_row is None:
            return None
        return max(0, end_row - start_row + 1)


def column_to_letter(index: int) -> str:
    """0-based column index to letters: 0 -> A, 25 -> Z, 26 -> AA."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    letters = ""
    value = index + 1
    while value > 0:
        value, remainder = divmod(value - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def letter_to_column(letters: str) -> int:
    cleaned = letters.strip().upper()
    if not cleaned or not cleaned.isalpha():
        raise ValueError(f"Invalid column letters '{letters}'")
    value = 0
    for char in cleaned:
        value = value * 26 + (ord(char) - ord("A") + 1)
    return value - 1


def quote_sheet_name(name: str) -> str:
    return "'" + name.replace("'", "''") + "'"


def _unquote_sheet_name(name: str) -> str:
    name = name.strip()
    if name.startswith("'") and name.endswith("'") and len(name) >= 2:
        return name[1:-1].replace("''", "'")
    return name


def _split_sheet(a1: str) -> tuple[str | None, str]:
    if "!" not in a1:
        return None, a1
    sheet_part, _, range_part = a1.rpartition("!")
    return _unquote_sheet_name(sheet_part), range_part


def _parse_cell(ref: str) -> tuple[int | None, int | None]:
    match = _CELL_PATTERN.match(ref.strip())
    if not match or not (match.group(1) or match.group(2)):
        raise ValueError(f"Unable to parse cell reference '{ref}'")
    letters, digits = match.groups()
    column = letter_to_column(letters) if letters else None
    row = int(digits) - 1 if digits else None
    if row is not None and row < 0:
        raise ValueError(f"Row numbers start at 1, got '{ref}'")
    return column, row


def _ordered(start: int | None, end: int | None) -> tuple[int | None, int | None]:
    if start is not None and end is not None and end < start:
        return end, start
    return start, end


def parse_a1_range(a1: str) -> A1Range:
    """Parses 'Sheet1!A1:C10', 'A:C', '2:5' or a bare sheet name."""
    text = (a1 or "").strip()
    if not text:
        raise ValueError("Range must not be empty")

    sheet_name, range_part = _split_sheet(text)
    range_part = range_part.strip()
    if sheet_name is None and not _RANGE_PATTERN.match(range_part):
        # Bare sheet name covers the whole sheet.
        return A1Range(sheet_name=_unquote_sheet_name(text))
    if not range_part:
        return A1Range(sheet_name=sheet_name)

    start_ref, _, end_ref = range_part.partition(":")
    start_column, start_row = _parse_cell(start_ref)
    if not end_ref:
        return A1Range(
            sheet_name=sheet_name,
            start_column=start_column,
            start_row=start_row,
            end_column=start_column,
            end_row=start_row,
        )
    end_column, end_row = _parse_cell(end_ref)
    # Sheets reads "Z10:A1" as "A1:Z10".
    start_column, end_column = _ordered(start_column, end_column)
    start_row, end_row = _ordered(start_row, end_row)
    return A1Range(
        sheet_name=sheet_name,
        start_column=start_column,
        start_row=start_row,
        end_column=end_column,
        end_row=end_row,
    )


def count_value_cells(values: list[list[Any]] | None) -> int:
    if not values:
        return 0
    return sum(len(row) if isinstance(row, list) else 1 for row in values)
