"""Placement of table blocks on a sheet without overlap."""

import logging
from dataclasses import dataclass

from openpyxl.utils import get_column_letter

from .xlsx_common import ArgumentError

logger = logging.getLogger(__name__)

# Number of empty rows between two tables on the same sheet.
SPACER_ROWS = 1


@dataclass(frozen=True)
class RegionAddress:
    """Rectangular cell block, 1-based and inclusive on both ends."""

    start_row: int
    start_column: int
    end_row: int
    end_column: int

    @property
    def ref(self) -> str:
        """Excel A1-style reference, e.g. ``"A1:C11"``."""
        return (
            f"{get_column_letter(self.start_column)}{self.start_row}:"
            f"{get_column_letter(self.end_column)}{self.end_row}"
        )

    @property
    def row_count(self) -> int:
        return self.end_row - self.start_row + 1

    @property
    def column_count(self) -> int:
        return self.end_column - self.start_column + 1

    def overlaps(self, other: "RegionAddress") -> bool:
        return not (
            self.end_row < other.start_row
            or other.end_row < self.start_row
            or self.end_column < other.start_column
            or other.end_column < self.start_column
        )


class SheetLayoutEngine:
    """Reserves header+body blocks on one sheet from top to bottom.

    The first block starts at A1. Every following block starts
    ``SPACER_ROWS + 1`` rows below the last occupied row, so blocks never
    overlap and their start rows increase in call order.
    """

    def __init__(self, sheet_name: str, start_column: int = 1):
        self.sheet_name = sheet_name
        self.start_column = start_column
        self.last_row = 0  # high-water mark, 0 for an empty sheet
        self.reserved: list[RegionAddress] = []

    @property
    def is_empty(self) -> bool:
        return self.last_row == 0

    def next_start_row(self) -> int:
        if self.is_empty:
            return 1
        return self.last_row + SPACER_ROWS + 1

    def reserve_block(self, row_count: int, column_count: int) -> RegionAddress:
        """Reserve ``row_count`` rows (header + data) by ``column_count`` columns."""
        if row_count < 1:
            msg = f"A block needs at least one row, got {row_count}."
            raise ArgumentError(msg)
        if column_count < 1:
            msg = f"A block needs at least one column, got {column_count}."
            raise ArgumentError(msg)

        start_row = self.next_start_row()
        address = RegionAddress(
            start_row=start_row,
            start_column=self.start_column,
            end_row=start_row + row_count - 1,
            end_column=self.start_column + column_count - 1,
        )
        self.last_row = address.end_row
        self.reserved.append(address)
        logger.debug(
            'Reserved block %s on sheet "%s".', address.ref, self.sheet_name
        )
        return address
