"""
Table format implementation: records as header + rows in named Excel tables.

This module contains all table-specific functionality including:
- Table region descriptors
- The writer that lays out, fills and registers a table of records
- The reader that rebuilds records from a table by header name
- Discovery of tables in a workbook
- Column validations and column width fitting
"""

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from openpyxl.cell import MergedCell
from openpyxl.utils import get_column_letter, range_boundaries
from openpyxl.workbook import Workbook
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.worksheet.table import Table, TableStyleInfo
from openpyxl.worksheet.worksheet import Worksheet
from pydantic import BaseModel, ValidationError

from . import config
from .config import ExportSettings
from .layout import RegionAddress, SheetLayoutEngine
from .naming import TableNamer
from .xlsx_common import (
    DuplicateNameError,
    FieldDescriptor,
    FieldKind,
    FieldMappingError,
    RecordType,
    RecordValidationError,
    SerializationError,
    TypeConversionError,
)

logger = logging.getLogger(__name__)

# Excel's limit for data validation formula length
EXCEL_DV_FORMULA_LIMIT = 255


@dataclass(frozen=True)
class TableRegion:
    """A named header+body block on a sheet."""

    name: str
    sheet_name: str
    address: RegionAddress | None

    @property
    def ref(self) -> str | None:
        return self.address.ref if self.address else None

    @property
    def header_row(self) -> int | None:
        return self.address.start_row if self.address else None

    @property
    def body_rows(self) -> tuple[int, int] | None:
        """First and last data row, or None for a header-only table."""
        if self.address is None or self.address.row_count < 2:  # noqa: PLR2004
            return None
        return self.address.start_row + 1, self.address.end_row

    @property
    def row_count(self) -> int:
        """Number of data rows (the header row is not counted)."""
        if self.address is None:
            return 0
        return self.address.row_count - 1

    def column_of(self, field_descriptor: FieldDescriptor) -> int:
        """Sheet column index of a field written by RecordTableWriter."""
        return self.address.start_column + field_descriptor.ordinal


def is_empty_cell_value(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


# Table writer
class RecordTableWriter:
    """Writes a collection of records as a named, styled table."""

    def __init__(self, settings: ExportSettings | None = None):
        self.settings = settings or config.SETTINGS

    def write(
        self,
        worksheet: Worksheet,
        layout: SheetLayoutEngine,
        namer: TableNamer,
        records: Sequence[BaseModel],
        record_type: RecordType,
        label: str | None = None,
    ) -> TableRegion:
        """Write ``records`` below existing content of ``worksheet``.

        The table gets one header row with the field names followed by one
        row per record, both in field order. Zero records give a table with
        only the header row. All values are converted before anything is
        written, so a ``SerializationError`` leaves sheet, layout and name
        counter unchanged.
        """
        fields = record_type.fields
        rows = self._convert_records(records, fields)
        table_name = namer.next_name(record_type, label)
        self._check_name_unused(worksheet.parent, table_name)

        if not fields:
            logger.warning(
                'Model %s has no fields; table "%s" is empty and not written.',
                record_type.name,
                table_name,
            )
            return TableRegion(table_name, worksheet.title, None)

        address = layout.reserve_block(len(records) + 1, len(fields))
        self._write_header(worksheet, address, fields)
        self._write_data_rows(worksheet, address, rows, fields)

        table = self._create_table(table_name, address)
        worksheet.add_table(table)

        if self.settings.enum_dropdowns and records:
            self._add_enum_validations(worksheet, address, fields)

        logger.debug(
            'Wrote table "%s" (%s) with %i %s on sheet "%s".',
            table_name,
            address.ref,
            len(records),
            record_type.plural_name,
            worksheet.title,
        )
        return TableRegion(table_name, worksheet.title, address)

    @staticmethod
    def _check_name_unused(workbook: Workbook, table_name: str) -> None:
        # Excel compares table names case-insensitively across the workbook
        wanted = table_name.lower()
        for ws in workbook.worksheets:
            if any(name.lower() == wanted for name in ws.tables):
                msg = f'Table "{table_name}" already exists on sheet "{ws.title}".'
                raise DuplicateNameError(msg)

    def _write_header(
        self,
        worksheet: Worksheet,
        address: RegionAddress,
        fields: Sequence[FieldDescriptor],
    ) -> None:
        for field_descriptor in fields:
            worksheet.cell(
                row=address.start_row,
                column=address.start_column + field_descriptor.ordinal,
                value=field_descriptor.name,
            )

    @staticmethod
    def _convert_records(
        records: Sequence[BaseModel], fields: Sequence[FieldDescriptor]
    ) -> list[list[Any]]:
        rows = []
        for record in records:
            row = []
            for field_descriptor in fields:
                value = getattr(record, field_descriptor.name, None)
                try:
                    row.append(field_descriptor.to_cell(value))
                except Exception as e:
                    raise SerializationError(field_descriptor.name, value, e) from e
            rows.append(row)
        return rows

    def _write_data_rows(
        self,
        worksheet: Worksheet,
        address: RegionAddress,
        rows: list[list[Any]],
        fields: Sequence[FieldDescriptor],
    ) -> None:
        for row_idx, row in enumerate(rows, start=address.start_row + 1):
            for field_descriptor, cell_value in zip(fields, row, strict=True):
                cell = worksheet.cell(
                    row=row_idx,
                    column=address.start_column + field_descriptor.ordinal,
                    value=cell_value,
                )
                self._format_data_cell(cell, field_descriptor)

    def _format_data_cell(self, cell, field_descriptor: FieldDescriptor) -> None:
        value = cell.value
        if isinstance(value, str) and value.startswith("="):
            # keep text that looks like a formula as text
            cell.data_type = "s"
        elif isinstance(value, datetime):
            cell.number_format = self.settings.datetime_format
        elif isinstance(value, date):
            cell.number_format = self.settings.date_format
        if field_descriptor.converter and field_descriptor.converter.number_format:
            cell.number_format = field_descriptor.converter.number_format

    def _create_table(self, table_name: str, address: RegionAddress) -> Table:
        table = Table(displayName=table_name, ref=address.ref)
        table.tableStyleInfo = TableStyleInfo(
            name=self.settings.table_style,
            showFirstColumn=False,
            showLastColumn=False,
            showRowStripes=True,
            showColumnStripes=False,
        )
        return table

    def _add_enum_validations(
        self,
        worksheet: Worksheet,
        address: RegionAddress,
        fields: Sequence[FieldDescriptor],
    ) -> None:
        for field_descriptor in fields:
            if field_descriptor.kind is not FieldKind.ENUM:
                continue
            values = [str(member.value) for member in field_descriptor.declared_type]
            validation = ColumnValidation.list_of(field_descriptor.name, values)
            if len(validation.formula1) > EXCEL_DV_FORMULA_LIMIT:
                logger.debug(
                    "Skipping dropdown for %s: %i values exceed the formula limit.",
                    field_descriptor.name,
                    len(values),
                )
                continue
            column = address.start_column + field_descriptor.ordinal
            validation.apply(
                worksheet, column, address.start_row + 1, address.end_row
            )


# Column validations
@dataclass
class ColumnValidation:
    """A data validation rule for the body cells of one table column."""

    field_name: str
    type: str
    operator: str | None = None
    formula1: str | None = None
    formula2: str | None = None
    allow_blank: bool = True
    error: str | None = None

    @classmethod
    def list_of(cls, field_name: str, values: Sequence[Any]) -> "ColumnValidation":
        items = [str(value) for value in values]
        error_msg = f"Invalid value. Must be one of: {', '.join(items)}"
        if len(error_msg) > EXCEL_DV_FORMULA_LIMIT:
            error_msg = "Invalid value. Please select from the dropdown list."
        return cls(
            field_name=field_name,
            type="list",
            formula1=f'"{",".join(items)}"',
            error=error_msg,
        )

    @classmethod
    def bounded(
        cls,
        field_name: str,
        validation_type: str,
        minimum: Any = None,
        maximum: Any = None,
    ) -> "ColumnValidation":
        """Whole number, decimal or date validation with optional bounds.

        Without bounds any value of the given type is accepted.
        """
        lower = _formula_value(minimum)
        upper = _formula_value(maximum)
        if lower is not None and upper is not None:
            operator, formula1, formula2 = "between", lower, upper
            error = f"Value must be between {minimum} and {maximum}."
        elif lower is not None:
            operator, formula1, formula2 = "greaterThanOrEqual", lower, None
            error = f"Value must be at least {minimum}."
        elif upper is not None:
            operator, formula1, formula2 = "lessThanOrEqual", upper, None
            error = f"Value must be at most {maximum}."
        elif validation_type == "date":
            operator, formula1, formula2 = "greaterThan", "0", None
            error = "Value must be a valid date."
        else:
            operator, formula1, formula2 = "between", "-1E+307", "1E+307"
            error = f"Value must be a valid {validation_type} number."
        return cls(
            field_name=field_name,
            type=validation_type,
            operator=operator,
            formula1=formula1,
            formula2=formula2,
            error=error,
        )

    def build(self) -> DataValidation:
        dv = DataValidation(
            type=self.type,
            operator=self.operator,
            formula1=self.formula1,
            formula2=self.formula2,
            allow_blank=self.allow_blank,
        )
        dv.error = self.error
        dv.errorTitle = "Invalid Input"
        dv.showErrorMessage = True
        return dv

    def apply(
        self, worksheet: Worksheet, column: int, first_row: int, last_row: int
    ) -> DataValidation:
        """Attach the rule to rows ``first_row``..``last_row`` of ``column``."""
        col_letter = get_column_letter(column)
        dv = self.build()
        worksheet.add_data_validation(dv)
        dv.add(f"{col_letter}{first_row}:{col_letter}{last_row}")
        return dv


def _formula_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return f"DATE({value.year},{value.month},{value.day})+TIME({value.hour},{value.minute},{value.second})"
    if isinstance(value, date):
        return f"DATE({value.year},{value.month},{value.day})"
    return str(value)


# Column width fitting
def auto_fit_columns(
    worksheet: Worksheet, min_width: int = 10, max_width: int = 50
) -> None:
    """Set each used column's width from its longest cell text."""
    widths: dict[int, int] = {}
    for row in worksheet.iter_rows():
        for cell in row:
            if isinstance(cell, MergedCell) or cell.value is None:
                continue
            widths[cell.column] = max(widths.get(cell.column, 0), len(str(cell.value)))

    for col_idx, max_length in widths.items():
        adjusted_width = min(max(max_length + 2, min_width), max_width)
        worksheet.column_dimensions[get_column_letter(col_idx)].width = adjusted_width


# Table discovery and reading
def enumerate_tables(
    workbook: Workbook, sheet_name: str | None = None
) -> list[TableRegion]:
    """List all tables of a workbook (or one sheet) in document order.

    Sheets are visited in workbook order; tables on a sheet are ordered by
    their top-left cell, row first.
    """
    regions = []
    for worksheet in workbook.worksheets:
        if sheet_name is not None and worksheet.title != sheet_name:
            continue
        sheet_regions = []
        for table in worksheet.tables.values():
            min_col, min_row, max_col, max_row = range_boundaries(table.ref)
            # A totals row is not part of the data
            max_row -= table.totalsRowCount or 0
            address = RegionAddress(min_row, min_col, max_row, max_col)
            sheet_regions.append(
                TableRegion(table.displayName, worksheet.title, address)
            )
        sheet_regions.sort(
            key=lambda region: (region.address.start_row, region.address.start_column)
        )
        regions.extend(sheet_regions)
    return regions


def read_table_rows(
    worksheet: Worksheet, address: RegionAddress
) -> tuple[list[str], list[list[Any]]]:
    """Read the header texts and the data rows of a table block."""
    rows = worksheet.iter_rows(
        min_row=address.start_row,
        max_row=address.end_row,
        min_col=address.start_column,
        max_col=address.end_column,
        values_only=True,
    )
    header_values = next(rows, ())
    header = ["" if value is None else str(value) for value in header_values]
    return header, [list(row) for row in rows]


class RecordTableReader:
    """Rebuilds records of one type from a table, matching columns by name.

    Iterating reads the table again each time; the workbook is not changed.
    """

    def __init__(self, workbook: Workbook, region: TableRegion, record_type: RecordType):
        self.workbook = workbook
        self.region = region
        self.record_type = record_type

    def __iter__(self) -> Iterator[BaseModel]:
        if self.region.address is None:
            return
        worksheet = self.workbook[self.region.sheet_name]
        header, rows = read_table_rows(worksheet, self.region.address)
        columns = self._map_columns(header)

        for row_idx, row in enumerate(rows, start=self.region.address.start_row + 1):
            if all(is_empty_cell_value(value) for value in row):
                continue
            yield self._build_record(columns, row, row_idx)

    def _map_columns(self, header: list[str]) -> list[FieldDescriptor]:
        columns = []
        for column_name in header:
            field_descriptor = self.record_type.get_field(column_name)
            if field_descriptor is None:
                raise FieldMappingError(
                    column_name, self.record_type.name, self.region.name
                )
            columns.append(field_descriptor)
        return columns

    def _build_record(
        self, columns: list[FieldDescriptor], row: list[Any], row_idx: int
    ) -> BaseModel:
        model_data: dict[str, Any] = {}
        for field_descriptor, raw_value in zip(columns, row, strict=True):
            if is_empty_cell_value(raw_value):
                if field_descriptor.is_optional:
                    model_data[field_descriptor.name] = None
                elif field_descriptor.kind is FieldKind.STRING:
                    model_data[field_descriptor.name] = ""
                elif not field_descriptor.has_default:
                    msg = "Required field is empty"
                    raise TypeConversionError(
                        field_descriptor.name,
                        raw_value,
                        ValueError(msg),
                        row=row_idx,
                        table_name=self.region.name,
                    )
                # else: skip - let pydantic use the model's default
                continue

            try:
                model_data[field_descriptor.name] = field_descriptor.from_cell(
                    raw_value
                )
            except Exception as e:
                raise TypeConversionError(
                    field_descriptor.name,
                    raw_value,
                    e,
                    row=row_idx,
                    table_name=self.region.name,
                ) from e

        try:
            return self.record_type.model.model_validate(model_data)
        except ValidationError as e:
            raise RecordValidationError(
                self.record_type.name, e, row=row_idx, table_name=self.region.name
            ) from e
