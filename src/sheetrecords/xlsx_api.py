"""
Public API for exporting records to and importing records from xlsx files.

This module provides the sessions callers work with:
- ExportSession with its sheets (SheetSession) and tables (TableHandle)
- ImportSession to find tables by record type, sheet or table name
"""

import logging
import re
from collections.abc import Iterable
from datetime import date
from io import BytesIO
from pathlib import Path
from typing import IO, Any

from openpyxl import Workbook, load_workbook
from pydantic import BaseModel

from . import config
from .config import ExportSettings
from .layout import SheetLayoutEngine
from .naming import NAME_SEPARATOR, TableNamer, normalize_name
from .xlsx_common import (
    ArgumentError,
    DuplicateNameError,
    FieldDescriptor,
    FieldReflector,
    RecordType,
    SessionClosedError,
    default_reflector,
)
from .xlsx_table import (
    ColumnValidation,
    RecordTableReader,
    RecordTableWriter,
    TableRegion,
    auto_fit_columns,
    enumerate_tables,
)

logger = logging.getLogger(__name__)

# Excel's limits for sheet names
MAX_SHEET_NAME_LENGTH = 31
INVALID_SHEET_NAME_CHARS = frozenset("[]:*?/\\")


def check_sheet_name(name: str | None) -> str:
    """Return ``name`` if Excel accepts it as a sheet title."""
    if not name:
        msg = "A sheet name is required."
        raise ArgumentError(msg)
    if len(name) > MAX_SHEET_NAME_LENGTH:
        msg = (
            f'Sheet name "{name}" is longer than {MAX_SHEET_NAME_LENGTH} characters.'
        )
        raise ArgumentError(msg)
    invalid = sorted(INVALID_SHEET_NAME_CHARS.intersection(name))
    if invalid:
        msg = f'Sheet name "{name}" contains invalid characters: {" ".join(invalid)}'
        raise ArgumentError(msg)
    return name


class TableHandle:
    """A table written by a SheetSession.

    Validations are addressed by field name and applied to the body rows of
    the table when the session is exported. The ``add_*`` methods return the
    handle so calls can be chained.
    """

    def __init__(self, region: TableRegion, record_type: RecordType):
        self.region = region
        self.record_type = record_type
        self._pending: list[ColumnValidation] = []

    @property
    def name(self) -> str:
        return self.region.name

    @property
    def sheet_name(self) -> str:
        return self.region.sheet_name

    @property
    def row_count(self) -> int:
        return self.region.row_count

    def __repr__(self):
        return (
            f"TableHandle(name={self.name!r}, sheet_name={self.sheet_name!r}, "
            f"ref={self.region.ref!r})"
        )

    def _get_field(self, field_name: str) -> FieldDescriptor:
        field_descriptor = self.record_type.get_field(field_name)
        if field_descriptor is None:
            msg = (
                f'{self.record_type.name} has no field "{field_name}". '
                f"Known fields: {', '.join(self.record_type.field_names)}"
            )
            raise ArgumentError(msg)
        return field_descriptor

    def add_list_validation(self, field_name: str, values: Iterable[Any]):
        """Restrict the column of ``field_name`` to a list of values."""
        self._get_field(field_name)
        values = list(values)
        if not values:
            msg = f'A list validation for "{field_name}" needs at least one value.'
            raise ArgumentError(msg)
        self._pending.append(ColumnValidation.list_of(field_name, values))
        return self

    def add_integer_validation(
        self,
        field_name: str,
        minimum: int | None = None,
        maximum: int | None = None,
    ):
        self._get_field(field_name)
        self._pending.append(
            ColumnValidation.bounded(field_name, "whole", minimum, maximum)
        )
        return self

    def add_decimal_validation(
        self,
        field_name: str,
        minimum: float | None = None,
        maximum: float | None = None,
    ):
        self._get_field(field_name)
        self._pending.append(
            ColumnValidation.bounded(field_name, "decimal", minimum, maximum)
        )
        return self

    def add_date_validation(
        self,
        field_name: str,
        earliest: date | None = None,
        latest: date | None = None,
    ):
        self._get_field(field_name)
        self._pending.append(
            ColumnValidation.bounded(field_name, "date", earliest, latest)
        )
        return self

    def apply_validations(self, worksheet) -> int:
        """Attach pending validations to ``worksheet``; return how many."""
        pending, self._pending = self._pending, []
        body_rows = self.region.body_rows
        if body_rows is None:
            if pending:
                logger.debug(
                    'Table "%s" has no data rows; %i validation(s) dropped.',
                    self.name,
                    len(pending),
                )
            return 0
        first_row, last_row = body_rows
        for validation in pending:
            column = self.region.column_of(self._get_field(validation.field_name))
            validation.apply(worksheet, column, first_row, last_row)
            logger.debug(
                'Applied %s validation to "%s" in table "%s".',
                validation.type,
                validation.field_name,
                self.name,
            )
        return len(pending)


class SheetSession:
    """One sheet of an ExportSession; tables are stacked top to bottom."""

    def __init__(self, session: "ExportSession", worksheet):
        self.session = session
        self.worksheet = worksheet
        self.layout = SheetLayoutEngine(worksheet.title)
        self.namer = TableNamer(worksheet.title)
        self.tables: list[TableHandle] = []

    @property
    def name(self) -> str:
        return self.worksheet.title

    def add_table_for_export(
        self,
        records: Iterable[BaseModel],
        table_name: str | None = None,
        record_type: type[BaseModel] | None = None,
    ) -> TableHandle:
        """Write ``records`` as a new table below the existing ones.

        ``table_name`` is an optional label that becomes part of the generated
        table name. ``record_type`` is required when ``records`` is empty.
        """
        self.session._ensure_open()
        records = list(records)
        model = self._resolve_model(records, record_type)
        described = self.session.reflector.describe(model)

        region = self.session.writer.write(
            self.worksheet,
            self.layout,
            self.namer,
            records,
            described,
            label=table_name,
        )
        handle = TableHandle(region, described)
        self.tables.append(handle)
        return handle

    @staticmethod
    def _resolve_model(
        records: list[BaseModel], record_type: type[BaseModel] | None
    ) -> type[BaseModel]:
        if record_type is None:
            if not records:
                msg = "Cannot infer the record type of an empty collection; pass record_type."
                raise ArgumentError(msg)
            record_type = type(records[0])
        if not (isinstance(record_type, type) and issubclass(record_type, BaseModel)):
            msg = f"Records must be pydantic models, got {record_type!r}."
            raise ArgumentError(msg)
        for idx, record in enumerate(records):
            if not isinstance(record, record_type):
                msg = (
                    f"Record {idx} is a {type(record).__name__}, "
                    f"expected {record_type.__name__}."
                )
                raise ArgumentError(msg)
        return record_type


class ExportSession:
    """Builds one xlsx document from collections of records.

    Example:
        ```python
        with ExportSession() as session:
            sheet = session.add_sheet_for_export("Sheet One")
            sheet.add_table_for_export(orders).add_list_validation(
                "reference", ["A", "B"]
            )
            session.export("orders.xlsx")
        ```
    """

    def __init__(
        self,
        settings: ExportSettings | None = None,
        reflector: FieldReflector | None = None,
    ):
        self.settings = settings or config.SETTINGS
        self.reflector = reflector or default_reflector
        self.writer = RecordTableWriter(self.settings)
        self.workbook = Workbook()
        # A new workbook comes with one empty sheet
        self.workbook.remove(self.workbook.active)
        self._sheets: dict[str, SheetSession] = {}
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sheets(self) -> list[SheetSession]:
        return list(self._sheets.values())

    @property
    def tables(self) -> list[TableHandle]:
        return [table for sheet in self._sheets.values() for table in sheet.tables]

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "The export session is closed."
            raise SessionClosedError(msg)

    def add_sheet_for_export(self, name: str | None) -> SheetSession:
        """Create a new sheet; sheet names must be unique in the session."""
        self._ensure_open()
        check_sheet_name(name)
        # Excel treats sheet titles case-insensitively
        if name.lower() in (existing.lower() for existing in self._sheets):
            msg = f'Sheet "{name}" already exists.'
            raise DuplicateNameError(msg)
        worksheet = self.workbook.create_sheet(title=name)
        sheet = SheetSession(self, worksheet)
        self._sheets[name] = sheet
        logger.debug('Added sheet "%s".', name)
        return sheet

    def get_sheet(self, name: str) -> SheetSession:
        try:
            return self._sheets[name]
        except KeyError:
            msg = f'Sheet "{name}" does not exist.'
            raise ArgumentError(msg) from None

    def _finalize(self) -> None:
        for sheet in self._sheets.values():
            for table in sheet.tables:
                table.apply_validations(sheet.worksheet)
            if self.settings.auto_fit_columns:
                auto_fit_columns(
                    sheet.worksheet,
                    self.settings.min_column_width,
                    self.settings.max_column_width,
                )

    def export(self, path: Path | str | None = None) -> bytes | None:
        """Serialize the document to ``path`` or, without a path, to bytes."""
        self._ensure_open()
        if not self._sheets:
            msg = "Nothing to export; add a sheet first."
            raise ArgumentError(msg)
        self._finalize()
        if path is None:
            buffer = BytesIO()
            self.workbook.save(buffer)
            return buffer.getvalue()
        path = Path(path)
        self.workbook.save(path)
        logger.debug("Saved %i sheet(s) to %s", len(self._sheets), path)
        return None

    def close(self) -> None:
        """Release the document. Never raises; closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        try:
            self.workbook.close()
        except Exception as e:  # noqa: BLE001
            logger.warning("Error while closing export workbook: %s", e)


class ImportSession:
    """Read-only view of an xlsx document to rebuild records from its tables."""

    def __init__(
        self,
        source: bytes | Path | str | IO[bytes],
        reflector: FieldReflector | None = None,
    ):
        self.reflector = reflector or default_reflector
        if isinstance(source, bytes | bytearray):
            source = BytesIO(source)
        self.workbook = load_workbook(source, data_only=True)
        self._tables = enumerate_tables(self.workbook)
        self._closed = False
        logger.debug("Found %i table(s) in document.", len(self._tables))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tables(self) -> list[TableRegion]:
        """All tables in sheet-then-table order."""
        self._ensure_open()
        return list(self._tables)

    @property
    def sheet_names(self) -> list[str]:
        self._ensure_open()
        return list(self.workbook.sheetnames)

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "The import session is closed."
            raise SessionClosedError(msg)

    def iter_records(
        self, region: TableRegion, record_type: type[BaseModel]
    ) -> RecordTableReader:
        """Lazy reader of one table; iterate it again to re-read."""
        self._ensure_open()
        return RecordTableReader(
            self.workbook, region, self.reflector.describe(record_type)
        )

    def _read(
        self, regions: list[TableRegion], record_type: type[BaseModel]
    ) -> list[BaseModel]:
        records = []
        for region in regions:
            records.extend(self.iter_records(region, record_type))
        return records

    def _candidates(self, described: RecordType) -> list[TableRegion]:
        # The plural type name is the component before the trailing counter;
        # sheet name and label may precede it.
        pattern = re.compile(
            rf"(?:^|{NAME_SEPARATOR}){re.escape(described.plural_name)}"
            rf"{NAME_SEPARATOR}\d+$"
        )
        return [region for region in self._tables if pattern.search(region.name)]

    def get_all(self, record_type: type[BaseModel]) -> list[BaseModel]:
        """Records from every table named for the type's plural name."""
        self._ensure_open()
        described = self.reflector.describe(record_type)
        regions = self._candidates(described)
        logger.debug(
            "Tables for %s: %s",
            described.plural_name,
            ", ".join(region.name for region in regions) or "-",
        )
        return self._read(regions, record_type)

    def get_from_sheet(
        self, record_type: type[BaseModel], sheet_name: str | None
    ) -> list[BaseModel]:
        """Records of ``record_type`` from the tables on one sheet."""
        self._ensure_open()
        if not sheet_name:
            msg = "A sheet name is required."
            raise ArgumentError(msg)
        wanted = normalize_name(sheet_name)
        titles = [
            title for title in self.workbook.sheetnames if normalize_name(title) == wanted
        ]
        if not titles:
            logger.warning('Sheet "%s" not found in document.', sheet_name)
            return []
        described = self.reflector.describe(record_type)
        regions = [
            region
            for region in self._candidates(described)
            if region.sheet_name in titles
        ]
        logger.debug(
            'Tables for %s on sheet "%s": %s',
            described.plural_name,
            sheet_name,
            ", ".join(region.name for region in regions) or "-",
        )
        return self._read(regions, record_type)

    def get_from_table(
        self, record_type: type[BaseModel], table_name: str | None
    ) -> list[BaseModel]:
        """Records of ``record_type`` from tables whose name contains ``table_name``."""
        self._ensure_open()
        if not table_name:
            msg = "A table name is required."
            raise ArgumentError(msg)
        wanted = normalize_name(table_name)
        described = self.reflector.describe(record_type)
        regions = [
            region for region in self._candidates(described) if wanted in region.name
        ]
        logger.debug(
            'Tables for %s matching "%s": %s',
            described.plural_name,
            table_name,
            ", ".join(region.name for region in regions) or "-",
        )
        return self._read(regions, record_type)

    def close(self) -> None:
        """Release the document. Never raises; closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        try:
            self.workbook.close()
        except Exception as e:  # noqa: BLE001
            logger.warning("Error while closing import workbook: %s", e)
