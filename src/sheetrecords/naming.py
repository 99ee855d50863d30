"""Deterministic, collision-free names for exported tables."""

import logging
import re

from .xlsx_common import ArgumentError, RecordType

logger = logging.getLogger(__name__)

# Separator between the components of a generated table name.
NAME_SEPARATOR = "_"

_INVALID_NAME_CHARS = re.compile(r"[^\w]", re.ASCII)


def normalize_name(name: str) -> str:
    """Turn a sheet name or label into a table-name component.

    Spaces and every other character Excel does not accept in table names
    are replaced by underscores.
    """
    return _INVALID_NAME_CHARS.sub(NAME_SEPARATOR, name.strip())


def compose_table_name(
    sheet_name: str, label: str | None, plural_type_name: str, counter: int
) -> str:
    """Join sheet, optional label, plural type name and counter.

    An empty label is left out so that no doubled separator appears, e.g.
    ``("Sheet One", None, "Orders", 1)`` -> ``"Sheet_One_Orders_1"``.
    """
    parts = [
        normalize_name(sheet_name),
        normalize_name(label or ""),
        plural_type_name,
        str(counter),
    ]
    name = NAME_SEPARATOR.join(part for part in parts if part)
    # Excel names must start with a letter or an underscore
    if not (name[0].isalpha() or name[0] == NAME_SEPARATOR):
        name = NAME_SEPARATOR + name
    return name


class TableNamer:
    """Assigns table names and tracks a counter per record type.

    One TableNamer belongs to one sheet, so counters are never shared
    between sheets. For a fixed record type the counter only increases,
    therefore two calls never return the same name.
    """

    def __init__(self, sheet_name: str):
        if not sheet_name:
            msg = "A sheet name is required to name tables."
            raise ArgumentError(msg)
        self.sheet_name = sheet_name
        self._counters: dict[type, int] = {}

    def count(self, record_type: RecordType) -> int:
        """Number of names handed out for ``record_type`` so far."""
        return self._counters.get(record_type.model, 0)

    def next_name(self, record_type: RecordType, label: str | None = None) -> str:
        counter = self.count(record_type) + 1
        self._counters[record_type.model] = counter
        name = compose_table_name(
            self.sheet_name, label, record_type.plural_name, counter
        )
        logger.debug('Named table "%s" on sheet "%s".', name, self.sheet_name)
        return name
