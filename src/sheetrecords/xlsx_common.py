"""
Common XLSX functionality shared by the table writer, reader and sessions.

This module contains shared infrastructure including:
- Exception classes
- Field kinds with their cell format/parse pairs
- Field reflection of pydantic models with a per-type cache
- Pluralization of type names
- Pre-configured cell converters
"""

import json
import logging
import re
import types
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Union, get_args, get_origin
from uuid import UUID

from pydantic import BaseModel
from pydantic_core import PydanticUndefined

logger = logging.getLogger(__name__)


# Exception classes
class SheetRecordsError(Exception):
    """Base class of all errors raised by sheetrecords."""


class ArgumentError(SheetRecordsError, ValueError):
    """Raised when a required name or argument is missing or invalid."""


class DuplicateNameError(SheetRecordsError, ValueError):
    """Raised when a sheet or table name is already used in a document."""


class SessionClosedError(SheetRecordsError, RuntimeError):
    """Raised when a closed export or import session is used."""


class UnsupportedFieldTypeError(SheetRecordsError, TypeError):
    """Raised when a model field has a type without a cell conversion."""

    def __init__(self, model: type, field_name: str, annotation: Any):
        self.model = model
        self.field_name = field_name
        self.annotation = annotation
        super().__init__(
            f"Field '{field_name}' of {model.__name__} has unsupported type "
            f"{annotation!r}. Annotate it with a CellConverter to export it."
        )


class SerializationError(SheetRecordsError, ValueError):
    """Raised when a field value cannot be written to a cell."""

    def __init__(self, field_name: str, value: Any, original_error: Exception):
        self.field_name = field_name
        self.value = value
        self.original_error = original_error
        super().__init__(
            f"Error serializing field '{field_name}' with value '{value}': {original_error}"
        )


class FieldMappingError(SheetRecordsError, ValueError):
    """Raised when a column header does not match any field of the record type."""

    def __init__(self, column: str, type_name: str, table_name: str | None = None):
        self.column = column
        self.type_name = type_name
        self.table_name = table_name
        location = f" in table '{table_name}'" if table_name else ""
        super().__init__(
            f"Column '{column}'{location} has no matching field in {type_name}"
        )


class TypeConversionError(SheetRecordsError, ValueError):
    """Raised when a cell value cannot be converted to the field's type."""

    def __init__(
        self,
        field_name: str,
        raw_value: Any,
        original_error: Exception,
        row: int | None = None,
        table_name: str | None = None,
    ):
        self.field_name = field_name
        self.raw_value = raw_value
        self.original_error = original_error
        self.row = row
        self.table_name = table_name
        location = ""
        if table_name:
            location += f" in table '{table_name}'"
        if row is not None:
            location += f" at row {row}"
        super().__init__(
            f"Error converting field '{field_name}' with value '{raw_value}'"
            f"{location}: {original_error}"
        )


class RecordValidationError(SheetRecordsError, ValueError):
    """Raised when converted cell values are rejected by the record model."""

    def __init__(
        self,
        type_name: str,
        original_error: Exception,
        row: int | None = None,
        table_name: str | None = None,
    ):
        self.type_name = type_name
        self.original_error = original_error
        self.row = row
        self.table_name = table_name
        location = f" from table '{table_name}'" if table_name else ""
        if row is not None:
            location += f" at row {row}"
        super().__init__(
            f"Cannot build {type_name}{location}: {original_error}"
        )


# Pluralization of type names
_UNCOUNTABLE = {
    "data",
    "equipment",
    "feedback",
    "information",
    "metadata",
    "money",
    "news",
    "series",
    "sheep",
    "software",
    "species",
}

_IRREGULAR_PLURALS = {
    "child": "children",
    "foot": "feet",
    "goose": "geese",
    "man": "men",
    "mouse": "mice",
    "person": "people",
    "tooth": "teeth",
    "woman": "women",
}

# First matching rule wins.
_PLURAL_RULES = [
    (re.compile(r"(matr|vert|ind)(ix|ex)$", re.IGNORECASE), r"\1ices"),
    (re.compile(r"(analy|ba|diagno|the|synop)sis$", re.IGNORECASE), r"\1ses"),
    (re.compile(r"([^aeiouy]|qu)y$", re.IGNORECASE), r"\1ies"),
    (re.compile(r"(kni|wi|li)fe$", re.IGNORECASE), r"\1ves"),
    (re.compile(r"(shel|hal|wol|lea|loa|thie|cal|sel)f$", re.IGNORECASE), r"\1ves"),
    (re.compile(r"(qui)z$", re.IGNORECASE), r"\1zzes"),
    (re.compile(r"(x|ch|sh|zz|s)$", re.IGNORECASE), r"\1es"),
    (re.compile(r"(tomat|potat|her|ech)o$", re.IGNORECASE), r"\1oes"),
]

_LAST_WORD = re.compile(r"^(.*?)([A-Z]?[^A-Z_]*)$")


def _pluralize_word(word: str) -> str:
    lower = word.lower()
    if lower in _UNCOUNTABLE:
        return word
    if lower in _IRREGULAR_PLURALS:
        plural = _IRREGULAR_PLURALS[lower]
        return plural.capitalize() if word[0].isupper() else plural
    for pattern, replacement in _PLURAL_RULES:
        if pattern.search(word):
            return pattern.sub(replacement, word)
    return word + "s"


def pluralize(name: str) -> str:
    """Return the plural form of a (CamelCase or snake_case) type name.

    Only the last word is pluralized: "LineItem" -> "LineItems",
    "SalesPerson" -> "SalesPeople", "Category" -> "Categories".
    """
    if not name:
        return name
    head, last = _LAST_WORD.match(name).groups()
    if not last:
        return name + "s"
    return head + _pluralize_word(last)


# Field kinds and cell conversion
class FieldKind(Enum):
    """Closed set of field kinds that can be mapped to cells."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    UUID = "uuid"
    ENUM = "enum"
    CUSTOM = "custom"


_TRUE_TEXTS = ("true", "yes", "y", "1", "on")
_FALSE_TEXTS = ("false", "no", "n", "0", "off")


def _reject_bool(raw: Any, target: str) -> None:
    if isinstance(raw, bool):
        msg = f"Boolean {raw} is not a valid {target}"
        raise ValueError(msg)


def _parse_string(raw: Any, _declared: type) -> str:
    return str(raw)


def _parse_integer(raw: Any, _declared: type) -> int:
    _reject_bool(raw, "integer")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        if raw.is_integer():
            return int(raw)
        msg = f"{raw!r} is not an integral number"
        raise ValueError(msg)
    return int(str(raw).strip())


def _parse_float(raw: Any, _declared: type) -> float:
    _reject_bool(raw, "number")
    if isinstance(raw, int | float):
        return float(raw)
    return float(str(raw).strip())


def _parse_decimal(raw: Any, _declared: type) -> Decimal:
    _reject_bool(raw, "decimal")
    if isinstance(raw, Decimal):
        return raw
    # str() of a float is its shortest round-tripping representation
    text = str(raw).strip()
    try:
        return Decimal(text)
    except InvalidOperation as e:
        msg = f"'{text}' is not a decimal number"
        raise ValueError(msg) from e


def _parse_boolean(raw: Any, _declared: type) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE_TEXTS:
        return True
    if text in _FALSE_TEXTS:
        return False
    msg = f"Cannot convert '{raw}' to boolean. Expected true/false, yes/no or 1/0."
    raise ValueError(msg)


def _parse_date(raw: Any, _declared: type) -> date:
    # datetime is a subclass of date and must be checked first
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return datetime.fromisoformat(str(raw).strip()).date()


def _parse_datetime(raw: Any, _declared: type) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    return datetime.fromisoformat(str(raw).strip())


def _parse_uuid(raw: Any, _declared: type) -> UUID:
    if isinstance(raw, UUID):
        return raw
    return UUID(str(raw).strip())


def _parse_enum(raw: Any, declared: type) -> Enum:
    for member in declared:
        if member.value == raw:
            return member
    # Numeric enum values may come back as text and vice versa.
    for member in declared:
        if str(member.value) == str(raw).strip():
            return member
    allowed = ", ".join(str(member.value) for member in declared)
    msg = f"'{raw}' is not one of: {allowed}"
    raise ValueError(msg)


def _format_native(value: Any) -> Any:
    return value


def _format_text(value: Any) -> str:
    return str(value)


def _format_float(value: float) -> Any:
    # Excel keeps 15 significant digits; longer floats are kept as text.
    if float(f"{value:.15g}") != value:
        return repr(value)
    return value


def _format_datetime(value: datetime) -> Any:
    # Excel has no time zones and stores time to the millisecond:
    # such datetimes are kept as ISO text.
    if value.tzinfo is not None or value.microsecond % 1000:
        return value.isoformat()
    return value


def _format_enum(value: Enum) -> Any:
    return value.value


_KIND_CONVERSIONS: dict[FieldKind, tuple[Callable, Callable]] = {
    FieldKind.STRING: (_format_native, _parse_string),
    FieldKind.INTEGER: (_format_native, _parse_integer),
    FieldKind.FLOAT: (_format_float, _parse_float),
    FieldKind.DECIMAL: (_format_text, _parse_decimal),
    FieldKind.BOOLEAN: (_format_native, _parse_boolean),
    FieldKind.DATE: (_format_native, _parse_date),
    FieldKind.DATETIME: (_format_datetime, _parse_datetime),
    FieldKind.UUID: (_format_text, _parse_uuid),
    FieldKind.ENUM: (_format_enum, _parse_enum),
}

# Order matters for subclass checks: bool before int, datetime before date.
_KIND_BY_TYPE: list[tuple[type, FieldKind]] = [
    (bool, FieldKind.BOOLEAN),
    (int, FieldKind.INTEGER),
    (float, FieldKind.FLOAT),
    (Decimal, FieldKind.DECIMAL),
    (datetime, FieldKind.DATETIME),
    (date, FieldKind.DATE),
    (UUID, FieldKind.UUID),
    (str, FieldKind.STRING),
]


@dataclass(frozen=True)
class CellConverter:
    """Custom format/parse pair attached to a field via ``Annotated``.

    Example:
        ``tags: Annotated[list[str], CellConverters.comma_list()]``
    """

    to_cell: Callable[[Any], Any]
    from_cell: Callable[[Any], Any]
    number_format: str | None = None


@dataclass(frozen=True)
class FieldDescriptor:
    """Name, kind and position of one record field."""

    name: str
    kind: FieldKind
    declared_type: Any
    ordinal: int
    is_optional: bool = False
    has_default: bool = False
    converter: CellConverter | None = None

    @property
    def is_required(self) -> bool:
        return not self.is_optional and not self.has_default

    def to_cell(self, value: Any) -> Any:
        """Convert a field value to the value stored in a cell."""
        if value is None:
            return None
        if self.converter is not None:
            return self.converter.to_cell(value)
        formatter, _parser = _KIND_CONVERSIONS[self.kind]
        return formatter(value)

    def from_cell(self, raw: Any) -> Any:
        """Convert a non-empty cell value to the field's declared type."""
        if self.converter is not None:
            return self.converter.from_cell(raw)
        _formatter, parser = _KIND_CONVERSIONS[self.kind]
        return parser(raw, self.declared_type)


@dataclass(frozen=True)
class RecordType:
    """Cached description of a record model: its fields in export order."""

    model: type[BaseModel]
    name: str
    plural_name: str
    fields: tuple[FieldDescriptor, ...]

    @property
    def field_names(self) -> list[str]:
        return [field.name for field in self.fields]

    def get_field(self, name: str) -> FieldDescriptor | None:
        for field_descriptor in self.fields:
            if field_descriptor.name == name:
                return field_descriptor
        return None


def is_optional_type(field_type: Any) -> bool:
    """Check if a type is Optional (Union with None)."""
    if get_origin(field_type) in (Union, types.UnionType):
        args = get_args(field_type)
        return type(None) in args
    return False


def _strip_optional(field_type: Any) -> Any:
    if get_origin(field_type) in (Union, types.UnionType):
        non_none_args = [arg for arg in get_args(field_type) if arg is not type(None)]
        if len(non_none_args) == 1:
            return non_none_args[0]
    return field_type


class FieldReflector:
    """Describes pydantic models as RecordTypes and caches them by type.

    Fields are listed in pydantic's declaration order (inherited fields
    first). This order is the column order of exported tables and the
    ordinal used to address a column for data validation.
    """

    def __init__(self):
        self._cache: dict[type, RecordType] = {}

    def describe(self, model: type[BaseModel]) -> RecordType:
        """Return the (cached) RecordType of ``model``."""
        record_type = self._cache.get(model)
        if record_type is None:
            record_type = self.analyze_model(model)
            self._cache[model] = record_type
            logger.debug(
                "Described %s with fields: %s",
                record_type.name,
                ", ".join(record_type.field_names),
            )
        return record_type

    def __contains__(self, model: type) -> bool:
        return model in self._cache

    @staticmethod
    def analyze_model(model: type[BaseModel]) -> RecordType:
        """Analyze all fields in a pydantic model."""
        if not (isinstance(model, type) and issubclass(model, BaseModel)):
            msg = f"Expected Pydantic BaseModel subclass, got {model!r}"
            raise TypeError(msg)

        fields = tuple(
            FieldReflector.analyze_field(field_name, field_info, ordinal, model)
            for ordinal, (field_name, field_info) in enumerate(
                model.model_fields.items()
            )
        )
        if not fields:
            logger.warning("Model %s has no fields.", model.__name__)

        return RecordType(
            model=model,
            name=model.__name__,
            plural_name=pluralize(model.__name__),
            fields=fields,
        )

    @staticmethod
    def analyze_field(
        field_name: str, field_info: Any, ordinal: int, model: type[BaseModel]
    ) -> FieldDescriptor:
        """Analyze a single field in a pydantic model."""
        annotation = field_info.annotation
        is_optional = is_optional_type(annotation)
        declared_type = _strip_optional(annotation)
        has_default = (
            field_info.default is not PydanticUndefined
            or field_info.default_factory is not None
        )
        converter = FieldReflector.extract_converter(field_info)

        if converter is not None:
            kind = FieldKind.CUSTOM
        else:
            kind = FieldReflector.get_field_kind(declared_type)
            if kind is None:
                raise UnsupportedFieldTypeError(model, field_name, annotation)

        return FieldDescriptor(
            name=field_name,
            kind=kind,
            declared_type=declared_type,
            ordinal=ordinal,
            is_optional=is_optional,
            has_default=has_default,
            converter=converter,
        )

    @staticmethod
    def get_field_kind(declared_type: Any) -> FieldKind | None:
        """Map a (non-optional) annotation to its FieldKind."""
        # Generic aliases such as list[int] pass isinstance(..., type) on 3.10
        if get_origin(declared_type) is not None or not isinstance(
            declared_type, type
        ):
            return None
        # Enum before basic types (str, Enum subclasses are also str)
        if issubclass(declared_type, Enum):
            return FieldKind.ENUM
        for python_type, kind in _KIND_BY_TYPE:
            if issubclass(declared_type, python_type):
                return kind
        return None

    @staticmethod
    def extract_converter(field_info: Any) -> CellConverter | None:
        """Extract a CellConverter from field info metadata."""
        for metadata_item in getattr(field_info, "metadata", None) or []:
            if isinstance(metadata_item, CellConverter):
                return metadata_item

        # Fallback: check if the annotation is still Annotated
        if get_origin(field_info.annotation) is Annotated:
            for metadata_item in get_args(field_info.annotation)[1:]:
                if isinstance(metadata_item, CellConverter):
                    return metadata_item

        return None


default_reflector = FieldReflector()


def describe(model: type[BaseModel]) -> RecordType:
    """Describe ``model`` using the module-level reflector cache."""
    return default_reflector.describe(model)


class CellConverters:
    """Factories for commonly needed CellConverters."""

    @staticmethod
    def separated_list(separator: str = ", ") -> CellConverter:
        """Store a list of strings joined by ``separator`` in one cell."""

        def to_separated(value: list[Any]) -> str:
            return separator.join(str(item) for item in value)

        def from_separated(value: Any) -> list[str]:
            text = str(value)
            if not text.strip():
                return []
            return [item.strip() for item in text.split(separator.strip() or separator)]

        return CellConverter(to_separated, from_separated)

    @classmethod
    def comma_list(cls) -> CellConverter:
        """Get comma-separated converters (', ')."""
        return cls.separated_list(", ")

    @classmethod
    def pipe_list(cls) -> CellConverter:
        """Get pipe-separated converters (' | ')."""
        return cls.separated_list(" | ")

    @staticmethod
    def json_value() -> CellConverter:
        """Store lists or dicts as a JSON string."""

        def to_json(value: Any) -> str:
            return json.dumps(value, default=str, ensure_ascii=False)

        def from_json(value: Any) -> Any:
            try:
                return json.loads(str(value))
            except json.JSONDecodeError as e:
                msg = f"Cannot parse '{value}' as JSON: {e}"
                raise ValueError(msg) from e

        return CellConverter(to_json, from_json)


# Pre-configured type aliases
CommaList = Annotated[list[str], CellConverters.comma_list()]
PipeList = Annotated[list[str], CellConverters.pipe_list()]
JSONList = Annotated[list, CellConverters.json_value()]
JSONDict = Annotated[dict, CellConverters.json_value()]
