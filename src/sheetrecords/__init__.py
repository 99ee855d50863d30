import logging
import logging.handlers
import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from sheetrecords.xlsx_api import ExportSession, ImportSession
from sheetrecords.xlsx_common import (
    ArgumentError,
    CellConverter,
    CellConverters,
    DuplicateNameError,
    FieldMappingError,
    RecordValidationError,
    SessionClosedError,
    SheetRecordsError,
    TypeConversionError,
    UnsupportedFieldTypeError,
    describe,
)

try:
    __version__ = version("sheetrecords")
except PackageNotFoundError:  # pragma: no cover
    # package is not installed
    __version__ = "0.0.0"

__all__ = [
    "ArgumentError",
    "CellConverter",
    "CellConverters",
    "DuplicateNameError",
    "ExportSession",
    "FieldMappingError",
    "ImportSession",
    "RecordValidationError",
    "SessionClosedError",
    "SheetRecordsError",
    "TypeConversionError",
    "UnsupportedFieldTypeError",
    "describe",
    "setup_logging",
]

LOGLEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Handlers are attached to the root logger
logger = logging.getLogger()


def setup_logging(loglevel: int = logging.INFO, logfile: Path | None = None):
    """
    Setup logging to console and optionally a rotating log file.

    The LOGLEVEL environment variable (e.g. "DEBUG") overrides ``loglevel``.
    """
    loglevel_name = os.getenv("LOGLEVEL", "").strip().upper()
    if loglevel_name in LOGLEVEL_NAMES:
        loglevel = getattr(logging, loglevel_name)

    # CRITICAL=FATAL=50 is the maximum, NOTSET=0 the minimum.
    loglevel = min(logging.FATAL, max(loglevel, logging.NOTSET))

    logging.basicConfig(level=loglevel, format="%(levelname)-8s|%(message)s")

    if logfile is not None:
        fh = logging.handlers.RotatingFileHandler(
            logfile, maxBytes=100000, backupCount=5, encoding="utf-8"
        )
        fh.setLevel(loglevel)
        fh.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s|%(name)-24s|%(levelname)-8s|%(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(fh)
