"""Command line interface for sheetrecords with subcommands."""

import argparse
import importlib
import logging
import sys
import textwrap
from pathlib import Path

from pydantic import BaseModel, TypeAdapter, ValidationError

from sheetrecords import __version__, config, setup_logging
from sheetrecords.xlsx_api import ExportSession, ImportSession
from sheetrecords.xlsx_common import ArgumentError, SheetRecordsError

logger = logging.getLogger(__name__)


def process_common_options(args, raw_args):
    # set up logging
    loglevel = logging.INFO + (args.quieter - args.verboser) * 10
    logfile = args.logfile
    if logfile is None:
        setup_logging(loglevel)
    else:
        logfile.parents[0].mkdir(exist_ok=True, parents=True)
        setup_logging(loglevel, logfile)

    logger.info("Executing cmd: sheetrecords %s", " ".join(raw_args))
    logger.debug("Processing common options.")

    # load config
    if args.config is not None:
        if args.config.exists():
            config.load_config(config_file=Path(args.config))
        else:
            msg = "Config file not found at: %s"
            logger.error(msg, args.config)
            raise ArgumentError(msg % args.config)

    # check the xlsx file of "tables" and "import"
    if getattr(args, "check_xlsx", False) and not args.XLSXFILE.exists():
        msg = "File not found: %s"
        logger.error(msg, args.XLSXFILE)
        raise ArgumentError(msg % args.XLSXFILE)


def load_model(target: str) -> type[BaseModel]:
    """Import a pydantic model given as ``package.module:ClassName``."""
    module_name, sep, class_name = target.partition(":")
    if not sep or not module_name or not class_name:
        msg = f'Model must be given as "module:ClassName", got "{target}".'
        raise ArgumentError(msg)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        msg = f'Cannot import module "{module_name}": {e}'
        raise ArgumentError(msg) from e
    model = getattr(module, class_name, None)
    if not (isinstance(model, type) and issubclass(model, BaseModel)):
        msg = f'"{target}" is not a pydantic model.'
        raise ArgumentError(msg)
    return model


class DecentFormatter(argparse.HelpFormatter):
    """
    An argparse formatter that preserves newlines & keeps indentation.
    """

    def _fill_text(self, text, width, indent):
        """
        Reformat text while keeping newlines for lines shorter than width.
        """
        lines = []
        for line in textwrap.indent(textwrap.dedent(text), indent).splitlines():
            lines.append(textwrap.fill(line, width, subsequent_indent=indent))
        return "\n".join(lines)

    def _split_lines(self, text, width):
        """
        Conserve indentation in help/description lines when splitting long lines.
        """
        lines = []
        for line in textwrap.dedent(text).splitlines():
            if not line.strip():  # pragma: no cover
                continue
            indent = " " * (len(line) - len(line.lstrip()))
            lines.extend(
                textwrap.fill(line, width, subsequent_indent=indent).splitlines()
            )
        return lines


def root_cmd(args):
    if args.version:  # pragma: no cover
        print(f"sheetrecords {__version__}")


def tables_cmd(args):
    with ImportSession(args.XLSXFILE) as session:
        for region in session.tables:
            print(
                f"{region.sheet_name}\t{region.name}\t{region.ref}\t{region.row_count}"
            )
        logger.info("Found %i table(s) in %s", len(session.tables), args.XLSXFILE)


def export_cmd(args):
    model = load_model(args.MODEL)
    if not args.JSONFILE.exists():
        msg = "File not found: %s"
        logger.error(msg, args.JSONFILE)
        raise ArgumentError(msg % args.JSONFILE)
    try:
        records = TypeAdapter(list[model]).validate_json(args.JSONFILE.read_bytes())
    except ValidationError as e:
        msg = f"Invalid records in {args.JSONFILE}: {e}"
        raise ArgumentError(msg) from e

    with ExportSession() as session:
        sheet = session.add_sheet_for_export(args.sheet)
        table = sheet.add_table_for_export(
            records, table_name=args.table_name, record_type=model
        )
        args.XLSXFILE.parent.mkdir(exist_ok=True, parents=True)
        session.export(args.XLSXFILE)
    logger.info(
        'Exported %i %s to table "%s" in %s',
        table.row_count,
        table.record_type.plural_name,
        table.name,
        args.XLSXFILE,
    )


def import_cmd(args):
    model = load_model(args.MODEL)
    with ImportSession(args.XLSXFILE) as session:
        if args.sheet is not None:
            records = session.get_from_sheet(model, args.sheet)
        elif args.table is not None:
            records = session.get_from_table(model, args.table)
        else:
            records = session.get_all(model)

    data = TypeAdapter(list[model]).dump_json(records, indent=2).decode("utf-8")
    if args.output is None:
        print(data)
    else:
        args.output.parent.mkdir(exist_ok=True, parents=True)
        args.output.write_text(data + "\n", encoding="utf-8")
    logger.info("Imported %i record(s) from %s", len(records), args.XLSXFILE)


def create_root_parser():
    parser = argparse.ArgumentParser(
        prog="sheetrecords",
        description=(
            "A command-line tool to export pydantic records to named Excel "
            "tables and to import them back."
        ),
        allow_abbrev=False,
        formatter_class=DecentFormatter,
    )
    parser.add_argument(
        "-V",
        "--version",
        help="The version of sheetrecords command line interface.",
        action="store_true",
    )
    parser.set_defaults(func=root_cmd)
    return parser


def create_common_options_parser():
    parser = argparse.ArgumentParser(
        prog="sheetrecords",
        allow_abbrev=False,
        add_help=False,
        formatter_class=DecentFormatter,
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "-v",
        "--verbose",
        action="count",
        dest="verboser",
        default=0,
        help="More verbose output. Repeat to increase verbosity (-vv or -vvv).",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        dest="quieter",
        help="Less verbose output. Repeat to reduce verbosity (-qq or -qqq).",
    )
    parser.add_argument(
        "--config",
        help=('Path to config file (typically "sheetrecords.toml").'),
        type=Path,
        required=False,
    )
    parser.add_argument(
        "-l",
        "--logfile",
        help=(
            "Activate logging to a file at given path. "
            "The path will be created if it is not existing."
        ),
        type=Path,
    )
    return parser


def add_tables_subparser(subparsers, options):
    """List the tables of an xlsx file."""
    parser = subparsers.add_parser(
        "tables",
        description=(
            "List all tables of an xlsx file, one per line as\n"
            "    SHEET<TAB>TABLE<TAB>RANGE<TAB>ROWS"
        ),
        help="List the tables of an xlsx file.",
        **options,
    )
    parser.add_argument(
        "XLSXFILE",
        type=Path,
        help="The xlsx file to inspect.",
    )
    parser.set_defaults(func=tables_cmd, check_xlsx=True)


def add_export_subparser(subparsers, options):
    """Export records from a JSON file to one table in a new xlsx file."""
    parser = subparsers.add_parser(
        "export",
        description=(
            "Export a JSON list of records to a table in a new xlsx file. "
            "The records are validated with MODEL before they are written."
        ),
        help="Export records from a JSON file to xlsx.",
        **options,
    )
    parser.add_argument(
        "--sheet",
        help='Name of the sheet to create. (default: "Sheet1")',
        default="Sheet1",
    )
    parser.add_argument(
        "--table-name",
        help="Label to include in the generated table name.",
        default=None,
    )
    parser.add_argument(
        "MODEL",
        help='The pydantic model of the records as "package.module:ClassName".',
    )
    parser.add_argument(
        "JSONFILE",
        type=Path,
        help="JSON file with a list of records.",
    )
    parser.add_argument(
        "XLSXFILE",
        type=Path,
        help="The xlsx file to write. An existing file is replaced.",
    )
    parser.set_defaults(func=export_cmd)


def add_import_subparser(subparsers, options):
    """Import records from the tables of an xlsx file."""
    parser = subparsers.add_parser(
        "import",
        description=(
            "Import records of MODEL from the tables of an xlsx file and write "
            "them as JSON. By default all tables named after MODEL are read."
        ),
        help="Import records from xlsx to JSON.",
        **options,
    )
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument(
        "--sheet",
        help="Only read tables on this sheet.",
    )
    scope.add_argument(
        "--table",
        help="Only read tables whose name contains this text.",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Write JSON to this file instead of stdout.",
        type=Path,
        metavar="FILE",
    )
    parser.add_argument(
        "MODEL",
        help='The pydantic model of the records as "package.module:ClassName".',
    )
    parser.add_argument(
        "XLSXFILE",
        type=Path,
        help="The xlsx file to read.",
    )
    parser.set_defaults(func=import_cmd, check_xlsx=True)


def main_cli(raw_args=None):
    """Setup CLI app and run commands based on args."""
    # Create root parser for cli app
    parser = create_root_parser()

    subparsers = parser.add_subparsers(
        title="Subcommands",
        dest="subcommand",
        description="Get help for commands with sheetrecords COMMAND --help",
    )
    # Create parser to share some options between subparsers. We cannot use the
    # root parser for this because it includes the sub-commands and their help.
    common_options_parser = create_common_options_parser()

    # Create the subparsers with some common options
    common_options = {
        "parents": [common_options_parser],
        "formatter_class": DecentFormatter,
    }
    add_tables_subparser(subparsers, common_options)
    add_export_subparser(subparsers, common_options)
    add_import_subparser(subparsers, common_options)

    if not raw_args:
        parser.print_help()
        return

    # Parse the command-line arguments
    #   pars_args will call sys.exit(2) if invalid commands are given.
    args = parser.parse_args(raw_args)
    if hasattr(args, "config"):
        process_common_options(args, raw_args)
    args.func(args)


def run_cli_app(raw_args=None):
    """Entry point for running the cli app."""
    if raw_args is None:
        raw_args = sys.argv[1:]
    try:
        main_cli(raw_args)
    except SheetRecordsError as e:
        logger.error("Terminating with error: %s", e)  # noqa: TRY400
        sys.exit(1)
    except Exception:  # pragma: no cover
        logger.exception("Unexpected error.")
        sys.exit(3)  # value 2 is used by argparse for invalid args.


if __name__ == "__main__":
    run_cli_app(sys.argv[1:])
