import json
import logging
import os
from unittest import mock

import pytest

from sheetrecords.cli import load_model, main_cli, run_cli_app
from sheetrecords.xlsx_api import ExportSession
from sheetrecords.xlsx_common import ArgumentError

from .conftest import Car, make_orders

CAR_MODEL = "tests.conftest:Car"
ORDER_MODEL = "tests.conftest:Order"

CARS_JSON = [
    {"id": 1, "make": "Volvo", "model": "240", "color": "blue"},
    {"id": 2, "make": "Fiat", "model": "Panda", "mileage": 5000.5},
]


@pytest.fixture
def cars_json(tmp_path):
    fpath = tmp_path / "cars.json"
    fpath.write_text(json.dumps(CARS_JSON), encoding="utf-8")
    return fpath


@pytest.fixture
def orders_xlsx(tmp_path):
    fpath = tmp_path / "orders.xlsx"
    with ExportSession() as session:
        session.add_sheet_for_export("Sheet One").add_table_for_export(make_orders(3))
        session.add_sheet_for_export("Sheet Two").add_table_for_export(
            make_orders(2, start=3), "late"
        )
        session.export(fpath)
    return fpath


def test_run_cli_app_no_args_entrypoint(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["sheetrecords"])
    run_cli_app()
    captured = capsys.readouterr()
    assert "usage: sheetrecords" in captured.out


def test_run_cli_app_no_args(capsys):
    run_cli_app([])
    captured = capsys.readouterr()
    assert "usage: sheetrecords" in captured.out


def test_main_unknown_arg(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main_cli(["--unknown-arg"])
    assert exc_info.value.code == 2  # noqa: PLR2004
    captured = capsys.readouterr()
    assert "sheetrecords: error: unrecognized arguments: --unknown-arg" in captured.err


def test_main_version(capsys):
    main_cli(["--version"])
    captured = capsys.readouterr()
    assert captured.out.startswith("sheetrecords")


def test_main_subcmd_help(capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli_app(["import", "--help"])
    assert exc_info.value.code == 0
    captured = capsys.readouterr()
    assert "usage: sheetrecords import" in captured.out


def test_sheet_and_table_exclusive(capsys, orders_xlsx):
    with pytest.raises(SystemExit) as exc_info:
        main_cli(
            ["import", "--sheet", "A", "--table", "B", ORDER_MODEL, str(orders_xlsx)]
        )
    assert exc_info.value.code == 2  # noqa: PLR2004


# ===== Tests for common options of all subcommands =====


def test_nonexisting_file(tmp_path, caplog):
    missing = tmp_path / "missing.xlsx"
    with caplog.at_level(logging.ERROR), pytest.raises(ArgumentError):
        main_cli(["tables", str(missing)])
    assert f"File not found: {missing}" in caplog.text


def test_exit_errorvalue(tmp_path, caplog):
    with caplog.at_level(logging.ERROR), pytest.raises(SystemExit) as exc_info:
        run_cli_app(["tables", str(tmp_path / "missing.xlsx")])
    assert exc_info.value.code == 1
    assert "Terminating with error: File not found" in caplog.text


def test_nonexisting_config(orders_xlsx, caplog):
    with caplog.at_level(logging.ERROR), pytest.raises(ArgumentError):
        main_cli(["tables", "--config", "missing.toml", str(orders_xlsx)])
    assert "Config file not found at" in caplog.text


@mock.patch.dict(os.environ, {"LOGLEVEL": "DEBUG"})
def test_valid_config(tmp_path, cars_json, caplog, temp_config):
    # Don't remove "temp_config". The fixture avoid global config change.
    config_file = tmp_path / "sheetrecords.toml"
    config_file.write_text('[export]\ntable_style = "TableStyleLight2"\n')
    with caplog.at_level(logging.DEBUG):
        main_cli(
            [
                "export",
                "--config",
                str(config_file),
                CAR_MODEL,
                str(cars_json),
                str(tmp_path / "cars.xlsx"),
            ]
        )
    assert "Config loaded from" in caplog.text
    assert temp_config.SETTINGS.table_style == "TableStyleLight2"


def test_logfile(tmp_path, orders_xlsx):
    logfile = tmp_path / "logs" / "run.log"
    main_cli(["tables", "--logfile", str(logfile), str(orders_xlsx)])
    assert logfile.exists()


# ===== Tests for subcommands =====


def test_tables(orders_xlsx, capsys):
    main_cli(["tables", str(orders_xlsx)])
    captured = capsys.readouterr()
    assert captured.out.splitlines() == [
        "Sheet One\tSheet_One_Orders_1\tA1:F4\t3",
        "Sheet Two\tSheet_Two_late_Orders_1\tA1:F3\t2",
    ]


def test_export_import_round_trip(tmp_path, cars_json, caplog):
    xlsx = tmp_path / "out" / "cars.xlsx"
    with caplog.at_level(logging.INFO):
        main_cli(
            [
                "export",
                "--sheet",
                "Fleet",
                "--table-name",
                "company",
                CAR_MODEL,
                str(cars_json),
                str(xlsx),
            ]
        )
    assert xlsx.exists()
    assert 'Exported 2 Cars to table "Fleet_company_Cars_1"' in caplog.text

    out = tmp_path / "cars-back.json"
    main_cli(["import", CAR_MODEL, str(xlsx), "-o", str(out)])
    imported = json.loads(out.read_text(encoding="utf-8"))
    assert [Car(**item) for item in imported] == [Car(**item) for item in CARS_JSON]


def test_import_to_stdout(orders_xlsx, capsys):
    main_cli(["import", "--sheet", "Sheet Two", ORDER_MODEL, str(orders_xlsx)])
    imported = json.loads(capsys.readouterr().out)
    assert [item["reference"] for item in imported] == ["REF-0003", "REF-0004"]


def test_import_table(orders_xlsx, capsys):
    main_cli(["import", "--table", "Sheet_One", ORDER_MODEL, str(orders_xlsx)])
    imported = json.loads(capsys.readouterr().out)
    assert len(imported) == 3


def test_import_all(orders_xlsx, capsys):
    main_cli(["import", ORDER_MODEL, str(orders_xlsx)])
    assert len(json.loads(capsys.readouterr().out)) == 5


def test_export_invalid_json(tmp_path, caplog):
    bad = tmp_path / "bad.json"
    bad.write_text('[{"id": "one"}]', encoding="utf-8")
    with caplog.at_level(logging.ERROR), pytest.raises(SystemExit) as exc_info:
        run_cli_app(["export", CAR_MODEL, str(bad), str(tmp_path / "x.xlsx")])
    assert exc_info.value.code == 1
    assert "Invalid records in" in caplog.text


def test_export_missing_json(tmp_path):
    with pytest.raises(ArgumentError, match="File not found"):
        main_cli(
            ["export", CAR_MODEL, str(tmp_path / "no.json"), str(tmp_path / "x.xlsx")]
        )


class TestLoadModel:
    def test_valid(self):
        assert load_model(CAR_MODEL) is Car

    @pytest.mark.parametrize(
        ("target", "message"),
        [
            ("tests.conftest.Car", "must be given as"),
            ("no_such_module_xyz:Car", "Cannot import module"),
            ("tests.conftest:make_orders", "is not a pydantic model"),
            ("tests.conftest:Missing", "is not a pydantic model"),
        ],
    )
    def test_invalid(self, target, message):
        with pytest.raises(ArgumentError, match=message):
            load_model(target)
