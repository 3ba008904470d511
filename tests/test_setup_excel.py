"""Tests for the workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from bizbooks import data_manager, setup_excel


def test_create_master_workbook_writes_bold_headers(tmp_path):
    target = setup_excel.create_master_workbook(tmp_path / "nested" / "books.xlsx")

    workbook = openpyxl.load_workbook(target)
    assert workbook.sheetnames == list(data_manager.SHEET_COLUMNS)
    for sheet_name, columns in data_manager.SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet_name][1]]
        assert header == list(columns)
        assert workbook[sheet_name]["A1"].font.bold
        assert workbook[sheet_name].max_row == 1


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    target = setup_excel.create_master_workbook(tmp_path / "books.xlsx")
    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(target)
    setup_excel.create_master_workbook(target, overwrite=True)


def test_load_settings_resolves_relative_data_file(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = data/books.xlsx\n")

    settings = setup_excel.load_settings(config_path)

    assert settings.data_file == (tmp_path / "data" / "books.xlsx").resolve()


def test_load_settings_requires_data_file(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nBusinessName = Shop\n")
    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)


def test_main_creates_workbook_from_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = books.xlsx\n")

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert (tmp_path / "books.xlsx").exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_write_default_config_is_accepted_by_parse_settings(tmp_path):
    config_path = setup_excel.write_default_config(
        tmp_path / "config.ini",
        business_name="Corner Shop",
        account="owner-9",
    )

    settings = data_manager.parse_settings(data_manager.read_config(config_path), base_path=tmp_path)

    assert settings.business_name == "Corner Shop"
    assert settings.default_account == "owner-9"
    assert settings.data_file == (tmp_path / setup_excel.DEFAULT_DATA_FILE).resolve()
    with pytest.raises(FileExistsError):
        setup_excel.write_default_config(config_path, business_name="Other")


def test_main_init_writes_config_then_workbook(tmp_path, capsys):
    config_path = tmp_path / "config.ini"

    assert setup_excel.main(["--config", str(config_path), "--init", "--business-name", "Kiosk"]) == 0

    assert config_path.exists()
    assert (tmp_path / setup_excel.DEFAULT_DATA_FILE).exists()
    assert "starter configuration" in capsys.readouterr().out
    assert "BusinessName = Kiosk" in config_path.read_text()


def test_created_sheets_freeze_header_row(tmp_path):
    target = setup_excel.create_master_workbook(tmp_path / "books.xlsx")

    workbook = openpyxl.load_workbook(target)
    assert all(workbook[name].freeze_panes == "A2" for name in workbook.sheetnames)
