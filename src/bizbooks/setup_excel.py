"""Bootstrap a Bizbooks installation: ``config.ini`` and the master workbook.

``bizbooks-setup`` reads the configuration to find where the workbook lives
and creates it with one sheet per record type. With ``--init`` it first
writes a starter ``config.ini`` when none exists, so a new shop can be set up
with a single command.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, DEFAULT_LOW_STOCK_DISPLAY_LIMIT

DEFAULT_DATA_FILE = "bizbooks_data.xlsx"
DEFAULT_ACCOUNT = "owner-1"


@dataclass(frozen=True)
class SetupSettings:
    """The subset of ``config.ini`` the bootstrap needs."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Resolve the workbook location named by ``config.ini``.

    Only ``[System] DataFile`` is required here; the other settings are
    validated when the CLI loads its runtime context.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If ``DataFile`` is missing.
    """

    parser = data_manager.read_config(config_path)
    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()
    return SetupSettings(data_file=data_file_path)


def write_default_config(
    config_path: Path,
    *,
    business_name: str,
    account: str = DEFAULT_ACCOUNT,
    data_file: str = DEFAULT_DATA_FILE,
) -> Path:
    """Write a starter ``config.ini`` for a new installation.

    Raises:
        FileExistsError: If ``config_path`` already exists.
    """

    if config_path.exists():
        raise FileExistsError(f"Configuration file already exists: {config_path}")

    parser = configparser.ConfigParser()
    parser.optionxform = str  # keep CamelCase keys as written
    parser["System"] = {
        "DataFile": data_file,
        "BusinessName": business_name,
        "SchemaVersion": EXPECTED_SCHEMA_VERSION,
    }
    parser["Defaults"] = {
        "DefaultAccount": account,
        "LowStockDisplayLimit": str(DEFAULT_LOW_STOCK_DISPLAY_LIMIT),
    }
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    log.info("Wrote starter configuration '%s'", config_path)
    return config_path


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty master workbook at ``destination``.

    Each sheet gets a bold, frozen header row sized to its column titles and
    no data rows.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)

    header_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.append(list(columns))
        for index, title in enumerate(columns, start=1):
            worksheet.cell(row=1, column=index).font = header_font
            worksheet.column_dimensions[get_column_letter(index)].width = max(12, len(title) + 2)
        worksheet.freeze_panes = "A2"

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="bizbooks-setup", description="Initialize the Bizbooks data file")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Write a starter config.ini first when it does not exist.",
    )
    parser.add_argument("--business-name", default="My Shop", help="BusinessName used by --init.")
    parser.add_argument("--account", default=DEFAULT_ACCOUNT, help="DefaultAccount used by --init.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Bizbooks Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        if args.init and not config_path.exists():
            write_default_config(config_path, business_name=args.business_name, account=args.account)
            print(f"Wrote starter configuration to '{config_path}'.")
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        if isinstance(exc, FileNotFoundError):
            print("Run with --init to create a starter configuration.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
