"""Data access layer for the bookkeeping workbook.

This module provides low-level helpers that read from and write to the
master ``.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file,
   plus the inter-process lock that serialises writers of the data file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
4. The conditional stock decrement, which is the only place a product
   quantity is reduced.
"""


from __future__ import annotations

import configparser
import os
import threading
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

from filelock import FileLock
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import CATEGORY_SHEETS, DEFAULT_LOW_STOCK_DISPLAY_LIMIT, CategoryKind, SheetName


CONFIG_FILE_NAME = "config.ini"
INCOME_SHEET = SheetName.INCOME.value
EXPENSES_SHEET = SheetName.EXPENSES.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value

_CATEGORY_COLUMNS = ["CategoryID", "UserID", "Name"]

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.INCOME.value: [
        "IncomeID",
        "UserID",
        "Amount",
        "Description",
        "Reference",
        "CategoryID",
        "IncomeDate",
        "CreatedAt",
    ],
    SheetName.EXPENSES.value: [
        "ExpenseID",
        "UserID",
        "Amount",
        "Description",
        "CategoryID",
        "ExpenseDate",
        "CreatedAt",
    ],
    SheetName.INCOME_CATEGORIES.value: _CATEGORY_COLUMNS,
    SheetName.EXPENSE_CATEGORIES.value: _CATEGORY_COLUMNS,
    SheetName.PRODUCTS.value: [
        "ProductID",
        "UserID",
        "Name",
        "SKU",
        "Category",
        "CostPrice",
        "SellingPrice",
        "Quantity",
        "LowStockThreshold",
        "CreatedAt",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "UserID",
        "TotalAmount",
        "Discount",
        "PaymentMethod",
        "SaleDate",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleItemID",
        "SaleID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "TotalPrice",
    ],
}

# Serialises every read-check-write on a product quantity cell within a process.
_STOCK_LOCK = threading.Lock()

# Seconds a session waits for another session to release the data file.
STORE_LOCK_TIMEOUT = 30.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_account: str
    low_stock_display_limit: int = DEFAULT_LOW_STOCK_DISPLAY_LIMIT


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from one of the category sheets."""

    category_id: str
    user_id: str
    name: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    user_id: str
    name: str
    sku: str
    category: Optional[str]
    cost_price: Decimal
    selling_price: Decimal
    quantity: int
    low_stock_threshold: int
    created_at_iso: str


@dataclass(frozen=True)
class IncomeRow:
    """In-memory view of a row from the ``Income`` sheet."""

    income_id: str
    user_id: str
    amount: Decimal
    description: Optional[str]
    reference: Optional[str]
    category_id: Optional[str]
    income_date: date
    created_at_iso: str


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    user_id: str
    amount: Decimal
    description: Optional[str]
    category_id: Optional[str]
    expense_date: date
    created_at_iso: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    user_id: str
    total_amount: Decimal
    discount: Decimal
    payment_method: str
    sale_date_iso: str


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_item_id: str
    sale_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.
    ``LowStockDisplayLimit`` is optional and defaults to
    :data:`DEFAULT_LOW_STOCK_DISPLAY_LIMIT`.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If ``LowStockDisplayLimit`` is not a non-negative integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_account = parser.get("Defaults", "DefaultAccount")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    low_stock_limit = parser.getint(
        "Defaults",
        "LowStockDisplayLimit",
        fallback=DEFAULT_LOW_STOCK_DISPLAY_LIMIT,
    )
    if low_stock_limit < 0:
        raise ValueError("LowStockDisplayLimit must be zero or positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_account=default_account,
        low_stock_display_limit=low_stock_limit,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand.

    The workbook is written to a staging file beside ``destination`` and then
    moved over it, so a concurrent reader opens either the previous or the new
    file and never a half-written one.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.name}.saving")
    workbook.save(staging)
    os.replace(staging, dest)


def workbook_lock(data_file: Path, *, timeout: float = STORE_LOCK_TIMEOUT) -> FileLock:
    """Return the inter-process lock that guards ``data_file``.

    Sessions hold it for a whole reload, write and save cycle so that two
    processes never both rewrite the workbook from their own stale copy. The
    lock file lives next to the workbook as ``<name>.lock``.
    """

    data_file = Path(data_file).expanduser().resolve()
    return FileLock(f"{data_file}.lock", timeout=timeout)


def workbook_fingerprint(data_file: Path) -> Optional[Tuple[int, int, int]]:
    """Identify the saved state of ``data_file`` as ``(inode, mtime_ns, size)``.

    Every save replaces the file, so a changed fingerprint means another
    session saved since the value was taken. Returns ``None`` when the file
    does not exist.
    """

    try:
        stat = Path(data_file).expanduser().resolve().stat()
    except FileNotFoundError:
        return None
    return (stat.st_ino, stat.st_mtime_ns, stat.st_size)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterator[Sequence[object]]:
    """Yield the value tuples of every non-empty data row of ``sheet_name``."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_categories(workbook: Workbook, kind: CategoryKind) -> Iterable[CategoryRow]:
    """Iterate over the category sheet that belongs to ``kind``."""

    sheet_name = CATEGORY_SHEETS[kind].value
    for raw in _iter_raw_rows(workbook, sheet_name):
        yield deserialize_category(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into a :class:`ProductRow` via
    :func:`deserialize_product`.
    """

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_income(workbook: Workbook) -> Iterable[IncomeRow]:
    """Stream income records from the ``Income`` worksheet."""

    for raw in _iter_raw_rows(workbook, INCOME_SHEET):
        yield deserialize_income(raw)


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    """Stream expense records from the ``Expenses`` worksheet."""

    for raw in _iter_raw_rows(workbook, EXPENSES_SHEET):
        yield deserialize_expense(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale headers from the ``Sales`` worksheet."""

    for raw in _iter_raw_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    """Stream sale line items from the ``SaleItems`` worksheet."""

    for raw in _iter_raw_rows(workbook, SALE_ITEMS_SHEET):
        yield deserialize_sale_item(raw)


def append_category(workbook: Workbook, kind: CategoryKind, record: CategoryRow) -> None:
    """Append a category record to the sheet matching ``kind``."""

    sheet = workbook[CATEGORY_SHEETS[kind].value]
    sheet.append(serialize_category(record))


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))


def append_income(workbook: Workbook, record: IncomeRow) -> None:
    """Append an income record to the ``Income`` worksheet.

    Monetary fields remain :class:`~decimal.Decimal` instances after
    serialization so no precision is lost before the workbook is saved.
    """

    sheet = workbook[INCOME_SHEET]
    sheet.append(serialize_income(record))


def append_expense(workbook: Workbook, record: ExpenseRow) -> None:
    """Append an expense record to the ``Expenses`` worksheet."""

    sheet = workbook[EXPENSES_SHEET]
    sheet.append(serialize_expense(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header to the ``Sales`` worksheet."""

    sheet = workbook[SALES_SHEET]
    sheet.append(serialize_sale(record))


def append_sale_items(workbook: Workbook, records: Iterable[SaleItemRow]) -> None:
    """Append a batch of line items to the ``SaleItems`` worksheet."""

    sheet = workbook[SALE_ITEMS_SHEET]
    for record in records:
        sheet.append(serialize_sale_item(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def reserve_product_quantity(workbook: Workbook, product_id: str, quantity: int) -> Optional[int]:
    """Atomically decrement a product's stock if enough units remain.

    The current ``Quantity`` cell is re-read under a process-wide lock and is
    only rewritten when it still holds at least ``quantity`` units, so two
    callers that both passed an earlier availability check cannot push the
    stock below zero. The caller must treat ``None`` as authoritative.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier of the product to decrement.
        quantity (int): Strictly positive number of units to take.

    Returns:
        int | None: Quantity left after the decrement, or ``None`` when the
            product does not hold ``quantity`` units.

    Raises:
        KeyError: If the product row cannot be located.
        ValueError: If ``quantity`` is not strictly positive.
    """

    if quantity <= 0:
        raise ValueError("Reserved quantity must be greater than zero")

    with _STOCK_LOCK:
        row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
        if row_index is None:
            raise KeyError(f"Product not found: {product_id}")
        sheet = workbook[PRODUCTS_SHEET]
        column = _header_map(sheet)["Quantity"]
        cell = sheet.cell(row=row_index, column=column)
        available = _to_int(cell.value)
        if available < quantity:
            log.debug(
                "Refused reservation of %s units of '%s' (available=%s)",
                quantity,
                product_id,
                available,
            )
            return None
        remaining = available - quantity
        cell.value = remaining
        return remaining


def release_product_quantity(workbook: Workbook, product_id: str, quantity: int) -> int:
    """Return previously reserved units to a product's stock.

    Returns:
        int: Quantity on hand after the increment.

    Raises:
        KeyError: If the product row cannot be located.
        ValueError: If ``quantity`` is not strictly positive.
    """

    if quantity <= 0:
        raise ValueError("Released quantity must be greater than zero")

    with _STOCK_LOCK:
        row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
        if row_index is None:
            raise KeyError(f"Product not found: {product_id}")
        sheet = workbook[PRODUCTS_SHEET]
        cell = sheet.cell(row=row_index, column=_header_map(sheet)["Quantity"])
        restored = _to_int(cell.value) + quantity
        cell.value = restored
        return restored


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_values: Iterable[str]) -> int:
    """Remove every row whose ``key_column`` holds one of ``key_values``.

    Rows are deleted bottom-up so earlier indices stay valid while the sheet
    shrinks.

    Returns:
        int: Number of rows removed.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    targets = set(key_values)
    if not targets:
        return 0

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")
    key_col_index = header_map[key_column]

    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] in targets
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx, 1)
    return len(matches)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _header_map(sheet: Any) -> dict[Any, int]:
    """Map header titles to their 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def serialize_category(record: CategoryRow) -> list[object]:
    """Arrange a category as ``[CategoryID, UserID, Name]``."""

    return [record.category_id, record.user_id, record.name]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.user_id,
        record.name,
        record.sku,
        record.category,
        record.cost_price,
        record.selling_price,
        record.quantity,
        record.low_stock_threshold,
        record.created_at_iso,
    ]


def serialize_income(record: IncomeRow) -> list[object]:
    """Convert an income dataclass into the worksheet column ordering.

    Dates are written as ISO ``YYYY-MM-DD`` text so Excel does not attach a
    time component on reload.
    """

    return [
        record.income_id,
        record.user_id,
        record.amount,
        record.description,
        record.reference,
        record.category_id,
        record.income_date.isoformat(),
        record.created_at_iso,
    ]


def serialize_expense(record: ExpenseRow) -> list[object]:
    """Convert an expense dataclass into the worksheet column ordering."""

    return [
        record.expense_id,
        record.user_id,
        record.amount,
        record.description,
        record.category_id,
        record.expense_date.isoformat(),
        record.created_at_iso,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.user_id,
        record.total_amount,
        record.discount,
        record.payment_method,
        record.sale_date_iso,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_item_id,
        record.sale_id,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.total_price,
    ]


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    """Convert a raw category sheet row into a :class:`CategoryRow`."""

    category_id, user_id, name = tuple(raw_row[:3])
    return CategoryRow(
        category_id=str(category_id),
        user_id=str(user_id),
        name=str(name) if name is not None else "",
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal` instances, stock counters become
    ``int`` and id/name fields are coerced to ``str`` to avoid surprises caused
    by Excel automatically interpreting numbers.
    """

    (
        product_id,
        user_id,
        name,
        sku,
        category,
        cost_raw,
        selling_raw,
        quantity_raw,
        threshold_raw,
        created_at,
    ) = tuple(raw_row[:10])

    return ProductRow(
        product_id=str(product_id),
        user_id=str(user_id),
        name=str(name) if name is not None else "",
        sku=str(sku) if sku is not None else "",
        category=_to_optional_str(category),
        cost_price=_to_decimal(cost_raw),
        selling_price=_to_decimal(selling_raw),
        quantity=_to_int(quantity_raw),
        low_stock_threshold=_to_int(threshold_raw),
        created_at_iso=str(created_at) if created_at is not None else "",
    )


def deserialize_income(raw_row: Sequence[object]) -> IncomeRow:
    """Convert a raw worksheet row into a strongly typed income record."""

    (
        income_id,
        user_id,
        amount_raw,
        description,
        reference,
        category_id,
        income_date_raw,
        created_at,
    ) = tuple(raw_row[:8])

    return IncomeRow(
        income_id=str(income_id),
        user_id=str(user_id),
        amount=_to_decimal(amount_raw),
        description=_to_optional_str(description),
        reference=_to_optional_str(reference),
        category_id=_to_optional_str(category_id),
        income_date=_to_date(income_date_raw),
        created_at_iso=str(created_at) if created_at is not None else "",
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    """Convert a raw worksheet row into a strongly typed expense record."""

    (
        expense_id,
        user_id,
        amount_raw,
        description,
        category_id,
        expense_date_raw,
        created_at,
    ) = tuple(raw_row[:7])

    return ExpenseRow(
        expense_id=str(expense_id),
        user_id=str(user_id),
        amount=_to_decimal(amount_raw),
        description=_to_optional_str(description),
        category_id=_to_optional_str(category_id),
        expense_date=_to_date(expense_date_raw),
        created_at_iso=str(created_at) if created_at is not None else "",
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a :class:`SaleRow`."""

    sale_id, user_id, total_raw, discount_raw, payment_method, sale_date = tuple(raw_row[:6])
    return SaleRow(
        sale_id=str(sale_id),
        user_id=str(user_id),
        total_amount=_to_decimal(total_raw),
        discount=_to_decimal(discount_raw),
        payment_method=str(payment_method) if payment_method is not None else "",
        sale_date_iso=str(sale_date) if sale_date is not None else "",
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    """Convert a raw worksheet row into a :class:`SaleItemRow`."""

    sale_item_id, sale_id, product_id, quantity_raw, unit_raw, total_raw = tuple(raw_row[:6])
    return SaleItemRow(
        sale_item_id=str(sale_item_id),
        sale_id=str(sale_id),
        product_id=str(product_id),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(unit_raw),
        total_price=_to_decimal(total_raw),
    )


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    # str() first so floats loaded by openpyxl keep their printed digits
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    if raw is None:
        return 0
    return int(Decimal(str(raw)))


def _to_date(raw: object) -> date:
    """Normalise a stored date cell, which may come back as text or datetime."""

    if isinstance(raw, date):
        # datetime is a subclass of date; strip any time component
        return raw if type(raw) is date else raw.date()  # type: ignore[union-attr]
    return date.fromisoformat(str(raw)[:10])


def _to_optional_str(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text != "" else None
