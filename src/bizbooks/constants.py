"""Enumerations shared across the bookkeeping modules.

The data access layer, the business rules and the CLI all import their
identifiers from here so sheet names and enum values never drift apart.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version every layer expects to find in config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

UNCATEGORIZED = "Uncategorized"

DEFAULT_LOW_STOCK_DISPLAY_LIMIT = 5

DASHBOARD_TREND_DAYS = 7

REPORT_WINDOWS: tuple[int, ...] = (7, 30, 90)


class PaymentMethod(str, Enum):
    """Enumerate supported payment methods for sales."""

    CASH = "cash"
    TRANSFER = "transfer"
    POS = "pos"


class CategoryKind(str, Enum):
    """Enumerate the record domains a category can tag."""

    INCOME = "income"
    EXPENSE = "expense"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    INCOME = "Income"
    EXPENSES = "Expenses"
    INCOME_CATEGORIES = "IncomeCategories"
    EXPENSE_CATEGORIES = "ExpenseCategories"
    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"


CATEGORY_SHEETS: dict[CategoryKind, SheetName] = {
    CategoryKind.INCOME: SheetName.INCOME_CATEGORIES,
    CategoryKind.EXPENSE: SheetName.EXPENSE_CATEGORIES,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "UNCATEGORIZED",
    "DEFAULT_LOW_STOCK_DISPLAY_LIMIT",
    "DASHBOARD_TREND_DAYS",
    "REPORT_WINDOWS",
    "PaymentMethod",
    "CategoryKind",
    "SheetName",
    "CATEGORY_SHEETS",
]
