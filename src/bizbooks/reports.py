"""Read-only aggregation over a snapshot of one account's records.

Every function here is a pure function of a :class:`Snapshot` and a fixed
``today``: calling it twice with the same inputs yields the same result. The
snapshot is pulled once per request and is allowed to be slightly stale with
respect to concurrent writes.

Two kinds of totals exist and they are not expected to agree. Dashboard
figures are all-time or anchored at calendar boundaries, while report figures
are restricted to an explicit day window.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from . import core_logic, data_manager, log
from .constants import (
    DASHBOARD_TREND_DAYS,
    DEFAULT_LOW_STOCK_DISPLAY_LIMIT,
    UNCATEGORIZED,
    CategoryKind,
    PaymentMethod,
)

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of the rows an aggregation needs."""

    income: Tuple[data_manager.IncomeRow, ...]
    expenses: Tuple[data_manager.ExpenseRow, ...]
    expense_categories: Tuple[data_manager.CategoryRow, ...]
    sales: Tuple[data_manager.SaleRow, ...]
    products: Tuple[data_manager.ProductRow, ...]


@dataclass(frozen=True)
class DailyBucket:
    day: date
    amount: Decimal


@dataclass(frozen=True)
class ReportPoint:
    day: date
    revenue: Decimal
    expenses: Decimal


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    amount: Decimal


@dataclass(frozen=True)
class DashboardTotals:
    """Headline figures shown on the dashboard."""

    today_revenue: Decimal
    week_revenue: Decimal
    month_revenue: Decimal
    total_income: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    low_stock_count: int
    total_sales: int


@dataclass(frozen=True)
class ReportSummary:
    """Totals restricted to the inclusive window ``[start, end]``."""

    start: date
    end: date
    revenue: Decimal
    expenses: Decimal
    profit: Decimal
    sales_count: int


@dataclass(frozen=True)
class DashboardView:
    totals: DashboardTotals
    revenue_trend: Tuple[DailyBucket, ...]
    expense_breakdown: Tuple[CategoryTotal, ...]
    low_stock: Tuple[data_manager.ProductRow, ...]


@dataclass(frozen=True)
class ReportView:
    summary: ReportSummary
    trend: Tuple[ReportPoint, ...]
    payment_methods: Dict[str, Decimal]


def take_snapshot(context: core_logic.RuntimeContext, owner: str) -> Snapshot:
    """Pull every record the aggregations read for ``owner`` in one pass."""

    snapshot = Snapshot(
        income=tuple(core_logic.list_income(context, owner)),
        expenses=tuple(core_logic.list_expenses(context, owner)),
        expense_categories=tuple(core_logic.list_categories(context, owner, CategoryKind.EXPENSE)),
        sales=tuple(core_logic.list_sales(context, owner)),
        products=tuple(core_logic.list_products(context, owner)),
    )
    log.debug(
        "Snapshot for account '%s': %d income, %d expenses, %d sales, %d products",
        owner,
        len(snapshot.income),
        len(snapshot.expenses),
        len(snapshot.sales),
        len(snapshot.products),
    )
    return snapshot


def sale_day(sale: data_manager.SaleRow) -> Optional[date]:
    """UTC calendar date of a sale's ISO timestamp.

    Offsets are converted so sale days share the UTC clock of
    :func:`core_logic.current_date`; naive timestamps are read as UTC. Returns
    ``None`` for a blank or unreadable timestamp.
    """

    try:
        moment = datetime.fromisoformat(sale.sale_date_iso)
    except ValueError:
        log.warning("Sale '%s' has no readable date: %r", sale.sale_id, sale.sale_date_iso)
        return None
    return core_logic.resolve_timestamp(moment).date()


def sales_between(sales: Iterable[data_manager.SaleRow], start: date, end: date) -> List[data_manager.SaleRow]:
    """Sales whose UTC day falls in ``[start, end]``; undated sales are left out."""

    windowed = []
    for sale in sales:
        day = sale_day(sale)
        if day is not None and start <= day <= end:
            windowed.append(sale)
    return windowed


def income_total(records: Iterable[data_manager.IncomeRow]) -> Decimal:
    return core_logic.money_sum(record.amount for record in records)


def expense_total(records: Iterable[data_manager.ExpenseRow]) -> Decimal:
    return core_logic.money_sum(record.amount for record in records)


def daily_series(
    records: Iterable[RowT],
    *,
    date_of: Callable[[RowT], date],
    amount_of: Callable[[RowT], Decimal],
    days: int,
    today: date,
) -> List[DailyBucket]:
    """Bucket ``records`` into ``days`` consecutive calendar days ending today.

    Every bucket starts at zero, so days without records still appear.
    Records dated outside the window are dropped rather than clamped into the
    first or last bucket.

    Raises:
        ValueError: If ``days`` is not strictly positive.
    """

    if days <= 0:
        raise ValueError("Window must span at least one day")

    start = today - timedelta(days=days - 1)
    buckets: Dict[date, Decimal] = {
        start + timedelta(days=offset): Decimal("0.00") for offset in range(days)
    }
    for record in records:
        day = date_of(record)
        if day in buckets:
            buckets[day] += amount_of(record)
    return [DailyBucket(day=day, amount=amount) for day, amount in buckets.items()]


def revenue_trend(income: Iterable[data_manager.IncomeRow], *, days: int, today: date) -> List[DailyBucket]:
    return daily_series(
        income,
        date_of=lambda row: row.income_date,
        amount_of=lambda row: row.amount,
        days=days,
        today=today,
    )


def revenue_expense_trend(
    income: Iterable[data_manager.IncomeRow],
    expenses: Iterable[data_manager.ExpenseRow],
    *,
    days: int,
    today: date,
) -> List[ReportPoint]:
    """Pair daily revenue and expense buckets over the same window."""

    revenue = revenue_trend(income, days=days, today=today)
    spending = daily_series(
        expenses,
        date_of=lambda row: row.expense_date,
        amount_of=lambda row: row.amount,
        days=days,
        today=today,
    )
    return [
        ReportPoint(day=rev.day, revenue=rev.amount, expenses=exp.amount)
        for rev, exp in zip(revenue, spending)
    ]


def compute_point_totals(snapshot: Snapshot, today: Optional[date] = None) -> DashboardTotals:
    """Compute the dashboard's headline figures.

    ``week_revenue`` counts income dated on or after ``today - 7 days`` and
    ``month_revenue`` income dated on or after the first of the current month.
    Expenses and net profit are all-time.
    """

    today = core_logic.current_date(today)
    week_start = today - timedelta(days=7)
    month_start = today.replace(day=1)

    total_income = income_total(snapshot.income)
    total_expenses = expense_total(snapshot.expenses)
    return DashboardTotals(
        today_revenue=income_total(r for r in snapshot.income if r.income_date == today),
        week_revenue=income_total(r for r in snapshot.income if r.income_date >= week_start),
        month_revenue=income_total(r for r in snapshot.income if r.income_date >= month_start),
        total_income=total_income,
        total_expenses=total_expenses,
        net_profit=total_income - total_expenses,
        low_stock_count=len(core_logic.select_low_stock(snapshot.products)),
        total_sales=len(snapshot.sales),
    )


def expense_breakdown(
    expenses: Iterable[data_manager.ExpenseRow],
    categories: Iterable[data_manager.CategoryRow],
) -> List[CategoryTotal]:
    """Total expenses per resolved category name.

    Missing or dangling category ids all fold into one ``Uncategorized``
    bucket. Buckets appear in the order their first expense was seen, and two
    categories sharing a name share a bucket.
    """

    names = {category.category_id: category.name for category in categories}
    totals: Dict[str, Decimal] = {}
    for expense in expenses:
        name = names.get(expense.category_id, UNCATEGORIZED) if expense.category_id else UNCATEGORIZED
        totals[name] = totals.get(name, Decimal("0.00")) + expense.amount
    return [CategoryTotal(name=name, amount=amount) for name, amount in totals.items()]


def low_stock_digest(
    products: Sequence[data_manager.ProductRow],
    limit: Optional[int] = DEFAULT_LOW_STOCK_DISPLAY_LIMIT,
) -> List[data_manager.ProductRow]:
    """Low-stock products for display; pass ``limit=None`` for the full list."""

    return core_logic.select_low_stock(products, limit)


def sales_by_payment_method(sales: Iterable[data_manager.SaleRow]) -> Dict[str, Decimal]:
    """Total sale amounts per payment method, listing every method."""

    totals: Dict[str, Decimal] = {method.value: Decimal("0.00") for method in PaymentMethod}
    for sale in sales:
        totals[sale.payment_method] = totals.get(sale.payment_method, Decimal("0.00")) + sale.total_amount
    return totals


def report_summary(snapshot: Snapshot, days: int, today: Optional[date] = None) -> ReportSummary:
    """Recompute revenue, expenses, profit and sale count for a day window.

    The window is ``[today - days, today]`` inclusive on both ends.

    Raises:
        ValueError: If ``days`` is not strictly positive.
    """

    if days <= 0:
        raise ValueError("Window must span at least one day")

    today = core_logic.current_date(today)
    start = today - timedelta(days=days)

    revenue = income_total(r for r in snapshot.income if start <= r.income_date <= today)
    spending = expense_total(r for r in snapshot.expenses if start <= r.expense_date <= today)
    sales_count = len(sales_between(snapshot.sales, start, today))
    return ReportSummary(
        start=start,
        end=today,
        revenue=revenue,
        expenses=spending,
        profit=revenue - spending,
        sales_count=sales_count,
    )


def build_dashboard(
    snapshot: Snapshot,
    today: Optional[date] = None,
    *,
    low_stock_limit: Optional[int] = DEFAULT_LOW_STOCK_DISPLAY_LIMIT,
) -> DashboardView:
    """Assemble the dashboard view model."""

    today = core_logic.current_date(today)
    return DashboardView(
        totals=compute_point_totals(snapshot, today),
        revenue_trend=tuple(revenue_trend(snapshot.income, days=DASHBOARD_TREND_DAYS, today=today)),
        expense_breakdown=tuple(expense_breakdown(snapshot.expenses, snapshot.expense_categories)),
        low_stock=tuple(low_stock_digest(snapshot.products, low_stock_limit)),
    )


def build_report(snapshot: Snapshot, days: int, today: Optional[date] = None) -> ReportView:
    """Assemble the report view model for a ``days``-long window."""

    today = core_logic.current_date(today)
    summary = report_summary(snapshot, days, today)
    windowed_sales = sales_between(snapshot.sales, summary.start, today)
    return ReportView(
        summary=summary,
        trend=tuple(revenue_expense_trend(snapshot.income, snapshot.expenses, days=days, today=today)),
        payment_methods=sales_by_payment_method(windowed_sales),
    )
