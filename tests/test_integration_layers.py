"""Integration tests describing end-to-end Bizbooks workflows.

These scenarios drive the CLI entry point against a real workbook on disk and
then reopen it through the business logic layer, mirroring how the data
access, business and presentation layers collaborate in production.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

from bizbooks import cli, constants, core_logic, reports, sales


def _reload(config_path) -> core_logic.RuntimeContext:
    return core_logic.load_runtime_context(config_path)


def _add_product(config_path, *extra: str, quantity: str = "10", price: str = "2.50") -> str:
    argv = [
        "--config",
        str(config_path),
        *extra,
        "add-product",
        "--name",
        "Notebook",
        "--sku",
        "NB-01",
        "--cost-price",
        "1.00",
        "--selling-price",
        price,
        "--quantity",
        quantity,
        "--threshold",
        "5",
    ]
    assert cli.main(argv) == 0
    context = _reload(config_path)
    account = extra[1] if extra else context.settings.default_account
    return core_logic.list_products(context, account)[0].product_id


def test_sale_lifecycle_through_cli(config_file, capsys):
    """Stock a product, sell part of it, and read the dashboard back."""

    product_id = _add_product(config_file)

    assert cli.main(["--config", str(config_file), "sale", "--item", f"{product_id}=3"]) == 0
    out = capsys.readouterr().out
    assert "completed: total 7.50" in out

    context = _reload(config_file)
    owner = context.settings.default_account
    assert core_logic.get_product(context, owner, product_id).quantity == 7
    [sale] = core_logic.list_sales(context, owner)
    [income] = core_logic.list_income(context, owner)
    assert income.amount == Decimal("7.50")
    assert income.reference == sale.sale_id
    assert [item.quantity for item in core_logic.list_sale_items(context, owner, sale.sale_id)] == [3]

    # Eight more units exceed the seven left on hand.
    assert cli.main(["--config", str(config_file), "sale", "--item", f"{product_id}=8"]) == 2
    assert len(core_logic.list_sales(_reload(config_file), owner)) == 1

    assert cli.main(["--config", str(config_file), "dashboard"]) == 0
    dashboard = capsys.readouterr().out
    assert "Today's revenue:  7.50" in dashboard
    assert "Sales: 1" in dashboard

    assert cli.main(["--config", str(config_file), "report", "--days", "7"]) == 0
    assert "Revenue:  7.50" in capsys.readouterr().out


def test_failed_sale_leaves_workbook_untouched(config_file, monkeypatch):
    product_id = _add_product(config_file)
    monkeypatch.setattr(core_logic, "add_income", Mock(side_effect=RuntimeError("disk full")))

    exit_code = cli.main(["--config", str(config_file), "sale", "--item", f"{product_id}=2"])

    assert exit_code == cli.EXIT_SALE_FAILED
    context = _reload(config_file)
    owner = context.settings.default_account
    assert core_logic.list_sales(context, owner) == []
    assert core_logic.get_product(context, owner, product_id).quantity == 10


def test_accounts_are_isolated(config_file, capsys):
    foreign_id = _add_product(config_file, "--account", "owner-2")
    capsys.readouterr()

    assert cli.main(["--config", str(config_file), "products"]) == 0
    assert foreign_id not in capsys.readouterr().out

    # Selling another account's product is a missing reference.
    assert cli.main(["--config", str(config_file), "sale", "--item", f"{foreign_id}=1"]) == 2


def test_income_and_expense_feed_the_report(config_file):
    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-category", "--kind", "expense", "--name", "Rent"]) == 0
    context = _reload(config_file)
    owner = context.settings.default_account
    [rent] = core_logic.list_categories(context, owner, constants.CategoryKind.EXPENSE)

    assert cli.main([*base, "add-income", "--amount", "100.00"]) == 0
    assert cli.main([*base, "add-expense", "--amount", "30.00", "--category-id", rent.category_id]) == 0
    assert cli.main([*base, "add-expense", "--amount", "5.00"]) == 0
    assert cli.main([*base, "add-income", "--amount", "0"]) == 2

    snapshot = reports.take_snapshot(_reload(config_file), owner)
    view = reports.build_report(snapshot, 30)
    assert view.summary.revenue == Decimal("100.00")
    assert view.summary.expenses == Decimal("35.00")
    assert view.summary.profit == Decimal("65.00")
    breakdown = reports.build_dashboard(snapshot).expense_breakdown
    assert {(entry.name, entry.amount) for entry in breakdown} == {
        ("Rent", Decimal("30.00")),
        (constants.UNCATEGORIZED, Decimal("5.00")),
    }


def test_deleting_a_category_leaves_expenses_uncategorized(config_file):
    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-category", "--kind", "expense", "--name", "Fuel"]) == 0
    context = _reload(config_file)
    owner = context.settings.default_account
    [fuel] = core_logic.list_categories(context, owner, constants.CategoryKind.EXPENSE)
    assert cli.main([*base, "add-expense", "--amount", "12.00", "--category-id", fuel.category_id]) == 0

    assert cli.main([*base, "delete-category", "--kind", "expense", "--category-id", fuel.category_id]) == 0

    snapshot = reports.take_snapshot(_reload(config_file), owner)
    [entry] = reports.build_dashboard(snapshot).expense_breakdown
    assert entry.name == constants.UNCATEGORIZED
    assert snapshot.expenses[0].category_id == fuel.category_id


def test_low_stock_listing_and_stock_edit(config_file, capsys):
    product_id = _add_product(config_file, quantity="9")
    capsys.readouterr()

    assert cli.main(["--config", str(config_file), "low-stock"]) == 0
    assert product_id not in capsys.readouterr().out

    assert cli.main(["--config", str(config_file), "set-stock", "--product-id", product_id, "--quantity", "5"]) == 0
    assert cli.main(["--config", str(config_file), "low-stock"]) == 0
    assert product_id in capsys.readouterr().out


def test_read_command_does_not_undo_a_concurrent_sale(config_file, monkeypatch):
    """A dashboard session loaded before a sale must not erase it on exit."""

    product_id = _add_product(config_file)
    stale = _reload(config_file)

    assert cli.main(["--config", str(config_file), "sale", "--item", f"{product_id}=3"]) == 0

    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: stale)
    assert cli.main(["dashboard"]) == 0

    context = _reload(config_file)
    owner = context.settings.default_account
    assert len(core_logic.list_sales(context, owner)) == 1
    assert core_logic.get_product(context, owner, product_id).quantity == 7


def test_write_session_picks_up_sales_saved_by_another_session(config_file):
    product_id = _add_product(config_file)
    stale = _reload(config_file)

    assert cli.main(["--config", str(config_file), "sale", "--item", f"{product_id}=6"]) == 0

    # The stale session still believes ten units are on hand.
    outcome = sales.finalize_sale(stale, stale.settings.default_account, [(product_id, 6)])

    assert isinstance(outcome, sales.SaleFailed)
    assert outcome.failed_lines[0].available == 4
    context = _reload(config_file)
    assert core_logic.get_product(context, context.settings.default_account, product_id).quantity == 4
