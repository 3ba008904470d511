"""Behavioural tests for the sale transaction coordinator on a real workbook."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from bizbooks import core_logic, data_manager, sales
from bizbooks.constants import PaymentMethod

OWNER = "owner-1"
MOMENT = datetime(2025, 3, 4, 10, 30, tzinfo=UTC)


@pytest.fixture
def fixed_clock(set_fixed_datetime):
    return set_fixed_datetime(MOMENT)


def _stock(context, product_id: str) -> int:
    return core_logic.get_product(context, OWNER, product_id).quantity


def test_add_line_rejects_merged_quantity_above_stock(runtime_context, product_factory):
    product = product_factory(quantity=10, low_stock_threshold=5)
    transaction = sales.SaleTransaction(runtime_context, OWNER)

    transaction.add_line(product.product_id, 3)
    with pytest.raises(core_logic.InvalidQuantity):
        transaction.add_line(product.product_id, 8)

    assert [(line.product_id, line.quantity) for line in transaction.lines] == [(product.product_id, 3)]
    assert transaction.state is sales.SaleState.BUILDING


def test_add_line_merges_repeated_products(runtime_context, product_factory):
    product = product_factory(quantity=10, selling_price="2.50")
    transaction = sales.SaleTransaction(runtime_context, OWNER)

    transaction.add_line(product.product_id, 2)
    line = transaction.add_line(product.product_id, 3)

    assert line.quantity == 5
    assert len(transaction.lines) == 1
    assert transaction.subtotal == Decimal("12.50")


@pytest.mark.parametrize("quantity", [0, -2])
def test_add_line_rejects_non_positive_quantity(runtime_context, product_factory, quantity):
    product = product_factory()
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    with pytest.raises(core_logic.InvalidQuantity):
        transaction.add_line(product.product_id, quantity)
    assert transaction.lines == ()


def test_add_line_rejects_other_accounts_product(runtime_context, product_factory):
    foreign = product_factory(owner="owner-2")
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    with pytest.raises(core_logic.MissingReferenceError):
        transaction.add_line(foreign.product_id, 1)


def test_finalize_commits_every_write(runtime_context, product_factory, fixed_clock):
    product = product_factory(quantity=10, low_stock_threshold=5, selling_price="2.50")
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 3)

    outcome = transaction.finalize(payment_method="pos")

    assert isinstance(outcome, sales.SaleCommitted)
    assert transaction.state is sales.SaleState.COMMITTED
    assert transaction.lines == ()
    assert outcome.sale.total_amount == Decimal("7.50")
    assert outcome.sale.payment_method == "pos"
    assert outcome.sale.sale_date_iso == MOMENT.isoformat()
    assert [item.sale_item_id for item in outcome.items] == [f"{outcome.sale.sale_id}-1"]
    assert outcome.items[0].total_price == Decimal("7.50")
    assert _stock(runtime_context, product.product_id) == 7

    income = core_logic.list_income(runtime_context, OWNER)
    assert len(income) == 1
    assert income[0].amount == Decimal("7.50")
    assert income[0].reference == outcome.sale.sale_id
    assert income[0].description == f"Sale #{outcome.sale.sale_id}"
    assert income[0].income_date == date(2025, 3, 4)
    assert core_logic.list_sale_items(runtime_context, OWNER, outcome.sale.sale_id) == list(outcome.items)


def test_finalize_applies_discount(runtime_context, product_factory):
    product = product_factory(quantity=10, selling_price="5.00")
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 2)

    outcome = transaction.finalize(Decimal("1.50"))

    assert outcome.sale.total_amount == Decimal("8.50")
    assert outcome.sale.discount == Decimal("1.50")
    assert outcome.income.amount == Decimal("8.50")


def test_zero_total_sale_posts_no_income(runtime_context, product_factory):
    product = product_factory(quantity=10, selling_price="5.00")
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 1)

    outcome = transaction.finalize(Decimal("5.00"))

    assert isinstance(outcome, sales.SaleCommitted)
    assert outcome.income is None
    assert outcome.sale.total_amount == Decimal("0.00")
    assert core_logic.list_income(runtime_context, OWNER) == []
    assert _stock(runtime_context, product.product_id) == 9


@pytest.mark.parametrize("discount", [Decimal("15"), Decimal("-1")])
def test_invalid_discount_writes_nothing(runtime_context, product_factory, discount):
    product = product_factory(quantity=10, selling_price="2.50")
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 4)

    with pytest.raises(sales.InvalidDiscount):
        transaction.finalize(discount)

    assert transaction.state is sales.SaleState.BUILDING
    assert core_logic.list_sales(runtime_context, OWNER) == []
    assert _stock(runtime_context, product.product_id) == 10


def test_finalize_empty_cart_raises(runtime_context):
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    with pytest.raises(sales.EmptyCart):
        transaction.finalize()
    assert transaction.state is sales.SaleState.BUILDING


def test_unsupported_payment_method_is_rejected(runtime_context, product_factory):
    product = product_factory()
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 1)

    with pytest.raises(core_logic.BusinessRuleViolation):
        transaction.finalize(payment_method="barter")
    assert core_logic.list_sales(runtime_context, OWNER) == []


def test_stock_conflict_rolls_back_earlier_writes(runtime_context, product_factory):
    """Stock that vanished between add_line and finalize fails the sale cleanly."""

    plenty = product_factory(name="Pen", sku="PEN", quantity=10)
    scarce = product_factory(name="Ink", sku="INK", quantity=5)
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(plenty.product_id, 3)
    transaction.add_line(scarce.product_id, 5)
    core_logic.update_stock(runtime_context, OWNER, scarce.product_id, 2)

    outcome = transaction.finalize()

    assert isinstance(outcome, sales.SaleFailed)
    assert outcome.step is sales.SaleStep.RESERVE_STOCK
    assert outcome.compensated is True
    assert outcome.needs_reconciliation is False
    assert outcome.failed_lines == (sales.LineFailure(scarce.product_id, 5, 2),)
    assert transaction.state is sales.SaleState.FAILED
    assert _stock(runtime_context, plenty.product_id) == 10
    assert _stock(runtime_context, scarce.product_id) == 2
    assert core_logic.list_sales(runtime_context, OWNER) == []
    assert list(data_manager.iter_sale_items(runtime_context.workbook)) == []
    assert core_logic.list_income(runtime_context, OWNER) == []


def test_income_failure_releases_stock_and_deletes_sale(monkeypatch, runtime_context, product_factory):
    product = product_factory(quantity=10)
    monkeypatch.setattr(core_logic, "add_income", Mock(side_effect=RuntimeError("disk full")))

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 4)])

    assert isinstance(outcome, sales.SaleFailed)
    assert outcome.step is sales.SaleStep.POST_INCOME
    assert str(outcome.error) == "disk full"
    assert outcome.compensated is True
    assert _stock(runtime_context, product.product_id) == 10
    assert core_logic.list_sales(runtime_context, OWNER) == []


def test_header_failure_needs_no_compensation(monkeypatch, runtime_context, product_factory):
    product = product_factory(quantity=10)
    monkeypatch.setattr(core_logic, "insert_sale", Mock(side_effect=PermissionError("locked")))

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 1)])

    assert outcome.step is sales.SaleStep.CREATE_SALE
    assert outcome.sale_id is None
    assert outcome.compensated is True
    assert _stock(runtime_context, product.product_id) == 10


def test_failed_rollback_reports_provisional_sale(monkeypatch, runtime_context, product_factory):
    product = product_factory(quantity=10)
    monkeypatch.setattr(core_logic, "add_income", Mock(side_effect=RuntimeError("disk full")))
    monkeypatch.setattr(core_logic, "delete_sale", Mock(side_effect=RuntimeError("still locked")))

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 2)])

    assert isinstance(outcome, sales.SaleFailed)
    assert outcome.compensated is False
    assert outcome.needs_reconciliation is True
    assert outcome.sale_id is not None
    assert [sale.sale_id for sale in core_logic.list_sales(runtime_context, OWNER)] == [outcome.sale_id]


def test_abandon_discards_cart_without_writes(runtime_context, product_factory):
    product = product_factory(quantity=10)
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 2)

    transaction.abandon()

    assert transaction.state is sales.SaleState.ABORTED
    assert transaction.lines == ()
    assert _stock(runtime_context, product.product_id) == 10
    with pytest.raises(sales.SaleStateError):
        transaction.add_line(product.product_id, 1)


def test_remove_line_reports_whether_line_existed(runtime_context, product_factory):
    product = product_factory()
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 1)

    assert transaction.remove_line(product.product_id) is True
    assert transaction.remove_line(product.product_id) is False
    assert transaction.lines == ()


def test_committed_transaction_cannot_be_reused(runtime_context, product_factory):
    product = product_factory(quantity=10)
    transaction = sales.SaleTransaction(runtime_context, OWNER)
    transaction.add_line(product.product_id, 1)
    transaction.finalize(payment_method=PaymentMethod.TRANSFER)

    with pytest.raises(sales.SaleStateError):
        transaction.finalize()


def test_build_sale_items_numbers_lines_from_one():
    lines = [
        sales.CartLine("P1", "Pen", 2, Decimal("1.25")),
        sales.CartLine("P2", "Ink", 1, Decimal("4.00")),
    ]

    items = sales.build_sale_items("S1", lines)

    assert [item.sale_item_id for item in items] == ["S1-1", "S1-2"]
    assert items[0].total_price == Decimal("2.50")


def test_sessions_on_one_data_file_never_oversell(runtime_context, product_factory, config_file):
    """Two sessions loaded before either sells cannot both take the same units."""

    product = product_factory(quantity=10)
    core_logic.persist_context(runtime_context)
    first = core_logic.load_runtime_context(config_file)
    second = core_logic.load_runtime_context(config_file)

    first_outcome = sales.finalize_sale(first, OWNER, [(product.product_id, 8)])
    second_outcome = sales.finalize_sale(second, OWNER, [(product.product_id, 8)])
    core_logic.persist_context(first)
    core_logic.persist_context(second)

    assert isinstance(first_outcome, sales.SaleCommitted)
    assert isinstance(second_outcome, sales.SaleFailed)
    assert second_outcome.step is sales.SaleStep.RESERVE_STOCK
    assert second_outcome.failed_lines == (sales.LineFailure(product.product_id, 8, 2),)

    stored = core_logic.load_runtime_context(config_file)
    assert [sale.sale_id for sale in core_logic.list_sales(stored, OWNER)] == [first_outcome.sale.sale_id]
    assert _stock(stored, product.product_id) == 2
    assert len(core_logic.list_income(stored, OWNER)) == 1


def test_committed_sale_is_saved_before_finalize_returns(runtime_context, product_factory, config_file):
    product = product_factory(quantity=4)

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 1)])

    assert isinstance(outcome, sales.SaleCommitted)
    stored = core_logic.load_runtime_context(config_file)
    assert _stock(stored, product.product_id) == 3
    assert [sale.sale_id for sale in core_logic.list_sales(stored, OWNER)] == [outcome.sale.sale_id]


def test_failed_sale_is_not_saved(monkeypatch, runtime_context, product_factory, config_file):
    product = product_factory(quantity=4)
    core_logic.persist_context(runtime_context)
    monkeypatch.setattr(core_logic, "add_income", Mock(side_effect=RuntimeError("disk full")))

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 1)])

    assert isinstance(outcome, sales.SaleFailed)
    stored = core_logic.load_runtime_context(config_file)
    assert core_logic.list_sales(stored, OWNER) == []
    assert _stock(stored, product.product_id) == 4


def test_save_failure_rolls_back_and_reports_save_step(monkeypatch, runtime_context, product_factory):
    product = product_factory(quantity=4)
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=PermissionError("locked by Excel")))

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 1)])

    assert isinstance(outcome, sales.SaleFailed)
    assert outcome.step is sales.SaleStep.SAVE
    assert outcome.compensated
    assert _stock(runtime_context, product.product_id) == 4
    assert core_logic.list_sales(runtime_context, OWNER) == []


def test_sale_date_is_stored_in_utc(runtime_context, product_factory):
    product = product_factory()
    local = datetime(2025, 3, 20, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

    outcome = sales.finalize_sale(runtime_context, OWNER, [(product.product_id, 1)], sale_date=local)

    assert outcome.sale.sale_date_iso == "2025-03-21T04:30:00+00:00"
