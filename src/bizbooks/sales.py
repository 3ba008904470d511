"""Sale transaction coordinator.

A :class:`SaleTransaction` collects cart lines and turns them into a sale in
four ordered writes:

1. the ``Sales`` header row,
2. one ``SaleItems`` row per cart line,
3. a conditional stock decrement per line,
4. an ``Income`` posting for the sale total.

The workbook offers no multi-row transaction, so the coordinator keeps a
journal of what it has written. When a step after the first one fails it
undoes the journal in reverse order and reports a :class:`SaleFailed`
outcome. If the undo itself fails the outcome keeps the provisional sale id
and ``compensated=False`` so an operator can reconcile by hand. Nothing is
retried automatically because none of the four writes is idempotent.

The four writes run inside one :func:`core_logic.store_transaction`, so the
reservations are checked against the workbook as last saved by any session
and a committed sale reaches the data file before the lock is released. A
failed sale is never saved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from . import core_logic, data_manager, log
from .constants import PaymentMethod


class EmptyCart(core_logic.BusinessRuleViolation):
    """Raised when a sale is finalized without any cart lines."""


class InvalidDiscount(core_logic.BusinessRuleViolation):
    """Raised when the discount is negative or exceeds the subtotal."""


class SaleStateError(core_logic.BusinessRuleViolation):
    """Raised when a cart operation is not allowed in the current state."""


class SaleState(str, Enum):
    """Lifecycle of one :class:`SaleTransaction`."""

    BUILDING = "building"
    VALIDATING = "validating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTED = "aborted"
    FAILED = "failed"


class SaleStep(str, Enum):
    """Ordered write steps of a sale commit."""

    CREATE_SALE = "create_sale"
    CREATE_ITEMS = "create_items"
    RESERVE_STOCK = "reserve_stock"
    POST_INCOME = "post_income"
    SAVE = "save"


@dataclass(frozen=True)
class CartLine:
    """A pending (product, quantity) pair priced when it entered the cart."""

    product_id: str
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class LineFailure:
    """A cart line whose stock reservation was refused."""

    product_id: str
    requested: int
    available: int


@dataclass(frozen=True)
class SaleCommitted:
    """Every write of the sale succeeded.

    ``income`` is ``None`` for zero-total sales, which post no income.
    """

    sale: data_manager.SaleRow
    items: Tuple[data_manager.SaleItemRow, ...]
    income: Optional[data_manager.IncomeRow]


@dataclass(frozen=True)
class SaleFailed:
    """A write failed after validation.

    Attributes:
        step: The write step that failed.
        error: The exception raised by that step.
        sale_id: Provisional sale id when the header row had been written,
            otherwise ``None``.
        failed_lines: Lines refused by the stock reservation step.
        compensated: ``True`` when every earlier write was undone.
    """

    step: SaleStep
    error: Exception
    sale_id: Optional[str]
    failed_lines: Tuple[LineFailure, ...] = ()
    compensated: bool = True

    @property
    def needs_reconciliation(self) -> bool:
        return self.sale_id is not None and not self.compensated


SaleOutcome = Union[SaleCommitted, SaleFailed]


@dataclass
class _Journal:
    """Writes performed so far by one commit, in the order they happened."""

    sale_id: Optional[str] = None
    items_written: bool = False
    reserved: List[Tuple[str, int]] = field(default_factory=list)
    income_id: Optional[str] = None


class SaleTransaction:
    """Build and commit one sale for a single account.

    Lines can be added and removed while the transaction is ``BUILDING``.
    Abandoning it at that point has no storage effect. :meth:`finalize`
    validates the cart and then runs the commit to completion; it cannot be
    cancelled once writing has begun.
    """

    def __init__(self, context: core_logic.RuntimeContext, owner: str) -> None:
        self._context = context
        self._owner = owner
        self._lines: Dict[str, CartLine] = {}
        self._state = SaleState.BUILDING

    @property
    def state(self) -> SaleState:
        return self._state

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines.values())

    @property
    def subtotal(self) -> Decimal:
        return core_logic.money_sum(line.total_price for line in self._lines.values())

    def add_line(self, product_id: str, quantity: int) -> CartLine:
        """Add ``quantity`` units of a product, merging with an existing line.

        The merged quantity is checked against current stock. On rejection the
        cart is left exactly as it was before the call.

        Raises:
            InvalidQuantity: If ``quantity`` is not positive or the merged
                quantity exceeds the stock on hand.
            MissingReferenceError: If the product is unknown for this owner.
            SaleStateError: If the transaction is no longer building.
        """
        self._require_state(SaleState.BUILDING)
        if quantity <= 0:
            log.warning("Rejected cart line for '%s' with quantity %s", product_id, quantity)
            raise core_logic.InvalidQuantity("Quantity must be greater than zero")

        product = core_logic.get_product(self._context, self._owner, product_id)
        existing = self._lines.get(product_id)
        merged = quantity + (existing.quantity if existing else 0)
        availability = core_logic.check_availability(self._context, self._owner, product_id, merged)
        if isinstance(availability, core_logic.Insufficient):
            log.warning(
                "Rejected cart line for '%s': %s requested, %s available",
                product_id,
                merged,
                availability.available,
            )
            raise core_logic.InvalidQuantity(
                f"Only {availability.available} unit(s) of '{product.name}' available"
            )

        line = CartLine(
            product_id=product_id,
            name=product.name,
            quantity=merged,
            unit_price=existing.unit_price if existing else product.selling_price,
        )
        self._lines[product_id] = line
        log.debug("Cart line '%s' now holds %s unit(s)", product_id, merged)
        return line

    def remove_line(self, product_id: str) -> bool:
        """Drop a cart line. Returns ``False`` when no such line existed."""
        self._require_state(SaleState.BUILDING)
        return self._lines.pop(product_id, None) is not None

    def abandon(self) -> None:
        """Discard the cart. Nothing has been written, so nothing is undone."""
        self._require_state(SaleState.BUILDING)
        self._lines.clear()
        self._state = SaleState.ABORTED
        log.info("Abandoned sale cart for account '%s'", self._owner)

    def finalize(
        self,
        discount: Decimal = Decimal("0"),
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        *,
        sale_date: Optional[datetime] = None,
    ) -> SaleOutcome:
        """Validate the cart and commit it.

        Validation errors are raised before anything is written and leave the
        transaction in ``BUILDING`` so the caller can correct the input. Once
        committing starts the result is always returned, never raised.

        Raises:
            EmptyCart: If the cart has no lines.
            InvalidDiscount: If ``discount`` is negative or larger than the
                subtotal.
            BusinessRuleViolation: If ``payment_method`` is unsupported.
            SaleStateError: If the transaction is no longer building.
        """
        self._require_state(SaleState.BUILDING)
        self._state = SaleState.VALIDATING
        try:
            total = self._validate(discount)
            method = _coerce_payment_method(payment_method)
        except core_logic.BusinessRuleViolation:
            self._state = SaleState.BUILDING
            raise

        self._state = SaleState.COMMITTING
        outcome = self._commit(total, discount, method, sale_date)
        if isinstance(outcome, SaleCommitted):
            self._lines.clear()
            self._state = SaleState.COMMITTED
        else:
            self._state = SaleState.FAILED
        return outcome

    def _require_state(self, expected: SaleState) -> None:
        if self._state is not expected:
            raise SaleStateError(f"Sale is {self._state.value}, expected {expected.value}")

    def _validate(self, discount: Decimal) -> Decimal:
        if not self._lines:
            log.warning("Rejected finalize of an empty cart for account '%s'", self._owner)
            raise EmptyCart("Cart is empty")
        total = self.subtotal - discount
        if discount < Decimal("0") or total < Decimal("0"):
            log.warning("Rejected discount %s against subtotal %s", discount, self.subtotal)
            raise InvalidDiscount("Discount must be zero or positive and not exceed the subtotal")
        return total

    def _commit(
        self,
        total: Decimal,
        discount: Decimal,
        method: PaymentMethod,
        sale_date: Optional[datetime],
    ) -> SaleOutcome:
        journal = _Journal()
        try:
            with core_logic.store_transaction(self._context) as store:
                outcome = self._write(journal, total, discount, method, sale_date)
                if isinstance(outcome, SaleFailed):
                    store.discard()
        except Exception as exc:
            # lock timeout, stale context or a failed save; nothing reached disk
            log.exception("Sale could not be stored in '%s'", self._context.settings.data_file)
            return self._fail(SaleStep.SAVE, exc, journal, [])

        if isinstance(outcome, SaleCommitted):
            log.info(
                "Committed sale '%s' with %d line(s), total=%s discount=%s method=%s",
                outcome.sale.sale_id,
                len(outcome.items),
                total,
                discount,
                method.value,
            )
        return outcome

    def _write(
        self,
        journal: _Journal,
        total: Decimal,
        discount: Decimal,
        method: PaymentMethod,
        sale_date: Optional[datetime],
    ) -> SaleOutcome:
        when = core_logic.resolve_timestamp(sale_date)
        sale = data_manager.SaleRow(
            sale_id=core_logic.generate_record_id("S", when=when),
            user_id=self._owner,
            total_amount=total,
            discount=discount,
            payment_method=method.value,
            sale_date_iso=when.isoformat(),
        )
        lines = list(self._lines.values())
        step = SaleStep.CREATE_SALE
        try:
            core_logic.insert_sale(self._context, sale)
            journal.sale_id = sale.sale_id

            step = SaleStep.CREATE_ITEMS
            items = build_sale_items(sale.sale_id, lines)
            core_logic.insert_sale_items(self._context, items)
            journal.items_written = True

            step = SaleStep.RESERVE_STOCK
            failures, first_conflict = self._reserve_lines(lines, journal)
            if first_conflict is not None:
                return self._fail(step, first_conflict, journal, failures)

            step = SaleStep.POST_INCOME
            income = None
            if total > Decimal("0"):
                income = core_logic.add_income(
                    self._context,
                    self._owner,
                    amount=total,
                    income_date=core_logic.current_date(),
                    description=f"Sale #{sale.sale_id}",
                    reference=sale.sale_id,
                )
                journal.income_id = income.income_id
        except Exception as exc:
            log.exception("Sale commit failed at step '%s'", step.value)
            return self._fail(step, exc, journal, [])

        return SaleCommitted(sale=sale, items=tuple(items), income=income)

    def _reserve_lines(
        self,
        lines: List[CartLine],
        journal: _Journal,
    ) -> Tuple[List[LineFailure], Optional[core_logic.StockConflictError]]:
        """Reserve every line, collecting refusals instead of stopping at the first."""
        failures: List[LineFailure] = []
        first_conflict: Optional[core_logic.StockConflictError] = None
        for line in lines:
            try:
                core_logic.reserve_stock(self._context, self._owner, line.product_id, line.quantity)
            except core_logic.StockConflictError as exc:
                failures.append(LineFailure(exc.product_id, exc.requested, exc.available))
                first_conflict = first_conflict or exc
                continue
            journal.reserved.append((line.product_id, line.quantity))
        return failures, first_conflict

    def _fail(
        self,
        step: SaleStep,
        error: Exception,
        journal: _Journal,
        failures: List[LineFailure],
    ) -> SaleFailed:
        compensated = self._compensate(journal)
        outcome = SaleFailed(
            step=step,
            error=error,
            sale_id=journal.sale_id,
            failed_lines=tuple(failures),
            compensated=compensated,
        )
        if outcome.needs_reconciliation:
            log.error(
                "Sale '%s' failed at '%s' and could not be rolled back; manual reconciliation required",
                journal.sale_id,
                step.value,
            )
        else:
            log.error("Sale failed at '%s': %s", step.value, error)
        return outcome

    def _compensate(self, journal: _Journal) -> bool:
        """Undo the journal in reverse order. Returns ``False`` if any undo failed."""
        if journal.sale_id is None:
            return True
        try:
            if journal.income_id is not None:
                core_logic.delete_income(self._context, self._owner, journal.income_id)
            for product_id, quantity in reversed(journal.reserved):
                core_logic.release_stock(self._context, self._owner, product_id, quantity)
            core_logic.delete_sale(self._context, self._owner, journal.sale_id)
        except Exception:
            log.exception("Rollback of provisional sale '%s' failed", journal.sale_id)
            return False
        log.info("Rolled back provisional sale '%s'", journal.sale_id)
        return True


def build_sale_items(sale_id: str, lines: Iterable[CartLine]) -> List[data_manager.SaleItemRow]:
    """Materialize cart lines into ``SaleItems`` rows numbered from 1."""
    return [
        data_manager.SaleItemRow(
            sale_item_id=f"{sale_id}-{index}",
            sale_id=sale_id,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_price=line.total_price,
        )
        for index, line in enumerate(lines, start=1)
    ]


def _coerce_payment_method(candidate: Union[PaymentMethod, str]) -> PaymentMethod:
    try:
        return PaymentMethod(candidate)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", candidate)
        raise core_logic.BusinessRuleViolation(f"Unsupported payment method: {candidate}") from exc


def finalize_sale(
    context: core_logic.RuntimeContext,
    owner: str,
    items: Iterable[Tuple[str, int]],
    *,
    discount: Decimal = Decimal("0"),
    payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
    sale_date: Optional[datetime] = None,
) -> SaleOutcome:
    """Build a cart from ``(product_id, quantity)`` pairs and finalize it.

    Repeated product ids merge into one line exactly as repeated
    :meth:`SaleTransaction.add_line` calls would.
    """
    transaction = SaleTransaction(context, owner)
    for product_id, quantity in items:
        transaction.add_line(product_id, quantity)
    return transaction.finalize(discount, payment_method, sale_date=sale_date)
