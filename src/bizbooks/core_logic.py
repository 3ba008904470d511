"""Business logic layer for the bookkeeping workbook.

This module holds the rules for the three direct-write stores: the category
registry, the inventory ledger and the financial record store. It consumes the
Data Access Layer (DAL) for all I/O while ensuring every mutation passes
through the domain validations. Every operation takes the owning account
explicitly; rows belonging to another account are treated as missing.

Writes that must not be lost to a concurrent session run inside
:func:`store_transaction`, which holds the data file lock while it reloads,
mutates and saves the workbook.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import CATEGORY_SHEETS, EXPECTED_SCHEMA_VERSION, CategoryKind, SheetName


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced record is unknown or owned by another account."""


class EmptyName(BusinessRuleViolation):
    """Raised when a name is blank after trimming."""


class InvalidAmount(BusinessRuleViolation):
    """Raised when a monetary value is out of range."""


class InvalidQuantity(BusinessRuleViolation):
    """Raised when a stock quantity is out of range."""


class StockConflictError(BusinessRuleViolation):
    """Raised when the storage layer refuses a stock reservation."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StaleContextError(RuntimeError):
    """Raised when unsaved changes would overwrite another session's save."""


@dataclass
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``workbook`` is swapped for a fresh copy when a store transaction finds
    that another session saved the data file. ``_fingerprint`` identifies the
    saved file this workbook was read from or last written to, and ``_dirty``
    flags writes not yet saved.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _fingerprint: Optional[Tuple[int, int, int]] = field(default=None, repr=False, compare=False)
    _dirty: bool = field(default=False, repr=False, compare=False)
    _transaction: Optional["StoreTransaction"] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class Available:
    """Availability check passed."""

    product_id: str
    requested: int


@dataclass(frozen=True)
class Insufficient:
    """Availability check failed; ``available`` is the stock seen at check time."""

    product_id: str
    requested: int
    available: int


Availability = Union[Available, Insufficient]


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` converted to UTC, or the current UTC datetime.

    Naive values are taken to be UTC already.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate.astimezone(UTC)


def current_date(candidate: Optional[date] = None) -> date:
    """Return ``candidate`` or today's UTC calendar date.

    Every "today" in the package goes through this helper so a single clock
    governs record defaults and report windows.
    """

    if candidate is not None:
        return candidate
    return resolve_timestamp(None).date()


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Args:
        prefix (str): Single-letter designator of the record kind.
        when (datetime | None): Timestamp used for the sortable part. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{XXXX}``.

    The trailing hex block keeps identifiers unique when several records share
    the same microsecond, which happens when tests pin the clock.
    """

    when = when or resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:4].upper()}"


def money_sum(values: Iterable[Decimal]) -> Decimal:
    """Sum monetary values exactly, starting from ``Decimal('0.00')``."""

    return sum(values, Decimal("0.00"))


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        InvalidQuantity: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.warning("Quantity validation failed: %s", quantity)
        raise InvalidQuantity("Quantity must be greater than zero")


def require_nonnegative_count(value: int, *, label: str) -> None:
    if value < 0:
        log.warning("%s validation failed: %s", label, value)
        raise InvalidQuantity(f"{label} must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    """Validate that an income or expense amount is strictly positive.

    Raises:
        InvalidAmount: If ``amount`` is zero or negative.
    """
    if amount <= Decimal("0"):
        log.warning("Monetary value validation failed: %s", amount)
        raise InvalidAmount("Amount must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a price or discount is nonnegative.

    Raises:
        InvalidAmount: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.warning("Monetary value validation failed: %s", amount)
        raise InvalidAmount("Amount must be zero or positive")


def require_name(name: str) -> str:
    """Return ``name`` trimmed, rejecting blank or whitespace-only input.

    Raises:
        EmptyName: If nothing remains after trimming.
    """
    trimmed = (name or "").strip()
    if not trimmed:
        log.warning("Rejected blank name")
        raise EmptyName("Name must not be blank")
    return trimmed


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries storing the rows of one sheet so repeated
    queries do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Every write funnels through here, so this is also where the context is
    flagged as holding unsaved changes. Missing buckets are ignored so callers
    can request targeted invalidation without checking first.
    """

    if not names:
        return

    context._dirty = True
    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_rows_cache(context: RuntimeContext, name: str, loader: Any, key: str) -> Dict[str, Any]:
    """Populate bucket ``name`` with ``all`` rows and a ``by_id`` lookup."""

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        rows = list(loader())
        bucket["all"] = rows
        bucket["by_id"] = {getattr(row, key): row for row in rows}
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _category_bucket_name(kind: CategoryKind) -> str:
    return f"categories:{kind.value}"


def _ensure_categories_cache(context: RuntimeContext, kind: CategoryKind) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context,
        _category_bucket_name(kind),
        lambda: data_manager.iter_categories(context.workbook, kind),
        "category_id",
    )


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context,
        "products",
        lambda: data_manager.iter_products(context.workbook),
        "product_id",
    )


def _ensure_income_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context,
        "income",
        lambda: data_manager.iter_income(context.workbook),
        "income_id",
    )


def _ensure_expenses_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context,
        "expenses",
        lambda: data_manager.iter_expenses(context.workbook),
        "expense_id",
    )


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context,
        "sales",
        lambda: data_manager.iter_sales(context.workbook),
        "sale_id",
    )


def _ensure_sale_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sale item bucket, grouping rows by their parent sale."""

    bucket = _get_cache_bucket(context, "sale_items")
    if "all" not in bucket:
        rows = list(data_manager.iter_sale_items(context.workbook))
        by_sale: Dict[str, List[data_manager.SaleItemRow]] = {}
        for row in rows:
            by_sale.setdefault(row.sale_id, []).append(row)
        bucket["all"] = rows
        bucket["by_sale"] = by_sale
        log.debug("Populated sale_items cache with %d entries", len(rows))
    return bucket


def _lookup_owned(bucket: Dict[str, Any], owner: str, record_id: str, label: str) -> Any:
    """Return ``bucket['by_id'][record_id]`` if it belongs to ``owner``."""

    row = bucket["by_id"].get(record_id)
    if row is None or row.user_id != owner:
        log.warning("%s lookup failed for id '%s' (account '%s')", label, record_id, owner)
        raise MissingReferenceError(f"Unknown {label.lower()} id: {record_id}")
    return row


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    # Taken before opening: a save in between forces a reload, never a miss.
    fingerprint = data_manager.workbook_fingerprint(settings.data_file)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, _fingerprint=fingerprint)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


class StoreTransaction:
    """Handle for one locked reload, write and save cycle on the data file."""

    def __init__(self) -> None:
        self.discarded = False

    def discard(self) -> None:
        """Skip the closing save. Writes made so far stay in memory only."""
        self.discarded = True


def _sync_with_store(context: RuntimeContext) -> None:
    """Reload the workbook if another session saved it. Caller holds the lock."""

    current = data_manager.workbook_fingerprint(context.settings.data_file)
    if current == context._fingerprint:
        return
    if context._dirty:
        log.error("Workbook '%s' changed on disk under unsaved changes", context.settings.data_file)
        raise StaleContextError(
            f"Workbook '{context.settings.data_file}' was saved by another session; "
            "reload it before writing"
        )
    context.workbook = data_manager.refresh_workbook(context.settings.data_file)
    context._cache.clear()
    context._fingerprint = current
    log.info("Reloaded workbook '%s' saved by another session", context.settings.data_file)


def _write_store(context: RuntimeContext) -> None:
    """Save pending writes and record the new file state. Caller holds the lock."""

    if not context._dirty:
        log.debug("No unsaved changes for '%s'", context.settings.data_file)
        return
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    context._fingerprint = data_manager.workbook_fingerprint(context.settings.data_file)
    context._dirty = False
    log.info("Persisted workbook '%s'", context.settings.data_file)


@contextmanager
def store_transaction(context: RuntimeContext) -> Iterator[StoreTransaction]:
    """Run a block of writes as one locked load-modify-save cycle.

    The data file lock is held for the whole block. On entry the workbook is
    reloaded if another session saved the file since this context last read
    or wrote it, so conditional writes such as stock reservations see the
    current values. A clean exit saves the workbook before the lock is
    released; an exception or :meth:`StoreTransaction.discard` skips the save.
    Nested calls on the same context join the outer cycle and share its
    handle.

    Raises:
        StaleContextError: If the context holds unsaved changes and another
            session saved the file since it was loaded.
        filelock.Timeout: If another session keeps the lock past
            :data:`data_manager.STORE_LOCK_TIMEOUT`.
    """

    if context._transaction is not None:
        yield context._transaction
        return

    with data_manager.workbook_lock(context.settings.data_file):
        _sync_with_store(context)
        transaction = StoreTransaction()
        context._transaction = transaction
        try:
            yield transaction
        finally:
            context._transaction = None
        if transaction.discarded:
            log.info("Discarded store transaction on '%s'", context.settings.data_file)
        else:
            _write_store(context)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Nothing is written when the context holds no unsaved changes.

    Raises:
        StaleContextError: If another session saved the file after this
            context loaded it, since saving would erase that session's work.
    """
    if context._transaction is not None:
        _write_store(context)
        return
    with data_manager.workbook_lock(context.settings.data_file):
        _sync_with_store(context)
        _write_store(context)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    This is effectively a "revert" operation: a new :class:`RuntimeContext`
    with an empty cache is returned and the previous one should be dropped.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    fingerprint = data_manager.workbook_fingerprint(context.settings.data_file)
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, _fingerprint=fingerprint)


# ---------------------------------------------------------------------------
# Category registry
# ---------------------------------------------------------------------------


def add_category(context: RuntimeContext, owner: str, kind: CategoryKind, name: str) -> data_manager.CategoryRow:
    """Register a named bucket for income or expense records.

    Names are trimmed but not deduplicated: two categories may share a name,
    and names differing only by case are distinct.

    Raises:
        EmptyName: If ``name`` is blank after trimming.
    """
    kind = CategoryKind(kind)
    record = data_manager.CategoryRow(
        category_id=generate_record_id("C"),
        user_id=owner,
        name=require_name(name),
    )
    data_manager.append_category(context.workbook, kind, record)
    _invalidate_cache(context, _category_bucket_name(kind))
    log.info("Added %s category '%s' (%s)", kind.value, record.name, record.category_id)
    return record


def list_categories(context: RuntimeContext, owner: str, kind: CategoryKind) -> List[data_manager.CategoryRow]:
    """Return the owner's categories of ``kind`` in sheet order."""
    cache = _ensure_categories_cache(context, CategoryKind(kind))
    return [row for row in cache["all"] if row.user_id == owner]


def get_category(context: RuntimeContext, owner: str, kind: CategoryKind, category_id: str) -> data_manager.CategoryRow:
    """Resolve one of the owner's categories.

    Raises:
        MissingReferenceError: If the id is unknown for this owner and kind.
    """
    cache = _ensure_categories_cache(context, CategoryKind(kind))
    return _lookup_owned(cache, owner, category_id, "Category")


def delete_category(context: RuntimeContext, owner: str, kind: CategoryKind, category_id: str) -> None:
    """Hard-delete a category.

    Records still pointing at it keep the dangling id and are reported as
    uncategorized from then on.
    """
    kind = CategoryKind(kind)
    get_category(context, owner, kind, category_id)
    data_manager.delete_rows(context.workbook, CATEGORY_SHEETS[kind].value, "CategoryID", [category_id])
    _invalidate_cache(context, _category_bucket_name(kind))
    log.info("Deleted %s category '%s'", kind.value, category_id)


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    owner: str,
    *,
    name: str,
    sku: str,
    cost_price: Decimal,
    selling_price: Decimal,
    quantity: int,
    low_stock_threshold: int,
    category: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Validate and append a product to the inventory.

    Raises:
        EmptyName: If ``name`` is blank.
        InvalidAmount: If either price is negative.
        InvalidQuantity: If the quantity or threshold is negative.
    """
    product_name = require_name(name)
    require_nonnegative_money(cost_price)
    require_nonnegative_money(selling_price)
    require_nonnegative_count(quantity, label="Quantity")
    require_nonnegative_count(low_stock_threshold, label="Low stock threshold")

    created_at = resolve_timestamp(timestamp)
    record = data_manager.ProductRow(
        product_id=generate_record_id("P", when=created_at),
        user_id=owner,
        name=product_name,
        sku=(sku or "").strip(),
        category=(category.strip() or None) if category else None,
        cost_price=cost_price,
        selling_price=selling_price,
        quantity=quantity,
        low_stock_threshold=low_stock_threshold,
        created_at_iso=created_at.isoformat(),
    )
    data_manager.append_product(context.workbook, record)
    _invalidate_cache(context, "products")
    log.info(
        "Added product '%s' (%s) with quantity=%s threshold=%s",
        record.name,
        record.product_id,
        record.quantity,
        record.low_stock_threshold,
    )
    return record


def list_products(context: RuntimeContext, owner: str) -> List[data_manager.ProductRow]:
    """Return the owner's products, most recently created first."""
    rows = [row for row in _ensure_products_cache(context)["all"] if row.user_id == owner]
    return sorted(rows, key=lambda row: row.created_at_iso, reverse=True)


def get_product(context: RuntimeContext, owner: str, product_id: str) -> data_manager.ProductRow:
    """Resolve one of the owner's products from cache.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown for this owner.
    """
    return _lookup_owned(_ensure_products_cache(context), owner, product_id, "Product")


def delete_product(context: RuntimeContext, owner: str, product_id: str) -> None:
    """Hard-delete a product. Historical sale items keep their product id."""
    get_product(context, owner, product_id)
    data_manager.delete_rows(context.workbook, SheetName.PRODUCTS.value, "ProductID", [product_id])
    _invalidate_cache(context, "products")
    log.info("Deleted product '%s'", product_id)


def update_stock(context: RuntimeContext, owner: str, product_id: str, quantity: int) -> data_manager.ProductRow:
    """Overwrite a product's on-hand quantity (direct stock edit)."""
    get_product(context, owner, product_id)
    require_nonnegative_count(quantity, label="Quantity")
    data_manager.update_product(context.workbook, product_id, field_values={"Quantity": quantity})
    _invalidate_cache(context, "products")
    log.info("Set stock of product '%s' to %s", product_id, quantity)
    return get_product(context, owner, product_id)


def check_availability(context: RuntimeContext, owner: str, product_id: str, requested_qty: int) -> Availability:
    """Report whether ``requested_qty`` units can currently be sold.

    The answer is advisory: it reads the cached product row and does not hold
    any stock. :func:`reserve_stock` remains the authoritative step.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown for this owner.
    """
    product = get_product(context, owner, product_id)
    if requested_qty <= 0 or requested_qty > product.quantity:
        return Insufficient(product_id=product_id, requested=requested_qty, available=product.quantity)
    return Available(product_id=product_id, requested=requested_qty)


def reserve_stock(context: RuntimeContext, owner: str, product_id: str, quantity: int) -> int:
    """Take ``quantity`` units out of stock through the conditional decrement.

    This is the single point where stock is reduced. It may fail even if a
    previous :func:`check_availability` succeeded.

    Returns:
        int: Quantity left on hand.

    Raises:
        InvalidQuantity: If ``quantity`` is not strictly positive.
        MissingReferenceError: If ``product_id`` is unknown for this owner.
        StockConflictError: If the storage layer refuses the decrement.
    """
    require_positive_quantity(quantity)
    get_product(context, owner, product_id)
    try:
        remaining = data_manager.reserve_product_quantity(context.workbook, product_id, quantity)
    finally:
        _invalidate_cache(context, "products")
    if remaining is None:
        available = get_product(context, owner, product_id).quantity
        log.warning(
            "Stock conflict on product '%s': requested %s, available %s",
            product_id,
            quantity,
            available,
        )
        raise StockConflictError(product_id, quantity, available)
    log.info("Reserved %s units of product '%s' (remaining=%s)", quantity, product_id, remaining)
    return remaining


def release_stock(context: RuntimeContext, owner: str, product_id: str, quantity: int) -> int:
    """Give back units taken by :func:`reserve_stock` during a sale rollback."""
    require_positive_quantity(quantity)
    get_product(context, owner, product_id)
    try:
        restored = data_manager.release_product_quantity(context.workbook, product_id, quantity)
    finally:
        _invalidate_cache(context, "products")
    log.info("Released %s units of product '%s' (on hand=%s)", quantity, product_id, restored)
    return restored


def is_low_stock(product: data_manager.ProductRow) -> bool:
    """Return ``True`` when the quantity is at or below the reorder threshold."""
    return product.quantity <= product.low_stock_threshold


def select_low_stock(products: Iterable[data_manager.ProductRow], limit: Optional[int] = None) -> List[data_manager.ProductRow]:
    """Filter ``products`` to the low-stock ones, ordered by product id.

    Args:
        products: Candidate rows, already scoped to one owner.
        limit (int | None): Maximum number of rows to return; ``None`` keeps
            them all.
    """
    flagged = sorted((p for p in products if is_low_stock(p)), key=lambda p: p.product_id)
    return flagged if limit is None else flagged[:limit]


def list_low_stock(context: RuntimeContext, owner: str, limit: Optional[int] = None) -> List[data_manager.ProductRow]:
    """Return the owner's low-stock products, truncated to ``limit``."""
    products = [row for row in _ensure_products_cache(context)["all"] if row.user_id == owner]
    return select_low_stock(products, limit)


def calculate_inventory_value(products: Iterable[data_manager.ProductRow]) -> Dict[str, Decimal]:
    """Value the stock on hand at cost and at selling price."""
    at_cost = Decimal("0.00")
    at_retail = Decimal("0.00")
    units = 0
    for product in products:
        at_cost += product.cost_price * product.quantity
        at_retail += product.selling_price * product.quantity
        units += product.quantity
    return {"units": Decimal(units), "cost_value": at_cost, "retail_value": at_retail}


# ---------------------------------------------------------------------------
# Financial record store
# ---------------------------------------------------------------------------


def _require_category_reference(context: RuntimeContext, owner: str, kind: CategoryKind, category_id: Optional[str]) -> None:
    if category_id is not None:
        get_category(context, owner, kind, category_id)


def add_income(
    context: RuntimeContext,
    owner: str,
    *,
    amount: Decimal,
    income_date: Optional[date] = None,
    description: Optional[str] = None,
    reference: Optional[str] = None,
    category_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.IncomeRow:
    """Validate and append an income entry.

    ``income_date`` defaults to today. A non-null ``category_id`` must name
    one of the owner's income categories.

    Raises:
        InvalidAmount: If ``amount`` is not strictly positive.
        MissingReferenceError: If the category cannot be resolved.
    """
    require_positive_money(amount)
    _require_category_reference(context, owner, CategoryKind.INCOME, category_id)

    created_at = resolve_timestamp(timestamp)
    record = data_manager.IncomeRow(
        income_id=generate_record_id("I", when=created_at),
        user_id=owner,
        amount=amount,
        description=description,
        reference=reference,
        category_id=category_id,
        income_date=income_date if income_date is not None else created_at.date(),
        created_at_iso=created_at.isoformat(),
    )
    data_manager.append_income(context.workbook, record)
    _invalidate_cache(context, "income")
    log.info("Recorded income '%s' of %s on %s", record.income_id, record.amount, record.income_date)
    return record


def list_income(context: RuntimeContext, owner: str) -> List[data_manager.IncomeRow]:
    """Return the owner's income entries, latest ``income_date`` first."""
    rows = [row for row in _ensure_income_cache(context)["all"] if row.user_id == owner]
    return sorted(rows, key=lambda row: row.income_date, reverse=True)


def get_income(context: RuntimeContext, owner: str, income_id: str) -> data_manager.IncomeRow:
    return _lookup_owned(_ensure_income_cache(context), owner, income_id, "Income")


def delete_income(context: RuntimeContext, owner: str, income_id: str) -> None:
    """Hard-delete an income entry."""
    get_income(context, owner, income_id)
    data_manager.delete_rows(context.workbook, SheetName.INCOME.value, "IncomeID", [income_id])
    _invalidate_cache(context, "income")
    log.info("Deleted income '%s'", income_id)


def add_expense(
    context: RuntimeContext,
    owner: str,
    *,
    amount: Decimal,
    expense_date: Optional[date] = None,
    description: Optional[str] = None,
    category_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ExpenseRow:
    """Validate and append an expense entry.

    Raises:
        InvalidAmount: If ``amount`` is not strictly positive.
        MissingReferenceError: If the category cannot be resolved.
    """
    require_positive_money(amount)
    _require_category_reference(context, owner, CategoryKind.EXPENSE, category_id)

    created_at = resolve_timestamp(timestamp)
    record = data_manager.ExpenseRow(
        expense_id=generate_record_id("E", when=created_at),
        user_id=owner,
        amount=amount,
        description=description,
        category_id=category_id,
        expense_date=expense_date if expense_date is not None else created_at.date(),
        created_at_iso=created_at.isoformat(),
    )
    data_manager.append_expense(context.workbook, record)
    _invalidate_cache(context, "expenses")
    log.info("Recorded expense '%s' of %s on %s", record.expense_id, record.amount, record.expense_date)
    return record


def list_expenses(context: RuntimeContext, owner: str) -> List[data_manager.ExpenseRow]:
    """Return the owner's expense entries, latest ``expense_date`` first."""
    rows = [row for row in _ensure_expenses_cache(context)["all"] if row.user_id == owner]
    return sorted(rows, key=lambda row: row.expense_date, reverse=True)


def get_expense(context: RuntimeContext, owner: str, expense_id: str) -> data_manager.ExpenseRow:
    return _lookup_owned(_ensure_expenses_cache(context), owner, expense_id, "Expense")


def delete_expense(context: RuntimeContext, owner: str, expense_id: str) -> None:
    """Hard-delete an expense entry."""
    get_expense(context, owner, expense_id)
    data_manager.delete_rows(context.workbook, SheetName.EXPENSES.value, "ExpenseID", [expense_id])
    _invalidate_cache(context, "expenses")
    log.info("Deleted expense '%s'", expense_id)


def insert_sale(context: RuntimeContext, record: data_manager.SaleRow) -> None:
    """Append a sale header. Only the sale coordinator should call this."""
    data_manager.append_sale(context.workbook, record)
    _invalidate_cache(context, "sales")


def insert_sale_items(context: RuntimeContext, records: List[data_manager.SaleItemRow]) -> None:
    """Append the line items of one sale. Only the sale coordinator should call this."""
    data_manager.append_sale_items(context.workbook, records)
    _invalidate_cache(context, "sale_items")


def list_sales(context: RuntimeContext, owner: str) -> List[data_manager.SaleRow]:
    """Return the owner's sales, most recent ``sale_date`` first."""
    rows = [row for row in _ensure_sales_cache(context)["all"] if row.user_id == owner]
    return sorted(rows, key=lambda row: row.sale_date_iso, reverse=True)


def get_sale(context: RuntimeContext, owner: str, sale_id: str) -> data_manager.SaleRow:
    return _lookup_owned(_ensure_sales_cache(context), owner, sale_id, "Sale")


def list_sale_items(context: RuntimeContext, owner: str, sale_id: str) -> List[data_manager.SaleItemRow]:
    """Return the line items of one of the owner's sales, in insertion order."""
    get_sale(context, owner, sale_id)
    return list(_ensure_sale_items_cache(context)["by_sale"].get(sale_id, []))


def delete_sale(context: RuntimeContext, owner: str, sale_id: str) -> int:
    """Delete a sale together with its line items.

    Stock and income side effects are not reversed here; the sale
    coordinator handles those during a rollback.

    Returns:
        int: Number of line items removed.
    """
    get_sale(context, owner, sale_id)
    removed = data_manager.delete_rows(context.workbook, SheetName.SALE_ITEMS.value, "SaleID", [sale_id])
    data_manager.delete_rows(context.workbook, SheetName.SALES.value, "SaleID", [sale_id])
    _invalidate_cache(context, "sales", "sale_items")
    log.info("Deleted sale '%s' and %d line item(s)", sale_id, removed)
    return removed
