"""Command-line entry points for the bookkeeping toolkit.

All orchestration in this module is limited to argparse wiring, turning
command-line text into the typed primitives the business layer expects, and
printing what it returns. Keeping the CLI thin means any other front-end can
call the same business functions with the same inputs.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, reports, sales
from .constants import REPORT_WINDOWS, CategoryKind, PaymentMethod

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RULE_VIOLATION = 2
EXIT_MISSING_FILE = 3
EXIT_SALE_FAILED = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands that write to the workbook. Only those run
    inside a store transaction and save the data file.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="bizbooks-cli",
        description="Command-line tools for the Bizbooks bookkeeping workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--account",
        default=None,
        help="Account to act on (defaults to DefaultAccount from config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and new records."""
    specs = {
        "add-category": register_add_category_command(subparsers),
        "delete-category": register_delete_category_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "delete-product": register_delete_command(
            subparsers, "delete-product", "Delete a product.", "--product-id", run_delete_product
        ),
        "set-stock": register_set_stock_command(subparsers),
        "add-income": register_add_income_command(subparsers),
        "delete-income": register_delete_command(
            subparsers, "delete-income", "Delete an income entry.", "--income-id", run_delete_income
        ),
        "add-expense": register_add_expense_command(subparsers),
        "delete-expense": register_delete_command(
            subparsers, "delete-expense", "Delete an expense entry.", "--expense-id", run_delete_expense
        ),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "categories": register_categories_command(subparsers),
        "products": register_simple_command(subparsers, "products", "List products.", run_products_report),
        "low-stock": register_low_stock_command(subparsers),
        "income": register_simple_command(subparsers, "income", "List income entries.", run_income_report),
        "expenses": register_simple_command(subparsers, "expenses", "List expense entries.", run_expenses_report),
        "sales": register_simple_command(subparsers, "sales", "List completed sales.", run_sales_report),
        "dashboard": register_simple_command(subparsers, "dashboard", "Display the dashboard summary.", run_dashboard),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Create an income or expense category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in CategoryKind], required=True)
        parser.add_argument("--name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category, mutates=True)


def register_delete_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-category``."""
    name = "delete-category"
    help_text = "Delete an income or expense category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in CategoryKind], required=True)
        parser.add_argument("--category-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_category, mutates=True)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--cost-price", required=True)
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--threshold", default="5", help="Low stock threshold (default: 5).")
        parser.add_argument("--category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_set_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Overwrite the quantity on hand of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock, mutates=True)


def register_add_income_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-income``."""
    name = "add-income"
    help_text = "Record an income entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", dest="entry_date", default=None, help="ISO date (default: today).")
        parser.add_argument("--description", default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--category-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_income, mutates=True)


def register_add_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-expense``."""
    name = "add-expense"
    help_text = "Record an expense entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", dest="entry_date", default=None, help="ISO date (default: today).")
        parser.add_argument("--description", default=None)
        parser.add_argument("--category-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_expense, mutates=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Finalize a sale from one or more cart lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT_ID=QTY",
            help="Cart line; repeat for several products.",
        )
        parser.add_argument("--discount", default="0")
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    id_option: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a ``delete-*`` command taking a single record id."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(id_option, dest="record_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=True)


def register_simple_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a read command that takes no options."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_categories_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``categories``."""
    name = "categories"
    help_text = "List income or expense categories."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in CategoryKind], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_categories_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products at or below their reorder threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", default=None, help="Show at most this many products.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display windowed revenue, expenses and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, choices=REPORT_WINDOWS, default=30)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_account(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    """Return ``--account`` when given, otherwise the configured default."""
    account = getattr(args, "account", None)
    return account if account else context.settings.default_account


def parse_money(text: str) -> Decimal:
    """Parse a decimal amount, rejecting text that is not a finite number."""
    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Not a valid amount: {text!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Not a valid amount: {text!r}")
    return value


def parse_count(text: str) -> int:
    try:
        return int(text)
    except ValueError as exc:
        raise ValueError(f"Not a whole number: {text!r}") from exc


def parse_date(text: Optional[str]) -> Optional[date]:
    if text is None:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Not an ISO date (YYYY-MM-DD): {text!r}") from exc


def parse_cart_item(text: str) -> Tuple[str, int]:
    """Split ``PRODUCT_ID=QTY`` into its parts."""
    product_id, sep, quantity = text.partition("=")
    if not sep or not product_id.strip():
        raise ValueError(f"Cart items must look like PRODUCT_ID=QTY, got {text!r}")
    return product_id.strip(), parse_count(quantity.strip())


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "name": args.name,
        "sku": args.sku,
        "cost_price": parse_money(args.cost_price),
        "selling_price": parse_money(args.selling_price),
        "quantity": parse_count(args.quantity),
        "low_stock_threshold": parse_count(args.threshold),
        "category": args.category,
    }


def translate_add_income(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-income request."""
    return {
        "amount": parse_money(args.amount),
        "income_date": parse_date(args.entry_date),
        "description": args.description,
        "reference": args.reference,
        "category_id": args.category_id,
    }


def translate_add_expense(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-expense request."""
    return {
        "amount": parse_money(args.amount),
        "expense_date": parse_date(args.entry_date),
        "description": args.description,
        "category_id": args.category_id,
    }


def translate_sale(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a finalize-sale request."""
    return {
        "items": [parse_cart_item(item) for item in args.items],
        "discount": parse_money(args.discount),
        "payment_method": PaymentMethod(args.payment_method),
    }


def format_money(amount: Decimal) -> str:
    return f"{amount:,.2f}"


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow in the BLL."""
    category = core_logic.add_category(context, resolve_account(context, args), CategoryKind(args.kind), args.name)
    print(f"Added {args.kind} category {category.category_id}: {category.name}")
    return EXIT_OK


def run_delete_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_category(context, resolve_account(context, args), CategoryKind(args.kind), args.category_id)
    return EXIT_OK


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    payload = translate_add_product(args)
    product = core_logic.add_product(context, resolve_account(context, args), **payload)
    print(f"Added product {product.product_id}: {product.name}")
    return EXIT_OK


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, resolve_account(context, args), args.record_id)
    return EXIT_OK


def run_set_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_stock(context, resolve_account(context, args), args.product_id, parse_count(args.quantity))
    return EXIT_OK


def run_add_income(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-income workflow in the BLL."""
    payload = translate_add_income(args)
    record = core_logic.add_income(context, resolve_account(context, args), **payload)
    print(f"Recorded income {record.income_id}: {format_money(record.amount)} on {record.income_date}")
    return EXIT_OK


def run_delete_income(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_income(context, resolve_account(context, args), args.record_id)
    return EXIT_OK


def run_add_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-expense workflow in the BLL."""
    payload = translate_add_expense(args)
    record = core_logic.add_expense(context, resolve_account(context, args), **payload)
    print(f"Recorded expense {record.expense_id}: {format_money(record.amount)} on {record.expense_date}")
    return EXIT_OK


def run_delete_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_expense(context, resolve_account(context, args), args.record_id)
    return EXIT_OK


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow and report its outcome.

    A failed sale returns a non-zero exit code so the workbook is not saved.
    """
    payload = translate_sale(args)
    outcome = sales.finalize_sale(context, resolve_account(context, args), **payload)
    if isinstance(outcome, sales.SaleFailed):
        for line in outcome.failed_lines:
            log.error(
                "Product '%s': requested %s, only %s available",
                line.product_id,
                line.requested,
                line.available,
            )
        if outcome.needs_reconciliation:
            log.error("Provisional sale '%s' needs manual reconciliation", outcome.sale_id)
        log.error("Sale failed at step '%s': %s", outcome.step.value, outcome.error)
        return EXIT_SALE_FAILED
    print(f"Sale {outcome.sale.sale_id} completed: total {format_money(outcome.sale.total_amount)}")
    return EXIT_OK


def run_categories_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for category in core_logic.list_categories(context, resolve_account(context, args), CategoryKind(args.kind)):
        print(f"{category.category_id}  {category.name}")
    return EXIT_OK


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product listing workflow."""
    products = core_logic.list_products(context, resolve_account(context, args))
    for product in products:
        flag = " LOW" if core_logic.is_low_stock(product) else ""
        print(
            f"{product.product_id}  {product.name} [{product.sku}]  "
            f"qty={product.quantity}  price={format_money(product.selling_price)}{flag}"
        )
    value = core_logic.calculate_inventory_value(products)
    print(f"Stock value: cost {format_money(value['cost_value'])}, retail {format_money(value['retail_value'])}")
    return EXIT_OK


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    limit = parse_count(args.limit) if args.limit is not None else None
    for product in core_logic.list_low_stock(context, resolve_account(context, args), limit):
        print(f"{product.product_id}  {product.name}  {product.quantity} left (threshold {product.low_stock_threshold})")
    return EXIT_OK


def run_income_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.list_income(context, resolve_account(context, args))
    for record in records:
        print(f"{record.income_date}  {format_money(record.amount)}  {record.description or ''}")
    print(f"Total: {format_money(reports.income_total(records))}")
    return EXIT_OK


def run_expenses_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.list_expenses(context, resolve_account(context, args))
    for record in records:
        print(f"{record.expense_date}  {format_money(record.amount)}  {record.description or ''}")
    print(f"Total: {format_money(reports.expense_total(records))}")
    return EXIT_OK


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.list_sales(context, resolve_account(context, args))
    for sale in records:
        print(f"{sale.sale_date_iso}  {sale.sale_id}  {format_money(sale.total_amount)}  {sale.payment_method}")
    print(f"Total sales: {len(records)} transactions")
    return EXIT_OK


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard workflow."""
    snapshot = reports.take_snapshot(context, resolve_account(context, args))
    view = reports.build_dashboard(snapshot, low_stock_limit=context.settings.low_stock_display_limit)
    totals = view.totals
    print(f"Today's revenue:  {format_money(totals.today_revenue)}")
    print(f"Week revenue:     {format_money(totals.week_revenue)}")
    print(f"Month revenue:    {format_money(totals.month_revenue)}")
    print(f"Total expenses:   {format_money(totals.total_expenses)}")
    print(f"Net profit:       {format_money(totals.net_profit)}")
    print(f"Sales: {totals.total_sales}  Low stock: {totals.low_stock_count}")
    for bucket in view.revenue_trend:
        print(f"  {bucket.day:%a %d}  {format_money(bucket.amount)}")
    for entry in view.expense_breakdown:
        print(f"  {entry.name}: {format_money(entry.amount)}")
    for product in view.low_stock:
        print(f"  LOW {product.name}: {product.quantity} left")
    return EXIT_OK


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the windowed report workflow."""
    snapshot = reports.take_snapshot(context, resolve_account(context, args))
    view = reports.build_report(snapshot, args.days)
    summary = view.summary
    print(f"{summary.start} .. {summary.end}")
    print(f"Revenue:  {format_money(summary.revenue)}")
    print(f"Expenses: {format_money(summary.expenses)}")
    print(f"Profit:   {format_money(summary.profit)}")
    print(f"Sales:    {summary.sales_count}")
    for point in view.trend:
        print(f"  {point.day:%b %d}  {format_money(point.revenue)}  {format_money(point.expenses)}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_RULE_VIOLATION
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_FAILURE


def run_write_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Run a mutating command inside one locked reload, write and save cycle.

    A non-zero exit code discards the writes, so a failed command never
    reaches the data file.
    """
    try:
        with core_logic.store_transaction(context) as store:
            exit_code = dispatch_command(context, args, command_table)
            if exit_code != EXIT_OK:
                store.discard()
    except PermissionError as error:
        raise RuntimeError(str(error)) from error
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        spec = command_table.get(getattr(args, "command", None))
        if spec is not None and spec.mutates:
            return run_write_command(context, args, command_table)
        # read-only commands never save
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
