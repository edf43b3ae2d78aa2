"""Command-line entry points for the piece ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the request objects consumed by the business
layer, and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end
that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import cancellation, core_logic, fifo, log, sales
from .constants import DEFAULT_CURRENCY, Direction, SaleType, SourceType
from .demand import PieceLineDraft, SaleLineDraft, SetLineDraft


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="piece-ledger",
        description="Stock, FIFO costing, and sales for the piece ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as lot receipts and sales."""
    specs = {
        "receive-lot": register_receive_lot_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "sale": register_sale_command(subparsers),
        "cancel-sale": register_cancel_sale_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "retry-compensations": register_retry_compensations_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "fifo": register_fifo_command(subparsers),
        "show-sale": register_show_sale_command(subparsers),
        "audit": register_audit_command(subparsers),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_receive_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive-lot``."""
    name = "receive-lot"
    help_text = "Receive a purchase lot into stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-date", required=True, help="ISO date, e.g. 2024-05-01.")
        parser.add_argument("--total-cost", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            metavar="PIECE_REF:QTY",
            help="Piece received in the lot; repeat for each piece.",
        )
        parser.add_argument("--lot-code", default=None)
        parser.add_argument("--supplier", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive_lot)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Record a signed stock correction for one piece."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--piece-ref", required=True)
        parser.add_argument("--quantity", required=True, type=int, help="Positive adds, negative removes.")
        parser.add_argument("--comment", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale described by a JSON draft file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--draft", required=True, type=Path, help="Path to the sale draft JSON file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_cancel_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-sale``."""
    name = "cancel-sale"
    help_text = "Cancel a confirmed sale and return its pieces to stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel_sale)


def register_update_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Edit the comment, channel, payment date, or net amount of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True, type=int)
        parser.add_argument("--comment", default=None)
        parser.add_argument("--sales-channel", default=None)
        parser.add_argument("--paid-at", default=None)
        parser.add_argument("--net-seller-amount", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale)


def register_retry_compensations_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``retry-compensations``."""
    name = "retry-compensations"
    help_text = "Finish the cleanup of failed sales left pending."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_retry_compensations)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock on hand and its FIFO value."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_fifo_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``fifo``."""
    name = "fifo"
    help_text = "Show the FIFO buckets of a piece and preview an allocation."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--piece-ref", required=True)
        parser.add_argument("--quantity", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_fifo_report)


def register_show_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show-sale``."""
    name = "show-sale"
    help_text = "Display a sale with its lines and consumed lots."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_sale)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "List orphaned sale movements and pending compensations."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the stock movement journal."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--piece-ref", default=None)
        parser.add_argument("--direction", choices=[member.value for member in Direction], default=None)
        parser.add_argument("--source-type", choices=[member.value for member in SourceType], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_receive_lot(args: argparse.Namespace) -> core_logic.LotReceiptCommand:
    """Translate CLI args into a lot receipt command object."""
    lines: List[core_logic.LotLineCommand] = []
    for raw in args.lines:
        piece_ref, separator, quantity = raw.rpartition(":")
        if not separator or not piece_ref:
            raise ValueError(f"Invalid --line value '{raw}', expected PIECE_REF:QTY")
        lines.append(core_logic.LotLineCommand(piece_ref=piece_ref, quantity=int(quantity)))
    return core_logic.LotReceiptCommand(
        purchase_date=date.fromisoformat(args.purchase_date),
        total_cost=Decimal(args.total_cost),
        lines=lines,
        lot_code=args.lot_code,
        supplier=args.supplier,
        notes=args.notes,
    )


def translate_adjust(args: argparse.Namespace) -> core_logic.AdjustmentCommand:
    """Translate CLI args into an adjustment command object."""
    return core_logic.AdjustmentCommand(
        piece_ref=args.piece_ref,
        quantity=args.quantity,
        comment=args.comment,
    )


def translate_sale_draft(args: argparse.Namespace) -> sales.SaleDraft:
    """Read the JSON file named by ``--draft`` into a sale draft."""
    payload = json.loads(Path(args.draft).read_text(encoding="utf-8"), parse_float=Decimal)
    return parse_sale_draft(payload)


def parse_sale_draft(payload: Mapping[str, Any]) -> sales.SaleDraft:
    """Build a :class:`~piece_ledger.sales.SaleDraft` from decoded JSON.

    Each item names its kind through ``item_kind``. Money values are read as
    :class:`~decimal.Decimal`.
    """
    items = [parse_sale_line(item) for item in payload.get("items") or []]
    return sales.SaleDraft(
        sale_type=payload.get("sale_type") or "",
        sales_channel=payload.get("sales_channel") or "",
        paid_at=payload.get("paid_at") or "",
        net_seller_amount=_optional_decimal(payload.get("net_seller_amount")),
        items=items,
        currency=payload.get("currency") or DEFAULT_CURRENCY,
        comment=payload.get("comment"),
    )


def parse_sale_line(item: Mapping[str, Any]) -> SaleLineDraft:
    """Build the draft variant matching ``item["item_kind"]``."""
    kind = item.get("item_kind")
    if kind == SaleType.SET.value:
        return SetLineDraft(
            set_id=item.get("set_id") or "",
            quantity=item.get("quantity"),
            is_partial_set=bool(item.get("is_partial_set", False)),
            net_amount=_optional_decimal(item.get("net_amount")),
            overrides=item.get("overrides"),
            piece_overrides=item.get("piece_overrides"),
            comment=item.get("comment"),
        )
    if kind == SaleType.PIECE.value:
        return PieceLineDraft(
            piece_ref=item.get("piece_ref") or "",
            quantity=item.get("quantity"),
            net_amount=_optional_decimal(item.get("net_amount")),
            comment=item.get("comment"),
        )
    raise core_logic.ContractViolationError(f"Unsupported item_kind: {kind!r}")


def translate_update_sale(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a sale metadata payload holding only the given fields."""
    payload: Dict[str, Any] = {}
    if args.comment is not None:
        payload["comment"] = args.comment
    if args.sales_channel is not None:
        payload["sales_channel"] = args.sales_channel
    if args.paid_at is not None:
        payload["paid_at"] = args.paid_at
    if args.net_seller_amount is not None:
        payload["net_seller_amount"] = Decimal(args.net_seller_amount)
    return payload


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_receive_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot receipt workflow via the BLL."""
    command = translate_receive_lot(args)
    receipt = core_logic.record_lot_receipt(context, command)
    print(f"Received lot {receipt.lot.lot_id}: {receipt.lot.total_pieces} piece(s), {len(receipt.movements)} movement(s)")
    return 0


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the adjustment workflow via the BLL."""
    command = translate_adjust(args)
    movement = core_logic.record_adjustment(context, command)
    print(f"Adjusted {movement.piece_ref} by {movement.quantity}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow; a failed sale exits with 2 so nothing is saved."""
    draft = translate_sale_draft(args)
    result = sales.create_sale(context, draft)
    if not result.success:
        print(f"Sale failed: {result.error}")
        for error in result.validation_errors:
            print(f"  {error.field}: {error.message}")
        return 2
    print(f"Recorded sale {result.sale_id} (cost {result.debug.get('total_cost_amount')})")
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancellation workflow."""
    result = cancellation.cancel_sale(context, args.sale_id)
    if not result.ok:
        for error in result.errors:
            print(f"Cancellation failed: {error.message}")
        return 2
    print(f"Cancelled sale {result.sale_id}: {result.movements_created} movement(s) returned to stock")
    for warning in result.warnings:
        print(f"Warning: {warning}")
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale metadata update workflow."""
    result = sales.update_sale_meta(context, args.sale_id, translate_update_sale(args))
    if not result.ok:
        for error in result.errors:
            print(f"  {error.field}: {error.message}")
        return 2
    print(f"Updated sale {result.sale_id}")
    return 0


def run_retry_compensations(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Replay pending compensations."""
    resolved = sales.retry_pending_compensations(context)
    pending = sales.list_pending_compensations(context)
    print(f"Resolved {len(resolved)} compensation(s), {len(pending)} still pending")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    stock = core_logic.calculate_stock(context)
    valuation = fifo.calculate_stock_valuation(context)
    for piece_ref in sorted(stock):
        value = valuation.get(piece_ref)
        total_value = value.total_value if value is not None else Decimal("0")
        print(f"{piece_ref}\t{stock[piece_ref]}\t{total_value}")
    return 0


def run_fifo_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the FIFO inspection workflow."""
    view = fifo.describe_fifo(context, args.piece_ref, args.quantity)
    print(f"Piece {view.piece_ref}: {len(view.movements)} movement(s)")
    for bucket in view.buckets:
        print(f"  lot {bucket.lot_id}\t{bucket.quantity_available} @ {bucket.unit_cost}")
    if view.allocation is not None:
        print(f"Allocation of {view.allocation.requested_quantity}: cost {view.allocation.total_cost}")
        for chunk in view.allocation.chunks:
            print(f"  lot {chunk.lot_id}\t{chunk.quantity} @ {chunk.unit_cost}")
    if view.error:
        print(view.error)
    return 0


def run_show_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display one sale."""
    detail = sales.get_sale_detail(context, args.sale_id)
    sale = detail.sale
    print(
        f"Sale {sale.sale_id} [{sale.status}] {sale.sale_type} via {sale.sales_channel} on {sale.paid_at}: "
        f"net {sale.net_seller_amount} cost {sale.total_cost_amount} margin {sale.total_margin_amount}"
    )
    for item in detail.items:
        label = item.set_id if item.item_kind == SaleType.SET.value else item.piece_ref
        print(f"  #{item.line_index} {item.item_kind} {label} x{item.quantity}: net {item.net_amount} cost {item.cost_amount}")
    for piece in detail.pieces:
        print(f"    {piece.piece_ref} lot {piece.lot_id}\t{piece.quantity} @ {piece.unit_cost}")
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List orphaned movements and pending compensations."""
    orphans = core_logic.find_orphaned_movements(context)
    pending = sales.list_pending_compensations(context)
    print(f"{len(orphans)} orphaned movement(s)")
    for movement in orphans:
        print(f"  #{movement.movement_id} {movement.piece_ref} {movement.direction} {movement.quantity} source {movement.source_id}")
    print(f"{len(pending)} pending compensation(s)")
    for intent in pending:
        print(f"  #{intent.compensation_id} sale {intent.sale_id}: {intent.error}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the movement journal workflow."""
    movements = core_logic.list_movements(
        context,
        piece_ref=args.piece_ref,
        direction=Direction(args.direction) if args.direction else None,
        source_type=SourceType(args.source_type) if args.source_type else None,
    )
    for movement in movements:
        print(
            f"{movement.created_at}\t{movement.piece_ref}\t{movement.direction}\t{movement.quantity}"
            f"\t{movement.unit_cost}\t{movement.source_type}:{movement.source_id}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
