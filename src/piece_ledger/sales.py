"""Sale creation, compensation, and sale metadata updates.

The workbook offers no multi-statement transaction, so a sale is written as a
sequence of single-table steps:

1. validate the draft without touching storage;
2. insert the header (CONFIRMED, zeroed cost and margin);
3. insert every line in one batch;
4. resolve and FIFO-cost each line in ``line_index`` order, then store its
   cost and margin;
5. insert the OUT movements and consumption snapshots in batch;
6. store the header totals.

Any failure after the header exists runs the compensation saga: the intent is
recorded in the ``Compensations`` sheet first, then snapshots, OUT movements,
lines, and header are deleted in that order. A step that fails leaves the
intent PENDING so :func:`retry_pending_compensations` can finish the job.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from . import data_manager, log
from .constants import (
    DEFAULT_CURRENCY,
    CompensationStatus,
    Direction,
    ItemKind,
    SaleStatus,
    SaleType,
    SheetName,
    SourceType,
)
from .core_logic import (
    CompensationFailure,
    InvariantViolationError,
    MissingReferenceError,
    RuntimeContext,
    get_sale,
    list_sale_items,
)
from .demand import PieceLineDraft, SaleLineDraft, SetLineDraft, resolve_demand, stored_overrides
from .fifo import FifoChunk, allocate_fifo_for_piece


CENT = Decimal("0.01")
MARGIN_RATE_QUANTUM = Decimal("0.0001")
UPDATABLE_META_FIELDS = ("comment", "sales_channel", "paid_at", "net_seller_amount")


class SaleCreationStage(str, Enum):
    """Steps of a sale-creation attempt."""

    VALIDATING = "VALIDATING"
    HEADER_INSERTED = "HEADER_INSERTED"
    ITEMS_INSERTED = "ITEMS_INSERTED"
    ALLOCATING = "ALLOCATING"
    TOTALS_UPDATED = "TOTALS_UPDATED"
    COMPENSATING = "COMPENSATING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SaleDraft:
    """Everything needed to record one sale."""

    sale_type: SaleType
    sales_channel: str
    paid_at: str
    net_seller_amount: Decimal
    items: Sequence[SaleLineDraft]
    currency: str = DEFAULT_CURRENCY
    comment: Optional[str] = None


@dataclass(frozen=True)
class SaleValidationError:
    """A rejected field and the reason, returned rather than raised."""

    field: str
    message: str


@dataclass(frozen=True)
class CreateSaleResult:
    """Outcome of :func:`create_sale`.

    ``stage`` is ``TOTALS_UPDATED`` on success and ``FAILED`` otherwise; the
    step that failed is kept in ``debug["failed_stage"]``.
    """

    success: bool
    sale_id: Optional[int] = None
    error: Optional[str] = None
    validation_errors: List[SaleValidationError] = field(default_factory=list)
    debug: Dict[str, Any] = field(default_factory=dict)
    stage: SaleCreationStage = SaleCreationStage.VALIDATING


@dataclass(frozen=True)
class UpdateSaleMetaResult:
    """Outcome of :func:`update_sale_meta`."""

    ok: bool
    sale_id: Optional[int] = None
    sale: Optional[data_manager.SaleRow] = None
    errors: List[SaleValidationError] = field(default_factory=list)


@dataclass(frozen=True)
class SaleDetail:
    """A sale with its lines, consumed lots, and stock movements."""

    sale: data_manager.SaleRow
    items: List[data_manager.SaleItemRow]
    pieces: List[data_manager.SaleItemPieceRow]
    movements: List[data_manager.StockMovementRow]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_sale_draft(draft: Optional[SaleDraft]) -> List[SaleValidationError]:
    """Check a draft before anything is written.

    Returns:
        list[SaleValidationError]: Every problem found; empty when the draft
            can be recorded.
    """
    if draft is None:
        return [SaleValidationError("root", "No sale data provided.")]

    errors: List[SaleValidationError] = []

    sale_type = _parse_sale_type(draft.sale_type)
    if not draft.sale_type:
        errors.append(SaleValidationError("sale_type", "Sale type is required (SET or PIECE)."))
    elif sale_type is None:
        errors.append(SaleValidationError("sale_type", f"Invalid sale type: {draft.sale_type}."))

    net = _as_decimal(draft.net_seller_amount)
    if net is None or net <= 0:
        errors.append(
            SaleValidationError("net_seller_amount", "Net seller amount must be a strictly positive number.")
        )

    if not draft.paid_at:
        errors.append(SaleValidationError("paid_at", "Payment date is required."))
    elif _parse_paid_at(draft.paid_at) is None:
        errors.append(SaleValidationError("paid_at", "Payment date is not a valid date."))

    if not draft.sales_channel or not str(draft.sales_channel).strip():
        errors.append(SaleValidationError("sales_channel", "Sales channel is required (e.g. VINTED)."))

    if not draft.items:
        errors.append(SaleValidationError("items", "At least one sale line is required."))
        return errors

    for index, line in enumerate(draft.items):
        errors.extend(_validate_line(line, index, sale_type))

    if sale_type is SaleType.PIECE and net is not None and net > 0:
        line_nets = [_as_decimal(getattr(line, "net_amount", None)) for line in draft.items]
        if all(value is not None and value > 0 for value in line_nets):
            lines_total = sum(line_nets, Decimal("0"))
            if _to_cents(lines_total) != _to_cents(net):
                errors.append(
                    SaleValidationError(
                        "items",
                        f"Line amounts total {_to_cents(lines_total)} but the sale net is {_to_cents(net)}.",
                    )
                )

    return errors


def _validate_line(line: object, index: int, sale_type: Optional[SaleType]) -> List[SaleValidationError]:
    prefix = f"items[{index}]"
    errors: List[SaleValidationError] = []

    if isinstance(line, SetLineDraft):
        kind = ItemKind.SET
    elif isinstance(line, PieceLineDraft):
        kind = ItemKind.PIECE
    else:
        return [SaleValidationError(f"{prefix}.item_kind", f"Unsupported sale line type: {type(line).__name__}.")]

    if sale_type is not None and kind.value != sale_type.value:
        errors.append(
            SaleValidationError(
                f"{prefix}.item_kind",
                f"A {sale_type.value} sale may only contain {sale_type.value} lines.",
            )
        )

    quantity = line.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        errors.append(SaleValidationError(f"{prefix}.quantity", "Quantity must be a strictly positive integer."))

    if isinstance(line, SetLineDraft):
        if not line.set_id:
            errors.append(SaleValidationError(f"{prefix}.set_id", "A SET line requires a set_id."))
        if line.is_partial_set and not (line.overrides or line.piece_overrides):
            errors.append(
                SaleValidationError(f"{prefix}.overrides", "A partial set requires piece overrides.")
            )
    else:
        if not line.piece_ref:
            errors.append(SaleValidationError(f"{prefix}.piece_ref", "A PIECE line requires a piece_ref."))
        if sale_type is SaleType.PIECE:
            line_net = _as_decimal(line.net_amount)
            if line_net is None or line_net <= 0:
                errors.append(
                    SaleValidationError(
                        f"{prefix}.net_amount",
                        "Every line of a PIECE sale needs a strictly positive price.",
                    )
                )

    priced_piece_line = isinstance(line, PieceLineDraft) and sale_type is SaleType.PIECE
    if not priced_piece_line and line.net_amount is not None:
        line_net = _as_decimal(line.net_amount)
        if line_net is None:
            errors.append(SaleValidationError(f"{prefix}.net_amount", "Line amount is not a number."))
        elif line_net <= 0:
            errors.append(SaleValidationError(f"{prefix}.net_amount", "Line amount must be strictly positive."))

    return errors


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def create_sale(context: RuntimeContext, draft: SaleDraft) -> CreateSaleResult:
    """Record a sale, its lines, and the FIFO cost of everything it consumes.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        draft (SaleDraft): The sale to record.

    Returns:
        CreateSaleResult: ``success`` with the new ``sale_id``, or a failure
            carrying a short ``error`` message. Validation problems come back
            in ``validation_errors`` with nothing written. Storage details and
            the failing step are kept in ``debug``.
    """
    validation_errors = validate_sale_draft(draft)
    if validation_errors:
        log.warning("Rejected sale draft with %d validation error(s)", len(validation_errors))
        return CreateSaleResult(
            success=False,
            error="Invalid sale data. Please correct the fields.",
            validation_errors=validation_errors,
            debug={"failed_stage": SaleCreationStage.VALIDATING.value},
            stage=SaleCreationStage.FAILED,
        )

    sale_type = SaleType(draft.sale_type)
    net = _as_decimal(draft.net_seller_amount)

    try:
        [sale] = data_manager.insert_rows(
            context.workbook,
            SheetName.SALES,
            [
                data_manager.SaleRow(
                    sale_id=None,
                    created_at=None,
                    sale_type=sale_type.value,
                    sales_channel=str(draft.sales_channel).strip(),
                    paid_at=str(draft.paid_at),
                    net_seller_amount=net,
                    currency=draft.currency or DEFAULT_CURRENCY,
                    status=SaleStatus.CONFIRMED.value,
                    total_cost_amount=Decimal("0"),
                    total_margin_amount=Decimal("0"),
                    margin_rate=None,
                    comment=draft.comment,
                )
            ],
        )
    except data_manager.DataAccessError as exc:
        log.error("Sale header insert failed: %s", exc)
        return CreateSaleResult(
            success=False,
            error="Could not create the sale (header insert failed).",
            debug={"failed_stage": SaleCreationStage.VALIDATING.value, "detail": str(exc)},
            stage=SaleCreationStage.FAILED,
        )
    sale_id = sale.sale_id
    log.info("Sale %s header inserted", sale_id)

    inherits_net = sale_type is SaleType.SET and len(draft.items) == 1
    try:
        items = data_manager.insert_rows(
            context.workbook,
            SheetName.SALE_ITEMS,
            [
                _build_sale_item(context, sale_id, index, line, net if inherits_net else None)
                for index, line in enumerate(draft.items)
            ],
        )
    except data_manager.DataAccessError as exc:
        log.error("Sale %s line insert failed: %s", sale_id, exc)
        _compensate(context, sale_id, [], str(exc))
        return CreateSaleResult(
            success=False,
            error="Could not create the sale lines. The sale was discarded.",
            debug={"failed_stage": SaleCreationStage.HEADER_INSERTED.value, "detail": str(exc)},
            stage=SaleCreationStage.FAILED,
        )
    log.info("Sale %s: %d line(s) inserted", sale_id, len(items))

    stage = SaleCreationStage.ITEMS_INSERTED
    try:
        stage = SaleCreationStage.ALLOCATING
        total_cost = _allocate_lines(context, sale_id, list(zip(items, draft.items)))
        total_margin = net - total_cost
        margin_rate = (total_margin / net).quantize(MARGIN_RATE_QUANTUM, rounding=ROUND_HALF_UP) if net > 0 else None
        stage = SaleCreationStage.TOTALS_UPDATED
        data_manager.update_rows(
            context.workbook,
            SheetName.SALES,
            _matching("sale_id", sale_id),
            field_values={
                "total_cost_amount": total_cost,
                "total_margin_amount": total_margin,
                "margin_rate": margin_rate,
            },
        )
    # Everything after the header funnels into one compensation path.
    except Exception as exc:
        log.error("Sale %s failed while %s: %s", sale_id, stage.value, exc)
        _compensate(context, sale_id, [item.sale_item_id for item in items], str(exc))
        return CreateSaleResult(
            success=False,
            error=str(exc),
            debug={
                "failed_stage": stage.value,
                "detail": repr(exc),
                "sale_id": sale_id,
            },
            stage=SaleCreationStage.FAILED,
        )

    log.info(
        "Sale %s recorded: net=%s cost=%s margin=%s",
        sale_id,
        net,
        total_cost,
        total_margin,
    )
    return CreateSaleResult(
        success=True,
        sale_id=sale_id,
        debug={"total_cost_amount": total_cost, "total_margin_amount": total_margin, "margin_rate": margin_rate},
        stage=SaleCreationStage.TOTALS_UPDATED,
    )


def _build_sale_item(
    context: RuntimeContext,
    sale_id: int,
    index: int,
    line: SaleLineDraft,
    inherited_net: Optional[Decimal],
) -> data_manager.SaleItemRow:
    net_amount = inherited_net if inherited_net is not None else _as_decimal(line.net_amount)
    if isinstance(line, SetLineDraft):
        return data_manager.SaleItemRow(
            sale_item_id=None,
            sale_id=sale_id,
            line_index=index,
            item_kind=ItemKind.SET.value,
            set_id=line.set_id,
            piece_ref=None,
            quantity=line.quantity,
            is_partial_set=line.is_partial_set,
            net_amount=net_amount,
            cost_amount=None,
            margin_amount=None,
            overrides=stored_overrides(context, line),
            comment=line.comment,
        )
    return data_manager.SaleItemRow(
        sale_item_id=None,
        sale_id=sale_id,
        line_index=index,
        item_kind=ItemKind.PIECE.value,
        set_id=None,
        piece_ref=line.piece_ref,
        quantity=line.quantity,
        is_partial_set=False,
        net_amount=net_amount,
        cost_amount=None,
        margin_amount=None,
        overrides=None,
        comment=line.comment,
    )


def _allocate_lines(
    context: RuntimeContext,
    sale_id: int,
    lines: List[tuple[data_manager.SaleItemRow, SaleLineDraft]],
) -> Decimal:
    """Cost every line in order, write the line totals, then the movements and snapshots."""
    movements: List[data_manager.StockMovementRow] = []
    snapshots: Dict[tuple[int, str, Optional[int]], data_manager.SaleItemPieceRow] = {}
    total_cost = Decimal("0")

    for item, line in sorted(lines, key=lambda pair: pair[0].line_index):
        line_cost = Decimal("0")
        for demand in resolve_demand(context, line):
            allocation = allocate_fifo_for_piece(
                context,
                demand.piece_ref,
                demand.quantity,
                pending_movements=movements,
            )
            for chunk in allocation.chunks:
                line_cost += chunk.cost
                movements.append(
                    data_manager.StockMovementRow(
                        movement_id=None,
                        created_at=None,
                        piece_ref=chunk.piece_ref,
                        direction=Direction.OUT.value,
                        quantity=chunk.quantity,
                        unit_cost=chunk.unit_cost,
                        lot_id=chunk.lot_id,
                        source_type=SourceType.SALE.value,
                        source_id=str(item.sale_item_id),
                        comment=f"Sale #{sale_id}",
                    )
                )
                _add_snapshot(snapshots, sale_id, item.sale_item_id, chunk)

        margin = item.net_amount - line_cost if item.net_amount is not None and item.net_amount > 0 else None
        data_manager.update_rows(
            context.workbook,
            SheetName.SALE_ITEMS,
            _matching("sale_item_id", item.sale_item_id),
            field_values={"cost_amount": line_cost, "margin_amount": margin},
        )
        total_cost += line_cost
        log.debug("Sale %s line %s costed at %s", sale_id, item.line_index, line_cost)

    data_manager.insert_rows(context.workbook, SheetName.STOCK_MOVEMENTS, movements)
    data_manager.insert_rows(context.workbook, SheetName.SALE_ITEM_PIECES, list(snapshots.values()))
    return total_cost


def _add_snapshot(
    snapshots: Dict[tuple[int, str, Optional[int]], data_manager.SaleItemPieceRow],
    sale_id: int,
    sale_item_id: int,
    chunk: FifoChunk,
) -> None:
    """Fold ``chunk`` into the single snapshot row of its (line, piece, lot).

    A lot reopened by a cancellation forms a second bucket, so one line can
    draw the same lot twice.
    """
    lot_id = _parse_lot_id(chunk.lot_id)
    key = (sale_item_id, chunk.piece_ref, lot_id)
    existing = snapshots.get(key)
    if existing is None:
        snapshots[key] = data_manager.SaleItemPieceRow(
            sale_item_piece_id=None,
            created_at=None,
            sale_id=sale_id,
            sale_item_id=sale_item_id,
            piece_ref=chunk.piece_ref,
            lot_id=lot_id,
            quantity=chunk.quantity,
            unit_cost=chunk.unit_cost,
        )
        return
    if existing.unit_cost != chunk.unit_cost:
        raise InvariantViolationError(
            f"Lot {lot_id} of {chunk.piece_ref} was drawn at two unit costs: "
            f"{existing.unit_cost} and {chunk.unit_cost}"
        )
    snapshots[key] = replace(existing, quantity=existing.quantity + chunk.quantity)


def _parse_lot_id(lot_id: Optional[str]) -> Optional[int]:
    if lot_id is None:
        return None
    try:
        return int(lot_id)
    except ValueError as exc:
        raise InvariantViolationError(f"Allocation references an invalid lot identifier: {lot_id!r}") from exc


# ---------------------------------------------------------------------------
# Compensation
# ---------------------------------------------------------------------------


def _compensate(context: RuntimeContext, sale_id: int, sale_item_ids: Sequence[int], error: str) -> bool:
    """Record the cleanup intent, then undo every write made for ``sale_id``.

    Returns:
        bool: ``True`` when every step succeeded.
    """
    log.info("Compensating sale %s (%d line(s))", sale_id, len(sale_item_ids))
    intent: Optional[data_manager.CompensationRow] = None
    try:
        [intent] = data_manager.insert_rows(
            context.workbook,
            SheetName.COMPENSATIONS,
            [
                data_manager.CompensationRow(
                    compensation_id=None,
                    created_at=None,
                    sale_id=sale_id,
                    sale_item_ids=",".join(str(item_id) for item_id in sale_item_ids),
                    status=CompensationStatus.PENDING.value,
                    error=error,
                    resolved_at=None,
                )
            ],
        )
    except data_manager.DataAccessError as exc:
        log.error("Could not record compensation intent for sale %s: %s", sale_id, exc)

    failures = _run_compensation_steps(context, sale_id, sale_item_ids)
    if intent is not None and not failures:
        _mark_compensation_done(context, intent.compensation_id)
    return not failures


def _run_compensation_steps(
    context: RuntimeContext,
    sale_id: int,
    sale_item_ids: Sequence[int],
) -> List[CompensationFailure]:
    source_ids = {str(item_id) for item_id in sale_item_ids}
    steps: List[tuple[str, str, Callable[[Any], bool]]] = [
        ("snapshots", SheetName.SALE_ITEM_PIECES, _matching("sale_id", sale_id)),
        (
            "movements",
            SheetName.STOCK_MOVEMENTS,
            lambda row: row.direction == Direction.OUT.value
            and row.source_type == SourceType.SALE.value
            and row.source_id in source_ids,
        ),
        ("lines", SheetName.SALE_ITEMS, _matching("sale_id", sale_id)),
        ("header", SheetName.SALES, _matching("sale_id", sale_id)),
    ]

    failures: List[CompensationFailure] = []
    for step, sheet, predicate in steps:
        try:
            removed = data_manager.delete_rows(context.workbook, sheet, predicate)
        except Exception as exc:
            failure = CompensationFailure(step, sale_id, exc)
            log.error("%s", failure)
            failures.append(failure)
            continue
        log.info("Compensation for sale %s removed %d %s row(s)", sale_id, removed, step)
    return failures


def _mark_compensation_done(context: RuntimeContext, compensation_id: int) -> None:
    try:
        data_manager.update_rows(
            context.workbook,
            SheetName.COMPENSATIONS,
            _matching("compensation_id", compensation_id),
            field_values={
                "status": CompensationStatus.DONE.value,
                "resolved_at": datetime.now(UTC).isoformat(),
            },
        )
    except data_manager.DataAccessError as exc:
        log.error("Could not close compensation %s: %s", compensation_id, exc)


def list_pending_compensations(context: RuntimeContext) -> List[data_manager.CompensationRow]:
    """Return compensations whose cleanup has not completed."""
    return data_manager.select_rows(
        context.workbook,
        SheetName.COMPENSATIONS,
        _matching("status", CompensationStatus.PENDING.value),
    )


def retry_pending_compensations(context: RuntimeContext) -> List[data_manager.CompensationRow]:
    """Replay every PENDING compensation.

    Each delete is idempotent, so steps that already succeeded are harmless to
    repeat.

    Returns:
        list[CompensationRow]: The compensations that are now DONE.
    """
    resolved: List[data_manager.CompensationRow] = []
    for intent in list_pending_compensations(context):
        item_ids = [int(value) for value in intent.sale_item_ids.split(",") if value.strip()]
        failures = _run_compensation_steps(context, intent.sale_id, item_ids)
        if failures:
            log.warning("Compensation %s for sale %s is still pending", intent.compensation_id, intent.sale_id)
            continue
        _mark_compensation_done(context, intent.compensation_id)
        resolved.append(intent)
    log.info("Resolved %d pending compensation(s)", len(resolved))
    return resolved


# ---------------------------------------------------------------------------
# Reads and metadata
# ---------------------------------------------------------------------------


def get_sale_detail(context: RuntimeContext, sale_id: int) -> SaleDetail:
    """Load a sale with its lines, snapshots, and related stock movements.

    Raises:
        MissingReferenceError: If the sale does not exist.
    """
    sale = get_sale(context, sale_id)
    items = list_sale_items(context, sale_id)
    source_ids = {str(item.sale_item_id) for item in items}
    pieces = data_manager.select_rows(
        context.workbook, SheetName.SALE_ITEM_PIECES, _matching("sale_id", sale_id)
    )
    movements = data_manager.select_rows(
        context.workbook,
        SheetName.STOCK_MOVEMENTS,
        lambda row: row.source_type in (SourceType.SALE.value, SourceType.SALE_CANCEL.value)
        and row.source_id in source_ids,
        order_by=data_manager.movement_order,
    )
    return SaleDetail(sale=sale, items=items, pieces=pieces, movements=movements)


def update_sale_meta(context: RuntimeContext, sale_id: int, payload: Mapping[str, Any]) -> UpdateSaleMetaResult:
    """Edit the descriptive fields of a confirmed sale.

    Only keys present in ``payload`` change. Changing ``net_seller_amount``
    recomputes the sale's total margin and margin rate from its stored cost;
    line amounts are left alone.
    """
    errors = _validate_meta_payload(sale_id, payload)
    if errors:
        return UpdateSaleMetaResult(ok=False, errors=errors)

    try:
        existing = get_sale(context, sale_id)
    except MissingReferenceError:
        return UpdateSaleMetaResult(ok=False, errors=[SaleValidationError("root", "Sale not found.")])
    if existing.status == SaleStatus.CANCELLED.value:
        return UpdateSaleMetaResult(
            ok=False, errors=[SaleValidationError("root", "A cancelled sale cannot be modified.")]
        )

    update: Dict[str, Any] = {}
    if "comment" in payload:
        update["comment"] = payload["comment"]
    if "sales_channel" in payload:
        update["sales_channel"] = str(payload["sales_channel"]).strip()
    if "paid_at" in payload:
        update["paid_at"] = str(payload["paid_at"])
    if "net_seller_amount" in payload:
        new_net = _as_decimal(payload["net_seller_amount"])
        total_margin = new_net - (existing.total_cost_amount or Decimal("0"))
        update["net_seller_amount"] = new_net
        update["total_margin_amount"] = total_margin
        update["margin_rate"] = (
            (total_margin / new_net).quantize(MARGIN_RATE_QUANTUM, rounding=ROUND_HALF_UP)
            if new_net > 0
            else None
        )

    try:
        [sale] = data_manager.update_rows(
            context.workbook, SheetName.SALES, _matching("sale_id", sale_id), field_values=update
        )
    except data_manager.DataAccessError as exc:
        log.error("Metadata update failed for sale %s: %s", sale_id, exc)
        return UpdateSaleMetaResult(
            ok=False, errors=[SaleValidationError("root", "Could not update the sale metadata.")]
        )

    log.info("Updated sale %s: %s", sale_id, ", ".join(sorted(update)))
    return UpdateSaleMetaResult(ok=True, sale_id=sale_id, sale=sale)


def _validate_meta_payload(sale_id: object, payload: Mapping[str, Any]) -> List[SaleValidationError]:
    errors: List[SaleValidationError] = []
    if isinstance(sale_id, bool) or not isinstance(sale_id, int) or sale_id <= 0:
        errors.append(SaleValidationError("sale_id", "Invalid sale identifier."))

    if not payload:
        errors.append(SaleValidationError("root", "No metadata provided for the sale update."))
        return errors

    for key in payload:
        if key not in UPDATABLE_META_FIELDS:
            errors.append(SaleValidationError(key, f"Field '{key}' cannot be updated."))

    if "sales_channel" in payload and not str(payload["sales_channel"] or "").strip():
        errors.append(SaleValidationError("sales_channel", "Sales channel cannot be empty."))
    if "paid_at" in payload and _parse_paid_at(payload["paid_at"]) is None:
        errors.append(SaleValidationError("paid_at", "Payment date is not a valid date."))
    if "net_seller_amount" in payload:
        net = _as_decimal(payload["net_seller_amount"])
        if net is None or net < 0:
            errors.append(
                SaleValidationError("net_seller_amount", "Net seller amount must be zero or positive.")
            )
    return errors


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _matching(field_name: str, value: object) -> Callable[[Any], bool]:
    return lambda row: getattr(row, field_name) == value


def _parse_sale_type(value: object) -> Optional[SaleType]:
    try:
        return SaleType(value)
    except ValueError:
        return None


def _parse_paid_at(value: object) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def _as_decimal(value: object) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
