"""Cancel confirmed sales by mirroring their stock movements back in.

History is never erased: each OUT movement written for the sale gets a
matching IN movement tagged ``SALE_CANCEL`` with the same lot, quantity, unit
cost, and ``source_id``. The mirrored stock reopens as new FIFO buckets. The
sale's cost and margin fields stay as they were when the sale was recorded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from . import data_manager, log
from .constants import Direction, SaleStatus, SheetName, SourceType
from .core_logic import (
    BusinessRuleViolation,
    MissingReferenceError,
    RuntimeContext,
    SaleAlreadyCancelledError,
    get_sale,
    list_sale_items,
)
from .sales import SaleValidationError


@dataclass(frozen=True)
class CancelSaleResult:
    """Outcome of :func:`cancel_sale`.

    ``warnings`` lists problems that did not undo the cancellation, such as a
    status update that could not be written after the stock was restored.
    """

    ok: bool
    sale_id: Optional[int] = None
    sale: Optional[data_manager.SaleRow] = None
    items: List[data_manager.SaleItemRow] = field(default_factory=list)
    movements_created: int = 0
    errors: List[SaleValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def load_sale_for_cancel(context: RuntimeContext, sale_id: object) -> tuple[data_manager.SaleRow, List[data_manager.SaleItemRow]]:
    """Load a cancellable sale and its lines.

    Raises:
        ValueError: If ``sale_id`` is not a positive integer.
        MissingReferenceError: If the sale does not exist.
        SaleAlreadyCancelledError: If the sale is already cancelled.
        BusinessRuleViolation: If the sale is not confirmed or has no lines.
    """
    if isinstance(sale_id, bool) or not isinstance(sale_id, int) or sale_id <= 0:
        raise ValueError("Invalid sale identifier for cancellation.")

    try:
        sale = get_sale(context, sale_id)
    except MissingReferenceError as exc:
        raise MissingReferenceError("Sale not found for cancellation.") from exc

    if sale.status == SaleStatus.CANCELLED.value:
        raise SaleAlreadyCancelledError("This sale is already cancelled.")
    if sale.status != SaleStatus.CONFIRMED.value:
        raise BusinessRuleViolation("Only confirmed sales can be cancelled.")

    items = list_sale_items(context, sale_id)
    if not items:
        raise BusinessRuleViolation("This sale has no lines. Cancellation is impossible.")
    return sale, items


def cancel_sale(context: RuntimeContext, sale_id: int) -> CancelSaleResult:
    """Restore a confirmed sale's stock and mark it CANCELLED.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        sale_id (int): Identifier of the sale to cancel.

    Returns:
        CancelSaleResult: ``ok`` with the number of mirrored movements, or
            ``errors`` explaining why nothing changed.
    """
    try:
        sale, items = load_sale_for_cancel(context, sale_id)
        source_ids = {str(item.sale_item_id) for item in items}
        movements = data_manager.select_rows(
            context.workbook,
            SheetName.STOCK_MOVEMENTS,
            lambda row: row.direction == Direction.OUT.value
            and row.source_type == SourceType.SALE.value
            and row.source_id in source_ids,
            order_by=data_manager.movement_order,
        )
    except (ValueError, BusinessRuleViolation, data_manager.DataAccessError) as exc:
        log.warning("Cancellation of sale %s rejected: %s", sale_id, exc)
        return CancelSaleResult(ok=False, errors=[SaleValidationError("root", str(exc))])

    if not movements:
        log.warning("Sale %s has no OUT movements to mirror", sale_id)

    mirrors = [
        data_manager.StockMovementRow(
            movement_id=None,
            created_at=None,
            piece_ref=movement.piece_ref,
            direction=Direction.IN.value,
            quantity=movement.quantity,
            unit_cost=movement.unit_cost,
            lot_id=movement.lot_id,
            source_type=SourceType.SALE_CANCEL.value,
            source_id=movement.source_id,
            comment=f"Cancellation of sale #{sale.sale_id}",
        )
        for movement in movements
    ]
    if mirrors:
        try:
            data_manager.insert_rows(context.workbook, SheetName.STOCK_MOVEMENTS, mirrors)
        except data_manager.DataAccessError as exc:
            log.error("Could not insert mirrored movements for sale %s: %s", sale_id, exc)
            return CancelSaleResult(
                ok=False,
                errors=[SaleValidationError("root", "Could not create the stock movements for the cancellation.")],
            )

    warnings: List[str] = []
    updated_sale = sale
    try:
        [updated_sale] = data_manager.update_rows(
            context.workbook,
            SheetName.SALES,
            lambda row: row.sale_id == sale.sale_id,
            field_values={"status": SaleStatus.CANCELLED.value},
        )
    except data_manager.DataAccessError as exc:
        # Mirrored stock stays in place.
        log.error("Could not mark sale %s as cancelled: %s", sale_id, exc)
        warnings.append(f"Stock was restored but the sale status could not be updated: {exc}")

    log.info("Cancelled sale %s (%d movement(s) mirrored)", sale.sale_id, len(mirrors))
    return CancelSaleResult(
        ok=True,
        sale_id=sale.sale_id,
        sale=updated_sale,
        items=items,
        movements_created=len(mirrors),
        warnings=warnings,
    )
