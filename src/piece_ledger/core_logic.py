"""Business logic layer for the piece ledger.

This module holds the runtime context, the error taxonomy shared by every
engine, and the ledger operations that do not involve sales: receiving
purchase lots, manual adjustments, the stock report, the movement journal,
and the orphan audit. The sale, costing, and cancellation engines live in
their own modules and build on the helpers defined here. All I/O goes through
the Data Access Layer (DAL).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Direction, SheetName, SourceType


UNIT_COST_QUANTUM = Decimal("0.0001")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced sale, lot, or line is unknown."""


class ContractViolationError(BusinessRuleViolation):
    """Raised when a caller hands over a structurally incomplete input."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when FIFO buckets cannot cover a requested quantity."""

    def __init__(self, piece_ref: str, requested: int, available: int) -> None:
        self.piece_ref = piece_ref
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for piece {piece_ref}: requested {requested}, available {available}"
        )


class InvariantViolationError(BusinessRuleViolation):
    """Raised when stored data breaks an invariant the engines rely on."""


class SaleAlreadyCancelledError(BusinessRuleViolation):
    """Raised when a cancelled sale is asked to change again."""


class CompensationFailure(RuntimeError):
    """Describes a cleanup step that could not be completed."""

    def __init__(self, step: str, sale_id: int, cause: BaseException) -> None:
        self.step = step
        self.sale_id = sale_id
        self.cause = cause
        super().__init__(f"Compensation step '{step}' failed for sale {sale_id}: {cause}")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    The context carries no cache: costing has to observe every
    movement written so far, including the ones the current call just made.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook


@dataclass(frozen=True)
class LotLineCommand:
    """One piece reference received in a purchase lot."""

    piece_ref: str
    quantity: int


@dataclass(frozen=True)
class LotReceiptCommand:
    """User intent for receiving a purchase lot into stock."""

    purchase_date: date
    total_cost: Decimal
    lines: Sequence[LotLineCommand]
    lot_code: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LotReceipt:
    """Outcome of :func:`record_lot_receipt`."""

    lot: data_manager.LotRow
    movements: List[data_manager.StockMovementRow]


@dataclass(frozen=True)
class AdjustmentCommand:
    """User intent for a manual stock correction.

    ``quantity`` is signed: positive adds pieces, negative removes them.
    """

    piece_ref: str
    quantity: int
    comment: Optional[str] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp, usually sourced
            from a command object. When ``None`` the helper fabricates a
            timestamp so that downstream operations can rely on monotonic and
            comparable values.

    Returns:
        datetime: ``candidate`` converted to UTC when provided, otherwise the
            current UTC datetime generated via :func:`datetime.now`.

    Raises:
        ContractViolationError: If ``candidate`` carries no timezone.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None or candidate.utcoffset() is None:
        raise ContractViolationError("Timestamps must carry a timezone")
    return candidate.astimezone(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper forms the foundation for all business logic calls by resolving
    ``config.ini``, parsing settings, and opening the Excel workbook that
    stores the ledger. The resulting :class:`RuntimeContext` bundles the
    immutable settings with a mutable workbook handle.

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
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    The ledger workbook evolves alongside the source code. This guard ensures
    the version stored in ``config.ini`` matches the application-level
    ``EXPECTED_SCHEMA_VERSION`` before later routines perform inserts.

    Args:
        context (RuntimeContext): Runtime context containing the resolved
            settings.

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


def get_sale(context: RuntimeContext, sale_id: int) -> data_manager.SaleRow:
    """Return the sale header identified by ``sale_id``.

    Raises:
        MissingReferenceError: If no sale carries that identifier.
    """
    rows = data_manager.select_rows(
        context.workbook, SheetName.SALES, lambda row: row.sale_id == sale_id
    )
    if not rows:
        log.warning("Sale '%s' not found", sale_id)
        raise MissingReferenceError(f"Unknown sale: {sale_id}")
    return rows[0]


def list_sale_items(context: RuntimeContext, sale_id: int) -> List[data_manager.SaleItemRow]:
    """Return the lines of a sale ordered by ``line_index``."""
    return data_manager.select_rows(
        context.workbook,
        SheetName.SALE_ITEMS,
        lambda row: row.sale_id == sale_id,
        order_by=lambda row: (row.line_index, row.sale_item_id),
    )


def list_lots(context: RuntimeContext) -> List[data_manager.LotRow]:
    """Return every purchase lot in insertion order."""
    return data_manager.select_rows(context.workbook, SheetName.LOTS)


def record_lot_receipt(context: RuntimeContext, command: LotReceiptCommand) -> LotReceipt:
    """Register a purchase lot and bring its pieces into stock.

    The lot's unit cost is its total cost spread evenly over every piece it
    contains. One ``IN`` movement per line is written in a single batch, tagged
    ``PURCHASE`` and pointing back at the lot through both ``lot_id`` and
    ``source_id`` so FIFO can cost the pieces later.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (LotReceiptCommand): The lot header and its piece lines.

    Returns:
        LotReceipt: The stored lot and the movements created for it.

    Raises:
        BusinessRuleViolation: If the lot holds no piece.
        ValueError: When a quantity or the total cost is invalid.
    """
    require_nonnegative_money(command.total_cost)
    if not command.lines:
        log.warning("Rejected lot receipt without lines")
        raise BusinessRuleViolation("A lot must contain at least one piece line")
    for line in command.lines:
        if not line.piece_ref or not line.piece_ref.strip():
            raise ContractViolationError("Lot line is missing its piece reference")
        require_positive_quantity(line.quantity)

    total_pieces = sum(line.quantity for line in command.lines)
    unit_cost = (command.total_cost / Decimal(total_pieces)).quantize(
        UNIT_COST_QUANTUM, rounding=ROUND_HALF_UP
    )
    timestamp = _resolve_timestamp(command.timestamp).isoformat()

    [lot] = data_manager.insert_rows(
        context.workbook,
        SheetName.LOTS,
        [
            data_manager.LotRow(
                lot_id=None,
                created_at=timestamp,
                lot_code=command.lot_code,
                purchase_date=command.purchase_date.isoformat(),
                supplier=command.supplier,
                total_cost=command.total_cost,
                total_pieces=total_pieces,
                notes=command.notes,
            )
        ],
    )
    movements = data_manager.insert_rows(
        context.workbook,
        SheetName.STOCK_MOVEMENTS,
        [
            data_manager.StockMovementRow(
                movement_id=None,
                created_at=timestamp,
                piece_ref=line.piece_ref.strip(),
                direction=Direction.IN.value,
                quantity=line.quantity,
                unit_cost=unit_cost,
                lot_id=str(lot.lot_id),
                source_type=SourceType.PURCHASE.value,
                source_id=str(lot.lot_id),
                comment=command.notes,
            )
            for line in command.lines
        ],
    )
    log.info(
        "Received lot %s with %d piece(s) at unit cost %s",
        lot.lot_id,
        total_pieces,
        unit_cost,
    )
    return LotReceipt(lot=lot, movements=movements)


def record_adjustment(context: RuntimeContext, command: AdjustmentCommand) -> data_manager.StockMovementRow:
    """Write a signed ``ADJUST`` movement for inventory corrections.

    Adjustments count toward on-hand stock but are ignored by FIFO costing,
    so they never open or consume a cost bucket.

    Raises:
        ValueError: If the quantity is zero.
        ContractViolationError: If the piece reference is empty.
    """
    if not command.piece_ref or not command.piece_ref.strip():
        raise ContractViolationError("Adjustment is missing its piece reference")
    if command.quantity == 0:
        log.error("Adjustment quantity validation failed: %s", command.quantity)
        raise ValueError("Adjustment quantity must not be zero")

    timestamp = _resolve_timestamp(command.timestamp).isoformat()
    [movement] = data_manager.insert_rows(
        context.workbook,
        SheetName.STOCK_MOVEMENTS,
        [
            data_manager.StockMovementRow(
                movement_id=None,
                created_at=timestamp,
                piece_ref=command.piece_ref.strip(),
                direction=Direction.ADJUST.value,
                quantity=command.quantity,
                unit_cost=None,
                lot_id=None,
                source_type=SourceType.ADJUSTMENT.value,
                source_id=None,
                comment=command.comment,
            )
        ],
    )
    log.info("Recorded adjustment of %s for piece '%s'", command.quantity, movement.piece_ref)
    return movement


def calculate_stock(context: RuntimeContext) -> Dict[str, int]:
    """Aggregate on-hand quantities per piece reference.

    ``IN`` adds, ``OUT`` subtracts, and ``ADJUST`` contributes its signed
    quantity. Pieces whose history nets to zero are still reported.

    Returns:
        dict[str, int]: Mapping of piece reference to quantity on hand.
    """
    stock: Dict[str, int] = {}
    for movement in list_movements(context):
        if movement.direction == Direction.IN.value:
            delta = movement.quantity
        elif movement.direction == Direction.OUT.value:
            delta = -movement.quantity
        elif movement.direction == Direction.ADJUST.value:
            delta = movement.quantity
        else:
            log.warning(
                "Ignoring movement %s with unknown direction '%s'",
                movement.movement_id,
                movement.direction,
            )
            continue
        stock[movement.piece_ref] = stock.get(movement.piece_ref, 0) + delta
    log.debug("Calculated stock for %d piece(s)", len(stock))
    return stock


def list_movements(
    context: RuntimeContext,
    *,
    piece_ref: Optional[str] = None,
    direction: Optional[Direction] = None,
    source_type: Optional[SourceType] = None,
) -> List[data_manager.StockMovementRow]:
    """Return the stock journal, oldest first, optionally filtered."""

    def _matches(row: data_manager.StockMovementRow) -> bool:
        if piece_ref is not None and row.piece_ref != piece_ref:
            return False
        if direction is not None and row.direction != Direction(direction).value:
            return False
        if source_type is not None and row.source_type != SourceType(source_type).value:
            return False
        return True

    return data_manager.select_rows(
        context.workbook,
        SheetName.STOCK_MOVEMENTS,
        _matches,
        order_by=data_manager.movement_order,
    )


def find_orphaned_movements(context: RuntimeContext) -> List[data_manager.StockMovementRow]:
    """Return SALE-tagged movements whose ``source_id`` matches no sale line.

    A non-empty result means a sale creation failed and its cleanup did not
    finish; see ``retry_pending_compensations`` in :mod:`piece_ledger.sales`.
    """
    line_ids = {
        str(row.sale_item_id)
        for row in data_manager.select_rows(context.workbook, SheetName.SALE_ITEMS)
    }
    orphans = [
        movement
        for movement in list_movements(context, source_type=SourceType.SALE)
        if movement.source_id not in line_ids
    ]
    if orphans:
        log.warning("Found %d orphaned sale movement(s)", len(orphans))
    return orphans


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Args:
        quantity (int): Quantity supplied by a command object.

    Raises:
        ValueError: If ``quantity`` is not an integer, or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a positive integer")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Args:
        amount (Decimal): Currency value supplied by a command object.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Args:
        context (RuntimeContext): Runtime context whose workbook should be
            saved.

    The function supplies :attr:`RuntimeContext.settings.data_file` directly to
    the data layer to ensure saves always target the configured workbook path.
    """
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Args:
        context (RuntimeContext): Runtime context whose settings should be
            reused.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
