"""First-in-first-out costing over the stock movement ledger.

Every allocation rebuilds the piece's cost buckets from its complete movement
history instead of trusting a running balance. Buckets are opened by ``IN``
movements and drained by ``OUT`` movements oldest first. ``ADJUST`` movements
carry no cost basis and are ignored here, so a piece's FIFO quantity may
differ from its on-hand stock after manual corrections.

Ordering is ``(created_at, movement_id)`` with ``created_at`` compared as an
instant, whatever offset it was written with. Movements written in one batch
share a timestamp, so the primary key decides which bucket was opened first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from . import data_manager, log
from .constants import Direction, SheetName
from .core_logic import InsufficientStockError, RuntimeContext


@dataclass
class FifoBucket:
    """Remaining quantity of one incoming movement, at its unit cost."""

    piece_ref: str
    lot_id: Optional[str]
    unit_cost: Decimal
    quantity_available: int
    first_movement_id: Optional[int] = None


@dataclass(frozen=True)
class FifoChunk:
    """Part of an allocation drawn from a single bucket."""

    piece_ref: str
    lot_id: Optional[str]
    quantity: int
    unit_cost: Decimal
    movement_id: Optional[int] = None

    @property
    def cost(self) -> Decimal:
        return self.unit_cost * self.quantity


@dataclass(frozen=True)
class FifoAllocation:
    """Result of allocating a quantity of one piece."""

    piece_ref: str
    requested_quantity: int
    total_quantity: int
    total_cost: Decimal
    chunks: List[FifoChunk] = field(default_factory=list)


@dataclass(frozen=True)
class FifoDebugView:
    """Read-only snapshot used to inspect how a piece would be costed."""

    piece_ref: str
    movements: List[data_manager.StockMovementRow]
    buckets: List[FifoBucket]
    allocation: Optional[FifoAllocation] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class StockValuation:
    """FIFO-valued stock for one piece."""

    piece_ref: str
    quantity: int
    total_value: Decimal
    average_unit_cost: Optional[Decimal]


def fetch_movements_for_piece(context: RuntimeContext, piece_ref: str) -> List[data_manager.StockMovementRow]:
    """Return the full movement history of ``piece_ref``, oldest first."""
    if not piece_ref:
        return []
    return data_manager.select_rows(
        context.workbook,
        SheetName.STOCK_MOVEMENTS,
        lambda row: row.piece_ref == piece_ref,
        order_by=data_manager.movement_order,
    )


def build_fifo_buckets(movements: Iterable[data_manager.StockMovementRow]) -> List[FifoBucket]:
    """Replay movements into the buckets that still hold stock.

    Args:
        movements (Iterable[StockMovementRow]): History in chronological order.

    Returns:
        list[FifoBucket]: Open buckets, oldest first. Exhausted buckets are
            dropped.
    """
    buckets: List[FifoBucket] = []
    for movement in movements:
        if not movement.piece_ref or movement.quantity <= 0:
            continue

        if movement.direction == Direction.IN.value:
            buckets.append(
                FifoBucket(
                    piece_ref=movement.piece_ref,
                    lot_id=movement.lot_id,
                    unit_cost=movement.unit_cost if movement.unit_cost is not None else Decimal("0"),
                    quantity_available=movement.quantity,
                    first_movement_id=movement.movement_id,
                )
            )
        elif movement.direction == Direction.OUT.value:
            remaining = movement.quantity
            for bucket in buckets:
                if remaining <= 0:
                    break
                if bucket.quantity_available <= 0:
                    continue
                take = min(bucket.quantity_available, remaining)
                bucket.quantity_available -= take
                remaining -= take
            if remaining > 0:
                log.warning(
                    "OUT movement %s for piece '%s' exceeds available buckets by %d",
                    movement.movement_id,
                    movement.piece_ref,
                    remaining,
                )
        # ADJUST has no cost basis

    return [bucket for bucket in buckets if bucket.quantity_available > 0]


def allocate_fifo_for_piece(
    context: RuntimeContext,
    piece_ref: str,
    requested_quantity: int,
    *,
    pending_movements: Sequence[data_manager.StockMovementRow] = (),
) -> FifoAllocation:
    """Allocate ``requested_quantity`` of ``piece_ref`` against the oldest stock.

    Args:
        context (RuntimeContext): Runtime context used to read the ledger.
        piece_ref (str): Piece to allocate.
        requested_quantity (int): Number of pieces needed.
        pending_movements (Sequence[StockMovementRow]): Movements already
            decided by the caller but not written yet, such as the ``OUT``
            rows of earlier lines in the same sale. They are replayed after
            the stored history.

    Returns:
        FifoAllocation: One chunk per bucket touched. A non-positive request
            returns an empty allocation.

    Raises:
        InsufficientStockError: If the open buckets hold less than requested.
            Nothing partial is returned.
    """
    if not piece_ref or requested_quantity <= 0:
        return FifoAllocation(
            piece_ref=piece_ref,
            requested_quantity=requested_quantity,
            total_quantity=0,
            total_cost=Decimal("0"),
        )

    history = fetch_movements_for_piece(context, piece_ref)
    history.extend(row for row in pending_movements if row.piece_ref == piece_ref)
    buckets = build_fifo_buckets(history)

    remaining = requested_quantity
    chunks: List[FifoChunk] = []
    total_cost = Decimal("0")
    for bucket in buckets:
        if remaining <= 0:
            break
        take = min(bucket.quantity_available, remaining)
        if take <= 0:
            continue
        chunk = FifoChunk(
            piece_ref=piece_ref,
            lot_id=bucket.lot_id,
            quantity=take,
            unit_cost=bucket.unit_cost,
            movement_id=bucket.first_movement_id,
        )
        chunks.append(chunk)
        total_cost += chunk.cost
        remaining -= take

    total_quantity = requested_quantity - remaining
    if total_quantity < requested_quantity:
        log.warning(
            "Insufficient stock for piece '%s': requested %d, available %d",
            piece_ref,
            requested_quantity,
            total_quantity,
        )
        raise InsufficientStockError(piece_ref, requested_quantity, total_quantity)

    log.debug("Allocated %d of piece '%s' for %s", total_quantity, piece_ref, total_cost)
    return FifoAllocation(
        piece_ref=piece_ref,
        requested_quantity=requested_quantity,
        total_quantity=total_quantity,
        total_cost=total_cost,
        chunks=chunks,
    )


def describe_fifo(context: RuntimeContext, piece_ref: str, requested_quantity: Optional[int] = None) -> FifoDebugView:
    """Expose the movements, open buckets, and an optional preview allocation.

    Nothing is written. A preview that cannot be satisfied is reported in
    ``error`` instead of raising.
    """
    movements = fetch_movements_for_piece(context, piece_ref)
    buckets = build_fifo_buckets(movements)
    allocation: Optional[FifoAllocation] = None
    error: Optional[str] = None
    if requested_quantity is not None and requested_quantity > 0:
        try:
            allocation = allocate_fifo_for_piece(context, piece_ref, requested_quantity)
        except InsufficientStockError as exc:
            error = str(exc)
    return FifoDebugView(
        piece_ref=piece_ref,
        movements=movements,
        buckets=buckets,
        allocation=allocation,
        error=error,
    )


def calculate_stock_valuation(context: RuntimeContext) -> Dict[str, StockValuation]:
    """Value the remaining FIFO buckets of every piece.

    Returns:
        dict[str, StockValuation]: Keyed by piece reference, limited to pieces
            with at least one open bucket.
    """
    history: Dict[str, List[data_manager.StockMovementRow]] = {}
    for row in data_manager.select_rows(
        context.workbook, SheetName.STOCK_MOVEMENTS, order_by=data_manager.movement_order
    ):
        history.setdefault(row.piece_ref, []).append(row)

    valuation: Dict[str, StockValuation] = {}
    for piece_ref, movements in history.items():
        buckets = build_fifo_buckets(movements)
        if not buckets:
            continue
        quantity = sum(bucket.quantity_available for bucket in buckets)
        total_value = sum(
            (bucket.unit_cost * bucket.quantity_available for bucket in buckets),
            Decimal("0"),
        )
        valuation[piece_ref] = StockValuation(
            piece_ref=piece_ref,
            quantity=quantity,
            total_value=total_value,
            average_unit_cost=total_value / quantity if quantity else None,
        )
    return valuation
