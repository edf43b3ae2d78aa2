"""Turn sale lines into piece-level demand.

A PIECE line demands its own piece. A SET line demands the pieces listed in
the set's bill of materials, scaled by the number of sets sold, unless the
line carries an ``overrides`` mapping: that mapping then *replaces* the bill
of materials outright. Pieces the mapping omits are dropped rather than
defaulted to their BOM quantity; this mirrors how incomplete sets have always
been recorded and is pinned by the test suite.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Union

from . import data_manager, log
from .constants import SheetName
from .core_logic import ContractViolationError, RuntimeContext


@dataclass(frozen=True)
class PieceDemand:
    """Quantity of one piece reference a sale line needs to consume."""

    piece_ref: str
    quantity: int


@dataclass(frozen=True)
class SetLineDraft:
    """A sale line selling ``quantity`` copies of a set.

    ``overrides`` maps piece references to the final quantity for the whole
    line. ``piece_overrides`` is the older list form, kept so drafts saved by
    earlier versions still resolve.
    """

    set_id: str
    quantity: int
    is_partial_set: bool = False
    net_amount: Optional[Decimal] = None
    overrides: Optional[Mapping[str, int]] = None
    piece_overrides: Optional[Sequence[Union[PieceDemand, Mapping[str, object]]]] = None
    comment: Optional[str] = None


@dataclass(frozen=True)
class PieceLineDraft:
    """A sale line selling loose pieces."""

    piece_ref: str
    quantity: int
    net_amount: Optional[Decimal] = None
    comment: Optional[str] = None


SaleLineDraft = Union[SetLineDraft, PieceLineDraft]


def fetch_bom_for_set(context: RuntimeContext, set_id: str) -> List[PieceDemand]:
    """Return the bill of materials of one set, in sheet order.

    An unknown set yields an empty list and a warning, since selling it can
    only be recorded through overrides.
    """
    if not set_id:
        return []
    rows = data_manager.select_rows(
        context.workbook, SheetName.SETS_BOM, lambda row: row.set_id == set_id
    )
    if not rows:
        log.warning("No bill of materials found for set '%s'", set_id)
        return []
    return [PieceDemand(piece_ref=row.piece_ref, quantity=row.quantity) for row in rows]


def resolve_demand(context: RuntimeContext, line: SaleLineDraft) -> List[PieceDemand]:
    """Resolve one sale line into the pieces it consumes.

    Args:
        context (RuntimeContext): Runtime context used to read the BOM.
        line (SaleLineDraft): The line to resolve. Persisted
            :class:`~piece_ledger.data_manager.SaleItemRow` objects are
            accepted too and converted first.

    Returns:
        list[PieceDemand]: One entry per piece, in first-seen order, every
            quantity a positive integer. Empty when the line's quantity is not
            positive.

    Raises:
        ContractViolationError: If the line lacks its ``set_id`` or
            ``piece_ref``, or is not a recognised line type.
    """
    if isinstance(line, data_manager.SaleItemRow):
        line = draft_from_sale_item(line)

    if isinstance(line, PieceLineDraft):
        return _resolve_piece_line(line)
    if isinstance(line, SetLineDraft):
        return _resolve_set_line(context, line)
    raise ContractViolationError(f"Unsupported sale line type: {type(line).__name__}")


def draft_from_sale_item(item: data_manager.SaleItemRow) -> SaleLineDraft:
    """Rebuild the draft variant matching a stored sale line."""
    if item.item_kind == "PIECE":
        return PieceLineDraft(
            piece_ref=item.piece_ref or "",
            quantity=item.quantity,
            net_amount=item.net_amount,
            comment=item.comment,
        )
    if item.item_kind == "SET":
        return SetLineDraft(
            set_id=item.set_id or "",
            quantity=item.quantity,
            is_partial_set=item.is_partial_set,
            net_amount=item.net_amount,
            overrides=item.overrides,
            comment=item.comment,
        )
    raise ContractViolationError(f"Unknown item kind '{item.item_kind}' on line {item.sale_item_id}")


def stored_overrides(context: RuntimeContext, line: SetLineDraft) -> Optional[Dict[str, int]]:
    """Return the ``overrides`` mapping to save with ``line``.

    The list form patches the bill of materials rather than replacing it, so it
    is saved as the quantities it resolves to. BOM pieces the list removes are
    kept at zero, which makes the saved mapping resolve to the same demand.
    """
    if line.overrides:
        return dict(line.overrides)
    legacy = line.piece_overrides
    if isinstance(legacy, Mapping):
        return dict(legacy) or None
    if not legacy:
        return None
    mapping = {entry.piece_ref: 0 for entry in fetch_bom_for_set(context, line.set_id)}
    mapping.update((demand.piece_ref, demand.quantity) for demand in _resolve_set_line(context, line))
    return mapping or None


def _resolve_piece_line(line: PieceLineDraft) -> List[PieceDemand]:
    if not line.piece_ref:
        raise ContractViolationError("PIECE line is missing its piece_ref")
    quantity = _as_quantity(line.quantity)
    if quantity <= 0:
        return []
    return [PieceDemand(piece_ref=line.piece_ref, quantity=quantity)]


def _resolve_set_line(context: RuntimeContext, line: SetLineDraft) -> List[PieceDemand]:
    if not line.set_id:
        raise ContractViolationError("SET line is missing its set_id")
    set_quantity = _as_quantity(line.quantity)
    if set_quantity <= 0:
        return []

    overrides = line.overrides
    legacy = line.piece_overrides
    # The list form was sometimes saved as a mapping; treat it as overrides.
    if not overrides and isinstance(legacy, Mapping):
        overrides, legacy = legacy, None

    if overrides:
        # Replaces the BOM entirely; see module docstring.
        demand: Dict[str, int] = {}
        for piece_ref, raw_quantity in overrides.items():
            quantity = _as_quantity(raw_quantity)
            if piece_ref and quantity > 0:
                demand[piece_ref] = quantity
        return _to_demands(demand)

    aggregated: Dict[str, int] = {}
    for entry in fetch_bom_for_set(context, line.set_id):
        if entry.quantity <= 0:
            continue
        aggregated[entry.piece_ref] = aggregated.get(entry.piece_ref, 0) + entry.quantity * set_quantity

    for entry in legacy or ():
        piece_ref, quantity = _legacy_entry(entry)
        if not piece_ref:
            continue
        if quantity <= 0:
            aggregated.pop(piece_ref, None)
        else:
            aggregated[piece_ref] = quantity

    return _to_demands(aggregated)


def _legacy_entry(entry: Union[PieceDemand, Mapping[str, object]]) -> tuple[str, int]:
    if isinstance(entry, PieceDemand):
        return entry.piece_ref, _as_quantity(entry.quantity)
    return str(entry.get("piece_ref") or ""), _as_quantity(entry.get("quantity"))


def _as_quantity(value: object) -> int:
    """Coerce a quantity to ``int``; anything that is not a whole number counts as zero."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        return 0
    if not number.is_finite() or number != number.to_integral_value():
        return 0
    return int(number)


def _to_demands(quantities: Dict[str, int]) -> List[PieceDemand]:
    return [
        PieceDemand(piece_ref=piece_ref, quantity=quantity)
        for piece_ref, quantity in quantities.items()
        if quantity > 0
    ]
