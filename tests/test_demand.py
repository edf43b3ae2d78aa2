"""Unit tests for resolving sale lines into piece demand."""

from __future__ import annotations

from decimal import Decimal

import pytest

from piece_ledger import constants, core_logic, data_manager
from piece_ledger.demand import (
    PieceDemand,
    PieceLineDraft,
    SetLineDraft,
    fetch_bom_for_set,
    resolve_demand,
    stored_overrides,
)


# ---------------------------------------------------------------------------
# PIECE lines
# ---------------------------------------------------------------------------


def test_piece_line_yields_single_demand(ledger):
    """A PIECE line demands its own piece in its own quantity."""

    result = resolve_demand(ledger, PieceLineDraft(piece_ref="P1", quantity=3))
    assert result == [PieceDemand("P1", 3)]


@pytest.mark.parametrize("quantity", [0, -2, 1.5, None])
def test_piece_line_with_unusable_quantity_yields_nothing(ledger, quantity):
    """Zero, negative, fractional, or missing quantities produce no demand."""

    assert resolve_demand(ledger, PieceLineDraft(piece_ref="P1", quantity=quantity)) == []


def test_piece_line_without_reference_is_contract_violation(ledger):
    """A PIECE line must name its piece."""

    with pytest.raises(core_logic.ContractViolationError):
        resolve_demand(ledger, PieceLineDraft(piece_ref="", quantity=1))


# ---------------------------------------------------------------------------
# SET lines
# ---------------------------------------------------------------------------


def test_set_line_multiplies_bom_by_set_quantity(ledger, add_bom):
    """BOM quantities are scaled by the number of sets sold."""

    add_bom("S1", {"P1": 2, "P2": 1})
    result = resolve_demand(ledger, SetLineDraft(set_id="S1", quantity=2))
    assert result == [PieceDemand("P1", 4), PieceDemand("P2", 2)]


def test_set_line_aggregates_repeated_bom_pieces(ledger):
    """A piece listed twice in the BOM is summed."""

    data_manager.insert_rows(
        ledger.workbook,
        constants.SheetName.SETS_BOM,
        [
            data_manager.BomRow(None, "S2", "P1", 1),
            data_manager.BomRow(None, "S2", "P2", 1),
            data_manager.BomRow(None, "S2", "P1", 2),
        ],
    )
    result = resolve_demand(ledger, SetLineDraft(set_id="S2", quantity=1))
    assert result == [PieceDemand("P1", 3), PieceDemand("P2", 1)]


def test_overrides_replace_bom_entirely(ledger, add_bom):
    """Overrides {A:1} on BOM {A:2, B:3} demand only A; B is dropped, not defaulted."""

    add_bom("S1", {"A": 2, "B": 3})
    line = SetLineDraft(set_id="S1", quantity=1, is_partial_set=True, overrides={"A": 1})

    assert resolve_demand(ledger, line) == [PieceDemand("A", 1)]


def test_overrides_do_not_read_the_bom(ledger, monkeypatch):
    """The BOM is not consulted at all when overrides are present."""

    def _fail(*_args, **_kwargs):
        raise AssertionError("BOM should not be read")

    monkeypatch.setattr(data_manager, "select_rows", _fail)
    line = SetLineDraft(set_id="S1", quantity=1, overrides={"A": 2, "B": 0, "C": -1})
    assert resolve_demand(ledger, line) == [PieceDemand("A", 2)]


def test_set_without_bom_yields_no_demand_and_warns(ledger, caplog):
    """An unknown set resolves to nothing and logs a warning."""

    with caplog.at_level("WARNING", logger="piece_ledger"):
        result = resolve_demand(ledger, SetLineDraft(set_id="GHOST", quantity=1))
    assert result == []
    assert "GHOST" in caplog.text


def test_set_line_with_zero_quantity_yields_nothing(ledger, add_bom):
    """A non-positive set quantity produces no demand."""

    add_bom("S1", {"P1": 2})
    assert resolve_demand(ledger, SetLineDraft(set_id="S1", quantity=0)) == []


def test_set_line_without_set_id_is_contract_violation(ledger):
    """A SET line must name its set."""

    with pytest.raises(core_logic.ContractViolationError):
        resolve_demand(ledger, SetLineDraft(set_id="", quantity=1))


def test_legacy_piece_overrides_adjust_and_remove(ledger, add_bom):
    """The list form overrides aggregated quantities and removes non-positive entries."""

    add_bom("S1", {"P1": 2, "P2": 1, "P3": 1})
    line = SetLineDraft(
        set_id="S1",
        quantity=2,
        piece_overrides=[PieceDemand("P1", 1), {"piece_ref": "P2", "quantity": 0}],
    )
    assert resolve_demand(ledger, line) == [PieceDemand("P1", 1), PieceDemand("P3", 2)]


def test_legacy_mapping_is_treated_as_overrides(ledger, add_bom):
    """A mapping passed in the legacy slot behaves like overrides."""

    add_bom("S1", {"P1": 2, "P2": 1})
    line = SetLineDraft(set_id="S1", quantity=1, piece_overrides={"P2": 5})
    assert resolve_demand(ledger, line) == [PieceDemand("P2", 5)]


def test_stored_overrides_freeze_the_legacy_list(ledger, add_bom):
    """The list form is saved as the mapping it resolves to, removed pieces at zero."""

    add_bom("S1", {"P1": 2, "P2": 1, "P3": 1})
    line = SetLineDraft(
        set_id="S1",
        quantity=2,
        piece_overrides=[PieceDemand("P1", 1), {"piece_ref": "P2", "quantity": 0}],
    )

    mapping = stored_overrides(ledger, line)

    assert mapping == {"P1": 1, "P2": 0, "P3": 2}
    replay = SetLineDraft(set_id="S1", quantity=2, overrides=mapping)
    assert resolve_demand(ledger, replay) == resolve_demand(ledger, line)


def test_stored_overrides_pass_mappings_through(ledger):
    """Explicit and mapping-form overrides are saved unchanged; plain lines save nothing."""

    assert stored_overrides(ledger, SetLineDraft("S1", 1, overrides={"P1": 3})) == {"P1": 3}
    assert stored_overrides(ledger, SetLineDraft("S1", 1, piece_overrides={"P2": 5})) == {"P2": 5}
    assert stored_overrides(ledger, SetLineDraft("S1", 1)) is None


def test_stored_sale_item_is_accepted(ledger, add_bom):
    """Persisted sale lines resolve like the drafts they were built from."""

    add_bom("S1", {"P1": 1})
    item = data_manager.SaleItemRow(
        sale_item_id=1,
        sale_id=1,
        line_index=0,
        item_kind="SET",
        set_id="S1",
        piece_ref=None,
        quantity=3,
        is_partial_set=False,
        net_amount=Decimal("9"),
        cost_amount=None,
        margin_amount=None,
        overrides=None,
        comment=None,
    )
    assert resolve_demand(ledger, item) == [PieceDemand("P1", 3)]


def test_unsupported_line_type_is_contract_violation(ledger):
    """Anything other than the two line variants is rejected."""

    with pytest.raises(core_logic.ContractViolationError):
        resolve_demand(ledger, {"item_kind": "SET", "set_id": "S1", "quantity": 1})


def test_fetch_bom_for_set_returns_sheet_order(ledger, add_bom):
    """fetch_bom_for_set should list only the requested set's pieces."""

    add_bom("S1", {"P1": 2, "P2": 1})
    add_bom("S9", {"P9": 1})
    assert fetch_bom_for_set(ledger, "S1") == [PieceDemand("P1", 2), PieceDemand("P2", 1)]
    assert fetch_bom_for_set(ledger, "") == []
