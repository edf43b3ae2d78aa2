"""Unit tests verifying the business logic layer."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

import piece_ledger
from piece_ledger import constants, core_logic, data_manager

SheetName = constants.SheetName


@pytest.fixture
def context(settings):
    """Context whose workbook is a mock, for tests that stub the data layer."""

    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))


@pytest.fixture
def set_fixed_datetime(monkeypatch):
    """Patch core_logic.datetime.now to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


def _receipt(*lines, total="10.00", **kwargs) -> core_logic.LotReceiptCommand:
    return core_logic.LotReceiptCommand(
        purchase_date=date(2024, 3, 1),
        total_cost=Decimal(total),
        lines=[core_logic.LotLineCommand(piece_ref, quantity) for piece_ref, quantity in lines],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_package_logger_writes_to_its_own_file():
    """The package logger is named after the package and logs to piece_ledger.log."""

    assert piece_ledger.log.name == "piece_ledger"
    assert piece_ledger.LOG_FILE.name == "piece_ledger.log"
    assert piece_ledger.LOG_FILE.parent == piece_ledger.LOG_DIR
    assert piece_ledger.log.handlers


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        shop_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        currency="EUR",
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_load_runtime_context_reads_real_config(runtime_context, config_file):
    """The public loader should open the workbook named in config.ini."""

    assert runtime_context.settings.shop_name == "Test Shop"
    assert runtime_context.settings.currency == "EUR"
    assert set(runtime_context.workbook.sheetnames) == {sheet.value for sheet in SheetName}


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError, match="0.9"):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    """A matching schema version passes silently."""

    core_logic.ensure_schema_version(context)


def test_persist_context_writes_to_disk(monkeypatch, context):
    """persist_context should flush workbook changes to disk."""

    save_mock = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_mock)

    core_logic.persist_context(context)

    save_mock.assert_called_once_with(context.workbook, destination=context.settings.data_file)


def test_refresh_context_reloads_from_disk(monkeypatch, settings):
    """refresh_context should discard in-memory workbook state and reload."""

    refreshed_workbook = Mock(name="reloaded")
    refresh_mock = Mock(return_value=refreshed_workbook)
    monkeypatch.setattr(data_manager, "refresh_workbook", refresh_mock)

    original = core_logic.RuntimeContext(settings=settings, workbook=Mock())
    reloaded_context = core_logic.refresh_context(original)

    refresh_mock.assert_called_once_with(settings.data_file)
    assert reloaded_context.workbook is refreshed_workbook
    assert reloaded_context.settings is settings
    assert reloaded_context is not original


# ---------------------------------------------------------------------------
# Sale lookups
# ---------------------------------------------------------------------------


def test_get_sale_raises_for_unknown_sale(monkeypatch, context):
    """get_sale should raise MissingReferenceError when nothing matches."""

    select_mock = Mock(return_value=[])
    monkeypatch.setattr(data_manager, "select_rows", select_mock)

    with pytest.raises(core_logic.MissingReferenceError, match="Unknown sale: 5"):
        core_logic.get_sale(context, 5)
    assert select_mock.call_args[0][:2] == (context.workbook, SheetName.SALES)


def test_list_sale_items_orders_by_line_index(ledger):
    """Lines come back in line order regardless of insertion order."""

    rows = [
        data_manager.SaleItemRow(None, 1, index, "PIECE", None, f"P{index}", 1, False, None, None, None, None, None)
        for index in (2, 0, 1)
    ]
    rows.append(data_manager.SaleItemRow(None, 2, 0, "PIECE", None, "X", 1, False, None, None, None, None, None))
    data_manager.insert_rows(ledger.workbook, SheetName.SALE_ITEMS, rows)

    items = core_logic.list_sale_items(ledger, 1)
    assert [item.piece_ref for item in items] == ["P0", "P1", "P2"]


# ---------------------------------------------------------------------------
# Lot receipts
# ---------------------------------------------------------------------------


def test_record_lot_receipt_spreads_cost_over_pieces(ledger, set_fixed_datetime):
    """Unit cost is total cost divided by the number of pieces in the lot."""

    fixed_now = set_fixed_datetime(datetime(2024, 3, 1, 9, 0, tzinfo=UTC))
    receipt = core_logic.record_lot_receipt(
        ledger,
        _receipt(("P1", 3), ("P2", 1), total="10.00", lot_code="L-001", supplier="Flea market"),
    )

    assert receipt.lot.lot_id == 1
    assert receipt.lot.total_pieces == 4
    assert receipt.lot.purchase_date == "2024-03-01"
    assert [(row.piece_ref, row.quantity, row.unit_cost) for row in receipt.movements] == [
        ("P1", 3, Decimal("2.5000")),
        ("P2", 1, Decimal("2.5000")),
    ]
    assert {row.created_at for row in receipt.movements} == {fixed_now.isoformat()}
    assert {(row.direction, row.source_type, row.lot_id, row.source_id) for row in receipt.movements} == {
        ("IN", "PURCHASE", "1", "1")
    }
    assert core_logic.list_lots(ledger) == [receipt.lot]


def test_record_lot_receipt_rounds_unit_cost(ledger):
    """Uneven splits are rounded half-up to four decimal places."""

    receipt = core_logic.record_lot_receipt(ledger, _receipt(("P1", 3), total="10.00"))
    assert receipt.movements[0].unit_cost == Decimal("3.3333")


def test_record_lot_receipt_stores_timestamps_in_utc(ledger):
    """Offset timestamps are converted to UTC before they are written."""

    when = datetime(2024, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
    receipt = core_logic.record_lot_receipt(ledger, _receipt(("P1", 1), timestamp=when))

    assert receipt.lot.created_at == "2024-01-01T08:00:00+00:00"
    assert receipt.movements[0].created_at == "2024-01-01T08:00:00+00:00"


def test_naive_timestamps_are_rejected(ledger):
    """Receipts and adjustments refuse timestamps without a timezone."""

    naive = datetime(2024, 1, 1, 10, 0)

    with pytest.raises(core_logic.ContractViolationError, match="timezone"):
        core_logic.record_lot_receipt(ledger, _receipt(("P1", 1), timestamp=naive))
    with pytest.raises(core_logic.ContractViolationError, match="timezone"):
        core_logic.record_adjustment(
            ledger, core_logic.AdjustmentCommand(piece_ref="P1", quantity=1, timestamp=naive)
        )
    assert core_logic.list_lots(ledger) == []
    assert core_logic.list_movements(ledger) == []


def test_record_lot_receipt_rejects_empty_lot(monkeypatch, ledger):
    """A lot without lines is refused before anything is written."""

    insert_mock = Mock()
    monkeypatch.setattr(data_manager, "insert_rows", insert_mock)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_lot_receipt(ledger, _receipt())
    insert_mock.assert_not_called()


@pytest.mark.parametrize(
    ("lines", "total", "error"),
    [
        ((("P1", 0),), "1.00", ValueError),
        ((("P1", 1),), "-1.00", ValueError),
        ((("  ", 1),), "1.00", core_logic.ContractViolationError),
    ],
)
def test_record_lot_receipt_validates_lines(ledger, lines, total, error):
    """Quantities, costs, and piece references are validated."""

    with pytest.raises(error):
        core_logic.record_lot_receipt(ledger, _receipt(*lines, total=total))
    assert core_logic.list_lots(ledger) == []


# ---------------------------------------------------------------------------
# Adjustments and stock
# ---------------------------------------------------------------------------


def test_record_adjustment_writes_signed_movement(ledger, set_fixed_datetime):
    """Adjustments store their signed quantity and no cost."""

    set_fixed_datetime(datetime(2024, 4, 1, tzinfo=UTC))
    movement = core_logic.record_adjustment(
        ledger, core_logic.AdjustmentCommand(piece_ref="P1", quantity=-2, comment="Broken")
    )

    assert movement.direction == "ADJUST"
    assert movement.source_type == "ADJUSTMENT"
    assert movement.quantity == -2
    assert movement.unit_cost is None
    assert movement.comment == "Broken"


def test_record_adjustment_rejects_zero_and_blank(ledger):
    """Zero quantities and missing references are refused."""

    with pytest.raises(ValueError):
        core_logic.record_adjustment(ledger, core_logic.AdjustmentCommand(piece_ref="P1", quantity=0))
    with pytest.raises(core_logic.ContractViolationError):
        core_logic.record_adjustment(ledger, core_logic.AdjustmentCommand(piece_ref="", quantity=1))


def test_calculate_stock_rolls_up_directions(ledger, add_stock):
    """IN adds, OUT subtracts, ADJUST applies its sign."""

    add_stock("P1", 5, "1.00")
    add_stock("P2", 2, "1.00")
    data_manager.insert_rows(
        ledger.workbook,
        SheetName.STOCK_MOVEMENTS,
        [
            data_manager.StockMovementRow(None, None, "P1", "OUT", 3, Decimal("1.00"), "101", "SALE", "9", None),
            data_manager.StockMovementRow(None, None, "P2", "OUT", 2, Decimal("1.00"), "102", "SALE", "9", None),
        ],
    )
    core_logic.record_adjustment(ledger, core_logic.AdjustmentCommand(piece_ref="P1", quantity=-1))

    assert core_logic.calculate_stock(ledger) == {"P1": 1, "P2": 0}


def test_list_movements_filters(ledger, add_stock):
    """Piece, direction, and source filters can be combined."""

    add_stock("P1", 5, "1.00")
    add_stock("P2", 1, "1.00", created_at="2023-12-31T00:00:00+00:00")
    core_logic.record_adjustment(ledger, core_logic.AdjustmentCommand(piece_ref="P1", quantity=2))

    assert [row.piece_ref for row in core_logic.list_movements(ledger)] == ["P2", "P1", "P1"]
    assert len(core_logic.list_movements(ledger, piece_ref="P1")) == 2
    assert len(core_logic.list_movements(ledger, direction=constants.Direction.IN)) == 2
    assert len(core_logic.list_movements(ledger, piece_ref="P1", source_type="ADJUSTMENT")) == 1


def test_find_orphaned_movements_reports_sale_rows_without_lines(ledger, caplog):
    """SALE movements pointing at missing lines are listed and logged."""

    data_manager.insert_rows(
        ledger.workbook,
        SheetName.SALE_ITEMS,
        [data_manager.SaleItemRow(None, 1, 0, "PIECE", None, "P1", 1, False, None, None, None, None, None)],
    )
    data_manager.insert_rows(
        ledger.workbook,
        SheetName.STOCK_MOVEMENTS,
        [
            data_manager.StockMovementRow(None, None, "P1", "OUT", 1, Decimal("1"), "1", "SALE", "1", None),
            data_manager.StockMovementRow(None, None, "P1", "OUT", 1, Decimal("1"), "1", "SALE", "77", None),
        ],
    )

    with caplog.at_level("WARNING", logger="piece_ledger"):
        orphans = core_logic.find_orphaned_movements(ledger)

    assert [row.source_id for row in orphans] == ["77"]
    assert "orphaned" in caplog.text


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("quantity", [0, -1, True, 1.5, Decimal("2")])
def test_require_positive_quantity_rejects_invalid(quantity):
    """Quantities must be strictly positive integers."""

    with pytest.raises(ValueError):
        core_logic.require_positive_quantity(quantity)


def test_require_positive_quantity_accepts_positive():
    """Positive quantities should pass validation."""

    core_logic.require_positive_quantity(1)


def test_require_nonnegative_money_rejects_negative():
    """Negative currency values should raise ValueError."""

    with pytest.raises(ValueError):
        core_logic.require_nonnegative_money(Decimal("-0.01"))


def test_require_nonnegative_money_accepts_zero():
    """Zero or positive currency values should pass validation."""

    core_logic.require_nonnegative_money(Decimal("0.00"))


def test_insufficient_stock_error_carries_details():
    """InsufficientStockError exposes the shortfall on its attributes."""

    error = core_logic.InsufficientStockError("P1", 5, 2)
    assert (error.piece_ref, error.requested, error.available) == ("P1", 5, 2)
    assert str(error) == "Insufficient stock for piece P1: requested 5, available 2"
    assert isinstance(error, core_logic.BusinessRuleViolation)
