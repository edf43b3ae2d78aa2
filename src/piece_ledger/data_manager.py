"""Data access layer for the piece ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Table operations: every worksheet is treated as a table whose first column
   holds an integer primary key. The helpers below offer insert-with-returning,
   filtered selects, updates, and delete-by-predicate. Nothing here spans more
   than one statement; callers that need several writes to succeed together
   have to compensate on their own.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"


class DataAccessError(RuntimeError):
    """Raised when a workbook read or write cannot be completed."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    currency: str


@dataclass(frozen=True)
class LotRow:
    """In-memory view of a row from the ``Lots`` sheet."""

    lot_id: Optional[int]
    created_at: Optional[str]
    lot_code: Optional[str]
    purchase_date: str
    supplier: Optional[str]
    total_cost: Decimal
    total_pieces: int
    notes: Optional[str]


@dataclass(frozen=True)
class BomRow:
    """In-memory view of a row from the ``SetsBom`` sheet."""

    bom_id: Optional[int]
    set_id: str
    piece_ref: str
    quantity: int


@dataclass(frozen=True)
class StockMovementRow:
    """In-memory view of a row from the ``StockMovements`` sheet.

    ``lot_id`` is kept as text: identifiers typed by hand in the workbook are
    preserved verbatim and only parsed when a consumer needs the number.
    """

    movement_id: Optional[int]
    created_at: Optional[str]
    piece_ref: str
    direction: str
    quantity: int
    unit_cost: Optional[Decimal]
    lot_id: Optional[str]
    source_type: str
    source_id: Optional[str]
    comment: Optional[str]


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: Optional[int]
    created_at: Optional[str]
    sale_type: str
    sales_channel: str
    paid_at: str
    net_seller_amount: Decimal
    currency: str
    status: str
    total_cost_amount: Optional[Decimal]
    total_margin_amount: Optional[Decimal]
    margin_rate: Optional[Decimal]
    comment: Optional[str]


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_item_id: Optional[int]
    sale_id: int
    line_index: int
    item_kind: str
    set_id: Optional[str]
    piece_ref: Optional[str]
    quantity: int
    is_partial_set: bool
    net_amount: Optional[Decimal]
    cost_amount: Optional[Decimal]
    margin_amount: Optional[Decimal]
    overrides: Optional[Dict[str, int]]
    comment: Optional[str]


@dataclass(frozen=True)
class SaleItemPieceRow:
    """In-memory view of a row from the ``SaleItemPieces`` snapshot sheet."""

    sale_item_piece_id: Optional[int]
    created_at: Optional[str]
    sale_id: int
    sale_item_id: int
    piece_ref: str
    lot_id: Optional[int]
    quantity: int
    unit_cost: Decimal


@dataclass(frozen=True)
class CompensationRow:
    """In-memory view of a row from the ``Compensations`` sheet."""

    compensation_id: Optional[int]
    created_at: Optional[str]
    sale_id: int
    sale_item_ids: str
    status: str
    error: Optional[str]
    resolved_at: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``. The first match that exists
    on disk is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        currency = parser.get("Defaults", "Currency")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        currency=currency,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Table primitives
# ---------------------------------------------------------------------------


def insert_rows(workbook: Workbook, sheet_name: str, records: Sequence[Any]) -> List[Any]:
    """Append records to a table and return them with their generated keys.

    Primary keys continue from the largest key already present in the sheet.
    Records whose table tracks ``created_at`` receive the current UTC time
    unless the caller supplied one, which keeps imports and tests
    deterministic. The whole batch shares a single timestamp; ordering inside
    the batch is then carried by the primary key.

    Args:
        workbook (Workbook): Workbook holding the target table.
        sheet_name (str): Worksheet name, usually a :class:`SheetName` value.
        records (Sequence[Any]): Row dataclasses matching the table.

    Returns:
        list[Any]: Copies of ``records`` carrying the assigned keys and
            timestamps, in insertion order.

    Raises:
        DataAccessError: If the sheet is unknown or a record does not match
            the table's row type.
    """

    spec = _table_spec(sheet_name)
    sheet = _get_sheet(workbook, spec.sheet_name)
    next_id = _max_primary_key(sheet) + 1
    stamp = datetime.now(UTC).isoformat()

    inserted: List[Any] = []
    for record in records:
        if not isinstance(record, spec.row_type):
            raise DataAccessError(
                f"Cannot insert {type(record).__name__} into sheet '{spec.sheet_name}'"
            )
        changes: Dict[str, Any] = {spec.key_field: next_id}
        if spec.has_created_at and getattr(record, "created_at") is None:
            changes["created_at"] = stamp
        row = replace(record, **changes)
        sheet.append(serialize_row(row))
        inserted.append(row)
        next_id += 1

    log.debug("Inserted %d row(s) into '%s'", len(inserted), spec.sheet_name)
    return inserted


_EARLIEST = datetime.min.replace(tzinfo=UTC)


def _created_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            log.warning("Unreadable movement timestamp %r; ordering it first", value)
            return _EARLIEST
    else:
        return _EARLIEST
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def movement_order(row: StockMovementRow) -> tuple[datetime, int]:
    """Sort key placing movements in creation order.

    ``created_at`` is compared as an instant, so values written with different
    UTC offsets still order correctly. Naive values are read as UTC; missing or
    unreadable ones sort first. Ties fall back to ``movement_id``.
    """
    return (_created_instant(row.created_at), row.movement_id or 0)


def select_rows(
    workbook: Workbook,
    sheet_name: str,
    predicate: Optional[Callable[[Any], bool]] = None,
    *,
    order_by: Optional[Callable[[Any], Any]] = None,
) -> List[Any]:
    """Return the rows of a table, optionally filtered and sorted.

    Fully empty rows are skipped. Without ``order_by`` rows come back in sheet
    order, which is also insertion order.

    Args:
        workbook (Workbook): Workbook holding the table.
        sheet_name (str): Worksheet name.
        predicate (Callable | None): Filter applied to each deserialized row.
        order_by (Callable | None): Sort key applied after filtering. Python's
            sort is stable, so rows with equal keys keep their sheet order.

    Returns:
        list[Any]: Matching row dataclasses.

    Raises:
        DataAccessError: If the sheet is unknown or a row cannot be decoded.
    """

    spec = _table_spec(sheet_name)
    rows = [row for _, row in _iter_table(workbook, spec) if predicate is None or predicate(row)]
    if order_by is not None:
        rows.sort(key=order_by)
    return rows


def update_rows(
    workbook: Workbook,
    sheet_name: str,
    predicate: Callable[[Any], bool],
    *,
    field_values: Mapping[str, Any],
) -> List[Any]:
    """Overwrite selected fields on every row matching ``predicate``.

    Args:
        workbook (Workbook): Workbook holding the table.
        sheet_name (str): Worksheet name.
        predicate (Callable): Selects the rows to update.
        field_values (Mapping[str, Any]): Replacement values keyed by the row
            dataclass field names. Primary keys cannot be changed.

    Returns:
        list[Any]: Updated rows as they now appear in the sheet.

    Raises:
        DataAccessError: If the sheet is unknown or a field name is invalid.
    """

    spec = _table_spec(sheet_name)
    if spec.key_field in field_values:
        raise DataAccessError(f"Primary key '{spec.key_field}' cannot be updated")

    sheet = _get_sheet(workbook, spec.sheet_name)
    updated: List[Any] = []
    for row_index, row in _iter_table(workbook, spec):
        if not predicate(row):
            continue
        try:
            new_row = replace(row, **dict(field_values))
        except TypeError as exc:
            raise DataAccessError(f"Unknown field for sheet '{spec.sheet_name}': {exc}") from exc
        for column_index, value in enumerate(serialize_row(new_row), start=1):
            sheet.cell(row=row_index, column=column_index, value=value)
        updated.append(new_row)

    log.debug("Updated %d row(s) in '%s'", len(updated), spec.sheet_name)
    return updated


def delete_rows(workbook: Workbook, sheet_name: str, predicate: Callable[[Any], bool]) -> int:
    """Delete every row matching ``predicate`` and return how many were removed.

    Deleting with a predicate that matches nothing is a no-op, so repeating a
    delete is safe.

    Raises:
        DataAccessError: If the sheet is unknown or a row cannot be decoded.
    """

    spec = _table_spec(sheet_name)
    sheet = _get_sheet(workbook, spec.sheet_name)
    doomed = [row_index for row_index, row in _iter_table(workbook, spec) if predicate(row)]
    # Bottom-up so earlier indices stay valid.
    for row_index in reversed(doomed):
        sheet.delete_rows(row_index, 1)

    log.debug("Deleted %d row(s) from '%s'", len(doomed), spec.sheet_name)
    return len(doomed)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_row(record: Any) -> list[object]:
    """Convert a row dataclass into the worksheet column ordering.

    Enum members are written as their values, override mappings as JSON text,
    and :class:`~decimal.Decimal` instances are preserved.
    """

    values: list[object] = []
    for spec_field in fields(record):
        value = getattr(record, spec_field.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, dict):
            value = json.dumps(value)
        values.append(value)
    return values


def deserialize_lot(raw_row: Sequence[object]) -> LotRow:
    """Convert a raw ``Lots`` row into a :class:`LotRow`."""

    lot_id, created_at, lot_code, purchase_date, supplier, total_cost, total_pieces, notes = raw_row[:8]
    return LotRow(
        lot_id=_to_optional_int(lot_id),
        created_at=_to_optional_str(created_at),
        lot_code=_to_optional_str(lot_code),
        purchase_date=_to_str(purchase_date),
        supplier=_to_optional_str(supplier),
        total_cost=_to_decimal(total_cost),
        total_pieces=_to_int(total_pieces),
        notes=_to_optional_str(notes),
    )


def deserialize_bom(raw_row: Sequence[object]) -> BomRow:
    """Convert a raw ``SetsBom`` row into a :class:`BomRow`."""

    bom_id, set_id, piece_ref, quantity = raw_row[:4]
    return BomRow(
        bom_id=_to_optional_int(bom_id),
        set_id=_to_str(set_id),
        piece_ref=_to_str(piece_ref),
        quantity=_to_int(quantity),
    )


def deserialize_stock_movement(raw_row: Sequence[object]) -> StockMovementRow:
    """Convert a raw ``StockMovements`` row into a :class:`StockMovementRow`."""

    (
        movement_id,
        created_at,
        piece_ref,
        direction,
        quantity,
        unit_cost,
        lot_id,
        source_type,
        source_id,
        comment,
    ) = raw_row[:10]
    return StockMovementRow(
        movement_id=_to_optional_int(movement_id),
        created_at=_to_optional_str(created_at),
        piece_ref=_to_str(piece_ref),
        direction=_to_str(direction),
        quantity=_to_int(quantity),
        unit_cost=_to_optional_decimal(unit_cost),
        lot_id=normalize_lot_ref(lot_id),
        source_type=_to_str(source_type),
        source_id=_to_optional_str(source_id),
        comment=_to_optional_str(comment),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`."""

    (
        sale_id,
        created_at,
        sale_type,
        sales_channel,
        paid_at,
        net_seller_amount,
        currency,
        status,
        total_cost_amount,
        total_margin_amount,
        margin_rate,
        comment,
    ) = raw_row[:12]
    return SaleRow(
        sale_id=_to_optional_int(sale_id),
        created_at=_to_optional_str(created_at),
        sale_type=_to_str(sale_type),
        sales_channel=_to_str(sales_channel),
        paid_at=_to_str(paid_at),
        net_seller_amount=_to_decimal(net_seller_amount),
        currency=_to_str(currency),
        status=_to_str(status),
        total_cost_amount=_to_optional_decimal(total_cost_amount),
        total_margin_amount=_to_optional_decimal(total_margin_amount),
        margin_rate=_to_optional_decimal(margin_rate),
        comment=_to_optional_str(comment),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    """Convert a raw ``SaleItems`` row into a :class:`SaleItemRow`."""

    (
        sale_item_id,
        sale_id,
        line_index,
        item_kind,
        set_id,
        piece_ref,
        quantity,
        is_partial_set,
        net_amount,
        cost_amount,
        margin_amount,
        overrides,
        comment,
    ) = raw_row[:13]
    return SaleItemRow(
        sale_item_id=_to_optional_int(sale_item_id),
        sale_id=_to_int(sale_id),
        line_index=_to_int(line_index),
        item_kind=_to_str(item_kind),
        set_id=_to_optional_str(set_id),
        piece_ref=_to_optional_str(piece_ref),
        quantity=_to_int(quantity),
        is_partial_set=bool(is_partial_set),
        net_amount=_to_optional_decimal(net_amount),
        cost_amount=_to_optional_decimal(cost_amount),
        margin_amount=_to_optional_decimal(margin_amount),
        overrides=_load_overrides(overrides),
        comment=_to_optional_str(comment),
    )


def deserialize_sale_item_piece(raw_row: Sequence[object]) -> SaleItemPieceRow:
    """Convert a raw ``SaleItemPieces`` row into a :class:`SaleItemPieceRow`."""

    sale_item_piece_id, created_at, sale_id, sale_item_id, piece_ref, lot_id, quantity, unit_cost = raw_row[:8]
    return SaleItemPieceRow(
        sale_item_piece_id=_to_optional_int(sale_item_piece_id),
        created_at=_to_optional_str(created_at),
        sale_id=_to_int(sale_id),
        sale_item_id=_to_int(sale_item_id),
        piece_ref=_to_str(piece_ref),
        lot_id=_to_optional_int(lot_id),
        quantity=_to_int(quantity),
        unit_cost=_to_decimal(unit_cost),
    )


def deserialize_compensation(raw_row: Sequence[object]) -> CompensationRow:
    """Convert a raw ``Compensations`` row into a :class:`CompensationRow`."""

    compensation_id, created_at, sale_id, sale_item_ids, status, error, resolved_at = raw_row[:7]
    return CompensationRow(
        compensation_id=_to_optional_int(compensation_id),
        created_at=_to_optional_str(created_at),
        sale_id=_to_int(sale_id),
        sale_item_ids=_to_str(sale_item_ids),
        status=_to_str(status),
        error=_to_optional_str(error),
        resolved_at=_to_optional_str(resolved_at),
    )


def normalize_lot_ref(value: object) -> Optional[str]:
    """Normalize a lot identifier cell into text, or ``None`` when blank.

    Integers (and integral floats Excel may hand back) become their decimal
    representation; strings are stripped. Anything else is treated as blank.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, Decimal):
        return str(int(value)) if value == value.to_integral_value() else str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _TableSpec:
    sheet_name: str
    row_type: type
    deserialize: Callable[[Sequence[object]], Any]
    key_field: str
    has_created_at: bool


def _build_table_specs() -> Dict[str, _TableSpec]:
    pairs = (
        (SheetName.LOTS, LotRow, deserialize_lot),
        (SheetName.SETS_BOM, BomRow, deserialize_bom),
        (SheetName.STOCK_MOVEMENTS, StockMovementRow, deserialize_stock_movement),
        (SheetName.SALES, SaleRow, deserialize_sale),
        (SheetName.SALE_ITEMS, SaleItemRow, deserialize_sale_item),
        (SheetName.SALE_ITEM_PIECES, SaleItemPieceRow, deserialize_sale_item_piece),
        (SheetName.COMPENSATIONS, CompensationRow, deserialize_compensation),
    )
    specs: Dict[str, _TableSpec] = {}
    for sheet, row_type, deserializer in pairs:
        names = [spec_field.name for spec_field in fields(row_type)]
        specs[sheet.value] = _TableSpec(
            sheet_name=sheet.value,
            row_type=row_type,
            deserialize=deserializer,
            key_field=names[0],
            has_created_at="created_at" in names,
        )
    return specs


_TABLE_SPECS = _build_table_specs()


def _table_spec(sheet_name: str) -> _TableSpec:
    key = sheet_name.value if isinstance(sheet_name, SheetName) else sheet_name
    try:
        return _TABLE_SPECS[key]
    except KeyError as exc:
        raise DataAccessError(f"Unknown table: {key}") from exc


def _get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    try:
        return workbook[sheet_name]
    except KeyError as exc:
        log.error("Workbook is missing sheet '%s'", sheet_name)
        raise DataAccessError(f"Workbook is missing sheet '{sheet_name}'") from exc


def _iter_table(workbook: Workbook, spec: _TableSpec) -> Iterable[tuple[int, Any]]:
    sheet = _get_sheet(workbook, spec.sheet_name)
    width = len(fields(spec.row_type))
    for row_index, raw in enumerate(sheet.iter_rows(min_row=2, max_col=width, values_only=True), start=2):
        # skip fully empty rows
        if not any(cell is not None for cell in raw):
            continue
        padded = tuple(raw) + (None,) * (width - len(raw))
        try:
            yield row_index, spec.deserialize(padded)
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise DataAccessError(
                f"Cannot decode row {row_index} of sheet '{spec.sheet_name}': {exc}"
            ) from exc


def _max_primary_key(sheet: Worksheet) -> int:
    highest = 0
    for (value,) in sheet.iter_rows(min_row=2, max_col=1, values_only=True):
        if value is None:
            continue
        try:
            highest = max(highest, int(value))
        except (TypeError, ValueError) as exc:
            raise DataAccessError(f"Non-numeric key '{value}' in sheet '{sheet.title}'") from exc
    return highest


def _to_str(value: object) -> str:
    return str(value) if value is not None else ""


def _to_optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _to_int(value: object) -> int:
    if value is None:
        return 0
    return int(Decimal(str(value)))


def _to_optional_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return _to_int(value)


def _to_decimal(value: object) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _to_optional_decimal(value: object) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _load_overrides(value: object) -> Optional[Dict[str, int]]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return {str(key): int(qty) for key, qty in value.items()}
    try:
        decoded = json.loads(str(value))
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid overrides JSON: {value!r}") from exc
    if not isinstance(decoded, dict):
        raise ValueError(f"overrides must be a JSON object, got {value!r}")
    return {str(key): int(qty) for key, qty in decoded.items()}
