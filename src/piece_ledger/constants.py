"""Enumerations shared across the piece ledger modules.

Centralises domain constants so that the data access layer (DAL), the costing
and sale engines, and the CLI rely on a single source of truth for the values
written to the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_CURRENCY = "EUR"


class Direction(str, Enum):
    """Enumerate the directions a stock movement can take."""

    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class SourceType(str, Enum):
    """Enumerate the business events that originate stock movements."""

    PURCHASE = "PURCHASE"
    SALE = "SALE"
    SALE_CANCEL = "SALE_CANCEL"
    ADJUSTMENT = "ADJUSTMENT"


class SaleType(str, Enum):
    """Enumerate the two ways a sale can be recorded."""

    SET = "SET"
    PIECE = "PIECE"


class ItemKind(str, Enum):
    """Enumerate the kinds of sale lines."""

    SET = "SET"
    PIECE = "PIECE"


class SaleStatus(str, Enum):
    """Enumerate sale statuses. CONFIRMED may only move to CANCELLED."""

    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class SalesChannel(str, Enum):
    """Known marketplaces. Free-text channels are accepted as well."""

    VINTED = "VINTED"
    LEBONCOIN = "LEBONCOIN"
    EBAY = "EBAY"
    DIRECT = "DIRECT"
    OTHER = "OTHER"


class CompensationStatus(str, Enum):
    """Enumerate the states of a recorded sale-creation compensation."""

    PENDING = "PENDING"
    DONE = "DONE"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    LOTS = "Lots"
    SETS_BOM = "SetsBom"
    STOCK_MOVEMENTS = "StockMovements"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    SALE_ITEM_PIECES = "SaleItemPieces"
    COMPENSATIONS = "Compensations"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CURRENCY",
    "Direction",
    "SourceType",
    "SaleType",
    "ItemKind",
    "SaleStatus",
    "SalesChannel",
    "CompensationStatus",
    "SheetName",
]
