"""Create an empty ledger workbook with every sheet and its column headers."""

from __future__ import annotations

import sys
from pathlib import Path

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from .constants import SheetName

DATA_FILE = "piece_ledger.xlsx"

SHEET_COLUMNS = {
    SheetName.LOTS.value: [
        "LotID",
        "CreatedAt",
        "LotCode",
        "PurchaseDate",
        "Supplier",
        "TotalCost",
        "TotalPieces",
        "Notes",
    ],
    SheetName.SETS_BOM.value: ["BomID", "SetID", "PieceRef", "Quantity"],
    SheetName.STOCK_MOVEMENTS.value: [
        "MovementID",
        "CreatedAt",
        "PieceRef",
        "Direction",
        "Quantity",
        "UnitCost",
        "LotID",
        "SourceType",
        "SourceID",
        "Comment",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "CreatedAt",
        "SaleType",
        "SalesChannel",
        "PaidAt",
        "NetSellerAmount",
        "Currency",
        "Status",
        "TotalCostAmount",
        "TotalMarginAmount",
        "MarginRate",
        "Comment",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleItemID",
        "SaleID",
        "LineIndex",
        "ItemKind",
        "SetID",
        "PieceRef",
        "Quantity",
        "IsPartialSet",
        "NetAmount",
        "CostAmount",
        "MarginAmount",
        "Overrides",
        "Comment",
    ],
    SheetName.SALE_ITEM_PIECES.value: [
        "SaleItemPieceID",
        "CreatedAt",
        "SaleID",
        "SaleItemID",
        "PieceRef",
        "LotID",
        "Quantity",
        "UnitCost",
    ],
    SheetName.COMPENSATIONS.value: [
        "CompensationID",
        "CreatedAt",
        "SaleID",
        "SaleItemIDs",
        "Status",
        "Error",
        "ResolvedAt",
    ],
}


def build_master_workbook() -> Workbook:
    """Return an in-memory workbook holding every ledger sheet with bold headers."""

    wb = openpyxl.Workbook()
    # Drop the default sheet openpyxl creates
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        ws = wb.create_sheet(title=sheet_name)
        for col_idx, column_name in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = column_name
            cell.font = bold_font
    return wb


def create_master_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Write a fresh ledger workbook to ``destination``.

    Raises:
        FileExistsError: If the file already exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"'{destination}' already exists. Please remove it to re-initialize.")

    destination.parent.mkdir(parents=True, exist_ok=True)
    build_master_workbook().save(destination)
    return destination


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    target = Path(args[0]) if args else Path(DATA_FILE)
    print("Initializing new piece ledger data file...")
    try:
        created = create_master_workbook(target)
    except FileExistsError as exc:
        print(f"Error: {exc}")
        return 1
    for sheet_name in SHEET_COLUMNS:
        print(f"Created sheet: '{sheet_name}'")
    print(f"\nSuccessfully created '{created}'.")
    print("You can now run 'piece-ledger' to interact with the ledger.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
