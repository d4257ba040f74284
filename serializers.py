"""
serializers.py — Snapshot serializers

Provides:
- save(products, path, fmt): write products as xlsx / csv / md / json
- read(path): load products back from xlsx / csv / json

Column order is fixed everywhere:
  platform, id, title, sku, variant, quantity, price, status
Absent optional fields (sku, variant) are written as empty cells and read
back as absent.
"""

import csv
import json
from typing import Callable, Dict, List, Optional

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font

from models import Product, SnapshotFormat


COLUMNS = ["platform", "id", "title", "sku", "variant", "quantity", "price", "status"]
HEADERS = ["Platform", "Product ID", "Title", "SKU", "Variant", "Quantity", "Price", "Status"]
_WIDTHS = [10, 20, 40, 20, 20, 12, 12, 15]


def _row(p: Product) -> list:
    return [
        p.platform.value.upper(),
        p.id,
        p.title,
        p.sku or "",
        p.variant or "",
        p.quantity,
        p.price,
        p.status.value,
    ]


def _from_row(values) -> Optional[Product]:
    cells = list(values) + [None] * (len(COLUMNS) - len(values))
    if all(c in (None, "") for c in cells[:len(COLUMNS)]):
        return None
    record = dict(zip(COLUMNS, cells))
    record["id"] = str(record["id"])
    record["title"] = "" if record["title"] is None else str(record["title"])
    record["quantity"] = int(float(record["quantity"] or 0))
    record["price"] = float(record["price"] or 0)
    return Product(**record)


# ── Spreadsheet ───────────────────────────────────────────────────────────────

def save_xlsx(products: List[Product], path: str) -> str:
    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory"
    ws.append(HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for idx, width in enumerate(_WIDTHS):
        ws.column_dimensions[chr(ord("A") + idx)].width = width
    for p in products:
        ws.append(_row(p))
    wb.save(path)
    return path


def read_xlsx(path: str) -> List[Product]:
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.active
        products = []
        for values in ws.iter_rows(min_row=2, values_only=True):
            p = _from_row(values)
            if p is not None:
                products.append(p)
        return products
    finally:
        wb.close()


# ── CSV ───────────────────────────────────────────────────────────────────────

def save_csv(products: List[Product], path: str) -> str:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(HEADERS)
        for p in products:
            writer.writerow(_row(p))
    return path


def read_csv(path: str) -> List[Product]:
    with open(path, "r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        next(reader, None)
        return [p for p in (_from_row(r) for r in reader) if p is not None]


# ── Markdown ──────────────────────────────────────────────────────────────────

def save_markdown(products: List[Product], path: str) -> str:
    """One section per product; the semantic index chunks on these sections."""
    sections = [
        f"## SKU: {p.sku or 'N/A'}\n"
        f"Title: {p.title}\n"
        f"Variant: {p.variant or 'N/A'}\n"
        f"Price: ${p.price}\n"
        f"Qty: {p.quantity}\n"
        f"Status: {p.status.value}\n"
        f"Platform: {p.platform.value.upper()}\n"
        f"ID: {p.id}\n"
        "---"
        for p in products
    ]
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n\n".join(sections))
    return path


# ── JSON ──────────────────────────────────────────────────────────────────────

def save_json(products: List[Product], path: str) -> str:
    with open(path, "w", encoding="utf-8") as f:
        json.dump([p.model_dump(mode="json") for p in products], f, indent=2, ensure_ascii=False)
    return path


def read_json(path: str) -> List[Product]:
    with open(path, "r", encoding="utf-8") as f:
        return [Product.model_validate(item) for item in json.load(f)]


# ── Dispatch ──────────────────────────────────────────────────────────────────

_WRITERS: Dict[SnapshotFormat, Callable[[List[Product], str], str]] = {
    SnapshotFormat.SPREADSHEET: save_xlsx,
    SnapshotFormat.CSV: save_csv,
    SnapshotFormat.MARKDOWN: save_markdown,
    SnapshotFormat.JSON: save_json,
}

_READERS: Dict[SnapshotFormat, Callable[[str], List[Product]]] = {
    SnapshotFormat.SPREADSHEET: read_xlsx,
    SnapshotFormat.CSV: read_csv,
    SnapshotFormat.JSON: read_json,
}


def format_of(path: str) -> SnapshotFormat:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    try:
        return SnapshotFormat(ext)
    except ValueError:
        raise ValueError(f"Unsupported snapshot format: {path}") from None


def save(products: List[Product], path: str, fmt: Optional[SnapshotFormat] = None) -> str:
    return _WRITERS[fmt or format_of(path)](products, path)


def read(path: str) -> List[Product]:
    fmt = format_of(path)
    if fmt not in _READERS:
        raise ValueError(f"Cannot read products back from {fmt.value} files")
    return _READERS[fmt](path)
