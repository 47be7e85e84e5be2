"""Spreadsheet import/export for the product master list.

Products are written with a fixed header row and read back through a lenient
alias table so that sheets maintained by hand (``Qty`` instead of
``Quantity``, ``Code`` instead of ``SKU`` and so on) still import. Adding an
alias only needs a new entry in :data:`IMPORT_FIELDS`.
"""
from __future__ import annotations

import csv
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from io import BytesIO, StringIO
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import openpyxl
import xlrd
import xlwt
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from .inventory import DEFAULT_MIN_LEVEL, Product, parse_number

logger = logging.getLogger(__name__)

SHEET_NAME = "Inventory Master"
EXPORT_HEADERS: Tuple[str, ...] = (
    "ID",
    "Product Name",
    "SKU",
    "Category",
    "Quantity",
    "Price",
    "Min Level",
    "Image URL",
)
BACKUP_PREFIX = "StoreFlow_Backup"
XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MIMETYPE = "application/vnd.ms-excel"
SUPPORTED_SUFFIXES = {".xlsx", ".xls"}

_XLSX_MAGIC = b"PK\x03\x04"
_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
_COLUMN_WIDTHS = (16, 28, 16, 18, 10, 10, 10, 40)


class SpreadsheetError(ValueError):
    """Raised when uploaded bytes cannot be read as a spreadsheet."""


@dataclass(frozen=True)
class FieldSpec:
    """Maps one product field to the header names accepted on import."""

    name: str
    aliases: Tuple[str, ...]
    kind: str
    default: Callable[[int, int], Any]


IMPORT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("id", ("ID", "Id"), "text", lambda index, now: str(now + index)),
    FieldSpec(
        "name",
        ("Name", "Product", "Item Name", "Product Name"),
        "text",
        lambda index, now: "Untitled",
    ),
    FieldSpec("sku", ("SKU", "Code"), "text", lambda index, now: f"IMP-{now}-{index}"),
    FieldSpec(
        "category", ("Category", "Group"), "text", lambda index, now: "Uncategorized"
    ),
    FieldSpec("quantity", ("Quantity", "Qty", "Stock"), "quantity", lambda index, now: 0),
    FieldSpec("price", ("Price", "Rate"), "price", lambda index, now: 0.0),
    FieldSpec("image_url", ("Image", "Image URL"), "text", lambda index, now: ""),
)


@dataclass(frozen=True)
class RowIssue:
    """A default substituted while importing a row."""

    row: int
    field: str
    reason: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "field": self.field,
            "reason": self.reason,
            "value": None if self.value is None else str(self.value),
        }


@dataclass
class ImportReport:
    products: List[Product] = field(default_factory=list)
    issues: List[RowIssue] = field(default_factory=list)

    @property
    def clean_rows(self) -> int:
        dirty = {issue.row for issue in self.issues}
        return sum(1 for index in range(len(self.products)) if index not in dirty)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": len(self.products),
            "clean_rows": self.clean_rows,
            "products": [product.to_dict() for product in self.products],
            "substitutions": [issue.to_dict() for issue in self.issues],
        }


# ----------------------------------------------------------------------
# Row mapping
# ----------------------------------------------------------------------
def _normalize_header(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).replace("\ufeff", "").strip().lower()
    return text


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _lookup(row: Mapping[str, Any], normalized: Dict[str, Any], field_spec: FieldSpec) -> Any:
    for alias in field_spec.aliases:
        if alias in row and not _is_blank(row[alias]):
            return row[alias]
        candidate = normalized.get(alias.lower())
        if not _is_blank(candidate):
            return candidate
    return None


def _text_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _map_row(row: Any, index: int, now_ms: int) -> Tuple[Product, List[RowIssue]]:
    if not isinstance(row, Mapping):
        row = {}
    normalized: Dict[str, Any] = {}
    for key, value in row.items():
        normalized.setdefault(_normalize_header(key), value)
    values: Dict[str, Any] = {}
    issues: List[RowIssue] = []
    for field_spec in IMPORT_FIELDS:
        raw = _lookup(row, normalized, field_spec)
        if raw is None:
            values[field_spec.name] = field_spec.default(index, now_ms)
            issues.append(RowIssue(index, field_spec.name, "missing"))
            continue
        if field_spec.kind == "text":
            values[field_spec.name] = _text_value(raw)
            continue
        parsed = parse_number(raw)
        if parsed is None:
            values[field_spec.name] = field_spec.default(index, now_ms)
            issues.append(RowIssue(index, field_spec.name, "invalid", raw))
            continue
        if parsed < 0:
            issues.append(RowIssue(index, field_spec.name, "clamped", raw))
            parsed = 0
        values[field_spec.name] = int(parsed) if field_spec.kind == "quantity" else float(parsed)
    product = Product(
        id=values["id"],
        name=values["name"],
        sku=values["sku"],
        category=values["category"],
        quantity=values["quantity"],
        min_level=DEFAULT_MIN_LEVEL,
        price=values["price"],
        image_url=values["image_url"],
    )
    return product, issues


def row_to_product(row: Mapping[str, Any], index: int = 0, *, now_ms: Optional[int] = None) -> Product:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    product, _ = _map_row(row, index, now_ms)
    return product


def rows_to_products(rows: Iterable[Mapping[str, Any]], *, now_ms: Optional[int] = None) -> List[Product]:
    return validate_import(rows, now_ms=now_ms).products


def validate_import(
    rows: Iterable[Mapping[str, Any]], *, now_ms: Optional[int] = None
) -> ImportReport:
    """Map rows exactly like an import does and list every default that was substituted."""

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    report = ImportReport()
    for index, row in enumerate(rows):
        product, issues = _map_row(row, index, now_ms)
        report.products.append(product)
        report.issues.extend(issues)
    return report


def product_to_row(product: Product) -> Dict[str, Any]:
    return {
        "ID": product.id,
        "Product Name": product.name,
        "SKU": product.sku,
        "Category": product.category,
        "Quantity": product.quantity,
        "Price": product.price,
        "Min Level": product.min_level,
        "Image URL": product.image_url,
    }


# ----------------------------------------------------------------------
# Workbook codec
# ----------------------------------------------------------------------
def _cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


def _rows_from_table(header: Sequence[Any], body: Iterable[Sequence[Any]]) -> List[Dict[str, Any]]:
    labels = [str(_cell_value(label)) for label in header]
    rows: List[Dict[str, Any]] = []
    for values in body:
        record: Dict[str, Any] = {}
        for col_index, label in enumerate(labels):
            if not label or label in record:
                continue
            value = values[col_index] if col_index < len(values) else None
            record[label] = _cell_value(value)
        if not any(str(value).strip() for value in record.values()):
            continue
        rows.append(record)
    return rows


def _read_xlsx(data: bytes) -> List[Dict[str, Any]]:
    try:
        workbook = openpyxl.load_workbook(BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise SpreadsheetError("Invalid XLSX file") from exc
    try:
        if not workbook.worksheets:
            raise SpreadsheetError("Missing worksheet")
        sheet = workbook.worksheets[0]
        table = sheet.iter_rows(values_only=True)
        header = next(table, None)
        if header is None:
            return []
        return _rows_from_table(header, table)
    finally:
        workbook.close()


def _read_xls(data: bytes) -> List[Dict[str, Any]]:
    try:
        workbook = xlrd.open_workbook(file_contents=data)
    except Exception as exc:
        raise SpreadsheetError("Invalid XLS file") from exc
    if workbook.nsheets == 0:
        raise SpreadsheetError("Missing worksheet")
    sheet = workbook.sheet_by_index(0)
    if sheet.nrows == 0:
        return []
    body = []
    for row_index in range(1, sheet.nrows):
        values = []
        for cell in sheet.row(row_index):
            if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
                values.append(None)
            else:
                values.append(cell.value)
        body.append(values)
    return _rows_from_table(sheet.row_values(0), body)


def _read_csv(text: str) -> List[Dict[str, Any]]:
    reader = csv.reader(StringIO(text))
    header = next(reader, None)
    if header is None:
        return []
    return _rows_from_table(header, reader)


def read_rows(data: bytes, filename: Optional[str] = None) -> List[Dict[str, Any]]:
    """Read the first sheet of a workbook (or a CSV file) into header-keyed rows."""

    if not data:
        raise SpreadsheetError("Empty file")
    extension = Path(filename or "").suffix.lower()
    if data.startswith(_XLSX_MAGIC) or extension == ".xlsx":
        return _read_xlsx(data)
    if data.startswith(_OLE2_MAGIC) or extension == ".xls":
        return _read_xls(data)
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SpreadsheetError("File must be XLSX, XLS or UTF-8 CSV") from exc
    return _read_csv(text)


def load_products(data: bytes, filename: Optional[str] = None) -> List[Product]:
    rows = read_rows(data, filename)
    products = rows_to_products(rows)
    logger.info("Read %d product rows from %s", len(products), filename or "upload")
    return products


def write_xlsx(
    rows: Iterable[Mapping[str, Any]],
    *,
    headers: Sequence[str] = EXPORT_HEADERS,
    sheet_name: str = SHEET_NAME,
) -> bytes:
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = sheet_name
    sheet.append(list(headers))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for index, width in enumerate(_COLUMN_WIDTHS[: len(headers)], start=1):
        sheet.column_dimensions[get_column_letter(index)].width = width
    for row in rows:
        sheet.append([None if _is_blank(row.get(key)) else row.get(key) for key in headers])
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def write_xls(
    rows: Iterable[Mapping[str, Any]],
    *,
    headers: Sequence[str] = EXPORT_HEADERS,
    sheet_name: str = SHEET_NAME,
) -> bytes:
    workbook = xlwt.Workbook(encoding="utf-8")
    sheet = workbook.add_sheet(sheet_name)
    header_style = xlwt.easyxf(
        "font: bold on; align: horiz center, vert center;"
        "borders: left thin, right thin, top thin, bottom thin"
    )
    for index, width in enumerate(_COLUMN_WIDTHS[: len(headers)]):
        sheet.col(index).width = 256 * width
    for col_index, header in enumerate(headers):
        sheet.write(0, col_index, header, header_style)
    for row_index, row in enumerate(rows, start=1):
        for col_index, header in enumerate(headers):
            value = row.get(header)
            sheet.write(row_index, col_index, "" if value is None else value)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def export_products(products: Iterable[Product], fmt: str = "xlsx") -> bytes:
    rows = [product_to_row(product) for product in products]
    if fmt == "xls":
        return write_xls(rows)
    if fmt == "xlsx":
        return write_xlsx(rows)
    raise ValueError(f"Unsupported export format '{fmt}'")


def backup_filename(day: Optional[date] = None, fmt: str = "xlsx") -> str:
    if day is None:
        day = datetime.now(timezone.utc).date()
    return f"{BACKUP_PREFIX}_{day.isoformat()}.{fmt}"


__all__ = [
    "EXPORT_HEADERS",
    "IMPORT_FIELDS",
    "ImportReport",
    "RowIssue",
    "SHEET_NAME",
    "SpreadsheetError",
    "backup_filename",
    "export_products",
    "load_products",
    "product_to_row",
    "read_rows",
    "row_to_product",
    "rows_to_products",
    "validate_import",
    "write_xls",
    "write_xlsx",
]
