"""Spreadsheet reading, row validation and writing for bulk uploads."""
import csv
import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import BytesIO, StringIO
from typing import Optional

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from marketplace.exceptions import UploadRejectedError
from marketplace.models.shop import ProductCondition
from marketplace.services import error_messages as codes
from marketplace.services.spec_rules import normalize_spec_key

logger = logging.getLogger(__name__)

COL_NAME = "Product Name"
COL_CATEGORY = "Category"
COL_BRAND = "Brand"
COL_SKU = "SKU"
COL_PRICE = "Base Price"
COL_STOCK = "Stock Quantity"
COL_CONDITION = "Condition"
COL_DESCRIPTION = "Description"
COL_IMAGES = "Images"

TEMPLATE_COLUMNS = [
    COL_NAME,
    COL_CATEGORY,
    COL_BRAND,
    COL_SKU,
    COL_PRICE,
    COL_STOCK,
    COL_CONDITION,
    COL_DESCRIPTION,
    COL_IMAGES,
]
REQUIRED_COLUMNS = [COL_NAME, COL_PRICE, COL_STOCK]
SPEC_PREFIX = "Spec:"

# Columns appended by the correction generator; dropped again on re-upload.
ANNOTATION_COLUMNS = ["Row_Reference", "Error_Reason", "Error_Reason_Chichewa"]

MAX_IMAGES = 10
PRODUCTS_SHEET = "Products"
XLSX_SIGNATURE = b"PK\x03\x04"
CSV = "csv"
XLSX = "xlsx"

_IMAGE_SPLIT = re.compile(r"[,\n]+")


@dataclass
class RowError:
    row: int
    field: str
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass
class ParsedRow:
    """A row that passed type coercion. Optional fields are None when blank."""

    row_number: int
    product_name: str
    base_price: Decimal
    stock_quantity: int
    condition: str
    brand: Optional[str] = None
    sku: Optional[str] = None
    category_name: Optional[str] = None
    description: Optional[str] = None
    specs: Optional[dict[str, str]] = None
    images: Optional[list[str]] = None


@dataclass
class ParseResult:
    file_format: str
    columns: list[str]
    rows: list[ParsedRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    raw_rows: dict[int, dict[str, str]] = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return len(self.raw_rows)

    def errors_for(self, row_number: int) -> list[RowError]:
        return [error for error in self.errors if error.row == row_number]


def detect_format(payload: bytes) -> str:
    return XLSX if payload.startswith(XLSX_SIGNATURE) else CSV


def _canonical(header: str) -> str:
    return " ".join(header.split()).casefold()


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def read_table(payload: bytes) -> tuple[str, list[list[str]]]:
    """
    Read a CSV or XLSX payload into a list of text rows (header included).

    Args:
        payload: Raw uploaded bytes

    Returns:
        Tuple of (file_format, rows)
    """
    file_format = detect_format(payload)

    if file_format == XLSX:
        try:
            workbook = load_workbook(BytesIO(payload), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
            logger.warning(f"⚠️ Unreadable XLSX upload: {e}")
            raise UploadRejectedError("Could not read the uploaded spreadsheet")

        try:
            if PRODUCTS_SHEET in workbook.sheetnames:
                sheet = workbook[PRODUCTS_SHEET]
            else:
                sheet = workbook.worksheets[0]
            rows = [
                [_cell_text(value) for value in row]
                for row in sheet.iter_rows(values_only=True)
            ]
        finally:
            workbook.close()
        return file_format, rows

    try:
        text = payload.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise UploadRejectedError("CSV files must be UTF-8 encoded")

    try:
        rows = [[cell.strip() for cell in row] for row in csv.reader(StringIO(text))]
    except csv.Error as e:
        logger.warning(f"⚠️ Malformed CSV upload: {e}")
        raise UploadRejectedError("Could not read the uploaded CSV file")
    return file_format, rows


def _resolve_header(header: list[str]) -> tuple[list[str], dict[str, int], dict[str, int]]:
    """Map template fields and spec keys to column positions."""
    template = {_canonical(name): name for name in TEMPLATE_COLUMNS}
    annotations = {_canonical(name) for name in ANNOTATION_COLUMNS}
    spec_prefix = _canonical(SPEC_PREFIX)

    columns: list[str] = []
    positions: dict[str, int] = {}
    spec_positions: dict[str, int] = {}

    for index, name in enumerate(header):
        key = _canonical(name)
        if not key or key in annotations:
            continue
        columns.append(name)
        if key in template and template[key] not in positions:
            positions[template[key]] = index
        elif key.startswith(spec_prefix):
            spec_key = normalize_spec_key(name.split(":", 1)[1])
            if spec_key:
                spec_positions.setdefault(spec_key, index)

    return columns, positions, spec_positions


def parse_spreadsheet(payload: bytes, max_rows: int = 200) -> ParseResult:
    """
    Parse an uploaded spreadsheet into validated rows and per-row errors.

    Whole-file problems raise UploadRejectedError. Row problems never raise;
    they are collected in ``ParseResult.errors`` keyed by 1-based data row.

    Args:
        payload: Raw uploaded bytes (CSV or XLSX)
        max_rows: Ceiling on non-blank data rows

    Returns:
        ParseResult with parsed rows, errors and the raw cells of every row
    """
    if not payload:
        raise UploadRejectedError("The uploaded file is empty")

    file_format, table = read_table(payload)
    if not table or not any(table[0]):
        raise UploadRejectedError("The uploaded file has no header row")

    header = table[0]
    columns, positions, spec_positions = _resolve_header(header)

    missing = [name for name in REQUIRED_COLUMNS if name not in positions]
    if missing:
        raise UploadRejectedError(f"Missing required columns: {', '.join(missing)}")

    data_rows = [row for row in table[1:] if any(cell for cell in row)]
    if not data_rows:
        raise UploadRejectedError("No data rows found in the file")
    if len(data_rows) > max_rows:
        raise UploadRejectedError(
            f"Too many rows: {len(data_rows)} (maximum {max_rows} per upload)"
        )

    logger.info(f"📄 Parsing {len(data_rows)} rows from {file_format.upper()} upload")
    result = ParseResult(file_format=file_format, columns=columns)

    for row_number, cells in enumerate(data_rows, start=1):
        raw = {
            name: cells[index] if index < len(cells) else ""
            for index, name in enumerate(header)
            if name in columns
        }
        result.raw_rows[row_number] = raw

        def cell(column: str) -> str:
            index = positions.get(column)
            if index is None or index >= len(cells):
                return ""
            return cells[index]

        parsed, errors = _parse_row(row_number, cell, cells, spec_positions)
        if errors:
            result.errors.extend(errors)
        else:
            result.rows.append(parsed)

    logger.info(
        f"✅ Parsed {len(result.rows)} rows, {len(data_rows) - len(result.rows)} with errors"
    )
    return result


def _parse_row(row_number, cell, cells, spec_positions) -> tuple[Optional[ParsedRow], list[RowError]]:
    errors: list[RowError] = []

    def fail(column: str, code: str, message: str) -> None:
        errors.append(RowError(row=row_number, field=column, code=code, message=message))

    name = cell(COL_NAME)
    if not name:
        fail(COL_NAME, codes.MISSING_PRODUCT_NAME, "Product name is required")

    price = None
    price_text = cell(COL_PRICE).replace(",", "")
    if not price_text:
        fail(COL_PRICE, codes.MISSING_PRICE, "Base price is required")
    else:
        try:
            price = Decimal(price_text)
        except InvalidOperation:
            price = None
        if price is None or not price.is_finite() or price <= 0:
            fail(
                COL_PRICE,
                codes.INVALID_PRICE,
                f"Base price must be a positive number (got '{cell(COL_PRICE)}')",
            )
            price = None
        else:
            price = price.quantize(Decimal("0.01"))

    stock = None
    stock_text = cell(COL_STOCK).replace(",", "")
    try:
        value = Decimal(stock_text) if stock_text else None
    except InvalidOperation:
        value = None
    if (
        value is None
        or not value.is_finite()
        or value < 0
        or value != value.to_integral_value()
    ):
        fail(
            COL_STOCK,
            codes.INVALID_STOCK,
            f"Stock quantity must be a whole number of 0 or more (got '{cell(COL_STOCK)}')",
        )
    else:
        stock = int(value)

    condition = ProductCondition.NEW.value
    condition_text = cell(COL_CONDITION)
    if condition_text:
        candidate = re.sub(r"[\s-]+", "_", condition_text.upper())
        allowed = [c.value for c in ProductCondition]
        if candidate in allowed:
            condition = candidate
        else:
            fail(
                COL_CONDITION,
                codes.INVALID_CONDITION,
                f"Condition must be one of {', '.join(allowed)} (got '{condition_text}')",
            )

    images = None
    images_text = cell(COL_IMAGES)
    if images_text:
        images = [url.strip() for url in _IMAGE_SPLIT.split(images_text) if url.strip()]
        bad = [url for url in images if not url.lower().startswith(("http://", "https://"))]
        if bad:
            fail(COL_IMAGES, codes.INVALID_IMAGE_URL, f"Invalid image URL: {bad[0]}")
        if len(images) > MAX_IMAGES:
            fail(
                COL_IMAGES,
                codes.TOO_MANY_IMAGES,
                f"At most {MAX_IMAGES} images are allowed (got {len(images)})",
            )
        images = images or None

    specs = {
        key: cells[index]
        for key, index in spec_positions.items()
        if index < len(cells) and cells[index]
    }

    if errors:
        return None, errors

    return (
        ParsedRow(
            row_number=row_number,
            product_name=name,
            base_price=price,
            stock_quantity=stock,
            condition=condition,
            brand=cell(COL_BRAND) or None,
            sku=cell(COL_SKU) or None,
            category_name=cell(COL_CATEGORY) or None,
            description=cell(COL_DESCRIPTION) or None,
            specs=specs or None,
            images=images,
        ),
        [],
    )


def write_table(
    columns: list[str],
    rows: list[list[str]],
    file_format: str = CSV,
    notes: Optional[list[str]] = None,
) -> bytes:
    """
    Serialize a header and rows as CSV or XLSX bytes.

    XLSX output puts the data on a ``Products`` sheet so it re-parses
    through ``parse_spreadsheet``; ``notes`` go on a second sheet.
    """
    if file_format == XLSX:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = PRODUCTS_SHEET
        sheet.append(columns)
        for row in rows:
            sheet.append(row)
        for index, name in enumerate(columns, start=1):
            letter = sheet.cell(row=1, column=index).column_letter
            sheet.column_dimensions[letter].width = max(14, len(name) + 4)
        if notes:
            notes_sheet = workbook.create_sheet("Instructions")
            for line in notes:
                notes_sheet.append([line])
        buffer = BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(columns)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


TEMPLATE_SPEC_COLUMNS = ["Spec: RAM", "Spec: Storage", "Spec: Screen Size"]

TEMPLATE_EXAMPLE = {
    COL_NAME: "Samsung Galaxy A15",
    COL_CATEGORY: "Smartphones",
    COL_BRAND: "Samsung",
    COL_SKU: "",
    COL_PRICE: "250000",
    COL_STOCK: "10",
    COL_CONDITION: "NEW",
    COL_DESCRIPTION: "6.5 inch display, dual SIM",
    COL_IMAGES: "https://example.com/a15-front.jpg, https://example.com/a15-back.jpg",
    "Spec: RAM": "4GB",
    "Spec: Storage": "128GB",
    "Spec: Screen Size": "6.5 inches",
}

TEMPLATE_NOTES = [
    "Fill one product per row on the Products sheet.",
    "Required: Product Name, Base Price, Stock Quantity.",
    "Condition: NEW, REFURBISHED, USED_LIKE_NEW, USED_GOOD or USED_FAIR (blank means NEW).",
    f"Images: up to {MAX_IMAGES} URLs separated by commas.",
    "Add a 'Spec: <Name>' column for every product specification.",
]


def build_template(file_format: str = CSV) -> bytes:
    """Blank upload template with one example row."""
    columns = TEMPLATE_COLUMNS + TEMPLATE_SPEC_COLUMNS
    example = [TEMPLATE_EXAMPLE.get(name, "") for name in columns]
    notes = TEMPLATE_NOTES if file_format == XLSX else None
    return write_table(columns, [example], file_format, notes=notes)


def media_type(file_format: str) -> str:
    if file_format == XLSX:
        return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    return "text/csv"
