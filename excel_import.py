"""Bulk expense import from spreadsheets with loosely named columns.

Rows are mapped field by field through lists of known header spellings,
validated with the same schema as manual entry and committed one at a time,
so a bad row is reported without stopping the rest of the batch.
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from dateutil import parser as date_parser
from openpyxl import load_workbook
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from periods import local_today
from schemas import CategoryIn, ExpenseIn
from services import CategoryService, ExpenseService, NotFoundError

logger = logging.getLogger(__name__)

FIELD_HEADERS: dict[str, tuple[str, ...]] = {
    "date": ("date", "Date", "DATE", "expense_date", "Expense Date"),
    "description": (
        "description",
        "Description",
        "DESCRIPTION",
        "expense_description",
        "Expense Description",
        "item",
        "Item",
    ),
    "amount": (
        "amount",
        "Amount",
        "AMOUNT",
        "expense_amount",
        "Expense Amount",
        "cost",
        "Cost",
        "price",
        "Price",
    ),
    "category": (
        "category",
        "Category",
        "CATEGORY",
        "expense_category",
        "Expense Category",
        "type",
        "Type",
    ),
    "vendor": (
        "vendor",
        "Vendor",
        "VENDOR",
        "supplier",
        "Supplier",
        "merchant",
        "Merchant",
    ),
    "notes": (
        "notes",
        "Notes",
        "NOTES",
        "comments",
        "Comments",
        "remarks",
        "Remarks",
    ),
}

# Spreadsheet serial 25569 is 1970-01-01.
EXCEL_EPOCH_OFFSET_DAYS = 25569
UNIX_EPOCH = datetime(1970, 1, 1)
AMOUNT_NOISE = re.compile(r"[₹€$£,\s]")
CENT = Decimal("0.01")
DEFAULT_DESCRIPTION = "Imported expense"
SPREADSHEET_SUFFIXES = {".xlsx", ".xlsm", ".csv"}


@dataclass
class ImportResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def resolve_upload_path(file_path: str, upload_dir: Path) -> Path:
    relative = file_path.strip().replace("\\", "/")
    if relative.startswith("/uploads/"):
        relative = relative[len("/uploads/") :]
    relative = relative.lstrip("/")
    root = upload_dir.resolve()
    candidate = (root / relative).resolve()
    if not candidate.is_relative_to(root) or candidate == root:
        raise ValueError("File path must point inside the upload directory")
    if not candidate.is_file():
        raise NotFoundError("Uploaded file not found")
    if candidate.suffix.lower() not in SPREADSHEET_SUFFIXES:
        raise ValueError("Unsupported file type; upload an .xlsx or .csv file")
    return candidate


def _blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def read_rows(path: Path) -> list[dict[str, object]]:
    """Read the first sheet as a list of header -> cell dicts, skipping blank rows."""
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8-sig") as handle:
            return [
                {key.strip(): value for key, value in raw.items() if key}
                for raw in csv.DictReader(handle)
                if not all(_blank(value) for value in raw.values())
            ]

    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise ValueError("Failed to parse Excel file") from exc
    try:
        sheet = workbook.worksheets[0]
        values = sheet.iter_rows(values_only=True)
        header = next(values, None)
        if header is None:
            return []
        keys = [str(cell).strip() if cell is not None else None for cell in header]
        rows: list[dict[str, object]] = []
        for cells in values:
            if all(_blank(cell) for cell in cells):
                continue
            rows.append(
                {key: cell for key, cell in zip(keys, cells) if key is not None}
            )
        return rows
    finally:
        workbook.close()


def pick_field(row: dict[str, object], name: str) -> Optional[object]:
    for key in FIELD_HEADERS[name]:
        value = row.get(key)
        if not _blank(value):
            return value
    return None


def parse_sheet_date(value: object, today: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return (UNIX_EPOCH + timedelta(days=value - EXCEL_EPOCH_OFFSET_DAYS)).date()
        except OverflowError:
            return today
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError):
        return today


def clean_amount(value: object) -> str:
    return AMOUNT_NOISE.sub("", str(value))


def normalize_amount(value: object) -> str:
    """Clean a sheet amount and round it half-up to cents.

    Values that are not numbers come back cleaned but unrounded, so row
    validation still reports them.
    """
    cleaned = clean_amount(value)
    try:
        amount = Decimal(cleaned)
        if not amount.is_finite():
            return cleaned
        return str(amount.quantize(CENT, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return cleaned


def describe_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        parts = []
        for error in exc.errors():
            loc = ".".join(str(part) for part in error.get("loc", ()))
            parts.append(f"{loc}: {error.get('msg')}" if loc else error.get("msg"))
        return "; ".join(parts)
    return str(exc) or exc.__class__.__name__


class CategoryResolver:
    """Name -> id cache for one import run, creating unknown categories once."""

    def __init__(self, categories: CategoryService) -> None:
        self.categories = categories
        self._ids: Optional[dict[str, int]] = None
        self._fallback_id: Optional[int] = None
        self.created: list[str] = []

    def _load(self) -> dict[str, int]:
        if self._ids is None:
            active = self.categories.list_all()
            self._ids = {category.name.lower(): category.id for category in active}
            if active:
                self._fallback_id = min(category.id for category in active)
        return self._ids

    def resolve(self, name: Optional[object]) -> Optional[int]:
        ids = self._load()
        if _blank(name):
            return self._fallback_id
        clean = str(name).strip()
        key = clean.lower()
        if key in ids:
            return ids[key]
        try:
            category = self.categories.create(CategoryIn(name=clean))
        except (ValueError, SQLAlchemyError) as exc:
            if isinstance(exc, SQLAlchemyError):
                self.categories.session.rollback()
            logger.warning(f"expense_import_category_failed: name={clean!r} error={exc}")
            return self._fallback_id
        ids[key] = category.id
        if self._fallback_id is None:
            self._fallback_id = category.id
        self.created.append(category.name)
        return category.id


def map_row(
    row: dict[str, object], resolver: CategoryResolver, today: date
) -> dict[str, object]:
    raw_date = pick_field(row, "date")
    description = pick_field(row, "description")
    amount = pick_field(row, "amount")
    vendor = pick_field(row, "vendor")
    notes = pick_field(row, "notes")
    return {
        "date": parse_sheet_date(raw_date, today) if raw_date is not None else today,
        "description": (
            str(description).strip() if description is not None else DEFAULT_DESCRIPTION
        ),
        "amount": normalize_amount(amount) if amount is not None else "0",
        "category_id": resolver.resolve(pick_field(row, "category")),
        "vendor": str(vendor).strip() if vendor is not None else None,
        "notes": str(notes).strip() if notes is not None else None,
    }


class ExcelImportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def import_file(self, path: Path, *, today: Optional[date] = None) -> ImportResult:
        rows = read_rows(path)
        logger.info(f"expense_import_started: file={path.name} rows={len(rows)}")
        return self.import_rows(rows, today=today)

    def import_rows(
        self, rows: list[dict[str, object]], *, today: Optional[date] = None
    ) -> ImportResult:
        if not rows:
            raise ValueError("No data found in Excel file")
        today = local_today(today)
        resolver = CategoryResolver(CategoryService(self.session))
        expenses = ExpenseService(self.session)
        result = ImportResult(total=len(rows))

        for idx, row in enumerate(rows, start=1):
            try:
                data = ExpenseIn.model_validate(map_row(row, resolver, today))
                expenses.create(data)
            except Exception as exc:
                self.session.rollback()
                result.failed += 1
                result.errors.append(f"Row {idx}: {describe_error(exc)}")
                logger.warning(f"expense_import_row_failed: row={idx} error={exc!r}")
            else:
                result.successful += 1

        logger.info(
            f"expense_import: total={result.total} successful={result.successful} "
            f"failed={result.failed} categories_created={len(resolver.created)}"
        )
        return result
