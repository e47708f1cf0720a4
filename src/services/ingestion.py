"""Coupon provisioning from uploaded CSV/XLSX files.

Parsing turns spreadsheet rows into candidate dicts; `import_coupons` records
the upload batch and hands the candidates to `crud.bulk_insert_coupons`.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from openpyxl import load_workbook
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import settings
from src.database import crud
from src.database.models import CouponUpload, Form, as_utc_naive
from src.exceptions import ConflictError, NotFoundError, StoreError, ValidationError


logger = logging.getLogger(__name__)


# Header aliases, after lowercasing and replacing spaces/dashes with underscores
COLUMN_ALIASES = {
    "code": ("coupon_code", "code", "coupon", "couponcode"),
    "description": ("description", "desc"),
    "discount": ("discount",),
    "is_percentage": ("is_percentage", "ispercentage"),
    "max_uses": ("max_uses", "maxuses"),
    "expiry_date": ("expiry_date", "expirydate", "expiry", "expires_at"),
    "linkedin_url": ("linkedin_url", "linkedinurl", "redemption_url", "url"),
}

TRUE_VALUES = {"1", "true", "yes", "y"}


@dataclass
class ParseResult:
    """Candidates and row-level errors from one file."""
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _normalize_header(header: Any) -> str:
    return str(header or "").strip().lower().replace(" ", "_").replace("-", "_")


def _resolve_columns(headers: List[str]) -> Dict[str, str]:
    """Map canonical field name -> header present in the file."""
    resolved = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in headers:
                resolved[canonical] = alias
                break
    return resolved


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc_naive(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return as_utc_naive(datetime.fromisoformat(str(value).strip()))


def _row_to_candidate(row: Dict[str, Any], columns: Dict[str, str], line: int) -> Dict[str, Any]:
    """Convert one row; raises ValueError with a readable message."""
    def value(name):
        header = columns.get(name)
        raw = row.get(header) if header else None
        return raw.strip() if isinstance(raw, str) else raw

    code = value("code")
    if code in (None, ""):
        raise ValueError("Missing coupon code")

    candidate = {"line": line, "code": str(code)}

    description = value("description")
    if description not in (None, ""):
        candidate["description"] = str(description)

    discount = value("discount")
    if discount not in (None, ""):
        try:
            candidate["discount"] = Decimal(str(discount))
        except InvalidOperation:
            raise ValueError(f"Invalid discount: {discount}")
        if candidate["discount"] < 0:
            raise ValueError("Discount cannot be negative")

    is_percentage = value("is_percentage")
    if is_percentage not in (None, ""):
        candidate["is_percentage"] = str(is_percentage).lower() in TRUE_VALUES

    max_uses = value("max_uses")
    if max_uses not in (None, ""):
        try:
            candidate["max_uses"] = int(float(max_uses))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid max_uses: {max_uses}")
        if candidate["max_uses"] < 1:
            raise ValueError("max_uses must be at least 1")

    expiry = value("expiry_date")
    try:
        candidate["expiry_date"] = _parse_datetime(expiry)
    except ValueError:
        raise ValueError(f"Invalid expiry date: {expiry}")

    linkedin_url = value("linkedin_url")
    if linkedin_url not in (None, ""):
        candidate["linkedin_url"] = str(linkedin_url)

    known = set(columns.values())
    extra = {
        key: (val.isoformat() if isinstance(val, (date, datetime)) else val)
        for key, val in row.items()
        if key and key not in known and val not in (None, "")
    }
    if extra:
        candidate["extra_data"] = extra
    return candidate


def _parse_rows(rows: Iterable[Tuple[int, Dict[str, Any]]], headers: List[str]) -> ParseResult:
    result = ParseResult()
    columns = _resolve_columns(headers)
    if "code" not in columns:
        raise ValidationError(
            "No coupon code column found (expected one of: coupon_code, code, coupon)",
            field="file"
        )
    for line, row in rows:
        if all(val in (None, "") for val in row.values()):
            continue
        try:
            result.candidates.append(_row_to_candidate(row, columns, line))
        except ValueError as e:
            result.errors.append({"line": line, "message": str(e)})
    return result


def parse_csv(content: bytes) -> ParseResult:
    """Parse a UTF-8 CSV file with a header row."""
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValidationError(
            f"CSV file is not UTF-8 encoded (invalid byte at position {e.start})", field="file"
        ) from e
    try:
        reader = csv.reader(io.StringIO(text))
        try:
            raw_headers = next(reader)
        except StopIteration:
            raise ValidationError("File has no data", field="file")
        headers = [_normalize_header(h) for h in raw_headers]
        rows = [
            (line, dict(zip(headers, values)))
            for line, values in enumerate(reader, start=2)
        ]
    except csv.Error as e:
        raise ValidationError(f"Could not read CSV file: {e}", field="file") from e
    return _parse_rows(rows, headers)


def parse_xlsx(content: bytes) -> ParseResult:
    """Parse the first worksheet of an Excel workbook with a header row."""
    workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        row_iter = sheet.iter_rows(values_only=True)
        try:
            raw_headers = next(row_iter)
        except StopIteration:
            raise ValidationError("File has no data", field="file")
        headers = [_normalize_header(h) for h in raw_headers]
        rows = [
            (line, dict(zip(headers, values)))
            for line, values in enumerate(row_iter, start=2)
        ]
    finally:
        workbook.close()
    return _parse_rows(rows, headers)


def parse_coupon_file(filename: str, content: bytes) -> ParseResult:
    """Parse an uploaded coupon file, choosing the reader by extension."""
    suffix = Path(filename or "").suffix.lower()
    if suffix == ".csv":
        return parse_csv(content)
    if suffix in (".xlsx", ".xlsm"):
        try:
            return parse_xlsx(content)
        except ValidationError:
            raise
        except Exception as e:
            raise ValidationError(f"Could not read Excel file: {e}", field="file") from e
    raise ValidationError("Unsupported file type; upload a .csv or .xlsx file", field="file")


# ============================================================================
# Provisioning
# ============================================================================

def _count_new_codes(db: Session, candidates: List[Dict[str, Any]]) -> int:
    """Distinct codes in the file that are not stored yet."""
    codes = {crud.normalize_code(candidate["code"]) for candidate in candidates}
    codes.discard("")
    return len(codes - crud.existing_coupon_codes(db, sorted(codes)))


def _mark_upload_failed(db: Session, upload_id: UUID) -> None:
    try:
        crud.finish_coupon_upload(
            db,
            upload_id,
            coupons_added=0,
            duplicates_skipped=0,
            errors=[{"message": "Storing the coupons failed"}],
            status="error"
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not mark upload %s as failed", upload_id)


def import_coupons(
    db: Session,
    filename: str,
    content: bytes,
    form: Optional[Form] = None,
    uploaded_by_id: Optional[UUID] = None,
    mime_type: Optional[str] = None
) -> Tuple[CouponUpload, crud.BulkInsertReport]:
    """
    Parse a file and insert its coupons as one upload batch.

    Coupons are bound to `form` when given, otherwise they join the general
    pool. A form's coupon_limit caps how many coupons it can hold in total;
    codes repeated in the file or already stored do not count against it.
    If storing fails the upload is left in the "error" state.
    """
    if len(content) > settings.upload_max_bytes:
        raise ValidationError(
            f"File is larger than {settings.upload_max_bytes // (1024 * 1024)} MB", field="file"
        )
    parsed = parse_coupon_file(filename, content)
    if not parsed.candidates:
        raise ValidationError("No valid coupon codes found in the file", field="file")

    form_id = form.id if form else None
    upload_id = None
    try:
        if form is not None and form.coupon_limit > 0:
            existing = crud.count_form_coupons(db, form.id)
            new_codes = _count_new_codes(db, parsed.candidates)
            if existing + new_codes > form.coupon_limit:
                raise ConflictError(
                    f"Form has a limit of {form.coupon_limit} coupons; it already has "
                    f"{existing} and the file adds {new_codes}"
                )

        upload = crud.create_coupon_upload(
            db,
            file_name=filename,
            mime_type=mime_type,
            file_size=len(content),
            uploaded_by_id=uploaded_by_id,
            form_id=form_id
        )
        upload_id = upload.id
        report = crud.bulk_insert_coupons(
            db,
            parsed.candidates,
            upload_id=upload_id,
            form_id=form_id,
            created_by_id=uploaded_by_id
        )
        report.errors = parsed.errors + report.errors
        upload = crud.finish_coupon_upload(
            db,
            upload_id,
            coupons_added=report.added,
            duplicates_skipped=report.duplicates,
            errors=report.errors,
            status="completed"
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Coupon upload %s failed", filename)
        if upload_id is not None:
            _mark_upload_failed(db, upload_id)
        raise StoreError("Failed to store uploaded coupons") from e

    logger.info(
        "Upload %s (%s): %d added, %d duplicates, %d errors",
        upload.id, filename, report.added, report.duplicates, len(report.errors)
    )
    return upload, report


def purge_upload(db: Session, upload_id: UUID, force: bool = False) -> int:
    """
    Delete an upload batch and its coupons.

    Refused while any coupon of the batch has been used, unless forced.
    """
    try:
        upload = crud.get_coupon_upload(db, upload_id)
        if upload is None:
            raise NotFoundError("Coupon upload not found")
        used = crud.count_used_coupons_in_upload(db, upload_id)
        if used and not force:
            raise ConflictError(
                f"{used} coupons from this upload have been used; pass force=true to delete anyway"
            )
        deleted = crud.delete_coupon_upload(db, upload_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to delete coupon upload %s", upload_id)
        raise StoreError("Failed to delete coupon upload") from e

    logger.info("Deleted upload %s with %d coupons (force=%s)", upload_id, deleted, force)
    return deleted
