"""Staging store for bulk uploads: stage, preview, resolve, cancel, expire."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from marketplace.config import Settings, get_settings
from marketplace.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UploadRejectedError,
)
from marketplace.models.shop import Shop, ShopProduct
from marketplace.models.upload_batch import (
    BatchStatus,
    MatchKind,
    RowStatus,
    StagedRow,
    UploadBatch,
)
from marketplace.services import error_messages as codes
from marketplace.services.product_matcher import (
    MatchDecision,
    MatchPolicy,
    ProductMatcher,
    normalize_text,
)
from marketplace.services.spec_rules import SpecRuleBook, derive_listing_status
from marketplace.services.spreadsheet import (
    COL_NAME,
    COL_SKU,
    ParsedRow,
    RowError,
    parse_spreadsheet,
)

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "text/csv",
    "application/csv",
    "text/plain",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/octet-stream",
}
ALLOWED_EXTENSIONS = (".csv", ".xlsx")

ROW_FILTERS = ("all", "valid", "invalid")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ShopInventory:
    """Product ids and SKUs already listed by a shop."""

    product_ids: set[str] = field(default_factory=set)
    skus: set[str] = field(default_factory=set)

    @classmethod
    def load(cls, db: Session, shop_id: str) -> "ShopInventory":
        rows = (
            db.query(ShopProduct.product_id, ShopProduct.sku)
            .filter(ShopProduct.shop_id == shop_id)
            .all()
        )
        return cls(
            product_ids={row.product_id for row in rows},
            skus={row.sku.lower() for row in rows if row.sku},
        )


def check_upload_allowed(db: Session, shop: Shop, settings: Settings) -> None:
    """Shop-level governance: active, bulk upload enabled, pending batch limit."""
    if not shop.is_active:
        raise ConflictError("Shop is not active")
    if not shop.can_bulk_upload:
        raise ConflictError("Bulk upload is disabled for this shop")

    pending = (
        db.query(func.count(UploadBatch.id))
        .filter(
            UploadBatch.shop_id == shop.id,
            UploadBatch.status == BatchStatus.STAGING.value,
        )
        .scalar()
    )
    if pending >= settings.bulk_upload_max_pending_batches:
        raise ConflictError(
            f"Shop already has {pending} uploads awaiting review. "
            "Commit or cancel one before uploading again."
        )


def validate_upload_file(
    filename: str, content_type: Optional[str], size: int, settings: Settings
) -> None:
    if not filename or not filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise UploadRejectedError("Only .csv and .xlsx files are accepted")

    base_type = (content_type or "").split(";")[0].strip().lower()
    if base_type and base_type not in ALLOWED_CONTENT_TYPES:
        raise UploadRejectedError(f"Unsupported file type: {content_type}")

    max_bytes = settings.bulk_upload_max_file_size_mb * 1024 * 1024
    if size > max_bytes:
        raise UploadRejectedError(
            f"File too large (max {settings.bulk_upload_max_file_size_mb}MB)",
            status_code=413,
        )


def _error(row: int, column: str, code: str, message: Optional[str] = None) -> dict:
    return RowError(
        row=row, field=column, code=code, message=message or codes.localize(code)
    ).to_dict()


def _apply_decision(row: StagedRow, decision: MatchDecision) -> None:
    row.match_kind = decision.kind.value
    row.matched_product_id = decision.product_id
    row.candidate_ids = list(decision.candidate_ids) or None
    row.confidence = decision.confidence


def _stage_parsed_row(
    parsed: ParsedRow,
    staged: StagedRow,
    matcher: ProductMatcher,
    rules: SpecRuleBook,
    inventory: ShopInventory,
    seen_names: dict[str, int],
    seen_skus: dict[str, int],
    seen_products: dict[str, int],
) -> None:
    """Match and validate one parsed row, recording the outcome on ``staged``."""
    staged.product_name = parsed.product_name
    staged.normalized_name = normalize_text(parsed.product_name)
    staged.brand = parsed.brand
    staged.sku = parsed.sku
    staged.category_name = parsed.category_name
    staged.description = parsed.description
    staged.base_price = parsed.base_price
    staged.stock_quantity = parsed.stock_quantity
    staged.condition = parsed.condition
    staged.specs = parsed.specs
    staged.images = parsed.images

    decision = matcher.match(parsed.product_name, parsed.brand)
    _apply_decision(staged, decision)

    missing = rules.missing_specs(parsed.category_name, parsed.specs)
    staged.missing_specs = missing or None
    staged.target_listing_status = derive_listing_status(missing, parsed.images).value

    number = parsed.row_number
    sku_key = parsed.sku.lower() if parsed.sku else None
    name_key = staged.normalized_name

    if name_key in seen_names:
        staged.status = RowStatus.SKIPPED.value
        staged.errors = [
            _error(
                number,
                COL_NAME,
                codes.DUPLICATE_IN_BATCH,
                f"Same product as row {seen_names[name_key]}",
            )
        ]
    elif sku_key and sku_key in seen_skus:
        staged.status = RowStatus.SKIPPED.value
        staged.errors = [
            _error(
                number,
                COL_SKU,
                codes.DUPLICATE_IN_BATCH,
                f"SKU '{parsed.sku}' is also used on row {seen_skus[sku_key]}",
            )
        ]
    elif sku_key and sku_key in inventory.skus:
        staged.status = RowStatus.SKIPPED.value
        staged.errors = [
            _error(
                number,
                COL_SKU,
                codes.DUPLICATE_SKU,
                f"SKU '{parsed.sku}' already exists in your shop",
            )
        ]
    elif decision.is_match and decision.product_id in seen_products:
        staged.status = RowStatus.SKIPPED.value
        staged.errors = [
            _error(
                number,
                COL_NAME,
                codes.DUPLICATE_IN_BATCH,
                f"Same catalog product as row {seen_products[decision.product_id]}",
            )
        ]
    elif decision.is_match and decision.product_id in inventory.product_ids:
        staged.status = RowStatus.SKIPPED.value
        staged.errors = [
            _error(
                number,
                COL_NAME,
                codes.DUPLICATE_PRODUCT,
                f"'{matcher.name_of(decision.product_id)}' is already listed in your shop",
            )
        ]
    elif decision.kind == MatchKind.AMBIGUOUS:
        names = ", ".join(
            f"'{matcher.name_of(pid)}'" for pid in decision.candidate_ids
        )
        staged.status = RowStatus.INVALID.value
        staged.errors = [
            _error(
                number,
                COL_NAME,
                codes.AMBIGUOUS_MATCH,
                f"Could match several catalog products ({names}); choose one",
            )
        ]
    else:
        staged.status = RowStatus.VALID.value
        staged.errors = []

    seen_names.setdefault(name_key, number)
    if sku_key:
        seen_skus.setdefault(sku_key, number)
    if decision.is_match:
        seen_products.setdefault(decision.product_id, number)


def refresh_batch_counts(db: Session, batch: UploadBatch) -> None:
    """Recompute a STAGING batch's row counters from its staged rows."""
    rows = db.query(StagedRow).filter(StagedRow.batch_id == batch.id).all()
    valid = [row for row in rows if row.is_valid]
    batch.valid_rows = len(valid)
    batch.invalid_rows = sum(1 for row in rows if row.status == RowStatus.INVALID.value)
    batch.skipped_rows = sum(1 for row in rows if row.status == RowStatus.SKIPPED.value)
    batch.new_products = sum(1 for row in valid if row.match_kind == MatchKind.NEW.value)
    batch.needs_specs = sum(1 for row in valid if row.missing_specs)
    batch.needs_images = sum(1 for row in valid if not row.images)


def stage_upload(
    db: Session,
    shop: Shop,
    filename: str,
    content_type: Optional[str],
    payload: bytes,
    user_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> UploadBatch:
    """
    Parse, match and validate an uploaded file into a new STAGING batch.

    Nothing touches live inventory. Every non-blank data row is stored,
    including rows that failed parsing, so previews and correction files
    can show the seller's original values.

    Args:
        db: Database session
        shop: Shop the upload belongs to
        filename: Original file name
        content_type: Declared MIME type of the upload
        payload: Raw file bytes
        user_id: Uploading user, for the audit trail
        settings: Settings override (defaults to cached settings)

    Returns:
        The persisted UploadBatch
    """
    settings = settings or get_settings()
    check_upload_allowed(db, shop, settings)
    validate_upload_file(filename, content_type, len(payload), settings)

    logger.info(f"📤 Staging upload '{filename}' for shop {shop.id} ({len(payload)} bytes)")
    result = parse_spreadsheet(payload, max_rows=settings.bulk_upload_max_rows)

    matcher = ProductMatcher.from_db(db, MatchPolicy.from_settings(settings))
    rules = SpecRuleBook.load(db)
    inventory = ShopInventory.load(db, shop.id)

    batch = UploadBatch(
        shop_id=shop.id,
        filename=filename,
        file_format=result.file_format,
        columns=result.columns,
        status=BatchStatus.STAGING.value,
        total_rows=result.total_rows,
        created_by=user_id,
    )
    db.add(batch)
    db.flush()

    parsed_by_number = {row.row_number: row for row in result.rows}
    seen_names: dict[str, int] = {}
    seen_skus: dict[str, int] = {}
    seen_products: dict[str, int] = {}
    staged_rows = []

    for number, raw in result.raw_rows.items():
        staged = StagedRow(batch_id=batch.id, row_number=number, raw_data=raw)
        parsed = parsed_by_number.get(number)
        if parsed is None:
            staged.product_name = raw.get(COL_NAME) or None
            staged.status = RowStatus.INVALID.value
            staged.errors = [error.to_dict() for error in result.errors_for(number)]
        else:
            _stage_parsed_row(
                parsed, staged, matcher, rules, inventory,
                seen_names, seen_skus, seen_products,
            )
        staged_rows.append(staged)

    db.add_all(staged_rows)
    db.flush()
    refresh_batch_counts(db, batch)
    db.commit()
    db.refresh(batch)

    logger.info(
        f"✅ Batch {batch.id} staged: total={batch.total_rows}, valid={batch.valid_rows}, "
        f"invalid={batch.invalid_rows}, skipped={batch.skipped_rows}"
    )
    return batch


def get_batch(db: Session, shop_id: str, batch_id: str) -> UploadBatch:
    """Look up a batch scoped to its shop; another shop's batch is 'not found'."""
    batch = (
        db.query(UploadBatch)
        .filter(UploadBatch.id == batch_id, UploadBatch.shop_id == shop_id)
        .first()
    )
    if not batch:
        raise NotFoundError("Upload batch not found")
    return batch


def list_batches(
    db: Session, shop_id: str, page: int = 1, page_size: int = 20
) -> tuple[list[UploadBatch], int]:
    query = db.query(UploadBatch).filter(UploadBatch.shop_id == shop_id)
    total = query.count()
    items = (
        query.order_by(UploadBatch.created_at.desc(), UploadBatch.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def row_issues(db: Session, batch_id: str) -> list[StagedRow]:
    """Invalid and skipped rows ordered by original row index."""
    return (
        db.query(StagedRow)
        .filter(
            StagedRow.batch_id == batch_id,
            StagedRow.status != RowStatus.VALID.value,
        )
        .order_by(StagedRow.row_number)
        .all()
    )


def get_preview(
    db: Session,
    shop_id: str,
    batch_id: str,
    page: int = 1,
    row_filter: str = "all",
    page_size: int = 50,
) -> tuple[UploadBatch, list[StagedRow], int]:
    """
    Read one page of staged rows. Never mutates state.

    Returns:
        Tuple of (batch, rows, total rows matching the filter)
    """
    if row_filter not in ROW_FILTERS:
        raise InvalidInputError(f"Unknown row filter '{row_filter}'")

    batch = get_batch(db, shop_id, batch_id)
    query = db.query(StagedRow).filter(StagedRow.batch_id == batch.id)
    if row_filter == "valid":
        query = query.filter(StagedRow.status == RowStatus.VALID.value)
    elif row_filter == "invalid":
        query = query.filter(StagedRow.status != RowStatus.VALID.value)

    total = query.count()
    rows = (
        query.order_by(StagedRow.row_number)
        .offset((max(page, 1) - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return batch, rows, total


def resolve_row(
    db: Session,
    shop_id: str,
    batch_id: str,
    row_number: int,
    product_id: Optional[str] = None,
    create_new: bool = False,
) -> StagedRow:
    """
    Settle an AMBIGUOUS row by picking one of its candidates or a new product.

    The row is re-checked against the shop's inventory and the batch's other
    valid rows; it becomes VALID or SKIPPED.
    """
    if bool(product_id) == bool(create_new):
        raise InvalidInputError("Provide either product_id or create_new")

    batch = get_batch(db, shop_id, batch_id)
    if batch.status != BatchStatus.STAGING.value:
        raise ConflictError(f"Batch is {batch.status}; rows can no longer be resolved")

    row = (
        db.query(StagedRow)
        .filter(StagedRow.batch_id == batch.id, StagedRow.row_number == row_number)
        .first()
    )
    if not row:
        raise NotFoundError(f"Row {row_number} not found in this batch")
    if row.match_kind != MatchKind.AMBIGUOUS.value or row.status != RowStatus.INVALID.value:
        raise ConflictError(f"Row {row_number} does not need resolution")

    if create_new:
        row.match_kind = MatchKind.NEW.value
        row.matched_product_id = None
    else:
        if product_id not in (row.candidate_ids or []):
            raise InvalidInputError("Product is not one of this row's candidates")
        row.match_kind = MatchKind.EXACT.value
        row.matched_product_id = product_id
        row.confidence = 1.0

    inventory = ShopInventory.load(db, shop_id)
    claimed = (
        db.query(StagedRow.row_number)
        .filter(
            StagedRow.batch_id == batch.id,
            StagedRow.status == RowStatus.VALID.value,
            StagedRow.matched_product_id == product_id,
        )
        .first()
        if product_id
        else None
    )

    if product_id and product_id in inventory.product_ids:
        row.status = RowStatus.SKIPPED.value
        row.errors = [_error(row_number, COL_NAME, codes.DUPLICATE_PRODUCT)]
    elif claimed:
        row.status = RowStatus.SKIPPED.value
        row.errors = [
            _error(
                row_number,
                COL_NAME,
                codes.DUPLICATE_IN_BATCH,
                f"Same product as row {claimed.row_number}",
            )
        ]
    else:
        row.status = RowStatus.VALID.value
        row.errors = []

    db.flush()
    refresh_batch_counts(db, batch)
    db.commit()
    db.refresh(row)
    logger.info(
        f"🧭 Row {row_number} of batch {batch.id} resolved as {row.match_kind} -> {row.status}"
    )
    return row


def transition_batch(
    db: Session, batch_id: str, target: BatchStatus, **values
) -> bool:
    """Atomic STAGING -> target check-and-set. False if the batch was not STAGING."""
    result = db.execute(
        update(UploadBatch)
        .where(
            UploadBatch.id == batch_id,
            UploadBatch.status == BatchStatus.STAGING.value,
        )
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def cancel_batch(db: Session, shop_id: str, batch_id: str) -> UploadBatch:
    """Discard a STAGING batch. Any other status is a conflict."""
    batch = get_batch(db, shop_id, batch_id)

    if not transition_batch(db, batch.id, BatchStatus.CANCELLED, completed_at=utcnow()):
        db.rollback()
        db.refresh(batch)
        raise ConflictError(f"Cannot cancel: batch is {batch.status}")

    purged = (
        db.query(StagedRow)
        .filter(StagedRow.batch_id == batch.id)
        .delete(synchronize_session=False)
    )
    db.commit()
    db.refresh(batch)
    logger.info(f"🗑️ Batch {batch.id} cancelled, {purged} staged rows purged")
    return batch


def expire_stale_batches(
    db: Session, older_than: timedelta, now: Optional[datetime] = None
) -> dict[str, int]:
    """
    Cancel STAGING batches past retention and purge leftover staged rows of
    terminal batches past retention.

    Returns:
        Dict with counts of expired batches and purged rows
    """
    cutoff = (now or utcnow()) - older_than
    stale_ids = [
        batch_id
        for (batch_id,) in db.query(UploadBatch.id).filter(
            UploadBatch.status == BatchStatus.STAGING.value,
            UploadBatch.created_at < cutoff,
        )
    ]

    expired = 0
    for batch_id in stale_ids:
        if transition_batch(
            db,
            batch_id,
            BatchStatus.CANCELLED,
            completed_at=utcnow(),
            error_message="Expired before commit",
        ):
            expired += 1

    terminal_ids = db.query(UploadBatch.id).filter(
        UploadBatch.status != BatchStatus.STAGING.value,
        UploadBatch.created_at < cutoff,
    )
    purged = (
        db.query(StagedRow)
        .filter(StagedRow.batch_id.in_(terminal_ids.scalar_subquery()))
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info(f"🧹 Expired {expired} stale batches, purged {purged} staged rows")
    return {"expired_batches": expired, "purged_rows": purged}
