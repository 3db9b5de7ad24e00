"""Promote a STAGING batch's valid rows into live shop inventory."""
import logging
import re
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.config import Settings, get_settings
from marketplace.exceptions import CommitFailedError, ConflictError
from marketplace.models.product import CatalogProduct, CatalogProductStatus
from marketplace.models.shop import ListingStatus, Shop, ShopProduct, StockAuditLog
from marketplace.models.upload_batch import (
    BatchStatus,
    MatchKind,
    RowStatus,
    StagedRow,
    UploadBatch,
)
from marketplace.services import error_messages as codes
from marketplace.services.spec_rules import SpecRuleBook, derive_listing_status
from marketplace.services.spreadsheet import COL_NAME, COL_SKU, RowError
from marketplace.services.staging import (
    ShopInventory,
    get_batch,
    transition_batch,
    utcnow,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
COMMIT_FAILED_MESSAGE = "Commit failed; no products were added"


@dataclass
class CreatedListing:
    row_number: int
    shop_product_id: str
    product_id: str
    product_name: str
    listing_status: str
    new_product: bool


@dataclass
class CommitSummary:
    batch_id: str
    total_rows: int
    committed: int = 0
    new_products_created: int = 0
    needs_specs: int = 0
    needs_images: int = 0
    pending_review: int = 0
    skipped: int = 0
    invalid: int = 0
    listings: list[CreatedListing] = field(default_factory=list)


def display_price(base_price: Decimal, markup: float) -> Decimal:
    return (Decimal(base_price) * Decimal(str(markup))).quantize(CENTS, rounding=ROUND_HALF_UP)


def generate_sku(shop: Shop) -> str:
    """Shop-prefixed SKU for rows uploaded without one."""
    prefix = re.sub(r"[^A-Za-z0-9]", "", shop.name or "")[:3].upper() or "SKU"
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _find_catalog_duplicate(db: Session, normalized_name: str) -> Optional[CatalogProduct]:
    """Non-rejected catalog product with exactly this normalized name, oldest first."""
    return (
        db.query(CatalogProduct)
        .filter(
            CatalogProduct.normalized_name == normalized_name,
            CatalogProduct.status != CatalogProductStatus.REJECTED.value,
        )
        .order_by(CatalogProduct.created_at, CatalogProduct.id)
        .first()
    )


def create_shop_product(
    db: Session,
    shop: Shop,
    batch: UploadBatch,
    row: StagedRow,
    product_id: str,
    listing_status: ListingStatus,
    settings: Settings,
) -> ShopProduct:
    """Insert the listing and its opening stock audit entry."""
    shop_product = ShopProduct(
        shop_id=shop.id,
        product_id=product_id,
        sku=row.sku or generate_sku(shop),
        base_price=row.base_price,
        price=display_price(row.base_price, settings.price_markup_multiplier),
        stock_quantity=row.stock_quantity,
        condition=row.condition,
        description=row.description,
        images=list(row.images or []),
        specs=row.specs,
        listing_status=listing_status.value,
        is_available=True,
        bulk_upload_id=batch.id,
    )
    db.add(shop_product)
    db.flush()

    db.add(
        StockAuditLog(
            shop_product_id=shop_product.id,
            change=row.stock_quantity,
            quantity_after=row.stock_quantity,
            reason=f"Bulk upload {batch.id} row {row.row_number}",
        )
    )
    return shop_product


def _skip(row: StagedRow, column: str, code: str, message: str) -> None:
    row.status = RowStatus.SKIPPED.value
    row.errors = [
        RowError(row=row.row_number, field=column, code=code, message=message).to_dict()
    ]


def _promote_rows(
    db: Session, shop: Shop, batch: UploadBatch, settings: Settings
) -> CommitSummary:
    rows = (
        db.query(StagedRow)
        .filter(StagedRow.batch_id == batch.id)
        .order_by(StagedRow.row_number)
        .all()
    )
    rules = SpecRuleBook.load(db)
    inventory = ShopInventory.load(db, shop.id)
    summary = CommitSummary(batch_id=batch.id, total_rows=batch.total_rows)
    committed_rows = []

    for row in rows:
        if not row.is_valid:
            continue

        new_product = False
        product_id = row.matched_product_id

        if row.match_kind == MatchKind.NEW.value:
            duplicate = _find_catalog_duplicate(db, row.normalized_name)
            if duplicate:
                logger.info(
                    f"🔁 Row {row.row_number}: '{row.product_name}' now exists in the "
                    f"catalog as {duplicate.id}, matching instead of creating"
                )
                product_id = duplicate.id
                row.match_kind = MatchKind.EXACT.value
                row.matched_product_id = duplicate.id
        elif db.get(CatalogProduct, product_id) is None:
            _skip(row, COL_NAME, codes.UNKNOWN_ERROR, "Matched catalog product no longer exists")
            continue

        if product_id and product_id in inventory.product_ids:
            _skip(row, COL_NAME, codes.DUPLICATE_PRODUCT, codes.localize(codes.DUPLICATE_PRODUCT))
            logger.warning(f"⚠️ Row {row.row_number} skipped: product already in shop")
            continue
        if row.sku and row.sku.lower() in inventory.skus:
            _skip(row, COL_SKU, codes.DUPLICATE_SKU, f"SKU '{row.sku}' already exists in your shop")
            logger.warning(f"⚠️ Row {row.row_number} skipped: SKU {row.sku} already in shop")
            continue

        if product_id is None:
            product = CatalogProduct(
                name=row.product_name,
                normalized_name=row.normalized_name,
                brand=row.brand,
                category_name=row.category_name,
                description=row.description,
                status=CatalogProductStatus.PENDING.value,
            )
            db.add(product)
            db.flush()
            product_id = product.id
            new_product = True

        missing = rules.missing_specs(row.category_name, row.specs)
        listing_status = derive_listing_status(missing, row.images)

        shop_product = create_shop_product(
            db, shop, batch, row, product_id, listing_status, settings
        )

        inventory.product_ids.add(product_id)
        inventory.skus.add(shop_product.sku.lower())
        committed_rows.append(row)

        summary.committed += 1
        summary.new_products_created += int(new_product)
        if listing_status == ListingStatus.NEEDS_SPECS:
            summary.needs_specs += 1
        elif listing_status == ListingStatus.NEEDS_IMAGES:
            summary.needs_images += 1
        else:
            summary.pending_review += 1
        summary.listings.append(
            CreatedListing(
                row_number=row.row_number,
                shop_product_id=shop_product.id,
                product_id=product_id,
                product_name=row.product_name,
                listing_status=listing_status.value,
                new_product=new_product,
            )
        )

    for row in committed_rows:
        db.delete(row)

    summary.skipped = sum(1 for row in rows if row.status == RowStatus.SKIPPED.value)
    summary.invalid = sum(1 for row in rows if row.status == RowStatus.INVALID.value)
    return summary


def commit_batch(
    db: Session,
    shop: Shop,
    batch_id: str,
    settings: Optional[Settings] = None,
) -> tuple[UploadBatch, CommitSummary]:
    """
    Commit a STAGING batch in one transaction.

    The STAGING -> COMMITTED claim is a conditional UPDATE in the same
    transaction as the inserts, so concurrent commits or cancels of one batch
    serialize and exactly one succeeds. Rows whose product or SKU reached the
    shop after staging are skipped. Any other failure rolls everything back
    and marks the batch FAILED.

    Args:
        db: Database session
        shop: Owning shop
        batch_id: Batch to commit
        settings: Settings override (defaults to cached settings)

    Returns:
        Tuple of (refreshed batch, CommitSummary)
    """
    settings = settings or get_settings()
    batch = get_batch(db, shop.id, batch_id)
    logger.info(f"🚀 Committing batch {batch.id} for shop {shop.id}")

    if not transition_batch(db, batch.id, BatchStatus.COMMITTED):
        db.rollback()
        db.refresh(batch)
        raise ConflictError(f"Cannot commit: batch is {batch.status}")

    try:
        summary = _promote_rows(db, shop, batch, settings)
        batch.successful = summary.committed
        batch.skipped_rows = summary.skipped
        batch.invalid_rows = summary.invalid
        batch.failed = summary.invalid
        batch.valid_rows = summary.committed
        batch.new_products = summary.new_products_created
        batch.needs_specs = summary.needs_specs
        batch.needs_images = summary.needs_images
        batch.completed_at = utcnow()
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Commit of batch {batch_id} failed: {e}", exc_info=True)
        try:
            transition_batch(
                db,
                batch_id,
                BatchStatus.FAILED,
                error_message=COMMIT_FAILED_MESSAGE,
                completed_at=utcnow(),
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.error(f"❌ Could not mark batch {batch_id} as FAILED", exc_info=True)
        raise CommitFailedError(
            "Upload could not be committed. No products were added; please try again."
        ) from e

    db.refresh(batch)
    logger.info(
        f"✅ Batch {batch.id} committed: {summary.committed} listings, "
        f"{summary.new_products_created} new catalog products, {summary.skipped} skipped, "
        f"{summary.invalid} invalid"
    )
    return batch, summary


def listings_needing_images(
    db: Session, shop_id: str, batch_id: str
) -> list[tuple[ShopProduct, str]]:
    """Listings created by the batch that still wait for product photos."""
    get_batch(db, shop_id, batch_id)
    return (
        db.query(ShopProduct, CatalogProduct.name)
        .join(CatalogProduct, CatalogProduct.id == ShopProduct.product_id)
        .filter(
            ShopProduct.shop_id == shop_id,
            ShopProduct.bulk_upload_id == batch_id,
            ShopProduct.listing_status == ListingStatus.NEEDS_IMAGES.value,
        )
        .order_by(CatalogProduct.name, ShopProduct.id)
        .all()
    )
