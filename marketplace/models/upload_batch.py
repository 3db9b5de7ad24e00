"""Upload batch and staged row models for the bulk upload pipeline."""
import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from marketplace.database import Base


class BatchStatus(str, Enum):
    STAGING = "STAGING"
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class RowStatus(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    SKIPPED = "SKIPPED"


class MatchKind(str, Enum):
    EXACT = "EXACT"
    FUZZY = "FUZZY"
    AMBIGUOUS = "AMBIGUOUS"
    NEW = "NEW"


class UploadBatch(Base):
    """One bulk-upload attempt. Kept forever as an audit trail."""

    __tablename__ = "upload_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    filename = Column(String(500), nullable=False)
    file_format = Column(String(10), nullable=False, default="csv")  # csv, xlsx
    columns = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=BatchStatus.STAGING.value)
    total_rows = Column(Integer, default=0, nullable=False)
    valid_rows = Column(Integer, default=0, nullable=False)
    invalid_rows = Column(Integer, default=0, nullable=False)
    skipped_rows = Column(Integer, default=0, nullable=False)
    successful = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    new_products = Column(Integer, default=0, nullable=False)
    needs_specs = Column(Integer, default=0, nullable=False)
    needs_images = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    corrections_downloaded_at = Column(DateTime, nullable=True)
    corrections_downloaded_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<UploadBatch(id={self.id}, shop_id={self.shop_id}, status='{self.status}')>"


class StagedRow(Base):
    """A parsed spreadsheet row waiting for its batch to be committed."""

    __tablename__ = "staged_rows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(
        String(36), ForeignKey("upload_batches.id"), nullable=False, index=True
    )
    row_number = Column(Integer, nullable=False)
    raw_data = Column(JSON, nullable=False, default=dict)

    product_name = Column(String(500), nullable=True)
    normalized_name = Column(String(500), nullable=True)
    brand = Column(String(255), nullable=True)
    sku = Column(String(100), nullable=True)
    category_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    base_price = Column(Numeric(12, 2), nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    condition = Column(String(20), nullable=True)
    specs = Column(JSON, nullable=True)
    images = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=RowStatus.INVALID.value)
    errors = Column(JSON, nullable=False, default=list)

    match_kind = Column(String(20), nullable=True)
    matched_product_id = Column(String(36), nullable=True)
    candidate_ids = Column(JSON, nullable=True)
    confidence = Column(Float, nullable=True)
    missing_specs = Column(JSON, nullable=True)
    target_listing_status = Column(String(20), nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_id", "row_number", name="uq_staged_rows_batch_row"),
    )

    @property
    def is_valid(self) -> bool:
        return self.status == RowStatus.VALID.value
