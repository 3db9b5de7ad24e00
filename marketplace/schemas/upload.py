"""Bulk upload request and response schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class RowErrorResponse(BaseModel):
    """One problem on one row."""

    field: Optional[str] = None
    code: str
    message: str


class RowIssueResponse(BaseModel):
    """A rejected row keyed by its original 1-based row index."""

    row: int
    status: str
    errors: list[RowErrorResponse]


class UploadBatchResponse(BaseModel):
    """Upload batch status and row counts."""

    id: str
    shop_id: str
    filename: str
    file_format: str
    status: str
    total_rows: int
    valid_rows: int
    invalid_rows: int
    skipped_rows: int
    successful: int
    failed: int
    new_products: int
    needs_specs: int
    needs_images: int
    error_message: Optional[str] = None
    corrections_downloaded_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StagingResponse(BaseModel):
    """Result of uploading a file: the new batch plus every rejected row."""

    batch: UploadBatchResponse
    errors: list[RowIssueResponse]
    message: str = "Review the preview, then commit or cancel this upload"


class StagedRowResponse(BaseModel):
    """A staged row as shown in the preview."""

    row_number: int
    status: str
    product_name: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    category_name: Optional[str] = None
    base_price: Optional[Decimal] = None
    stock_quantity: Optional[int] = None
    condition: Optional[str] = None
    specs: Optional[dict[str, str]] = None
    images: Optional[list[str]] = None
    match_kind: Optional[str] = None
    matched_product_id: Optional[str] = None
    candidate_ids: Optional[list[str]] = None
    confidence: Optional[float] = None
    missing_specs: Optional[list[str]] = None
    target_listing_status: Optional[str] = None
    errors: list[RowErrorResponse] = []
    raw_data: dict[str, str] = {}

    class Config:
        from_attributes = True


class PreviewResponse(BaseModel):
    """Paginated staged rows."""

    batch: UploadBatchResponse
    items: list[StagedRowResponse]
    total: int
    page: int
    page_size: int
    pages: int


class BatchListResponse(BaseModel):
    """Paginated upload history."""

    items: list[UploadBatchResponse]
    total: int
    page: int
    page_size: int
    pages: int


class ResolveRowRequest(BaseModel):
    """Pick one candidate for an ambiguous row, or ask for a new product."""

    product_id: Optional[str] = Field(None, min_length=1, max_length=36)
    create_new: bool = False

    @model_validator(mode="after")
    def exactly_one_choice(self):
        if bool(self.product_id) == self.create_new:
            raise ValueError("Provide either product_id or create_new=true")
        return self


class CreatedListingResponse(BaseModel):
    row_number: int
    shop_product_id: str
    product_id: str
    product_name: str
    listing_status: str
    new_product: bool


class CommitResponse(BaseModel):
    """Outcome of committing a batch."""

    batch: UploadBatchResponse
    committed: int
    new_products_created: int
    needs_specs: int
    needs_images: int
    pending_review: int
    skipped: int
    invalid: int
    listings: list[CreatedListingResponse]


class NeedsImagesListingResponse(BaseModel):
    """A committed listing still waiting for product photos."""

    shop_product_id: str
    product_id: str
    product_name: str
    sku: Optional[str] = None
    price: Decimal
    stock_quantity: int
    listing_status: str
