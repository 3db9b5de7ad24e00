"""Bulk product upload API endpoints."""
import logging
import math
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from marketplace.api.deps import (
    get_current_principal,
    get_owned_shop,
    rate_limit,
    standard_rate_limit,
)
from marketplace.auth import Principal
from marketplace.config import get_settings
from marketplace.database import get_db
from marketplace.exceptions import CommitFailedError, UploadRejectedError
from marketplace.models.shop import Shop
from marketplace.schemas.upload import (
    BatchListResponse,
    CommitResponse,
    CreatedListingResponse,
    NeedsImagesListingResponse,
    PreviewResponse,
    ResolveRowRequest,
    RowIssueResponse,
    StagedRowResponse,
    StagingResponse,
    UploadBatchResponse,
)
from marketplace.services import commit_engine, notifications, staging
from marketplace.services.corrections import generate_corrections
from marketplace.services.spreadsheet import build_template, media_type

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/shops/{shop_id}/products/bulk",
    tags=["bulk-upload"],
    dependencies=[Depends(standard_rate_limit)],
)

UPLOAD_CHUNK_SIZE = 1024 * 1024

upload_rate_limit = rate_limit(
    key_by="user", prefix="ratelimit:bulk", settings_prefix="bulk_upload_rate_limit"
)


def _schedule_notification(
    background_tasks: BackgroundTasks, db: Session, event_type: str, batch
) -> None:
    urls = notifications.subscribed_urls(db, event_type)
    if urls:
        background_tasks.add_task(
            notifications.notify, urls, event_type, notifications.upload_summary(batch)
        )


def _download(content: bytes, file_format: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type(file_format),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/template")
def download_template(
    format: Literal["csv", "xlsx"] = "csv",
    shop: Shop = Depends(get_owned_shop),
):
    """Download the blank upload template with an example row."""
    return _download(build_template(format), format, f"bulk_upload_template.{format}")


@router.post(
    "",
    response_model=StagingResponse,
    status_code=201,
    dependencies=[Depends(upload_rate_limit)],
)
async def upload_file(
    file: UploadFile = File(...),
    shop: Shop = Depends(get_owned_shop),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """
    Upload a CSV or XLSX file of products.

    Rows are parsed, matched against the catalog and staged. Nothing goes
    live until the batch is committed.
    """
    settings = get_settings()
    staging.validate_upload_file(file.filename or "", file.content_type, 0, settings)
    max_bytes = settings.bulk_upload_max_file_size_mb * 1024 * 1024

    chunks = []
    size = 0
    chunk = await file.read(UPLOAD_CHUNK_SIZE)
    while chunk:
        size += len(chunk)
        if size > max_bytes:
            logger.warning(f"❌ Upload {file.filename} too large: over {size} bytes")
            raise UploadRejectedError(
                f"File too large (max {settings.bulk_upload_max_file_size_mb}MB)",
                status_code=413,
            )
        chunks.append(chunk)
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
    payload = b"".join(chunks)
    logger.info(f"📤 Received {file.filename} ({size} bytes) for shop {shop.id}")

    return await run_in_threadpool(
        _stage_and_report,
        db,
        shop,
        file.filename or "",
        file.content_type,
        payload,
        principal.user_id,
    )


def _stage_and_report(
    db: Session,
    shop: Shop,
    filename: str,
    content_type: Optional[str],
    payload: bytes,
    user_id: str,
) -> StagingResponse:
    batch = staging.stage_upload(
        db,
        shop,
        filename=filename,
        content_type=content_type,
        payload=payload,
        user_id=user_id,
    )
    issues = [
        RowIssueResponse(row=row.row_number, status=row.status, errors=row.errors or [])
        for row in staging.row_issues(db, batch.id)
    ]
    return StagingResponse(batch=UploadBatchResponse.model_validate(batch), errors=issues)


@router.get("/history", response_model=BatchListResponse)
def upload_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    """List this shop's uploads, newest first."""
    items, total = staging.list_batches(db, shop.id, page=page, page_size=page_size)
    return BatchListResponse(
        items=[UploadBatchResponse.model_validate(batch) for batch in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/{batch_id}", response_model=UploadBatchResponse)
def get_upload(
    batch_id: str,
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    return staging.get_batch(db, shop.id, batch_id)


@router.get("/{batch_id}/preview", response_model=PreviewResponse)
def preview_upload(
    batch_id: str,
    page: int = Query(1, ge=1),
    row_filter: Literal["all", "valid", "invalid"] = Query("all", alias="filter"),
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    """Page through staged rows. Read-only."""
    page_size = get_settings().bulk_upload_preview_page_size
    batch, rows, total = staging.get_preview(
        db, shop.id, batch_id, page=page, row_filter=row_filter, page_size=page_size
    )
    return PreviewResponse(
        batch=UploadBatchResponse.model_validate(batch),
        items=[StagedRowResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.post("/{batch_id}/rows/{row_number}/resolve", response_model=StagedRowResponse)
def resolve_ambiguous_row(
    batch_id: str,
    row_number: int,
    resolution: ResolveRowRequest,
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    """Choose a catalog product (or a new one) for an ambiguous row."""
    return staging.resolve_row(
        db,
        shop.id,
        batch_id,
        row_number,
        product_id=resolution.product_id,
        create_new=resolution.create_new,
    )


@router.post(
    "/{batch_id}/commit",
    response_model=CommitResponse,
    dependencies=[Depends(upload_rate_limit)],
)
def commit_upload(
    batch_id: str,
    background_tasks: BackgroundTasks,
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    """
    Promote the batch's valid rows into live inventory.

    All or nothing: on failure no listings are created and the batch is
    marked FAILED.
    """
    try:
        batch, summary = commit_engine.commit_batch(db, shop, batch_id)
    except CommitFailedError as e:
        failed = staging.get_batch(db, shop.id, batch_id)
        _schedule_notification(
            background_tasks, db, notifications.BULK_UPLOAD_FAILED, failed
        )
        return JSONResponse(
            status_code=e.status_code,
            content={"detail": e.message},
            background=background_tasks,
        )

    _schedule_notification(
        background_tasks, db, notifications.BULK_UPLOAD_COMPLETED, batch
    )
    return CommitResponse(
        batch=UploadBatchResponse.model_validate(batch),
        committed=summary.committed,
        new_products_created=summary.new_products_created,
        needs_specs=summary.needs_specs,
        needs_images=summary.needs_images,
        pending_review=summary.pending_review,
        skipped=summary.skipped,
        invalid=summary.invalid,
        listings=[
            CreatedListingResponse(**listing.__dict__) for listing in summary.listings
        ],
    )


@router.post("/{batch_id}/cancel", response_model=UploadBatchResponse)
def cancel_upload(
    batch_id: str,
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    """Discard a staged upload. Cancelling twice is a conflict."""
    return staging.cancel_batch(db, shop.id, batch_id)


@router.get("/{batch_id}/corrections")
def download_corrections(
    batch_id: str,
    format: Literal["csv", "xlsx"] | None = None,
    shop: Shop = Depends(get_owned_shop),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Download the rejected rows with error reasons, ready to fix and re-upload."""
    batch, content = generate_corrections(
        db, shop.id, batch_id, file_format=format, downloaded_by=principal.user_id
    )
    file_format = format or batch.file_format
    return _download(content, file_format, f"corrections_{batch.id}.{file_format}")


@router.get("/{batch_id}/needs-images", response_model=List[NeedsImagesListingResponse])
def list_needs_images(
    batch_id: str,
    shop: Shop = Depends(get_owned_shop),
    db: Session = Depends(get_db),
):
    """Listings from this upload that cannot go live until photos are added."""
    return [
        NeedsImagesListingResponse(
            shop_product_id=listing.id,
            product_id=listing.product_id,
            product_name=product_name,
            sku=listing.sku,
            price=listing.price,
            stock_quantity=listing.stock_quantity,
            listing_status=listing.listing_status,
        )
        for listing, product_name in commit_engine.listings_needing_images(
            db, shop.id, batch_id
        )
    ]
