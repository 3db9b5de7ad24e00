"""Correction files: re-uploadable spreadsheets of a batch's rejected rows."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from marketplace.exceptions import NotFoundError
from marketplace.models.upload_batch import StagedRow, UploadBatch
from marketplace.services.error_messages import localize
from marketplace.services.spreadsheet import ANNOTATION_COLUMNS, CSV, write_table
from marketplace.services.staging import get_batch, row_issues, utcnow

logger = logging.getLogger(__name__)


def _reason(row: StagedRow, language: str) -> str:
    parts = []
    for error in row.errors or []:
        field = error.get("field")
        if language == "en":
            text = error.get("message") or localize(error.get("code"), "en")
        else:
            text = localize(error.get("code"), language)
        parts.append(f"{field}: {text}" if field else text)
    return "; ".join(parts)


def correction_rows(batch: UploadBatch, rows: list[StagedRow]) -> tuple[list[str], list[list[str]]]:
    """
    Build the correction table: original columns in original order followed by
    the annotation columns. Rows keep their original cell values.
    """
    columns = list(batch.columns or [])
    header = columns + ANNOTATION_COLUMNS
    table = []
    for row in rows:
        raw = row.raw_data or {}
        table.append(
            [str(raw.get(column, "") or "") for column in columns]
            + [str(row.row_number), _reason(row, "en"), _reason(row, "ny")]
        )
    return header, table


def generate_corrections(
    db: Session,
    shop_id: str,
    batch_id: str,
    file_format: Optional[str] = None,
    downloaded_by: Optional[str] = None,
) -> tuple[UploadBatch, bytes]:
    """
    Produce the correction file for a batch's invalid and skipped rows.

    Records who downloaded it and when; the batch status is left alone.

    Args:
        db: Database session
        shop_id: Owning shop
        batch_id: Batch to export
        file_format: "csv" or "xlsx"; defaults to the batch's own format
        downloaded_by: User id for the audit trail

    Returns:
        Tuple of (batch, file bytes)
    """
    batch = get_batch(db, shop_id, batch_id)
    rows = row_issues(db, batch.id)
    if not rows:
        raise NotFoundError("This upload has no rows that need correction")

    header, table = correction_rows(batch, rows)
    content = write_table(header, table, file_format or batch.file_format or CSV)

    batch.corrections_downloaded_at = utcnow()
    batch.corrections_downloaded_by = downloaded_by
    db.commit()
    db.refresh(batch)

    logger.info(f"📝 Correction file for batch {batch.id}: {len(rows)} rows")
    return batch, content
