"""Tests for staging, previews, row resolution, cancel and expiry."""
from datetime import timedelta

import pytest

from marketplace.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UploadRejectedError,
)
from marketplace.models.upload_batch import (
    BatchStatus,
    MatchKind,
    RowStatus,
    StagedRow,
    UploadBatch,
)
from marketplace.services import error_messages as codes
from marketplace.services.staging import (
    cancel_batch,
    expire_stale_batches,
    get_batch,
    get_preview,
    list_batches,
    resolve_row,
    stage_upload,
    utcnow,
)


def product_row(name, **overrides):
    row = {
        "Product Name": name,
        "Category": "Smartphones",
        "Base Price": "250000",
        "Stock Quantity": "5",
        "Spec: RAM": "4GB",
        "Spec: Storage": "128GB",
        "Spec: Screen Size": "6.5 inches",
        "Images": "https://cdn.example.com/front.jpg",
    }
    row.update(overrides)
    return row


def staged_rows(db, batch):
    return (
        db.query(StagedRow)
        .filter(StagedRow.batch_id == batch.id)
        .order_by(StagedRow.row_number)
        .all()
    )


def test_stage_counts_and_matches(db, shop, add_product, stage):
    """Test staging splits rows into valid and invalid without touching inventory."""
    samsung = add_product("Samsung Galaxy A15", brand="Samsung")

    batch = stage(
        shop,
        [
            product_row("Samsung Galaxy A15", Brand="Samsung"),
            product_row("Tecno Spark 20", **{"Stock Quantity": "-2"}),
            product_row("Hisense 55 inch Smart TV", Category="TVs"),
        ],
    )

    assert batch.status == BatchStatus.STAGING.value
    assert batch.total_rows == 3
    assert batch.valid_rows == 2
    assert batch.invalid_rows == 1
    assert batch.skipped_rows == 0
    assert batch.new_products == 1
    assert batch.needs_specs == 1
    assert batch.created_by == shop.owner_id

    exact, broken, new = staged_rows(db, batch)
    assert exact.match_kind == MatchKind.EXACT.value
    assert exact.matched_product_id == samsung.id
    assert broken.status == RowStatus.INVALID.value
    assert broken.errors[0]["code"] == codes.INVALID_STOCK
    assert broken.raw_data["Stock Quantity"] == "-2"
    assert new.match_kind == MatchKind.NEW.value
    assert new.missing_specs == ["resolution"]


def test_duplicates_within_batch_are_skipped(db, shop, stage):
    batch = stage(
        shop,
        [
            product_row("Tecno Spark 20", SKU="TS20"),
            product_row("tecno  spark-20"),
            product_row("Infinix Hot 40", SKU="ts20"),
        ],
    )

    first, same_name, same_sku = staged_rows(db, batch)
    assert first.status == RowStatus.VALID.value
    assert same_name.status == RowStatus.SKIPPED.value
    assert same_name.errors[0]["code"] == codes.DUPLICATE_IN_BATCH
    assert "row 1" in same_name.errors[0]["message"]
    assert same_sku.status == RowStatus.SKIPPED.value
    assert same_sku.errors[0]["field"] == "SKU"
    assert batch.valid_rows == 1
    assert batch.skipped_rows == 2


def test_rows_already_in_shop_are_skipped(db, shop, add_product, list_product, stage):
    """Test existing listings block both the same product and the same SKU."""
    listed = add_product("Samsung Galaxy A15", brand="Samsung")
    other = add_product("Itel A70", brand="Itel")
    list_product(shop, listed)
    list_product(shop, other, sku="ITEL-A70")

    batch = stage(
        shop,
        [
            product_row("Samsung Galaxy A15"),
            product_row("Infinix Hot 40", SKU="itel-a70"),
        ],
    )

    by_product, by_sku = staged_rows(db, batch)
    assert by_product.status == RowStatus.SKIPPED.value
    assert by_product.errors[0]["code"] == codes.DUPLICATE_PRODUCT
    assert by_sku.status == RowStatus.SKIPPED.value
    assert by_sku.errors[0]["code"] == codes.DUPLICATE_SKU


def test_another_shops_inventory_does_not_block(db, shop, make_shop, add_product, list_product, stage):
    product = add_product("Samsung Galaxy A15", brand="Samsung")
    list_product(make_shop(owner_id="seller-2", name="Zomba Gadgets"), product, sku="A15")

    batch = stage(shop, [product_row("Samsung Galaxy A15", SKU="A15")])

    assert batch.valid_rows == 1


def test_two_rows_matching_one_product_keep_first(db, shop, add_product, stage):
    product = add_product("Samsung Galaxy A15 5G", brand="Samsung")

    batch = stage(
        shop,
        [
            product_row("Samsung Galaxy A15 5G"),
            product_row("Galaxy A15 5G", Brand="Samsung"),
        ],
    )

    first, second = staged_rows(db, batch)
    assert first.matched_product_id == product.id
    assert second.matched_product_id == product.id
    assert second.status == RowStatus.SKIPPED.value
    assert second.errors[0]["code"] == codes.DUPLICATE_IN_BATCH


@pytest.fixture
def tablets(add_product):
    grey = add_product("Galaxy Tab A9 Grey", brand="Samsung", category_name="Tablets")
    blue = add_product("Galaxy Tab A9 Blue", brand="Samsung", category_name="Tablets")
    return grey, blue


def test_ambiguous_row_is_invalid_until_resolved(db, shop, stage, tablets):
    """Test an ambiguous match holds back the row and lists its candidates."""
    grey, blue = tablets

    batch = stage(shop, [product_row("Samsung Galaxy Tab A9", Category="Tablets")])

    (row,) = staged_rows(db, batch)
    assert row.status == RowStatus.INVALID.value
    assert row.match_kind == MatchKind.AMBIGUOUS.value
    assert sorted(row.candidate_ids) == sorted([grey.id, blue.id])
    assert row.errors[0]["code"] == codes.AMBIGUOUS_MATCH
    assert "Galaxy Tab A9 Grey" in row.errors[0]["message"]
    assert batch.valid_rows == 0

    resolved = resolve_row(db, shop.id, batch.id, 1, product_id=blue.id)

    assert resolved.status == RowStatus.VALID.value
    assert resolved.match_kind == MatchKind.EXACT.value
    assert resolved.matched_product_id == blue.id
    assert resolved.errors == []
    db.refresh(batch)
    assert batch.valid_rows == 1
    assert batch.invalid_rows == 0


def test_ambiguous_row_resolved_as_new_product(db, shop, stage, tablets):
    batch = stage(shop, [product_row("Samsung Galaxy Tab A9", Category="Tablets")])

    resolved = resolve_row(db, shop.id, batch.id, 1, create_new=True)

    assert resolved.status == RowStatus.VALID.value
    assert resolved.match_kind == MatchKind.NEW.value
    assert resolved.matched_product_id is None
    db.refresh(batch)
    assert batch.new_products == 1


def test_resolving_to_claimed_product_skips_row(db, shop, stage, tablets):
    grey, _ = tablets
    batch = stage(
        shop,
        [
            product_row("Galaxy Tab A9 Grey", Brand="Samsung", Category="Tablets"),
            product_row("Samsung Galaxy Tab A9", Category="Tablets"),
        ],
    )

    resolved = resolve_row(db, shop.id, batch.id, 2, product_id=grey.id)

    assert resolved.status == RowStatus.SKIPPED.value
    assert resolved.errors[0]["code"] == codes.DUPLICATE_IN_BATCH


def test_resolve_rejects_bad_requests(db, shop, stage, tablets, add_product):
    grey, _ = tablets
    stranger = add_product("Lenovo Tab M10")
    batch = stage(
        shop,
        [
            product_row("Samsung Galaxy Tab A9", Category="Tablets"),
            product_row("Itel A70"),
        ],
    )

    with pytest.raises(InvalidInputError):
        resolve_row(db, shop.id, batch.id, 1)
    with pytest.raises(InvalidInputError):
        resolve_row(db, shop.id, batch.id, 1, product_id=grey.id, create_new=True)
    with pytest.raises(InvalidInputError):
        resolve_row(db, shop.id, batch.id, 1, product_id=stranger.id)
    with pytest.raises(ConflictError):
        resolve_row(db, shop.id, batch.id, 2, create_new=True)
    with pytest.raises(NotFoundError):
        resolve_row(db, shop.id, batch.id, 99, create_new=True)


def test_resolve_after_cancel_conflicts(db, shop, stage, tablets):
    batch = stage(shop, [product_row("Samsung Galaxy Tab A9", Category="Tablets")])
    cancel_batch(db, shop.id, batch.id)

    with pytest.raises(ConflictError):
        resolve_row(db, shop.id, batch.id, 1, create_new=True)


def test_inactive_or_disabled_shop_cannot_upload(make_shop, stage):
    with pytest.raises(ConflictError):
        stage(make_shop(is_active=False), [product_row("Itel A70")])
    with pytest.raises(ConflictError):
        stage(make_shop(owner_id="seller-2", can_bulk_upload=False), [product_row("Itel A70")])


def test_pending_batch_limit(db, shop, stage, settings):
    strict = settings.model_copy(update={"bulk_upload_max_pending_batches": 1})
    first = stage(shop, [product_row("Itel A70")], settings=strict)

    with pytest.raises(ConflictError):
        stage(shop, [product_row("Itel A70")], settings=strict)

    cancel_batch(db, shop.id, first.id)
    assert stage(shop, [product_row("Itel A70")], settings=strict).status == "STAGING"


@pytest.mark.parametrize(
    "filename,content_type",
    [("products.pdf", None), ("products", None), ("products.csv", "image/png")],
)
def test_wrong_file_type_is_rejected(db, shop, build_upload, filename, content_type):
    with pytest.raises(UploadRejectedError) as exc:
        stage_upload(db, shop, filename, content_type, build_upload([product_row("Itel A70")]))

    assert exc.value.status_code == 400
    assert db.query(UploadBatch).count() == 0


def test_oversized_file_is_rejected(db, shop, build_upload, settings):
    tiny = settings.model_copy(update={"bulk_upload_max_file_size_mb": 0})

    with pytest.raises(UploadRejectedError) as exc:
        stage_upload(
            db, shop, "products.csv", "text/csv",
            build_upload([product_row("Itel A70")]), settings=tiny,
        )

    assert exc.value.status_code == 413


def test_rejected_file_stages_nothing(db, shop, stage):
    rows = [product_row(f"Phone {i}") for i in range(201)]

    with pytest.raises(UploadRejectedError):
        stage(shop, rows)

    assert db.query(UploadBatch).count() == 0
    assert db.query(StagedRow).count() == 0


def test_preview_filters_and_pages(db, shop, stage):
    rows = [product_row(f"Phone {i}") for i in range(5)]
    rows[1]["Base Price"] = "free"
    rows[3]["Stock Quantity"] = "-1"
    batch = stage(shop, rows)

    _, page, total = get_preview(db, shop.id, batch.id, page=1, page_size=2)
    assert total == 5
    assert [row.row_number for row in page] == [1, 2]

    _, page, total = get_preview(db, shop.id, batch.id, page=3, page_size=2)
    assert [row.row_number for row in page] == [5]

    _, page, total = get_preview(db, shop.id, batch.id, row_filter="invalid")
    assert total == 2
    assert [row.row_number for row in page] == [2, 4]

    _, page, total = get_preview(db, shop.id, batch.id, row_filter="valid")
    assert [row.row_number for row in page] == [1, 3, 5]

    with pytest.raises(InvalidInputError):
        get_preview(db, shop.id, batch.id, row_filter="broken")


def test_batches_are_scoped_to_their_shop(db, shop, make_shop, stage):
    """Test another shop's batch id behaves as if it did not exist."""
    other = make_shop(owner_id="seller-2", name="Zomba Gadgets")
    batch = stage(shop, [product_row("Itel A70")])

    with pytest.raises(NotFoundError):
        get_batch(db, other.id, batch.id)
    with pytest.raises(NotFoundError):
        get_preview(db, other.id, batch.id)
    with pytest.raises(NotFoundError):
        cancel_batch(db, other.id, batch.id)

    assert get_batch(db, shop.id, batch.id).status == BatchStatus.STAGING.value


def test_list_batches(db, shop, stage):
    for i in range(3):
        stage(shop, [product_row(f"Phone {i}")])

    items, total = list_batches(db, shop.id, page=1, page_size=2)

    assert total == 3
    assert len(items) == 2


def test_cancel_purges_rows_once(db, shop, stage):
    batch = stage(shop, [product_row("Itel A70"), product_row("Tecno Spark 20")])

    cancelled = cancel_batch(db, shop.id, batch.id)

    assert cancelled.status == BatchStatus.CANCELLED.value
    assert cancelled.completed_at is not None
    assert staged_rows(db, batch) == []

    with pytest.raises(ConflictError):
        cancel_batch(db, shop.id, batch.id)


def test_expire_stale_batches(db, shop, stage):
    """Test stale STAGING batches are cancelled and leftover rows purged."""
    stale = stage(shop, [product_row("Itel A70"), product_row("Tecno Spark 20")])
    fresh = stage(shop, [product_row("Infinix Hot 40")])
    stale.created_at = utcnow() - timedelta(days=3)
    db.commit()

    result = expire_stale_batches(db, older_than=timedelta(hours=48))

    assert result == {"expired_batches": 1, "purged_rows": 2}
    db.refresh(stale)
    db.refresh(fresh)
    assert stale.status == BatchStatus.CANCELLED.value
    assert stale.error_message == "Expired before commit"
    assert fresh.status == BatchStatus.STAGING.value
    assert len(staged_rows(db, fresh)) == 1

    assert expire_stale_batches(db, older_than=timedelta(hours=48)) == {
        "expired_batches": 0,
        "purged_rows": 0,
    }
