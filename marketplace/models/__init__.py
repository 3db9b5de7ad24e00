"""Database models."""
from marketplace.models.product import CatalogProduct, CategorySpecRule
from marketplace.models.shop import Shop, ShopProduct, StockAuditLog
from marketplace.models.upload_batch import StagedRow, UploadBatch
from marketplace.models.webhook import Webhook

__all__ = [
    "CatalogProduct",
    "CategorySpecRule",
    "Shop",
    "ShopProduct",
    "StagedRow",
    "StockAuditLog",
    "UploadBatch",
    "Webhook",
]
