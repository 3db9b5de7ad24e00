"""Shop and shop inventory models."""
import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from marketplace.database import Base


class ProductCondition(str, Enum):
    NEW = "NEW"
    REFURBISHED = "REFURBISHED"
    USED_LIKE_NEW = "USED_LIKE_NEW"
    USED_GOOD = "USED_GOOD"
    USED_FAIR = "USED_FAIR"


class ListingStatus(str, Enum):
    NEEDS_SPECS = "NEEDS_SPECS"
    NEEDS_IMAGES = "NEEDS_IMAGES"
    PENDING_REVIEW = "PENDING_REVIEW"
    ACTIVE = "ACTIVE"


class Shop(Base):
    """A seller-owned shop."""

    __tablename__ = "shops"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    can_bulk_upload = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class ShopProduct(Base):
    """A shop's live inventory listing of a catalog product."""

    __tablename__ = "shop_products"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    sku = Column(String(100), nullable=True)
    base_price = Column(Numeric(12, 2), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock_quantity = Column(Integer, default=0, nullable=False)
    condition = Column(String(20), nullable=False, default=ProductCondition.NEW.value)
    description = Column(Text, nullable=True)
    images = Column(JSON, nullable=False, default=list)
    specs = Column(JSON, nullable=True)
    listing_status = Column(
        String(20), nullable=False, default=ListingStatus.NEEDS_IMAGES.value
    )
    is_available = Column(Boolean, default=True, nullable=False)
    bulk_upload_id = Column(
        String(36), ForeignKey("upload_batches.id"), nullable=True, index=True
    )
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("shop_id", "product_id", name="uq_shop_products_shop_product"),
        UniqueConstraint("shop_id", "sku", name="uq_shop_products_shop_sku"),
    )

    def __repr__(self):
        return (
            f"<ShopProduct(id={self.id}, shop_id={self.shop_id}, "
            f"product_id={self.product_id}, status='{self.listing_status}')>"
        )


class StockAuditLog(Base):
    """Append-only record of stock changes, written in the same transaction."""

    __tablename__ = "stock_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_product_id = Column(
        String(36), ForeignKey("shop_products.id"), nullable=False, index=True
    )
    change = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
