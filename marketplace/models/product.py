"""Catalog product models."""
import uuid
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text
from sqlalchemy.sql import func

from marketplace.database import Base


class CatalogProductStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CatalogProduct(Base):
    """Canonical, shop-independent product record shared by all shops."""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(500), nullable=False)
    normalized_name = Column(String(500), nullable=False, index=True)
    brand = Column(String(255), nullable=True)
    category_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(
        String(20), nullable=False, default=CatalogProductStatus.PENDING.value
    )
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<CatalogProduct(id={self.id}, name='{self.name}', status='{self.status}')>"


class CategorySpecRule(Base):
    """Specs a listing in a category must carry before it can go live."""

    __tablename__ = "category_spec_rules"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    category_name = Column(String(255), nullable=False, unique=True)
    required_specs = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
