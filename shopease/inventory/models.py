# module shopease.inventory.models
"""Modèle Product: prix de référence et stock autoritatif (muté uniquement par le ledger)."""
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shopease.infra.database import Base, utcnow

PRODUCT_ACTIVE = "ACTIVE"
PRODUCT_ARCHIVED = "ARCHIVED"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    stock: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=PRODUCT_ACTIVE)
    images: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)

    @property
    def first_image(self) -> Optional[str]:
        """Première image (colonne JSON sérialisée), None si absente ou illisible."""
        if not self.images:
            return None
        try:
            images = json.loads(self.images)
        except ValueError:
            return None
        if isinstance(images, list) and images:
            return str(images[0])
        return None
