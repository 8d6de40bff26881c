"""Schémas d'entrée (pydantic) de l'user story Commandes. Les clés JSON sont en camelCase."""
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shopease.orders.models import OrderStatus, PaymentMethod


class OrderItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias="productId", gt=0)
    quantity: int = Field(gt=0)
    # Prix affiché côté client: informatif uniquement, jamais utilisé pour le calcul
    price: Optional[Decimal] = None
    color: Optional[str] = Field(default=None, max_length=50)
    offer: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_name: str = Field(alias="customerName", min_length=1, max_length=255)
    customer_phone: str = Field(alias="customerPhone", min_length=6, max_length=20)
    customer_address: str = Field(alias="customerAddress", min_length=1)
    customer_city: str = Field(alias="customerCity", min_length=1, max_length=100)
    customer_district: str = Field(alias="customerDistrict", min_length=1, max_length=100)
    payment_method: PaymentMethod = Field(alias="paymentMethod")
    items: List[OrderItemIn] = Field(min_length=1)
    declared_total: Optional[Decimal] = Field(default=None, alias="declaredTotal")

    @field_validator("customer_name", "customer_phone", "customer_address", "customer_city", "customer_district")
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("champ obligatoire")
        return v

    def items_payload(self) -> List[dict]:
        return [it.model_dump(by_alias=True) for it in self.items]


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=500)
