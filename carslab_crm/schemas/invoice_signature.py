from datetime import datetime
from decimal import Decimal
from typing import List
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, model_validator

from carslab_crm.domain.pricing import DiscountType, PriceType
from carslab_crm.models.signature import SignatureStatus


class InvoiceItemRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    quantity: int = Field(default=1, ge=1)
    base_price: Decimal = Field(ge=0)
    price_type: PriceType = PriceType.BRUTTO
    vat_rate: int = Field(default=23, ge=0, le=100)
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def discount_pair(self) -> "InvoiceItemRequest":
        if (self.discount_type is None) != (self.discount_value is None):
            raise ValueError("discount_type and discount_value must be given together")
        if self.discount_type == DiscountType.PERCENT and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class InvoiceSignatureRequest(BaseModel):
    invoice_id: str = Field(min_length=1, max_length=100)
    tablet_id: UUID | None = None
    workstation_id: UUID | None = None
    customer_name: str = Field(min_length=1, max_length=200)
    customer_email: EmailStr | None = None
    customer_phone: str | None = Field(default=None, max_length=50)
    signature_title: str | None = Field(default=None, max_length=200)
    instructions: str | None = Field(default=None, max_length=2000)
    items: List[InvoiceItemRequest] = Field(min_length=1)
    timeout_minutes: int | None = Field(default=None, ge=1, le=30)


class InvoiceItemPriced(BaseModel):
    name: str
    quantity: int
    unit_price: dict[str, str]
    final_price: dict[str, str]
    savings: dict[str, str]
    discount: str | None = None


class InvoiceTotals(BaseModel):
    price_netto: Decimal
    price_brutto: Decimal
    tax_amount: Decimal
    savings_brutto: Decimal


class InvoiceSignatureResponse(BaseModel):
    success: bool = True
    session_id: UUID
    invoice_id: str
    status: SignatureStatus
    message: str
    expires_at: datetime
    totals: InvoiceTotals


class InvoiceSignatureStatusResponse(BaseModel):
    success: bool = True
    session_id: UUID
    invoice_id: str
    status: SignatureStatus
    signed_at: datetime | None = None
    signed_document_url: str | None = None
    signature_image_url: str | None = None
    timestamp: datetime
