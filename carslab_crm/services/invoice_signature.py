import base64
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlmodel import Session

from carslab_crm.core.exceptions import BusinessException, EntityNotFoundException, ResourceNotFoundException
from carslab_crm.core.logging_setup import logger
from carslab_crm.domain.pricing import DiscountValueObject, PriceValueObject
from carslab_crm.models.signature import SignatureSession, SignatureStatus
from carslab_crm.models.user import User
from carslab_crm.schemas.invoice_signature import (
    InvoiceItemPriced,
    InvoiceItemRequest,
    InvoiceSignatureRequest,
    InvoiceSignatureStatusResponse,
    InvoiceTotals,
)
from carslab_crm.schemas.signature import CreateSignatureSessionRequest
from carslab_crm.services.signature import SignatureService

INVOICE_DOCUMENT_TYPE = "INVOICE"


def price_item(item: InvoiceItemRequest) -> tuple[InvoiceItemPriced, PriceValueObject, PriceValueObject]:
    """Price one invoice line; returns the priced line, its total and its total savings."""
    try:
        unit_price = PriceValueObject.create_from_input(item.base_price, item.price_type, item.vat_rate)
        discount = None
        if item.discount_type is not None and item.discount_value is not None:
            discount = DiscountValueObject.from_raw(item.discount_type, item.discount_value)
    except ValueError as exc:
        raise BusinessException(f"Invalid price for {item.name}: {exc}") from exc

    if discount is None:
        final_price = unit_price
        savings = PriceValueObject.zero()
    else:
        if not discount.can_be_applied_to(unit_price):
            logger.warning("Discount %s exceeds the price of %s, clamped to zero", discount.description(), item.name)
        final_price = discount.apply_to(unit_price, item.vat_rate)
        savings = discount.calculate_savings(unit_price, item.vat_rate)

    priced = InvoiceItemPriced(
        name=item.name,
        quantity=item.quantity,
        unit_price=unit_price.as_dict(),
        final_price=final_price.as_dict(),
        savings=savings.as_dict(),
        discount=discount.description() if discount else None,
    )
    return priced, final_price.multiply(item.quantity), savings.multiply(item.quantity)


def price_invoice(items: list[InvoiceItemRequest]) -> tuple[list[InvoiceItemPriced], InvoiceTotals]:
    lines: list[InvoiceItemPriced] = []
    total = PriceValueObject.zero()
    savings_brutto = Decimal("0.00")
    for item in items:
        priced, line_total, line_savings = price_item(item)
        lines.append(priced)
        total = total.add(line_total)
        savings_brutto += line_savings.price_brutto
    totals = InvoiceTotals(
        price_netto=total.price_netto,
        price_brutto=total.price_brutto,
        tax_amount=total.tax_amount,
        savings_brutto=savings_brutto,
    )
    return lines, totals


class InvoiceSignatureService:
    """Sends priced invoices to a tablet for the customer's signature."""

    def __init__(self, session: Session, signatures: SignatureService | None = None) -> None:
        self.session = session
        self.signatures = signatures or SignatureService(session)

    def request(
        self,
        company_id: UUID,
        user: User | None,
        payload: InvoiceSignatureRequest,
    ) -> tuple[SignatureSession, InvoiceTotals]:
        lines, totals = price_invoice(payload.items)
        business_context: dict[str, Any] = {
            "invoice_id": payload.invoice_id,
            "items": [line.model_dump() for line in lines],
            "totals": totals.model_dump(mode="json"),
        }
        session_request = CreateSignatureSessionRequest(
            tablet_id=payload.tablet_id,
            workstation_id=payload.workstation_id,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            customer_phone=payload.customer_phone,
            document_type=INVOICE_DOCUMENT_TYPE,
            signature_title=payload.signature_title or f"Invoice {payload.invoice_id}",
            instructions=payload.instructions,
            timeout_minutes=payload.timeout_minutes,
        )
        signature_session = self.signatures.request_signature(company_id, user, session_request, business_context)
        logger.info("Invoice %s sent for signature in session %s", payload.invoice_id, signature_session.id)
        return signature_session, totals

    def _invoice_session(self, company_id: UUID, session_id: UUID, invoice_id: str) -> SignatureSession:
        signature_session = self.session.get(SignatureSession, session_id)
        context = (signature_session.business_context or {}) if signature_session else {}
        if (
            not signature_session
            or signature_session.company_id != company_id
            or context.get("invoice_id") != invoice_id
        ):
            raise EntityNotFoundException(f"Signature session {session_id} not found for invoice {invoice_id}")
        self.signatures.refresh_expiry(signature_session)
        return signature_session

    def status(self, company_id: UUID, session_id: UUID, invoice_id: str) -> InvoiceSignatureStatusResponse:
        signature_session = self._invoice_session(company_id, session_id, invoice_id)
        completed = signature_session.status == SignatureStatus.COMPLETED
        base_url = f"/api/invoice-signatures/sessions/{session_id}"
        return InvoiceSignatureStatusResponse(
            session_id=signature_session.id,
            invoice_id=invoice_id,
            status=signature_session.status,
            signed_at=signature_session.signed_at,
            signed_document_url=f"{base_url}/signed-document?invoice_id={invoice_id}" if completed else None,
            signature_image_url=f"{base_url}/signature-image?invoice_id={invoice_id}" if completed else None,
            timestamp=datetime.utcnow(),
        )

    def cancel(
        self,
        company_id: UUID,
        session_id: UUID,
        invoice_id: str,
        user: User,
        reason: str | None = None,
    ) -> SignatureSession:
        self._invoice_session(company_id, session_id, invoice_id)
        return self.signatures.cancel_session(
            company_id,
            session_id,
            cancelled_by=user.email,
            reason=reason,
            user_id=user.id,
        )

    def signature_image(self, company_id: UUID, session_id: UUID, invoice_id: str) -> tuple[bytes, str]:
        signature_session = self._completed_session(company_id, session_id, invoice_id)
        return self.signatures.load_signature_image(signature_session)

    def signed_document(self, company_id: UUID, session_id: UUID, invoice_id: str) -> dict[str, Any]:
        """The invoice as priced when sent, together with the customer's signature."""
        signature_session = self._completed_session(company_id, session_id, invoice_id)
        data, content_type = self.signatures.load_signature_image(signature_session)
        context = signature_session.business_context or {}
        return {
            "invoice_id": invoice_id,
            "session_id": str(signature_session.id),
            "customer_name": signature_session.customer_name,
            "items": context.get("items", []),
            "totals": context.get("totals", {}),
            "signed_at": signature_session.signed_at.isoformat() if signature_session.signed_at else None,
            "signature_image": f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}",
        }

    def _completed_session(self, company_id: UUID, session_id: UUID, invoice_id: str) -> SignatureSession:
        signature_session = self._invoice_session(company_id, session_id, invoice_id)
        if signature_session.status != SignatureStatus.COMPLETED:
            raise ResourceNotFoundException(f"Invoice {invoice_id} has not been signed yet")
        return signature_session
