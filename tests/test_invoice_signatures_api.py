import base64
from datetime import datetime, timedelta

from fastapi import status

from carslab_crm.core.config import settings
from tests.conftest import SIGNATURE_PNG, auth_headers, pair_tablet, register_and_login

INVOICES = f"{settings.api_prefix}/invoice-signatures"

ITEMS = [
    {
        "name": "Ceramic coating",
        "quantity": 2,
        "base_price": "123.00",
        "price_type": "BRUTTO",
        "vat_rate": 23,
        "discount_type": "PERCENT",
        "discount_value": "10",
    },
    {"name": "Interior cleaning", "base_price": "100.00", "price_type": "NETTO"},
]


def _request_invoice(client, token, tablet_id, invoice_id="FV/2024/001", items=None):
    return client.post(
        f"{INVOICES}/request",
        json={
            "invoice_id": invoice_id,
            "tablet_id": tablet_id,
            "customer_name": "Jan Kowalski",
            "items": items or ITEMS,
        },
        headers=auth_headers(token),
    )


def _sign(client, tablet, session_id):
    response = client.post(
        f"{settings.api_prefix}/signatures",
        json={
            "session_id": session_id,
            "signature_image": SIGNATURE_PNG,
            "signed_at": (datetime.utcnow() - timedelta(seconds=1)).isoformat(),
            "device_id": tablet["device_id"],
        },
        headers=auth_headers(tablet),
    )
    assert response.status_code == status.HTTP_200_OK, response.json()


def test_invoice_is_priced_and_sent(client):
    token, _ = register_and_login(client, "owner@example.com", "secret123")
    tablet = pair_tablet(client, token)

    response = _request_invoice(client, token, tablet["device_id"])

    assert response.status_code == status.HTTP_201_CREATED, response.json()
    body = response.json()
    assert body["status"] == "SENT_TO_TABLET"
    assert body["invoice_id"] == "FV/2024/001"
    assert body["totals"] == {
        "price_netto": "280.00",
        "price_brutto": "344.40",
        "tax_amount": "64.40",
        "savings_brutto": "24.60",
    }

    pending = client.get(f"{settings.api_prefix}/signatures/tablet/pending", headers=auth_headers(tablet))
    assert pending.json()[0]["document_type"] == "INVOICE"
    assert pending.json()[0]["signature_title"] == "Invoice FV/2024/001"


def test_invoice_status_and_documents_after_signing(client):
    token, _ = register_and_login(client, "owner@example.com", "secret123")
    tablet = pair_tablet(client, token)
    session_id = _request_invoice(client, token, tablet["device_id"]).json()["session_id"]
    params = {"invoice_id": "FV/2024/001"}

    before = client.get(f"{INVOICES}/sessions/{session_id}/status", params=params, headers=auth_headers(token))
    assert before.status_code == status.HTTP_200_OK
    assert before.json()["status"] == "SENT_TO_TABLET"
    assert before.json()["signature_image_url"] is None

    missing = client.get(
        f"{INVOICES}/sessions/{session_id}/signature-image", params=params, headers=auth_headers(token)
    )
    assert missing.status_code == status.HTTP_404_NOT_FOUND
    assert missing.json()["code"] == "RESOURCE_NOT_FOUND"

    _sign(client, tablet, session_id)

    after = client.get(f"{INVOICES}/sessions/{session_id}/status", params=params, headers=auth_headers(token))
    assert after.json()["status"] == "COMPLETED"
    assert after.json()["signed_at"] is not None
    assert after.json()["signature_image_url"].endswith("/signature-image?invoice_id=FV/2024/001")

    image = client.get(f"{INVOICES}/sessions/{session_id}/signature-image", params=params, headers=auth_headers(token))
    assert image.status_code == status.HTTP_200_OK
    assert image.headers["content-type"] == "image/png"
    assert image.content == base64.b64decode(SIGNATURE_PNG.split(",", 1)[1])

    document = client.get(
        f"{INVOICES}/sessions/{session_id}/signed-document", params=params, headers=auth_headers(token)
    )
    assert document.status_code == status.HTTP_200_OK
    assert document.json()["totals"]["price_brutto"] == "344.40"
    assert [item["name"] for item in document.json()["items"]] == ["Ceramic coating", "Interior cleaning"]
    assert document.json()["signature_image"] == SIGNATURE_PNG


def test_invoice_session_is_scoped_to_invoice_and_company(client):
    token, _ = register_and_login(client, "owner@example.com", "secret123")
    tablet = pair_tablet(client, token)
    session_id = _request_invoice(client, token, tablet["device_id"]).json()["session_id"]

    wrong_invoice = client.get(
        f"{INVOICES}/sessions/{session_id}/status",
        params={"invoice_id": "FV/2024/999"},
        headers=auth_headers(token),
    )
    assert wrong_invoice.status_code == status.HTTP_404_NOT_FOUND
    assert wrong_invoice.json()["code"] == "ENTITY_NOT_FOUND"

    other_token, _ = register_and_login(client, "other@example.com", "secret123")
    other_company = client.get(
        f"{INVOICES}/sessions/{session_id}/status",
        params={"invoice_id": "FV/2024/001"},
        headers=auth_headers(other_token),
    )
    assert other_company.status_code == status.HTTP_404_NOT_FOUND


def test_invoice_signature_can_be_cancelled(client):
    token, _ = register_and_login(client, "owner@example.com", "secret123")
    tablet = pair_tablet(client, token)
    session_id = _request_invoice(client, token, tablet["device_id"]).json()["session_id"]

    response = client.post(
        f"{INVOICES}/sessions/{session_id}/cancel",
        params={"invoice_id": "FV/2024/001"},
        json={"reason": "Invoice corrected"},
        headers=auth_headers(token),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "CANCELLED"

    again = client.post(
        f"{INVOICES}/sessions/{session_id}/cancel",
        params={"invoice_id": "FV/2024/001"},
        headers=auth_headers(token),
    )
    assert again.status_code == status.HTTP_409_CONFLICT


def test_invoice_items_are_validated(client):
    token, _ = register_and_login(client, "owner@example.com", "secret123")
    tablet = pair_tablet(client, token)

    half_discount = _request_invoice(
        client, token, tablet["device_id"], items=[{"name": "Wash", "base_price": "50", "discount_type": "PERCENT"}]
    )
    assert half_discount.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    over_hundred_percent = _request_invoice(
        client,
        token,
        tablet["device_id"],
        items=[{"name": "Wash", "base_price": "50", "discount_type": "PERCENT", "discount_value": "150"}],
    )
    assert over_hundred_percent.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    no_items = client.post(
        f"{INVOICES}/request",
        json={"invoice_id": "FV/1", "customer_name": "Jan", "items": []},
        headers=auth_headers(token),
    )
    assert no_items.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_invoice_requests_share_the_company_rate_limit(client, monkeypatch):
    monkeypatch.setattr(settings, "signature_request_rate_limit", 1)
    token, _ = register_and_login(client, "owner@example.com", "secret123")
    tablet = pair_tablet(client, token)

    assert _request_invoice(client, token, tablet["device_id"]).status_code == status.HTTP_201_CREATED
    limited = _request_invoice(client, token, tablet["device_id"], invoice_id="FV/2024/002")
    assert limited.status_code == status.HTTP_429_TOO_MANY_REQUESTS
