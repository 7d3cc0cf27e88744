import pytest

from conftest import DOPPUS_SECRET, HOTTOK, as_body, doppus_may2025_payload, hotmart_payload
from errors import UnknownSourceError
from payments import get_payment_provider
from payments.base import ACTIVATE, DELAY, EXPIRE, IGNORE, REACTIVATE, REVOKE
from utils.security import hmac_sha256_hex


def test_unknown_source():
    with pytest.raises(UnknownSourceError):
        get_payment_provider("paypal")


@pytest.mark.parametrize(
    "event,action,status",
    [
        ("PURCHASE_APPROVED", ACTIVATE, "active"),
        ("PURCHASE_COMPLETE", ACTIVATE, "active"),
        ("PURCHASE_CANCELED", REVOKE, "cancelled"),
        ("PURCHASE_REFUNDED", REVOKE, "refunded"),
        ("PURCHASE_CHARGEBACK", REVOKE, "chargeback"),
        ("SUBSCRIPTION_CANCELLATION", REVOKE, "cancelled"),
        ("SUBSCRIPTION_REACTIVATION", REACTIVATE, "active"),
        ("PURCHASE_DELAYED", DELAY, "delayed"),
        ("PURCHASE_PROTEST", DELAY, "delayed"),
        ("PURCHASE_BILLET_PRINTED", IGNORE, None),
    ],
)
def test_hotmart_classify(event, action, status):
    assert get_payment_provider("hotmart").classify(event) == (action, status)


@pytest.mark.parametrize(
    "event,action",
    [
        ("payment.approved", ACTIVATE),
        ("PAYMENT_APPROVED", ACTIVATE),
        ("SUBSCRIPTION_CANCELLED", REVOKE),
        ("payment.refunded", REVOKE),
        ("SUBSCRIPTION_EXPIRED", EXPIRE),
        ("payment.pending", IGNORE),
    ],
)
def test_doppus_classify(event, action):
    assert get_payment_provider("doppus").classify(event)[0] == action


def test_hotmart_verify_body_and_header(hotmart_token):
    provider = get_payment_provider("hotmart")
    payload = hotmart_payload()
    assert provider.verify({}, as_body(payload), payload) is True

    no_body_token = hotmart_payload()
    no_body_token.pop("hottok")
    assert provider.verify({"X-Hotmart-Hottok": HOTTOK}, b"", no_body_token) is True
    assert provider.verify({"X-Hotmart-Hottok": "errado"}, b"", no_body_token) is False
    assert provider.verify({}, b"", no_body_token) is False


def test_hotmart_verify_without_configured_token_accepts():
    provider = get_payment_provider("hotmart")
    assert provider.verify({}, b"{}", {}) is True


def test_hotmart_extract_purchase():
    purchase = get_payment_provider("hotmart").extract_purchase(hotmart_payload())
    assert purchase.email == "ws.advogaciasm@gmail.com"
    assert purchase.transaction_id == "HP2363007968"
    assert purchase.subscriber_code == "IY8BW62L"
    assert purchase.product_id == "5381714"
    assert purchase.offer_id == "aukjngrt"
    assert purchase.plan_name == "plano anual"
    assert purchase.payment_method == "PIX"
    assert purchase.price == 7.0
    assert purchase.currency == "BRL"
    assert purchase.start_date == "2025-05-17 02:04:24"
    assert purchase.end_date is not None
    assert purchase.purchase_status == "APPROVED"


def test_approved_status():
    hotmart = get_payment_provider("hotmart")
    assert hotmart.is_approved_status("APPROVED")
    assert hotmart.is_approved_status(None)
    assert not hotmart.is_approved_status("WAITING_PAYMENT")
    assert get_payment_provider("doppus").is_approved_status("approved")


def test_doppus_signature(doppus_secret):
    provider = get_payment_provider("doppus")
    body = as_body(doppus_may2025_payload())
    good = hmac_sha256_hex(DOPPUS_SECRET, body)
    assert provider.verify({"X-Doppus-Signature": good}, body, {}) is True
    assert provider.verify({"X-Doppus-Signature": "0" * 64}, body, {}) is False
    # sem cabeçalho: aceita com aviso
    assert provider.verify({}, body, {}) is True


def test_doppus_normalize_may_2025_format():
    provider = get_payment_provider("doppus")
    raw = doppus_may2025_payload()
    wrapped = provider.normalize(raw)
    assert wrapped == {"event": "payment.approved", "data": raw}
    # formato antigo passa direto
    assert provider.normalize(wrapped) is wrapped

    purchase = provider.extract_purchase(wrapped)
    assert purchase.email == "teste.maio2025@exemplo.com"
    assert purchase.transaction_id == "TX987654321"
    assert purchase.subscriber_code == "REC987654"
    assert purchase.product_id == "designauto-product"
    assert purchase.offer_id == "anual-platinum"
    assert purchase.price == 297.0
    assert purchase.end_date == "2026-05-17 16:30:00"
    assert purchase.purchase_status == "approved"
