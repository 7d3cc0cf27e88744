# payments/doppus.py
import logging
from typing import Any, Dict, Mapping

from services.payload import (
    coerce_price,
    dig,
    find_email,
    find_name,
    find_phone,
    find_plan_name,
    find_transaction_id,
    to_db_timestamp,
)
from services.settings import get_setting
from utils.security import hmac_sha256_hex, safe_compare

from .base import ACTIVATE, EXPIRE, IGNORE, REVOKE, PaymentProvider, Purchase, read_header_any

logger = logging.getLogger(__name__)


class DoppusProvider(PaymentProvider):
    """
    Webhooks Doppus. Assinatura: hex(HMAC_SHA256(secret_key, corpo_bruto))
    no cabeçalho X-Doppus-Signature.
    """
    source = "doppus"

    EVENTS = {
        "PAYMENT_APPROVED": (ACTIVATE, "active"),
        "PAYMENT.APPROVED": (ACTIVATE, "active"),
        "SUBSCRIPTION_CANCELLED": (REVOKE, "cancelled"),
        "SUBSCRIPTION.CANCELED": (REVOKE, "cancelled"),
        "PAYMENT_REFUNDED": (REVOKE, "refunded"),
        "PAYMENT.REFUNDED": (REVOKE, "refunded"),
        "PAYMENT_CHARGEBACK": (REVOKE, "chargeback"),
        "SUBSCRIPTION_EXPIRED": (EXPIRE, "expired"),
    }
    APPROVED_STATUSES = frozenset({"approved", "paid", "complete", "completed"})

    def verify(self, headers: Mapping[str, str], raw_body: bytes, payload: Dict[str, Any]) -> bool:
        secret = get_setting("doppus_secret_key")
        if not secret:
            logger.warning("[DOPPUS] secret key não configurada; pulando validação de assinatura.")
            return True
        signature = read_header_any(headers, "X-Doppus-Signature", "X-Signature")
        if not signature:
            logger.warning("[DOPPUS] Webhook sem assinatura; aceitando.")
            return True
        return safe_compare(hmac_sha256_hex(secret, raw_body), signature.lower())

    def normalize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # Formato maio/2025: {customer, items, ...} sem event/data
        if (
            isinstance(payload.get("customer"), dict)
            and isinstance(payload.get("items"), list)
            and "data" not in payload
            and "event" not in payload
        ):
            logger.info("[DOPPUS] Formato maio/2025 detectado; adaptando.")
            return {"event": "payment.approved", "data": payload}
        return payload

    def event_type(self, payload, headers=None) -> str:
        event = payload.get("event")
        if not event and headers is not None:
            event = read_header_any(headers, "X-Doppus-Event")
        return str(event or "UNKNOWN").strip()

    def classify(self, event: str) -> tuple:
        return self.EVENTS.get((event or "").upper(), (IGNORE, None))

    def extract_purchase(self, payload: Dict[str, Any]) -> Purchase:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        email = find_email(payload)
        items = data.get("items") if isinstance(data.get("items"), list) else []
        first_item = items[0] if items and isinstance(items[0], dict) else {}
        product_id = dig(data, "product", "code") or first_item.get("code")
        offer_id = first_item.get("offer")
        status = dig(data, "status", "code") or (data.get("status") if isinstance(data.get("status"), str) else None)
        transaction_id = find_transaction_id(payload)
        return Purchase(
            email=email,
            name=find_name(payload, email),
            phone=find_phone(payload),
            transaction_id=transaction_id,
            subscriber_code=dig(data, "recurrence", "code") or transaction_id,
            product_id=str(product_id) if product_id else None,
            offer_id=str(offer_id) if offer_id else None,
            plan_name=find_plan_name(payload),
            payment_method=dig(data, "transaction", "payment_type"),
            price=coerce_price(dig(data, "transaction", "total") or first_item.get("value")),
            currency="BRL",
            start_date=to_db_timestamp(dig(data, "status", "date")),
            end_date=to_db_timestamp(dig(data, "recurrence", "expiration_date")),
            purchase_status=status,
        )
