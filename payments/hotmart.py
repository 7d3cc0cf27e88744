# payments/hotmart.py
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
from utils.security import safe_compare

from .base import ACTIVATE, DELAY, IGNORE, REACTIVATE, REVOKE, PaymentProvider, Purchase, read_header_any

logger = logging.getLogger(__name__)


class HotmartProvider(PaymentProvider):
    """
    Webhooks Hotmart (API 2.0.0). Autenticação pelo "hottok", que chega no
    cabeçalho ou no próprio corpo, dependendo da configuração do produtor.
    """
    source = "hotmart"

    EVENTS = {
        "PURCHASE_APPROVED": (ACTIVATE, "active"),
        "PURCHASE_COMPLETE": (ACTIVATE, "active"),
        "PURCHASE_CANCELED": (REVOKE, "cancelled"),
        "SUBSCRIPTION_CANCELLATION": (REVOKE, "cancelled"),
        "PURCHASE_REFUNDED": (REVOKE, "refunded"),
        "PURCHASE_CHARGEBACK": (REVOKE, "chargeback"),
        "SUBSCRIPTION_REACTIVATION": (REACTIVATE, "active"),
        "PURCHASE_DELAYED": (DELAY, "delayed"),
        "PURCHASE_PROTEST": (DELAY, "delayed"),
    }
    APPROVED_STATUSES = frozenset({"approved", "complete", "completed"})

    def verify(self, headers: Mapping[str, str], raw_body: bytes, payload: Dict[str, Any]) -> bool:
        expected = get_setting("hotmart_webhook_token")
        if not expected:
            logger.warning("[HOTMART] hottok não configurado; aceitando webhook (dev).")
            return True
        received = read_header_any(headers, "X-Hotmart-Hottok", "X-Hotmart-Webhook-Token")
        if not received and isinstance(payload.get("hottok"), str):
            received = payload["hottok"].strip()
        if not received:
            logger.warning("[HOTMART] hottok ausente no cabeçalho e no corpo.")
            return False
        return safe_compare(received, expected)

    def event_type(self, payload, headers=None) -> str:
        event = payload.get("event")
        if not event and headers is not None:
            event = read_header_any(headers, "X-Hotmart-Event")
        return str(event or "UNKNOWN").strip().upper()

    def classify(self, event: str) -> tuple:
        return self.EVENTS.get((event or "").upper(), (IGNORE, None))

    def extract_purchase(self, payload: Dict[str, Any]) -> Purchase:
        email = find_email(payload)
        purchase = dig(payload, "data", "purchase") or {}
        transaction_id = find_transaction_id(payload)
        product_id = dig(payload, "data", "product", "id")
        offer_id = dig(purchase, "offer", "code")
        return Purchase(
            email=email,
            name=find_name(payload, email),
            phone=find_phone(payload),
            transaction_id=transaction_id,
            subscriber_code=dig(payload, "data", "subscription", "subscriber", "code") or transaction_id,
            product_id=str(product_id) if product_id not in (None, "") else None,
            offer_id=str(offer_id) if offer_id else None,
            plan_name=find_plan_name(payload),
            payment_method=dig(purchase, "payment", "type"),
            price=coerce_price(dig(purchase, "price", "value")),
            currency=dig(purchase, "price", "currency_value") or "BRL",
            start_date=to_db_timestamp(purchase.get("approved_date") or purchase.get("order_date")),
            end_date=to_db_timestamp(purchase.get("date_next_charge")),
            purchase_status=purchase.get("status"),
        )
