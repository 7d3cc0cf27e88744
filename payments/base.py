# payments/base.py
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

# Ações que o pipeline sabe aplicar
ACTIVATE = "activate"
REVOKE = "revoke"
REACTIVATE = "reactivate"
DELAY = "delay"
EXPIRE = "expire"
IGNORE = "ignore"


@dataclass
class Purchase:
    """Dados de compra normalizados, iguais para qualquer provedor."""
    email: Optional[str]
    name: Optional[str]
    phone: Optional[str]
    transaction_id: Optional[str]
    subscriber_code: Optional[str]
    product_id: Optional[str]
    offer_id: Optional[str]
    plan_name: str
    payment_method: Optional[str]
    price: float
    currency: str
    start_date: Optional[str]
    end_date: Optional[str]
    purchase_status: Optional[str]


class PaymentProvider:
    source = ""
    # evento -> (ação, status que a assinatura recebe)
    EVENTS: Dict[str, tuple] = {}
    APPROVED_STATUSES: frozenset = frozenset()

    def verify(self, headers: Mapping[str, str], raw_body: bytes, payload: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def normalize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return payload

    def event_type(self, payload: Dict[str, Any], headers: Optional[Mapping[str, str]] = None) -> str:
        return str(payload.get("event") or "UNKNOWN")

    def classify(self, event: str) -> tuple:
        return self.EVENTS.get(event, (IGNORE, None))

    def extract_purchase(self, payload: Dict[str, Any]) -> Purchase:
        raise NotImplementedError

    def is_approved_status(self, status: Optional[str]) -> bool:
        if not status:
            return True
        return status.strip().lower() in self.APPROVED_STATUSES


def read_header_any(headers: Mapping[str, str], *names: str) -> str:
    # WSGI pode normalizar maiúsculas; tentamos várias chaves
    for n in names:
        v = headers.get(n)
        if v:
            return v.strip()
    return ""
