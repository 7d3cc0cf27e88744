# services/payload.py
# Leitura tolerante dos payloads de webhook (Hotmart / Doppus).
# Os provedores mudam o formato sem aviso: primeiro tentamos os caminhos
# conhecidos, depois uma busca em profundidade no JSON inteiro.
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

HOTMART_ANNUAL_OFFER = "aukjngrt"
DEFAULT_PLAN_NAME = "plano premium"

# palavra-chave no nome do plano -> dias (None = vitalício)
_PLAN_KEYWORDS = (
    ("vitalic", None),
    ("vitalíc", None),
    ("lifetime", None),
    ("semestral", 180),
    ("trimestral", 90),
    ("anual", 365),
    ("annual", 365),
    ("yearly", 365),
    ("mensal", 30),
    ("monthly", 30),
)
LIFETIME = "lifetime"


def parse_raw_payload(raw: Any) -> Dict[str, Any]:
    """
    Aceita dict, bytes ou string JSON (inclusive com aspas escapadas, como
    alguns logs antigos guardavam). Se nada funcionar, devolve {"_rawData": raw}.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    s = str(raw).strip()
    if not s:
        return {}
    for candidate in (s, s.replace('\\"', '"')):
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        # payload guardado como string JSON dentro de string
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                continue
        if isinstance(data, dict):
            return data
        return {"_rawData": data}
    return {"_rawData": s}


def dig(obj: Any, *path: str) -> Any:
    """dig(p, "data", "buyer", "email") sem KeyError/TypeError no meio do caminho."""
    cur = obj
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _first(obj: Any, paths: Iterable[tuple]) -> Any:
    for path in paths:
        v = dig(obj, *path)
        if v not in (None, "", [], {}):
            return v
    return None


def _walk(obj: Any):
    """Percorre (chave, valor) em profundidade, em ordem de inserção."""
    if isinstance(obj, dict):
        for k, v in obj.items():
            yield k, v
            yield from _walk(v)
    elif isinstance(obj, list):
        for item in obj:
            yield None, item
            yield from _walk(item)


def _looks_like_email(v: Any) -> bool:
    return isinstance(v, str) and "@" in v and "." in v.split("@")[-1]


# ------------------------------------------------------------------
# Email
# ------------------------------------------------------------------
def find_email(payload: Any) -> Optional[str]:
    hit = _first(payload, (
        ("data", "buyer", "email"),
        ("data", "customer", "email"),
        ("data", "subscription", "subscriber", "email"),
        ("data", "subscriber", "email"),
        ("customer", "email"),
        ("buyer", "email"),
        ("buyer_email",),
        ("email",),
    ))
    if not _looks_like_email(hit):
        hit = None
    if hit is None:
        for k, v in _walk(payload):
            if isinstance(k, str) and "email" in k.lower() and _looks_like_email(v):
                hit = v
                break
    if hit is None:
        for _, v in _walk(payload):
            if _looks_like_email(v):
                hit = v
                break
    return hit.strip().lower() if hit else None


# ------------------------------------------------------------------
# Transação
# ------------------------------------------------------------------
def find_transaction_id(payload: Any) -> Optional[str]:
    for path in (
        ("data", "purchase", "transaction"),
        ("data", "transaction"),
        ("transaction",),
        ("data", "transaction", "code"),
        ("transaction", "code"),
        ("data", "code"),
        ("id",),
    ):
        v = dig(payload, *path)
        if isinstance(v, (str, int)) and not isinstance(v, bool) and str(v).strip():
            return str(v).strip()
    for k, v in _walk(payload):
        if not isinstance(k, str) or not isinstance(v, str) or not v.strip():
            continue
        low = k.lower()
        if "transaction" in low or "order" in low or "pedido" in low:
            return v.strip()
    return None


# ------------------------------------------------------------------
# Nome / telefone
# ------------------------------------------------------------------
def _name_of(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for key in ("name", "fullName", "full_name"):
        if isinstance(obj.get(key), str) and obj[key].strip():
            return obj[key].strip()
    first, last = obj.get("firstName") or obj.get("first_name"), obj.get("lastName") or obj.get("last_name")
    if first and last:
        return f"{first} {last}".strip()
    return None


def find_name(payload: Any, email: Optional[str] = None) -> Optional[str]:
    for path in (
        ("data", "buyer"),
        ("data", "customer"),
        ("data", "subscription", "subscriber"),
        ("customer",),
        ("buyer",),
    ):
        n = _name_of(dig(payload, *path))
        if n:
            return n
    # busca profunda, pulando produto/plano/itens (o "name" deles não é pessoa)
    skip = {"product", "plan", "items", "offer", "producer"}

    def search(obj: Any) -> Optional[str]:
        if isinstance(obj, dict):
            n = _name_of(obj)
            if n:
                return n
            for k, v in obj.items():
                if k in skip:
                    continue
                found = search(v)
                if found:
                    return found
        elif isinstance(obj, list):
            for item in obj:
                found = search(item)
                if found:
                    return found
        return None

    n = search(payload)
    if n:
        return n
    if email:
        return email.split("@", 1)[0]
    return None


def find_phone(payload: Any) -> Optional[str]:
    raw = _first(payload, (
        ("data", "buyer", "checkout_phone"),
        ("data", "buyer", "phone"),
        ("data", "customer", "phone"),
        ("customer", "phone"),
        ("buyer", "phone"),
    ))
    if raw is None:
        return None
    digits = re.sub(r"\D", "", str(raw))
    return digits or None


# ------------------------------------------------------------------
# Plano
# ------------------------------------------------------------------
def find_plan_name(payload: Any) -> str:
    name = dig(payload, "data", "subscription", "plan", "name")
    if isinstance(name, str) and name.strip():
        return name.strip().lower()
    if dig(payload, "data", "purchase", "offer", "code") == HOTMART_ANNUAL_OFFER:
        return "plano anual"
    name = dig(payload, "data", "product", "name")
    if isinstance(name, str) and name.strip():
        return name.strip().lower()
    items = dig(payload, "data", "items") or dig(payload, "items")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        name = items[0].get("offer_name") or items[0].get("name")
        if isinstance(name, str) and name.strip():
            return name.strip().lower()
    return DEFAULT_PLAN_NAME


def duration_from_plan_name(name: Optional[str]):
    """
    Dias de acesso pelo nome do plano: int, LIFETIME, ou None se não reconhecer.
    """
    low = (name or "").lower()
    for keyword, days in _PLAN_KEYWORDS:
        if keyword in low:
            return LIFETIME if days is None else days
    return None


def coerce_price(v: Any) -> float:
    try:
        return round(float(v), 2)
    except (TypeError, ValueError):
        return 0.0


def to_db_timestamp(v: Any) -> Optional[str]:
    """
    Epoch em ms/s (Hotmart) ou ISO-8601 (Doppus) -> 'YYYY-MM-DD HH:MM:SS' UTC.
    """
    if v in (None, "", 0):
        return None
    try:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            ts = float(v) / 1000.0 if v > 10_000_000_000 else float(v)
            dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        else:
            s = str(v).strip()
            if s.isdigit():
                return to_db_timestamp(int(s))
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
