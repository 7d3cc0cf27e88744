import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import db_cursor, inserted_id, qp, row_to_dict

# Status possíveis (MVP)
LOG_RECEIVED = "received"
LOG_PROCESSING = "processing"
LOG_PROCESSED = "processed"
LOG_IGNORED = "ignored"
LOG_ERROR = "error"

FAILED_PENDING = "pending"
FAILED_PROCESSING = "processing"
FAILED_RESOLVED = "resolved"
FAILED_FAILED = "failed"


def now_str(dt: Optional[datetime] = None) -> str:
    """Timestamp UTC sem fuso no formato que SQLite e Postgres aceitam e ordenam igual."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def _bool(v: Any) -> bool:
    return bool(v) if v is not None else False


def _fmt(v: Any) -> Any:
    if isinstance(v, datetime):
        return now_str(v)
    return v


def _clean(row) -> Optional[Dict[str, Any]]:
    d = row_to_dict(row)
    if d is None:
        return None
    return {k: _fmt(v) for k, v in d.items()}


# ==========================================================
# Users
# ==========================================================
@dataclass
class User:
    id: int
    username: str
    email: str
    name: Optional[str]
    access_level: str
    plan_type: Optional[str]
    subscription_origin: Optional[str]
    subscription_expires_at: Optional[str]
    lifetime_access: bool


_USER_COLS = (
    "id, username, email, name, access_level, plan_type, subscription_origin, "
    "subscription_expires_at, lifetime_access"
)


def _user(row) -> Optional[User]:
    if not row:
        return None
    r = _clean(row)
    return User(
        id=r["id"],
        username=r["username"],
        email=r["email"],
        name=r["name"],
        access_level=r["access_level"],
        plan_type=r["plan_type"],
        subscription_origin=r["subscription_origin"],
        subscription_expires_at=r["subscription_expires_at"],
        lifetime_access=_bool(r["lifetime_access"]),
    )


def get_user_by_email(email: str, cur=None) -> Optional[User]:
    sql = qp(f"SELECT {_USER_COLS} FROM users WHERE email = ?")
    if cur is not None:
        cur.execute(sql, (email.strip().lower(),))
        return _user(cur.fetchone())
    with db_cursor() as c:
        c.execute(sql, (email.strip().lower(),))
        return _user(c.fetchone())


def get_user(user_id: int) -> Optional[User]:
    with db_cursor() as cur:
        cur.execute(qp(f"SELECT {_USER_COLS} FROM users WHERE id = ?"), (user_id,))
        return _user(cur.fetchone())


def create_user(cur, username: str, email: str, name: Optional[str], phone: Optional[str],
                password_hash: str) -> int:
    cur.execute(
        qp(
            "INSERT INTO users (username, email, name, phone, password_hash, email_confirmed) "
            "VALUES (?,?,?,?,?,?) RETURNING id"
        ),
        (username, email.strip().lower(), name, phone, password_hash, True),
    )
    return inserted_id(cur)


def apply_premium_access(cur, user_id: int, plan_type: str, origin: str, started_at: str,
                         expires_at: Optional[str], lifetime: bool,
                         subscriber_code: Optional[str]) -> None:
    cur.execute(
        qp(
            "UPDATE users SET access_level = 'premium', plan_type = ?, subscription_origin = ?, "
            "subscription_started_at = ?, subscription_expires_at = ?, lifetime_access = ?, "
            "subscriber_code = COALESCE(?, subscriber_code), is_active = ?, updated_at = ? WHERE id = ?"
        ),
        (plan_type, origin, started_at, expires_at, lifetime, subscriber_code, True, now_str(), user_id),
    )


def revoke_premium_access(cur, user_id: int) -> None:
    # Vitalício não perde acesso por evento de cancelamento/expiração
    cur.execute(
        qp(
            "UPDATE users SET access_level = 'free', plan_type = 'free', subscription_expires_at = ?, "
            "updated_at = ? WHERE id = ? AND lifetime_access = ? AND access_level = 'premium'"
        ),
        (now_str(), now_str(), user_id, False),
    )


def list_expired_premium_users(cur, now: str) -> List[int]:
    cur.execute(
        qp(
            "SELECT id FROM users WHERE access_level = 'premium' AND lifetime_access = ? "
            "AND subscription_expires_at IS NOT NULL AND subscription_expires_at < ?"
        ),
        (False, now),
    )
    return [r["id"] for r in cur.fetchall()]


# ==========================================================
# Subscriptions
# ==========================================================
def get_subscription_by_transaction(cur, transaction_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(qp("SELECT * FROM subscriptions WHERE transaction_id = ?"), (transaction_id,))
    return _clean(cur.fetchone())


def create_subscription(cur, user_id: int, plan_type: str, origin: str, transaction_id: str,
                        subscription_code: Optional[str], last_event: str,
                        payment_method: Optional[str], price: float, currency: str,
                        start_date: str, end_date: Optional[str], webhook_data: str) -> int:
    cur.execute(
        qp(
            "INSERT INTO subscriptions (user_id, plan_type, status, origin, transaction_id, "
            "subscription_code, last_event, payment_method, price, currency, start_date, end_date, "
            "webhook_data) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?) RETURNING id"
        ),
        (user_id, plan_type, "active", origin, transaction_id, subscription_code, last_event,
         payment_method, price, currency, start_date, end_date, webhook_data),
    )
    return inserted_id(cur)


def update_subscriptions_status(cur, user_id: int, status: str, last_event: str,
                                transaction_id: Optional[str] = None,
                                only_active: bool = True) -> int:
    """
    Atualiza status das assinaturas do usuário.
    Com transaction_id, só a daquela transação; sem, todas as ativas.
    Retorna quantas linhas mudaram.
    """
    sql = "UPDATE subscriptions SET status = ?, last_event = ?, updated_at = ? WHERE user_id = ?"
    params: List[Any] = [status, last_event, now_str(), user_id]
    if transaction_id:
        sql += " AND transaction_id = ?"
        params.append(transaction_id)
    elif only_active:
        sql += " AND status IN ('active', 'delayed')"
    cur.execute(qp(sql), tuple(params))
    return cur.rowcount


def reactivate_subscription(cur, subscription_id: int, last_event: str, end_date: Optional[str]) -> None:
    cur.execute(
        qp("UPDATE subscriptions SET status = 'active', last_event = ?, end_date = ?, updated_at = ? WHERE id = ?"),
        (last_event, end_date, now_str(), subscription_id),
    )


def latest_subscription_for_user(cur, user_id: int) -> Optional[Dict[str, Any]]:
    cur.execute(
        qp("SELECT * FROM subscriptions WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT 1"),
        (user_id,),
    )
    return _clean(cur.fetchone())


def list_subscriptions(status: Optional[str] = None, origin: Optional[str] = None,
                       email: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
    sql = (
        "SELECT s.id, s.user_id, u.email, s.plan_type, s.status, s.origin, s.transaction_id, "
        "s.subscription_code, s.last_event, s.payment_method, s.price, s.currency, s.start_date, "
        "s.end_date, s.created_at, s.updated_at FROM subscriptions s JOIN users u ON u.id = s.user_id WHERE 1=1"
    )
    params: List[Any] = []
    if status:
        sql += " AND s.status = ?"
        params.append(status)
    if origin:
        sql += " AND s.origin = ?"
        params.append(origin)
    if email:
        sql += " AND u.email = ?"
        params.append(email.strip().lower())
    sql += " ORDER BY s.created_at DESC, s.id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        return [_clean(r) for r in cur.fetchall()]


# ==========================================================
# Webhook logs
# ==========================================================
def create_webhook_log(source: str, event_type: str, email: Optional[str], transaction_id: Optional[str],
                       source_ip: Optional[str], raw_payload: str, status: str = LOG_RECEIVED,
                       error_message: Optional[str] = None) -> int:
    with db_cursor() as cur:
        cur.execute(
            qp(
                "INSERT INTO webhook_logs (source, event_type, status, email, transaction_id, source_ip, "
                "raw_payload, error_message) VALUES (?,?,?,?,?,?,?,?) RETURNING id"
            ),
            (source, event_type or "UNKNOWN", status, email, transaction_id, source_ip, raw_payload, error_message),
        )
        return inserted_id(cur)


def get_webhook_log(log_id: int) -> Optional[Dict[str, Any]]:
    with db_cursor() as cur:
        cur.execute(qp("SELECT * FROM webhook_logs WHERE id = ?"), (log_id,))
        return _clean(cur.fetchone())


def claim_webhook_log(log_id: int, force: bool = False) -> bool:
    """
    Passa o log para 'processing' de forma atômica.
    Só um worker consegue o claim; entregas repetidas em paralelo ficam de fora.
    """
    allowed = [LOG_RECEIVED, LOG_ERROR]
    if force:
        allowed += [LOG_PROCESSING, LOG_PROCESSED, LOG_IGNORED]
    marks = ",".join("?" for _ in allowed)
    with db_cursor() as cur:
        cur.execute(
            qp(
                f"UPDATE webhook_logs SET status = ?, retry_count = retry_count + 1, updated_at = ? "
                f"WHERE id = ? AND status IN ({marks})"
            ),
            (LOG_PROCESSING, now_str(), log_id, *allowed),
        )
        return cur.rowcount == 1


def finish_webhook_log(log_id: int, status: str, result: Optional[Dict[str, Any]] = None,
                       error_message: Optional[str] = None, user_id: Optional[int] = None, cur=None) -> None:
    sql = qp(
        "UPDATE webhook_logs SET status = ?, processing_result = ?, error_message = ?, "
        "user_id = COALESCE(?, user_id), updated_at = ? WHERE id = ?"
    )
    params = (status, json.dumps(result, default=str) if result is not None else None,
              error_message, user_id, now_str(), log_id)
    if cur is not None:
        cur.execute(sql, params)
        return
    with db_cursor() as c:
        c.execute(sql, params)


def list_webhook_logs(status: Optional[str] = None, source: Optional[str] = None,
                      email: Optional[str] = None, transaction_id: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    sql = (
        "SELECT id, source, event_type, status, email, transaction_id, error_message, retry_count, "
        "user_id, created_at, updated_at FROM webhook_logs WHERE 1=1"
    )
    params: List[Any] = []
    for col, val in (("status", status), ("source", source), ("transaction_id", transaction_id)):
        if val:
            sql += f" AND {col} = ?"
            params.append(val)
    if email:
        sql += " AND email = ?"
        params.append(email.strip().lower())
    sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        return [_clean(r) for r in cur.fetchall()]


def list_pending_webhook_logs(limit: int = 100, source: Optional[str] = None) -> List[int]:
    # Mais antigos primeiro: a ordem das entregas importa (aprovação antes do cancelamento)
    sql = "SELECT id FROM webhook_logs WHERE status = ?"
    params: List[Any] = [LOG_RECEIVED]
    if source:
        sql += " AND source = ?"
        params.append(source)
    sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
    params.append(limit)
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        return [r["id"] for r in cur.fetchall()]


def webhook_log_stats() -> Dict[str, Any]:
    with db_cursor() as cur:
        cur.execute("SELECT source, status, COUNT(*) AS total FROM webhook_logs GROUP BY source, status")
        rows = cur.fetchall()
    out: Dict[str, Any] = {"total": 0, "by_status": {}, "by_source": {}}
    for r in rows:
        total = int(r["total"])
        out["total"] += total
        out["by_status"][r["status"]] = out["by_status"].get(r["status"], 0) + total
        out["by_source"][r["source"]] = out["by_source"].get(r["source"], 0) + total
    return out


# ==========================================================
# Failed webhooks
# ==========================================================
def register_failed_webhook(log_id: int, source: str, payload: str, error_message: str) -> int:
    """
    Uma linha por webhook_log. Se já existe, volta para 'pending' com o erro novo
    e conta mais uma tentativa (a não ser que claim_failed_webhook já tenha contado).
    """
    with db_cursor() as cur:
        cur.execute(qp("SELECT id FROM failed_webhooks WHERE webhook_log_id = ?"), (log_id,))
        row = cur.fetchone()
        if row:
            now = now_str()
            cur.execute(
                qp(
                    "UPDATE failed_webhooks SET error_message = ?, status = ?, updated_at = ?, "
                    "retry_count = retry_count + CASE WHEN status = ? THEN 0 ELSE 1 END, "
                    "last_retry_at = ? WHERE id = ?"
                ),
                (error_message, FAILED_PENDING, now, FAILED_PROCESSING, now, row["id"]),
            )
            return row["id"]
        cur.execute(
            qp(
                "INSERT INTO failed_webhooks (webhook_log_id, source, payload, error_message, status) "
                "VALUES (?,?,?,?,?) RETURNING id"
            ),
            (log_id, source, payload, error_message, FAILED_PENDING),
        )
        return inserted_id(cur)


def get_failed_webhook(failed_id: int) -> Optional[Dict[str, Any]]:
    with db_cursor() as cur:
        cur.execute(qp("SELECT * FROM failed_webhooks WHERE id = ?"), (failed_id,))
        return _clean(cur.fetchone())


def list_failed_webhooks(status: Optional[str] = None, source: Optional[str] = None,
                         limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
    sql = (
        "SELECT id, webhook_log_id, source, error_message, status, retry_count, last_retry_at, "
        "created_at, updated_at FROM failed_webhooks WHERE 1=1"
    )
    params: List[Any] = []
    if status:
        sql += " AND status = ?"
        params.append(status)
    if source:
        sql += " AND source = ?"
        params.append(source)
    sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        return [_clean(r) for r in cur.fetchall()]


def claim_failed_webhook(failed_id: int) -> bool:
    """
    Marca a falha como 'processing' e conta a tentativa numa única UPDATE.
    False se não existe ou se já está em processamento/resolvida.
    """
    now = now_str()
    with db_cursor() as cur:
        cur.execute(
            qp(
                "UPDATE failed_webhooks SET status = ?, updated_at = ?, retry_count = retry_count + 1, "
                "last_retry_at = ? WHERE id = ? AND status NOT IN (?, ?)"
            ),
            (FAILED_PROCESSING, now, now, failed_id, FAILED_PROCESSING, FAILED_RESOLVED),
        )
        return cur.rowcount == 1


def update_failed_webhook_status(failed_id: int, status: str, error_message: Optional[str] = None) -> None:
    sql = "UPDATE failed_webhooks SET status = ?, updated_at = ?"
    params: List[Any] = [status, now_str()]
    if error_message is not None:
        sql += ", error_message = ?"
        params.append(error_message)
    sql += " WHERE id = ?"
    params.append(failed_id)
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))


def resolve_failed_for_log(cur, log_id: int) -> None:
    cur.execute(
        qp("UPDATE failed_webhooks SET status = ?, updated_at = ? WHERE webhook_log_id = ? AND status <> ?"),
        (FAILED_RESOLVED, now_str(), log_id, FAILED_RESOLVED),
    )


def failed_webhook_stats() -> Dict[str, Any]:
    with db_cursor() as cur:
        cur.execute("SELECT status, source, COUNT(*) AS total FROM failed_webhooks GROUP BY status, source")
        rows = cur.fetchall()
    out: Dict[str, Any] = {
        "total": 0,
        "by_status": {FAILED_PENDING: 0, FAILED_PROCESSING: 0, FAILED_RESOLVED: 0, FAILED_FAILED: 0},
        "by_source": {},
    }
    for r in rows:
        total = int(r["total"])
        out["total"] += total
        out["by_status"][r["status"]] = out["by_status"].get(r["status"], 0) + total
        out["by_source"][r["source"]] = out["by_source"].get(r["source"], 0) + total
    return out


# ==========================================================
# Product mappings
# ==========================================================
def _mapping(row) -> Optional[Dict[str, Any]]:
    m = _clean(row)
    if m is None:
        return None
    m["is_lifetime"] = _bool(m["is_lifetime"])
    m["is_active"] = _bool(m["is_active"])
    return m


def list_product_mappings(source: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM product_mappings"
    params: tuple = ()
    if source:
        sql += " WHERE source = ?"
        params = (source,)
    sql += " ORDER BY source, product_name"
    with db_cursor() as cur:
        cur.execute(qp(sql), params)
        return [_mapping(r) for r in cur.fetchall()]


def get_product_mapping(mapping_id: int) -> Optional[Dict[str, Any]]:
    with db_cursor() as cur:
        cur.execute(qp("SELECT * FROM product_mappings WHERE id = ?"), (mapping_id,))
        return _mapping(cur.fetchone())


def create_product_mapping(source: str, product_id: str, offer_id: str, product_name: str,
                           plan_type: str, duration_days: Optional[int], is_lifetime: bool) -> int:
    with db_cursor() as cur:
        cur.execute(
            qp(
                "INSERT INTO product_mappings (source, product_id, offer_id, product_name, plan_type, "
                "duration_days, is_lifetime) VALUES (?,?,?,?,?,?,?) RETURNING id"
            ),
            (source, product_id or "", offer_id or "", product_name, plan_type,
             0 if is_lifetime else duration_days, bool(is_lifetime)),
        )
        return inserted_id(cur)


def update_product_mapping(mapping_id: int, **fields) -> None:
    allowed = ("product_id", "offer_id", "product_name", "plan_type", "duration_days", "is_lifetime", "is_active")
    sets, params = [], []
    for k in allowed:
        if k in fields:
            sets.append(f"{k} = ?")
            params.append(fields[k])
    if not sets:
        return
    sets.append("updated_at = ?")
    params.append(now_str())
    params.append(mapping_id)
    with db_cursor() as cur:
        cur.execute(qp(f"UPDATE product_mappings SET {', '.join(sets)} WHERE id = ?"), tuple(params))


def delete_product_mapping(mapping_id: int) -> bool:
    with db_cursor() as cur:
        cur.execute(qp("DELETE FROM product_mappings WHERE id = ?"), (mapping_id,))
        return cur.rowcount == 1


def find_product_mapping(cur, source: str, product_id: Optional[str],
                         offer_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Oferta exata primeiro; depois mapeamento do produto inteiro (offer_id vazio).
    """
    if not product_id:
        return None
    candidates = [(str(product_id), str(offer_id))] if offer_id else []
    candidates.append((str(product_id), ""))
    for pid, oid in candidates:
        cur.execute(
            qp(
                "SELECT * FROM product_mappings WHERE source = ? AND product_id = ? AND offer_id = ? "
                "AND is_active = ?"
            ),
            (source, pid, oid, True),
        )
        row = cur.fetchone()
        if row:
            return _mapping(row)
    return None


# ==========================================================
# Integration settings
# ==========================================================
def get_setting_value(key: str) -> Optional[str]:
    with db_cursor() as cur:
        cur.execute(qp("SELECT value FROM integration_settings WHERE key = ?"), (key,))
        row = cur.fetchone()
        return row["value"] if row else None


def set_setting_values(values: Dict[str, Optional[str]]) -> None:
    """Grava todas as chaves numa transação: ou entram todas ou nenhuma."""
    now = now_str()
    with db_cursor() as cur:
        for key, value in values.items():
            cur.execute(qp("SELECT key FROM integration_settings WHERE key = ?"), (key,))
            if cur.fetchone():
                cur.execute(
                    qp("UPDATE integration_settings SET value = ?, updated_at = ? WHERE key = ?"),
                    (value, now, key),
                )
            else:
                cur.execute(
                    qp("INSERT INTO integration_settings (key, value, updated_at) VALUES (?,?,?)"),
                    (key, value, now),
                )


def all_setting_values() -> Dict[str, Optional[str]]:
    with db_cursor() as cur:
        cur.execute("SELECT key, value FROM integration_settings")
        return {r["key"]: r["value"] for r in cur.fetchall()}
