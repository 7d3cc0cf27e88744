# services/reconcile.py
# DesignAuto: conciliação webhook -> usuário/assinatura.
#
# Único caminho de processamento: usado pelas rotas de webhook, pelo
# reprocessamento do admin e pelo CLI de pendentes.
#
# Garantias:
#   - entrega repetida (mesmo log ou mesma transação) não duplica assinatura;
#   - todas as escritas de uma entrega acontecem numa transação só;
#   - qualquer falha deixa o log em 'error' + linha em failed_webhooks.
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import config
from db import db_cursor, integrity_errors
from db.models import (
    FAILED_FAILED,
    FAILED_RESOLVED,
    LOG_ERROR,
    LOG_IGNORED,
    LOG_PROCESSED,
    apply_premium_access,
    claim_failed_webhook,
    claim_webhook_log,
    create_subscription,
    create_user,
    finish_webhook_log,
    find_product_mapping,
    get_failed_webhook,
    get_subscription_by_transaction,
    get_user_by_email,
    get_webhook_log,
    latest_subscription_for_user,
    list_expired_premium_users,
    list_pending_webhook_logs,
    now_str,
    reactivate_subscription,
    register_failed_webhook,
    resolve_failed_for_log,
    revoke_premium_access,
    update_failed_webhook_status,
    update_subscriptions_status,
)
from errors import PayloadError
from payments import get_payment_provider
from payments.base import ACTIVATE, DELAY, EXPIRE, IGNORE, REACTIVATE, REVOKE, Purchase
from services.payload import DEFAULT_PLAN_NAME, LIFETIME, duration_from_plan_name, parse_raw_payload
from utils.security import random_password_hash, username_from_email

logger = logging.getLogger(__name__)


class _Outcome(Exception):
    """Encerra o processamento de um log com status != processed (rollback incluso)."""

    def __init__(self, status: str, result: Dict[str, Any]):
        super().__init__(result.get("reason", status))
        self.status = status
        self.result = result


# ==========================================================
# Plano / vigência
# ==========================================================
def resolve_plan(cur, source: str, purchase: Purchase, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Ordem: mapeamento produto/oferta (admin) -> data de próxima cobrança do
    provedor -> palavra-chave no nome do plano -> DEFAULT_PLAN_DAYS.
    """
    now = now or datetime.now(timezone.utc)
    start = purchase.start_date or now_str(now)
    plan_type = purchase.plan_name

    mapping = find_product_mapping(cur, source, purchase.product_id, purchase.offer_id)
    if mapping:
        if mapping["is_lifetime"]:
            return {"plan_type": mapping["plan_type"], "start": start, "end": None,
                    "lifetime": True, "rule": "mapping"}
        days = int(mapping["duration_days"] or config.DEFAULT_PLAN_DAYS)
        return {"plan_type": mapping["plan_type"], "start": start,
                "end": now_str(now + timedelta(days=days)), "lifetime": False, "rule": "mapping"}

    by_name = duration_from_plan_name(plan_type)
    if by_name == LIFETIME:
        return {"plan_type": plan_type, "start": start, "end": None, "lifetime": True, "rule": "plan_name"}

    if purchase.end_date:
        return {"plan_type": plan_type, "start": start, "end": purchase.end_date,
                "lifetime": False, "rule": "provider"}

    days = by_name if isinstance(by_name, int) else config.DEFAULT_PLAN_DAYS
    return {"plan_type": plan_type, "start": start, "end": now_str(now + timedelta(days=days)),
            "lifetime": False, "rule": "plan_name" if by_name else "default"}


# ==========================================================
# Ações
# ==========================================================
def _activate(cur, provider, event: str, purchase: Purchase, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not purchase.email:
        raise PayloadError("Email do comprador não encontrado no payload")
    if not purchase.transaction_id:
        raise PayloadError("ID da transação não encontrado no payload")
    if not provider.is_approved_status(purchase.purchase_status):
        raise _Outcome(LOG_IGNORED, {"reason": "purchase_not_approved",
                                     "purchase_status": purchase.purchase_status})

    existing = get_subscription_by_transaction(cur, purchase.transaction_id)
    if existing:
        raise _Outcome(LOG_IGNORED, {"reason": "duplicate_transaction",
                                     "transaction_id": purchase.transaction_id,
                                     "subscription_id": existing["id"],
                                     "user_id": existing["user_id"]})

    plan = resolve_plan(cur, provider.source, purchase)

    user = get_user_by_email(purchase.email, cur=cur)
    created = user is None
    if created:
        user_id = create_user(
            cur,
            username=username_from_email(purchase.email),
            email=purchase.email,
            name=purchase.name,
            phone=purchase.phone,
            password_hash=random_password_hash(),
        )
        logger.info("[RECONCILE] Usuário criado id=%s para %s", user_id, purchase.email)
    else:
        user_id = user.id

    apply_premium_access(
        cur, user_id,
        plan_type=plan["plan_type"],
        origin=provider.source,
        started_at=plan["start"],
        expires_at=plan["end"],
        lifetime=plan["lifetime"] or bool(user and user.lifetime_access),
        subscriber_code=purchase.subscriber_code,
    )
    subscription_id = create_subscription(
        cur,
        user_id=user_id,
        plan_type=plan["plan_type"],
        origin=provider.source,
        transaction_id=purchase.transaction_id,
        subscription_code=purchase.subscriber_code,
        last_event=event,
        payment_method=purchase.payment_method,
        price=purchase.price,
        currency=purchase.currency,
        start_date=plan["start"],
        end_date=plan["end"],
        webhook_data=json.dumps(payload, default=str),
    )
    return {
        "action": ACTIVATE,
        "user_id": user_id,
        "user_created": created,
        "subscription_id": subscription_id,
        "transaction_id": purchase.transaction_id,
        "plan_type": plan["plan_type"],
        "valid_until": plan["end"],
        "lifetime": plan["lifetime"],
        "plan_rule": plan["rule"],
    }


def _user_or_ignore(cur, purchase: Purchase):
    if not purchase.email:
        raise PayloadError("Email do comprador não encontrado no payload")
    user = get_user_by_email(purchase.email, cur=cur)
    if user is None:
        raise _Outcome(LOG_IGNORED, {"reason": "unknown_user", "email": purchase.email})
    return user


def _revoke(cur, action: str, status: str, event: str, purchase: Purchase) -> Dict[str, Any]:
    user = _user_or_ignore(cur, purchase)
    tx = purchase.transaction_id
    if tx and get_subscription_by_transaction(cur, tx) is None:
        # cancelamento de assinatura costuma vir sem a transação original
        tx = None
    changed = update_subscriptions_status(cur, user.id, status, event, transaction_id=tx)
    revoke_premium_access(cur, user.id)
    return {"action": action, "user_id": user.id, "subscriptions_updated": changed,
            "status": status, "lifetime_kept": user.lifetime_access}


def _reactivate(cur, provider, event: str, purchase: Purchase) -> Dict[str, Any]:
    user = _user_or_ignore(cur, purchase)
    sub = None
    if purchase.transaction_id:
        sub = get_subscription_by_transaction(cur, purchase.transaction_id)
    if sub is None:
        sub = latest_subscription_for_user(cur, user.id)
    plan = resolve_plan(cur, provider.source, purchase)
    if sub is not None and purchase.plan_name == DEFAULT_PLAN_NAME and sub.get("plan_type"):
        plan["plan_type"] = sub["plan_type"]
    apply_premium_access(
        cur, user.id,
        plan_type=plan["plan_type"],
        origin=provider.source,
        started_at=now_str(),
        expires_at=plan["end"],
        lifetime=plan["lifetime"] or user.lifetime_access,
        subscriber_code=purchase.subscriber_code,
    )
    if sub is not None:
        reactivate_subscription(cur, sub["id"], event, plan["end"])
    return {"action": REACTIVATE, "user_id": user.id,
            "subscription_id": sub["id"] if sub else None, "valid_until": plan["end"]}


def _delay(cur, event: str, status: str, purchase: Purchase) -> Dict[str, Any]:
    user = _user_or_ignore(cur, purchase)
    tx = purchase.transaction_id
    if tx and get_subscription_by_transaction(cur, tx) is None:
        tx = None
    changed = update_subscriptions_status(cur, user.id, status, event, transaction_id=tx)
    return {"action": DELAY, "user_id": user.id, "subscriptions_updated": changed}


def _apply(cur, provider, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    action, status = provider.classify(event)
    if action == IGNORE:
        raise _Outcome(LOG_IGNORED, {"reason": "event_not_handled", "event": event})
    purchase = provider.extract_purchase(payload)
    if action == ACTIVATE:
        return _activate(cur, provider, event, purchase, payload)
    if action in (REVOKE, EXPIRE):
        return _revoke(cur, action, status, event, purchase)
    if action == REACTIVATE:
        return _reactivate(cur, provider, event, purchase)
    if action == DELAY:
        return _delay(cur, event, status, purchase)
    raise _Outcome(LOG_IGNORED, {"reason": "event_not_handled", "event": event})


def _run(log_id: int, provider, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    with db_cursor() as cur:
        result = _apply(cur, provider, event, payload)
        finish_webhook_log(log_id, LOG_PROCESSED, result=result, user_id=result.get("user_id"), cur=cur)
        resolve_failed_for_log(cur, log_id)
    return result


def _raise_if_duplicate(provider, payload: Dict[str, Any], error: Exception) -> None:
    tx = provider.extract_purchase(payload).transaction_id
    if not tx:
        return
    with db_cursor() as cur:
        existing = get_subscription_by_transaction(cur, tx)
    if existing:
        raise _Outcome(LOG_IGNORED, {"reason": "duplicate_transaction",
                                     "transaction_id": tx,
                                     "subscription_id": existing["id"],
                                     "user_id": existing["user_id"],
                                     "detail": str(error)})


# ==========================================================
# Entrada pública
# ==========================================================
def process_webhook_log(log_id: int, force: bool = False) -> Dict[str, Any]:
    """
    Processa um webhook_log. Idempotente:
    - processed/ignored -> {"skipped": True} (salvo force=True);
    - mesma transação já registrada -> 'ignored' (duplicate_transaction).
    """
    log = get_webhook_log(log_id)
    if log is None:
        return {"ok": False, "error": "webhook_not_found", "webhook_id": log_id}

    if not claim_webhook_log(log_id, force=force):
        current = get_webhook_log(log_id) or log
        logger.info("[RECONCILE] Webhook %s já em '%s'; nada a fazer.", log_id, current["status"])
        return {"ok": True, "skipped": True, "webhook_id": log_id, "status": current["status"]}

    payload = parse_raw_payload(log["raw_payload"])
    try:
        provider = get_payment_provider(log["source"])
        payload = provider.normalize(payload)
        event = log["event_type"]
        if not event or event == "UNKNOWN":
            event = provider.event_type(payload)
        try:
            result = _run(log_id, provider, event, payload)
        except integrity_errors() as e:
            # UNIQUE violado por entrega concorrente: só é duplicata se a transação já foi gravada
            _raise_if_duplicate(provider, payload, e)
            logger.warning("[RECONCILE] Webhook %s: conflito de unicidade (%s); tentando de novo.", log_id, e)
            result = _run(log_id, provider, event, payload)
    except _Outcome as out:
        # rollback já feito; registra o motivo em transação própria
        with db_cursor() as cur:
            finish_webhook_log(log_id, out.status, result=out.result,
                               user_id=out.result.get("user_id"), cur=cur)
            resolve_failed_for_log(cur, log_id)
        logger.info("[RECONCILE] Webhook %s -> %s (%s)", log_id, out.status, out.result.get("reason"))
        return {"ok": True, "webhook_id": log_id, "status": out.status, "result": out.result}
    except Exception as e:
        message = str(e) or e.__class__.__name__
        logger.exception("[RECONCILE] Erro ao processar webhook %s: %s", log_id, message)
        finish_webhook_log(log_id, LOG_ERROR, error_message=message)
        register_failed_webhook(log_id, log["source"], log["raw_payload"], message)
        return {"ok": False, "webhook_id": log_id, "status": LOG_ERROR, "error": message}

    logger.info("[RECONCILE] Webhook %s processado: %s", log_id, result)
    return {"ok": True, "webhook_id": log_id, "status": LOG_PROCESSED, "result": result}


def process_pending(limit: int = 100, source: Optional[str] = None) -> Dict[str, Any]:
    """Processa logs 'received', mais antigos primeiro."""
    counts = {"found": 0, LOG_PROCESSED: 0, LOG_IGNORED: 0, LOG_ERROR: 0, "skipped": 0}
    ids = list_pending_webhook_logs(limit=limit, source=source)
    counts["found"] = len(ids)
    for log_id in ids:
        out = process_webhook_log(log_id)
        if out.get("skipped"):
            counts["skipped"] += 1
        else:
            counts[out.get("status", LOG_ERROR)] = counts.get(out.get("status", LOG_ERROR), 0) + 1
    logger.info("[RECONCILE] Pendentes: %s", counts)
    return counts


class RetryConflict(Exception):
    pass


def retry_failed_webhook(failed_id: int) -> Optional[Dict[str, Any]]:
    """
    Reprocessa um failed_webhook. None se não existe; RetryConflict se já
    está em andamento ou resolvido.
    """
    failed = get_failed_webhook(failed_id)
    if failed is None:
        return None
    if not claim_failed_webhook(failed_id):
        current = get_failed_webhook(failed_id) or failed
        if current["status"] == FAILED_RESOLVED:
            raise RetryConflict("Este webhook já foi processado com sucesso")
        raise RetryConflict("Este webhook já está sendo reprocessado")

    out = process_webhook_log(failed["webhook_log_id"], force=True)
    if out.get("ok"):
        update_failed_webhook_status(failed_id, FAILED_RESOLVED)
    else:
        update_failed_webhook_status(failed_id, FAILED_FAILED,
                                     error_message=f"Erro no reprocessamento: {out.get('error')}")
    return out


def expire_overdue_subscriptions(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Rebaixa para free quem passou da data de expiração (exceto vitalício)
    e marca as assinaturas ativas como 'expired'.
    """
    now_s = now_str(now)
    with db_cursor() as cur:
        user_ids = list_expired_premium_users(cur, now_s)
        for user_id in user_ids:
            update_subscriptions_status(cur, user_id, "expired", "EXPIRATION_SWEEP")
            revoke_premium_access(cur, user_id)
    if user_ids:
        logger.info("[RECONCILE] %d assinatura(s) expirada(s): %s", len(user_ids), user_ids)
    return {"expired_users": user_ids, "count": len(user_ids), "checked_at": now_s}
