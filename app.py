from __future__ import annotations

import json
import logging
from functools import wraps
from typing import Any, Dict, Optional

import click
from flask import Flask, jsonify, make_response, request
from werkzeug.middleware.proxy_fix import ProxyFix

import config
from db import db_cursor, init_db, integrity_errors
from db.models import (
    LOG_ERROR,
    create_product_mapping,
    create_webhook_log,
    delete_product_mapping,
    failed_webhook_stats,
    finish_webhook_log,
    get_failed_webhook,
    get_product_mapping,
    get_webhook_log,
    list_failed_webhooks,
    list_product_mappings,
    list_subscriptions,
    list_webhook_logs,
    update_product_mapping,
    webhook_log_stats,
)
from errors import UnknownSourceError
from payments import SOURCES, get_payment_provider
from services.doppus_client import DoppusClient
from services.hotmart_client import HotmartClient
from services.payload import find_email, find_transaction_id, parse_raw_payload
from services.reconcile import (
    RetryConflict,
    expire_overdue_subscriptions,
    process_pending,
    process_webhook_log,
    retry_failed_webhook,
)
from services.settings import list_settings, set_settings
from utils.rate_limit import SimpleRateLimiter
from utils.security import hash_ip, safe_compare

# ==========================================================
# Config
# ==========================================================
config.configure_logging()
logger = logging.getLogger("designauto")

app = Flask(__name__)
app.config["SECRET_KEY"] = config.SECRET_KEY

# Só confia em X-Forwarded-For quando há proxy reverso declarado
if config.TRUST_PROXY_HOPS:
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=config.TRUST_PROXY_HOPS, x_proto=config.TRUST_PROXY_HOPS)

# Inicializa DB / cria tabelas
try:
    init_db()
except Exception as e:
    logger.warning("[BOOT] init_db falhou: %s", e)

# Rate limiter dos webhooks (por IP)
rate_limiter = SimpleRateLimiter(window_s=60, max_requests=config.WEBHOOK_RATE_LIMIT_PER_MINUTE)


# ==========================================================
# Helpers
# ==========================================================
def _client_ip() -> str:
    return request.remote_addr or ""


def _no_store(body: Dict[str, Any], status: int = 200):
    resp = make_response(jsonify(body), status)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _int_arg(name: str, default: int, maximum: int = 500) -> int:
    try:
        v = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(0, min(v, maximum))


def _loads(v: Optional[str]) -> Any:
    if not v:
        return None
    try:
        return json.loads(v)
    except ValueError:
        return v


def rate_limit(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not rate_limiter.allow(_client_ip() or "unknown"):
            return jsonify({"ok": False, "error": "Muitas requisições. Tente novamente em instantes."}), 429
        return fn(*args, **kwargs)
    return wrapper


def require_admin(fn):
    """Token de admin no cabeçalho X-Admin-Token ou em ?token=."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = request.headers.get("X-Admin-Token") or request.args.get("token") or ""
        if not config.ADMIN_TOKEN or not safe_compare(token, config.ADMIN_TOKEN):
            return jsonify({"ok": False, "error": "Forbidden"}), 403
        return fn(*args, **kwargs)
    return wrapper


# ==========================================================
# Health / schema
# ==========================================================
@app.get("/health")
def health():
    try:
        with db_cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
    except Exception as e:
        logger.error("[HEALTH] Banco indisponível: %s", e)
        return jsonify({"ok": False, "db": "error", "error": str(e)}), 503
    return jsonify({"ok": True, "db": "ok"})


@app.get("/__admin/ensure_schema")
@require_admin
def admin_ensure_schema():
    try:
        init_db()
        with db_cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        return jsonify({"ok": True})
    except Exception as e:
        logger.exception("[BOOT] ensure_schema falhou")
        return jsonify({"ok": False, "error": str(e)}), 500


# ==========================================================
# Webhooks (Hotmart / Doppus)
# ==========================================================
# Status de resposta quando o token/assinatura não confere
_AUTH_FAIL_STATUS = {"hotmart": 401, "doppus": 400}


def _receive_webhook(source: str):
    """
    1) grava o log ('received') antes de qualquer validação;
    2) valida token/assinatura (falha -> log 'error' + 401/400);
    3) processa na hora se WEBHOOK_PROCESS_INLINE, senão fica para o CLI.
    Depois de autenticado responde 200 SEMPRE, para o provedor não reenviar em loop.
    """
    provider = get_payment_provider(source)
    raw = request.get_data(cache=True, as_text=False)
    payload = provider.normalize(parse_raw_payload(raw))
    event = provider.event_type(payload, request.headers)

    log_id = create_webhook_log(
        source=source,
        event_type=event,
        email=find_email(payload),
        transaction_id=find_transaction_id(payload),
        source_ip=hash_ip(_client_ip()),
        raw_payload=raw.decode("utf-8", errors="replace"),
    )
    logger.info("[WEBHOOK] %s %s recebido (log %s)", source, event, log_id)

    if not provider.verify(request.headers, raw, payload):
        reason = "invalid_token" if source == "hotmart" else "invalid_signature"
        finish_webhook_log(log_id, LOG_ERROR, error_message=reason)
        logger.warning("[WEBHOOK] %s log %s rejeitado: %s", source, log_id, reason)
        return _no_store({"ok": False, "error": reason, "webhook_id": log_id}, _AUTH_FAIL_STATUS[source])

    if not config.WEBHOOK_PROCESS_INLINE:
        return _no_store({"ok": True, "webhook_id": log_id, "status": "received", "queued": True})

    try:
        out = process_webhook_log(log_id)
    except Exception as e:
        # falha de infraestrutura (ex.: banco); o log fica para o CLI/admin
        logger.exception("[WEBHOOK] Falha inesperada no log %s", log_id)
        return _no_store({"ok": True, "webhook_id": log_id, "status": "received", "error": str(e)})

    body = {"ok": True, "webhook_id": log_id, "status": out.get("status")}
    if out.get("error"):
        body["error"] = out["error"]
    if out.get("result"):
        body["result"] = out["result"]
    return _no_store(body)


@app.post("/webhook/hotmart")
@app.post("/api/webhooks/hotmart")
@rate_limit
def webhook_hotmart():
    return _receive_webhook("hotmart")


@app.post("/webhook/doppus")
@app.post("/api/webhooks/doppus")
@rate_limit
def webhook_doppus():
    return _receive_webhook("doppus")


# ==========================================================
# Admin: logs de webhook
# ==========================================================
@app.get("/api/webhooks/logs")
@require_admin
def admin_webhook_logs():
    logs = list_webhook_logs(
        status=request.args.get("status") or None,
        source=request.args.get("source") or None,
        email=request.args.get("email") or None,
        transaction_id=request.args.get("transaction_id") or None,
        limit=_int_arg("limit", 50),
        offset=_int_arg("offset", 0, maximum=1_000_000),
    )
    return jsonify({"ok": True, "logs": logs, "count": len(logs)})


@app.get("/api/webhooks/logs/<int:log_id>")
@require_admin
def admin_webhook_log_detail(log_id: int):
    log = get_webhook_log(log_id)
    if not log:
        return jsonify({"ok": False, "error": "Webhook não encontrado"}), 404
    log["raw_payload"] = parse_raw_payload(log["raw_payload"])
    log["processing_result"] = _loads(log["processing_result"])
    return jsonify({"ok": True, "log": log})


@app.post("/api/webhooks/logs/<int:log_id>/reprocess")
@require_admin
def admin_webhook_reprocess(log_id: int):
    if not get_webhook_log(log_id):
        return jsonify({"ok": False, "error": "Webhook não encontrado"}), 404
    out = process_webhook_log(log_id, force=True)
    return jsonify(out)


@app.get("/api/webhooks/stats")
@require_admin
def admin_webhook_stats():
    return jsonify({"ok": True, "stats": webhook_log_stats()})


@app.post("/api/webhooks/process-pending")
@require_admin
def admin_process_pending():
    data = request.get_json(silent=True) or {}
    try:
        limit = int(data.get("limit") or request.args.get("limit") or 100)
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "limit inválido"}), 400
    limit = max(1, min(limit, 500))
    source = data.get("source") or request.args.get("source") or None
    if source and source not in SOURCES:
        return jsonify({"ok": False, "error": f"source inválido: {source}"}), 400
    return jsonify({"ok": True, "counts": process_pending(limit=limit, source=source)})


# ==========================================================
# Admin: webhooks com falha
# ==========================================================
@app.get("/api/webhooks/failed")
@require_admin
def admin_failed_list():
    items = list_failed_webhooks(
        status=request.args.get("status") or None,
        source=request.args.get("source") or None,
        limit=_int_arg("limit", 100),
        offset=_int_arg("offset", 0, maximum=1_000_000),
    )
    return jsonify({"ok": True, "failed": items, "count": len(items)})


@app.get("/api/webhooks/failed/stats")
@require_admin
def admin_failed_stats():
    return jsonify({"ok": True, "stats": failed_webhook_stats()})


@app.get("/api/webhooks/failed/<int:failed_id>")
@require_admin
def admin_failed_detail(failed_id: int):
    item = get_failed_webhook(failed_id)
    if not item:
        return jsonify({"ok": False, "error": "Webhook com falha não encontrado"}), 404
    item["payload"] = parse_raw_payload(item["payload"])
    return jsonify({"ok": True, "failed": item})


@app.post("/api/webhooks/failed/<int:failed_id>/retry")
@require_admin
def admin_failed_retry(failed_id: int):
    try:
        out = retry_failed_webhook(failed_id)
    except RetryConflict as e:
        return jsonify({"ok": False, "error": str(e)}), 409
    if out is None:
        return jsonify({"ok": False, "error": "Webhook com falha não encontrado"}), 404
    return jsonify(out), (200 if out.get("ok") else 500)


# ==========================================================
# Admin: mapeamento produto -> plano
# ==========================================================
def _mapping_fields(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key in ("product_id", "offer_id", "product_name", "plan_type"):
        if key in data:
            fields[key] = str(data[key] or "").strip()
    if "is_lifetime" in data:
        fields["is_lifetime"] = bool(data["is_lifetime"])
    if "is_active" in data:
        fields["is_active"] = bool(data["is_active"])
    if "duration_days" in data:
        if data["duration_days"] in (None, ""):
            fields["duration_days"] = None
        else:
            days = int(data["duration_days"])
            if days <= 0:
                raise ValueError("duration_days deve ser positivo")
            fields["duration_days"] = days
    if not partial:
        for key in ("product_id", "product_name", "plan_type"):
            if not fields.get(key):
                raise ValueError(f"{key} é obrigatório")
        if not fields.get("is_lifetime") and not fields.get("duration_days"):
            raise ValueError("informe duration_days ou is_lifetime")
    return fields


@app.get("/api/product-mappings")
@require_admin
def admin_mappings_list():
    return jsonify({"ok": True, "mappings": list_product_mappings(request.args.get("source") or None)})


@app.post("/api/product-mappings")
@require_admin
def admin_mappings_create():
    data = request.get_json(silent=True) or {}
    source = (data.get("source") or "").strip().lower()
    if source not in SOURCES:
        return jsonify({"ok": False, "error": f"source inválido: {source or '?'}"}), 400
    try:
        fields = _mapping_fields(data, partial=False)
    except (TypeError, ValueError) as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    try:
        mapping_id = create_product_mapping(
            source=source,
            product_id=fields["product_id"],
            offer_id=fields.get("offer_id", ""),
            product_name=fields["product_name"],
            plan_type=fields["plan_type"],
            duration_days=fields.get("duration_days"),
            is_lifetime=fields.get("is_lifetime", False),
        )
    except integrity_errors():
        return jsonify({"ok": False, "error": "Já existe mapeamento para este produto/oferta"}), 409
    return jsonify({"ok": True, "mapping": get_product_mapping(mapping_id)}), 201


@app.get("/api/product-mappings/<int:mapping_id>")
@require_admin
def admin_mappings_get(mapping_id: int):
    mapping = get_product_mapping(mapping_id)
    if not mapping:
        return jsonify({"ok": False, "error": "Mapeamento não encontrado"}), 404
    return jsonify({"ok": True, "mapping": mapping})


@app.put("/api/product-mappings/<int:mapping_id>")
@require_admin
def admin_mappings_update(mapping_id: int):
    if not get_product_mapping(mapping_id):
        return jsonify({"ok": False, "error": "Mapeamento não encontrado"}), 404
    data = request.get_json(silent=True) or {}
    try:
        fields = _mapping_fields(data, partial=True)
    except (TypeError, ValueError) as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    try:
        update_product_mapping(mapping_id, **fields)
    except integrity_errors():
        return jsonify({"ok": False, "error": "Já existe mapeamento para este produto/oferta"}), 409
    return jsonify({"ok": True, "mapping": get_product_mapping(mapping_id)})


@app.delete("/api/product-mappings/<int:mapping_id>")
@require_admin
def admin_mappings_delete(mapping_id: int):
    if not delete_product_mapping(mapping_id):
        return jsonify({"ok": False, "error": "Mapeamento não encontrado"}), 404
    return jsonify({"ok": True})


# ==========================================================
# Admin: assinaturas
# ==========================================================
@app.get("/api/subscriptions")
@require_admin
def admin_subscriptions():
    subs = list_subscriptions(
        status=request.args.get("status") or None,
        origin=request.args.get("origin") or None,
        email=request.args.get("email") or None,
        limit=_int_arg("limit", 100),
        offset=_int_arg("offset", 0, maximum=1_000_000),
    )
    return jsonify({"ok": True, "subscriptions": subs, "count": len(subs)})


@app.post("/api/subscriptions/expire")
@require_admin
def admin_subscriptions_expire():
    return jsonify({"ok": True, **expire_overdue_subscriptions()})


# ==========================================================
# Admin: integrações
# ==========================================================
@app.get("/api/integration-settings")
@require_admin
def admin_settings_get():
    return jsonify({"ok": True, "settings": list_settings()})


@app.put("/api/integration-settings")
@require_admin
def admin_settings_put():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"ok": False, "error": "Envie um objeto JSON {chave: valor}"}), 400
    try:
        set_settings({k: None if v is None else str(v) for k, v in data.items()})
    except KeyError as e:
        return jsonify({"ok": False, "error": f"Configuração desconhecida: {e.args[0]}"}), 400
    logger.info("[ADMIN] Configurações atualizadas: %s", sorted(data))
    return jsonify({"ok": True, "settings": list_settings()})


def _api_client(source: str):
    if source == "hotmart":
        return HotmartClient()
    if source == "doppus":
        return DoppusClient()
    raise UnknownSourceError(source)


@app.get("/api/integrations/<source>/test")
@require_admin
def admin_integration_test(source: str):
    try:
        client = _api_client(source)
    except UnknownSourceError:
        return jsonify({"ok": False, "error": f"Integração desconhecida: {source}"}), 404
    out = client.test_connection()
    return jsonify(out), (200 if out.get("ok") else 502)


@app.get("/api/integrations/<source>/subscriptions")
@require_admin
def admin_integration_subscriptions(source: str):
    email = (request.args.get("email") or "").strip()
    if not email:
        return jsonify({"ok": False, "error": "email obrigatório"}), 400
    try:
        client = _api_client(source)
    except UnknownSourceError:
        return jsonify({"ok": False, "error": f"Integração desconhecida: {source}"}), 404
    if source == "hotmart":
        out = client.get_subscriptions(subscriber_email=email)
    else:
        out = client.check_subscription_status(email)
    return jsonify(out), (200 if out.get("ok") else 502)


# ==========================================================
# CLI (flask --app app <comando>)
# ==========================================================
@app.cli.command("init-db")
def cli_init_db():
    """Cria as tabelas (idempotente)."""
    init_db()
    click.echo("Schema OK.")


@app.cli.command("process-webhooks")
@click.option("--limit", default=100, show_default=True, type=click.IntRange(1, 1000))
@click.option("--source", default=None, type=click.Choice(SOURCES))
def cli_process_webhooks(limit: int, source: Optional[str]):
    """Processa webhooks em 'received', mais antigos primeiro."""
    counts = process_pending(limit=limit, source=source)
    click.echo(json.dumps(counts))


@app.cli.command("reprocess-webhook")
@click.argument("log_id", type=int)
def cli_reprocess_webhook(log_id: int):
    """Reprocessa um webhook_log (mesmo se já processado)."""
    out = process_webhook_log(log_id, force=True)
    click.echo(json.dumps(out, default=str))
    if not out.get("ok"):
        raise SystemExit(1)


@app.cli.command("expire-subscriptions")
def cli_expire_subscriptions():
    """Rebaixa para free quem passou da data de expiração."""
    out = expire_overdue_subscriptions()
    click.echo(f"{out['count']} usuário(s) expirado(s).")


# ==========================================================
# Boot local
# ==========================================================
if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
