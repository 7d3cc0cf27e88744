import config
from conftest import DOPPUS_SECRET, HOTTOK, as_body, doppus_may2025_payload, hotmart_payload
from db.models import get_user_by_email, get_webhook_log, list_failed_webhooks, list_webhook_logs
from utils.security import hash_ip, hmac_sha256_hex


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json == {"ok": True, "db": "ok"}


def test_hotmart_webhook_processes_inline(client, hotmart_token):
    r = client.post("/webhook/hotmart", data=as_body(hotmart_payload()), content_type="application/json")
    assert r.status_code == 200
    assert r.headers["Cache-Control"] == "no-store"
    assert r.json["ok"] is True
    assert r.json["status"] == "processed"

    log = get_webhook_log(r.json["webhook_id"])
    assert log["source"] == "hotmart"
    assert log["event_type"] == "PURCHASE_APPROVED"
    assert log["email"] == "ws.advogaciasm@gmail.com"
    assert log["transaction_id"] == "HP2363007968"
    assert log["source_ip"] == hash_ip("127.0.0.1")
    assert get_user_by_email("ws.advogaciasm@gmail.com").access_level == "premium"


def test_hotmart_alias_route_and_header_token(client, hotmart_token):
    payload = hotmart_payload()
    payload.pop("hottok")
    r = client.post(
        "/api/webhooks/hotmart",
        data=as_body(payload),
        content_type="application/json",
        headers={"X-Hotmart-Hottok": HOTTOK},
    )
    assert r.status_code == 200
    assert r.json["status"] == "processed"


def test_hotmart_invalid_token_is_logged_as_error(client, hotmart_token):
    payload = hotmart_payload(hottok="errado")
    r = client.post("/webhook/hotmart", data=as_body(payload), content_type="application/json")
    assert r.status_code == 401
    assert r.json["error"] == "invalid_token"
    log = get_webhook_log(r.json["webhook_id"])
    assert log["status"] == "error"
    assert log["error_message"] == "invalid_token"
    assert get_user_by_email("ws.advogaciasm@gmail.com") is None
    assert list_failed_webhooks() == []


def test_redelivered_webhook_answers_200_without_duplicating(client, hotmart_token):
    body = as_body(hotmart_payload())
    first = client.post("/webhook/hotmart", data=body, content_type="application/json")
    second = client.post("/webhook/hotmart", data=body, content_type="application/json")
    assert first.json["status"] == "processed"
    assert second.status_code == 200
    assert second.json["status"] == "ignored"
    assert second.json["result"]["reason"] == "duplicate_transaction"
    assert len(list_webhook_logs()) == 2


def test_processing_failure_still_answers_200(client, hotmart_token):
    payload = hotmart_payload()
    payload["data"]["buyer"].pop("email")
    r = client.post("/webhook/hotmart", data=as_body(payload), content_type="application/json")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["status"] == "error"
    assert len(list_failed_webhooks()) == 1


def test_deferred_processing_leaves_log_received(client, hotmart_token, monkeypatch):
    monkeypatch.setattr(config, "WEBHOOK_PROCESS_INLINE", False)
    r = client.post("/webhook/hotmart", data=as_body(hotmart_payload()), content_type="application/json")
    assert r.status_code == 200
    assert r.json["queued"] is True
    assert get_webhook_log(r.json["webhook_id"])["status"] == "received"
    assert get_user_by_email("ws.advogaciasm@gmail.com") is None


def test_malformed_body_is_logged(client):
    r = client.post("/webhook/hotmart", data=b"isto nao e json", content_type="application/json")
    assert r.status_code == 200
    log = get_webhook_log(r.json["webhook_id"])
    assert log["raw_payload"] == "isto nao e json"
    assert log["status"] == "ignored"


def test_doppus_signed_webhook(client, doppus_secret):
    body = as_body(doppus_may2025_payload())
    r = client.post(
        "/webhook/doppus",
        data=body,
        content_type="application/json",
        headers={"X-Doppus-Signature": hmac_sha256_hex(DOPPUS_SECRET, body)},
    )
    assert r.status_code == 200
    assert r.json["status"] == "processed"
    log = get_webhook_log(r.json["webhook_id"])
    assert log["event_type"] == "payment.approved"
    assert log["transaction_id"] == "TX987654321"
    assert get_user_by_email("teste.maio2025@exemplo.com").subscription_origin == "doppus"


def test_doppus_bad_signature(client, doppus_secret):
    body = as_body(doppus_may2025_payload())
    r = client.post(
        "/api/webhooks/doppus",
        data=body,
        content_type="application/json",
        headers={"X-Doppus-Signature": "deadbeef"},
    )
    assert r.status_code == 400
    assert r.json["error"] == "invalid_signature"
    assert get_webhook_log(r.json["webhook_id"])["status"] == "error"


def test_webhook_rate_limit(client, monkeypatch):
    from app import rate_limiter

    monkeypatch.setattr(rate_limiter, "max_requests", 2)
    statuses = [
        client.post("/webhook/hotmart", data=b"{}", content_type="application/json").status_code
        for _ in range(3)
    ]
    assert statuses == [200, 200, 429]


def test_rate_limit_ignores_spoofed_forwarded_for(client, monkeypatch):
    from app import rate_limiter

    monkeypatch.setattr(rate_limiter, "max_requests", 2)
    statuses = [
        client.post("/webhook/hotmart", data=b"{}", content_type="application/json",
                    headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
        for i in range(3)
    ]
    assert statuses == [200, 200, 429]
    assert list(rate_limiter.events) == ["127.0.0.1"]
