import json
import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Banco de boot do app (import) fora do diretório do projeto
_BOOT_DIR = tempfile.mkdtemp(prefix="designauto-boot-")
os.environ["DATABASE_URL"] = f"sqlite:///{_BOOT_DIR}/boot.db"
os.environ.setdefault("ADMIN_TOKEN", "admin-test")

import config  # noqa: E402
from db import init_db  # noqa: E402

ADMIN_TOKEN = "admin-test"
HOTTOK = "hottok-test"
DOPPUS_SECRET = "doppus-secret-test"

_CREDENTIAL_VARS = (
    "HOTMART_WEBHOOK_TOKEN",
    "HOTMART_CLIENT_ID",
    "HOTMART_CLIENT_SECRET",
    "HOTMART_BASIC_TOKEN",
    "HOTMART_SANDBOX",
    "DOPPUS_CLIENT_ID",
    "DOPPUS_CLIENT_SECRET",
    "DOPPUS_SECRET_KEY",
)


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Cada teste roda num SQLite novo, sem credenciais herdadas do ambiente."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path}/test.db")
    for var in _CREDENTIAL_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(config, "ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(config, "WEBHOOK_PROCESS_INLINE", True)
    monkeypatch.setattr(config, "DEFAULT_PLAN_DAYS", 30)
    init_db()
    yield tmp_path


@pytest.fixture
def client():
    from app import app, rate_limiter

    rate_limiter.reset()
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def hotmart_token(monkeypatch):
    monkeypatch.setenv("HOTMART_WEBHOOK_TOKEN", HOTTOK)
    return HOTTOK


@pytest.fixture
def doppus_secret(monkeypatch):
    monkeypatch.setenv("DOPPUS_SECRET_KEY", DOPPUS_SECRET)
    return DOPPUS_SECRET


def hotmart_payload(event="PURCHASE_APPROVED", email="ws.advogaciasm@gmail.com",
                    transaction="HP2363007968", status="APPROVED", **overrides):
    """Payload real da Hotmart (v2.0.0), com campos ajustáveis."""
    payload = {
        "id": "083bb5a0-d1d9-4f9f-9d0c-2f4c2a3b1e77",
        "creation_date": 1747447464000,
        "event": event,
        "version": "2.0.0",
        "hottok": HOTTOK,
        "data": {
            "product": {"id": 5381714, "name": "App DesignAuto"},
            "buyer": {
                "email": email,
                "name": "Teste Fernando",
                "checkout_phone": "+55 (11) 99999-0000",
                "document": "00000000000",
            },
            "purchase": {
                "approved_date": 1747447464000,
                "order_date": 1747447427000,
                "price": {"value": 7, "currency_value": "BRL"},
                "status": status,
                "transaction": transaction,
                "payment": {"type": "PIX"},
                "offer": {"code": "aukjngrt"},
                "date_next_charge": 1779019200000,
            },
            "subscription": {
                "status": "ACTIVE",
                "plan": {"id": 1038897, "name": "Plano Anual"},
                "subscriber": {"code": "IY8BW62L"},
            },
        },
    }
    payload.update(overrides)
    return payload


def doppus_may2025_payload(email="teste.maio2025@exemplo.com", transaction="TX987654321"):
    return {
        "customer": {"name": "Cliente Maio 2025", "email": email, "doc": "12345678900"},
        "status": {"code": "approved", "date": "2025-05-17T16:30:00.000Z"},
        "transaction": {"code": transaction, "total": 297.00, "payment_type": "credit_card"},
        "items": [
            {
                "code": "designauto-product",
                "name": "DesignAuto Premium",
                "offer": "anual-platinum",
                "offer_name": "Plano Anual Platinum",
                "value": 297.00,
            }
        ],
        "recurrence": {
            "code": "REC987654",
            "periodicy": "yearly",
            "expiration_date": "2026-05-17T16:30:00.000Z",
        },
    }


def as_body(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")
