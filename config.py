# config.py
# DesignAuto: configuração via variáveis de ambiente (.env opcional em dev)
import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-designauto")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Hotmart
HOTMART_WEBHOOK_TOKEN = os.environ.get("HOTMART_WEBHOOK_TOKEN", "")
HOTMART_CLIENT_ID = os.environ.get("HOTMART_CLIENT_ID", "")
HOTMART_CLIENT_SECRET = os.environ.get("HOTMART_CLIENT_SECRET", "")
HOTMART_BASIC_TOKEN = os.environ.get("HOTMART_BASIC_TOKEN", "")
HOTMART_SANDBOX = _flag("HOTMART_SANDBOX")

# Doppus
DOPPUS_CLIENT_ID = os.environ.get("DOPPUS_CLIENT_ID", "")
DOPPUS_CLIENT_SECRET = os.environ.get("DOPPUS_CLIENT_SECRET", "")
DOPPUS_SECRET_KEY = os.environ.get("DOPPUS_SECRET_KEY", "")

# Pipeline
# Processa o webhook na própria requisição; com 0 fica 'received' para o CLI
WEBHOOK_PROCESS_INLINE = _flag("WEBHOOK_PROCESS_INLINE", "1")
WEBHOOK_RATE_LIMIT_PER_MINUTE = int(os.environ.get("WEBHOOK_RATE_LIMIT_PER_MINUTE", "120"))
# Quantos proxies reversos à frente do app (0 = ignora X-Forwarded-For)
TRUST_PROXY_HOPS = int(os.environ.get("TRUST_PROXY_HOPS", "0"))
DEFAULT_PLAN_DAYS = int(os.environ.get("DEFAULT_PLAN_DAYS", "30"))

# Chaves aceitas em integration_settings -> fallback em variável de ambiente
SETTING_ENV_FALLBACK = {
    "hotmart_webhook_token": "HOTMART_WEBHOOK_TOKEN",
    "hotmart_client_id": "HOTMART_CLIENT_ID",
    "hotmart_client_secret": "HOTMART_CLIENT_SECRET",
    "hotmart_basic_token": "HOTMART_BASIC_TOKEN",
    "hotmart_sandbox": "HOTMART_SANDBOX",
    "doppus_client_id": "DOPPUS_CLIENT_ID",
    "doppus_client_secret": "DOPPUS_CLIENT_SECRET",
    "doppus_secret_key": "DOPPUS_SECRET_KEY",
}
SECRET_SETTINGS = {
    "hotmart_webhook_token",
    "hotmart_client_secret",
    "hotmart_basic_token",
    "doppus_client_secret",
    "doppus_secret_key",
}


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
