# services/settings.py
import os
from typing import Dict, Optional

from config import SECRET_SETTINGS, SETTING_ENV_FALLBACK
from db.models import all_setting_values, get_setting_value, set_setting_values
from utils.security import preview


def get_setting(key: str) -> str:
    """
    Valor salvo pelo admin em integration_settings; vazio -> variável de ambiente.
    """
    value = get_setting_value(key)
    if value:
        return value
    env = SETTING_ENV_FALLBACK.get(key)
    return os.environ.get(env, "") if env else ""


def set_settings(values: Dict[str, Optional[str]]) -> None:
    """Valida todas as chaves antes de gravar; chave desconhecida -> KeyError e nada é salvo."""
    unknown = [k for k in values if k not in SETTING_ENV_FALLBACK]
    if unknown:
        raise KeyError(unknown[0])
    set_setting_values({k: (v or "").strip() or None for k, v in values.items()})


def list_settings() -> Dict[str, Dict[str, object]]:
    stored = all_setting_values()
    out: Dict[str, Dict[str, object]] = {}
    for key, env in SETTING_ENV_FALLBACK.items():
        db_value = stored.get(key)
        value = db_value or os.environ.get(env, "")
        is_secret = key in SECRET_SETTINGS
        out[key] = {
            "configured": bool(value),
            "origin": "database" if db_value else ("env" if value else None),
            "value": preview(value) if is_secret and value else (value or None),
            "is_secret": is_secret,
        }
    return out
