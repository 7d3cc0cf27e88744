# services/doppus_client.py
# DesignAuto: Cliente da API Doppus (v4)
# Credenciais: doppus_client_id / doppus_client_secret (settings ou ambiente)
import logging
import os
import time
from typing import Any, Dict, Optional

import requests

from services.settings import get_setting
from utils.security import preview

logger = logging.getLogger(__name__)

API_URL = "https://api.doppus.app/4.0"


class DoppusClient:
    """Mesmo contrato do HotmartClient: retorna {ok: bool, ...}, nunca levanta."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.client_id = get_setting("doppus_client_id").strip()
        self.client_secret = get_setting("doppus_client_secret").strip()
        self.request_timeout_s = float(os.environ.get("DOPPUS_TIMEOUT_S", "15"))
        self.retries = int(os.environ.get("DOPPUS_RETRIES", "2"))
        self.retry_backoff_s = float(os.environ.get("DOPPUS_BACKOFF_S", "1.0"))
        self.session = session or requests.Session()

    @staticmethod
    def _err(msg: str, **extra) -> Dict[str, Any]:
        out = {"ok": False, "error": msg}
        out.update(extra)
        return out

    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{API_URL}{path}"
        last_err: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                return self.session.request(method, url, timeout=self.request_timeout_s, **kwargs)
            except requests.RequestException as e:
                last_err = e
                logger.warning("[DOPPUS] %s %s falhou (tentativa %d): %s", method, path, attempt + 1, e)
                if attempt < self.retries:
                    time.sleep(self.retry_backoff_s * (attempt + 1))
        raise last_err  # type: ignore[misc]

    def get_access_token(self) -> Dict[str, Any]:
        if not self.configured():
            return self._err("Credenciais da Doppus não configuradas")
        logger.info("[DOPPUS] Solicitando token (client_id=%s)", preview(self.client_id))
        try:
            resp = self._request(
                "POST",
                "/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except requests.RequestException as e:
            return self._err(f"Falha de rede ao autenticar na Doppus: {e}")

        if resp.status_code != 200:
            hints = {
                400: "requisição inválida",
                401: "credenciais inválidas",
                404: "endpoint não encontrado",
            }
            hint = hints.get(resp.status_code, "erro no servidor da Doppus")
            return self._err(f"Erro ao obter token de acesso (HTTP {resp.status_code}): {hint}",
                             status_code=resp.status_code)
        try:
            token = resp.json().get("access_token")
        except ValueError:
            token = None
        if not token:
            return self._err("Resposta de autenticação sem access_token")
        return {"ok": True, "access_token": token}

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        auth = self.get_access_token()
        if not auth["ok"]:
            return auth
        try:
            resp = self._request(
                "GET",
                path,
                params=params or {},
                headers={"Authorization": f"Bearer {auth['access_token']}", "Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            return self._err(f"Falha de rede ao consultar a Doppus: {e}")
        if resp.status_code != 200:
            return self._err(f"Doppus respondeu HTTP {resp.status_code}",
                             status_code=resp.status_code, detail=resp.text[:500])
        try:
            return {"ok": True, "data": resp.json()}
        except ValueError:
            return self._err("Resposta da Doppus não é JSON")

    def test_connection(self) -> Dict[str, Any]:
        out = self._get("/products")
        if not out["ok"]:
            return out
        return {"ok": True, "message": "Conexão com a API da Doppus estabelecida com sucesso"}

    def check_subscription_status(self, email: str) -> Dict[str, Any]:
        if not email:
            return self._err("email obrigatório")
        return self._get("/subscriptions", {"customer.email": email.strip().lower()})
