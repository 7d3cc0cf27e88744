# services/hotmart_client.py
# DesignAuto: Cliente da API Hotmart (OAuth client_credentials)
# Credenciais (integration_settings ou variáveis de ambiente):
#   - hotmart_client_id / HOTMART_CLIENT_ID
#   - hotmart_client_secret / HOTMART_CLIENT_SECRET
#   - hotmart_basic_token / HOTMART_BASIC_TOKEN   (cabeçalho Basic do painel)
#   - hotmart_sandbox / HOTMART_SANDBOX           (opcional; 1 = sandbox)
import logging
import os
import time
from typing import Any, Dict, Optional

import requests

from services.settings import get_setting
from utils.security import preview

logger = logging.getLogger(__name__)

AUTH_URL = "https://api-sec-vlc.hotmart.com/security/oauth/token"
API_URL = "https://developers.hotmart.com"
SANDBOX_API_URL = "https://sandbox.hotmart.com"

# renova o token 5 min antes de expirar
TOKEN_SAFETY_MARGIN_S = 300


class HotmartClient:
    """
    - Nunca levanta exceção para o chamador: sempre retorna dict {ok: bool, ...}.
    - Token em cache até expires_in - 5 min.
    - Erros de rede têm pequenas retentativas; erro HTTP volta direto.
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self.client_id = get_setting("hotmart_client_id").strip()
        self.client_secret = get_setting("hotmart_client_secret").strip()
        self.basic_token = get_setting("hotmart_basic_token").strip()
        self.sandbox = get_setting("hotmart_sandbox").strip().lower() in ("1", "true", "yes", "on")
        self.api_url = SANDBOX_API_URL if self.sandbox else API_URL

        self.request_timeout_s = float(os.environ.get("HOTMART_TIMEOUT_S", "15"))
        self.retries = int(os.environ.get("HOTMART_RETRIES", "2"))
        self.retry_backoff_s = float(os.environ.get("HOTMART_BACKOFF_S", "1.0"))

        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @staticmethod
    def _err(msg: str, **extra) -> Dict[str, Any]:
        out = {"ok": False, "error": msg}
        out.update(extra)
        return out

    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.basic_token)

    def _basic_header(self) -> str:
        token = self.basic_token
        return token if token.lower().startswith("basic ") else f"Basic {token}"

    # -----------------------------------------------------
    # HTTP com retentativa
    # -----------------------------------------------------
    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        last_err: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                return self.session.request(method, url, timeout=self.request_timeout_s, **kwargs)
            except requests.RequestException as e:
                last_err = e
                logger.warning("[HOTMART] %s %s falhou (tentativa %d): %s", method, url, attempt + 1, e)
                if attempt < self.retries:
                    time.sleep(self.retry_backoff_s * (attempt + 1))
        raise last_err  # type: ignore[misc]

    # -----------------------------------------------------
    # Token
    # -----------------------------------------------------
    def get_access_token(self, force: bool = False) -> Dict[str, Any]:
        if not self.configured():
            return self._err("Credenciais da Hotmart não configuradas")
        if not force and self._token and time.time() < self._token_expires_at:
            return {"ok": True, "access_token": self._token, "cached": True}

        logger.info("[HOTMART] Solicitando token (client_id=%s, sandbox=%s)", preview(self.client_id), self.sandbox)
        try:
            resp = self._request(
                "POST",
                AUTH_URL,
                params={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                headers={"Authorization": self._basic_header(), "Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            return self._err(f"Falha de rede ao autenticar na Hotmart: {e}")

        if resp.status_code != 200:
            return self._err(f"Erro ao obter token de acesso: HTTP {resp.status_code}",
                             status_code=resp.status_code, detail=resp.text[:500])
        try:
            data = resp.json()
        except ValueError:
            return self._err("Resposta de autenticação inválida (não é JSON)")
        token = data.get("access_token")
        if not token:
            return self._err("Resposta de autenticação sem access_token")

        expires_in = int(data.get("expires_in") or 0)
        self._token = token
        self._token_expires_at = time.time() + max(expires_in - TOKEN_SAFETY_MARGIN_S, 0)
        return {"ok": True, "access_token": token, "expires_in": expires_in, "cached": False}

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        auth = self.get_access_token()
        if not auth["ok"]:
            return auth
        url = f"{self.api_url}{path}"
        try:
            resp = self._request(
                "GET",
                url,
                params={k: v for k, v in params.items() if v not in (None, "")},
                headers={"Authorization": f"Bearer {auth['access_token']}", "Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            return self._err(f"Falha de rede ao consultar a Hotmart: {e}")

        if resp.status_code == 401:
            # token revogado do lado da Hotmart: próxima chamada pede outro
            self._token = None
        if resp.status_code != 200:
            return self._err(f"Hotmart respondeu HTTP {resp.status_code}",
                             status_code=resp.status_code, detail=resp.text[:500])
        try:
            return {"ok": True, "data": resp.json()}
        except ValueError:
            return self._err("Resposta da Hotmart não é JSON")

    # -----------------------------------------------------
    # Operações
    # -----------------------------------------------------
    def test_connection(self) -> Dict[str, Any]:
        auth = self.get_access_token(force=True)
        if not auth["ok"]:
            return auth
        return {
            "ok": True,
            "message": "Conexão com a API da Hotmart estabelecida com sucesso",
            "sandbox": self.sandbox,
            "expires_in": auth.get("expires_in"),
        }

    def get_subscriptions(self, subscriber_email: Optional[str] = None,
                          status: Optional[str] = None) -> Dict[str, Any]:
        out = self._get("/payments/api/v1/subscriptions",
                        {"subscriber_email": subscriber_email, "status": status})
        if out["ok"]:
            out["items"] = (out["data"] or {}).get("items", [])
        return out

    def get_sales_history(self, transaction: Optional[str] = None,
                          buyer_email: Optional[str] = None) -> Dict[str, Any]:
        out = self._get("/payments/api/v1/sales/history",
                        {"transaction": transaction, "buyer_email": buyer_email})
        if out["ok"]:
            out["items"] = (out["data"] or {}).get("items", [])
        return out
