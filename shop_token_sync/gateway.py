"""
AuthGateway: troca de code / refresh_token por access_token no marketplace.

- ShopeeHttpGateway: chamada assinada (HMAC-SHA256) à Partner API v2
- OfflineGateway: tokens sintéticos, somente com AUTH_GATEWAY_MODE=offline

Nenhum caminho gera tokens sintéticos implicitamente quando o marketplace
está indisponível; a falha é sempre classificada e propagada.
"""

import abc
import hashlib
import hmac
import logging
import time
import urllib.parse
import uuid
from typing import Any, Dict, Optional

import requests

from . import config
from .errors import AuthError, ConfigError, NetworkError
from .models import AccessToken, mask_secret, now_ms

logger = logging.getLogger(__name__)

OAUTH_TOKEN_PATH = "/api/v2/auth/token/get"
OAUTH_REFRESH_PATH = "/api/v2/auth/access_token/get"


def sign(partner_id: int, partner_key: str, path: str, timestamp: int) -> str:
    """
    Assinatura das rotas públicas da Partner API v2:
        hex(HMAC-SHA256(partner_key, partner_id + path + timestamp))
    """
    base_string = f"{partner_id}{path}{timestamp}"
    return hmac.new(partner_key.encode(), base_string.encode(), hashlib.sha256).hexdigest()


class AuthGateway(abc.ABC):
    """Contrato consumido pelo TokenLifecycleManager."""

    @abc.abstractmethod
    def exchange_code(self, code: str, shop_id: Optional[int] = None) -> AccessToken:
        ...

    @abc.abstractmethod
    def exchange_refresh_token(self, refresh_token: str, shop_id: Optional[int] = None,
                               merchant_id: Optional[int] = None) -> AccessToken:
        ...


class ShopeeHttpGateway(AuthGateway):
    """Troca de tokens direto com a Partner API (ou via proxy)"""

    def __init__(self, partner_id: Optional[int] = None, partner_key: Optional[str] = None,
                 base_url: Optional[str] = None, proxy_url: Optional[str] = None,
                 timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        self.partner_id = partner_id if partner_id is not None else config.SHOPEE_PARTNER_ID
        self.partner_key = partner_key if partner_key is not None else config.SHOPEE_PARTNER_KEY
        self.base_url = (base_url or config.SHOPEE_BASE_URL).rstrip("/")
        self.proxy_url = proxy_url if proxy_url is not None else config.SHOPEE_PROXY_URL
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _ensure_configured(self):
        if not self.partner_id or not self.partner_key:
            raise ConfigError("Credenciais de parceiro (partner_id/partner_key) não configuradas")

    def _build_url(self, path: str, timestamp: int) -> str:
        query = urllib.parse.urlencode({
            "partner_id": self.partner_id,
            "timestamp": timestamp,
            "sign": sign(self.partner_id, self.partner_key, path, timestamp),
        })
        target_url = f"{self.base_url}{path}?{query}"
        if self.proxy_url:
            return f"{self.proxy_url}?url={urllib.parse.quote(target_url, safe='')}"
        return target_url

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Faz a chamada assinada e classifica falhas.

        Raises:
            NetworkError: timeout, conexão, HTTP 5xx ou resposta não-JSON
            AuthError: resposta com campo "error"
        """
        self._ensure_configured()
        timestamp = int(time.time())
        url = self._build_url(path, timestamp)

        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"⏱️ Timeout na chamada {path} (>{self.timeout}s)")
            raise NetworkError(f"Timeout calling {path}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"🔌 Erro de conexão na chamada {path}: {e}")
            raise NetworkError(f"Connection error calling {path}: {e}") from e

        if response.status_code >= 500:
            logger.warning(f"⚠️ Status {response.status_code} na chamada {path}")
            raise NetworkError(f"Marketplace returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.debug(f"Resposta: {response.text[:500]}")
            raise NetworkError(f"Invalid JSON from {path} (HTTP {response.status_code})") from e

        if data.get("error"):
            message = data.get("message") or data.get("error")
            logger.warning(f"❌ Marketplace rejeitou {path}: {data.get('error')} - {message}")
            raise AuthError(message)

        if not data.get("access_token"):
            raise AuthError(f"Response from {path} has no access_token")

        return data

    def exchange_code(self, code: str, shop_id: Optional[int] = None) -> AccessToken:
        body: Dict[str, Any] = {"code": code, "partner_id": self.partner_id}
        if shop_id:
            body["shop_id"] = shop_id

        logger.info(f"🔑 Trocando code por token (loja {shop_id})")
        issued_at = now_ms()
        data = self._post(OAUTH_TOKEN_PATH, body)
        return AccessToken.from_exchange(data, shop_id=shop_id, issued_at_ms=issued_at)

    def exchange_refresh_token(self, refresh_token: str, shop_id: Optional[int] = None,
                               merchant_id: Optional[int] = None) -> AccessToken:
        body: Dict[str, Any] = {"refresh_token": refresh_token, "partner_id": self.partner_id}
        if shop_id:
            body["shop_id"] = shop_id
        if merchant_id:
            body["merchant_id"] = merchant_id

        logger.info(f"🔄 Renovando token da loja {shop_id} (refresh_token {mask_secret(refresh_token)})")
        issued_at = now_ms()
        data = self._post(OAUTH_REFRESH_PATH, body)
        token = AccessToken.from_exchange(data, shop_id=shop_id, issued_at_ms=issued_at)
        if token.merchant_id is None and merchant_id:
            token.merchant_id = merchant_id
        return token


class OfflineGateway(AuthGateway):
    """
    Gera tokens sintéticos sem falar com o marketplace.

    Usado apenas quando AUTH_GATEWAY_MODE=offline (testes e desenvolvimento).
    """

    def __init__(self, expire_in: int = 14400):
        self.expire_in = expire_in

    def _token(self, prefix: str, refresh_token: str, shop_id: Optional[int],
               merchant_id: Optional[int] = None) -> AccessToken:
        logger.warning(f"⚠️ OfflineGateway: token sintético para a loja {shop_id} (NÃO usar em produção)")
        suffix = uuid.uuid4().hex[:12]
        return AccessToken.from_exchange({
            "access_token": f"offline_{prefix}_{suffix}",
            "refresh_token": refresh_token or f"offline_refresh_{suffix}",
            "expire_in": self.expire_in,
            "merchant_id": merchant_id,
            "request_id": f"offline_request_{suffix}",
        }, shop_id=shop_id)

    def exchange_code(self, code: str, shop_id: Optional[int] = None) -> AccessToken:
        return self._token("access", "", shop_id)

    def exchange_refresh_token(self, refresh_token: str, shop_id: Optional[int] = None,
                               merchant_id: Optional[int] = None) -> AccessToken:
        return self._token("refreshed", refresh_token, shop_id, merchant_id)


def build_gateway() -> AuthGateway:
    """Escolhe a implementação conforme AUTH_GATEWAY_MODE"""
    if config.AUTH_GATEWAY_MODE == "offline":
        logger.warning("⚠️ AUTH_GATEWAY_MODE=offline - usando OfflineGateway")
        return OfflineGateway()
    if config.AUTH_GATEWAY_MODE != "http":
        raise ConfigError(f"AUTH_GATEWAY_MODE inválido: {config.AUTH_GATEWAY_MODE}")
    return ShopeeHttpGateway()
