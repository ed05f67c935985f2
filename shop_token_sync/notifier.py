"""
Módulo de notificação para envio de eventos a um coletor externo.

Este módulo é responsável por enviar os eventos estruturados (renovações,
autenticações, sincronizações) para o webhook de observabilidade configurado.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from . import config
from .events import TokenEvent

logger = logging.getLogger(__name__)


def prepare_payload(event: TokenEvent) -> Dict[str, Any]:
    """
    Prepara o payload para envio ao coletor.

    Args:
        event: Evento emitido

    Returns:
        Payload formatado para envio
    """
    return {
        **event.model_dump(mode="json"),
        "source_service": "shop-token-sync",
        "sent_at": datetime.now(timezone.utc).isoformat()
    }


def _post(url: str, payload: Dict, headers: Dict, timeout: int) -> Optional[Dict]:
    """
    Envia dados usando httpx.

    Returns:
        Dicionário com status_code e body da resposta, None em erro de rede
    """
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, json=payload, headers=headers)

            return {
                "status_code": response.status_code,
                "body": response.text
            }

    except httpx.TimeoutException:
        logger.error(f"⏱️ Timeout ao enviar para {url} ({timeout}s)")
        return None
    except httpx.HTTPError as e:
        logger.error(f"🔌 Erro de conexão: {e}")
        return None


class WebhookEventSink:
    """Sink de eventos que publica em um webhook via HTTP POST"""

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.url = url or config.EVENTS_WEBHOOK_URL
        self.api_key = api_key if api_key is not None else config.EVENTS_WEBHOOK_API_KEY
        self.timeout = timeout or config.EVENTS_WEBHOOK_TIMEOUT

    def __call__(self, event: TokenEvent) -> bool:
        return self.send(event)

    def send(self, event: TokenEvent) -> bool:
        """
        Envia um evento ao webhook.

        Returns:
            True se enviado com sucesso, False caso contrário
        """
        if not self.url:
            logger.debug("URL do webhook de eventos não configurada - pulando envio")
            return False

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Shop-Token-Sync/1.0"
        }

        # Adicionar autenticação se configurada
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = _post(self.url, prepare_payload(event), headers, self.timeout)

        if response and response.get("status_code") in [200, 201, 202, 204]:
            logger.debug(f"✅ Evento {event.action_type} enviado - Status: {response['status_code']}")
            return True

        status = response.get("status_code", "unknown") if response else "error"
        logger.error(f"❌ Falha no envio do evento {event.action_type} - Status: {status}")
        if response and response.get("body"):
            logger.debug(f"Resposta de erro: {response['body'][:500]}")
        return False

    def __repr__(self):
        return f"WebhookEventSink({self.url!r})"
