"""
Emissão de eventos estruturados.

Cada autenticação, renovação, transição de sincronização e execução em lote
gera um evento. O destino padrão é uma linha JSON no logger de eventos; um
webhook de observabilidade pode ser adicionado (ver notifier.py).
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("shop_token_sync.events")


class TokenEvent(BaseModel):
    action_type: str
    category: str = "auth"
    shop_id: Optional[int] = None
    status: str = "success"
    source: str = "manual"
    description: str = ""
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventSink = Callable[[TokenEvent], Any]


def log_sink(event: TokenEvent):
    """Escreve o evento como uma linha JSON"""
    level = logging.WARNING if event.status == "failed" else logging.INFO
    event_logger.log(level, json.dumps(event.model_dump(mode="json"), ensure_ascii=False))


class EventEmitter:
    """Distribui eventos para os sinks registrados"""

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks) if sinks is not None else [log_sink]

    def add_sink(self, sink: EventSink):
        self.sinks.append(sink)

    def emit(self, action_type: str, **fields) -> TokenEvent:
        event = TokenEvent(action_type=action_type, **fields)
        for sink in self.sinks:
            try:
                sink(event)
            except Exception as e:
                # Falha de observabilidade não pode afetar tokens nem sincronizações
                logger.error(f"❌ Erro ao entregar evento {action_type} ao sink {sink!r}: {e}")
        return event


# Instância global
_emitter = None


def get_event_emitter() -> EventEmitter:
    """Retorna o emissor padrão (com webhook se configurado)"""
    global _emitter
    if _emitter is None:
        _emitter = EventEmitter()
        from .config import is_events_webhook_configured
        if is_events_webhook_configured():
            from .notifier import WebhookEventSink
            _emitter.add_sink(WebhookEventSink())
            logger.info("✅ Webhook de eventos configurado")
    return _emitter
