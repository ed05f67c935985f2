"""
Instâncias padrão dos componentes, montadas a partir da configuração.

Todos os componentes aceitam dependências explícitas; estas funções apenas
fornecem singletons para o app FastAPI e o executor standalone.
"""

import logging

from .database import get_sync_status_store, get_token_store
from .events import get_event_emitter
from .gateway import build_gateway
from .refresh_scheduler import RefreshScheduler
from .sync_tracker import SyncStatusTracker
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

_token_manager = None
_refresh_scheduler = None
_sync_tracker = None


def get_token_manager() -> TokenLifecycleManager:
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenLifecycleManager(
            store=get_token_store(),
            gateway=build_gateway(),
            emitter=get_event_emitter(),
        )
        logger.info("✅ TokenLifecycleManager inicializado")
    return _token_manager


def get_refresh_scheduler() -> RefreshScheduler:
    global _refresh_scheduler
    if _refresh_scheduler is None:
        _refresh_scheduler = RefreshScheduler(get_token_manager())
    return _refresh_scheduler


def get_sync_tracker() -> SyncStatusTracker:
    global _sync_tracker
    if _sync_tracker is None:
        _sync_tracker = SyncStatusTracker(get_sync_status_store(), emitter=get_event_emitter())
    return _sync_tracker
