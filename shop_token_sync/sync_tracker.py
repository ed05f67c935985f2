"""
Máquina de estados das execuções de ingestão (ex.: avaliações) por loja.

    IDLE/ERROR --start--> SYNCING --complete--> IDLE
                                  --fail-----> ERROR

Cada transição é um compare-and-set no SyncStatusStore, então duas
execuções da mesma loja nunca se sobrepõem.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .config import SYNC_STUCK_MINUTES
from .database import SyncStatusStore
from .errors import ConflictError, InvalidRequest, InvalidTransitionError
from .events import EventEmitter, get_event_emitter
from .models import ShopSyncStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncRun:
    """Handle de uma execução aberta por SyncStatusTracker.track()"""

    def __init__(self, shop_id: int):
        self.shop_id = shop_id
        self.synced_count = 0

    def add(self, count: int = 1):
        self.synced_count += count


class SyncStatusTracker:
    def __init__(self, store: SyncStatusStore, emitter: Optional[EventEmitter] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.emitter = emitter or get_event_emitter()
        self.clock = clock

    def start(self, shop_id: int) -> ShopSyncStatus:
        """
        IDLE/ERROR -> SYNCING.

        Raises:
            ConflictError: já existe uma execução ativa para a loja
        """
        if not self.store.try_mark_syncing(shop_id, self.clock()):
            logger.warning(f"⚠️ Sincronização da loja {shop_id} já está em andamento")
            self.emitter.emit(
                "sync_start",
                category="sync",
                shop_id=shop_id,
                status="failed",
                description="Sync already running",
                error_message="conflict",
            )
            raise ConflictError(f"Sync already running for shop {shop_id}")

        logger.info(f"🔄 Sincronização da loja {shop_id} iniciada")
        self.emitter.emit("sync_start", category="sync", shop_id=shop_id, description="Sync started")
        return self.query(shop_id)

    def complete(self, shop_id: int, synced_count: int) -> ShopSyncStatus:
        """
        SYNCING -> IDLE. Soma synced_count ao total e limpa o último erro.

        Raises:
            InvalidRequest: synced_count negativo
            InvalidTransitionError: a loja não estava sincronizando
        """
        if synced_count < 0:
            raise InvalidRequest("synced_count must not be negative")

        if not self.store.mark_completed(shop_id, synced_count, self.clock()):
            raise InvalidTransitionError(f"complete() called for shop {shop_id} while not syncing")

        logger.info(f"✅ Sincronização da loja {shop_id} concluída: {synced_count} itens")
        self.emitter.emit(
            "sync_complete",
            category="sync",
            shop_id=shop_id,
            description=f"Synced {synced_count} items",
            data={"synced_count": synced_count},
        )
        return self.query(shop_id)

    def fail(self, shop_id: int, error: str) -> ShopSyncStatus:
        """
        SYNCING -> ERROR. total_synced e is_initial_sync_done não mudam.

        Raises:
            InvalidTransitionError: a loja não estava sincronizando
        """
        message = str(error) or "Unknown error"
        if not self.store.mark_failed(shop_id, message):
            raise InvalidTransitionError(f"fail() called for shop {shop_id} while not syncing")

        logger.error(f"❌ Sincronização da loja {shop_id} falhou: {message}")
        self.emitter.emit(
            "sync_fail",
            category="sync",
            shop_id=shop_id,
            status="failed",
            description="Sync failed",
            error_message=message,
        )
        return self.query(shop_id)

    def query(self, shop_id: int) -> ShopSyncStatus:
        """Snapshot somente-leitura (lojas nunca sincronizadas aparecem como IDLE)"""
        status = self.store.get_status(shop_id)
        if status is None:
            return ShopSyncStatus(shop_id=shop_id)
        return status

    @contextmanager
    def track(self, shop_id: int):
        """
        Envolve uma execução de ingestão:

            with tracker.track(shop_id) as run:
                for review in fetch_reviews():
                    save(review)
                    run.add()
        """
        self.start(shop_id)
        run = SyncRun(shop_id)
        try:
            yield run
        except BaseException as e:
            self.fail(shop_id, str(e) or type(e).__name__)
            raise
        self.complete(shop_id, run.synced_count)

    def reset_stuck(self, max_age_minutes: int = SYNC_STUCK_MINUTES) -> List[int]:
        """
        Força para ERROR execuções presas em SYNCING há mais de max_age_minutes.

        Returns:
            Lojas resetadas
        """
        cutoff = self.clock() - timedelta(minutes=max_age_minutes)
        message = f"Auto-reset: sync stuck for more than {max_age_minutes} minutes"
        shop_ids = self.store.reset_stuck(cutoff, message)

        for shop_id in shop_ids:
            logger.warning(f"🧹 Sincronização da loja {shop_id} resetada (travada > {max_age_minutes} min)")
            self.emitter.emit(
                "sync_reset",
                category="sync",
                shop_id=shop_id,
                status="failed",
                source="scheduled",
                description="Stuck sync reset",
                error_message=message,
            )

        return shop_ids
