"""
Exclusão mútua por loja.

Cada loja tem seu próprio lock; lojas diferentes nunca disputam entre si.
"""

import threading
import logging
from contextlib import contextmanager
from typing import Dict, Optional

from .errors import ConflictError

logger = logging.getLogger(__name__)


class ShopLockRegistry:
    """Registro de locks por shop_id, criados sob demanda"""

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()  # Lock para acesso ao dicionário

    def _lock_for(self, shop_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(shop_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[shop_id] = lock
            return lock

    @contextmanager
    def hold(self, shop_id: int, wait: bool = True, timeout: Optional[float] = None):
        """
        Mantém o lock da loja durante o bloco.

        Args:
            shop_id: Loja
            wait: Se False, falha imediatamente quando a loja está ocupada
            timeout: Tempo máximo de espera quando wait=True (None = sem limite)

        Raises:
            ConflictError: Loja ocupada (wait=False) ou timeout esgotado
        """
        lock = self._lock_for(shop_id)
        if not wait:
            acquired = lock.acquire(blocking=False)
        elif timeout is not None:
            acquired = lock.acquire(timeout=timeout)
        else:
            acquired = lock.acquire()

        if not acquired:
            raise ConflictError(f"Operação já em andamento para a loja {shop_id}")

        try:
            yield
        finally:
            lock.release()

    def is_locked(self, shop_id: int) -> bool:
        with self._registry_lock:
            lock = self._locks.get(shop_id)
        return bool(lock and lock.locked())
