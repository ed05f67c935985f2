"""
Shop Token Sync - Ciclo de vida das credenciais de lojas do marketplace

Este módulo é responsável por:
- Autenticar lojas (troca de code por access_token) e persistir um token por loja
- Renovar tokens antes que expirem, sob exclusão mútua por loja
- Renovar em lote todas as lojas conectadas, isolando falhas por loja
- Controlar o estado das sincronizações (ingestão) de cada loja
"""

from .errors import (
    AuthError,
    ConfigError,
    ConflictError,
    InvalidRequest,
    InvalidTransitionError,
    NetworkError,
    RefreshError,
    StorageError,
    TokenSyncError,
)
from .models import AccessToken, RefreshReport, ShopSyncStatus, SyncState
from .refresh_scheduler import RefreshScheduler
from .sync_tracker import SyncStatusTracker
from .token_manager import TokenLifecycleManager, is_valid

__version__ = "1.0.0"
__all__ = [
    "AccessToken",
    "AuthError",
    "ConfigError",
    "ConflictError",
    "InvalidRequest",
    "InvalidTransitionError",
    "NetworkError",
    "RefreshError",
    "RefreshReport",
    "RefreshScheduler",
    "ShopSyncStatus",
    "StorageError",
    "SyncState",
    "SyncStatusTracker",
    "TokenLifecycleManager",
    "TokenSyncError",
    "is_valid",
]
