"""
Módulo de banco de dados para tokens e estado de sincronização das lojas.
Usa SQLite para persistência simples e eficiente, uma linha por loja.
"""
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .config import DATABASE_PATH
from .errors import StorageError
from .models import AccessToken, ShopSyncStatus

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShopDatabase:
    """Conexão e schema compartilhados pelos stores."""

    def __init__(self, db_path: str = DATABASE_PATH):
        """Inicializa o banco SQLite e garante o schema"""
        self.db_path = Path(db_path)
        self.init_database()

    @contextmanager
    def _connection(self):
        """Abre uma conexão por operação; commit no sucesso, rollback no erro"""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            logger.error(f"❌ Não foi possível abrir o banco de dados ({self.db_path}): {e}")
            raise StorageError(str(e)) from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"❌ Erro no banco de dados ({self.db_path}): {e}")
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def init_database(self):
        """Cria as tabelas se não existirem"""
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS shop_tokens (
                    shop_id INTEGER PRIMARY KEY,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expire_in INTEGER,
                    expired_at INTEGER,
                    merchant_id INTEGER,
                    request_id TEXT,
                    refresh_claim TEXT,
                    refresh_claimed_at INTEGER,
                    updated_at TEXT
                )
            """)
            self._ensure_columns(conn, "shop_tokens", {
                "refresh_claim": "TEXT",
                "refresh_claimed_at": "INTEGER",
            })
            conn.execute("""
                CREATE TABLE IF NOT EXISTS shop_sync_status (
                    shop_id INTEGER PRIMARY KEY,
                    is_syncing INTEGER NOT NULL DEFAULT 0,
                    is_initial_sync_done INTEGER NOT NULL DEFAULT 0,
                    last_sync_at TEXT,
                    total_synced INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    sync_started_at TEXT,
                    updated_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS token_refresh_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    shop_id INTEGER NOT NULL,
                    success INTEGER NOT NULL,
                    error_message TEXT,
                    old_expired_at INTEGER,
                    new_expired_at INTEGER,
                    source TEXT NOT NULL DEFAULT 'auto',
                    created_at TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_token_refresh_logs_shop_id
                ON token_refresh_logs(shop_id)
            """)
        logger.debug(f"✅ Banco de dados inicializado: {self.db_path}")

    @staticmethod
    def _ensure_columns(conn, table: str, columns: Dict[str, str]):
        """Adiciona colunas novas em bancos criados por versões anteriores"""
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
        for name, column_type in columns.items():
            if name not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {column_type}")
                logger.info(f"🔧 Coluna {table}.{name} adicionada")


class TokenStore(ShopDatabase):
    """Persistência de uma credencial por loja."""

    def save_token(self, token: AccessToken) -> AccessToken:
        """
        Salva ou substitui (atomicamente) o token da loja

        Args:
            token: Token com shop_id preenchido

        Returns:
            O próprio token salvo
        """
        if token.shop_id is None:
            raise ValueError("token sem shop_id não pode ser persistido")

        with self._connection() as conn:
            conn.execute("""
                INSERT INTO shop_tokens (shop_id, access_token, refresh_token, expire_in,
                                         expired_at, merchant_id, request_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expire_in = excluded.expire_in,
                    expired_at = excluded.expired_at,
                    merchant_id = excluded.merchant_id,
                    request_id = excluded.request_id,
                    refresh_claim = NULL,
                    refresh_claimed_at = NULL,
                    updated_at = excluded.updated_at
            """, (token.shop_id, token.access_token, token.refresh_token, token.expire_in,
                  token.expired_at, token.merchant_id, token.request_id, _iso(utcnow())))

        logger.debug(f"💾 Token da loja {token.shop_id} salvo")
        return token

    def get_token(self, shop_id: int) -> Optional[AccessToken]:
        """
        Recupera o token de uma loja

        Returns:
            AccessToken ou None se a loja não tiver credencial
        """
        with self._connection() as conn:
            row = conn.execute("""
                SELECT shop_id, access_token, refresh_token, expire_in, expired_at,
                       merchant_id, request_id
                FROM shop_tokens
                WHERE shop_id = ?
            """, (shop_id,)).fetchone()

        if not row:
            return None

        return AccessToken(
            access_token=row['access_token'],
            refresh_token=row['refresh_token'] or "",
            expire_in=row['expire_in'] or 0,
            expired_at=row['expired_at'],
            shop_id=row['shop_id'],
            merchant_id=row['merchant_id'],
            request_id=row['request_id'],
        )

    def claim_refresh(self, shop_id: int, refresh_token: str, claim_id: str,
                      now_ms: int, lease_ms: int) -> bool:
        """
        Compare-and-set da renovação: reserva a loja para uma única renovação.

        Só tem efeito se o refresh_token armazenado ainda for o lido pelo
        chamador e não houver outra reserva ativa (reservas mais antigas que
        lease_ms são consideradas abandonadas).

        Args:
            shop_id: Loja
            refresh_token: refresh_token lido antes da reserva
            claim_id: Identificador único da reserva
            now_ms: Timestamp atual em ms
            lease_ms: Validade da reserva em ms

        Returns:
            True se a reserva foi obtida
        """
        with self._connection() as conn:
            cursor = conn.execute("""
                UPDATE shop_tokens
                SET refresh_claim = ?,
                    refresh_claimed_at = ?
                WHERE shop_id = ?
                  AND refresh_token = ?
                  AND (refresh_claim IS NULL OR refresh_claimed_at < ?)
            """, (claim_id, now_ms, shop_id, refresh_token, now_ms - lease_ms))
            return cursor.rowcount == 1

    def replace_claimed_token(self, token: AccessToken, claim_id: str) -> bool:
        """
        Substitui o token somente se a reserva claim_id ainda for a vigente.
        A reserva é liberada na mesma escrita.

        Returns:
            False se a reserva foi perdida (nada é gravado)
        """
        with self._connection() as conn:
            cursor = conn.execute("""
                UPDATE shop_tokens
                SET access_token = ?,
                    refresh_token = ?,
                    expire_in = ?,
                    expired_at = ?,
                    merchant_id = ?,
                    request_id = ?,
                    refresh_claim = NULL,
                    refresh_claimed_at = NULL,
                    updated_at = ?
                WHERE shop_id = ? AND refresh_claim = ?
            """, (token.access_token, token.refresh_token, token.expire_in, token.expired_at,
                  token.merchant_id, token.request_id, _iso(utcnow()), token.shop_id, claim_id))
            replaced = cursor.rowcount == 1

        if replaced:
            logger.debug(f"💾 Token da loja {token.shop_id} substituído (reserva {claim_id[:8]})")
        return replaced

    def release_refresh_claim(self, shop_id: int, claim_id: str) -> bool:
        """Libera a reserva sem alterar o token (renovação falhou)"""
        with self._connection() as conn:
            cursor = conn.execute("""
                UPDATE shop_tokens
                SET refresh_claim = NULL,
                    refresh_claimed_at = NULL
                WHERE shop_id = ? AND refresh_claim = ?
            """, (shop_id, claim_id))
            return cursor.rowcount == 1

    def list_shop_ids(self) -> List[int]:
        """Lista todas as lojas com credencial persistida"""
        with self._connection() as conn:
            rows = conn.execute("SELECT shop_id FROM shop_tokens ORDER BY shop_id").fetchall()
        return [row['shop_id'] for row in rows]

    def delete_token(self, shop_id: int) -> bool:
        """Remove a credencial (apenas em desconexão explícita)"""
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM shop_tokens WHERE shop_id = ?", (shop_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"🗑️ Token da loja {shop_id} removido")
        return deleted

    def log_refresh(self, shop_id: int, success: bool, error_message: Optional[str] = None,
                    old_expired_at: Optional[int] = None, new_expired_at: Optional[int] = None,
                    source: str = "auto"):
        """Registra uma tentativa de renovação no histórico"""
        with self._connection() as conn:
            conn.execute("""
                INSERT INTO token_refresh_logs (shop_id, success, error_message, old_expired_at,
                                                new_expired_at, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (shop_id, int(success), error_message, old_expired_at, new_expired_at,
                  source, _iso(utcnow())))

    def get_refresh_logs(self, shop_id: int, limit: int = 20) -> List[Dict]:
        """Retorna as tentativas de renovação mais recentes de uma loja"""
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT shop_id, success, error_message, old_expired_at, new_expired_at,
                       source, created_at
                FROM token_refresh_logs
                WHERE shop_id = ?
                ORDER BY id DESC
                LIMIT ?
            """, (shop_id, limit)).fetchall()

        return [
            {
                'shop_id': row['shop_id'],
                'success': bool(row['success']),
                'error_message': row['error_message'],
                'old_expired_at': row['old_expired_at'],
                'new_expired_at': row['new_expired_at'],
                'source': row['source'],
                'created_at': row['created_at'],
            }
            for row in rows
        ]


class SyncStatusStore(ShopDatabase):
    """
    Estado de sincronização por loja.

    Toda transição é um UPDATE condicional único, então a verificação e a
    escrita acontecem atomicamente no SQLite.
    """

    def ensure_status(self, shop_id: int):
        """Cria a linha da loja se ainda não existir"""
        with self._connection() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO shop_sync_status (shop_id, updated_at)
                VALUES (?, ?)
            """, (shop_id, _iso(utcnow())))

    def try_mark_syncing(self, shop_id: int, started_at: datetime) -> bool:
        """
        Compare-and-set de is_syncing: 0 -> 1

        Returns:
            True se esta chamada adquiriu a sincronização, False se já estava ativa
        """
        self.ensure_status(shop_id)
        with self._connection() as conn:
            cursor = conn.execute("""
                UPDATE shop_sync_status
                SET is_syncing = 1,
                    sync_started_at = ?,
                    updated_at = ?
                WHERE shop_id = ? AND is_syncing = 0
            """, (_iso(started_at), _iso(utcnow()), shop_id))
            return cursor.rowcount == 1

    def mark_completed(self, shop_id: int, synced_count: int, completed_at: datetime) -> bool:
        """SYNCING -> IDLE. Retorna False se a loja não estava sincronizando"""
        with self._connection() as conn:
            cursor = conn.execute("""
                UPDATE shop_sync_status
                SET is_syncing = 0,
                    is_initial_sync_done = 1,
                    last_sync_at = ?,
                    total_synced = total_synced + ?,
                    last_error = NULL,
                    sync_started_at = NULL,
                    updated_at = ?
                WHERE shop_id = ? AND is_syncing = 1
            """, (_iso(completed_at), synced_count, _iso(utcnow()), shop_id))
            return cursor.rowcount == 1

    def mark_failed(self, shop_id: int, error: str) -> bool:
        """SYNCING -> ERROR. Retorna False se a loja não estava sincronizando"""
        with self._connection() as conn:
            cursor = conn.execute("""
                UPDATE shop_sync_status
                SET is_syncing = 0,
                    last_error = ?,
                    sync_started_at = NULL,
                    updated_at = ?
                WHERE shop_id = ? AND is_syncing = 1
            """, (error, _iso(utcnow()), shop_id))
            return cursor.rowcount == 1

    def get_status(self, shop_id: int) -> Optional[ShopSyncStatus]:
        with self._connection() as conn:
            row = conn.execute("""
                SELECT shop_id, is_syncing, is_initial_sync_done, last_sync_at, total_synced,
                       last_error, sync_started_at, updated_at
                FROM shop_sync_status
                WHERE shop_id = ?
            """, (shop_id,)).fetchone()

        if not row:
            return None

        return ShopSyncStatus(
            shop_id=row['shop_id'],
            is_syncing=bool(row['is_syncing']),
            is_initial_sync_done=bool(row['is_initial_sync_done']),
            last_sync_at=row['last_sync_at'],
            total_synced=row['total_synced'],
            last_error=row['last_error'],
            sync_started_at=row['sync_started_at'],
            updated_at=row['updated_at'],
        )

    def reset_stuck(self, started_before: datetime, error: str) -> List[int]:
        """
        Força para ERROR as sincronizações iniciadas antes de started_before

        Returns:
            Lista de lojas resetadas
        """
        cutoff = _iso(started_before)
        with self._connection() as conn:
            candidates = conn.execute("""
                SELECT shop_id FROM shop_sync_status
                WHERE is_syncing = 1 AND sync_started_at < ?
            """, (cutoff,)).fetchall()

            reset = []
            for row in candidates:
                cursor = conn.execute("""
                    UPDATE shop_sync_status
                    SET is_syncing = 0,
                        last_error = ?,
                        sync_started_at = NULL,
                        updated_at = ?
                    WHERE shop_id = ? AND is_syncing = 1 AND sync_started_at < ?
                """, (error, _iso(utcnow()), row['shop_id'], cutoff))
                if cursor.rowcount == 1:
                    reset.append(row['shop_id'])

        return reset


# Instâncias globais (singleton)
_token_store = None
_sync_status_store = None


def get_token_store() -> TokenStore:
    """Retorna instância singleton do TokenStore"""
    global _token_store
    if _token_store is None:
        _token_store = TokenStore()
    return _token_store


def get_sync_status_store() -> SyncStatusStore:
    """Retorna instância singleton do SyncStatusStore"""
    global _sync_status_store
    if _sync_status_store is None:
        _sync_status_store = SyncStatusStore()
    return _sync_status_store
