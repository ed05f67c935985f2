"""
Ciclo de vida das credenciais por loja.

O TokenLifecycleManager decide se um token armazenado ainda pode ser usado e
executa autenticação/renovação de uma loja sob exclusão mútua por loja. Uma
renovação que falha nunca altera nem remove o token anterior.
"""

import logging
import time
import uuid
from typing import Callable, Optional, Tuple

from .config import REFRESH_CLAIM_LEASE_SECONDS, REFRESH_CLAIM_WAIT_SECONDS, TOKEN_BUFFER_MINUTES
from .database import TokenStore
from .errors import AuthError, ConflictError, InvalidRequest, RefreshError, TokenSyncError
from .events import EventEmitter, get_event_emitter
from .gateway import AuthGateway
from .locks import ShopLockRegistry
from .models import AccessToken, ms_to_iso, now_ms

logger = logging.getLogger(__name__)


def is_valid(token: AccessToken, buffer_minutes: float = 5, now: Optional[int] = None) -> bool:
    """
    Verifica se o token ainda pode ser usado.

    Sem expired_at o token é tratado como não expirável. Caso contrário, é
    válido enquanto now < expired_at - buffer.

    Args:
        token: Token armazenado
        buffer_minutes: Margem antes da expiração real
        now: Timestamp atual em ms (padrão: relógio do sistema)
    """
    if token.expired_at is None:
        return True
    current = now if now is not None else now_ms()
    return current < token.expired_at - buffer_minutes * 60 * 1000


def _changed(before: AccessToken, after: AccessToken) -> bool:
    return (before.access_token, before.refresh_token) != (after.access_token, after.refresh_token)


class TokenLifecycleManager:
    """
    Autenticação e renovação de tokens, uma loja por vez.

    Chamadas concorrentes de refresh para a mesma loja são serializadas pelo
    lock da loja; lojas diferentes não disputam entre si. Entre processos que
    compartilham o banco, a exclusão vem da reserva gravada por compare-and-set
    no TokenStore (claim_refresh), com validade de claim_lease_seconds.
    """

    def __init__(self, store: TokenStore, gateway: AuthGateway,
                 locks: Optional[ShopLockRegistry] = None,
                 emitter: Optional[EventEmitter] = None,
                 buffer_minutes: float = TOKEN_BUFFER_MINUTES,
                 clock: Callable[[], int] = now_ms,
                 claim_lease_seconds: float = REFRESH_CLAIM_LEASE_SECONDS,
                 claim_wait_seconds: float = REFRESH_CLAIM_WAIT_SECONDS,
                 claim_poll_seconds: float = 0.2):
        self.store = store
        self.gateway = gateway
        self.locks = locks or ShopLockRegistry()
        self.emitter = emitter or get_event_emitter()
        self.buffer_minutes = buffer_minutes
        self.clock = clock
        self.claim_lease_ms = int(claim_lease_seconds * 1000)
        self.claim_wait_seconds = claim_wait_seconds
        self.claim_poll_seconds = claim_poll_seconds

    def is_valid(self, token: AccessToken, buffer_minutes: Optional[float] = None) -> bool:
        if buffer_minutes is None:
            buffer_minutes = self.buffer_minutes
        return is_valid(token, buffer_minutes, now=self.clock())

    def get_stored_token(self, shop_id: int) -> Optional[AccessToken]:
        return self.store.get_token(shop_id)

    def authenticate(self, code: str, shop_id: Optional[int] = None) -> AccessToken:
        """
        Troca o code de autorização por um token e o armazena.

        Args:
            code: Code recebido no callback de autorização
            shop_id: Loja informada no callback (usada se a resposta omitir)

        Returns:
            Token armazenado

        Raises:
            InvalidRequest: code vazio ou loja desconhecida
            AuthError, NetworkError, ConfigError: falha na troca
        """
        if not code or not code.strip():
            raise InvalidRequest("Authorization code is required")

        started = time.monotonic()
        try:
            token = self.gateway.exchange_code(code, shop_id)
            if token.shop_id is None:
                token.shop_id = shop_id
            if token.shop_id is None:
                raise InvalidRequest("Exchange response has no shop_id and none was supplied")

            with self.locks.hold(token.shop_id):
                self.store.save_token(token)

        except TokenSyncError as e:
            logger.error(f"❌ Falha na autenticação da loja {shop_id}: {e}")
            self.emitter.emit(
                "shop_authenticate",
                shop_id=shop_id,
                status="failed",
                description="Authorization code exchange failed",
                error_message=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise

        logger.info(f"✅ Loja {token.shop_id} autenticada (expira em {ms_to_iso(token.expired_at)})")
        self.emitter.emit(
            "shop_authenticate",
            shop_id=token.shop_id,
            description="Shop connected",
            duration_ms=int((time.monotonic() - started) * 1000),
            data={"expired_at": token.expired_at, "merchant_id": token.merchant_id},
        )
        return token

    def refresh(self, shop_id: int, wait: bool = True, source: str = "manual",
                expected: Optional[AccessToken] = None) -> AccessToken:
        """
        Renova o token de uma loja e substitui o armazenado.

        Se o token armazenado mudar entre a leitura do chamador (expected) e a
        obtenção do lock, outra chamada já renovou: o token atual é retornado
        sem nova troca no marketplace.

        Args:
            shop_id: Loja
            wait: Se False e já houver renovação em andamento, falha com ConflictError
            source: "manual" (sob demanda) ou "auto" (agendador)
            expected: Token lido pelo chamador (padrão: leitura feita aqui, antes do lock)

        Returns:
            Novo token (ou o renovado por outra chamada concorrente)

        Raises:
            ConflictError: wait=False e a loja está ocupada (neste ou em outro processo)
            RefreshError: falha na renovação (token anterior preservado)
        """
        if expected is None:
            expected = self._snapshot(shop_id)
        with self.locks.hold(shop_id, wait=wait):
            return self._refresh_locked(shop_id, source, expected, wait)

    def _snapshot(self, shop_id: int) -> Optional[AccessToken]:
        try:
            return self.store.get_token(shop_id)
        except TokenSyncError as e:
            # A leitura é repetida sob o lock, onde a falha é classificada
            logger.warning(f"⚠️ Leitura prévia do token da loja {shop_id} falhou: {e}")
            return None

    def _refresh_locked(self, shop_id: int, source: str, expected: Optional[AccessToken],
                        wait: bool) -> AccessToken:
        started = time.monotonic()
        current = None
        try:
            current = self.store.get_token(shop_id)
            if current is None or not current.refresh_token:
                raise AuthError(f"No refresh token stored for shop {shop_id}; re-authorization required")

            if expected is not None and _changed(expected, current):
                logger.info(f"⏭️ Token da loja {shop_id} já renovado por outra chamada")
                return current

            claim_id, latest = self._claim(shop_id, current, wait)
            if claim_id is None:
                logger.info(f"⏭️ Token da loja {shop_id} renovado por outro processo")
                return latest

            try:
                new_token = self.gateway.exchange_refresh_token(
                    current.refresh_token, shop_id, current.merchant_id
                )
                new_token.shop_id = shop_id
                if new_token.merchant_id is None:
                    new_token.merchant_id = current.merchant_id
                if not new_token.refresh_token:
                    new_token.refresh_token = current.refresh_token

                if not self.store.replace_claimed_token(new_token, claim_id):
                    raise ConflictError(f"Refresh claim for shop {shop_id} expired before the token was saved")
            except BaseException:
                self._release_claim(shop_id, claim_id)
                raise

        except ConflictError:
            raise

        except TokenSyncError as e:
            error = RefreshError(shop_id, e)
            self._record_refresh(shop_id, source, started, current, None, e)
            raise error from e

        self._record_refresh(shop_id, source, started, current, new_token, None)
        return new_token

    def _claim(self, shop_id: int, current: AccessToken, wait: bool) -> Tuple[Optional[str], AccessToken]:
        """
        Reserva a renovação no banco (exclusão entre processos).

        Returns:
            (claim_id, token). claim_id None significa que outro processo já
            renovou e token é o novo valor armazenado.

        Raises:
            ConflictError: reserva ativa em outro processo (wait=False ou espera esgotada)
        """
        claim_id = uuid.uuid4().hex
        give_up = time.monotonic() + self.claim_wait_seconds
        while True:
            if self.store.claim_refresh(shop_id, current.refresh_token, claim_id,
                                        self.clock(), self.claim_lease_ms):
                return claim_id, current

            latest = self.store.get_token(shop_id)
            if latest is None:
                raise AuthError(f"Shop {shop_id} was disconnected during refresh")
            if _changed(current, latest):
                return None, latest

            if not wait or time.monotonic() >= give_up:
                raise ConflictError(f"Refresh already in progress for shop {shop_id} in another process")
            time.sleep(self.claim_poll_seconds)

    def _release_claim(self, shop_id: int, claim_id: str):
        try:
            self.store.release_refresh_claim(shop_id, claim_id)
        except TokenSyncError as e:
            # A reserva expira sozinha após o lease
            logger.error(f"❌ Erro ao liberar reserva de renovação da loja {shop_id}: {e}")

    def _record_refresh(self, shop_id, source, started, old_token, new_token, error):
        old_expired_at = old_token.expired_at if old_token else None
        new_expired_at = new_token.expired_at if new_token else None
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is None:
            logger.info(f"✅ Token da loja {shop_id} renovado, nova expiração: {ms_to_iso(new_expired_at)}")
        else:
            logger.error(f"❌ Falha ao renovar token da loja {shop_id}: {error}")

        try:
            self.store.log_refresh(
                shop_id,
                success=error is None,
                error_message=str(error) if error else None,
                old_expired_at=old_expired_at,
                new_expired_at=new_expired_at,
                source=source,
            )
        except TokenSyncError as e:
            logger.error(f"❌ Erro ao registrar histórico de renovação da loja {shop_id}: {e}")

        self.emitter.emit(
            "token_refresh",
            shop_id=shop_id,
            status="success" if error is None else "failed",
            source="scheduled" if source == "auto" else "manual",
            description="Token refreshed" if error is None else "Token refresh failed",
            error_message=str(error) if error else None,
            duration_ms=duration_ms,
            data={
                "old_expired_at": old_expired_at,
                "new_expired_at": new_expired_at,
                "error_type": type(error).__name__ if error else None,
            },
        )

    def ensure_valid_token(self, shop_id: int) -> AccessToken:
        """Retorna o token armazenado se válido; caso contrário renova"""
        token = self.store.get_token(shop_id)
        if token is not None and self.is_valid(token):
            return token
        return self.refresh(shop_id, expected=token)

    def disconnect(self, shop_id: int) -> bool:
        """
        Remove a credencial da loja. Único caminho que apaga um token.

        Returns:
            True se havia token armazenado
        """
        with self.locks.hold(shop_id):
            deleted = self.store.delete_token(shop_id)

        self.emitter.emit(
            "shop_disconnect",
            shop_id=shop_id,
            status="success" if deleted else "skipped",
            description="Shop disconnected" if deleted else "No stored token",
        )
        return deleted
