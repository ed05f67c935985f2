"""
Renovação em lote de todas as lojas conectadas.

Invocado pelo agendador em background, pelo endpoint de cron ou manualmente.
Cada loja é processada de forma isolada: a falha de uma nunca interrompe
nem atrasa as demais. O prazo da execução é verificado entre lojas; uma
renovação já iniciada sempre termina antes do prazo ser respeitado.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from . import config
from .errors import ConflictError, RefreshError
from .models import RefreshReport, RefreshStatus, ShopRefreshResult, ms_to_iso
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """
    Fan-out de renovação sobre todas as lojas com token persistido.

    Args:
        manager: TokenLifecycleManager usado para cada loja
        threshold_minutes: Renova tokens que expiram dentro deste limite.
            Padrão: config.get_effective_threshold_minutes() (>= intervalo + buffer)
        max_workers: Lojas processadas em paralelo
        run_budget_seconds: Prazo da execução; ao estourar, retorna o parcial
        delay_seconds: Pausa entre renovações de um mesmo worker
        monotonic: Relógio monotônico (injetável em testes)
    """

    def __init__(self, manager: TokenLifecycleManager,
                 threshold_minutes: Optional[float] = None,
                 max_workers: Optional[int] = None,
                 run_budget_seconds: Optional[float] = None,
                 delay_seconds: Optional[float] = None,
                 monotonic: Callable[[], float] = time.monotonic):
        self.manager = manager
        self.threshold_minutes = (
            threshold_minutes if threshold_minutes is not None
            else config.get_effective_threshold_minutes()
        )
        self.max_workers = max(1, max_workers or config.REFRESH_MAX_WORKERS)
        self.run_budget_seconds = (
            run_budget_seconds if run_budget_seconds is not None
            else config.REFRESH_RUN_BUDGET_SECONDS
        )
        self.delay_seconds = delay_seconds if delay_seconds is not None else config.REFRESH_DELAY_SECONDS
        self.monotonic = monotonic

        if self.threshold_minutes < manager.buffer_minutes:
            logger.warning(
                f"⚠️ Limite de renovação ({self.threshold_minutes} min) menor que o buffer "
                f"do manager ({manager.buffer_minutes} min)"
            )

    def run(self, shop_id: Optional[int] = None, source: str = "auto") -> RefreshReport:
        """
        Executa uma rodada de renovação.

        Args:
            shop_id: Se informado, renova apenas esta loja, independente da validade
            source: "auto" (agendador/cron) ou "manual"

        Returns:
            RefreshReport com contagens e resultados por loja
        """
        started = self.monotonic()
        deadline = started + self.run_budget_seconds
        force = shop_id is not None

        if force:
            shop_ids = [shop_id]
        else:
            shop_ids = self.manager.store.list_shop_ids()

        logger.info("=" * 60)
        logger.info(f"🔄 RENOVAÇÃO EM LOTE: {len(shop_ids)} lojas (limite {self.threshold_minutes} min)")

        results: List[ShopRefreshResult] = []
        if shop_ids:
            workers = min(self.max_workers, len(shop_ids))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="token-refresh") as executor:
                futures = [
                    executor.submit(self._process_shop, sid, force, deadline, source)
                    for sid in shop_ids
                ]
                results = [future.result() for future in futures]

        timed_out = any(r.status == RefreshStatus.DEFERRED for r in results)
        report = RefreshReport.from_results(results, timed_out=timed_out)
        duration_ms = int((self.monotonic() - started) * 1000)

        logger.info(f"✅ {report.message}")
        if timed_out:
            logger.warning(f"⏱️ Prazo de {self.run_budget_seconds}s excedido - {report.deferred_count} lojas adiadas")
        logger.info("=" * 60)

        self.manager.emitter.emit(
            "token_refresh_batch",
            status="failed" if report.failed_count else "success",
            source="scheduled" if source == "auto" else "manual",
            description=report.message,
            duration_ms=duration_ms,
            data={
                "processed": report.processed,
                "success_count": report.success_count,
                "failed_count": report.failed_count,
                "skipped_count": report.skipped_count,
                "deferred_count": report.deferred_count,
                "timed_out": report.timed_out,
            },
        )
        return report

    def _process_shop(self, shop_id: int, force: bool, deadline: float, source: str) -> ShopRefreshResult:
        """Processa uma loja. Nunca levanta exceção: todo desfecho vira um resultado."""
        if self.monotonic() >= deadline:
            return ShopRefreshResult(shop_id=shop_id, status=RefreshStatus.DEFERRED, reason="run_budget_exceeded")

        try:
            token = self.manager.get_stored_token(shop_id)
            if token is None:
                return ShopRefreshResult(
                    shop_id=shop_id,
                    status=RefreshStatus.FAILED,
                    error="Shop not found",
                    error_type="NotFound",
                )

            if not token.refresh_token:
                logger.info(f"⏭️ Loja {shop_id} sem refresh_token - pulando")
                return ShopRefreshResult(
                    shop_id=shop_id,
                    status=RefreshStatus.SKIPPED,
                    reason="missing_refresh_token",
                    error="Missing refresh_token",
                )

            if not force and self.manager.is_valid(token, self.threshold_minutes):
                logger.debug(f"⏭️ Loja {shop_id} com token válido até {ms_to_iso(token.expired_at)}")
                return ShopRefreshResult(
                    shop_id=shop_id,
                    status=RefreshStatus.SKIPPED,
                    reason="token_valid",
                    old_expiry=ms_to_iso(token.expired_at),
                )

            try:
                new_token = self.manager.refresh(shop_id, wait=False, source=source, expected=token)
            finally:
                self._pause(deadline)

            return ShopRefreshResult(
                shop_id=shop_id,
                status=RefreshStatus.SUCCESS,
                old_expiry=ms_to_iso(token.expired_at),
                new_expiry=ms_to_iso(new_token.expired_at),
            )

        except ConflictError:
            logger.info(f"⏭️ Renovação da loja {shop_id} já em andamento - pulando")
            return ShopRefreshResult(shop_id=shop_id, status=RefreshStatus.SKIPPED, reason="refresh_in_progress")

        except RefreshError as e:
            return ShopRefreshResult(
                shop_id=shop_id,
                status=RefreshStatus.FAILED,
                error=str(e.cause),
                error_type=type(e.cause).__name__,
            )

        except Exception as e:
            logger.exception(f"❌ Erro inesperado ao processar loja {shop_id}: {e}")
            return ShopRefreshResult(
                shop_id=shop_id,
                status=RefreshStatus.FAILED,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )

    def _pause(self, deadline: float):
        if self.delay_seconds <= 0:
            return
        remaining = deadline - self.monotonic()
        if remaining > 0:
            time.sleep(min(self.delay_seconds, remaining))
