"""
Agendador para renovação automática de tokens.

Este módulo gerencia o agendamento automático usando APScheduler:
- renovação em lote de todas as lojas a cada REFRESH_INTERVAL_MINUTES
- limpeza de sincronizações travadas a cada SYNC_CLEANUP_INTERVAL_MINUTES
"""

import logging
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .models import RefreshReport
from .refresh_scheduler import RefreshScheduler
from .sync_tracker import SyncStatusTracker

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class TokenScheduler:
    """
    Gerenciador de agendamento da renovação de tokens.

    Usa APScheduler para executar os jobs em intervalos regulares.
    """

    REFRESH_JOB_ID = "token_refresh_job"
    CLEANUP_JOB_ID = "sync_cleanup_job"

    def __init__(self, refresh_scheduler: RefreshScheduler, sync_tracker: Optional[SyncStatusTracker] = None,
                 interval_minutes: Optional[int] = None):
        """Inicializa o agendador."""
        self.refresh_scheduler = refresh_scheduler
        self.sync_tracker = sync_tracker
        self.interval_minutes = interval_minutes or config.REFRESH_INTERVAL_MINUTES
        self.is_running = False
        self.start_time = None
        self.last_execution = None
        self.last_report: Optional[RefreshReport] = None
        self.execution_count = 0
        self.error_count = 0
        self._run_lock = threading.Lock()

        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,  # Se múltiplas execuções pendentes, executar apenas uma
                'max_instances': 1,  # Apenas 1 instância por vez
                'misfire_grace_time': 120  # Aceitar execução até 2min atrasada
            }
        )

        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        logger.info("✅ TokenScheduler inicializado")

    def start(self, run_on_startup: bool = config.REFRESH_ON_STARTUP, handle_signals: bool = True) -> bool:
        """
        Inicia o agendador.

        Returns:
            bool: True se iniciado com sucesso, False caso contrário
        """
        if self.is_running:
            logger.warning("Agendador já está rodando")
            return True

        logger.info("=" * 60)
        logger.info("🚀 INICIANDO AGENDADOR DE RENOVAÇÃO")
        logger.info(f"Intervalo: {self.interval_minutes} minutos")
        logger.info(f"Limite de renovação: {self.refresh_scheduler.threshold_minutes} minutos")

        first_run = _utcnow() + timedelta(minutes=self.interval_minutes)
        if run_on_startup:
            logger.info("📍 Renovação inicial agendada para agora")
            first_run = _utcnow()

        self.scheduler.add_job(
            func=self._refresh_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=self.REFRESH_JOB_ID,
            name="Token Refresh Job",
            replace_existing=True,
            next_run_time=first_run
        )

        if self.sync_tracker is not None:
            self.scheduler.add_job(
                func=self._cleanup_job,
                trigger=IntervalTrigger(minutes=config.SYNC_CLEANUP_INTERVAL_MINUTES),
                id=self.CLEANUP_JOB_ID,
                name="Stuck Sync Cleanup Job",
                replace_existing=True
            )

        self.scheduler.start()
        self.is_running = True
        self.start_time = _utcnow()

        next_run = self.get_next_run_time()
        if next_run:
            logger.info(f"⏰ Próxima renovação: {next_run.strftime('%Y-%m-%d %H:%M:%S')} UTC")

        logger.info("✅ AGENDADOR INICIADO COM SUCESSO")
        logger.info("=" * 60)

        if handle_signals:
            self._setup_signal_handlers()
        return True

    def stop(self):
        """Para o agendador."""
        if not self.is_running:
            logger.warning("Agendador não está rodando")
            return

        logger.info("🛑 Parando agendador...")
        self.scheduler.shutdown(wait=True)
        self.is_running = False

        if self.start_time:
            uptime = _utcnow() - self.start_time
            logger.info("📊 Estatísticas finais:")
            logger.info(f"   Uptime: {uptime}")
            logger.info(f"   Execuções: {self.execution_count}")
            logger.info(f"   Erros: {self.error_count}")

        logger.info("✅ Agendador parado com sucesso")

    def _refresh_job(self) -> RefreshReport:
        """Job de renovação executado pelo scheduler (ou manualmente)."""
        with self._run_lock:
            logger.info(f"⏰ Execução #{self.execution_count + 1}")
            report = self.refresh_scheduler.run(source="auto")
            self.last_report = report
            self.last_execution = _utcnow()
            self.execution_count += 1
            return report

    def _cleanup_job(self):
        """Job de limpeza de sincronizações travadas."""
        reset = self.sync_tracker.reset_stuck(config.SYNC_STUCK_MINUTES)
        if reset:
            logger.info(f"🧹 {len(reset)} sincronizações travadas resetadas: {reset}")
        return reset

    def _on_job_executed(self, event):
        """Callback quando job é executado com sucesso."""
        if event.job_id == self.REFRESH_JOB_ID:
            next_run = self.get_next_run_time()
            if next_run:
                time_until = (next_run - _utcnow()).total_seconds() / 60
                logger.info(f"⏰ Próxima renovação em {time_until:.1f} minutos")

    def _on_job_error(self, event):
        """Callback quando job tem erro."""
        logger.error(f"❌ Erro no job {event.job_id}: {event.exception}")
        self.error_count += 1

    def _on_job_missed(self, event):
        """Callback quando job é perdido (coalesce garante nova execução no próximo ciclo)."""
        logger.warning(f"⚠️ Execução perdida: {event.job_id}")

    def get_next_run_time(self) -> Optional[datetime]:
        """
        Obtém o horário da próxima renovação agendada.

        Returns:
            datetime da próxima execução ou None
        """
        if not self.is_running:
            return None

        job = self.scheduler.get_job(self.REFRESH_JOB_ID)
        if job:
            return job.next_run_time

        return None

    def get_status(self) -> dict:
        """
        Retorna o status atual do agendador.

        Returns:
            Dicionário com informações de status
        """
        status = {
            "is_running": self.is_running,
            "sync_enabled": config.TOKEN_SYNC_ENABLED,
            "interval_minutes": self.interval_minutes,
            "threshold_minutes": self.refresh_scheduler.threshold_minutes,
            "execution_count": self.execution_count,
            "error_count": self.error_count,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "last_report": self.last_report.model_dump(exclude={"results"}) if self.last_report else None
        }

        next_run = self.get_next_run_time()
        if next_run:
            status["next_execution"] = next_run.isoformat()
            status["minutes_until_next"] = (next_run - _utcnow()).total_seconds() / 60

        if self.start_time and self.is_running:
            uptime = _utcnow() - self.start_time
            status["uptime_seconds"] = uptime.total_seconds()

        return status

    def trigger_refresh_now(self) -> RefreshReport:
        """
        Dispara uma renovação imediata (fora do agendamento).

        Returns:
            RefreshReport da execução
        """
        logger.info("🔄 Renovação manual solicitada")
        return self._refresh_job()

    def _setup_signal_handlers(self):
        """Configura handlers para shutdown gracioso."""
        # Signal handlers só funcionam na thread principal
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Não é thread principal - pulando configuração de signal handlers")
            return

        def signal_handler(sig, frame):
            logger.info(f"📍 Sinal {sig} recebido - encerrando graciosamente...")
            self.stop()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        logger.debug("Signal handlers configurados")


# Instância global do scheduler
_scheduler_instance = None


def get_scheduler_instance() -> TokenScheduler:
    """
    Retorna a instância singleton do scheduler.

    Returns:
        TokenScheduler montado com os componentes padrão
    """
    global _scheduler_instance

    if _scheduler_instance is None:
        from .services import get_refresh_scheduler, get_sync_tracker
        _scheduler_instance = TokenScheduler(get_refresh_scheduler(), get_sync_tracker())

    return _scheduler_instance
