#!/usr/bin/env python
"""
Script para executar a renovação de tokens de forma independente.

Útil para:
- Rodar o agendador sem iniciar o servidor FastAPI
- Executar uma única rodada de renovação (--once), ex.: a partir de um cron externo
- Deploy como processo separado

Uso:
    python run_token_sync.py           # agendador contínuo
    python run_token_sync.py --once    # uma rodada e sai
"""

import json
import logging
import sys
import time
from datetime import datetime

from shop_token_sync import config

logger = logging.getLogger(__name__)


def run_once():
    """Executa uma rodada de renovação e imprime o relatório."""
    from shop_token_sync.services import get_refresh_scheduler, get_sync_tracker

    reset = get_sync_tracker().reset_stuck(config.SYNC_STUCK_MINUTES)
    if reset:
        logger.info(f"🧹 Sincronizações travadas resetadas: {reset}")

    report = get_refresh_scheduler().run(source="auto")
    print(json.dumps(report.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return 0 if report.failed_count == 0 else 2


def main():
    """Função principal para executar o serviço."""
    logger.info("=" * 60)
    logger.info("SHOP TOKEN SYNC - MODO STANDALONE")
    logger.info("=" * 60)
    logger.info(f"Iniciado em: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    config.validate_config()

    if "--once" in sys.argv:
        return run_once()

    if not config.TOKEN_SYNC_ENABLED:
        logger.error("❌ TOKEN_SYNC_ENABLED não está habilitado no .env")
        logger.info("Configure TOKEN_SYNC_ENABLED=true para executar")
        return 1

    from shop_token_sync.scheduler import get_scheduler_instance

    scheduler = get_scheduler_instance()

    # O scheduler registra os handlers de SIGINT/SIGTERM (thread principal)
    logger.info("🚀 Iniciando scheduler...")
    if not scheduler.start():
        logger.error("❌ Falha ao iniciar o serviço")
        return 1

    logger.info("✅ Serviço rodando com sucesso!")
    logger.info("Pressione Ctrl+C para parar")
    logger.info("-" * 60)

    try:
        # Manter o processo vivo
        while scheduler.is_running:
            time.sleep(60)

            # Status a cada 15 minutos
            if datetime.now().minute % 15 == 0:
                status = scheduler.get_status()
                logger.info(f"📊 Status: Execuções={status['execution_count']}, "
                            f"Erros={status['error_count']}, "
                            f"Próxima em {status.get('minutes_until_next', 0):.1f} min")
    except KeyboardInterrupt:
        logger.info("⚠️ Interrompido pelo usuário")
        scheduler.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
