"""
Configurações do serviço de renovação de tokens das lojas.

Este arquivo centraliza todas as configurações necessárias para o funcionamento
da renovação automática de tokens e do controle de sincronização por loja.
"""

import os
import logging

from dotenv import load_dotenv

# Carregar variáveis de ambiente do .env (se existir)
load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).lower() == "true"


# ===========================
# Configurações de Logging
# ===========================

# Nível de log (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Salvar logs em arquivo
LOG_TO_FILE = _env_bool("LOG_TO_FILE", "false")

# Nome do arquivo de log
LOG_FILE_NAME = os.getenv("LOG_FILE_NAME", "shop_token_sync.log")

_handlers = [logging.StreamHandler()]
if LOG_TO_FILE:
    _handlers.append(logging.FileHandler(LOG_FILE_NAME))

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=_handlers
)

# ===========================
# Configurações de Renovação
# ===========================

# Habilitar/desabilitar o agendador em background
TOKEN_SYNC_ENABLED = _env_bool("TOKEN_SYNC_ENABLED", "false")

# Intervalo entre execuções do agendador de renovação (minutos)
REFRESH_INTERVAL_MINUTES = int(os.getenv("REFRESH_INTERVAL_MINUTES", "60"))

# Margem subtraída da expiração para considerar um token ainda válido
TOKEN_BUFFER_MINUTES = int(os.getenv("TOKEN_BUFFER_MINUTES", "5"))

# Tokens que expiram dentro deste limite são renovados pelo agendador
# Nunca menor que intervalo + buffer (ver validate_config)
REFRESH_THRESHOLD_MINUTES = int(os.getenv("REFRESH_THRESHOLD_MINUTES", "180"))

# Tempo máximo de uma execução em lote (segundos)
REFRESH_RUN_BUDGET_SECONDS = float(os.getenv("REFRESH_RUN_BUDGET_SECONDS", "55"))

# Quantidade de lojas processadas em paralelo
REFRESH_MAX_WORKERS = int(os.getenv("REFRESH_MAX_WORKERS", "4"))

# Pausa entre renovações de um mesmo worker (evita rate limit do marketplace)
REFRESH_DELAY_SECONDS = float(os.getenv("REFRESH_DELAY_SECONDS", "1"))

# Executar uma renovação ao iniciar o serviço
REFRESH_ON_STARTUP = _env_bool("REFRESH_ON_STARTUP", "true")

# Validade da reserva de renovação gravada no banco (compartilhada entre processos)
# Deve ser maior que GATEWAY_TIMEOUT_SECONDS
REFRESH_CLAIM_LEASE_SECONDS = int(os.getenv("REFRESH_CLAIM_LEASE_SECONDS", "60"))

# Quanto tempo uma renovação sob demanda espera a de outro processo terminar
REFRESH_CLAIM_WAIT_SECONDS = float(os.getenv("REFRESH_CLAIM_WAIT_SECONDS", "30"))

# ===========================
# Configurações de Sincronização (ingestão)
# ===========================

# Sincronizações marcadas como ativas há mais tempo que isso são resetadas
SYNC_STUCK_MINUTES = int(os.getenv("SYNC_STUCK_MINUTES", "30"))

# Intervalo do job de limpeza de sincronizações travadas
SYNC_CLEANUP_INTERVAL_MINUTES = int(os.getenv("SYNC_CLEANUP_INTERVAL_MINUTES", "10"))

# ===========================
# Configurações de Acesso HTTP
# ===========================

# Segredo esperado no header Authorization do cron ("Bearer <segredo>")
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Header enviado pela plataforma de cron confiável (valor "1")
TRUSTED_CRON_HEADER = os.getenv("TRUSTED_CRON_HEADER", "x-vercel-cron")

# Chave exigida no header X-API-Key dos endpoints de loja
API_SECRET_KEY = os.getenv("API_SECRET_KEY", "")

# Origens permitidas (CORS)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "").split(",") if os.getenv("ALLOWED_ORIGINS") else ["*"]

# ===========================
# Configurações do Marketplace (AuthGateway)
# ===========================

# "http" troca tokens com o marketplace; "offline" gera tokens sintéticos (apenas testes/dev)
AUTH_GATEWAY_MODE = os.getenv("AUTH_GATEWAY_MODE", "http").lower()

SHOPEE_PARTNER_ID = int(os.getenv("SHOPEE_PARTNER_ID", "0") or 0)
SHOPEE_PARTNER_KEY = os.getenv("SHOPEE_PARTNER_KEY", "")
SHOPEE_BASE_URL = os.getenv("SHOPEE_BASE_URL", "https://partner.shopeemobile.com")
SHOPEE_PROXY_URL = os.getenv("SHOPEE_PROXY_URL", "")

# Timeout das chamadas ao marketplace em segundos
GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

# ===========================
# Configurações de Persistência
# ===========================

DATABASE_PATH = os.getenv("DATABASE_PATH", "shop_tokens.db")

# ===========================
# Configurações de Eventos
# ===========================

# Webhook que recebe os eventos estruturados (opcional)
EVENTS_WEBHOOK_URL = os.getenv("EVENTS_WEBHOOK_URL", "")
EVENTS_WEBHOOK_API_KEY = os.getenv("EVENTS_WEBHOOK_API_KEY", "")
EVENTS_WEBHOOK_TIMEOUT = int(os.getenv("EVENTS_WEBHOOK_TIMEOUT", "10"))

# ===========================
# Helpers e Funções Utilitárias
# ===========================

def get_refresh_interval_seconds():
    """Retorna o intervalo do agendador em segundos."""
    return REFRESH_INTERVAL_MINUTES * 60


def get_minimum_threshold_minutes():
    """Menor limite que garante que nenhum token expira entre duas execuções."""
    return REFRESH_INTERVAL_MINUTES + TOKEN_BUFFER_MINUTES


def get_effective_threshold_minutes():
    """Retorna o limite de renovação efetivamente usado pelo agendador."""
    return max(REFRESH_THRESHOLD_MINUTES, get_minimum_threshold_minutes())


def is_partner_configured():
    """Verifica se as credenciais de parceiro estão configuradas."""
    return bool(SHOPEE_PARTNER_ID and SHOPEE_PARTNER_KEY)


def is_events_webhook_configured():
    return bool(EVENTS_WEBHOOK_URL)


# ===========================
# Validação de Configurações
# ===========================

def validate_config():
    """
    Valida as configurações e emite avisos se necessário.

    Returns:
        list: Avisos emitidos (vazia se tudo estiver ok)
    """
    logger = logging.getLogger(__name__)
    warnings = []

    if REFRESH_THRESHOLD_MINUTES < get_minimum_threshold_minutes():
        warnings.append(
            f"REFRESH_THRESHOLD_MINUTES={REFRESH_THRESHOLD_MINUTES} é menor que "
            f"intervalo + buffer ({get_minimum_threshold_minutes()}); usando o mínimo"
        )

    if not CRON_SECRET:
        warnings.append("CRON_SECRET não configurado - cron aceito apenas via header confiável")

    if AUTH_GATEWAY_MODE == "offline":
        warnings.append("AUTH_GATEWAY_MODE=offline - tokens sintéticos, NÃO usar em produção")
    elif not is_partner_configured():
        warnings.append("SHOPEE_PARTNER_ID/SHOPEE_PARTNER_KEY não configurados")

    if not API_SECRET_KEY:
        warnings.append("API_SECRET_KEY não configurada - endpoints de loja indisponíveis")

    if TOKEN_SYNC_ENABLED:
        logger.info("✅ Renovação automática de tokens HABILITADA")
        logger.info(f"   - Intervalo: {REFRESH_INTERVAL_MINUTES} minutos")
        logger.info(f"   - Buffer: {TOKEN_BUFFER_MINUTES} minutos")
        logger.info(f"   - Limite de renovação: {get_effective_threshold_minutes()} minutos")
    else:
        logger.info("ℹ️ Renovação automática de tokens DESABILITADA")

    for warning in warnings:
        logger.warning(f"⚠️ {warning}")

    return warnings
