# main.py - API de credenciais das lojas
"""
API HTTP do serviço de tokens das lojas.

- /api/cron/refresh-tokens: gatilho autenticado da renovação em lote
- /api/shops/...: autenticação, renovação sob demanda, desconexão e
  estado de sincronização (protegidos por X-API-Key)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from shop_token_sync import config
from shop_token_sync.errors import (
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
from shop_token_sync.refresh_scheduler import RefreshScheduler
from shop_token_sync.services import get_refresh_scheduler, get_sync_tracker, get_token_manager
from shop_token_sync.sync_tracker import SyncStatusTracker
from shop_token_sync.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

app = FastAPI(title="Shop Token Sync", version="1.0.0")

# Configuração de CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# Configuração de Autenticação via API Key
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """Verifica se a API Key é válida"""
    expected_api_key = config.API_SECRET_KEY

    if not expected_api_key:
        logger.error("API_SECRET_KEY não configurada no servidor")
        raise HTTPException(
            status_code=500,
            detail="Servidor mal configurado - contate o administrador"
        )

    if not api_key:
        raise HTTPException(
            status_code=403,
            detail="API Key não fornecida. Adicione o header 'X-API-Key'"
        )

    if api_key != expected_api_key:
        raise HTTPException(
            status_code=403,
            detail="API Key inválida"
        )

    return api_key


def is_cron_authorized(request: Request) -> bool:
    """Segredo compartilhado (match exato) ou header da plataforma de cron confiável"""
    if config.CRON_SECRET:
        if request.headers.get("authorization") == f"Bearer {config.CRON_SECRET}":
            return True
    return request.headers.get(config.TRUSTED_CRON_HEADER) == "1"


def backend_config_error() -> Optional[str]:
    if config.AUTH_GATEWAY_MODE == "http" and not config.is_partner_configured():
        return "Missing marketplace partner configuration"
    return None


# Models
class AuthCallbackRequest(BaseModel):
    code: str = ""
    shop_id: Optional[int] = None


class SyncCompleteRequest(BaseModel):
    synced_count: int = Field(0, ge=0)


class SyncFailRequest(BaseModel):
    error: str


# Tratamento de erros do domínio

def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _status_for(error: Exception) -> int:
    if isinstance(error, InvalidRequest):
        return 400
    if isinstance(error, AuthError):
        return 401
    if isinstance(error, (ConflictError, InvalidTransitionError)):
        return 409
    if isinstance(error, NetworkError):
        return 502
    if isinstance(error, StorageError):
        return 503
    return 500


@app.exception_handler(RefreshError)
async def refresh_error_handler(request: Request, exc: RefreshError):
    if exc.requires_reauthorization:
        return _error_response(
            401, str(exc.cause),
            shop_id=exc.shop_id,
            action="reconnect_shop",
            hint="Shop authorization is no longer valid. Reconnect the shop."
        )
    return _error_response(
        _status_for(exc.cause), str(exc.cause),
        shop_id=exc.shop_id,
        retryable=exc.retryable
    )


@app.exception_handler(TokenSyncError)
async def token_sync_error_handler(request: Request, exc: TokenSyncError):
    extra = {}
    if isinstance(exc, InvalidTransitionError):
        extra["type"] = "invalid_transition"
    elif isinstance(exc, ConflictError):
        extra["type"] = "conflict"
    elif isinstance(exc, ConfigError):
        logger.error(f"❌ Erro de configuração: {exc}")
    return _error_response(_status_for(exc), str(exc), **extra)


# Endpoints

@app.api_route("/api/cron/refresh-tokens", methods=["GET", "POST"])
async def cron_refresh_tokens(
    request: Request,
    refresh_scheduler: RefreshScheduler = Depends(get_refresh_scheduler)
):
    """
    Gatilho da renovação em lote (cron da plataforma ou disparo manual).
    Body opcional: {"shop_id": 123} para renovar apenas uma loja.
    """
    if not is_cron_authorized(request):
        logger.warning("⚠️ Chamada de cron não autorizada rejeitada")
        return _error_response(401, "Unauthorized")

    config_error = backend_config_error()
    if config_error:
        logger.error(f"❌ {config_error}")
        return _error_response(500, config_error)

    shop_id = None
    raw_body = await request.body()
    if raw_body:
        try:
            body = json.loads(raw_body)
            if isinstance(body, dict) and body.get("shop_id"):
                shop_id = int(body["shop_id"])
        except (ValueError, TypeError):
            logger.debug("Body inválido no cron - processando todas as lojas")

    report = await run_in_threadpool(refresh_scheduler.run, shop_id, "auto" if shop_id is None else "manual")

    logger.info(
        f"[CRON] Resultado: processed={report.processed}, success={report.success_count}, "
        f"failed={report.failed_count}, skipped={report.skipped_count}"
    )
    return report.model_dump(mode="json")


@app.post("/api/auth/callback")
def auth_callback(
    body: AuthCallbackRequest,
    api_key: str = Depends(verify_api_key),
    manager: TokenLifecycleManager = Depends(get_token_manager)
):
    """Troca o code do callback de autorização por um token da loja"""
    token = manager.authenticate(body.code, body.shop_id)
    return {"status": "success", "token": token.masked()}


@app.get("/api/shops/{shop_id}/token")
def token_status(
    shop_id: int,
    api_key: str = Depends(verify_api_key),
    manager: TokenLifecycleManager = Depends(get_token_manager)
):
    """Estado do token (sem segredos)"""
    token = manager.get_stored_token(shop_id)
    if token is None:
        return _error_response(404, f"Shop {shop_id} is not connected", action="reconnect_shop")

    return {
        "token": token.masked(),
        "is_valid": manager.is_valid(token),
        "recent_refreshes": manager.store.get_refresh_logs(shop_id, limit=5)
    }


@app.post("/api/shops/{shop_id}/refresh")
def refresh_shop_token(
    shop_id: int,
    api_key: str = Depends(verify_api_key),
    manager: TokenLifecycleManager = Depends(get_token_manager)
):
    """Renovação sob demanda. Falhas chegam ao chamador (ex.: pedir reconexão)."""
    token = manager.refresh(shop_id, source="manual")
    return {"status": "success", "token": token.masked()}


@app.delete("/api/shops/{shop_id}/token")
def disconnect_shop(
    shop_id: int,
    api_key: str = Depends(verify_api_key),
    manager: TokenLifecycleManager = Depends(get_token_manager)
):
    """Desconexão explícita: único caminho que remove a credencial"""
    deleted = manager.disconnect(shop_id)
    if not deleted:
        return _error_response(404, f"Shop {shop_id} is not connected")
    return {"status": "success", "shop_id": shop_id}


@app.get("/api/shops/{shop_id}/sync-status")
def sync_status(
    shop_id: int,
    api_key: str = Depends(verify_api_key),
    tracker: SyncStatusTracker = Depends(get_sync_tracker)
):
    return tracker.query(shop_id).to_dict()


@app.post("/api/shops/{shop_id}/sync/start")
def sync_start(
    shop_id: int,
    api_key: str = Depends(verify_api_key),
    tracker: SyncStatusTracker = Depends(get_sync_tracker)
):
    return tracker.start(shop_id).to_dict()


@app.post("/api/shops/{shop_id}/sync/complete")
def sync_complete(
    shop_id: int,
    body: SyncCompleteRequest,
    api_key: str = Depends(verify_api_key),
    tracker: SyncStatusTracker = Depends(get_sync_tracker)
):
    return tracker.complete(shop_id, body.synced_count).to_dict()


@app.post("/api/shops/{shop_id}/sync/fail")
def sync_fail(
    shop_id: int,
    body: SyncFailRequest,
    api_key: str = Depends(verify_api_key),
    tracker: SyncStatusTracker = Depends(get_sync_tracker)
):
    return tracker.fail(shop_id, body.error).to_dict()


@app.get("/api/scheduler/status")
async def scheduler_status(api_key: str = Depends(verify_api_key)):
    """Status do agendador em background"""
    if not config.TOKEN_SYNC_ENABLED:
        return {"is_running": False, "sync_enabled": False}

    from shop_token_sync.scheduler import get_scheduler_instance
    return get_scheduler_instance().get_status()


@app.get("/health")
async def health_check():
    """Health check endpoint - sem autenticação"""
    config_error = backend_config_error()
    return {
        "status": "healthy" if not config_error else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "gateway_mode": config.AUTH_GATEWAY_MODE,
        "sync_enabled": config.TOKEN_SYNC_ENABLED,
        "config_error": config_error
    }


@app.on_event("startup")
async def startup_event():
    """Executado ao iniciar a aplicação"""
    logger.info("🚀 Aplicação iniciada")
    config.validate_config()

    if config.TOKEN_SYNC_ENABLED:
        from shop_token_sync.scheduler import get_scheduler_instance
        get_scheduler_instance().start(handle_signals=False)

    logger.info("✅ Startup completo")


@app.on_event("shutdown")
async def shutdown_event():
    """Executado ao encerrar a aplicação"""
    logger.info("🛑 Encerrando aplicação...")

    if config.TOKEN_SYNC_ENABLED:
        from shop_token_sync.scheduler import get_scheduler_instance
        scheduler = get_scheduler_instance()
        if scheduler.is_running:
            scheduler.stop()

    logger.info("✅ Shutdown completo")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
