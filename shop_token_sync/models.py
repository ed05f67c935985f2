"""
Modelos de dados: credencial por loja, estado de sincronização e relatório
de renovação em lote.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Retorna o timestamp atual em milissegundos (epoch UTC)."""
    return int(time.time() * 1000)


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


def mask_secret(value: Optional[str], show: int = 4) -> str:
    """Oculta um segredo para exibição em logs."""
    if not value:
        return "<empty>"
    if len(value) <= show:
        return "*" * len(value)
    return value[:show] + "…" + "*" * (len(value) - show)


class AccessToken(BaseModel):
    """Credencial delegada de uma loja."""

    access_token: str
    refresh_token: str = ""
    expire_in: int = 0
    # None significa "não expira"
    expired_at: Optional[int] = None
    shop_id: Optional[int] = None
    merchant_id: Optional[int] = None
    request_id: Optional[str] = None

    @classmethod
    def from_exchange(cls, payload: Dict[str, Any], shop_id: Optional[int] = None,
                      issued_at_ms: Optional[int] = None) -> "AccessToken":
        """
        Normaliza a resposta da troca de tokens.

        A resposta nem sempre vem completa: shop_id é preenchido com o valor
        informado pelo chamador e expired_at é calculado a partir de expire_in.

        Args:
            payload: Resposta do AuthGateway
            shop_id: Loja informada pelo chamador (usada se a resposta omitir)
            issued_at_ms: Momento da emissão (padrão: agora)

        Returns:
            AccessToken normalizado
        """
        expire_in = int(payload.get("expire_in") or 0)
        expired_at = payload.get("expired_at")
        if expired_at is None and expire_in:
            issued = issued_at_ms if issued_at_ms is not None else now_ms()
            expired_at = issued + expire_in * 1000

        return cls(
            access_token=payload.get("access_token") or "",
            refresh_token=payload.get("refresh_token") or "",
            expire_in=expire_in,
            expired_at=int(expired_at) if expired_at is not None else None,
            shop_id=payload.get("shop_id") or shop_id,
            merchant_id=payload.get("merchant_id") or None,
            request_id=payload.get("request_id") or None,
        )

    def masked(self) -> Dict[str, Any]:
        """Representação segura para logs e respostas HTTP."""
        return {
            "shop_id": self.shop_id,
            "merchant_id": self.merchant_id,
            "access_token": mask_secret(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "expire_in": self.expire_in,
            "expired_at": self.expired_at,
            "expires_at_iso": ms_to_iso(self.expired_at),
        }


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class ShopSyncStatus(BaseModel):
    """Estado das execuções de ingestão de uma loja."""

    shop_id: int
    is_syncing: bool = False
    is_initial_sync_done: bool = False
    last_sync_at: Optional[datetime] = None
    total_synced: int = 0
    last_error: Optional[str] = None
    sync_started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def state(self) -> SyncState:
        if self.is_syncing:
            return SyncState.SYNCING
        if self.last_error:
            return SyncState.ERROR
        return SyncState.IDLE

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["state"] = self.state.value
        return data


class RefreshStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"


class ShopRefreshResult(BaseModel):
    shop_id: int
    status: RefreshStatus
    error: Optional[str] = None
    error_type: Optional[str] = None
    reason: Optional[str] = None
    old_expiry: Optional[str] = None
    new_expiry: Optional[str] = None


class RefreshFailure(BaseModel):
    shop_id: int
    error: str


class RefreshReport(BaseModel):
    """Resultado agregado de uma execução do agendador."""

    success: bool = True
    message: str = ""
    processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    deferred_count: int = 0
    timed_out: bool = False
    failures: List[RefreshFailure] = Field(default_factory=list)
    results: List[ShopRefreshResult] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[ShopRefreshResult], timed_out: bool = False) -> "RefreshReport":
        ordered = sorted(results, key=lambda r: r.shop_id)
        counts = {status: 0 for status in RefreshStatus}
        for result in ordered:
            counts[result.status] += 1

        report = cls(
            processed=counts[RefreshStatus.SUCCESS] + counts[RefreshStatus.FAILED] + counts[RefreshStatus.SKIPPED],
            success_count=counts[RefreshStatus.SUCCESS],
            failed_count=counts[RefreshStatus.FAILED],
            skipped_count=counts[RefreshStatus.SKIPPED],
            deferred_count=counts[RefreshStatus.DEFERRED],
            timed_out=timed_out,
            failures=[
                RefreshFailure(shop_id=r.shop_id, error=r.error or "unknown error")
                for r in ordered if r.status == RefreshStatus.FAILED
            ],
            results=ordered,
        )
        report.message = (
            f"Processed {report.processed} shops: {report.success_count} success, "
            f"{report.failed_count} failed, {report.skipped_count} skipped"
        )
        if timed_out:
            report.message += f" ({report.deferred_count} deferred: run budget exceeded)"
        return report
