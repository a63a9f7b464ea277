"""
Router dei job di import.
La logica e' nel service; l'esecuzione e' del JobRunner, il server non si blocca.
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from mtg_import.core.config import get_cron_secret, get_orphan_threshold_minutes
from mtg_import.core.errors import (
    ImportPreconditionError,
    InvalidJobRequestError,
    JobConflictError,
    JobNotFoundError,
    JobStateError,
    UpstreamUnavailableError,
)
from mtg_import.routers.deps import get_import_service, get_tenant_id
from mtg_import.schemas.imports import (
    BatchCreateResponse,
    CancelResponse,
    CreateBatchRequest,
    CreateImportRequest,
    ImportJobDetailResponse,
    ImportJobListResponse,
    ImportJobOut,
    JobStatusLiteral,
    RecoverOrphansResponse,
)
from mtg_import.services.import_service import ImportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/imports", tags=["imports"])


def _http_error(e: ValueError) -> HTTPException:
    """Errori di ciclo di vita dei job -> status HTTP."""
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, JobConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ImportPreconditionError):
        return HTTPException(status_code=412, detail=str(e))
    if isinstance(e, UpstreamUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, (JobStateError, InvalidJobRequestError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=409, detail=str(e))


def verify_cron_token(authorization: str | None = Header(default=None)) -> None:
    """Bearer CRON_SECRET, se configurato. Confronto a tempo costante."""
    secret = get_cron_secret()
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("Richiesta cron non autorizzata")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("", response_model=ImportJobOut, status_code=201)
async def create_import(
    body: CreateImportRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Crea un job pending (set, bulk o backfill). Un solo job attivo per tenant, tipo e set."""
    try:
        return await service.create_job(tenant_id, body.kind, body.subset_code, body.priority)
    except ValueError as e:
        logger.warning("create_import rifiutato: %s", e)
        raise _http_error(e)


@router.get("", response_model=ImportJobListResponse)
def list_imports(
    status: JobStatusLiteral | None = None,
    limit: int = 20,
    cursor: str | None = None,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    limit = max(1, min(limit, 100))
    jobs, next_cursor = service.list_jobs(tenant_id, status=status, limit=limit, cursor=cursor)
    return ImportJobListResponse(jobs=jobs, next_cursor=next_cursor)


@router.post("/batch", response_model=BatchCreateResponse, status_code=201)
async def create_batch(
    body: CreateBatchRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Un job backfill per ogni set richiesto; i set gia' in coda vengono saltati."""
    jobs = await service.create_batch(tenant_id, body.subset_codes, body.priority)
    return BatchCreateResponse(created=len(jobs), jobs=jobs)


@router.post("/recover-orphans", response_model=RecoverOrphansResponse, dependencies=[Depends(verify_cron_token)])
def recover_orphans(service: ImportService = Depends(get_import_service)):
    """Endpoint cron: marca failed i job running senza checkpoint recenti."""
    try:
        result = service.recover_orphans(get_orphan_threshold_minutes())
    except Exception as e:
        logger.exception("recover_orphans fallito: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return RecoverOrphansResponse(**result)


@router.get("/{job_id}", response_model=ImportJobDetailResponse)
def get_import(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Dettaglio del job con gli ultimi record importati."""
    try:
        return service.get_job(tenant_id, job_id)
    except ValueError as e:
        raise _http_error(e)


@router.post("/{job_id}/cancel", response_model=CancelResponse)
def cancel_import(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    try:
        status = service.cancel_job(tenant_id, job_id)
    except ValueError as e:
        logger.warning("cancel_import %s: %s", job_id, e)
        raise _http_error(e)
    return CancelResponse(success=True, status=status)


@router.post("/{job_id}/retry", response_model=ImportJobOut, status_code=201)
def retry_import(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Nuovo job che riparte dal checkpoint di un job failed o cancelled."""
    try:
        return service.retry_job(tenant_id, job_id)
    except ValueError as e:
        logger.warning("retry_import %s: %s", job_id, e)
        raise _http_error(e)
