"""Endpoint sui set: elenco importabile, audit per set, verifica di completezza."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from mtg_import.routers.deps import get_import_service, get_tenant_id
from mtg_import.schemas.imports import (
    RebuildAuditsResponse,
    SubsetAuditOut,
    SubsetOut,
    SubsetVerifyResponse,
)
from mtg_import.services.import_service import ImportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sets", tags=["sets"])


@router.get("", response_model=list[SubsetOut])
async def list_sets(
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Set Scryfall importabili (tipi di set e physical only dalle impostazioni)."""
    try:
        return await service.list_importable_subsets(tenant_id)
    except Exception as e:
        logger.exception("list_sets failed: %s", e)
        raise HTTPException(status_code=502, detail=f"Errore recupero set da Scryfall: {e}")


@router.get("/audits", response_model=list[SubsetAuditOut])
def list_audits(
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    return service.list_audits(tenant_id)


@router.post("/audits/rebuild", response_model=RebuildAuditsResponse)
async def rebuild_audits(
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Ricalcola da zero gli audit del tenant da imported_records."""
    updated = await service.rebuild_audits(tenant_id)
    return RebuildAuditsResponse(updated=updated)


@router.get("/{subset_code}/verify", response_model=SubsetVerifyResponse)
async def verify_set(
    subset_code: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    return await service.verify_subset(tenant_id, subset_code)
