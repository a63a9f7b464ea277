"""Dependency comuni ai router: tenant e servizio di import."""

from fastapi import Header, HTTPException, Request

from mtg_import.services.import_service import ImportService


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    """Il tenant arriva nell'header X-Tenant-Id."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return x_tenant_id.strip()


def get_import_service(request: Request) -> ImportService:
    state = request.app.state
    return ImportService(
        scryfall=state.scryfall,
        saleor=state.saleor,
        runner=getattr(state, "runner", None),
        session_factory=getattr(state, "session_factory", None),
    )
