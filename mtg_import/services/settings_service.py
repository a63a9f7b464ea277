"""Lettura delle impostazioni di import del tenant."""

from sqlalchemy.orm import Session

from mtg_import.importer.filters import create_card_filter
from mtg_import.models import ImportSettings, JobKind
from mtg_import.models.import_settings import DEFAULT_IMPORTABLE_SET_TYPES


def get_settings(db: Session, tenant_id: str) -> ImportSettings | None:
    """Riga di impostazioni del tenant; None = usare i default."""
    return db.query(ImportSettings).filter(ImportSettings.tenant_id == tenant_id).first()


def is_physical_only(settings: ImportSettings | None) -> bool:
    return True if settings is None else bool(settings.physical_only)


def card_filter_for(settings: ImportSettings | None, kind: str):
    """
    Filtro di inclusione per un job. L'allow-list dei tipi di set vale solo per
    l'import completo: un job su singolo set importa il set scelto.
    """
    if settings is None:
        physical_only, include_oversized, include_tokens = True, False, False
        set_types = DEFAULT_IMPORTABLE_SET_TYPES
    else:
        physical_only = settings.physical_only
        include_oversized = settings.include_oversized
        include_tokens = settings.include_tokens
        set_types = settings.importable_set_types or DEFAULT_IMPORTABLE_SET_TYPES
    return create_card_filter(
        physical_only=physical_only,
        include_oversized=include_oversized,
        include_tokens=include_tokens,
        importable_set_types=set_types if kind == JobKind.BULK else None,
    )


def saleor_lookup_slugs(settings: ImportSettings | None) -> tuple[list[str], str, str, list[str]]:
    """(channel_slugs, product_type_slug, category_slug, warehouse_slugs) per resolve_import_context."""
    if settings is None:
        return ["default-channel"], "mtg-card", "mtg-singles", []
    return (
        list(settings.channel_slugs or ["default-channel"]),
        settings.product_type_slug or "mtg-card",
        settings.category_slug or "mtg-singles",
        list(settings.warehouse_slugs or []),
    )
