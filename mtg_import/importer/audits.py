"""
SubsetAudit: carte attese vs importate per set.

Vista derivata: si ricalcola da imported_records (+ metadati del set da Scryfall)
dopo ogni job completato o con un rebuild esplicito.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from mtg_import.core.database import utcnow
from mtg_import.models import ImportedRecord, ImportJob, SubsetAudit
from mtg_import.scryfall.client import ScryfallClient

logger = logging.getLogger(__name__)


def _parse_release_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        d = date.fromisoformat(value)
    except ValueError:
        return None
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


def count_imported(db: Session, tenant_id: str, subset_code: str) -> int:
    """Record importati con successo per il set (inclusi i gia' esistenti su Saleor)."""
    return (
        db.query(func.count(ImportedRecord.id))
        .join(ImportJob, ImportJob.id == ImportedRecord.import_job_id)
        .filter(
            ImportJob.tenant_id == tenant_id,
            ImportedRecord.subset_code == subset_code,
            ImportedRecord.success.is_(True),
        )
        .scalar()
        or 0
    )


def upsert_subset_audit(
    db: Session,
    tenant_id: str,
    subset_code: str,
    imported: int,
    set_info: dict[str, Any] | None,
    fallback_total: int = 0,
) -> SubsetAudit:
    """Crea o aggiorna la riga di audit. set_info = oggetto set Scryfall (o None)."""
    set_info = set_info or {}
    audit = (
        db.query(SubsetAudit)
        .filter(SubsetAudit.tenant_id == tenant_id, SubsetAudit.subset_code == subset_code)
        .first()
    )
    if audit is None:
        audit = SubsetAudit(tenant_id=tenant_id, subset_code=subset_code)
        db.add(audit)
    audit.subset_name = set_info.get("name") or subset_code.upper()
    audit.total_records = set_info.get("card_count") or fallback_total or imported
    audit.imported_records = imported
    audit.last_imported_at = utcnow()
    audit.released_at = _parse_release_date(set_info.get("released_at"))
    audit.subset_type = set_info.get("set_type")
    audit.icon_uri = set_info.get("icon_svg_uri")
    return audit


async def update_subset_audit(
    session_factory,
    scryfall: ScryfallClient,
    tenant_id: str,
    subset_code: str,
    fallback_total: int = 0,
) -> None:
    """Aggiorna l'audit di un set dopo un job completato. Mai fatale: gli errori vengono loggati."""
    try:
        try:
            set_info = await scryfall.get_set(subset_code)
        except Exception as e:
            logger.warning("update_subset_audit %s: metadati set non disponibili (%s)", subset_code, e)
            set_info = None

        db = session_factory()
        try:
            imported = count_imported(db, tenant_id, subset_code)
            upsert_subset_audit(db, tenant_id, subset_code, imported, set_info, fallback_total)
            db.commit()
            logger.info("SubsetAudit %s aggiornato: %s importati", subset_code, imported)
        finally:
            db.close()
    except Exception as e:
        logger.warning("update_subset_audit %s fallito: %s", subset_code, e)


async def rebuild_subset_audits(session_factory, scryfall: ScryfallClient, tenant_id: str) -> int:
    """
    Ricostruisce da zero gli audit del tenant raggruppando imported_records per set.
    Una sola chiamata list_sets per i metadati. Ritorna il numero di set aggiornati.
    """
    db = session_factory()
    try:
        counts = (
            db.query(ImportedRecord.subset_code, func.count(ImportedRecord.id))
            .join(ImportJob, ImportJob.id == ImportedRecord.import_job_id)
            .filter(ImportJob.tenant_id == tenant_id, ImportedRecord.success.is_(True))
            .group_by(ImportedRecord.subset_code)
            .all()
        )
        if not counts:
            return 0

        try:
            sets = {s.get("code"): s for s in await scryfall.list_sets()}
        except Exception as e:
            logger.warning("rebuild_subset_audits: list_sets fallito (%s), uso solo i conteggi", e)
            sets = {}

        updated = 0
        for subset_code, imported in counts:
            upsert_subset_audit(db, tenant_id, subset_code, imported, sets.get(subset_code))
            updated += 1
        db.commit()
        logger.info("SubsetAudit ricostruiti per tenant %s: %s set", tenant_id, updated)
        return updated
    finally:
        db.close()
