"""
Recupero dei job orfani.

Un job running aggiorna updated_at a ogni checkpoint (ogni gruppo di batch, pochi secondi).
Se il processo muore (container ucciso, OOM) il job resta running per sempre: qui lo si
marca failed, conservando il checkpoint per il retry.
"""

import logging
from datetime import timedelta

from sqlalchemy import select, update

from mtg_import.core.database import utcnow
from mtg_import.models import ImportJob, JobStatus

logger = logging.getLogger(__name__)


def orphan_message(threshold_minutes: int) -> str:
    return (
        f"Orphaned: no checkpoint update for {threshold_minutes}+ minutes "
        "(container likely killed). Checkpoint preserved — retry to resume."
    )


def recover_orphaned_jobs(session_factory, threshold_minutes: int) -> dict:
    """
    Marca failed tutti i job running con updated_at piu' vecchio della soglia.
    Ritorna {"recovered": [{"id", "subset_code", "last_updated"}], "count"}.
    """
    cutoff = utcnow() - timedelta(minutes=threshold_minutes)
    db = session_factory()
    try:
        stale = db.execute(
            select(ImportJob.id, ImportJob.subset_code, ImportJob.updated_at).where(
                ImportJob.status == JobStatus.RUNNING,
                ImportJob.updated_at < cutoff,
            )
        ).all()
        if not stale:
            logger.info("Nessun job orfano trovato")
            return {"recovered": [], "count": 0}

        ids = [row.id for row in stale]
        # Lo stato si ricontrolla nel WHERE: un job terminato nel frattempo non va toccato
        res = db.execute(
            update(ImportJob)
            .where(ImportJob.id.in_(ids), ImportJob.status == JobStatus.RUNNING)
            .values(
                status=JobStatus.FAILED,
                error_message=orphan_message(threshold_minutes),
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    finally:
        db.close()

    recovered = [
        {"id": row.id, "subset_code": row.subset_code, "last_updated": row.updated_at}
        for row in stale
    ]
    logger.warning(
        "Recuperati %s job orfani (aggiornati %s): %s",
        len(recovered), res.rowcount, [r["id"] for r in recovered],
    )
    return {"recovered": recovered, "count": len(recovered)}
