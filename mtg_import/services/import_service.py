"""
Servizio dei job di import: creazione, cancellazione, retry, consultazione.
Nessuna logica negli endpoint; l'esecuzione vera e propria e' del JobRunner.
"""

import logging
from typing import Any

from sqlalchemy import func, update

from mtg_import.core.database import SessionLocal, utcnow
from mtg_import.core.errors import (
    CircuitOpenError,
    ImportPreconditionError,
    InvalidJobRequestError,
    JobConflictError,
    JobNotFoundError,
    JobStateError,
    NotFoundError,
    UpstreamApiError,
    UpstreamUnavailableError,
)
from mtg_import.importer.audits import rebuild_subset_audits
from mtg_import.importer.job_processor import USER_CANCEL_REASON
from mtg_import.importer.orphan_recovery import recover_orphaned_jobs
from mtg_import.models import ImportedRecord, ImportJob, JobKind, JobStatus, SubsetAudit
from mtg_import.models.import_settings import DEFAULT_IMPORTABLE_SET_TYPES
from mtg_import.models.imported_record import EXISTING_SENTINEL
from mtg_import.saleor.client import SaleorImportClient
from mtg_import.schemas.imports import (
    ImportedRecordOut,
    ImportJobDetailResponse,
    ImportJobOut,
    SubsetAuditOut,
    SubsetOut,
    SubsetVerifyResponse,
)
from mtg_import.scryfall.client import ScryfallClient
from mtg_import.services.settings_service import get_settings, is_physical_only, saleor_lookup_slugs

logger = logging.getLogger(__name__)

RECENT_RECORDS_LIMIT = 50


class ImportService:
    """Operazioni sui job di import per un tenant."""

    def __init__(
        self,
        scryfall: ScryfallClient,
        saleor: SaleorImportClient,
        runner=None,
        session_factory=None,
    ):
        self.scryfall = scryfall
        self.saleor = saleor
        self.runner = runner
        self.session_factory = session_factory or SessionLocal

    def _notify_runner(self) -> None:
        if self.runner is not None:
            self.runner.notify()

    # --- Creazione ---

    async def create_job(
        self,
        tenant_id: str,
        kind: str,
        subset_code: str | None = None,
        priority: int = 2,
    ) -> ImportJobOut:
        """
        Crea un job pending.
        - set/backfill richiedono subset_code, validato su Scryfall (e rifiutato se digitale con physical_only)
        - un solo job pending/running per (tenant, kind, subset) → JobConflictError
        - preflight: il contesto Saleor deve risolversi con le impostazioni correnti
        """
        if kind not in JobKind.ALL:
            raise InvalidJobRequestError(f"Unknown import kind {kind!r}")
        subset_code = subset_code.lower() if subset_code else None
        if kind in JobKind.SUBSET_KINDS and not subset_code:
            raise InvalidJobRequestError(f"subset_code is required for {kind} imports")
        if kind == JobKind.BULK:
            subset_code = None

        db = self.session_factory()
        try:
            self._check_conflict(db, tenant_id, kind, subset_code)
            settings = get_settings(db, tenant_id)
            lookup_slugs = saleor_lookup_slugs(settings)
            physical_only = is_physical_only(settings)
        finally:
            db.close()

        try:
            await self.saleor.resolve_import_context(*lookup_slugs)
        except Exception as e:
            logger.warning("Preflight Saleor fallito per tenant %s: %s", tenant_id, e)
            raise ImportPreconditionError(f"Saleor is not properly configured for imports: {e}")

        records_total = 0
        if subset_code:
            records_total = await self._validate_subset(subset_code, physical_only)

        db = self.session_factory()
        try:
            # Ricontrollo dopo le chiamate di rete
            self._check_conflict(db, tenant_id, kind, subset_code)
            job = ImportJob(
                tenant_id=tenant_id,
                kind=kind,
                status=JobStatus.PENDING,
                priority=priority,
                subset_code=subset_code,
                records_total=records_total,
            )
            db.add(job)
            db.commit()
            db.refresh(job)
            out = ImportJobOut.model_validate(job)
        finally:
            db.close()

        logger.info("Import job creato id=%s kind=%s set=%s priority=%s", out.id, kind, subset_code, priority)
        self._notify_runner()
        return out

    async def _validate_subset(self, subset_code: str, physical_only: bool) -> int:
        try:
            subset = await self.scryfall.get_set(subset_code)
        except NotFoundError as e:
            logger.warning("Set %s non valido: %s", subset_code, e)
            raise InvalidJobRequestError(f'Set "{subset_code}" not found on Scryfall')
        except (UpstreamApiError, CircuitOpenError) as e:
            logger.warning("Scryfall non disponibile validando %s: %s", subset_code, e)
            raise UpstreamUnavailableError(f"Scryfall unavailable, could not validate set \"{subset_code}\": {e}")
        if subset.get("digital") and physical_only:
            raise InvalidJobRequestError(
                f'Set "{subset.get("name")}" ({subset_code}) is digital-only. '
                'Disable "Physical Only" in settings to import digital sets.'
            )
        return int(subset.get("card_count") or 0)

    @staticmethod
    def _check_conflict(db, tenant_id: str, kind: str, subset_code: str | None) -> None:
        q = db.query(ImportJob).filter(
            ImportJob.tenant_id == tenant_id,
            ImportJob.kind == kind,
            ImportJob.status.in_(JobStatus.ACTIVE),
        )
        if subset_code:
            q = q.filter(ImportJob.subset_code == subset_code)
        existing = q.first()
        if existing:
            raise JobConflictError(
                f"A {kind} job for {subset_code or 'all sets'} is already {existing.status} (job_id={existing.id})"
            )

    async def create_batch(self, tenant_id: str, subset_codes: list[str], priority: int = 2) -> list[ImportJobOut]:
        """
        Un job backfill per ciascun set. I set con un job gia' attivo vengono saltati;
        se Scryfall non risponde il totale atteso resta 0.
        """
        created: list[ImportJobOut] = []
        for code in subset_codes:
            subset_code = code.lower()
            db = self.session_factory()
            try:
                active = (
                    db.query(ImportJob.id)
                    .filter(
                        ImportJob.tenant_id == tenant_id,
                        ImportJob.subset_code == subset_code,
                        ImportJob.status.in_(JobStatus.ACTIVE),
                    )
                    .first()
                )
            finally:
                db.close()
            if active:
                logger.info("create_batch: %s gia' in coda, skip", subset_code)
                continue

            records_total = 0
            try:
                subset = await self.scryfall.get_set(subset_code)
                records_total = int(subset.get("card_count") or 0)
            except Exception as e:
                logger.warning("create_batch: get_set %s fallito (%s), totale 0", subset_code, e)

            db = self.session_factory()
            try:
                job = ImportJob(
                    tenant_id=tenant_id,
                    kind=JobKind.BACKFILL,
                    status=JobStatus.PENDING,
                    priority=priority,
                    subset_code=subset_code,
                    records_total=records_total,
                )
                db.add(job)
                db.commit()
                db.refresh(job)
                created.append(ImportJobOut.model_validate(job))
            finally:
                db.close()

        logger.info("Batch creato: %s job per %s", len(created), subset_codes)
        if created:
            self._notify_runner()
        return created

    # --- Ciclo di vita ---

    def cancel_job(self, tenant_id: str, job_id: str) -> str:
        """
        Pending: cancellato subito. Running in questo processo: segnale al token,
        il processor salva il checkpoint e chiude il job. Running altrove: cancellato subito.
        Ritorna lo stato risultante ("cancelled" o "cancelling").
        """
        db = self.session_factory()
        try:
            job = self._get_owned(db, tenant_id, job_id)
            if job.status not in JobStatus.ACTIVE:
                raise JobStateError(f"Cannot cancel a {job.status} job")

            if job.status == JobStatus.RUNNING and self.runner is not None:
                if self.runner.cancel(job_id, USER_CANCEL_REASON):
                    logger.info("Cancellazione richiesta per job %s", job_id)
                    return "cancelling"

            res = db.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id, ImportJob.status.in_(JobStatus.ACTIVE))
                .values(
                    status=JobStatus.CANCELLED,
                    error_message=USER_CANCEL_REASON,
                    completed_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if res.rowcount != 1:
                raise JobStateError("Job finished before it could be cancelled")
        finally:
            db.close()
        logger.info("Import job %s cancellato", job_id)
        return JobStatus.CANCELLED

    def retry_job(self, tenant_id: str, job_id: str) -> ImportJobOut:
        """Nuovo job pending che riparte dal checkpoint di un job failed/cancelled."""
        db = self.session_factory()
        try:
            original = self._get_owned(db, tenant_id, job_id)
            if original.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                raise JobStateError("Can only retry failed or cancelled jobs")
            self._check_conflict(db, tenant_id, original.kind, original.subset_code)
            job = ImportJob(
                tenant_id=tenant_id,
                kind=original.kind,
                status=JobStatus.PENDING,
                priority=original.priority,
                subset_code=original.subset_code,
                records_total=original.records_total,
                checkpoint=original.checkpoint,
                stream_source=original.stream_source,
            )
            db.add(job)
            db.commit()
            db.refresh(job)
            out = ImportJobOut.model_validate(job)
        finally:
            db.close()
        logger.info("Retry di %s creato: %s (checkpoint %s)", job_id, out.id, out.checkpoint)
        self._notify_runner()
        return out

    # --- Consultazione ---

    def list_jobs(
        self,
        tenant_id: str,
        status: str | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> tuple[list[ImportJobOut], str | None]:
        """Job del tenant, dal piu' recente. cursor = id dell'ultimo job della pagina precedente."""
        db = self.session_factory()
        try:
            q = db.query(ImportJob).filter(ImportJob.tenant_id == tenant_id)
            if status:
                q = q.filter(ImportJob.status == status)
            if cursor:
                anchor = (
                    db.query(ImportJob)
                    .filter(ImportJob.id == cursor, ImportJob.tenant_id == tenant_id)
                    .first()
                )
                if anchor:
                    q = q.filter(
                        (ImportJob.created_at < anchor.created_at)
                        | ((ImportJob.created_at == anchor.created_at) & (ImportJob.id < anchor.id))
                    )
            jobs = q.order_by(ImportJob.created_at.desc(), ImportJob.id.desc()).limit(limit).all()
            items = [ImportJobOut.model_validate(j) for j in jobs]
        finally:
            db.close()
        next_cursor = items[-1].id if len(items) == limit else None
        return items, next_cursor

    def get_job(self, tenant_id: str, job_id: str) -> ImportJobDetailResponse:
        db = self.session_factory()
        try:
            job = self._get_owned(db, tenant_id, job_id)
            records_q = db.query(ImportedRecord).filter(ImportedRecord.import_job_id == job_id)
            count = records_q.count()
            recent = (
                records_q.order_by(ImportedRecord.updated_at.desc(), ImportedRecord.id.desc())
                .limit(RECENT_RECORDS_LIMIT)
                .all()
            )
            base = ImportJobOut.model_validate(job)
            return ImportJobDetailResponse(
                **base.model_dump(),
                imported_records=[ImportedRecordOut.model_validate(r) for r in recent],
                imported_records_count=count,
            )
        finally:
            db.close()

    @staticmethod
    def _get_owned(db, tenant_id: str, job_id: str) -> ImportJob:
        job = (
            db.query(ImportJob)
            .filter(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
            .first()
        )
        if not job:
            raise JobNotFoundError("Import job not found")
        return job

    # --- Set e audit ---

    async def list_importable_subsets(self, tenant_id: str) -> list[SubsetOut]:
        """Set Scryfall importabili secondo le impostazioni, dal piu' recente."""
        db = self.session_factory()
        try:
            settings = get_settings(db, tenant_id)
            set_types = (settings.importable_set_types if settings else None) or DEFAULT_IMPORTABLE_SET_TYPES
            physical_only = is_physical_only(settings)
        finally:
            db.close()

        subsets = await self.scryfall.list_sets()
        importable = [
            s for s in subsets
            if (not physical_only or not s.get("digital")) and s.get("set_type") in set_types
        ]
        importable.sort(key=lambda s: s.get("released_at") or "", reverse=True)
        return [SubsetOut.model_validate(s) for s in importable]

    def list_audits(self, tenant_id: str) -> list[SubsetAuditOut]:
        db = self.session_factory()
        try:
            audits = (
                db.query(SubsetAudit)
                .filter(SubsetAudit.tenant_id == tenant_id)
                .order_by(SubsetAudit.last_imported_at.desc())
                .all()
            )
            return [SubsetAuditOut.model_validate(a) for a in audits]
        finally:
            db.close()

    async def rebuild_audits(self, tenant_id: str) -> int:
        return await rebuild_subset_audits(self.session_factory, self.scryfall, tenant_id)

    async def verify_subset(self, tenant_id: str, subset_code: str) -> SubsetVerifyResponse:
        """Completezza di un set: importati con successo (creati + gia' esistenti) su totale atteso."""
        subset_code = subset_code.lower()
        upstream_total = 0
        subset_name = subset_code.upper()
        try:
            subset = await self.scryfall.get_set(subset_code)
            upstream_total = int(subset.get("card_count") or 0)
            subset_name = subset.get("name") or subset_name
        except Exception as e:
            logger.warning("verify_subset %s: Scryfall non disponibile (%s), uso l'audit salvato", subset_code, e)

        db = self.session_factory()
        try:
            audit = (
                db.query(SubsetAudit)
                .filter(SubsetAudit.tenant_id == tenant_id, SubsetAudit.subset_code == subset_code)
                .first()
            )
            counts = self._record_counts(db, tenant_id, subset_code)
            last_imported_at = audit.last_imported_at if audit else None
            if not upstream_total and audit:
                upstream_total = audit.total_records
        finally:
            db.close()

        imported = counts["created"] + counts["existing"]
        completeness = round(imported / upstream_total * 100) if upstream_total else 0
        return SubsetVerifyResponse(
            subset_code=subset_code,
            subset_name=subset_name,
            upstream_total=upstream_total,
            imported=imported,
            newly_created=counts["created"],
            already_existed=counts["existing"],
            failed=counts["failed"],
            completeness=completeness,
            last_imported_at=last_imported_at,
        )

    @staticmethod
    def _record_counts(db, tenant_id: str, subset_code: str) -> dict[str, int]:
        base = (
            db.query(func.count(ImportedRecord.id))
            .join(ImportJob, ImportJob.id == ImportedRecord.import_job_id)
            .filter(ImportJob.tenant_id == tenant_id, ImportedRecord.subset_code == subset_code)
        )
        succeeded = base.filter(ImportedRecord.success.is_(True))
        return {
            "created": succeeded.filter(ImportedRecord.downstream_id != EXISTING_SENTINEL).scalar() or 0,
            "existing": succeeded.filter(ImportedRecord.downstream_id == EXISTING_SENTINEL).scalar() or 0,
            "failed": base.filter(ImportedRecord.success.is_(False)).scalar() or 0,
        }

    # --- Manutenzione ---

    def recover_orphans(self, threshold_minutes: int) -> dict[str, Any]:
        return recover_orphaned_jobs(self.session_factory, threshold_minutes)
