"""
Esecuzione di un job di import.

1. Claim atomico pending -> running
2. Risoluzione del contesto Saleor (una volta per run)
3. Stream delle carte (Scryfall, fallback MTGJSON se fallisce prima della prima carta)
4. Filtro di inclusione + resume dal checkpoint + esclusione dei gia' importati
5. Batch di batch_size carte, gruppi di `concurrency` batch eseguiti in parallelo
6. Checkpoint dopo ogni gruppo; cancellazione cooperativa tra un gruppo e l'altro
7. Stato finale: completed / failed / cancelled; audit dei set

Ogni scrittura sul job e' condizionata a status='running': se un altro percorso
(cancel da un altro processo, recupero orfani) l'ha gia' chiuso, il run si ferma
senza sovrascriverne lo stato.
"""

import asyncio
import logging
import threading
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from mtg_import.core.config import (
    get_circuit_breaker_settings,
    get_import_batch_size,
    get_import_concurrency,
)
from mtg_import.core.database import utcnow
from mtg_import.importer.audits import rebuild_subset_audits, update_subset_audit
from mtg_import.importer.pipeline import PipelineOptions, RunContext, card_to_product_input
from mtg_import.models import ImportedRecord, ImportJob, JobKind, JobStatus
from mtg_import.models.import_job import ERROR_LOG_LIMIT, ERROR_MESSAGE_LIMIT, encode_error_log
from mtg_import.models.imported_record import EXISTING_SENTINEL
from mtg_import.mtgjson.bulk_data import MtgjsonBulkDataManager
from mtg_import.saleor.client import SaleorImportClient, is_duplicate_slug_error
from mtg_import.scryfall.bulk_data import BulkDataManager
from mtg_import.scryfall.circuit_breaker import CircuitBreaker
from mtg_import.scryfall.client import ScryfallClient
from mtg_import.scryfall.types import CatalogRecord
from mtg_import.services.settings_service import card_filter_for, get_settings, saleor_lookup_slugs

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "Already exists in Saleor (duplicate slug)"
USER_CANCEL_REASON = "Cancelled by user"
SHUTDOWN_CANCEL_REASON = "Interrupted by process shutdown"

SOURCE_SCRYFALL = "scryfall"
SOURCE_MTGJSON = "mtgjson"


class CancellationToken:
    """Segnale di cancellazione per un singolo run. cancel() e' idempotente."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = USER_CANCEL_REASON) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class BatchResult:
    """Risultato di un batch: valore di ritorno, mai stato condiviso tra batch concorrenti."""

    processed: int = 0
    writes_created: int = 0
    errors: int = 0
    skipped: int = 0
    error_log: list[str] = field(default_factory=list)


@dataclass
class ProcessResult:
    processed: int = 0
    writes_created: int = 0
    errors: int = 0
    skipped: int = 0
    walked: int = 0
    checkpoint: int = 0
    status: str | None = None
    source: str | None = None
    # True se il job e' stato chiuso da un altro percorso durante il run
    superseded: bool = False
    error_log: list[str] = field(default_factory=list)

    def merge(self, batch: BatchResult) -> None:
        self.processed += batch.processed
        self.writes_created += batch.writes_created
        self.errors += batch.errors
        self.skipped += batch.skipped
        self.error_log.extend(batch.error_log)
        if len(self.error_log) > ERROR_LOG_LIMIT:
            del self.error_log[:-ERROR_LOG_LIMIT]

    def recent_errors(self) -> list[str]:
        """Dal piu' recente, al massimo ERROR_LOG_LIMIT."""
        return list(reversed(self.error_log))[:ERROR_LOG_LIMIT]


def _update_job(db: Session, job_id: str, **fields) -> bool:
    """UPDATE condizionato a status='running'. False se il job non e' piu' running."""
    res = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == JobStatus.RUNNING)
        .values(updated_at=utcnow(), **fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def claim_job(db: Session, job_id: str) -> bool:
    """pending -> running in un solo UPDATE condizionato. False se il job non era pending."""
    now = utcnow()
    res = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == JobStatus.PENDING)
        .values(status=JobStatus.RUNNING, started_at=now, updated_at=now)
    )
    db.commit()
    return res.rowcount == 1


class JobProcessor:
    """Esegue i job di import. Client e sorgenti sono iniettati e condivisi tra i run."""

    def __init__(
        self,
        session_factory,
        scryfall: ScryfallClient,
        bulk: BulkDataManager,
        saleor: SaleorImportClient,
        fallback: MtgjsonBulkDataManager | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        breaker_factory: Callable[[], CircuitBreaker] | None = None,
    ):
        self.session_factory = session_factory
        self.scryfall = scryfall
        self.bulk = bulk
        self.saleor = saleor
        self.fallback = fallback
        self.batch_size = batch_size or get_import_batch_size()
        self.concurrency = concurrency or get_import_concurrency()
        self.breaker_factory = breaker_factory or self._default_breaker
        self._db_lock = threading.Lock()

    async def _run_db(self, fn, *args):
        """Persistenza del run in un thread, fuori dall'event loop; una scrittura alla volta."""
        def locked():
            with self._db_lock:
                return fn(*args)

        return await asyncio.to_thread(locked)

    @staticmethod
    def _default_breaker() -> CircuitBreaker:
        threshold, cooldown, max_retries = get_circuit_breaker_settings()
        return CircuitBreaker(failure_threshold=threshold, cooldown=cooldown, max_retries=max_retries)

    async def process(self, job_id: str, token: CancellationToken | None = None) -> ProcessResult | None:
        """
        Esegue il job. Ritorna None se il job non era pending (gia' preso da un altro run).
        Ogni errore del run termina il job in failed; solo CancelledError viene rilanciato.
        """
        token = token or CancellationToken()
        db = self.session_factory()
        try:
            if not claim_job(db, job_id):
                logger.warning("Job %s non in pending, skip", job_id)
                return None
            job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
            tenant_id = job.tenant_id
            kind = job.kind
            subset_code = job.subset_code
            checkpoint = job.checkpoint or 0
            expected_total = job.records_total or 0
            # Solo il catalogo completo ha un ordine che dipende dalla sorgente
            resume_source = job.stream_source if kind == JobKind.BULK else None
            settings = get_settings(db, tenant_id)
            lookup_slugs = saleor_lookup_slugs(settings)
            options = PipelineOptions.from_settings(settings)
            card_filter = card_filter_for(settings, kind)
        finally:
            db.close()

        result = ProcessResult(checkpoint=checkpoint)
        breaker = self.breaker_factory()
        scryfall = self.scryfall.with_breaker(breaker)
        bulk = self.bulk.with_client(scryfall)

        logger.info(
            "Avvio job %s kind=%s set=%s checkpoint=%s batch=%s concurrency=%s",
            job_id, kind, subset_code, checkpoint, self.batch_size, self.concurrency,
        )

        try:
            import_context = await self.saleor.resolve_import_context(*lookup_slugs)
            run_context = RunContext.build(import_context)
            excluded = self._excluded_ids(tenant_id, kind, subset_code)

            aborted = await self._walk(
                job_id, self._record_stream(bulk, kind, subset_code, expected_total, result),
                card_filter, excluded, run_context, options, result, token, resume_source,
            )
            if result.superseded:
                logger.warning("Job %s chiuso da un altro percorso, run interrotto", job_id)
                return result
            if aborted:
                self._finish_cancelled(job_id, result, token.reason or USER_CANCEL_REASON)
                return result

            status = (
                JobStatus.FAILED
                if result.processed == 0 and result.errors > 0
                else JobStatus.COMPLETED
            )
            self._finish(job_id, result, status)
        except asyncio.CancelledError:
            self._finish_cancelled(job_id, result, SHUTDOWN_CANCEL_REASON)
            raise
        except Exception as e:
            logger.exception("Job %s fallito: %s", job_id, e)
            self._finish_failed(job_id, result, str(e) or e.__class__.__name__)
            return result

        if result.status == JobStatus.COMPLETED:
            await self._update_audits(tenant_id, kind, subset_code, expected_total, scryfall)

        logger.info(
            "Job %s completato status=%s processed=%s created=%s errors=%s skipped=%s",
            job_id, result.status, result.processed, result.writes_created, result.errors, result.skipped,
        )
        return result

    # --- Stream ---

    def _record_stream(
        self, bulk: BulkDataManager, kind: str, subset_code: str | None, expected_total: int, result: ProcessResult,
    ) -> AsyncIterator[CatalogRecord]:
        if kind in JobKind.SUBSET_KINDS and subset_code:
            return self._with_fallback(
                lambda: bulk.stream_subset(subset_code, expected_size=expected_total or None),
                (lambda: self.fallback.stream_subset(subset_code)) if self.fallback else None,
                subset_code,
                result,
            )
        return self._with_fallback(
            bulk.stream_all,
            self.fallback.stream_all if self.fallback else None,
            "catalogo completo",
            result,
        )

    async def _with_fallback(self, primary, fallback, label: str, result: ProcessResult) -> AsyncIterator[CatalogRecord]:
        """
        Stream primario; se fallisce prima di produrre la prima carta passa al fallback.
        Un errore a meta' stream non viene sostituito: si propaga e fa fallire il job.
        result.source indica la sorgente che ha prodotto le carte.
        """
        yielded = False
        result.source = SOURCE_SCRYFALL
        try:
            async with aclosing(primary()) as stream:
                async for record in stream:
                    yielded = True
                    yield record
            return
        except Exception as e:
            if yielded or fallback is None:
                raise
            logger.warning("Sorgente Scryfall fallita per %s, passo a MTGJSON: %s", label, e)

        result.source = SOURCE_MTGJSON
        async with aclosing(fallback()) as stream:
            async for record in stream:
                yield record

    def _excluded_ids(self, tenant_id: str, kind: str, subset_code: str | None) -> set[str]:
        """Id gia' importati con successo: backfill (per set) e bulk (tutto il tenant)."""
        if kind == JobKind.SET:
            return set()
        db = self.session_factory()
        try:
            q = (
                db.query(ImportedRecord.source_id)
                .join(ImportJob, ImportJob.id == ImportedRecord.import_job_id)
                .filter(ImportJob.tenant_id == tenant_id, ImportedRecord.success.is_(True))
            )
            if kind == JobKind.BACKFILL:
                q = q.filter(ImportedRecord.subset_code == (subset_code or "").lower())
            ids = {row[0] for row in q.all()}
        finally:
            db.close()
        logger.info("Job %s: %s carte gia' importate verranno escluse", kind, len(ids))
        return ids

    # --- Walk ---

    async def _walk(
        self,
        job_id: str,
        stream: AsyncIterator[CatalogRecord],
        card_filter,
        excluded: set[str],
        run_context: RunContext,
        options: PipelineOptions,
        result: ProcessResult,
        token: CancellationToken,
        resume_source: str | None = None,
    ) -> bool:
        """
        Percorre lo stream. Ritorna True se interrotto da cancellazione o se il job
        e' stato chiuso altrove (result.superseded).
        result.checkpoint = carte filtrate percorse fino all'ultimo gruppo unito.

        resume_source: sorgente su cui era stato preso il checkpoint. Se lo stream
        arriva da un'altra sorgente il checkpoint non indica le stesse carte e si
        riparte da zero (le carte gia' importate restano escluse).
        """
        resume_from = result.checkpoint
        walked = 0
        current: list[CatalogRecord] = []
        pending: list[list[CatalogRecord]] = []

        async with aclosing(stream) as records:
            async for record in records:
                if token.cancelled:
                    return True
                if resume_from and resume_source and resume_source != result.source:
                    logger.warning(
                        "Job %s: checkpoint %s preso su %s, stream da %s: riparto da zero",
                        job_id, resume_from, resume_source, result.source,
                    )
                    resume_from = 0
                    result.checkpoint = 0
                if not card_filter(record):
                    continue
                walked += 1
                result.walked = walked
                if walked <= resume_from:
                    continue
                if record.id in excluded:
                    continue

                current.append(record)
                if len(current) < self.batch_size:
                    continue
                pending.append(current)
                current = []
                if len(pending) < self.concurrency:
                    continue

                await self._run_group(job_id, pending, run_context, options, result)
                pending = []
                if not await self._run_db(self._save_checkpoint, job_id, walked, result):
                    result.superseded = True
                    return True
                if token.cancelled:
                    return True

        if token.cancelled:
            return True
        if current:
            pending.append(current)
        if pending:
            await self._run_group(job_id, pending, run_context, options, result)
        result.checkpoint = max(result.checkpoint, walked)
        return False

    async def _run_group(
        self,
        job_id: str,
        batches: list[list[CatalogRecord]],
        run_context: RunContext,
        options: PipelineOptions,
        result: ProcessResult,
    ) -> None:
        batch_results = await asyncio.gather(
            *(self._process_batch(job_id, batch, run_context, options) for batch in batches)
        )
        for batch_result in batch_results:
            result.merge(batch_result)
        logger.info(
            "Job %s: gruppo di %s batch completato, processed=%s errors=%s",
            job_id, len(batches), result.processed, result.errors,
        )

    async def _process_batch(
        self,
        job_id: str,
        records: list[CatalogRecord],
        run_context: RunContext,
        options: PipelineOptions,
    ) -> BatchResult:
        """Un batch = una productBulkCreate + upsert di imported_records in una transazione."""
        try:
            inputs = [card_to_product_input(r, run_context, options) for r in records]
            response = await self.saleor.bulk_create_products(inputs)
            rows = response.get("results") or []
            batch = await self._run_db(self._persist_batch, job_id, records, rows)
        except Exception as e:
            logger.error("Job %s: batch di %s carte fallito: %s", job_id, len(records), e)
            return BatchResult(
                errors=len(records),
                error_log=[f"Batch error ({len(records)} cards): {str(e)[:500]}"],
            )
        logger.debug(
            "Job %s: batch %s carte, processed=%s errors=%s",
            job_id, len(records), batch.processed, batch.errors,
        )
        return batch

    def _persist_batch(self, job_id: str, records: list[CatalogRecord], rows: list[dict]) -> BatchResult:
        batch = BatchResult()
        db = self.session_factory()
        try:
            seen: dict[tuple[str, str], ImportedRecord] = {}
            for i, record in enumerate(records):
                row = rows[i] if i < len(rows) else {
                    "product": None,
                    "errors": [{"code": "MISSING_RESULT", "path": None, "message": "No result row returned"}],
                }
                self._classify_row(db, seen, job_id, record, row, batch)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return batch

    def _classify_row(
        self,
        db: Session,
        seen: dict[tuple[str, str], ImportedRecord],
        job_id: str,
        record: CatalogRecord,
        row: dict,
        batch: BatchResult,
    ) -> None:
        product = row.get("product")
        errors = row.get("errors") or []
        if product:
            variants = len(product.get("variants") or [])
            batch.processed += 1
            batch.writes_created += variants
            self._upsert_record(
                db, seen, job_id, record,
                downstream_id=product["id"], write_count=variants, success=True, error_message=None,
            )
        elif is_duplicate_slug_error(errors):
            batch.processed += 1
            batch.skipped += 1
            logger.debug("%s [%s#%s] gia' esistente, skip", record.name, record.set, record.collector_number)
            self._upsert_record(
                db, seen, job_id, record,
                downstream_id=EXISTING_SENTINEL, write_count=0, success=True, error_message=DUPLICATE_MESSAGE,
            )
        else:
            batch.errors += 1
            message = "; ".join(e.get("message") or e.get("code") or "unknown error" for e in errors)
            batch.error_log.append(f"{record.name} [{record.set}#{record.collector_number}]: {message}")
            self._upsert_record(
                db, seen, job_id, record,
                downstream_id="", write_count=0, success=False, error_message=message[:ERROR_MESSAGE_LIMIT],
            )

    @staticmethod
    def _upsert_record(
        db: Session,
        seen: dict[tuple[str, str], ImportedRecord],
        job_id: str,
        record: CatalogRecord,
        downstream_id: str,
        write_count: int,
        success: bool,
        error_message: str | None,
    ) -> None:
        key = (record.id, record.set)
        row = seen.get(key)
        if row is None:
            row = (
                db.query(ImportedRecord)
                .filter(ImportedRecord.source_id == record.id, ImportedRecord.subset_code == record.set)
                .first()
            )
        if row is None:
            row = ImportedRecord(source_id=record.id, subset_code=record.set)
            db.add(row)
        seen[key] = row
        row.import_job_id = job_id
        row.source_uri = record.scryfall_uri
        row.name = record.name[:250]
        row.collector_number = record.collector_number
        row.rarity = record.rarity
        row.downstream_id = downstream_id
        row.write_count = write_count
        row.success = success
        row.error_message = error_message
        row.updated_at = utcnow()

    # --- Persistenza stato job ---

    def _progress_fields(self, result: ProcessResult) -> dict:
        fields = {
            "records_processed": result.processed,
            "writes_created": result.writes_created,
            "error_count": result.errors,
            "skipped_count": result.skipped,
            "error_log": encode_error_log(result.recent_errors()),
        }
        if result.source:
            fields["stream_source"] = result.source
        return fields

    def _save_checkpoint(self, job_id: str, walked: int, result: ProcessResult) -> bool:
        """False se il job non e' piu' running: il run deve fermarsi."""
        result.checkpoint = max(result.checkpoint, walked)
        db = self.session_factory()
        try:
            saved = _update_job(db, job_id, checkpoint=result.checkpoint, **self._progress_fields(result))
        finally:
            db.close()
        if saved:
            logger.info("Job %s: checkpoint %s", job_id, result.checkpoint)
        return saved

    def _write_terminal(self, job_id: str, result: ProcessResult, status: str, **fields) -> None:
        """Stato finale; attende le scritture dei batch ancora in corso in un thread."""
        with self._db_lock:
            db = self.session_factory()
            try:
                written = _update_job(
                    db, job_id,
                    status=status,
                    checkpoint=result.checkpoint,
                    completed_at=utcnow(),
                    **fields,
                    **self._progress_fields(result),
                )
            finally:
                db.close()
        if written:
            result.status = status
        else:
            result.superseded = True
            logger.warning("Job %s non piu' running: stato %s non scritto", job_id, status)

    def _finish(self, job_id: str, result: ProcessResult, status: str) -> None:
        extra = {"records_total": result.walked}
        if status == JobStatus.FAILED:
            extra["error_message"] = f"No records imported: {result.errors} errors (see error log)"
        self._write_terminal(job_id, result, status, **extra)

    def _finish_cancelled(self, job_id: str, result: ProcessResult, reason: str) -> None:
        self._write_terminal(job_id, result, JobStatus.CANCELLED, error_message=reason[:ERROR_MESSAGE_LIMIT])
        if result.status == JobStatus.CANCELLED:
            logger.info("Job %s cancellato al checkpoint %s: %s", job_id, result.checkpoint, reason)

    def _finish_failed(self, job_id: str, result: ProcessResult, message: str) -> None:
        self._write_terminal(job_id, result, JobStatus.FAILED, error_message=message[:ERROR_MESSAGE_LIMIT])

    async def _update_audits(
        self, tenant_id: str, kind: str, subset_code: str | None, expected_total: int, scryfall: ScryfallClient,
    ) -> None:
        try:
            if kind in JobKind.SUBSET_KINDS and subset_code:
                await update_subset_audit(
                    self.session_factory, scryfall, tenant_id, subset_code, fallback_total=expected_total,
                )
            elif kind == JobKind.BULK:
                await rebuild_subset_audits(self.session_factory, scryfall, tenant_id)
        except Exception as e:
            logger.warning("Aggiornamento audit fallito per tenant %s: %s", tenant_id, e)
