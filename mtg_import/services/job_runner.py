"""
Pool di worker che esegue i job di import.

La tabella import_jobs e' la coda: ogni worker prende il job pending con priorita'
piu' alta (valore piu' basso), poi il piu' vecchio. Il claim atomico del processor
garantisce che due processi non eseguano lo stesso job.
"""

import asyncio
import logging

from mtg_import.core.config import get_import_workers
from mtg_import.importer.job_processor import SHUTDOWN_CANCEL_REASON, CancellationToken, JobProcessor
from mtg_import.models import ImportJob, JobStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class JobRunner:
    """Worker asyncio + registro job_id -> CancellationToken dei run in corso."""

    def __init__(
        self,
        processor: JobProcessor,
        session_factory,
        workers: int | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.processor = processor
        self.session_factory = session_factory
        self.workers = workers or get_import_workers()
        self.poll_interval = poll_interval
        self.tokens: dict[str, CancellationToken] = {}
        self._tasks: list[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._pick_lock = asyncio.Lock()
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"import-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("JobRunner avviato con %s worker", self.workers)

    def notify(self) -> None:
        """Sveglia i worker in attesa (nuovo job in coda)."""
        self._wakeup.set()

    def cancel(self, job_id: str, reason: str) -> bool:
        """Segnala la cancellazione a un job in esecuzione qui. False se il job non e' nostro."""
        token = self.tokens.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Cancella tutti i run attivi e attende che salvino il checkpoint.
        Oltre il timeout i task vengono cancellati (il job viene comunque chiuso come cancelled).
        """
        self._stopping = True
        for job_id, token in list(self.tokens.items()):
            logger.info("Shutdown: cancello il job %s", job_id)
            token.cancel(SHUTDOWN_CANCEL_REASON)
        self._wakeup.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("JobRunner fermato")

    def _next_pending(self) -> str | None:
        db = self.session_factory()
        try:
            q = db.query(ImportJob.id).filter(ImportJob.status == JobStatus.PENDING)
            if self.tokens:
                q = q.filter(ImportJob.id.notin_(list(self.tokens)))
            row = q.order_by(ImportJob.priority.asc(), ImportJob.created_at.asc()).first()
            return row[0] if row else None
        finally:
            db.close()

    async def _worker(self, n: int) -> None:
        while not self._stopping:
            self._wakeup.clear()
            async with self._pick_lock:
                job_id = self._next_pending()
                token = None
                if job_id is not None:
                    token = CancellationToken()
                    self.tokens[job_id] = token

            if job_id is None:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            logger.info("Worker %s: eseguo job %s", n, job_id)
            try:
                await self.processor.process(job_id, token)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Worker %s: job %s terminato con errore: %s", n, job_id, e)
            finally:
                self.tokens.pop(job_id, None)

    async def run_once(self) -> int:
        """Esegue in sequenza tutti i job pending e ritorna quanti ne ha eseguiti. Utile senza worker."""
        count = 0
        while True:
            job_id = self._next_pending()
            if job_id is None:
                return count
            token = CancellationToken()
            self.tokens[job_id] = token
            try:
                await self.processor.process(job_id, token)
            finally:
                self.tokens.pop(job_id, None)
            count += 1
