"""MTG Import: import del catalogo Scryfall nel catalogo Saleor, con job ripristinabili."""

import asyncio
import logging

import httpx
from fastapi import FastAPI

from mtg_import.core.config import (
    get_log_level,
    get_orphan_recovery_interval_minutes,
    get_orphan_threshold_minutes,
    get_scryfall_rate_limit,
)
from mtg_import.core.database import SessionLocal, init_db
from mtg_import.importer.job_processor import JobProcessor
from mtg_import.importer.orphan_recovery import recover_orphaned_jobs
from mtg_import.mtgjson.bulk_data import MtgjsonBulkDataManager
from mtg_import.routers import health_router, imports_router, sets_router
from mtg_import.saleor.client import SaleorImportClient
from mtg_import.scryfall.bulk_data import BulkDataManager
from mtg_import.scryfall.client import ScryfallClient
from mtg_import.scryfall.rate_limiter import RateLimiter
from mtg_import.services.job_runner import JobRunner

logger = logging.getLogger(__name__)

app = FastAPI(
    title="MTG Import",
    description="Import del catalogo carte Magic (Scryfall, fallback MTGJSON) in Saleor.",
    version="0.1.0",
)

app.include_router(health_router)
app.include_router(imports_router)
app.include_router(sets_router)


async def _periodic_orphan_recovery(interval_minutes: int, threshold_minutes: int) -> None:
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            await asyncio.to_thread(recover_orphaned_jobs, SessionLocal, threshold_minutes)
        except Exception as e:
            logger.exception("Recupero periodico dei job orfani fallito: %s", e)


@app.on_event("startup")
async def on_startup():
    """Tabelle, recupero orfani, client HTTP condivisi e worker dei job."""
    logging.basicConfig(level=get_log_level(), format="%(levelname)s [%(name)s] %(message)s")
    init_db()

    threshold = get_orphan_threshold_minutes()
    recovered = recover_orphaned_jobs(SessionLocal, threshold)
    if recovered["count"]:
        logger.warning("Avvio: %s job orfani marcati failed", recovered["count"])

    max_per_second, min_interval_ms = get_scryfall_rate_limit()
    http_clients = [
        httpx.AsyncClient(timeout=60.0),
        httpx.AsyncClient(timeout=120.0),
        httpx.AsyncClient(timeout=120.0, follow_redirects=True),
    ]
    scryfall = ScryfallClient(
        http=http_clients[0],
        rate_limiter=RateLimiter(max_per_second=max_per_second, min_interval_ms=min_interval_ms),
    )
    saleor = SaleorImportClient(http=http_clients[1])
    fallback = MtgjsonBulkDataManager(http=http_clients[2])
    processor = JobProcessor(
        session_factory=SessionLocal,
        scryfall=scryfall,
        bulk=BulkDataManager(scryfall),
        saleor=saleor,
        fallback=fallback,
    )
    runner = JobRunner(processor, SessionLocal)

    app.state.session_factory = SessionLocal
    app.state.scryfall = scryfall
    app.state.saleor = saleor
    app.state.fallback = fallback
    app.state.runner = runner
    app.state.http_clients = http_clients
    runner.start()

    interval = get_orphan_recovery_interval_minutes()
    app.state.orphan_task = None
    if interval > 0:
        app.state.orphan_task = asyncio.create_task(_periodic_orphan_recovery(interval, threshold))
        logger.info("Recupero orfani periodico ogni %s minuti", interval)


@app.on_event("shutdown")
async def on_shutdown():
    """Cancella i job in corso (checkpoint salvato) e chiude i client HTTP."""
    orphan_task = getattr(app.state, "orphan_task", None)
    if orphan_task is not None:
        orphan_task.cancel()
    runner = getattr(app.state, "runner", None)
    if runner is not None:
        await runner.shutdown()
    for client in getattr(app.state, "http_clients", []):
        await client.aclose()
