"""
Snapshot bulk 'default_cards' di Scryfall: download, cache su disco, parsing incrementale.

Il file e' un array JSON di diverse centinaia di MB con una carta per riga:
viene letto a blocchi di byte, spezzato sui newline e ogni riga viene parsata da sola,
senza mai caricare l'intera collezione in memoria.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Iterator

from pydantic import ValidationError

from mtg_import.core.config import get_bulk_cache_dir, get_bulk_cache_ttl_seconds
from mtg_import.scryfall.client import ScryfallClient
from mtg_import.scryfall.types import CatalogRecord, adapt_primary, collector_sort_key

logger = logging.getLogger(__name__)

METADATA_FILE = "bulk-metadata.json"
READ_CHUNK_BYTES = 1024 * 1024
PROGRESS_EVERY = 25000
REQUIRED_FIELDS = ("id", "set", "collector_number")

# Sotto questa soglia di carte attese un set si scarica con la ricerca paginata
# (175 carte per pagina) invece dello snapshot completo.
DEFAULT_SEARCH_THRESHOLD = 1000


def subset_search_query(subset_code: str) -> str:
    return f"e:{subset_code.lower()} unique:prints include:extras"


def parse_bulk_line(line: str) -> dict[str, Any] | None:
    """
    Una riga dello snapshot -> dict della carta, oppure None se la riga va scartata
    (vuota, parentesi dell'array, frammento malformato, campi obbligatori mancanti).
    """
    text = line.strip()
    if not text or text in ("[", "]"):
        return None
    if text.endswith(","):
        text = text[:-1].rstrip()
    if not (text.startswith("{") and text.endswith("}")):
        return None
    try:
        obj = json.loads(text)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    if not all(obj.get(key) for key in REQUIRED_FIELDS):
        return None
    return obj


def parse_bulk_lines(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Generatore di carte valide da un iterabile di righe."""
    skipped = 0
    for line in lines:
        obj = parse_bulk_line(line)
        if obj is None:
            if line.strip() not in ("", "[", "]"):
                skipped += 1
            continue
        yield obj
    if skipped:
        logger.warning("parse_bulk_lines: %s frammenti malformati scartati", skipped)


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BulkDataManager:
    """Sorgente primaria: snapshot bulk + ricerca paginata per i set piccoli."""

    def __init__(
        self,
        client: ScryfallClient,
        cache_dir: str | Path | None = None,
        cache_ttl_seconds: int | None = None,
        search_threshold: int = DEFAULT_SEARCH_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.cache_dir = Path(cache_dir or get_bulk_cache_dir())
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else get_bulk_cache_ttl_seconds()
        )
        self.search_threshold = search_threshold
        self._clock = clock

    def with_client(self, client: ScryfallClient) -> "BulkDataManager":
        """Stessa cache, client diverso (es. con il circuit breaker del job)."""
        return BulkDataManager(
            client,
            cache_dir=self.cache_dir,
            cache_ttl_seconds=self.cache_ttl_seconds,
            search_threshold=self.search_threshold,
            clock=self._clock,
        )

    # --- Streaming ---

    async def stream_all(self, predicate: Callable[[CatalogRecord], bool] | None = None) -> AsyncIterator[CatalogRecord]:
        """Tutte le carte dello snapshot, nell'ordine del file."""
        file_path = await self.ensure_fresh_bulk_file()
        logger.info("Streaming carte dal file bulk %s", file_path)
        count = 0
        yielded = 0
        async for raw in self._iter_file(file_path):
            count += 1
            if count % PROGRESS_EVERY == 0:
                logger.info("Bulk stream: %s record letti, %s emessi", count, yielded)
            try:
                record = adapt_primary(raw)
            except ValidationError as e:
                logger.debug("Record %s scartato: %s", raw.get("id"), e)
                continue
            if predicate is not None and not predicate(record):
                continue
            yielded += 1
            yield record
        logger.info("Bulk stream completato: %s record letti, %s emessi", count, yielded)

    async def stream_subset(self, subset_code: str, expected_size: int | None = None) -> AsyncIterator[CatalogRecord]:
        """
        Carte di un solo set, ordinate per collector_sort_key. Snapshot se la cache e' fresca;
        altrimenti ricerca paginata se il set e' piccolo (expected_size <= search_threshold);
        altrimenti snapshot.

        La strategia cambia da un run all'altro (basta che un job bulk scarichi lo snapshot),
        l'ordine no: un retry salta sempre le stesse prime `checkpoint` carte.
        """
        code = subset_code.lower()
        use_search = (
            not self.has_fresh_cache()
            and expected_size is not None
            and expected_size <= self.search_threshold
        )
        records: list[CatalogRecord] = []
        if use_search:
            logger.info("stream_subset %s: ricerca paginata (%s carte attese)", code, expected_size)
            async for raw in self.client.search_all(subset_search_query(code)):
                try:
                    records.append(adapt_primary(raw))
                except ValidationError as e:
                    logger.debug("Record %s scartato: %s", raw.get("id"), e)
        else:
            logger.info("stream_subset %s: snapshot bulk", code)
            async for record in self.stream_all(lambda r: r.set == code):
                records.append(record)

        records.sort(key=collector_sort_key)
        for record in records:
            yield record

    async def _iter_file(self, file_path: Path) -> AsyncIterator[dict[str, Any]]:
        with open(file_path, "rb") as f:
            buffer = b""
            while True:
                chunk = await asyncio.to_thread(f.read, READ_CHUNK_BYTES)
                if not chunk:
                    break
                buffer += chunk
                parts = buffer.split(b"\n")
                buffer = parts.pop()
                for obj in parse_bulk_lines(p.decode("utf-8", errors="replace") for p in parts):
                    yield obj
            if buffer:
                for obj in parse_bulk_lines([buffer.decode("utf-8", errors="replace")]):
                    yield obj

    # --- Cache ---

    @property
    def metadata_path(self) -> Path:
        return self.cache_dir / METADATA_FILE

    def load_metadata(self) -> dict[str, Any] | None:
        try:
            with open(self.metadata_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def save_metadata(self, metadata: dict[str, Any]) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with open(self.metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()

    def _age_seconds(self, metadata: dict[str, Any]) -> float | None:
        downloaded = _parse_iso(metadata.get("downloaded_at"))
        if downloaded is None:
            return None
        return self._clock() - downloaded.timestamp()

    def has_fresh_cache(self) -> bool:
        metadata = self.load_metadata()
        if not metadata or not Path(metadata.get("file_path", "")).is_file():
            return False
        age = self._age_seconds(metadata)
        return age is not None and age < self.cache_ttl_seconds

    async def ensure_fresh_bulk_file(self) -> Path:
        """
        Path dello snapshot locale, scaricandolo se mancante o scaduto.
        Se scaduto ma Scryfall non l'ha aggiornato, estende il TTL senza riscaricare.
        """
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        metadata = self.load_metadata()
        if metadata:
            file_path = Path(metadata.get("file_path", ""))
            exists = file_path.is_file()
            age = self._age_seconds(metadata)
            if exists and age is not None and age < self.cache_ttl_seconds:
                logger.info("Uso file bulk in cache %s (eta' %.1f h)", file_path, age / 3600)
                return file_path
            if exists:
                remote = await self.client.get_default_cards_bulk_data()
                if remote.get("updated_at") == metadata.get("updated_at"):
                    self.save_metadata({**metadata, "downloaded_at": self._now_iso()})
                    logger.info("Bulk data invariato su Scryfall, TTL della cache esteso")
                    return file_path
                return await self._download_from_entry(remote)
        return await self.download_bulk_file()

    async def download_bulk_file(self) -> Path:
        """Forza un nuovo download indipendentemente dallo stato della cache."""
        entry = await self.client.get_default_cards_bulk_data()
        return await self._download_from_entry(entry)

    async def _download_from_entry(self, entry: dict[str, Any]) -> Path:
        file_path = self.cache_dir / f"default-cards-{int(self._clock() * 1000)}.json"
        logger.info(
            "Download bulk data %s (attesi %s bytes) -> %s",
            entry.get("download_uri"), entry.get("size"), file_path,
        )
        size = await self.client.download(entry["download_uri"], file_path)
        self._clean_old_file(except_path=file_path)
        self.save_metadata({
            "updated_at": entry.get("updated_at"),
            "downloaded_at": self._now_iso(),
            "file_path": str(file_path),
            "size_bytes": size,
            "type": entry.get("type", "default_cards"),
        })
        return file_path

    def _clean_old_file(self, except_path: Path) -> None:
        metadata = self.load_metadata()
        if not metadata:
            return
        old = Path(metadata.get("file_path", ""))
        if old != except_path and old.is_file():
            try:
                old.unlink()
                logger.info("Rimosso vecchio file bulk %s", old)
            except OSError as e:
                logger.warning("Impossibile rimuovere %s: %s", old, e)

    def cache_status(self) -> dict[str, Any]:
        """Stato della cache senza scaricare nulla."""
        metadata = self.load_metadata()
        if not metadata or not Path(metadata.get("file_path", "")).is_file():
            return {"cached": False, "age_hours": None, "updated_at": None, "size_bytes": None}
        age = self._age_seconds(metadata)
        return {
            "cached": True,
            "age_hours": round(age / 3600, 1) if age is not None else None,
            "updated_at": metadata.get("updated_at"),
            "size_bytes": metadata.get("size_bytes"),
        }

    def clear_cache(self) -> None:
        """Cancella snapshot e metadata."""
        metadata = self.load_metadata()
        if metadata:
            old = Path(metadata.get("file_path", ""))
            if old.is_file():
                old.unlink()
        if self.metadata_path.exists():
            self.metadata_path.unlink()
        logger.info("Cache bulk data svuotata")
