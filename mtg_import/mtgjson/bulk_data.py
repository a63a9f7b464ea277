"""
Sorgente di fallback MTGJSON, con la stessa interfaccia di BulkDataManager.

Catalogo completo da AllPrintings.json, singolo set dal file per-set ({SET}.json).
I file sono in cache su disco con TTL basato sulla data di modifica.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import httpx

from mtg_import.core.config import get_bulk_cache_ttl_seconds, get_mtgjson_cache_dir
from mtg_import.core.errors import TransientUpstreamError, UpstreamApiError
from mtg_import.mtgjson.card_adapter import adapt_fallback_set
from mtg_import.scryfall.types import CatalogRecord, collector_sort_key

logger = logging.getLogger(__name__)

MTGJSON_BASE_URL = "https://mtgjson.com/api/v5"
ALL_PRINTINGS_FILE = "AllPrintings.json"
DOWNLOAD_CHUNK_BYTES = 1024 * 1024


class MtgjsonBulkDataManager:
    """Fallback: stream_all() / stream_subset(code) da MTGJSON."""

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        cache_dir: str | Path | None = None,
        cache_ttl_seconds: int | None = None,
        base_url: str = MTGJSON_BASE_URL,
        clock: Callable[[], float] = time.time,
    ):
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=60.0)
        self.cache_dir = Path(cache_dir or get_mtgjson_cache_dir())
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else get_bulk_cache_ttl_seconds()
        )
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def stream_all(self, predicate: Callable[[CatalogRecord], bool] | None = None) -> AsyncIterator[CatalogRecord]:
        file_path = await self._ensure_fresh_file(ALL_PRINTINGS_FILE)
        data = await asyncio.to_thread(self._load_json, file_path)
        sets = data.get("data", data)
        count = 0
        for set_code, set_data in sets.items():
            for record in adapt_fallback_set(set_data, set_code):
                if predicate is not None and not predicate(record):
                    continue
                count += 1
                yield record
        logger.info("MTGJSON stream completato: %s carte", count)

    async def stream_subset(self, subset_code: str, expected_size: int | None = None) -> AsyncIterator[CatalogRecord]:
        """Ordinate come BulkDataManager.stream_subset. expected_size e' ignorato: il file per-set e' sempre piccolo."""
        upper = subset_code.upper()
        try:
            file_path = await self._ensure_fresh_file(f"{upper}.json")
        except UpstreamApiError as e:
            if e.status == 404:
                logger.warning("Set %s non presente su MTGJSON", upper)
                return
            raise
        data = await asyncio.to_thread(self._load_json, file_path)
        set_data = data.get("data", data)
        records = sorted(adapt_fallback_set(set_data, upper), key=collector_sort_key)
        for record in records:
            yield record
        logger.info("MTGJSON stream set %s completato: %s carte", upper, len(records))

    def is_available(self) -> bool:
        """True se AllPrintings e' in cache e fresco."""
        return self._is_fresh(self.cache_dir / ALL_PRINTINGS_FILE)

    @staticmethod
    def _load_json(file_path: Path) -> dict[str, Any]:
        with open(file_path, encoding="utf-8") as f:
            return json.load(f)

    def _is_fresh(self, file_path: Path) -> bool:
        if not file_path.is_file():
            return False
        return self._clock() - file_path.stat().st_mtime < self.cache_ttl_seconds

    async def _ensure_fresh_file(self, file_name: str) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.cache_dir / file_name
        if self._is_fresh(file_path):
            logger.info("Uso file MTGJSON in cache %s", file_path)
            return file_path

        url = f"{self.base_url}/{file_name}"
        tmp = file_path.with_name(file_name + ".part")
        logger.info("Download MTGJSON %s", url)
        size = 0
        try:
            async with self._http.stream(
                "GET", url, headers={"User-Agent": "SaleorMTGImport/1.0"}, timeout=None,
            ) as r:
                if r.status_code >= 400:
                    raise UpstreamApiError(
                        f"Failed to download MTGJSON: HTTP {r.status_code}",
                        status=r.status_code, url=url,
                    )
                with open(tmp, "wb") as f:
                    async for chunk in r.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                        f.write(chunk)
                        size += len(chunk)
            os.replace(tmp, file_path)
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Failed to download MTGJSON: {e}", url=url) from e
        finally:
            if tmp.exists():
                tmp.unlink()
        logger.info("Download MTGJSON completato %s (%s bytes)", file_path, size)
        return file_path
