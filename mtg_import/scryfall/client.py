"""
Client per l'API Scryfall (https://scryfall.com/docs/api).

Ogni chiamata API passa dal rate limiter condiviso e dal circuit breaker del job,
con retry e backoff esponenziale (tenacity) su 429 / 5xx / errori di rete.
Il download dello snapshot bulk non e' rate limited (file statico su CDN).
"""

import asyncio
import copy
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mtg_import.core.config import get_scryfall_api_url, get_scryfall_contact_email
from mtg_import.core.errors import NotFoundError, TransientUpstreamError, UpstreamApiError
from mtg_import.scryfall.circuit_breaker import CircuitBreaker
from mtg_import.scryfall.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
DOWNLOAD_CHUNK_BYTES = 1024 * 1024


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After in secondi (Scryfall non usa il formato data HTTP)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_body(response: httpx.Response) -> dict[str, Any]:
    """Oggetto errore Scryfall ({object: "error", code, details}) o dict vuoto."""
    try:
        body = response.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and body.get("object") == "error":
        return body
    return {}


class ScryfallClient:
    """Client async per Scryfall. Un'istanza (e un httpx.AsyncClient) per processo."""

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        contact_email: str | None = None,
        rate_limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        app_name: str = "SaleorMTGImport",
        app_version: str = "1.0",
    ):
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._base_url = (base_url or get_scryfall_api_url()).rstrip("/")
        self._limiter = rate_limiter or RateLimiter()
        self._breaker = breaker
        self._max_retries = max_retries
        self._backoff = wait_exponential(
            multiplier=initial_backoff, min=0, max=MAX_BACKOFF_SECONDS,
        )
        self._sleep = sleep

        email = contact_email if contact_email is not None else get_scryfall_contact_email()
        contact = f" ({email})" if email else ""
        self.user_agent = f"{app_name}/{app_version}{contact}"

    def with_breaker(self, breaker: CircuitBreaker) -> "ScryfallClient":
        """Copia del client che condivide http e rate limiter ma usa il breaker dato."""
        clone = copy.copy(self)
        clone._owns_http = False
        clone._breaker = breaker
        if breaker is not None:
            clone._max_retries = breaker.max_retries
        return clone

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": "application/json"}

    # --- API pubblica ---

    async def search(
        self,
        query: str,
        page: int = 1,
        unique: str | None = None,
        order: str | None = None,
        include_extras: bool = False,
    ) -> dict[str, Any]:
        """Ricerca con la sintassi Scryfall; una pagina di risultati."""
        params: dict[str, Any] = {"q": query}
        if unique:
            params["unique"] = unique
        if order:
            params["order"] = order
        if include_extras:
            params["include_extras"] = "true"
        if page > 1:
            params["page"] = page
        return await self._get("/cards/search", params=params)

    async def search_all(self, query: str, **options) -> AsyncIterator[dict[str, Any]]:
        """
        Itera tutte le pagine di una ricerca seguendo has_more.
        Una ricerca senza risultati (404 da Scryfall) non produce nulla.
        """
        page = 1
        has_more = True
        while has_more:
            try:
                response = await self.search(query, page=page, **options)
            except NotFoundError:
                if page == 1:
                    logger.info("search_all %r: nessun risultato", query)
                    return
                raise
            for card in response.get("data", []):
                yield card
            has_more = bool(response.get("has_more"))
            page += 1

    async def get_card(self, card_id: str) -> dict[str, Any]:
        return await self._get(f"/cards/{card_id}")

    async def get_card_by_set_number(self, set_code: str, collector_number: str) -> dict[str, Any]:
        return await self._get(f"/cards/{set_code.lower()}/{collector_number}")

    async def get_set(self, set_code: str) -> dict[str, Any]:
        return await self._get(f"/sets/{set_code.lower()}")

    async def list_sets(self) -> list[dict[str, Any]]:
        response = await self._get("/sets")
        return response.get("data", [])

    async def get_bulk_data_catalog(self) -> list[dict[str, Any]]:
        response = await self._get("/bulk-data")
        return response.get("data", [])

    async def get_default_cards_bulk_data(self) -> dict[str, Any]:
        """Voce 'default_cards' del catalogo bulk (contiene download_uri e updated_at)."""
        catalog = await self.get_bulk_data_catalog()
        for item in catalog:
            if item.get("type") == "default_cards":
                return item
        raise UpstreamApiError("Bulk data type 'default_cards' not found in catalog")

    async def download(self, url: str, dest: str | Path) -> int:
        """
        Scarica un file in streaming su disco (scrittura su .part poi rename).
        Ritorna la dimensione in byte.
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".part")
        size = 0
        try:
            async with self._http.stream("GET", url, headers=self._headers(), timeout=None) as r:
                if r.status_code >= 400:
                    raise UpstreamApiError(
                        f"Download failed: HTTP {r.status_code}", status=r.status_code, url=url,
                    )
                with open(tmp, "wb") as f:
                    async for chunk in r.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                        f.write(chunk)
                        size += len(chunk)
            os.replace(tmp, dest)
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Download failed: {e}", url=url) from e
        finally:
            if tmp.exists():
                tmp.unlink()
        logger.info("download %s -> %s (%s bytes)", url, dest, size)
        return size

    # --- Interni ---

    def _wait(self, retry_state) -> float:
        """Retry-After se presente (429), altrimenti backoff esponenziale."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientUpstreamError) and exc.retry_after is not None:
            return exc.retry_after
        return self._backoff(retry_state)

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}{path}"
        result = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type(TransientUpstreamError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                if self._breaker is not None:
                    result = await self._breaker.call(self._request_once, url, params)
                else:
                    result = await self._request_once(url, params)
        return result

    async def _request_once(self, url: str, params: dict[str, Any] | None) -> Any:
        await self._limiter.acquire()
        try:
            r = await self._http.get(url, params=params, headers=self._headers())
        except httpx.TransportError as e:
            logger.warning("Scryfall request failed url=%s: %s", url, e)
            raise TransientUpstreamError(f"Scryfall request failed: {e}", url=url) from e

        if r.is_success:
            return r.json()

        body = _error_body(r)
        detail = body.get("details") or f"HTTP {r.status_code}"
        code = body.get("code")
        if r.status_code == 429:
            retry_after = _parse_retry_after(r.headers.get("Retry-After"))
            logger.warning("Scryfall rate limited (429) url=%s retry_after=%s", url, retry_after)
            raise TransientUpstreamError(
                f"Scryfall API error: {detail}",
                retry_after=retry_after, status=429, code=code, url=url,
            )
        if r.status_code >= 500:
            raise TransientUpstreamError(
                f"Scryfall API error: {detail}", status=r.status_code, code=code, url=url,
            )
        if r.status_code == 404:
            raise NotFoundError(f"Scryfall API error: {detail}", status=404, code=code, url=url)
        raise UpstreamApiError(
            f"Scryfall API error: {detail}", status=r.status_code, code=code, url=url,
        )
