"""
Client GraphQL per Saleor (catalogo downstream).

Risolve canali, product type, categoria e magazzini per slug ed esegue
productBulkCreate (una chiamata per batch, REJECT_FAILED_ROWS).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from mtg_import.core.config import get_saleor_api_url, get_saleor_app_token
from mtg_import.core.errors import DownstreamApiError
from mtg_import.saleor.operations import (
    CATEGORIES_QUERY,
    CHANNELS_QUERY,
    PRODUCT_BULK_CREATE_MUTATION,
    PRODUCT_TYPES_QUERY,
    WAREHOUSES_QUERY,
)

logger = logging.getLogger(__name__)

DUPLICATE_SLUG_MESSAGE = "Slug already exists"


@dataclass
class ImportContext:
    """Lookup downstream risolti una volta per run e riusati per ogni record."""

    channels: list[dict[str, Any]]
    product_type: dict[str, Any]
    category: dict[str, Any]
    warehouses: list[dict[str, Any]] = field(default_factory=list)

    @property
    def warehouse(self) -> dict[str, Any] | None:
        return self.warehouses[0] if self.warehouses else None


def is_duplicate_slug_error(errors: list[dict[str, Any]]) -> bool:
    """True se tutti gli errori di riga sono violazioni di unicita' sullo slug (prodotto gia' esistente)."""
    return bool(errors) and all(
        e.get("code") == "UNIQUE"
        and (e.get("path") == "slug" or DUPLICATE_SLUG_MESSAGE in (e.get("message") or ""))
        for e in errors
    )


class SaleorImportClient:
    """Client async per la GraphQL API di Saleor, autenticato con app token."""

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        api_url: str | None = None,
        token: str | None = None,
    ):
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=120.0)
        self._api_url = api_url or get_saleor_api_url()
        self._token = token if token is not None else get_saleor_app_token()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST GraphQL; errori di trasporto, HTTP o GraphQL top-level -> DownstreamApiError."""
        try:
            r = await self._http.post(
                self._api_url,
                json={"query": query, "variables": variables or {}},
                headers=self._headers(),
            )
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPStatusError as e:
            raise DownstreamApiError(f"Saleor HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DownstreamApiError(f"Saleor request failed: {e}") from e
        except ValueError as e:
            raise DownstreamApiError("Saleor returned invalid JSON") from e

        if body.get("errors"):
            messages = "; ".join(err.get("message", "") for err in body["errors"])
            raise DownstreamApiError(f"Saleor GraphQL error: {messages}")
        return body.get("data") or {}

    # --- Lookup ---

    async def get_channels(self) -> list[dict[str, Any]]:
        data = await self.execute(CHANNELS_QUERY)
        return data.get("channels") or []

    async def get_channels_by_slugs(self, slugs: list[str]) -> list[dict[str, Any]]:
        channels = await self.get_channels()
        found = [ch for ch in channels if ch["slug"] in slugs]
        missing = [s for s in slugs if not any(ch["slug"] == s for ch in found)]
        if missing:
            logger.warning(
                "Canali non trovati: %s (disponibili: %s)",
                missing, [ch["slug"] for ch in channels],
            )
        return found

    async def get_product_type(self, slug: str = "mtg-card") -> dict[str, Any]:
        data = await self.execute(PRODUCT_TYPES_QUERY, {"filter": {"search": slug}})
        for edge in (data.get("productTypes") or {}).get("edges", []):
            if edge["node"]["slug"] == slug:
                return edge["node"]
        raise DownstreamApiError(f'Product type "{slug}" not found. Create it in Saleor Dashboard first.')

    async def get_category(self, slug: str = "mtg-singles") -> dict[str, Any]:
        data = await self.execute(CATEGORIES_QUERY, {"filter": {"search": slug}})
        for edge in (data.get("categories") or {}).get("edges", []):
            if edge["node"]["slug"] == slug:
                return edge["node"]
        raise DownstreamApiError(f'Category "{slug}" not found. Create it in Saleor Dashboard first.')

    async def get_warehouses(self) -> list[dict[str, Any]]:
        data = await self.execute(WAREHOUSES_QUERY)
        return [edge["node"] for edge in (data.get("warehouses") or {}).get("edges", [])]

    async def get_warehouses_by_slugs(self, slugs: list[str]) -> list[dict[str, Any]]:
        """Lista vuota = primo magazzino disponibile."""
        warehouses = await self.get_warehouses()
        if not slugs:
            if not warehouses:
                raise DownstreamApiError("No warehouses found. Create one in Saleor Dashboard first.")
            return warehouses[:1]
        found = [wh for wh in warehouses if wh["slug"] in slugs]
        if not found:
            raise DownstreamApiError(f"None of the configured warehouses found: {', '.join(slugs)}")
        missing = [s for s in slugs if not any(wh["slug"] == s for wh in found)]
        if missing:
            logger.warning("Magazzini non trovati: %s", missing)
        return found

    async def resolve_import_context(
        self,
        channel_slugs: list[str],
        product_type_slug: str = "mtg-card",
        category_slug: str = "mtg-singles",
        warehouse_slugs: list[str] | None = None,
    ) -> ImportContext:
        channels, product_type, category, warehouses = await asyncio.gather(
            self.get_channels_by_slugs(channel_slugs),
            self.get_product_type(product_type_slug),
            self.get_category(category_slug),
            self.get_warehouses_by_slugs(warehouse_slugs or []),
        )
        if not channels:
            raise DownstreamApiError(f"None of the configured channels found: {', '.join(channel_slugs)}")
        logger.info(
            "Import context risolto: canali=%s product_type=%s categoria=%s magazzini=%s",
            [ch["slug"] for ch in channels], product_type["slug"], category["slug"],
            [wh["slug"] for wh in warehouses],
        )
        return ImportContext(
            channels=channels,
            product_type=product_type,
            category=category,
            warehouses=warehouses,
        )

    # --- Scrittura ---

    async def bulk_create_products(self, products: list[dict[str, Any]]) -> dict[str, Any]:
        """
        productBulkCreate con REJECT_FAILED_ROWS: una riga di risultato per input,
        ciascuna con product oppure errors [{code, path, message}].
        """
        data = await self.execute(PRODUCT_BULK_CREATE_MUTATION, {"products": products})
        result = data.get("productBulkCreate")
        if not result:
            raise DownstreamApiError("productBulkCreate returned no data")

        for row in result.get("results", []):
            errors = row.get("errors") or []
            if errors and not is_duplicate_slug_error(errors):
                logger.warning("Errore creazione prodotto: %s", errors)
        return result
