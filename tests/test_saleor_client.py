import asyncio
import json

import httpx
import pytest

from mtg_import.core.errors import DownstreamApiError
from mtg_import.saleor.client import SaleorImportClient, is_duplicate_slug_error

CHANNELS = [
    {"id": "ch-1", "slug": "default-channel", "name": "Default", "currencyCode": "USD"},
    {"id": "ch-2", "slug": "eu", "name": "EU", "currencyCode": "EUR"},
]
PRODUCT_TYPE = {"id": "pt-1", "slug": "mtg-card", "name": "MTG Card", "productAttributes": [], "variantAttributes": []}
CATEGORY = {"id": "cat-1", "slug": "mtg-singles", "name": "MTG Singles"}
WAREHOUSES = [{"id": "wh-1", "slug": "main", "name": "Main"}, {"id": "wh-2", "slug": "backup", "name": "Backup"}]


def graphql_handler(overrides=None, seen=None):
    """Risponde in base al nome dell'operazione GraphQL."""
    data = {
        "Channels": {"channels": CHANNELS},
        "ProductTypes": {"productTypes": {"edges": [{"node": PRODUCT_TYPE}]}},
        "Categories": {"categories": {"edges": [{"node": CATEGORY}]}},
        "Warehouses": {"warehouses": {"edges": [{"node": wh} for wh in WAREHOUSES]}},
    }
    data.update(overrides or {})

    def handler(request):
        payload = json.loads(request.content)
        if seen is not None:
            seen.append((request, payload))
        name = payload["query"].split("(")[0].split("{")[0].split()[1]
        return httpx.Response(200, json={"data": data[name]})

    return handler


def _client(handler, token="app-token"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SaleorImportClient(http=http, api_url="https://saleor.test/graphql/", token=token)


def test_resolve_import_context():
    seen = []
    client = _client(graphql_handler(seen=seen))

    context = asyncio.run(client.resolve_import_context(["default-channel"], warehouse_slugs=["backup"]))

    assert [ch["id"] for ch in context.channels] == ["ch-1"]
    assert context.product_type["id"] == "pt-1"
    assert context.category["id"] == "cat-1"
    assert context.warehouse["id"] == "wh-2"
    assert seen[0][0].headers["Authorization"] == "Bearer app-token"


def test_default_warehouse_is_first():
    client = _client(graphql_handler())
    context = asyncio.run(client.resolve_import_context(["eu"]))
    assert [wh["slug"] for wh in context.warehouses] == ["main"]


def test_missing_product_type():
    client = _client(graphql_handler({"ProductTypes": {"productTypes": {"edges": []}}}))
    with pytest.raises(DownstreamApiError, match='Product type "mtg-card" not found'):
        asyncio.run(client.resolve_import_context(["default-channel"]))


def test_no_matching_channel():
    client = _client(graphql_handler())
    with pytest.raises(DownstreamApiError, match="channels found: nowhere"):
        asyncio.run(client.resolve_import_context(["nowhere"]))


def test_graphql_errors_raise():
    def handler(request):
        return httpx.Response(200, json={"errors": [{"message": "Permission denied"}]})

    with pytest.raises(DownstreamApiError, match="Permission denied"):
        asyncio.run(_client(handler).get_channels())


def test_http_errors_raise():
    with pytest.raises(DownstreamApiError, match="HTTP 502"):
        asyncio.run(_client(lambda request: httpx.Response(502)).get_channels())


def test_bulk_create_returns_rows():
    result = {
        "count": 1,
        "results": [
            {"product": {"id": "p1", "slug": "a", "variants": []}, "errors": []},
            {"product": None, "errors": [{"code": "UNIQUE", "path": "slug", "message": "Slug already exists"}]},
        ],
        "errors": [],
    }
    seen = []
    client = _client(graphql_handler({"ProductBulkCreate": {"productBulkCreate": result}}, seen=seen))

    out = asyncio.run(client.bulk_create_products([{"slug": "a"}, {"slug": "b"}]))

    assert out["count"] == 1
    assert seen[0][1]["variables"] == {"products": [{"slug": "a"}, {"slug": "b"}]}


def test_bulk_create_without_data():
    client = _client(graphql_handler({"ProductBulkCreate": {"productBulkCreate": None}}))
    with pytest.raises(DownstreamApiError, match="no data"):
        asyncio.run(client.bulk_create_products([{"slug": "a"}]))


def test_duplicate_slug_detection():
    assert is_duplicate_slug_error([{"code": "UNIQUE", "path": "slug", "message": "x"}])
    assert is_duplicate_slug_error([{"code": "UNIQUE", "path": "variants.0.sku", "message": "Slug already exists"}])
    assert not is_duplicate_slug_error([{"code": "UNIQUE", "path": "variants.0.sku", "message": "SKU taken"}])
    assert not is_duplicate_slug_error([])
