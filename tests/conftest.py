"""Fixture condivise: database SQLite in memoria, factory di carte, client finti."""

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SALEOR_API_URL", "http://saleor.test/graphql/")

from typing import Any, Callable  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from mtg_import.core.database import init_db, make_engine  # noqa: E402
from mtg_import.saleor.client import ImportContext  # noqa: E402
from mtg_import.scryfall.types import CatalogRecord, adapt_primary  # noqa: E402

TENANT = "tenant-a"


@pytest.fixture
def engine():
    eng = make_engine("sqlite+pysqlite:///:memory:")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def card_dict(n: int = 1, set_code: str = "tst", **overrides) -> dict[str, Any]:
    """Carta Scryfall minimale ma realistica; id deterministico da n."""
    card = {
        "id": f"{n:08d}-0000-4000-8000-{set_code:0>12}"[:36],
        "oracle_id": f"oracle-{n}",
        "name": f"Test Card {n}",
        "lang": "en",
        "released_at": "2024-02-09",
        "uri": f"https://api.scryfall.com/cards/{n}",
        "scryfall_uri": f"https://scryfall.com/card/{set_code}/{n}",
        "layout": "normal",
        "mana_cost": "{1}{G}",
        "cmc": 2.0,
        "type_line": "Creature — Elf",
        "oracle_text": "Trample",
        "power": "2",
        "toughness": "2",
        "set": set_code,
        "set_name": "Test Set",
        "set_type": "expansion",
        "collector_number": str(n),
        "rarity": "common",
        "artist": "Some Artist",
        "finishes": ["nonfoil", "foil"],
        "prices": {"usd": "1.00", "usd_foil": "2.50"},
        "image_uris": {"normal": f"https://img.test/{n}/normal.jpg", "large": f"https://img.test/{n}/large.jpg"},
        "games": ["paper"],
    }
    card.update(overrides)
    return card


@pytest.fixture
def make_record() -> Callable[..., CatalogRecord]:
    def _make(n: int = 1, set_code: str = "tst", **overrides) -> CatalogRecord:
        return adapt_primary(card_dict(n, set_code, **overrides))
    return _make


def make_import_context(with_attributes: bool = True) -> ImportContext:
    product_attributes = []
    variant_attributes = []
    if with_attributes:
        product_attributes = [
            {"id": "attr-rarity", "slug": "mtg-rarity", "name": "Rarity", "inputType": "DROPDOWN"},
            {"id": "attr-cmc", "slug": "mtg-mana-value", "name": "Mana Value", "inputType": "NUMERIC"},
        ]
        variant_attributes = [
            {"id": "attr-condition", "slug": "mtg-condition", "name": "Condition", "inputType": "DROPDOWN"},
            {"id": "attr-finish", "slug": "mtg-finish", "name": "Finish", "inputType": "DROPDOWN"},
        ]
    return ImportContext(
        channels=[{"id": "ch-1", "slug": "default-channel", "name": "Default", "currencyCode": "USD"}],
        product_type={
            "id": "pt-1",
            "slug": "mtg-card",
            "name": "MTG Card",
            "productAttributes": product_attributes,
            "variantAttributes": variant_attributes,
        },
        category={"id": "cat-1", "slug": "mtg-singles", "name": "MTG Singles"},
        warehouses=[{"id": "wh-1", "slug": "main", "name": "Main"}],
    )


@pytest.fixture
def import_context() -> ImportContext:
    return make_import_context()


class FakeSaleor:
    """
    Client Saleor finto. responder(product_input) -> riga di risultato;
    di default ogni prodotto viene creato con tutte le sue varianti.
    """

    def __init__(self, responder=None, resolve_error: Exception | None = None, batch_error: Exception | None = None):
        self.responder = responder or self.created
        self.resolve_error = resolve_error
        self.batch_error = batch_error
        self.calls: list[list[dict[str, Any]]] = []
        self.resolve_calls = 0

    @staticmethod
    def created(product: dict[str, Any]) -> dict[str, Any]:
        return {
            "product": {
                "id": f"prod-{product['slug']}",
                "name": product["name"],
                "slug": product["slug"],
                "variants": [{"id": f"var-{v['sku']}", "sku": v["sku"]} for v in product["variants"]],
            },
            "errors": [],
        }

    @staticmethod
    def duplicate(product: dict[str, Any]) -> dict[str, Any]:
        return {
            "product": None,
            "errors": [{"code": "UNIQUE", "path": "slug", "message": "Product with this Slug already exists."}],
        }

    async def resolve_import_context(self, *args, **kwargs) -> ImportContext:
        self.resolve_calls += 1
        if self.resolve_error is not None:
            raise self.resolve_error
        return make_import_context()

    async def bulk_create_products(self, products: list[dict[str, Any]]) -> dict[str, Any]:
        self.calls.append(products)
        if self.batch_error is not None:
            raise self.batch_error
        results = [self.responder(p) for p in products]
        return {"count": sum(1 for r in results if r["product"]), "results": results}

    @property
    def created_slugs(self) -> list[str]:
        return [p["slug"] for call in self.calls for p in call]


@pytest.fixture
def fake_saleor() -> FakeSaleor:
    return FakeSaleor()


class FakeScryfall:
    """Solo i metodi usati da service e audit; with_breaker ritorna se stesso."""

    def __init__(self, sets: dict[str, dict[str, Any]] | None = None):
        self.sets = sets or {}
        self.breakers = []

    def with_breaker(self, breaker):
        self.breakers.append(breaker)
        return self

    async def get_set(self, code: str) -> dict[str, Any]:
        from mtg_import.core.errors import NotFoundError

        if code not in self.sets:
            raise NotFoundError(f"Scryfall API error: set {code} not found", status=404)
        return self.sets[code]

    async def list_sets(self) -> list[dict[str, Any]]:
        return list(self.sets.values())


@pytest.fixture
def fake_scryfall() -> FakeScryfall:
    return FakeScryfall({
        "tst": {
            "code": "tst", "name": "Test Set", "set_type": "expansion", "card_count": 600,
            "released_at": "2024-02-09", "digital": False, "icon_svg_uri": "https://svgs.test/tst.svg",
        },
    })


class FakeBulk:
    """
    Sorgente finta con la stessa interfaccia di BulkDataManager.
    fail_after: solleva dopo aver prodotto N record (0 = prima del primo record).
    """

    def __init__(self, records: list[CatalogRecord], fail_after: int | None = None, error: Exception | None = None):
        self.records = records
        self.fail_after = fail_after
        self.error = error or RuntimeError("upstream unavailable")
        self.subset_calls: list[tuple[str, int | None]] = []
        self.all_calls = 0

    def with_client(self, client):
        return self

    async def _iter(self, records):
        for i, record in enumerate(records):
            if self.fail_after is not None and i >= self.fail_after:
                raise self.error
            yield record
        if self.fail_after is not None and self.fail_after >= len(records):
            raise self.error

    async def stream_subset(self, subset_code: str, expected_size: int | None = None):
        self.subset_calls.append((subset_code, expected_size))
        async for record in self._iter([r for r in self.records if r.set == subset_code]):
            yield record

    async def stream_all(self, predicate=None):
        self.all_calls += 1
        async for record in self._iter(self.records):
            if predicate is None or predicate(record):
                yield record


def bulk_text(cards: list[dict[str, Any]]) -> str:
    """Snapshot nel formato di Scryfall: array JSON con una carta per riga."""
    return "[\n" + ",\n".join(json.dumps(c) for c in cards) + "\n]\n"


def seed_bulk_cache(manager, cards, age_seconds=0, updated_at="2026-10-17T09:00:00+00:00"):
    """Scrive snapshot e metadata nella cache di un BulkDataManager."""
    manager.cache_dir.mkdir(parents=True, exist_ok=True)
    file_path = manager.cache_dir / "default-cards-1.json"
    file_path.write_text(bulk_text(cards), encoding="utf-8")
    downloaded = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
    manager.save_metadata({
        "updated_at": updated_at,
        "downloaded_at": downloaded.isoformat(),
        "file_path": str(file_path),
        "size_bytes": file_path.stat().st_size,
        "type": "default_cards",
    })
    return file_path


def collect(agen) -> list:
    async def run():
        return [item async for item in agen]
    return asyncio.run(run())
