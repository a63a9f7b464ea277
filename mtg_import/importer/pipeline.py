"""
Pipeline di trasformazione: carta -> input productBulkCreate di Saleor.

Per ogni carta:
  1. prodotto con i 23 attributi, descrizione EditorJS e immagine
  2. varianti (5 condizioni x N finiture) con SKU deterministici
  3. channel listing di prodotto e di variante (price + costPrice)

Funzione pura: stessa carta + stesso contesto -> stesso output, byte per byte.
"""

import json
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, TypeVar

from mtg_import.importer.attribute_map import build_attribute_id_map, build_product_attributes
from mtg_import.saleor.client import ImportContext
from mtg_import.scryfall.types import (
    CONDITIONS,
    DEFAULT_CONDITION_MULTIPLIERS,
    FINISH_MAP,
    CatalogRecord,
    generate_sku,
    get_image_uri,
)

T = TypeVar("T")

NAME_MAX_LENGTH = 250
SLUG_BASE_MAX_LENGTH = 200
SLUG_MAX_LENGTH = 255

CONDITION_NAMES = {
    "NM": "Near Mint",
    "LP": "Lightly Played",
    "MP": "Moderately Played",
    "HP": "Heavily Played",
    "DMG": "Damaged",
}

FINISH_NAMES = {
    "NF": "Non-Foil",
    "F": "Foil",
    "E": "Etched",
}

PRICE_KEYS = {
    "nonfoil": "usd",
    "foil": "usd_foil",
    "etched": "usd_etched",
}

_SLUG_UNSAFE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class PipelineOptions:
    default_price: float = 0.25
    cost_price_ratio: float = 0.5
    condition_multipliers: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CONDITION_MULTIPLIERS)
    )
    is_published: bool = True
    visible_in_listings: bool = True
    is_available_for_purchase: bool = True
    track_inventory: bool = False

    @classmethod
    def from_settings(cls, settings) -> "PipelineOptions":
        """Da ImportSettings; None = default."""
        if settings is None:
            return cls()
        return cls(
            default_price=settings.default_price,
            cost_price_ratio=settings.cost_price_ratio,
            condition_multipliers=settings.condition_multipliers,
            is_published=settings.is_published,
            visible_in_listings=settings.visible_in_listings,
            is_available_for_purchase=settings.is_available_for_purchase,
            track_inventory=settings.track_inventory,
        )


@dataclass(frozen=True)
class RunContext:
    """ImportContext + mappe slug -> id degli attributi, costruite una sola volta per run."""

    import_context: ImportContext
    attribute_ids: dict[str, str]
    variant_attribute_ids: dict[str, str]

    @classmethod
    def build(cls, import_context: ImportContext) -> "RunContext":
        product_type = import_context.product_type
        return cls(
            import_context=import_context,
            attribute_ids=build_attribute_id_map(product_type.get("productAttributes") or []),
            variant_attribute_ids=build_attribute_id_map(product_type.get("variantAttributes") or []),
        )


def round_price(value: float) -> float:
    """Arrotondamento a 2 decimali, half-up."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_price(value: float) -> str:
    return f"{value:.2f}"


def _slugify(text: str) -> str:
    return _SLUG_UNSAFE.sub("-", text.lower()).strip("-")


def make_product_slug(record: CatalogRecord) -> str:
    """<nome>-<set>-<collector>, solo [a-z0-9-], max 255; fallback card-<id>."""
    base = _slugify(record.name)[:SLUG_BASE_MAX_LENGTH]
    safe_collector = _slugify(record.collector_number)
    slug = "-".join(part for part in (base, _slugify(record.set), safe_collector) if part)
    slug = slug[:SLUG_MAX_LENGTH].strip("-")
    if not slug:
        return f"card-{record.id[:36]}"
    return slug


def build_description(record: CatalogRecord) -> dict[str, Any]:
    """Descrizione EditorJS: type line, testo oracle, flavor in corsivo."""
    blocks = []
    if record.type_line:
        blocks.append({"type": "paragraph", "data": {"text": record.type_line}})
    if record.oracle_text:
        blocks.append({"type": "paragraph", "data": {"text": record.oracle_text}})
    if record.flavor_text:
        blocks.append({"type": "paragraph", "data": {"text": f"<i>{record.flavor_text}</i>"}})
    return {"blocks": blocks}


def build_media(record: CatalogRecord) -> list[dict[str, str]]:
    image_url = get_image_uri(record, "large")
    if not image_url:
        return []
    return [{"mediaUrl": image_url, "alt": record.name[:NAME_MAX_LENGTH]}]


def build_metadata(record: CatalogRecord) -> list[dict[str, str]]:
    pairs = [
        ("scryfall_id", record.id),
        ("scryfall_uri", record.scryfall_uri),
        ("set_code", record.set),
    ]
    return [{"key": key, "value": value} for key, value in pairs if value]


def format_variant_name(condition: str, finish_code: str) -> str:
    return f"{CONDITION_NAMES[condition]} - {FINISH_NAMES[finish_code]}"


def base_price_for_finish(record: CatalogRecord, finish: str, default_price: float) -> float:
    raw = record.prices.get(PRICE_KEYS.get(finish, "usd"))
    if raw:
        try:
            return float(raw)
        except ValueError:
            pass
    return default_price


def build_variants(
    record: CatalogRecord,
    context: RunContext,
    options: PipelineOptions,
) -> list[dict[str, Any]]:
    channels = context.import_context.channels
    warehouses = context.import_context.warehouses
    condition_attr_id = context.variant_attribute_ids.get("mtg-condition")
    finish_attr_id = context.variant_attribute_ids.get("mtg-finish")

    variants = []
    for finish in record.finishes:
        finish_code = FINISH_MAP.get(finish)
        if finish_code is None:
            continue
        base_price = base_price_for_finish(record, finish, options.default_price)

        for condition in CONDITIONS:
            multiplier = options.condition_multipliers.get(
                condition, DEFAULT_CONDITION_MULTIPLIERS[condition]
            )
            price = round_price(base_price * multiplier)
            cost_price = round_price(price * options.cost_price_ratio)

            variant_attrs = []
            if condition_attr_id:
                variant_attrs.append({
                    "id": condition_attr_id,
                    "dropdown": {"value": CONDITION_NAMES[condition]},
                })
            if finish_attr_id:
                variant_attrs.append({
                    "id": finish_attr_id,
                    "dropdown": {"value": FINISH_NAMES[finish_code]},
                })

            variants.append({
                "sku": generate_sku(record.id, condition, finish_code),
                "name": format_variant_name(condition, finish_code),
                "trackInventory": options.track_inventory,
                "attributes": variant_attrs,
                "channelListings": [
                    {
                        "channelId": ch["id"],
                        "price": format_price(price),
                        "costPrice": format_price(cost_price),
                    }
                    for ch in channels
                ],
                "stocks": [{"warehouse": wh["id"], "quantity": 0} for wh in warehouses],
            })
    return variants


def card_to_product_input(
    record: CatalogRecord,
    context: RunContext,
    options: PipelineOptions | None = None,
) -> dict[str, Any]:
    """Input ProductBulkCreateInput completo per una carta."""
    options = options or PipelineOptions()
    import_context = context.import_context

    product = {
        "name": record.name[:NAME_MAX_LENGTH],
        "slug": make_product_slug(record),
        "description": json.dumps(build_description(record)),
        "productType": import_context.product_type["id"],
        "category": import_context.category["id"],
        "attributes": build_product_attributes(record, context.attribute_ids),
        "channelListings": [
            {
                "channelId": ch["id"],
                "isPublished": options.is_published,
                "visibleInListings": options.visible_in_listings,
                "isAvailableForPurchase": options.is_available_for_purchase,
            }
            for ch in import_context.channels
        ],
        "variants": build_variants(record, context, options),
        "metadata": build_metadata(record),
    }
    media = build_media(record)
    if media:
        product["media"] = media
    return product


def batch_items(items: Iterable[T], batch_size: int) -> list[list[T]]:
    """Divide una sequenza in liste di al massimo batch_size elementi."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    batches: list[list[T]] = []
    current: list[T] = []
    for item in items:
        current.append(item)
        if len(current) >= batch_size:
            batches.append(current)
            current = []
    if current:
        batches.append(current)
    return batches
