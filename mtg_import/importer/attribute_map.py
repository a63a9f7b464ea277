"""
Mappatura campi carta -> attributi prodotto Saleor.

23 attributi; devono esistere sul product type "mtg-card" (quelli mancanti
vengono semplicemente omessi dall'input).
"""

from typing import Any

from mtg_import.scryfall.types import CatalogRecord

PLAIN_TEXT = "PLAIN_TEXT"
DROPDOWN = "DROPDOWN"
NUMERIC = "NUMERIC"
BOOLEAN = "BOOLEAN"

# (campo carta, nome, slug Saleor, input type)
# Ordine: ID esterni -> proprieta' della carta -> flag booleani
ATTRIBUTE_DEFS = [
    ("id", "Scryfall ID", "mtg-scryfall-id", PLAIN_TEXT),
    ("oracle_id", "Oracle ID", "mtg-oracle-id", PLAIN_TEXT),
    ("tcgplayer_id", "TCGPlayer ID", "mtg-tcgplayer-id", PLAIN_TEXT),
    ("tcgplayer_etched_id", "TCGPlayer Etched ID", "tcgplayer-etched-id", PLAIN_TEXT),
    ("cardmarket_id", "Cardmarket ID", "cardmarket-id", PLAIN_TEXT),
    ("mtgo_id", "MTGO ID", "mtgo-id", PLAIN_TEXT),
    ("arena_id", "Arena ID", "arena-id", PLAIN_TEXT),
    ("rarity", "Rarity", "mtg-rarity", DROPDOWN),
    ("type_line", "Type Line", "mtg-type-line", PLAIN_TEXT),
    ("mana_cost", "Mana Cost", "mtg-mana-cost", PLAIN_TEXT),
    ("cmc", "Mana Value", "mtg-mana-value", NUMERIC),
    ("set", "Set Code", "mtg-set-code", PLAIN_TEXT),
    ("set_name", "Set Name", "mtg-set-name", PLAIN_TEXT),
    ("artist", "Artist", "mtg-artist", PLAIN_TEXT),
    ("collector_number", "Collector #", "mtg-collector-number", PLAIN_TEXT),
    ("power", "Power", "mtg-power", PLAIN_TEXT),
    ("toughness", "Toughness", "mtg-toughness", PLAIN_TEXT),
    ("loyalty", "Loyalty", "loyalty", PLAIN_TEXT),
    ("reserved", "Reserved List", "reserved-list", BOOLEAN),
    ("reprint", "Is Reprint", "is-reprint", BOOLEAN),
    ("promo", "Is Promo", "is-promo", BOOLEAN),
    ("full_art", "Is Full Art", "is-full-art", BOOLEAN),
    ("digital", "Is Digital Only", "is-digital-only", BOOLEAN),
]


def build_attribute_id_map(attributes: list[dict[str, Any]]) -> dict[str, str]:
    """slug -> id Saleor, dagli attributi del product type."""
    return {attr["slug"]: attr["id"] for attr in attributes or []}


def _format_numeric(value: Any) -> str:
    # 3.0 -> "3", 2.5 -> "2.5"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_attribute_input(attr_id: str, input_type: str, value: Any) -> dict[str, Any] | None:
    if input_type == PLAIN_TEXT:
        return {"id": attr_id, "plainText": str(value)}
    if input_type == DROPDOWN:
        return {"id": attr_id, "dropdown": {"value": str(value)}}
    if input_type == NUMERIC:
        return {"id": attr_id, "numeric": _format_numeric(value)}
    if input_type == BOOLEAN:
        return {"id": attr_id, "boolean": bool(value)}
    return None


def build_product_attributes(record: CatalogRecord, attribute_ids: dict[str, str]) -> list[dict[str, Any]]:
    """AttributeValueInput per la carta; salta attributi non configurati o valori vuoti."""
    attrs = []
    for field_name, _name, slug, input_type in ATTRIBUTE_DEFS:
        attr_id = attribute_ids.get(slug)
        if not attr_id:
            continue
        value = getattr(record, field_name, None)
        if value is None or value == "":
            continue
        attr_input = build_attribute_input(attr_id, input_type, value)
        if attr_input is not None:
            attrs.append(attr_input)
    return attrs
