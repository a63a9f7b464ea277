"""
Tipo esplicito per le carte del catalogo (formato Scryfall) e utility della pipeline.

Tutte le sorgenti (API Scryfall, snapshot bulk, fallback MTGJSON) producono
CatalogRecord: la pipeline non vede mai il dict grezzo.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict

CONDITIONS = ["NM", "LP", "MP", "HP", "DMG"]

# Moltiplicatori di prezzo per condizione (NM = prezzo base)
DEFAULT_CONDITION_MULTIPLIERS = {
    "NM": 1.0,
    "LP": 0.9,
    "MP": 0.75,
    "HP": 0.5,
    "DMG": 0.25,
}

FINISH_MAP = {
    "nonfoil": "NF",
    "foil": "F",
    "etched": "E",
}


class CatalogRecord(BaseModel):
    """Carta (una stampa) come la espone Scryfall; i campi non usati sono ignorati."""

    model_config = ConfigDict(extra="ignore")

    # Identita'
    id: str
    oracle_id: str | None = None
    name: str
    lang: str = "en"
    released_at: str | None = None
    uri: str | None = None
    scryfall_uri: str | None = None
    layout: str = "normal"

    # Gameplay
    mana_cost: str | None = None
    cmc: float | None = None
    type_line: str | None = None
    oracle_text: str | None = None
    power: str | None = None
    toughness: str | None = None
    loyalty: str | None = None
    reserved: bool = False

    # Stampa
    set: str
    set_name: str = ""
    set_type: str | None = None
    collector_number: str
    rarity: str = "common"
    flavor_text: str | None = None
    artist: str | None = None

    # Finiture e prezzi
    finishes: list[str] = ["nonfoil"]
    prices: dict[str, str | None] = {}

    # Immagini
    image_uris: dict[str, str] | None = None
    card_faces: list[dict[str, Any]] | None = None

    # Flag
    reprint: bool = False
    digital: bool = False
    full_art: bool = False
    oversized: bool = False
    promo: bool = False
    games: list[str] = ["paper"]

    # ID esterni
    tcgplayer_id: int | None = None
    tcgplayer_etched_id: int | None = None
    cardmarket_id: int | None = None
    mtgo_id: int | None = None
    arena_id: int | None = None


def adapt_primary(raw: dict[str, Any]) -> CatalogRecord:
    """Dict JSON di Scryfall (API o snapshot) -> CatalogRecord."""
    return CatalogRecord.model_validate(raw)


_COLLECTOR_RE = re.compile(r"^(\D*)(\d*)(.*)$")


def collector_sort_key(record: CatalogRecord) -> tuple:
    """
    Ordine stabile dentro un set: prefisso, parte numerica, suffisso, id.
    "2" < "10" < "10a", identico per API, snapshot e MTGJSON.
    """
    prefix, digits, suffix = _COLLECTOR_RE.match(record.collector_number).groups()
    return (prefix, int(digits) if digits else -1, suffix, record.id)


def get_image_uri(record: CatalogRecord, size: str = "normal") -> str | None:
    """URI dell'immagine principale; per le carte a piu' facce usa la prima faccia."""
    if record.image_uris:
        return record.image_uris.get(size)
    if record.card_faces:
        face_uris = record.card_faces[0].get("image_uris") or {}
        return face_uris.get(size)
    return None


def generate_sku(source_id: str, condition: str, finish: str) -> str:
    """SKU: {primi 8 caratteri dell'id}-{condizione}-{finitura}."""
    return f"{source_id[:8]}-{condition}-{finish}"

