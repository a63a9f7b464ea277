"""
Adapter MTGJSON -> CatalogRecord.

MTGJSON fa da sorgente di fallback quando Scryfall non risponde: le carte vengono
normalizzate nello stesso tipo usato dalla pipeline.
- URI immagini costruiti dal pattern della CDN Scryfall
- prezzi solo TCGPlayer retail (paper), ultimo giorno disponibile
- carte senza scryfallId scartate (non collegabili)
- dati di set (nome, tipo, data) presi dal contesto del set
"""

from typing import Any

from mtg_import.scryfall.types import CatalogRecord

SCRYFALL_CDN_BASE = "https://cards.scryfall.io"
IMAGE_SIZES = ("small", "normal", "large", "png", "art_crop", "border_crop")
VALID_FINISHES = ("nonfoil", "foil", "etched")


def build_scryfall_image_uri(scryfall_id: str, size: str) -> str:
    """https://cards.scryfall.io/{size}/front/{id[0]}/{id[1]}/{id}.{jpg|png}"""
    ext = "png" if size == "png" else "jpg"
    return f"{SCRYFALL_CDN_BASE}/{size}/front/{scryfall_id[0]}/{scryfall_id[1]}/{scryfall_id}.{ext}"


def _latest_price(date_prices: dict[str, Any] | None) -> float | None:
    # le chiavi sono date ISO: l'ordinamento lessicografico e' cronologico
    if not date_prices:
        return None
    latest = date_prices[max(date_prices)]
    if isinstance(latest, bool) or not isinstance(latest, (int, float)):
        return None
    return float(latest)


def _format_price(value: float | None) -> str | None:
    return None if value is None else f"{value:.2f}"


def extract_prices(prices: dict[str, Any] | None) -> dict[str, str | None]:
    retail = (((prices or {}).get("paper") or {}).get("tcgplayer") or {}).get("retail") or {}
    return {
        "usd": _format_price(_latest_price(retail.get("normal"))),
        "usd_foil": _format_price(_latest_price(retail.get("foil"))),
        "usd_etched": _format_price(_latest_price(retail.get("etched"))),
    }


def map_finishes(finish_types: list[str] | None) -> list[str]:
    finishes = [f for f in (finish_types or []) if f in VALID_FINISHES]
    return finishes or ["nonfoil"]


def determine_games(card: dict[str, Any]) -> list[str]:
    if not card.get("isOnlineOnly"):
        return ["paper"]
    identifiers = card.get("identifiers") or {}
    games = []
    if identifiers.get("mtgoId"):
        games.append("mtgo")
    if identifiers.get("mtgArenaId"):
        games.append("arena")
    return games or ["mtgo"]


def _optional_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def adapt_fallback(card: dict[str, Any], set_info: dict[str, Any]) -> CatalogRecord | None:
    """
    Carta MTGJSON + dati del set -> CatalogRecord.
    Ritorna None se la carta non ha scryfallId.
    """
    identifiers = card.get("identifiers") or {}
    scryfall_id = identifiers.get("scryfallId")
    if not scryfall_id:
        return None
    set_code = (card.get("setCode") or set_info.get("code") or "").lower()
    number = str(card.get("number") or "")

    return CatalogRecord(
        id=scryfall_id,
        oracle_id=identifiers.get("scryfallOracleId"),
        name=card.get("name") or "",
        lang="en",
        released_at=set_info.get("releaseDate"),
        uri=f"https://api.scryfall.com/cards/{scryfall_id}",
        scryfall_uri=f"https://scryfall.com/card/{set_code}/{number}",
        layout=card.get("layout") or "normal",
        mana_cost=card.get("manaCost"),
        cmc=card.get("manaValue"),
        type_line=card.get("type"),
        oracle_text=card.get("text"),
        power=card.get("power"),
        toughness=card.get("toughness"),
        loyalty=card.get("loyalty"),
        flavor_text=card.get("flavorText"),
        reserved=bool(card.get("isReserved")),
        set=set_code,
        set_name=set_info.get("name") or set_code.upper(),
        set_type=set_info.get("type"),
        collector_number=number,
        rarity=card.get("rarity") or "common",
        artist=card.get("artist"),
        finishes=map_finishes(card.get("finishTypes")),
        prices=extract_prices(card.get("prices")),
        image_uris={size: build_scryfall_image_uri(scryfall_id, size) for size in IMAGE_SIZES},
        reprint=bool(card.get("isReprint")),
        digital=bool(card.get("isOnlineOnly")),
        full_art=bool(card.get("isFullArt")),
        oversized=False,
        promo=bool(card.get("isPromo")),
        games=determine_games(card),
        tcgplayer_id=_optional_id(identifiers.get("tcgplayerProductId")),
        tcgplayer_etched_id=_optional_id(identifiers.get("tcgplayerEtchedProductId")),
        cardmarket_id=_optional_id(identifiers.get("cardmarketId")),
        mtgo_id=_optional_id(identifiers.get("mtgoId")),
        arena_id=_optional_id(identifiers.get("mtgArenaId")),
    )


def adapt_fallback_set(set_data: dict[str, Any], set_code: str | None = None) -> list[CatalogRecord]:
    """Tutte le carte di un set MTGJSON con scryfallId, nell'ordine del file."""
    set_info = {
        "code": set_data.get("code") or set_code or "",
        "name": set_data.get("name") or set_code,
        "releaseDate": set_data.get("releaseDate"),
        "type": set_data.get("type") or "unknown",
    }
    records = []
    for card in set_data.get("cards") or []:
        record = adapt_fallback(card, set_info)
        if record is not None:
            records.append(record)
    return records
