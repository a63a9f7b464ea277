"""Filtri di inclusione delle carte, configurabili dalle impostazioni del tenant."""

from typing import Callable

from mtg_import.scryfall.types import CatalogRecord

NON_SINGLE_LAYOUTS = ("token", "emblem", "planar")


def create_card_filter(
    physical_only: bool = True,
    include_oversized: bool = False,
    include_tokens: bool = False,
    importable_set_types: set[str] | frozenset[str] | list[str] | None = None,
) -> Callable[[CatalogRecord], bool]:
    """
    Filtro dalle impostazioni. importable_set_types=None disattiva il controllo sul tipo
    di set (usato per i job su singolo set, dove il set e' scelto esplicitamente).
    """
    allowed = frozenset(importable_set_types) if importable_set_types is not None else None

    def card_filter(record: CatalogRecord) -> bool:
        if physical_only and (record.digital or "paper" not in record.games):
            return False
        if not include_oversized and record.oversized:
            return False
        if not include_tokens and record.layout in NON_SINGLE_LAYOUTS:
            return False
        if allowed is not None and record.set_type not in allowed:
            return False
        return True

    return card_filter
