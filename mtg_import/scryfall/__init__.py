from mtg_import.scryfall.bulk_data import BulkDataManager
from mtg_import.scryfall.circuit_breaker import CircuitBreaker
from mtg_import.scryfall.client import ScryfallClient
from mtg_import.scryfall.rate_limiter import RateLimiter
from mtg_import.scryfall.types import CatalogRecord, adapt_primary

__all__ = [
    "BulkDataManager",
    "CircuitBreaker",
    "ScryfallClient",
    "RateLimiter",
    "CatalogRecord",
    "adapt_primary",
]
