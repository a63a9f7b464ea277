from mtg_import.mtgjson.bulk_data import MtgjsonBulkDataManager
from mtg_import.mtgjson.card_adapter import adapt_fallback

__all__ = ["MtgjsonBulkDataManager", "adapt_fallback"]
