from mtg_import.saleor.client import ImportContext, SaleorImportClient, is_duplicate_slug_error

__all__ = ["ImportContext", "SaleorImportClient", "is_duplicate_slug_error"]
