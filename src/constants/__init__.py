from constants.retailers import (
    KNOWN_RETAILERS,
    RETAILER_DOMAINS,
    retailer_from_store_name,
    retailers_from_urls,
)

__all__ = [
    "KNOWN_RETAILERS",
    "RETAILER_DOMAINS",
    "retailer_from_store_name",
    "retailers_from_urls",
]
