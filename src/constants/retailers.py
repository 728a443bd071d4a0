"""Retailer names and the catalog product-page domains that identify them."""

KNOWN_RETAILERS = [
    "whole foods",
    "trader joe",
    "stop & shop",
    "sam's club",
    "food lion",
    "target",
    "walmart",
    "walgreens",
    "cvs",
    "kroger",
    "safeway",
    "albertsons",
    "publix",
    "costco",
    "aldi",
    "lidl",
    "giant",
]

RETAILER_DOMAINS = {
    "walmart.com": "walmart",
    "target.com": "target",
    "walgreens.com": "walgreens",
    "cvs.com": "cvs",
    "kroger.com": "kroger",
    "safeway.com": "safeway",
    "albertsons.com": "albertsons",
    "publix.com": "publix",
    "wholefoodsmarket.com": "whole foods",
    "traderjoes.com": "trader joe",
    "costco.com": "costco",
    "samsclub.com": "sam's club",
    "aldi.": "aldi",
    "lidl.": "lidl",
    "foodlion.com": "food lion",
    "giantfood.com": "giant",
    "stopandshop.com": "stop & shop",
}


def retailer_from_store_name(store_name: str | None) -> str | None:
    """'Target Store #1234' -> 'target'. Falls back to the first word."""
    if not store_name:
        return None
    normalized = store_name.lower().strip()
    if not normalized:
        return None
    for retailer in KNOWN_RETAILERS:
        if retailer in normalized:
            return retailer
    return normalized.split()[0]


def retailers_from_urls(urls: list[str] | None) -> list[str]:
    if not urls:
        return []
    found: list[str] = []
    for url in urls:
        lowered = (url or "").lower()
        for domain, retailer in RETAILER_DOMAINS.items():
            if domain in lowered and retailer not in found:
                found.append(retailer)
    return found
