import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from constants.retailers import retailers_from_urls
from services.product_matching.errors import SearchMisconfigured, SearchUnavailable
from services.product_matching.models import Candidate, DetectionAttributes, SearchResult

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 23 * 60 * 60
MISCONFIGURED_STATUS_CODES = {400, 401, 403, 404}


def build_search_term(attributes: DetectionAttributes) -> str:
    parts = [attributes.brand, attributes.product_name, attributes.flavor, attributes.size]
    return " ".join(p for p in parts if p).strip()


def front_image_url(product: Dict[str, Any]) -> Optional[str]:
    images = product.get("images") or []
    for image in images:
        if image.get("type") == "FRONT":
            urls = image.get("urls") or {}
            url = urls.get("desktop") or urls.get("mobile")
            if url:
                return url
    for image in images:
        urls = image.get("urls") or {}
        url = urls.get("desktop") or urls.get("mobile")
        if url:
            return url
    return None


def _category_label(category: Any) -> Optional[str]:
    if not category:
        return None
    if isinstance(category, (list, tuple)):
        return " > ".join(str(c) for c in category if c) or None
    return str(category)


def normalize_catalog_product(product: Dict[str, Any], rank: int) -> Optional[Candidate]:
    keys = product.get("keys") or {}
    key = keys.get("GTIN14") or product.get("key")
    if not key:
        return None
    return Candidate(
        key=str(key),
        name=product.get("title") or "",
        brand=product.get("companyBrand"),
        manufacturer=product.get("companyManufacturer"),
        size=product.get("measures"),
        category=_category_label(product.get("category")),
        image_url=front_image_url(product),
        retailers=tuple(retailers_from_urls(product.get("sourcePdpUrls"))),
        rank=rank,
        raw=product,
    )


class CatalogSearchClient:
    """Client for the external product catalog search service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        max_results: Optional[int] = None,
        updated_at_from: Optional[str] = None,
    ):
        self.base_url = (base_url or settings.catalog_api_base).rstrip("/")
        self.email = email if email is not None else settings.catalog_email
        self.password = password if password is not None else settings.catalog_password
        self.timeout = timeout or settings.catalog_timeout_seconds
        self.max_results = max_results or settings.catalog_max_results
        self.updated_at_from = updated_at_from or settings.catalog_updated_at_from

        self._token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

    def _check_credentials(self) -> None:
        if not self.email or not self.password:
            raise SearchMisconfigured("Catalog search credentials not configured")

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.status_code < 400:
            return
        detail = f"Catalog {action} failed: HTTP {response.status_code} {response.text[:200]}"
        if response.status_code in MISCONFIGURED_STATUS_CODES:
            raise SearchMisconfigured(detail)
        raise SearchUnavailable(detail)

    async def _authenticate(self, client: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._token and time.time() < self._token_expiry:
                return self._token

            self._check_credentials()
            response = await client.post(
                f"{self.base_url}/auth/token",
                json={"email": self.email, "password": self.password, "includeRefreshToken": True},
            )
            self._raise_for_status(response, "authentication")
            token = response.json().get("accessToken")
            if not token:
                raise SearchMisconfigured("Catalog authentication returned no access token")

            self._token = token
            self._token_expiry = time.time() + TOKEN_TTL_SECONDS
            return token

    def _build_payload(self, search_term: str) -> Dict[str, Any]:
        return {
            "updatedAtFrom": self.updated_at_from,
            "productFilter": "CORE_FIELDS",
            "search": search_term,
            "searchIn": {"or": ["title"]},
            "fuzzyMatch": True,
        }

    def _parse_response(self, payload: Dict[str, Any]) -> List[Candidate]:
        candidates: List[Candidate] = []
        for product in (payload.get("results") or [])[: self.max_results]:
            candidate = normalize_catalog_product(product, rank=len(candidates) + 1)
            if candidate is None:
                logger.warning(f"Skipping catalog result without key: {product.get('title')!r}")
                continue
            candidates.append(candidate)
        return candidates

    async def search(self, attributes: DetectionAttributes) -> SearchResult:
        search_term = build_search_term(attributes)
        if not search_term:
            logger.info("No usable attributes to search the catalog with")
            return SearchResult(candidates=[], search_term="")

        self._check_credentials()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                token = await self._authenticate(client)
                response = await client.post(
                    f"{self.base_url}/catalog/products/search/query",
                    json=self._build_payload(search_term),
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                )
                self._raise_for_status(response, "search")
                payload = response.json()
            except httpx.HTTPError as e:
                logger.error(f"Catalog search transport error: {e}")
                raise SearchUnavailable(f"Catalog search unavailable: {e}") from e
            except ValueError as e:
                logger.error(f"Catalog search returned invalid JSON: {e}")
                raise SearchUnavailable(f"Catalog search returned invalid JSON: {e}") from e

        candidates = self._parse_response(payload)
        logger.info(f"Catalog search '{search_term}' returned {len(candidates)} candidates")
        return SearchResult(candidates=candidates, search_term=search_term)
