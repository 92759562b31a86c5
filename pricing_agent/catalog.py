import logging
from typing import Any, Dict, List, Optional, Set

import httpx
from pydantic import ValidationError

from .config import DEFAULT_CATALOG_API_VERSION, DEFAULT_CATALOG_URL
from .errors import CatalogTimeoutError, FetchError
from .filters import validate_filter
from .schemas import PriceRecord


logger = logging.getLogger("uvicorn.error")


class PriceCatalogClient:
    def __init__(
        self,
        base_url: str = DEFAULT_CATALOG_URL,
        api_version: str = DEFAULT_CATALOG_API_VERSION,
        page_timeout_s: float = 30.0,
        max_pages: int = 50,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.page_timeout_s = page_timeout_s
        self.max_pages = max_pages
        # Sibling lookups of one round share the pool instead of opening a connection each.
        self.client = httpx.AsyncClient(
            timeout=page_timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    async def fetch(self, filter_text: str) -> List[PriceRecord]:
        """Run one filter query and follow NextPageLink until the catalog is exhausted."""
        cleaned = validate_filter(filter_text)
        records: List[PriceRecord] = []
        seen_links: Set[str] = set()
        next_link: Optional[str] = None
        pages = 0
        while True:
            if next_link is None:
                data = await self._get_page(
                    self.base_url, params={"api-version": self.api_version, "$filter": cleaned}
                )
            else:
                data = await self._get_page(next_link)
            pages += 1
            items = data.get("Items") or []
            if isinstance(items, list):
                for item in items:
                    if isinstance(item, dict):
                        try:
                            records.append(PriceRecord.from_catalog(item))
                        except ValidationError as exc:
                            logger.warning("Catalog item rejected for filter %s: %s", cleaned, exc)
                            raise FetchError("Price catalog returned an unexpected record", url=self.base_url) from exc
            link = data.get("NextPageLink")
            if not link or not isinstance(link, str):
                break
            if link in seen_links:
                logger.warning("Catalog repeated page link for filter %s; stopping pagination", cleaned)
                break
            if pages >= self.max_pages:
                logger.warning("Catalog pagination capped at %s pages for filter %s", self.max_pages, cleaned)
                break
            seen_links.add(link)
            next_link = link
        logger.info("Catalog filter %s returned %s records over %s pages", cleaned, len(records), pages)
        return records

    async def _get_page(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            resp = await self.client.get(url, params=params, timeout=self.page_timeout_s)
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise CatalogTimeoutError(
                f"Price catalog did not answer within {self.page_timeout_s:g}s", {"url": url}
            ) from exc
        except httpx.HTTPStatusError as exc:
            detail: Any
            try:
                detail = exc.response.json()
            except Exception:
                detail = exc.response.text
            logger.warning("Catalog HTTP %s for %s: %s", exc.response.status_code, url, detail)
            raise FetchError(
                f"Failed to fetch prices (HTTP {exc.response.status_code})",
                status_code=exc.response.status_code,
                url=url,
            ) from exc
        except httpx.RequestError as exc:
            raise FetchError(f"Failed to fetch prices: {exc}", url=url) from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchError("Price catalog returned a non-JSON page", status_code=resp.status_code, url=url) from exc
        if not isinstance(data, dict):
            raise FetchError("Price catalog returned an unexpected page shape", status_code=resp.status_code, url=url)
        return data

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
