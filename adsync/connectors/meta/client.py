"""adsync — Meta API Client.

Handles authentication, error classification, transport retries and
cursor pagination. Entity fetchers decode responses into typed structs.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from adsync.config import settings
from adsync.connectors.meta.endpoints import (
    ACCOUNT_FIELDS,
    AD_FIELDS,
    ADSET_FIELDS,
    CAMPAIGN_EFFECTIVE_STATUSES,
    CAMPAIGN_FIELDS,
    CREATIVE_FIELDS,
    ENTITY_PAGE_LIMIT,
    INSIGHT_PAGE_LIMIT,
)
from adsync.core.errors import (
    ProviderError,
    ProviderRateLimited,
    ProviderResponseError,
    ProviderTokenExpired,
)
from adsync.core.logging import get_logger
from adsync.models.meta_schemas import (
    MetaAd,
    MetaAdAccount,
    MetaAdSet,
    MetaCampaign,
    MetaCreative,
    MetaInsight,
)

logger = get_logger("meta.client")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds

# Application, user, page and ad-account level throttling
RATE_LIMIT_CODES = {4, 17, 32, 613}
RATE_LIMIT_CODE_RANGE = range(80000, 80015)
TOKEN_EXPIRED_CODE = 190

M = TypeVar("M", bound=BaseModel)


def _error_body(resp: httpx.Response) -> Dict[str, Any]:
    """Return the Graph API `error` object, or {} if the body has none."""
    try:
        body = resp.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def classify_error(status_code: int, error: Dict[str, Any]) -> ProviderError:
    """Map an HTTP status + Graph API error object to a ProviderError subclass."""
    message = error.get("message") or f"HTTP {status_code}"
    try:
        code = int(error.get("code") or 0)
    except (TypeError, ValueError):
        code = 0
    subcode = error.get("error_subcode")

    if (
        status_code == 429
        or code in RATE_LIMIT_CODES
        or code in RATE_LIMIT_CODE_RANGE
    ):
        return ProviderRateLimited(message, status_code, code, subcode)
    if code == TOKEN_EXPIRED_CODE:
        return ProviderTokenExpired(message, status_code, code, subcode)
    return ProviderError(message, status_code, code, subcode)


def _decode_many(model: Type[M], rows: List[Dict[str, Any]], endpoint: str) -> List[M]:
    try:
        return [model.model_validate(row) for row in rows]
    except ValidationError as e:
        raise ProviderResponseError(
            f"Unexpected response shape from {endpoint}: {e.error_count()} invalid field(s)"
        ) from e


def _decode_one(model: Type[M], body: Dict[str, Any], endpoint: str) -> M:
    return _decode_many(model, [body], endpoint)[0]


class MetaClient:
    """Async HTTP client for the Meta Marketing API."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_pages: int | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.meta_graph_url).rstrip("/")
        self.max_pages = max_pages or settings.sync_max_pages
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._client: Optional[httpx.AsyncClient] = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "MetaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Core Request Method ──

    def _backoff(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** (attempt - 1))

    async def _request(
        self, url: str, params: Dict[str, Any] | None = None
    ) -> Dict[str, Any]:
        """GET with transport/5xx retries. Provider errors are raised, not retried."""
        client = await self._get_client()
        endpoint = httpx.URL(url).path

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.get(url, params=params)
            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = self._backoff(attempt)
                    logger.warning(
                        f"Request error: {e}. Retrying in {wait}s (attempt {attempt}/{self.max_retries})",
                        extra={"endpoint": endpoint},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise ProviderError(
                    f"Connection failed after {self.max_retries} attempts: {e}"
                ) from e

            if resp.status_code >= 500 and attempt < self.max_retries:
                wait = self._backoff(attempt)
                logger.warning(
                    f"Server error {resp.status_code}. Retrying in {wait}s",
                    extra={"endpoint": endpoint, "status_code": resp.status_code},
                )
                await asyncio.sleep(wait)
                continue

            if resp.is_error:
                error = classify_error(resp.status_code, _error_body(resp))
                logger.error(
                    f"Meta API error [{endpoint}] ({type(error).__name__}): {error}",
                    extra={"endpoint": endpoint, "status_code": resp.status_code},
                )
                raise error

            try:
                body = resp.json()
            except ValueError as e:
                raise ProviderResponseError(
                    f"Non-JSON response from {endpoint}", resp.status_code
                ) from e
            if not isinstance(body, dict):
                raise ProviderResponseError(
                    f"Expected a JSON object from {endpoint}", resp.status_code
                )
            return body

        raise ProviderError("Max retries exhausted")

    async def get(
        self, path: str, params: Dict[str, Any] | None = None
    ) -> Dict[str, Any]:
        """GET a Graph API path, or an absolute paging cursor URL as-is."""
        if path.startswith(("http://", "https://")):
            return await self._request(path)
        query = dict(params or {})
        query["access_token"] = self.access_token
        return await self._request(f"{self.base_url}{path}", query)

    # ── Pagination ──

    @staticmethod
    def _page_rows(body: Dict[str, Any], path: str) -> List[Dict[str, Any]]:
        rows = body.get("data") or []
        if not isinstance(rows, list):
            raise ProviderResponseError(f"Expected a data list from {path}")
        return rows

    async def fetch_all_pages(
        self,
        path: str,
        params: Dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> List[Dict[str, Any]]:
        """Follow `paging.next` cursors up to max_pages pages.

        The first page's errors propagate. A later page failing ends the walk
        and the rows collected so far are returned.
        """
        max_pages = max_pages or self.max_pages

        first = await self.get(path, params)
        all_data: List[Dict[str, Any]] = list(self._page_rows(first, path))
        next_url = (first.get("paging") or {}).get("next")
        pages = 1

        while next_url and pages < max_pages:
            try:
                page = await self.get(next_url)
                rows = self._page_rows(page, path)
            except ProviderError as e:
                logger.warning(
                    f"Pagination failed on page {pages + 1} of {path}, stopping early: {e}",
                    extra={"endpoint": path},
                )
                break
            all_data.extend(rows)
            next_url = (page.get("paging") or {}).get("next")
            pages += 1

        if next_url and pages >= max_pages:
            logger.warning(
                f"Stopped {path} at page cap ({max_pages}); more data available",
                extra={"endpoint": path},
            )

        logger.info(f"Fetched {len(all_data)} records from {path}")
        return all_data

    # ── Entity Fetchers ──

    async def get_accounts(self) -> List[MetaAdAccount]:
        """Ad accounts the token's user can access."""
        rows = await self.fetch_all_pages(
            "/me/adaccounts", {"fields": ACCOUNT_FIELDS, "limit": 100}
        )
        return _decode_many(MetaAdAccount, rows, "adaccounts")

    async def get_account(self, account_id: str) -> MetaAdAccount:
        body = await self.get(f"/{account_id}", {"fields": ACCOUNT_FIELDS})
        return _decode_one(MetaAdAccount, body, "adaccount")

    async def get_campaigns(self, account_id: str) -> List[MetaCampaign]:
        rows = await self.fetch_all_pages(
            f"/{account_id}/campaigns",
            {
                "fields": CAMPAIGN_FIELDS,
                "effective_status": CAMPAIGN_EFFECTIVE_STATUSES,
                "limit": ENTITY_PAGE_LIMIT,
            },
        )
        return _decode_many(MetaCampaign, rows, "campaigns")

    async def get_adsets(self, account_id: str) -> List[MetaAdSet]:
        rows = await self.fetch_all_pages(
            f"/{account_id}/adsets",
            {"fields": ADSET_FIELDS, "limit": ENTITY_PAGE_LIMIT},
        )
        return _decode_many(MetaAdSet, rows, "adsets")

    async def get_ads(self, account_id: str) -> List[MetaAd]:
        rows = await self.fetch_all_pages(
            f"/{account_id}/ads",
            {"fields": AD_FIELDS, "limit": ENTITY_PAGE_LIMIT},
        )
        return _decode_many(MetaAd, rows, "ads")

    async def get_creative_details(self, creative_id: str) -> MetaCreative:
        body = await self.get(f"/{creative_id}", {"fields": CREATIVE_FIELDS})
        return _decode_one(MetaCreative, body, "adcreative")

    # ── Insights ──

    async def get_insights(
        self,
        object_id: str,
        level: str,
        date_start: str,
        date_stop: str,
        fields: Sequence[str],
    ) -> List[MetaInsight]:
        """Daily insights for [date_start, date_stop] at the given level.

        `fields` is passed through unchanged; callers decide which metrics
        the account's consent allows.
        """
        params = {
            "level": level,
            "time_range": json.dumps({"since": date_start, "until": date_stop}),
            "time_increment": 1,
            "fields": ",".join(fields),
            "limit": INSIGHT_PAGE_LIMIT,
        }
        rows = await self.fetch_all_pages(f"/{object_id}/insights", params)
        return _decode_many(MetaInsight, rows, "insights")
