"""
Remote Listing Fetcher

Paginated, strictly sequential retrieval of provider records matching an
OData filter. A page that still fails after the retry policy stops the loop
and the records gathered so far are returned as a partial result; only an
authentication failure is raised, since no later page could succeed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config.sync_config import SyncConfig
from .errors import ProviderAuthError, SyncError
from .listing_models import format_timestamp
from .provider_client import PROPERTY, ProviderClient
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Records gathered for one filter"""
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    complete: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.records)


def odata_quote(value: Any) -> str:
    """Quote a string literal for an OData filter"""
    return "'" + str(value).replace("'", "''") + "'"


class ListingFetcher:
    """
    Fetches provider records page by page
    """

    def __init__(self, client: ProviderClient, config: SyncConfig,
                 retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.config = config
        self.page_size = config.provider.page_size
        self.retry_policy = retry_policy or RetryPolicy.from_settings(config.retry)

    @staticmethod
    def build_filter(property_types: Optional[List[str]] = None,
                     modified_since: Optional[datetime] = None,
                     city: Optional[str] = None,
                     street_number: Optional[str] = None,
                     street_key: Optional[str] = None,
                     extra: Optional[str] = None) -> str:
        """
        Compose an OData filter expression.

        Args:
            property_types: PropertyType values (OR-ed together)
            modified_since: Only records modified after this instant
            city: City name
            street_number: Exact StreetNumber
            street_key: Lower-case fragment of StreetName
            extra: Additional raw clause

        Returns:
            Filter string, clauses joined with "and"
        """
        clauses = []

        if property_types:
            type_clauses = [f"PropertyType eq {odata_quote(t)}" for t in property_types]
            if len(type_clauses) == 1:
                clauses.append(type_clauses[0])
            else:
                clauses.append('(' + ' or '.join(type_clauses) + ')')

        if city:
            clauses.append(f"City eq {odata_quote(city)}")

        if street_number:
            clauses.append(f"StreetNumber eq {odata_quote(street_number)}")

        if street_key:
            clauses.append(f"contains(tolower(StreetName),{odata_quote(street_key.lower())})")

        if modified_since is not None:
            clauses.append(f"ModificationTimestamp gt {format_timestamp(modified_since)}")

        if extra:
            clauses.append(extra)

        return ' and '.join(clauses)

    async def fetch_all(self, filter_expr: Optional[str], page_size: Optional[int] = None,
                        should_stop: Optional[Callable[[], bool]] = None,
                        select: Optional[str] = None,
                        resource: str = PROPERTY) -> FetchResult:
        """
        Retrieve every record matching a filter, one page at a time.

        Args:
            filter_expr: OData filter (None for everything)
            page_size: Records per page (defaults to provider.page_size)
            should_stop: Checked before each page; True ends the fetch early
            select: Optional $select column list
            resource: Provider resource name

        Returns:
            FetchResult; complete is False after a page failure or cancellation

        Raises:
            ProviderAuthError: credentials were rejected
        """
        page_size = page_size or self.page_size
        result = FetchResult()
        skip = 0

        while True:
            if should_stop is not None and should_stop():
                logger.info(f"Fetch cancelled after {result.pages} pages ({result.total} records)")
                result.cancelled = True
                return result

            try:
                body = await self.retry_policy.run(
                    self.client.query, resource,
                    filter=filter_expr or None, top=page_size, skip=skip, select=select,
                )
            except ProviderAuthError:
                raise
            except SyncError as e:
                result.error = f"Page at offset {skip} failed: {e}"
                logger.error(f"{result.error}; returning {result.total} records fetched so far")
                return result

            rows = body.get('value')
            if not isinstance(rows, list) or not rows:
                break

            result.records.extend(rows)
            result.pages += 1
            logger.debug(f"Fetched page {result.pages} ({len(rows)} records, offset {skip})")

            if len(rows) < page_size:
                break
            skip += page_size

        result.complete = True
        logger.info(f"Fetched {result.total} {resource} records in {result.pages} pages")
        return result

    async def fetch_select(self, select: str, filter_expr: Optional[str] = None,
                           page_size: Optional[int] = None,
                           should_stop: Optional[Callable[[], bool]] = None) -> FetchResult:
        """Paged fetch of selected columns only"""
        return await self.fetch_all(filter_expr, page_size=page_size, should_stop=should_stop, select=select)

    async def count(self, filter_expr: Optional[str] = None) -> int:
        """Total number of records matching a filter"""
        body = await self.retry_policy.run(
            self.client.query, PROPERTY, filter=filter_expr or None, top=0, count=True,
        )
        return int(body.get('@odata.count') or 0)
