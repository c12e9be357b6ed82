"""
HTTP client for the PropTx RESO/OData listing provider.

Blocking requests-based client; callers run it off the event loop through
RetryPolicy.run. Every request carries the bearer token and a timeout, and
failures are translated into the pipeline's error types.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import requests
from requests.adapters import HTTPAdapter

from config.sync_config import ProviderSettings
from .errors import ProviderAuthError, ProviderError, ProviderRequestError

logger = logging.getLogger(__name__)

PROPERTY = 'Property'
PROPERTY_ROOMS = 'PropertyRooms'
MEDIA = 'Media'
OPEN_HOUSE = 'OpenHouse'


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class ProviderClient:
    """Authenticated client for the listing provider"""

    def __init__(self, settings: ProviderSettings, session: Optional[requests.Session] = None,
                 pool_size: int = 100):
        if not settings.token:
            raise ValueError("Provider token not configured. Set PROPTX_VOW_TOKEN, "
                             "PROPTX_DLA_TOKEN or PROPTX_BEARER_TOKEN")

        self.settings = settings
        self.base_url = settings.base_url
        self.timeout = settings.request_timeout

        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=10, pool_maxsize=pool_size)
            session.mount('https://', adapter)
            session.mount('http://', adapter)
        self.session = session
        self.session.headers.update({
            'Authorization': f'Bearer {settings.token}',
            'Accept': 'application/json',
            'User-Agent': settings.user_agent,
        })

    def build_url(self, resource: str, params: Dict[str, Any]) -> str:
        """Resource URL with OData system query options left readable"""
        query = urlencode(
            {key: value for key, value in params.items() if value is not None},
            safe="$',():",
            quote_via=quote,
        )
        return f"{self.base_url}{resource}?{query}" if query else f"{self.base_url}{resource}"

    def get(self, resource: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Issue one GET and return the decoded JSON body.

        Raises:
            ProviderAuthError: 401/403
            ProviderRequestError: other 4xx
            ProviderError: 429, 5xx, timeouts, connection errors, bad JSON
        """
        url = self.build_url(resource, params)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"{resource} request timed out after {self.timeout}s", kind='timeout') from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{resource} request failed: {e}", kind='network') from e

        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthError(f"{resource} request rejected with HTTP {status}", status_code=status)
        if status == 429:
            raise ProviderError(
                f"{resource} request rate limited",
                status_code=status,
                retry_after=_parse_retry_after(response.headers.get('Retry-After')),
            )
        if status >= 500:
            raise ProviderError(f"{resource} request failed with HTTP {status}", status_code=status)
        if status >= 400:
            raise ProviderRequestError(
                f"{resource} request failed with HTTP {status}: {response.text[:200]}",
                status_code=status,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(f"{resource} returned invalid JSON", status_code=status) from e
        if not isinstance(body, dict):
            raise ProviderError(f"{resource} returned an unexpected body", status_code=status)
        return body

    def query(self, resource: str, filter: Optional[str] = None, top: Optional[int] = None,
              skip: Optional[int] = None, select: Optional[str] = None,
              count: bool = False, orderby: Optional[str] = None) -> Dict[str, Any]:
        """OData query against a resource"""
        params = {
            '$filter': filter,
            '$select': select,
            '$orderby': orderby,
            '$top': top,
            '$skip': skip if skip else None,
            '$count': 'true' if count else None,
        }
        return self.get(resource, params)

    def test_connection(self) -> bool:
        """Cheap authenticated request used as a pre-flight check"""
        body = self.query(PROPERTY, top=1)
        logger.info(f"Provider connection OK ({len(body.get('value') or [])} sample record)")
        return True

    def close(self):
        self.session.close()
