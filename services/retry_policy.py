"""
Retry/backoff policy shared by every provider call.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from config.sync_config import RetryPolicySettings
from .errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Bounded retries for transient provider failures.

    Rate limits honour Retry-After, server errors back off linearly by
    attempt, timeouts and connection errors wait a fixed interval. Auth
    failures and other client errors are never retried.
    """
    max_attempts: int = 3
    backoff_seconds: float = 30.0
    timeout_wait_seconds: float = 10.0
    network_wait_seconds: float = 5.0
    max_retry_after_seconds: float = 120.0

    @classmethod
    def from_settings(cls, settings: RetryPolicySettings, max_attempts: Optional[int] = None) -> 'RetryPolicy':
        return cls(
            max_attempts=max_attempts or settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            timeout_wait_seconds=settings.timeout_wait_seconds,
            network_wait_seconds=settings.network_wait_seconds,
            max_retry_after_seconds=settings.max_retry_after_seconds,
        )

    def delay_for(self, error: ProviderError, attempt: int) -> float:
        """Seconds to wait before the next attempt"""
        if error.status_code == 429:
            wait = error.retry_after if error.retry_after is not None else self.backoff_seconds
            return min(wait, self.max_retry_after_seconds)
        if error.kind == 'timeout':
            return self.timeout_wait_seconds
        if error.kind == 'network':
            return self.network_wait_seconds
        return attempt * self.backoff_seconds

    async def run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run a blocking provider call off the event loop, retrying transient errors.

        Raises:
            ProviderError: when every attempt failed
            ProviderAuthError, ProviderRequestError: immediately
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except ProviderError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(e, attempt)
                logger.warning(f"Attempt {attempt}/{self.max_attempts} failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
