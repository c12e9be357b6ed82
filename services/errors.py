"""
Exception types raised by the listing sync pipeline.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for listing sync failures"""


class ProviderError(SyncError):
    """Transient upstream failure (rate limit, 5xx, timeout, connection error)"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None, kind: str = 'http'):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.kind = kind  # http | timeout | network


class ProviderAuthError(SyncError):
    """Provider rejected our credentials (401/403); no later request can succeed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderRequestError(SyncError):
    """Non-retryable client error from the provider (other 4xx)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DataShapeError(SyncError):
    """A provider record is missing fields we cannot do without"""


class ScopeNotFoundError(SyncError):
    """The building or municipality named by a sync request does not exist"""
