"""
Service-layer exceptions

Each carries a machine-readable reason code and the HTTP status the API
layer should answer with. main.py renders them in the standard error
envelope.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Business rule rejected the operation"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class WithdrawalError(ServiceError):
    """Eligibility, cancel or reconcile rejection"""


class CheckoutError(ServiceError):
    pass


class AffiliateSettingsError(ServiceError):
    pass
