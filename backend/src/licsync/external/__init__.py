"""External license API access."""

from .client import ExternalLicenseClient, FetchResult
from .validator import ExternalLicenseValidator, ValidationOutcome

__all__ = [
    "ExternalLicenseClient",
    "ExternalLicenseValidator",
    "FetchResult",
    "ValidationOutcome",
]
