"""
ChronoHeal - Shared Utilities Package
=====================================

Logging, HTTP client, and retry helpers.
"""

from shared.utils.logging import get_logger, setup_logging, run_context
from shared.utils.http_client import ServiceClient, ServiceClientConfig
from shared.utils.retry import with_retry, RetryConfig

__all__ = [
    "get_logger",
    "setup_logging",
    "run_context",
    "ServiceClient",
    "ServiceClientConfig",
    "with_retry",
    "RetryConfig",
]
