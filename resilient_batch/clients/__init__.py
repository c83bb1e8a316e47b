"""
Clients for rate-limited remote services.
"""

from .http_client import RateLimitedClient, classify_http_error, parse_retry_after

__all__ = [
    'RateLimitedClient',
    'classify_http_error',
    'parse_retry_after'
]
