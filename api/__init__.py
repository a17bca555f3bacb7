"""
Módulo API
"""
from .aemet_opendata import (
    AemetFetcher,
    FetchAttempt,
    backoff_delay,
    decode_payload,
    is_retryable_status,
    parse_retry_after,
)

__all__ = [
    'AemetFetcher',
    'FetchAttempt',
    'backoff_delay',
    'decode_payload',
    'is_retryable_status',
    'parse_retry_after',
]
