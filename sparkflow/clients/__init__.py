"""Clients for third-party APIs used by workflows."""

from .airtable import AirtableClient
from .embeddings import EmbeddingProvider
from .ratelimit import RateLimitState
from .readwise import AuthProbeResult, ReadwiseClient

__all__ = [
    "AirtableClient",
    "AuthProbeResult",
    "EmbeddingProvider",
    "RateLimitState",
    "ReadwiseClient",
]
