"""
Query cache services - cached, resilient data fetching for asyncio apps.

Provides:
- Cache: TTL + stale-while-revalidate store with eviction, persistence and sync
- CircuitBreaker: Prevents cascading failures
- RequestDeduplicator: Prevents duplicate concurrent requests
- QueryResource / ManualQueryResource / MutationResource: reactive resources
- QueryClient: Shared context and resource factory
"""

from querycache.services.errors import (
    ServiceError,
    CacheError,
    PersistenceError,
    CircuitOpenError,
    RequestTimeoutError,
    HttpStatusError,
    RateLimitError,
    ServiceUnavailableError,
)
from querycache.services.cache_models import CacheEntry, CacheHit, CleanupPolicy
from querycache.services.cache import Cache, NoopCache, SyncOptions
from querycache.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    NeverBrokenCircuitBreaker,
    create_circuit_breaker,
)
from querycache.services.deduplicator import RequestDeduplicator
from querycache.services.fingerprint import (
    RequestDescriptor,
    TransferCache,
    equal_request,
    fingerprint,
    request_key,
)
from querycache.services.network import NetworkStatus
from querycache.services.retry import RetryPolicy
from querycache.services.transport import HttpxTransport, Response, Transport
from querycache.services.resource import ResourceStatus
from querycache.services.query import ManualQueryResource, QueryCacheOptions, QueryResource
from querycache.services.mutation import MutationResource
from querycache.services.client import QueryClient

__all__ = [
    # Errors
    "ServiceError",
    "CacheError",
    "PersistenceError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "HttpStatusError",
    "RateLimitError",
    "ServiceUnavailableError",
    # Cache
    "Cache",
    "NoopCache",
    "SyncOptions",
    "CacheEntry",
    "CacheHit",
    "CleanupPolicy",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "NeverBrokenCircuitBreaker",
    "create_circuit_breaker",
    # Requests
    "RequestDescriptor",
    "TransferCache",
    "equal_request",
    "fingerprint",
    "request_key",
    "RequestDeduplicator",
    "RetryPolicy",
    "NetworkStatus",
    "Transport",
    "HttpxTransport",
    "Response",
    # Resources
    "ResourceStatus",
    "QueryCacheOptions",
    "QueryResource",
    "ManualQueryResource",
    "MutationResource",
    # Client
    "QueryClient",
]
