"""Remote service access: retrying client, retry policy, name resolution."""

from .names import NameResolver, RemoteNameResolver
from .remote import RemoteClient, RemoteResponse, Signer
from .retry import RetryPolicy, exponential_backoff

__all__ = [
    "NameResolver",
    "RemoteClient",
    "RemoteNameResolver",
    "RemoteResponse",
    "RetryPolicy",
    "Signer",
    "exponential_backoff",
]
