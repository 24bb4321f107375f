"""The cluster module.

This module provides the clients used to read, apply and delete resources on
the target clusters, and the pool that holds one client per cluster.
"""

from .client import ClusterClient
from .in_memory import InMemoryClusterClient
from .kubectl import KubectlClusterClient
from .pool import ClusterClientPool, create_client

__all__ = [
    "ClusterClient",
    "ClusterClientPool",
    "InMemoryClusterClient",
    "KubectlClusterClient",
    "create_client",
]
