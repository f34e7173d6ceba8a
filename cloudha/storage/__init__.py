"""Registry storage backends"""

from .blob import BlobRegistry
from .registry import (
    FAILOVER_NAMESPACE,
    FAILOVER_STATUS_KEY,
    INSTANCES_NAMESPACE,
    FileRegistry,
    Registry,
)

__all__ = [
    "Registry",
    "FileRegistry",
    "BlobRegistry",
    "INSTANCES_NAMESPACE",
    "FAILOVER_NAMESPACE",
    "FAILOVER_STATUS_KEY",
]
