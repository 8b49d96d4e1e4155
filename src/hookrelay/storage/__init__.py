"""Storage backends for hookrelay.

This module provides the storage layer persisting endpoints and
deliveries through SQLAlchemy's async engine.

Example:
    ```python
    from hookrelay.storage import RelayStorage

    async with RelayStorage() as storage:
        endpoint = await storage.get_endpoint("whk_123")
    ```
"""

from .client import RelayStorage
from .tables import deliveries, endpoints, metadata

__all__ = [
    "RelayStorage",
    "deliveries",
    "endpoints",
    "metadata",
]
