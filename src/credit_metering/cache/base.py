from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction used for external billing entitlements
    and processed webhook event ids.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Set only if the key is absent; returns False when it already exists."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...
