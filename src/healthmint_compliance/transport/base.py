"""Delivery of JSON records to a durable store."""

from abc import ABC, abstractmethod
from typing import Any


class Transport(ABC):
    """Delivers a JSON body to a path such as ``/audit/log`` or ``/user/consent``.

    Implementations raise ``DeliveryError`` on any failure; callers treat
    every exception as a delivery failure.
    """

    @abstractmethod
    async def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """Deliver ``body`` and return the store's response."""

    async def close(self) -> None:  # noqa: B027
        """Release any held resources."""
