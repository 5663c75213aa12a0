import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

class BaseBroker(ABC):
    """Per-credential brokerage client used by the connection supervisor."""

    @abstractmethod
    async def connect_async(self):
        """Establish (or verify) the connection; returns account summary."""
        raise NotImplementedError

    @abstractmethod
    async def close(self):
        """Close connection and clean up resources."""
        raise NotImplementedError

    @abstractmethod
    async def get_account_summary_async(self):
        raise NotImplementedError

    @abstractmethod
    async def get_positions_async(self):
        raise NotImplementedError

    @abstractmethod
    async def fetch_candles(self, symbol: str, granularity: str, count: int) -> dict:
        """Fetch the most recent candles in the venue's native shape."""
        raise NotImplementedError

    @abstractmethod
    async def place_order_async(self, order):
        """Submit an Order and return an OrderAck."""
        raise NotImplementedError
