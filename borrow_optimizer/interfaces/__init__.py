"""Protocol interfaces for the borrow optimizer."""
from .chain import ChainClient
from .notifier import Notifier
from .platform_adapter import PlatformAdapter
from .pool_adapter import PoolAdapter
from .price_oracle import PriceOracle

__all__ = ["ChainClient", "Notifier", "PlatformAdapter", "PoolAdapter", "PriceOracle"]
