from .platform_adapter import FixedRatePlatformAdapter
from .pool_adapter import FixedRatePoolAdapter

__all__ = ["FixedRatePlatformAdapter", "FixedRatePoolAdapter"]
