"""Block sources."""
from .evm import EvmClient
from .manual import ManualChain

__all__ = ["EvmClient", "ManualChain"]
