"""Chain client protocol — source of the current block number."""
from typing import Protocol


class ChainClient(Protocol):
    """Abstract interface for reading the chain clock."""

    async def get_block_number(self) -> int: ...
