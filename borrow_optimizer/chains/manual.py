"""In-process block clock, advanced explicitly."""
from __future__ import annotations


class ManualChain:
    """Block source whose height only moves when told to."""

    def __init__(self, block: int = 1) -> None:
        self.block = block

    def advance(self, blocks: int = 1) -> int:
        if blocks < 0:
            raise ValueError("Cannot move the chain backwards")
        self.block += blocks
        return self.block

    async def get_block_number(self) -> int:
        return self.block
