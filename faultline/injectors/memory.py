"""
Memory pressure.

Allocates and touches memory in chunks until system memory usage reaches
the requested fraction of total, never allocating more than the
configured cap. Revert drops every chunk.
"""

import asyncio
import gc
import logging
import mmap
from typing import Any, Dict, List, Mapping

import psutil

from faultline.injectors.base import Injector, InjectorDescription, param
from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)

DEFAULT_TARGET_USAGE = 0.90
MB = 1024 * 1024


def touch(size: int) -> bytearray:
    """Allocate a block and write one byte per page so it becomes resident."""
    block = bytearray(size)
    page = mmap.PAGESIZE
    block[::page] = b'\x01' * len(range(0, size, page))
    return block


class MemoryPressureInjector(Injector):
    """Raises system memory usage towards `target_usage` of total."""

    def __init__(self, chunk_mb: int = 64, max_allocation_mb: int = 4096):
        super().__init__(InjectorKind.MEMORY_PRESSURE)
        self.chunk_bytes = chunk_mb * MB
        self.max_allocation_bytes = max_allocation_mb * MB
        self._blocks: Dict[int, List[bytearray]] = {}

    def bytes_needed(self, target_usage: float) -> int:
        """Bytes to allocate so used memory reaches target_usage of total, capped."""
        memory = psutil.virtual_memory()
        used = memory.total - memory.available
        wanted = int(memory.total * target_usage) - used
        return max(0, min(wanted, self.max_allocation_bytes))

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        target_usage = float(param(params, 'target_usage', DEFAULT_TARGET_USAGE))
        needed = self.bytes_needed(target_usage)
        if needed >= self.max_allocation_bytes:
            logger.warning(f"Memory pressure capped at {self.max_allocation_bytes // MB}MB")

        blocks = await asyncio.to_thread(self._allocate, needed)
        allocated = sum(len(block) for block in blocks)
        handle = self._new_handle(target, {
            'target_usage': target_usage,
            'bytes_allocated': allocated,
            'chunks': len(blocks),
        })
        self._blocks[id(handle)] = blocks
        logger.info(f"Allocated {allocated // MB}MB in {len(blocks)} chunk(s) for memory pressure")
        return handle

    def _allocate(self, needed: int) -> List[bytearray]:
        blocks = []
        remaining = needed
        while remaining > 0:
            size = min(self.chunk_bytes, remaining)
            try:
                blocks.append(touch(size))
            except MemoryError:
                logger.warning(f"Allocation stopped early at {(needed - remaining) // MB}MB (MemoryError)")
                break
            remaining -= size
        return blocks

    async def _revert(self, handle: InjectionHandle) -> None:
        blocks = self._blocks.pop(id(handle), None)
        if blocks is None:
            return
        freed = sum(len(block) for block in blocks)
        blocks.clear()
        del blocks
        gc.collect()
        logger.info(f"Released {freed // MB}MB of memory pressure")

    @property
    def allocated_bytes(self) -> int:
        return sum(len(block) for blocks in self._blocks.values() for block in blocks)

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='memory-ballast',
            kind=self.kind,
            backend='process',
            requires_privilege=False,
            platforms=('linux', 'darwin', 'win32'),
            summary="memory_pressure by allocating touched chunks up to target_usage of total"
        )
