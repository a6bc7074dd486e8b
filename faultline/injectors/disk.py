"""
Disk slowdown.

A worker thread performs synchronous I/O against a scratch file (write,
fsync, read back) and sleeps a fixed latency before each operation,
keeping the disk busy with slow, blocking traffic for the phase.
"""

import asyncio
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from faultline.errors import CleanupError
from faultline.injectors.base import Injector, InjectorDescription, param
from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)

DEFAULT_LATENCY_MS = 100
DEFAULT_BLOCK_KB = 64
MAX_SCRATCH_BLOCKS = 256
JOIN_TIMEOUT_S = 10


@dataclass
class DiskWorker:
    """State of one slow-I/O worker."""
    path: Path
    latency_s: float
    block_size: int
    stop_event: threading.Event = field(default_factory=threading.Event)
    operations: int = 0
    errors: int = 0
    thread: Optional[threading.Thread] = None

    def run(self):
        block = os.urandom(self.block_size)
        offset = 0
        with open(self.path, 'r+b', buffering=0) as f:
            while not self.stop_event.is_set():
                if self.stop_event.wait(self.latency_s):
                    break
                try:
                    f.seek(offset)
                    f.write(block)
                    os.fsync(f.fileno())
                    self.operations += 1

                    if self.stop_event.wait(self.latency_s):
                        break
                    f.seek(offset)
                    f.read(self.block_size)
                    self.operations += 1
                except OSError as e:
                    self.errors += 1
                    logger.warning(f"Disk slowdown I/O error on {self.path}: {e}")
                offset = (offset + self.block_size) % (self.block_size * MAX_SCRATCH_BLOCKS)


class DiskSlowInjector(Injector):
    """Interposes `latency_ms` before each synchronous I/O on a scratch file."""

    def __init__(self, scratch_dir: Optional[Path] = None):
        super().__init__(InjectorKind.DISK_SLOW)
        self.scratch_dir = Path(scratch_dir) if scratch_dir else Path(tempfile.gettempdir())
        self._workers: Dict[int, DiskWorker] = {}

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        latency_ms = float(param(params, 'latency_ms', DEFAULT_LATENCY_MS))
        block_size = int(param(params, 'block_kb', DEFAULT_BLOCK_KB)) * 1024
        directory = Path(param(params, 'path', self.scratch_dir))
        directory.mkdir(parents=True, exist_ok=True)

        fd, name = tempfile.mkstemp(prefix='faultline-disk-', suffix='.scratch', dir=directory)
        os.close(fd)

        worker = DiskWorker(path=Path(name), latency_s=latency_ms / 1000.0, block_size=block_size)
        worker.thread = threading.Thread(target=worker.run, name=f"faultline-disk-{worker.path.name}", daemon=True)
        worker.thread.start()

        handle = self._new_handle(target, {
            'latency_ms': latency_ms,
            'block_size': block_size,
            'scratch_file': str(worker.path),
        })
        self._workers[id(handle)] = worker
        logger.info(f"Started disk slowdown ({latency_ms:g}ms per op) on {worker.path}")
        return handle

    async def _revert(self, handle: InjectionHandle) -> None:
        worker = self._workers.pop(id(handle), None)
        if worker is None:
            return
        worker.stop_event.set()
        await asyncio.to_thread(worker.thread.join, JOIN_TIMEOUT_S)
        if worker.thread.is_alive():
            raise CleanupError(f"disk worker for {worker.path} did not stop", handle.handle_id)

        handle.metadata['operations'] = worker.operations
        try:
            worker.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CleanupError(f"could not remove scratch file {worker.path}: {e}", handle.handle_id) from e
        logger.info(f"Stopped disk slowdown after {worker.operations} operation(s)")

    def worker_for(self, handle: InjectionHandle) -> Optional[DiskWorker]:
        return self._workers.get(id(handle))

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='disk-latency',
            kind=self.kind,
            backend='thread',
            requires_privilege=False,
            platforms=('linux', 'darwin', 'win32'),
            summary="disk_slow with a worker doing delayed write/fsync/read cycles on a scratch file"
        )
