"""
CPU starvation.

One worker process per core runs a busy/idle duty cycle whose busy share
equals the requested intensity. Processes are used instead of threads so
the burn is not serialized by the interpreter lock. Workers are pinned to
a core where the OS supports affinity.
"""

import asyncio
import logging
import multiprocessing
import os
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

import psutil

from faultline.errors import CleanupError
from faultline.injectors.base import Injector, InjectorDescription, param
from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)

DEFAULT_INTENSITY = 0.8
DUTY_PERIOD_S = 0.01
JOIN_TIMEOUT_S = 5


def burn(intensity: float, stop_event, period_s: float = DUTY_PERIOD_S):
    """
    Worker body: spin for intensity * period, sleep for the rest, until stopped.

    Module level so it can be handed to a spawned process.
    """
    busy = period_s * intensity
    idle = period_s - busy
    value = 0
    while not stop_event.is_set():
        deadline = time.perf_counter() + busy
        while time.perf_counter() < deadline:
            value = (value * 31 + 7) % 1000003
        if idle > 0:
            time.sleep(idle)


class CpuStarvationInjector(Injector):
    """Burns CPU on every core (or `workers` cores) at the requested intensity."""

    def __init__(self, default_workers: Optional[int] = None):
        super().__init__(InjectorKind.CPU_STARVATION)
        self.default_workers = default_workers
        self._context = multiprocessing.get_context('spawn')
        self._burners: Dict[int, Tuple[Any, List[multiprocessing.Process]]] = {}

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        intensity = float(param(params, 'intensity', DEFAULT_INTENSITY))
        workers = int(param(params, 'workers', self.default_workers or os.cpu_count() or 1))

        stop_event, processes = await asyncio.to_thread(self._start_workers, intensity, workers)
        handle = self._new_handle(target, {
            'intensity': intensity,
            'workers': len(processes),
            'pids': [p.pid for p in processes],
        })
        self._burners[id(handle)] = (stop_event, processes)
        logger.info(f"Started {len(processes)} CPU burner(s) at intensity {intensity:.2f}")
        return handle

    def _start_workers(self, intensity: float, workers: int):
        stop_event = self._context.Event()
        processes: List[multiprocessing.Process] = []
        if intensity <= 0:
            return stop_event, processes

        cores = list(range(os.cpu_count() or 1))
        for index in range(workers):
            process = self._context.Process(
                target=burn, args=(intensity, stop_event), name=f"faultline-cpu-{index}", daemon=True
            )
            process.start()
            processes.append(process)
            self._pin(process.pid, cores[index % len(cores)])
        return stop_event, processes

    @staticmethod
    def _pin(pid: int, core: int):
        if not hasattr(psutil.Process, 'cpu_affinity'):
            return
        try:
            psutil.Process(pid).cpu_affinity([core])
        except (psutil.Error, OSError, ValueError) as e:
            logger.debug(f"Could not pin CPU burner {pid} to core {core}: {e}")

    async def _revert(self, handle: InjectionHandle) -> None:
        entry = self._burners.pop(id(handle), None)
        if entry is None:
            return
        stop_event, processes = entry
        survivors = await asyncio.to_thread(self._stop_workers, stop_event, processes)
        if survivors:
            raise CleanupError(f"CPU burner(s) {survivors} did not exit", handle.handle_id)
        logger.info(f"Stopped {len(processes)} CPU burner(s)")

    @staticmethod
    def _stop_workers(stop_event, processes: List[multiprocessing.Process]) -> List[int]:
        stop_event.set()
        for process in processes:
            process.join(JOIN_TIMEOUT_S)
            if process.is_alive():
                process.terminate()
                process.join(JOIN_TIMEOUT_S)
            if process.is_alive():
                process.kill()
                process.join(JOIN_TIMEOUT_S)
        return [p.pid for p in processes if p.is_alive()]

    def active_workers(self) -> int:
        return sum(1 for _, processes in self._burners.values() for p in processes if p.is_alive())

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='cpu-burner',
            kind=self.kind,
            backend='process',
            requires_privilege=False,
            platforms=('linux', 'darwin', 'win32'),
            summary="cpu_starvation with one duty-cycled worker process per core"
        )
