"""
Background health sampling.

A single asyncio task reads host and target health on a fixed interval
and appends MetricsSample records tagged with the phase active at capture
time. A reading that fails is counted as a sampling gap and never stops
the run.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

import psutil

from faultline.events import EventEmitter, EventSeverity, EventType
from faultline.models import HOST_TARGET_ID, MetricsSample, TargetKind
from faultline.targets import ResolvedTarget, TargetResolver


logger = logging.getLogger(__name__)


class MetricsSampler:
    """Samples the host and every resolved target until stopped."""

    def __init__(
        self,
        resolver: TargetResolver,
        interval_s: float = 1.0,
        probe_timeout_s: float = 2.0,
        events: Optional[EventEmitter] = None
    ):
        """
        Initialize sampler.

        Args:
            resolver: Resolver whose already-resolved targets are sampled
            interval_s: Seconds between sampling rounds
            probe_timeout_s: Timeout for each TCP connect latency probe
            events: Event emitter for sampling gaps
        """
        self.resolver = resolver
        self.interval_s = interval_s
        self.probe_timeout_s = probe_timeout_s
        self.events = events or EventEmitter(enable_console=False)
        self.samples: List[MetricsSample] = []
        self.gaps = 0
        self.current_phase: Optional[str] = None
        self._primed: Dict[int, psutil.Process] = {}
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def set_phase(self, name: Optional[str]):
        self.current_phase = name

    async def start(self):
        """Prime CPU counters and start the sampling task."""
        psutil.cpu_percent(interval=None)
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self._run())

    async def stop(self):
        """Stop sampling and wait for the task to finish."""
        if self._stop is not None:
            self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self):
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                await self.sample_once()
            except Exception as e:
                self._gap(f"sampling round failed: {e}")
            remaining = self.interval_s - (time.monotonic() - started)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(remaining, 0.0))
            except asyncio.TimeoutError:
                pass

    async def sample_once(self) -> List[MetricsSample]:
        """Take one round of samples. Returns what was recorded."""
        phase = self.current_phase
        now = datetime.now()
        recorded = [MetricsSample(
            timestamp=now,
            target_id=HOST_TARGET_ID,
            phase=phase,
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=psutil.virtual_memory().percent
        )]

        for resolved in self.resolver.resolved():
            if resolved.target.kind is TargetKind.PROCESS:
                sample = self._sample_process(resolved, phase, now)
            else:
                sample = await self._sample_network(resolved, phase, now)
            if sample is not None:
                recorded.append(sample)

        self.samples.extend(recorded)
        return recorded

    def _sample_process(self, resolved: ResolvedTarget, phase: Optional[str], now: datetime) -> Optional[MetricsSample]:
        process = resolved.process
        if process is None:
            return None
        try:
            if process.pid not in self._primed:
                # first cpu_percent call on a process always reports 0.0
                process.cpu_percent(interval=None)
                self._primed[process.pid] = process
                cpu = None
            else:
                cpu = process.cpu_percent(interval=None)
            memory = process.memory_percent()
        except psutil.Error as e:
            self._gap(f"target {resolved.id} unreadable: {e}")
            return None
        return MetricsSample(timestamp=now, target_id=resolved.id, phase=phase,
                             cpu_percent=cpu, memory_percent=memory)

    async def _sample_network(self, resolved: ResolvedTarget, phase: Optional[str], now: datetime) -> Optional[MetricsSample]:
        target = resolved.target
        if target.port is None:
            return None
        latency = await self.probe_latency(target.host, target.port)
        if latency is None:
            self._gap(f"target {target.id} did not accept a connection on {target.address}")
            return None
        return MetricsSample(timestamp=now, target_id=target.id, phase=phase, latency_ms=latency)

    async def probe_latency(self, host: str, port: int) -> Optional[float]:
        """TCP connect time to host:port in milliseconds, or None on failure."""
        started = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.probe_timeout_s)
        except (OSError, asyncio.TimeoutError):
            return None
        elapsed = (time.perf_counter() - started) * 1000.0
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return elapsed

    def _gap(self, reason: str):
        self.gaps += 1
        self.events.emit(
            EventType.SAMPLING_GAP,
            reason,
            severity=EventSeverity.DEBUG,
            context={'phase': self.current_phase}
        )

    def samples_for_phase(self, name: str) -> List[MetricsSample]:
        return [sample for sample in self.samples if sample.phase == name]
