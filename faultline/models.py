"""
Data model for faultline.

Scenario definitions (Scenario, Phase, InjectionSpec, Target) are frozen
and handed to the engine fully formed. InjectionHandle is the only mutable
record and is owned by the handle registry. Samples and results are frozen
once produced.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class ResourceClass(Enum):
    """Resource an injection contends for. Opens on the same (target, class) are serialized."""
    NETWORK = 'network'
    CPU = 'cpu'
    MEMORY = 'memory'
    DISK = 'disk'
    PROCESS = 'process'


class InjectorKind(Enum):
    """Fault kinds the engine can apply."""
    NETWORK_LATENCY = 'network_latency'
    PACKET_LOSS = 'packet_loss'
    TCP_RESET = 'tcp_reset'
    CPU_STARVATION = 'cpu_starvation'
    MEMORY_PRESSURE = 'memory_pressure'
    DISK_SLOW = 'disk_slow'
    PROCESS_KILL = 'process_kill'

    @property
    def resource_class(self) -> ResourceClass:
        return _RESOURCE_CLASSES[self]

    @property
    def is_network(self) -> bool:
        return self.resource_class is ResourceClass.NETWORK

    @property
    def is_host_wide(self) -> bool:
        """Host-wide faults may omit a target and are attributed to the host."""
        return self in (InjectorKind.CPU_STARVATION, InjectorKind.MEMORY_PRESSURE, InjectorKind.DISK_SLOW)

    @classmethod
    def parse(cls, value: Union['InjectorKind', str]) -> 'InjectorKind':
        """Accept an InjectorKind or its string value ('network_latency', 'cpu_starvation', ...)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown injection kind {value!r}") from None


_RESOURCE_CLASSES = {
    InjectorKind.NETWORK_LATENCY: ResourceClass.NETWORK,
    InjectorKind.PACKET_LOSS: ResourceClass.NETWORK,
    InjectorKind.TCP_RESET: ResourceClass.NETWORK,
    InjectorKind.CPU_STARVATION: ResourceClass.CPU,
    InjectorKind.MEMORY_PRESSURE: ResourceClass.MEMORY,
    InjectorKind.DISK_SLOW: ResourceClass.DISK,
    InjectorKind.PROCESS_KILL: ResourceClass.PROCESS,
}


class TargetKind(Enum):
    PROCESS = 'process'
    NETWORK_INTERFACE = 'network_interface'
    HOST = 'host'


@dataclass(frozen=True)
class Target:
    """
    A named thing faults are aimed at.

    descriptor is a pid or process name for PROCESS targets and an
    interface name for NETWORK_INTERFACE targets. address ("host:port")
    is optional and used for TCP reset ports and latency probes.
    """
    id: str
    kind: TargetKind
    descriptor: str
    address: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.kind, str):
            try:
                object.__setattr__(self, 'kind', TargetKind(self.kind.lower()))
            except ValueError:
                pass  # reported by validation

    @property
    def port(self) -> Optional[int]:
        """Port parsed from address, if any."""
        if not self.address or ':' not in self.address:
            return None
        try:
            return int(self.address.rsplit(':', 1)[1])
        except ValueError:
            return None

    @property
    def host(self) -> Optional[str]:
        if not self.address:
            return None
        return self.address.rsplit(':', 1)[0] if ':' in self.address else self.address


HOST_TARGET_ID = 'host'
HOST_TARGET = Target(id=HOST_TARGET_ID, kind=TargetKind.HOST, descriptor='localhost')


@dataclass(frozen=True)
class InjectionSpec:
    """One fault to apply during a phase."""
    kind: InjectorKind
    target: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.kind, str):
            try:
                object.__setattr__(self, 'kind', InjectorKind.parse(self.kind))
            except ValueError:
                pass  # reported by validation
        object.__setattr__(self, 'params', dict(self.params or {}))

    @property
    def target_id(self) -> str:
        return self.target or HOST_TARGET_ID


@dataclass(frozen=True)
class Phase:
    """A named, timed stage of a scenario."""
    name: str
    duration: float
    parallel: bool = False
    injections: Tuple[InjectionSpec, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'injections', tuple(self.injections))


@dataclass(frozen=True)
class Scenario:
    """A declarative, multi-phase fault-injection test."""
    name: str
    phases: Tuple[Phase, ...]
    targets: Tuple[Target, ...] = ()
    description: Optional[str] = None
    fail_fast: Optional[bool] = None
    seed: Optional[int] = None
    ramp_up: float = 0.0
    labels: Mapping[str, str] = field(default_factory=dict)
    slo: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'phases', tuple(self.phases))
        object.__setattr__(self, 'targets', tuple(self.targets))

    def target(self, target_id: Optional[str]) -> Optional[Target]:
        """Look up a target by id. None (or 'host') returns the built-in host target."""
        if target_id is None or target_id == HOST_TARGET_ID:
            return HOST_TARGET
        for target in self.targets:
            if target.id == target_id:
                return target
        return None

    @property
    def total_duration(self) -> float:
        return self.ramp_up + sum(phase.duration for phase in self.phases)


class HandleState(Enum):
    ACTIVE = auto()
    CLEANING = auto()
    CLEANED = auto()
    LEAKED = auto()


@dataclass
class InjectionHandle:
    """
    Live record of one applied fault.

    Created by an injector's apply(), stamped with a sequence number and
    phase by the registry, and moved through ACTIVE -> CLEANING ->
    CLEANED|LEAKED by the registry alone. metadata holds whatever the
    injector needs to revert (interface, rule arguments, pids, ...).
    immediate is set when the handle is closed during an abort; revert
    then skips optional waits such as a restart delay.
    """
    kind: InjectorKind
    target: Target
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    sequence: int = 0
    phase_id: Optional[int] = None
    state: HandleState = HandleState.ACTIVE
    error: Optional[str] = None
    reverted_at: Optional[datetime] = None
    immediate: bool = False

    @property
    def handle_id(self) -> str:
        return f"{self.kind.value}:{self.target.id}:{self.sequence}"

    @property
    def key(self) -> Tuple[str, ResourceClass]:
        return (self.target.id, self.kind.resource_class)


class OutcomeStatus(Enum):
    SUCCESS = 'success'
    FAILED_TO_APPLY = 'failed_to_apply'
    FAILED_TO_CLEAN = 'failed_to_clean'


@dataclass(frozen=True)
class InjectionOutcome:
    """What happened to one injection of a phase."""
    kind: InjectorKind
    target_id: str
    status: OutcomeStatus
    handle_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    applied_at: Optional[datetime] = None
    reverted_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'target_id': self.target_id,
            'status': self.status.value,
            'handle_id': self.handle_id,
            'error': self.error,
            'error_type': self.error_type,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
            'reverted_at': self.reverted_at.isoformat() if self.reverted_at else None,
        }


METRIC_NAMES = ('cpu_percent', 'memory_percent', 'latency_ms')


@dataclass(frozen=True)
class MetricsSample:
    """One health reading of one target, tagged with the phase active at capture time."""
    timestamp: datetime
    target_id: str
    phase: Optional[str]
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    latency_ms: Optional[float] = None

    def value(self, metric: str) -> Optional[float]:
        return getattr(self, metric)


@dataclass(frozen=True)
class MetricStats:
    count: int
    min: float
    mean: float
    max: float
    p50: float
    p95: float
    p99: float

    def to_dict(self) -> dict:
        return {
            'count': self.count,
            'min': self.min,
            'mean': self.mean,
            'max': self.max,
            'p50': self.p50,
            'p95': self.p95,
            'p99': self.p99,
        }


@dataclass(frozen=True)
class SloViolation:
    metric: str
    target_id: str
    threshold: float
    actual: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            'metric': self.metric,
            'target_id': self.target_id,
            'threshold': self.threshold,
            'actual': self.actual,
            'timestamp': self.timestamp.isoformat(),
        }


class PhaseState(Enum):
    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()


class ScenarioState(Enum):
    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class PhaseResult:
    """Outcome and statistics of one phase that was started."""
    name: str
    index: int
    state: PhaseState
    started_at: datetime
    ended_at: datetime
    interrupted: bool = False
    outcomes: Tuple[InjectionOutcome, ...] = ()
    stats: Mapping[str, Mapping[str, MetricStats]] = field(default_factory=dict)
    sample_count: int = 0
    slo_violations: Tuple[SloViolation, ...] = ()

    @property
    def duration_s(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'index': self.index,
            'state': self.state.name,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat(),
            'duration_s': self.duration_s,
            'interrupted': self.interrupted,
            'outcomes': [outcome.to_dict() for outcome in self.outcomes],
            'stats': {
                target_id: {metric: stats.to_dict() for metric, stats in metrics.items()}
                for target_id, metrics in self.stats.items()
            },
            'sample_count': self.sample_count,
            'slo_violations': [violation.to_dict() for violation in self.slo_violations],
        }


@dataclass(frozen=True)
class ScenarioResult:
    """Final record of a run, handed to external reporters."""
    scenario_name: str
    state: ScenarioState
    started_at: datetime
    ended_at: datetime
    phase_results: Tuple[PhaseResult, ...] = ()
    skipped_phases: Tuple[str, ...] = ()
    leaked_handles: Tuple[str, ...] = ()
    sampling_gaps: int = 0
    error: Optional[str] = None

    @property
    def duration_s(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def completed_phases(self) -> List[str]:
        return [result.name for result in self.phase_results if not result.interrupted]

    @property
    def total_injections(self) -> int:
        return sum(len(result.outcomes) for result in self.phase_results)

    @property
    def success_rate(self) -> float:
        """Fraction of injections that applied and reverted cleanly (1.0 when there were none)."""
        total = self.total_injections
        if total == 0:
            return 1.0
        succeeded = sum(result.count(OutcomeStatus.SUCCESS) for result in self.phase_results)
        return succeeded / total

    @property
    def average_phase_duration(self) -> float:
        if not self.phase_results:
            return 0.0
        return sum(result.duration_s for result in self.phase_results) / len(self.phase_results)

    def phase(self, name: str) -> Optional[PhaseResult]:
        for result in self.phase_results:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            'scenario_name': self.scenario_name,
            'state': self.state.name,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat(),
            'duration_s': self.duration_s,
            'phases': [result.to_dict() for result in self.phase_results],
            'skipped_phases': list(self.skipped_phases),
            'leaked_handles': list(self.leaked_handles),
            'sampling_gaps': self.sampling_gaps,
            'total_injections': self.total_injections,
            'success_rate': self.success_rate,
            'error': self.error,
        }
