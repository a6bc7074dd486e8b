"""
Injector selection.

build_injectors() picks one injector per fault kind for a run. Network
kinds are looked up in a (kind, backend) table once, at startup, so no
shared code branches on the platform afterwards.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from faultline.config import EngineConfig
from faultline.executor import CommandExecutor
from faultline.injectors.base import Injector, InjectorDescription
from faultline.injectors.cpu import CpuStarvationInjector
from faultline.injectors.disk import DiskSlowInjector
from faultline.injectors.memory import MemoryPressureInjector
from faultline.injectors.network import (
    DummynetInjector, IptablesResetInjector, NetworkSimulation, PfResetInjector, PipeAllocator,
    SimulatedNetworkInjector, TcNetemInjector
)
from faultline.injectors.process import ProcessKillInjector
from faultline.models import InjectorKind
from faultline.system_check import NetworkBackend, SystemCheck


logger = logging.getLogger(__name__)


@dataclass
class _BuildContext:
    executor: CommandExecutor
    pipes: PipeAllocator
    simulation: NetworkSimulation


NETWORK_VARIANTS: Dict[Tuple[InjectorKind, NetworkBackend], Callable[[InjectorKind, _BuildContext], Injector]] = {
    (InjectorKind.NETWORK_LATENCY, NetworkBackend.LINUX_KERNEL): lambda kind, ctx: TcNetemInjector(kind, ctx.executor),
    (InjectorKind.PACKET_LOSS, NetworkBackend.LINUX_KERNEL): lambda kind, ctx: TcNetemInjector(kind, ctx.executor),
    (InjectorKind.TCP_RESET, NetworkBackend.LINUX_KERNEL): lambda kind, ctx: IptablesResetInjector(ctx.executor),
    (InjectorKind.NETWORK_LATENCY, NetworkBackend.MACOS_KERNEL): lambda kind, ctx: DummynetInjector(kind, ctx.executor, ctx.pipes),
    (InjectorKind.PACKET_LOSS, NetworkBackend.MACOS_KERNEL): lambda kind, ctx: DummynetInjector(kind, ctx.executor, ctx.pipes),
    (InjectorKind.TCP_RESET, NetworkBackend.MACOS_KERNEL): lambda kind, ctx: PfResetInjector(ctx.executor, ctx.pipes),
    (InjectorKind.NETWORK_LATENCY, NetworkBackend.APPLICATION): lambda kind, ctx: SimulatedNetworkInjector(kind, ctx.simulation),
    (InjectorKind.PACKET_LOSS, NetworkBackend.APPLICATION): lambda kind, ctx: SimulatedNetworkInjector(kind, ctx.simulation),
    (InjectorKind.TCP_RESET, NetworkBackend.APPLICATION): lambda kind, ctx: SimulatedNetworkInjector(kind, ctx.simulation),
}


@dataclass
class InjectorSet:
    """The injectors selected for one run, keyed by fault kind."""
    injectors: Dict[InjectorKind, Injector]
    backend: NetworkBackend = NetworkBackend.APPLICATION
    simulation: NetworkSimulation = field(default_factory=NetworkSimulation)

    def __getitem__(self, kind: InjectorKind) -> Injector:
        return self.injectors[kind]

    def __contains__(self, kind: InjectorKind) -> bool:
        return kind in self.injectors

    def __iter__(self) -> Iterator[InjectorKind]:
        return iter(self.injectors)

    def describe(self) -> List[InjectorDescription]:
        return [self.injectors[kind].describe() for kind in InjectorKind if kind in self.injectors]


def build_injectors(
    config: Optional[EngineConfig] = None,
    executor: Optional[CommandExecutor] = None,
    system_check: Optional[SystemCheck] = None,
    seed: Optional[int] = None
) -> InjectorSet:
    """
    Select and construct one injector per fault kind.

    Args:
        config: Engine configuration (network_mode, limits, scratch dir)
        executor: Command executor shared by the kernel network variants
        system_check: Tool detector (defaults to one for the running host)
        seed: Seed for the application-level network simulation

    Returns:
        InjectorSet
    """
    config = config or EngineConfig()
    executor = executor or CommandExecutor(timeout=config.command_timeout_s, tool_paths=config.tool_paths)
    system_check = system_check or SystemCheck(config)

    backend = system_check.select_network_backend(config.network_mode)
    context = _BuildContext(executor=executor, pipes=PipeAllocator(), simulation=NetworkSimulation(seed))

    injectors: Dict[InjectorKind, Injector] = {}
    for kind in InjectorKind:
        if kind.is_network:
            injectors[kind] = NETWORK_VARIANTS[(kind, backend)](kind, context)

    injectors[InjectorKind.CPU_STARVATION] = CpuStarvationInjector(default_workers=config.cpu_workers)
    injectors[InjectorKind.MEMORY_PRESSURE] = MemoryPressureInjector(
        chunk_mb=config.memory_chunk_mb, max_allocation_mb=config.max_memory_allocation_mb
    )
    injectors[InjectorKind.DISK_SLOW] = DiskSlowInjector(scratch_dir=config.scratch_dir)
    injectors[InjectorKind.PROCESS_KILL] = ProcessKillInjector(wait_timeout_s=config.process_wait_timeout_s)

    logger.info(f"Network injectors use the {backend.value} backend")
    return InjectorSet(injectors=injectors, backend=backend, simulation=context.simulation)


def describe_injectors(config: Optional[EngineConfig] = None) -> List[InjectorDescription]:
    """Descriptions of the injector variants this host would use."""
    return build_injectors(config).describe()


__all__ = [
    'Injector',
    'InjectorDescription',
    'InjectorSet',
    'NETWORK_VARIANTS',
    'build_injectors',
    'describe_injectors',
]
