"""
Network fault injectors.

One class per (fault family, backend):

    TcNetemInjector        Linux      latency and packet loss via tc netem
    IptablesResetInjector  Linux      TCP resets via iptables REJECT
    DummynetInjector       macOS      latency and packet loss via dnctl pipes
    PfResetInjector        macOS      TCP resets via a pf anchor
    SimulatedNetworkInjector  any     application-level simulation

The kernel variants need root (or CAP_NET_ADMIN) and surface
PrivilegeError when they lack it. The simulated variant only records the
intended condition in a NetworkSimulation that target-aware consumers
(proxies, test clients) query. It never needs privilege.
"""

import itertools
import logging
import math
import random
import re
import uuid
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from faultline.errors import CleanupError, ChaosError, CommandExecutionError
from faultline.executor import CommandExecutor
from faultline.injectors.base import Injector, InjectorDescription, param
from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)

DISTRIBUTIONS = ('normal', 'pareto', 'paretonormal', 'uniform')

DEFAULT_DELAY_MS = 100
DEFAULT_JITTER_MS = 20
DEFAULT_DISTRIBUTION = 'normal'
DEFAULT_LOSS_RATE = 0.01

ANCHOR_ROOT = 'faultline'

# stderr fragments meaning the rule or qdisc is already gone
ALREADY_REMOVED_PATTERNS = (
    'no such file or directory',
    'cannot delete qdisc with handle of zero',
    'bad rule (does a matching rule exist',
    'does a matching rule exist in that chain',
)


def _num(value: float) -> str:
    """Render a number the way tc/dnctl expect (no trailing .0)."""
    return f"{value:g}"


def _pct(fraction: float) -> str:
    return f"{fraction * 100:g}%"


def _reset_port(target: ResolvedTarget, params: Mapping[str, Any]) -> int:
    port = params.get('port') or target.target.port
    if port is None:
        raise CommandExecutionError(f"no port known for tcp_reset on target {target.id}")
    return int(port)


def _already_removed(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(pattern in lowered for pattern in ALREADY_REMOVED_PATTERNS)


# ============================================================================
# Linux
# ============================================================================

class TcNetemInjector(Injector):
    """Adds a root netem qdisc on the target interface."""

    def __init__(self, kind: InjectorKind, executor: CommandExecutor):
        super().__init__(kind)
        self.executor = executor

    def netem_args(self, params: Mapping[str, Any]) -> List[str]:
        """netem arguments for this fault (everything after 'netem')."""
        if self.kind is InjectorKind.NETWORK_LATENCY:
            delay = param(params, 'delay_ms', DEFAULT_DELAY_MS)
            jitter = param(params, 'jitter_ms', DEFAULT_JITTER_MS)
            correlation = param(params, 'correlation', 0.0)
            distribution = param(params, 'distribution', DEFAULT_DISTRIBUTION)

            args = ['delay', f"{_num(delay)}ms"]
            if jitter > 0:
                args.append(f"{_num(jitter)}ms")
                if correlation > 0:
                    args.append(_pct(correlation))
                if distribution != 'uniform':
                    args.extend(['distribution', distribution])
            return args

        loss_rate = param(params, 'loss_rate', DEFAULT_LOSS_RATE)
        correlation = param(params, 'correlation', 0.0)
        args = ['loss', _pct(loss_rate)]
        if correlation > 0:
            args.append(_pct(correlation))
        return args

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        interface = target.interface
        argv = ['tc', 'qdisc', 'add', 'dev', interface, 'root', 'netem', *self.netem_args(params)]
        await self.executor.run(argv, operation=f"{self.kind.value} on {interface}")
        logger.info(f"Applied {self.kind.value} on {interface}: {' '.join(argv[6:])}")
        return self._new_handle(target, {
            'backend': 'tc',
            'interface': interface,
            'argv': argv,
            'params': dict(params),
        })

    async def _revert(self, handle: InjectionHandle) -> None:
        interface = handle.metadata['interface']
        argv = ['tc', 'qdisc', 'del', 'dev', interface, 'root']
        try:
            result = await self.executor.run(argv, operation=f"remove netem on {interface}", check=False)
        except ChaosError as e:
            raise CleanupError(str(e), handle.handle_id) from e

        if result.success:
            return
        if _already_removed(result.stderr):
            logger.warning(f"netem qdisc on {interface} was already removed")
            return
        raise CleanupError(str(self.executor.classify(result)), handle.handle_id)

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='tc-netem',
            kind=self.kind,
            backend='linux',
            requires_privilege=True,
            platforms=('linux',),
            summary=f"{self.kind.value} with a root netem qdisc (tc qdisc add dev IFACE root netem ...)"
        )


class IptablesResetInjector(Injector):
    """Rejects outgoing TCP to a port with a reset, via a tagged iptables rule."""

    def __init__(self, executor: CommandExecutor):
        super().__init__(InjectorKind.TCP_RESET)
        self.executor = executor

    @staticmethod
    def rule_args(interface: str, port: int, tag: str) -> List[str]:
        return [
            'OUTPUT', '-o', interface, '-p', 'tcp', '--dport', str(port),
            '-m', 'comment', '--comment', tag,
            '-j', 'REJECT', '--reject-with', 'tcp-reset',
        ]

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        port = _reset_port(target, params)
        tag = f"{ANCHOR_ROOT}-{uuid.uuid4().hex[:12]}"
        rule = self.rule_args(target.interface, port, tag)
        await self.executor.run(['iptables', '-I', *rule], operation=f"tcp_reset on port {port}")
        logger.info(f"Applied tcp_reset on {target.interface} port {port} ({tag})")
        return self._new_handle(target, {
            'backend': 'iptables',
            'interface': target.interface,
            'port': port,
            'rule': rule,
        })

    async def _revert(self, handle: InjectionHandle) -> None:
        argv = ['iptables', '-D', *handle.metadata['rule']]
        try:
            result = await self.executor.run(argv, operation="remove tcp_reset rule", check=False)
        except ChaosError as e:
            raise CleanupError(str(e), handle.handle_id) from e

        if result.success:
            return
        if _already_removed(result.stderr):
            logger.warning(f"tcp_reset rule for port {handle.metadata['port']} was already removed")
            return
        raise CleanupError(str(self.executor.classify(result)), handle.handle_id)

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='iptables-reject',
            kind=self.kind,
            backend='linux',
            requires_privilege=True,
            platforms=('linux',),
            summary="tcp_reset with an iptables OUTPUT rule (REJECT --reject-with tcp-reset)"
        )


# ============================================================================
# macOS
# ============================================================================

class PipeAllocator:
    """Hands out dummynet pipe and anchor numbers, unique for the run."""

    def __init__(self, start: int = 10000):
        self._counter = itertools.count(start)

    def allocate(self) -> int:
        return next(self._counter)


class PfAnchorInjector(Injector):
    """Shared pf plumbing: enable pf with a reference token, load and flush an anchor."""

    TOKEN_PATTERN = re.compile(r'token\s*:\s*(\d+)', re.IGNORECASE)

    def __init__(self, kind: InjectorKind, executor: CommandExecutor, pipes: PipeAllocator):
        super().__init__(kind)
        self.executor = executor
        self.pipes = pipes

    @abstractmethod
    def _rules(self, target: ResolvedTarget, params: Mapping[str, Any], number: int) -> str:
        """pf rules to load into this injection's anchor."""

    def _setup_commands(self, params: Mapping[str, Any], number: int) -> List[List[str]]:
        """Commands to run before the anchor is loaded."""
        return []

    def _teardown_commands(self, number: int) -> List[List[str]]:
        """Commands to run after the anchor is flushed."""
        return []

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        number = self.pipes.allocate()
        anchor = f"{ANCHOR_ROOT}/{self.kind.value}-{number}"
        metadata: Dict[str, Any] = {
            'backend': 'pf',
            'interface': target.interface,
            'anchor': anchor,
            'number': number,
            'pf_token': None,
            'params': dict(params),
        }
        undo: List[List[str]] = []

        try:
            for argv in self._setup_commands(params, number):
                await self.executor.run(argv, operation=f"{self.kind.value} setup")
            undo.extend(self._teardown_commands(number))

            result = await self.executor.run(['pfctl', '-E'], operation="enable pf")
            match = self.TOKEN_PATTERN.search(result.stderr + result.stdout)
            if match:
                metadata['pf_token'] = match.group(1)
                undo.append(['pfctl', '-X', match.group(1)])

            rules = self._rules(target, params, number)
            await self.executor.run(['pfctl', '-a', anchor, '-f', '-'], input_text=rules,
                                    operation=f"load anchor {anchor}")
        except ChaosError:
            await self._run_undo(undo, anchor=None)
            raise

        logger.info(f"Applied {self.kind.value} on {target.interface} via anchor {anchor}")
        return self._new_handle(target, metadata)

    async def _revert(self, handle: InjectionHandle) -> None:
        metadata = handle.metadata
        undo = self._teardown_commands(metadata['number'])
        if metadata.get('pf_token'):
            undo.append(['pfctl', '-X', metadata['pf_token']])
        failures = await self._run_undo(undo, anchor=metadata['anchor'])
        if failures:
            raise CleanupError("; ".join(failures), handle.handle_id)

    async def _run_undo(self, commands: Sequence[List[str]], anchor: Optional[str]) -> List[str]:
        """Run teardown commands, continuing past failures. Returns failure messages."""
        if anchor:
            commands = [['pfctl', '-a', anchor, '-F', 'all'], *commands]
        failures = []
        for argv in commands:
            try:
                result = await self.executor.run(argv, operation=' '.join(argv[:3]), check=False)
            except ChaosError as e:
                failures.append(str(e))
                continue
            if not result.success and not _already_removed(result.stderr):
                failures.append(str(self.executor.classify(result)))
        return failures


class DummynetInjector(PfAnchorInjector):
    """Latency or packet loss through a dummynet pipe fed by a pf anchor."""

    def _setup_commands(self, params: Mapping[str, Any], number: int) -> List[List[str]]:
        config = ['dnctl', 'pipe', str(number), 'config']
        if self.kind is InjectorKind.NETWORK_LATENCY:
            # dummynet has no jitter or distribution; only the base delay is applied
            config.extend(['delay', _num(param(params, 'delay_ms', DEFAULT_DELAY_MS))])
        else:
            config.extend(['plr', _num(param(params, 'loss_rate', DEFAULT_LOSS_RATE))])
        return [config]

    def _teardown_commands(self, number: int) -> List[List[str]]:
        return [['dnctl', 'pipe', str(number), 'delete']]

    def _rules(self, target: ResolvedTarget, params: Mapping[str, Any], number: int) -> str:
        return f"dummynet out on {target.interface} all pipe {number}\n"

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='dummynet',
            kind=self.kind,
            backend='macos',
            requires_privilege=True,
            platforms=('darwin',),
            summary=f"{self.kind.value} with a dnctl pipe and a pf anchor under '{ANCHOR_ROOT}/'"
        )


class PfResetInjector(PfAnchorInjector):
    """TCP resets through a 'block return' rule in a pf anchor."""

    def __init__(self, executor: CommandExecutor, pipes: PipeAllocator):
        super().__init__(InjectorKind.TCP_RESET, executor, pipes)

    def _rules(self, target: ResolvedTarget, params: Mapping[str, Any], number: int) -> str:
        port = _reset_port(target, params)
        return f"block return out quick on {target.interface} proto tcp from any to any port {port}\n"

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='pf-block-return',
            kind=self.kind,
            backend='macos',
            requires_privilege=True,
            platforms=('darwin',),
            summary=f"tcp_reset with a pf 'block return' rule under '{ANCHOR_ROOT}/'"
        )


# ============================================================================
# Application level
# ============================================================================

@dataclass(frozen=True)
class NetworkCondition:
    """An intended network fault, recorded for application-level consumers."""
    kind: InjectorKind
    target_id: str
    delay_ms: float = 0.0
    jitter_ms: float = 0.0
    distribution: str = DEFAULT_DISTRIBUTION
    correlation: float = 0.0
    loss_rate: float = 0.0
    reset_port: Optional[int] = None


class NetworkSimulation:
    """
    Table of active simulated network conditions.

    Consumers that sit on a target's traffic path ask this table how much
    delay to add, whether to drop a packet, and whether to reset a
    connection. Draws come from a random.Random seeded per run.
    """

    def __init__(self, seed: Optional[int] = None):
        self._conditions: Dict[str, NetworkCondition] = {}
        self._last_delay: Dict[str, float] = {}
        self._rng = random.Random(seed)

    def reseed(self, seed: Optional[int]):
        self._rng = random.Random(seed)

    def add(self, token: str, condition: NetworkCondition):
        self._conditions[token] = condition

    def remove(self, token: str) -> bool:
        self._last_delay.pop(token, None)
        return self._conditions.pop(token, None) is not None

    def conditions_for(self, target_id: str) -> List[NetworkCondition]:
        return [c for c in self._conditions.values() if c.target_id == target_id]

    def active_count(self) -> int:
        return len(self._conditions)

    def sample_delay_ms(self, target_id: str) -> float:
        """Delay to add to one packet or request for a target (sum over latency conditions)."""
        total = 0.0
        for token, condition in list(self._conditions.items()):
            if condition.target_id != target_id or condition.kind is not InjectorKind.NETWORK_LATENCY:
                continue
            value = self._draw(condition)
            if condition.correlation > 0 and token in self._last_delay:
                value = condition.correlation * self._last_delay[token] + (1 - condition.correlation) * value
            self._last_delay[token] = value
            total += value
        return total

    def should_drop(self, target_id: str) -> bool:
        """Decide whether to drop one packet for a target."""
        keep = 1.0
        for condition in self.conditions_for(target_id):
            if condition.kind is InjectorKind.PACKET_LOSS:
                keep *= 1.0 - condition.loss_rate
        return self._rng.random() >= keep

    def should_reset(self, target_id: str, port: Optional[int] = None) -> bool:
        for condition in self.conditions_for(target_id):
            if condition.kind is InjectorKind.TCP_RESET and (port is None or condition.reset_port == port):
                return True
        return False

    def _draw(self, condition: NetworkCondition) -> float:
        delay, jitter = condition.delay_ms, condition.jitter_ms
        if jitter <= 0:
            return delay
        if condition.distribution == 'uniform':
            value = self._rng.uniform(delay - jitter, delay + jitter)
        elif condition.distribution == 'pareto':
            value = delay + jitter * (self._rng.paretovariate(3.0) - 1.5)
        elif condition.distribution == 'paretonormal':
            pareto = jitter * (self._rng.paretovariate(3.0) - 1.5)
            value = delay + 0.25 * pareto + 0.75 * self._rng.gauss(0, jitter)
        else:
            value = self._rng.gauss(delay, jitter)
        return max(0.0, value) if math.isfinite(value) else delay


class SimulatedNetworkInjector(Injector):
    """Records network faults in a NetworkSimulation instead of the kernel."""

    def __init__(self, kind: InjectorKind, simulation: NetworkSimulation):
        super().__init__(kind)
        self.simulation = simulation

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        if self.kind is InjectorKind.NETWORK_LATENCY:
            condition = NetworkCondition(
                kind=self.kind,
                target_id=target.id,
                delay_ms=float(param(params, 'delay_ms', DEFAULT_DELAY_MS)),
                jitter_ms=float(param(params, 'jitter_ms', DEFAULT_JITTER_MS)),
                distribution=param(params, 'distribution', DEFAULT_DISTRIBUTION),
                correlation=float(param(params, 'correlation', 0.0)),
            )
        elif self.kind is InjectorKind.PACKET_LOSS:
            condition = NetworkCondition(
                kind=self.kind,
                target_id=target.id,
                loss_rate=float(param(params, 'loss_rate', DEFAULT_LOSS_RATE)),
                correlation=float(param(params, 'correlation', 0.0)),
            )
        else:
            condition = NetworkCondition(kind=self.kind, target_id=target.id,
                                         reset_port=_reset_port(target, params))

        token = uuid.uuid4().hex
        self.simulation.add(token, condition)
        logger.info(f"Simulating {self.kind.value} on target {target.id} (application level)")
        return self._new_handle(target, {
            'backend': 'application',
            'token': token,
            'condition': condition,
        })

    async def _revert(self, handle: InjectionHandle) -> None:
        if not self.simulation.remove(handle.metadata['token']):
            logger.debug(f"Simulated condition for {handle.handle_id} was already gone")

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='simulated',
            kind=self.kind,
            backend='application',
            requires_privilege=False,
            platforms=('linux', 'darwin', 'win32'),
            summary=f"{self.kind.value} recorded for application-level consumers (no kernel changes)"
        )
