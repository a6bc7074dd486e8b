"""
End-to-end scenarios against the real engine.
"""

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import patch

import psutil

sys.path.insert(0, str(Path(__file__).parent.parent))

from faultline.config import EngineConfig
from faultline.injectors import build_injectors
from faultline.injectors.network import SimulatedNetworkInjector, TcNetemInjector
from faultline.models import (
    InjectionSpec, InjectorKind, OutcomeStatus, Phase, Scenario, ScenarioState, Target, TargetKind
)
from faultline.orchestrator import Orchestrator
from faultline.runtime import run
from faultline.system_check import HostPlatform, NetworkBackend, SystemCheck
from tests.doubles import FakeExecutor, RecordingInjector, recording_injectors, run_async


def lan_target():
    return Target('lan', TargetKind.NETWORK_INTERFACE, sorted(psutil.net_if_addrs())[0])


class SlowFakeExecutor(FakeExecutor):
    """FakeExecutor whose commands take a while and record their time window."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.windows = []

    async def _spawn(self, command, input_text, timeout):
        started = time.monotonic()
        await asyncio.sleep(self.delay)
        result = await super()._spawn(command, input_text, timeout)
        self.windows.append((command, started, time.monotonic()))
        return result


class TestCpuStarvationScenario:
    """baseline -> cpu_starvation at 0.5 -> recovery."""

    def test_three_phase_cpu_run(self, temp_dir, events):
        """Test the starved phase shows one successful fault and higher CPU than its neighbours."""
        config = EngineConfig(overrides={'sample_interval_s': 0.2, 'scratch_dir': str(temp_dir)})
        scenario = Scenario(name='cpu-starvation', phases=[
            Phase('baseline', duration=1),
            Phase('starve', duration=2, injections=[
                InjectionSpec(InjectorKind.CPU_STARVATION, params={'intensity': 0.5}),
            ]),
            Phase('recovery', duration=1),
        ])

        result = run(scenario, config=config, events=events, handle_signals=False)

        assert result.state is ScenarioState.COMPLETED
        assert len(result.phase_results) == 3
        starve = result.phase('starve')
        assert len(starve.outcomes) == 1
        assert starve.outcomes[0].status is OutcomeStatus.SUCCESS

        def mean_cpu(name):
            return result.phase(name).stats['host']['cpu_percent'].mean

        assert mean_cpu('starve') > mean_cpu('baseline')
        assert mean_cpu('starve') > mean_cpu('recovery')


class TestApplicationLevelLatency:
    """Latency on a host without kernel network tools."""

    def test_falls_back_without_privilege_error(self, fast_config, events):
        """Test network_latency 100ms/20ms uses the simulated variant and succeeds unprivileged."""
        with patch.object(SystemCheck, 'check_tool', return_value=False):
            injectors = build_injectors(fast_config, FakeExecutor(), SystemCheck(host=HostPlatform.LINUX))
        assert injectors.backend is NetworkBackend.APPLICATION
        assert isinstance(injectors[InjectorKind.NETWORK_LATENCY], SimulatedNetworkInjector)

        scenario = Scenario(name='latency', targets=[lan_target()], phases=[
            Phase('slow', duration=0.2, injections=[
                InjectionSpec(InjectorKind.NETWORK_LATENCY, 'lan', {'delay_ms': 100, 'jitter_ms': 20}),
            ]),
        ])
        orchestrator = Orchestrator(fast_config, injectors=injectors, events=events)

        result = run_async(orchestrator.run(scenario))

        outcome = result.phase('slow').outcomes[0]
        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.error_type is None
        handle = orchestrator.registry.handles()[0]
        assert handle.metadata['backend'] == 'application'
        assert handle.metadata['condition'].delay_ms == 100.0
        assert injectors.simulation.active_count() == 0


class TestSameInterfaceSerialized:
    """Two packet_loss faults on one interface in a parallel phase."""

    def test_second_open_waits_for_first(self, fast_config, events):
        """Test the registry serializes the opens instead of racing."""
        injectors = recording_injectors(packet_loss={'apply_delay': 0.2})
        scenario = Scenario(name='double-loss', targets=[lan_target()], phases=[
            Phase('lossy', duration=0.1, parallel=True, injections=[
                InjectionSpec(InjectorKind.PACKET_LOSS, 'lan', {'loss_rate': 0.1}),
                InjectionSpec(InjectorKind.PACKET_LOSS, 'lan', {'loss_rate': 0.2}),
            ]),
        ])

        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        loss: RecordingInjector = injectors[InjectorKind.PACKET_LOSS]
        (first_start, first_end), (second_start, second_end) = sorted(loss.windows)
        assert first_end <= second_start
        assert loss.active == 0

    def test_tc_commands_do_not_overlap(self, fast_config, events):
        """Test the second tc qdisc add starts only after the first finished."""
        executor = SlowFakeExecutor(delay=0.1)
        injectors = build_injectors(
            EngineConfig(overrides={'network_mode': 'kernel'}), executor, SystemCheck(host=HostPlatform.LINUX)
        )
        assert isinstance(injectors[InjectorKind.PACKET_LOSS], TcNetemInjector)
        scenario = Scenario(name='double-loss', targets=[lan_target()], phases=[
            Phase('lossy', duration=0.1, parallel=True, injections=[
                InjectionSpec(InjectorKind.PACKET_LOSS, 'lan', {'loss_rate': 0.1}),
                InjectionSpec(InjectorKind.PACKET_LOSS, 'lan', {'loss_rate': 0.2}),
            ]),
        ])

        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        adds = [(start, end) for command, start, end in executor.windows if command[1:3] == ['qdisc', 'add']]
        assert len(adds) == 2
        (_, first_end), (second_start, _) = sorted(adds)
        assert first_end <= second_start
