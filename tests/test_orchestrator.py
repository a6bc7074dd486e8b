"""
Tests for the phase scheduler.

RecordingInjector stands in for every fault kind, so these tests observe
ordering, timing and cleanup without touching the host.
"""

import asyncio
import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from faultline.cancellation import CancellationToken
from faultline.errors import PrivilegeError
from faultline.events import EventSeverity, EventType
from faultline.models import (
    InjectionSpec, InjectorKind, OutcomeStatus, Phase, PhaseState, Scenario, ScenarioState, Target, TargetKind
)
from faultline.orchestrator import EXIT_CANCELLED, EXIT_COMPLETED, EXIT_FAILED, Orchestrator, exit_code_for
from tests.doubles import recording_injectors, run_async


CPU = InjectionSpec(InjectorKind.CPU_STARVATION, params={'intensity': 0.5})
MEMORY = InjectionSpec(InjectorKind.MEMORY_PRESSURE, params={'target_usage': 0.5})
DISK = InjectionSpec(InjectorKind.DISK_SLOW, params={'latency_ms': 10})


def three_phase(chaos_injections=(CPU,), duration=0.3, **kwargs):
    return Scenario(
        name='three-phase',
        phases=[
            Phase('baseline', duration=duration),
            Phase('chaos', duration=duration, injections=list(chaos_injections)),
            Phase('recovery', duration=duration),
        ],
        **kwargs
    )


def log_index(log, event, kind):
    return next(i for i, entry in enumerate(log) if entry[0] == event and entry[1] == kind)


def event_time(events, event_type, phase=None):
    for event in events.query_events(event_type):
        if phase is None or event.context.get('phase') == phase:
            return event.timestamp
    raise AssertionError(f"no {event_type.name} event for phase {phase}")


class TestCompletion:
    """Scenarios that run to the end."""

    def test_three_phases_complete(self, fast_config, events, injectors):
        """Test baseline, chaos and recovery all run and the fault is applied and reverted once."""
        orchestrator = Orchestrator(fast_config, injectors=injectors, events=events)

        result = run_async(orchestrator.run(three_phase()))

        assert result.state is ScenarioState.COMPLETED
        assert exit_code_for(result) == EXIT_COMPLETED
        assert [r.name for r in result.phase_results] == ['baseline', 'chaos', 'recovery']
        assert result.skipped_phases == ()
        assert all(not r.interrupted for r in result.phase_results)
        assert all(state is PhaseState.COMPLETED for state in orchestrator.phase_states.values())

        chaos = result.phase('chaos')
        assert [o.status for o in chaos.outcomes] == [OutcomeStatus.SUCCESS]
        assert chaos.duration_s >= 0.3

        cpu = injectors[InjectorKind.CPU_STARVATION]
        assert len(cpu.applied) == 1
        assert len(cpu.reverted) == 1
        assert orchestrator.registry.active_handles() == []
        assert result.success_rate == 1.0

    def test_events_in_lifecycle_order(self, fast_config, events, injectors):
        """Test the scenario emits start, per-phase events and completion in order."""
        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(three_phase(duration=0.1)))

        types = [e.event_type for e in events.get_session_events()
                 if e.event_type not in (EventType.SAMPLING_GAP, EventType.TARGET_RESOLVED)]
        assert types[0] is EventType.SCENARIO_STARTED
        assert types[-1] is EventType.SCENARIO_COMPLETED
        assert types.count(EventType.PHASE_STARTED) == 3
        assert types.count(EventType.PHASE_COMPLETED) == 3
        assert types.index(EventType.INJECTION_APPLIED) < types.index(EventType.INJECTION_REVERTED)

    def test_samples_tagged_by_phase(self, fast_config, events, injectors):
        """Test every phase collects host samples and statistics."""
        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(three_phase()))

        for phase in result.phase_results:
            assert phase.sample_count >= 1
            assert 'cpu_percent' in phase.stats['host']
            assert 'memory_percent' in phase.stats['host']

    def test_ramp_up_delays_first_phase(self, fast_config, events, injectors):
        """Test ramp_up waits before the first phase starts."""
        scenario = three_phase(duration=0.1, ramp_up=0.3)
        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        started = event_time(events, EventType.SCENARIO_STARTED)
        first_phase = event_time(events, EventType.PHASE_STARTED, 'baseline')
        assert (first_phase - started).total_seconds() >= 0.3


class TestPhaseScheduling:
    """Parallel and sequential opens, and cleanup between phases."""

    def test_parallel_opens_before_timer(self, fast_config, events):
        """Test parallel applies overlap and all finish before the phase timer starts."""
        slow = {'apply_delay': 0.2}
        injectors = recording_injectors(cpu_starvation=slow, memory_pressure=slow, disk_slow=slow)
        scenario = Scenario(name='parallel', phases=[
            Phase('burst', duration=0.2, parallel=True, injections=[CPU, MEMORY, DISK]),
        ])

        started = time.monotonic()
        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))
        elapsed = time.monotonic() - started

        windows = [injectors[kind].windows[0] for kind in
                   (InjectorKind.CPU_STARVATION, InjectorKind.MEMORY_PRESSURE, InjectorKind.DISK_SLOW)]
        assert max(start for start, _ in windows) < min(end for _, end in windows)
        assert elapsed < 1.0

        timer = event_time(events, EventType.PHASE_TIMER_STARTED, 'burst')
        log = injectors[InjectorKind.CPU_STARVATION].log
        apply_ends = [entry[4] for entry in log if entry[0] == 'apply_end']
        assert len(apply_ends) == 3
        assert all(end <= timer for end in apply_ends)

    def test_sequential_opens_in_order(self, fast_config, events):
        """Test a sequential phase applies one injection at a time in declared order."""
        slow = {'apply_delay': 0.1}
        injectors = recording_injectors(cpu_starvation=slow, memory_pressure=slow, disk_slow=slow)
        scenario = Scenario(name='sequential', phases=[
            Phase('steps', duration=0.1, injections=[DISK, CPU, MEMORY]),
        ])

        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        log = injectors[InjectorKind.CPU_STARVATION].log
        applied = [kind for event, kind, _, _, _ in log if event == 'apply_end']
        assert applied == ['disk_slow', 'cpu_starvation', 'memory_pressure']
        disk_end = injectors[InjectorKind.DISK_SLOW].windows[0][1]
        cpu_start = injectors[InjectorKind.CPU_STARVATION].windows[0][0]
        assert disk_end <= cpu_start

    def test_phase_cleaned_before_next_starts(self, fast_config, events, injectors):
        """Test a phase's faults are reverted before the next phase applies anything."""
        scenario = Scenario(name='handover', phases=[
            Phase('first', duration=0.1, injections=[CPU]),
            Phase('second', duration=0.1, injections=[MEMORY]),
        ])

        run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        log = injectors[InjectorKind.CPU_STARVATION].log
        assert log_index(log, 'revert', 'cpu_starvation') < log_index(log, 'apply_start', 'memory_pressure')

    def test_empty_phase_only_observes(self, fast_config, events, injectors):
        """Test a phase without injections waits out its duration."""
        scenario = Scenario(name='observe', phases=[Phase('watch', duration=0.2)])

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        assert result.state is ScenarioState.COMPLETED
        assert result.phase('watch').duration_s >= 0.2
        assert result.total_injections == 0


class TestCancellation:
    """Cancelling a running scenario."""

    def test_cancel_mid_phase(self, fast_config, events, injectors):
        """Test cancel stops quickly, reverts everything and skips the rest."""
        token = CancellationToken()
        orchestrator = Orchestrator(fast_config, injectors=injectors, events=events, token=token)
        scenario = Scenario(name='long', phases=[
            Phase('chaos', duration=30, injections=[CPU, MEMORY]),
            Phase('more', duration=30),
            Phase('recovery', duration=30),
        ])
        timer = threading.Timer(0.3, token.cancel, args=("test interrupt",))

        started = time.monotonic()
        timer.start()
        try:
            result = run_async(orchestrator.run(scenario))
        finally:
            timer.cancel()
        elapsed = time.monotonic() - started

        assert elapsed < 3
        assert result.state is ScenarioState.CANCELLED
        assert exit_code_for(result) == EXIT_CANCELLED
        assert result.skipped_phases == ('more', 'recovery')
        assert result.phase('chaos').interrupted
        assert injectors[InjectorKind.CPU_STARVATION].active == 0
        assert injectors[InjectorKind.MEMORY_PRESSURE].active == 0
        assert len(events.query_events(EventType.PHASE_SKIPPED)) == 2
        assert len(events.query_events(EventType.SCENARIO_CANCELLED)) == 1

    def test_cancel_from_event_loop(self, fast_config, events, injectors):
        """Test Orchestrator.cancel works from inside the loop."""
        orchestrator = Orchestrator(fast_config, injectors=injectors, events=events)

        async def go():
            asyncio.get_running_loop().call_later(0.2, orchestrator.cancel)
            return await orchestrator.run(three_phase(duration=30))

        result = run_async(go())

        assert result.state is ScenarioState.CANCELLED
        assert result.skipped_phases == ('chaos', 'recovery')

    def test_cancel_during_ramp_up(self, fast_config, events, injectors):
        """Test a cancel before the first phase skips every phase."""
        token = CancellationToken()
        token.cancel("before start")
        orchestrator = Orchestrator(fast_config, injectors=injectors, events=events, token=token)

        result = run_async(orchestrator.run(three_phase(ramp_up=10)))

        assert result.state is ScenarioState.CANCELLED
        assert result.phase_results == ()
        assert result.skipped_phases == ('baseline', 'chaos', 'recovery')
        assert injectors[InjectorKind.CPU_STARVATION].applied == []


class TestFailures:
    """Injection failures, fail-fast and leaks."""

    def test_tolerant_by_default(self, fast_config, events):
        """Test a failed apply is recorded and the scenario continues."""
        injectors = recording_injectors(cpu_starvation={'fail_apply': PrivilegeError("need root")})

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(
            three_phase(chaos_injections=[CPU, MEMORY], duration=0.1)
        ))

        assert result.state is ScenarioState.COMPLETED
        chaos = result.phase('chaos')
        failed = [o for o in chaos.outcomes if o.status is OutcomeStatus.FAILED_TO_APPLY]
        assert len(failed) == 1
        assert failed[0].error_type == 'PrivilegeError'
        assert chaos.count(OutcomeStatus.SUCCESS) == 1
        assert result.phase('recovery') is not None
        assert 0 < result.success_rate < 1
        assert len(events.query_events(EventType.INJECTION_FAILED)) == 1

    def test_fail_fast_stops_scenario(self, fast_config, events):
        """Test fail_fast turns the first failure into a FAILED scenario."""
        injectors = recording_injectors(cpu_starvation={'fail_apply': PrivilegeError("need root")})

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(
            three_phase(chaos_injections=[CPU, MEMORY], duration=0.1, fail_fast=True)
        ))

        assert result.state is ScenarioState.FAILED
        assert exit_code_for(result) == EXIT_FAILED
        assert 'PrivilegeError' in result.error
        assert result.skipped_phases == ('recovery',)
        assert injectors[InjectorKind.MEMORY_PRESSURE].applied == []

    def test_fail_fast_from_config(self, temp_dir, events):
        """Test the config default applies when the scenario leaves fail_fast unset."""
        from faultline.config import EngineConfig
        config = EngineConfig(overrides={'fail_fast': True, 'sample_interval_s': 0.05})
        injectors = recording_injectors(cpu_starvation={'fail_apply': PrivilegeError("need root")})

        result = run_async(Orchestrator(config, injectors=injectors, events=events).run(three_phase(duration=0.1)))

        assert result.state is ScenarioState.FAILED

    def test_parallel_fail_fast_reverts_siblings(self, fast_config, events):
        """Test the successful siblings of a failed parallel open are reverted."""
        injectors = recording_injectors(cpu_starvation={'fail_apply': PrivilegeError("need root")})
        scenario = Scenario(name='burst', fail_fast=True, phases=[
            Phase('burst', duration=5, parallel=True, injections=[CPU, MEMORY, DISK]),
        ])

        started = time.monotonic()
        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        assert time.monotonic() - started < 3
        assert result.state is ScenarioState.FAILED
        assert injectors[InjectorKind.MEMORY_PRESSURE].active == 0
        assert injectors[InjectorKind.DISK_SLOW].active == 0

    def test_leaked_handle_reported(self, fast_config, events):
        """Test a failed revert is reported as a leak without stopping the run."""
        injectors = recording_injectors(disk_slow={'fail_revert': RuntimeError("device busy")})

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(
            three_phase(chaos_injections=[CPU, DISK], duration=0.1)
        ))

        assert result.state is ScenarioState.COMPLETED
        assert result.leaked_handles == ('disk_slow:host:2',)
        assert result.phase('chaos').count(OutcomeStatus.FAILED_TO_CLEAN) == 1
        assert injectors[InjectorKind.CPU_STARVATION].active == 0
        finished = events.query_events(EventType.SCENARIO_COMPLETED)[0]
        assert finished.severity is EventSeverity.CRITICAL

    def test_unexpected_error_still_cleans_up(self, fast_config, events):
        """Test an error outside the injection taxonomy fails the run after reverting."""
        injectors = recording_injectors(memory_pressure={'fail_apply': RuntimeError("bug")})

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(
            three_phase(chaos_injections=[CPU, MEMORY], duration=0.1)
        ))

        assert result.state is ScenarioState.FAILED
        assert 'RuntimeError' in result.error
        assert injectors[InjectorKind.CPU_STARVATION].active == 0

    def test_unexpected_error_in_parallel_phase(self, fast_config, events):
        """Test a slower sibling still finishing its open is reverted and the phase is recorded."""
        injectors = recording_injectors(
            cpu_starvation={'apply_delay': 0.3},
            memory_pressure={'fail_apply': ValueError("cannot convert float NaN to integer")},
        )
        scenario = Scenario(name='burst', phases=[
            Phase('burst', duration=5, parallel=True, injections=[CPU, MEMORY]),
            Phase('after', duration=0.1),
        ])
        orchestrator = Orchestrator(fast_config, injectors=injectors, events=events)

        result = run_async(orchestrator.run(scenario))

        assert result.state is ScenarioState.FAILED
        assert 'ValueError' in result.error
        assert result.skipped_phases == ('after',)
        assert orchestrator.registry.active_handles() == []
        cpu = injectors[InjectorKind.CPU_STARVATION]
        assert len(cpu.applied) == 1
        assert cpu.active == 0
        burst = result.phase('burst')
        assert burst.count(OutcomeStatus.SUCCESS) == 1
        failed = [o for o in burst.outcomes if o.status is OutcomeStatus.FAILED_TO_APPLY]
        assert [o.error_type for o in failed] == ['ValueError']


class TestTargetResolution:
    """Targets that cannot be resolved."""

    GHOST = Target('ghost', TargetKind.PROCESS, 'faultline-no-such-process-7f3a')

    def test_all_unresolved_fails_scenario(self, fast_config, events, injectors):
        """Test a phase whose every target is missing fails the scenario."""
        scenario = Scenario(name='ghost', targets=[self.GHOST], phases=[
            Phase('kill', duration=0.1, injections=[InjectionSpec(InjectorKind.PROCESS_KILL, 'ghost')]),
            Phase('after', duration=0.1),
        ])

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        assert result.state is ScenarioState.FAILED
        assert result.skipped_phases == ('after',)
        outcome = result.phase('kill').outcomes[0]
        assert outcome.error_type == 'TargetResolutionError'
        assert len(events.query_events(EventType.TARGET_RESOLUTION_FAILED)) == 1

    def test_partial_resolution_continues(self, fast_config, events, injectors):
        """Test one missing target is recorded while the other injections run."""
        scenario = Scenario(name='mixed', targets=[self.GHOST], phases=[
            Phase('mixed', duration=0.1, injections=[InjectionSpec(InjectorKind.PROCESS_KILL, 'ghost'), CPU]),
        ])

        result = run_async(Orchestrator(fast_config, injectors=injectors, events=events).run(scenario))

        assert result.state is ScenarioState.COMPLETED
        statuses = sorted(o.status.value for o in result.phase('mixed').outcomes)
        assert statuses == ['failed_to_apply', 'success']
