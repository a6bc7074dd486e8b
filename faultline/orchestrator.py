"""
Phase scheduler.

The Orchestrator drives a validated Scenario through its phases:

    phase:    PENDING -> RUNNING -> COMPLETED
    scenario: PENDING -> RUNNING -> COMPLETED | CANCELLED | FAILED

For each phase it resolves targets, opens injections (concurrently when
the phase is parallel, in declared order otherwise), waits out the phase
duration, and closes the phase's handles before the next phase starts.
A cancellation skips the remaining phases and reverts everything still
active. All fault state lives in the run's HandleRegistry.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple, Union

from faultline.aggregator import ResultAggregator, SloTracker
from faultline.cancellation import CancellationToken, WaitOutcome
from faultline.config import EngineConfig
from faultline.error_messages import format_injection_error
from faultline.errors import InjectionError, ScenarioInvalid, TargetResolutionError, ValidationError
from faultline.events import EventEmitter, EventSeverity, EventType
from faultline.executor import CommandExecutor
from faultline.injectors import build_injectors
from faultline.models import (
    InjectionHandle, InjectionOutcome, InjectionSpec, OutcomeStatus, Phase, PhaseResult, PhaseState,
    Scenario, ScenarioResult, ScenarioState
)
from faultline.registry import HandleRegistry
from faultline.sampler import MetricsSampler
from faultline.targets import ResolvedTarget, TargetResolver
from faultline.validation import validate_scenario


logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_VALIDATION_ERROR = 2
EXIT_CANCELLED = 130

_EXIT_CODES = {
    ScenarioState.COMPLETED: EXIT_COMPLETED,
    ScenarioState.FAILED: EXIT_FAILED,
    ScenarioState.CANCELLED: EXIT_CANCELLED,
}


def exit_code_for(result: ScenarioResult) -> int:
    """Process exit code for a finished run."""
    return _EXIT_CODES.get(result.state, EXIT_FAILED)


class Orchestrator:
    """Runs scenarios. One Orchestrator may run several scenarios one after another."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        injectors: Optional[Mapping] = None,
        executor: Optional[CommandExecutor] = None,
        events: Optional[EventEmitter] = None,
        token: Optional[CancellationToken] = None
    ):
        """
        Initialize orchestrator.

        Args:
            config: Engine configuration
            injectors: InjectorKind -> Injector mapping (built for the host when None)
            executor: Command executor for kernel network injectors
            events: Event emitter (in-memory with logging echo when None)
            token: Cancellation token observed at every suspension point
        """
        self.config = config or EngineConfig()
        self.injectors = injectors
        self.executor = executor
        self.events = events or EventEmitter()
        self.token = token or CancellationToken()
        self.state = ScenarioState.PENDING
        self.phase_states: Dict[str, PhaseState] = {}
        self.registry: Optional[HandleRegistry] = None
        self.sampler: Optional[MetricsSampler] = None

    def validate_only(self, scenario: Scenario) -> List[ValidationError]:
        """Every validation violation of the scenario (empty when valid). Touches nothing."""
        return validate_scenario(scenario, self.config)

    def cancel(self, reason: str = "cancel requested"):
        self.token.cancel(reason)

    async def run(self, scenario: Scenario) -> ScenarioResult:
        """
        Run a scenario to completion, cancellation or failure.

        Returns:
            ScenarioResult

        Raises:
            ScenarioInvalid: The scenario failed validation (nothing was injected)
        """
        errors = self.validate_only(scenario)
        if errors:
            self.events.emit(
                EventType.VALIDATION_FAILED,
                f"Scenario '{scenario.name}' has {len(errors)} validation error(s)",
                severity=EventSeverity.ERROR,
                context={'errors': [str(e) for e in errors]}
            )
            raise ScenarioInvalid(errors)

        fail_fast = self.config.fail_fast if scenario.fail_fast is None else scenario.fail_fast
        injectors = self.injectors
        if injectors is None:
            injectors = build_injectors(self.config, self.executor, seed=scenario.seed)
        elif scenario.seed is not None and getattr(injectors, 'simulation', None) is not None:
            injectors.simulation.reseed(scenario.seed)

        resolver = TargetResolver()
        registry = HandleRegistry(injectors, self.events)
        sampler = MetricsSampler(
            resolver,
            interval_s=self.config.sample_interval_s,
            probe_timeout_s=self.config.probe_timeout_s,
            events=self.events
        )
        aggregator = ResultAggregator(sampler.samples, SloTracker(scenario.slo) if scenario.slo else None)
        self.registry, self.sampler = registry, sampler
        self.phase_states = {phase.name: PhaseState.PENDING for phase in scenario.phases}

        started_at = datetime.now()
        self.state = ScenarioState.RUNNING
        self.events.emit(
            EventType.SCENARIO_STARTED,
            f"Scenario '{scenario.name}' started ({len(scenario.phases)} phases, fail_fast={fail_fast})"
        )

        failure: Optional[str] = None
        await sampler.start()
        try:
            if scenario.ramp_up > 0:
                await self.token.wait_for(scenario.ramp_up)

            for index, phase in enumerate(scenario.phases):
                if self.token.cancelled or failure is not None:
                    break
                failure = await self._run_phase(scenario, index, phase, resolver, registry, sampler,
                                                aggregator, fail_fast)
        except Exception as e:
            failure = f"{type(e).__name__}: {e}"
            logger.critical(f"Scenario '{scenario.name}' aborted by unexpected error: {failure}", exc_info=True)
        finally:
            await registry.close_all_immediate()
            await sampler.stop()

        started = {result.name for result in aggregator.phase_results}
        skipped = [phase.name for phase in scenario.phases if phase.name not in started]
        for name in skipped:
            self.events.emit(EventType.PHASE_SKIPPED, f"Phase '{name}' skipped", context={'phase': name})

        if failure is not None:
            self.state = ScenarioState.FAILED
        elif self.token.cancelled:
            self.state = ScenarioState.CANCELLED
        else:
            self.state = ScenarioState.COMPLETED

        result = aggregator.fold_scenario(
            scenario.name,
            self.state,
            started_at,
            datetime.now(),
            skipped_phases=skipped,
            leaked_handles=[handle.handle_id for handle in registry.leaked_handles()],
            sampling_gaps=sampler.gaps,
            error=failure
        )
        self._emit_finished(scenario, result)
        return result

    async def _run_phase(
        self,
        scenario: Scenario,
        index: int,
        phase: Phase,
        resolver: TargetResolver,
        registry: HandleRegistry,
        sampler: MetricsSampler,
        aggregator: ResultAggregator,
        fail_fast: bool
    ) -> Optional[str]:
        """Run one phase. Returns a failure message when the scenario must stop."""
        self.phase_states[phase.name] = PhaseState.RUNNING
        sampler.set_phase(phase.name)
        started_at = datetime.now()
        self.events.emit(
            EventType.PHASE_STARTED,
            f"Phase '{phase.name}' started ({len(phase.injections)} injections, "
            f"{'parallel' if phase.parallel else 'sequential'})",
            context={'phase': phase.name, 'index': index}
        )

        failed: List[InjectionOutcome] = []
        pending: List[Tuple[InjectionSpec, ResolvedTarget]] = []
        unresolved = 0
        for spec in phase.injections:
            target = scenario.target(spec.target)
            try:
                resolved = resolver.resolve(target)
            except TargetResolutionError as e:
                unresolved += 1
                failed.append(self._failed_outcome(spec, e))
                self.events.emit(
                    EventType.TARGET_RESOLUTION_FAILED,
                    str(e),
                    severity=EventSeverity.WARNING,
                    context={'phase': phase.name, 'target': target.id}
                )
                continue
            self.events.emit(EventType.TARGET_RESOLVED, f"Resolved target {target.id}",
                             severity=EventSeverity.DEBUG, context={'target': target.id})
            pending.append((spec, resolved))

        unexpected: List[str] = []
        if phase.parallel:
            opened = await asyncio.gather(*(
                self._open_one(registry, spec, resolved, index, unexpected) for spec, resolved in pending
            ))
        else:
            opened = []
            for spec, resolved in pending:
                if self.token.cancelled:
                    break
                opened.append(await self._open_one(registry, spec, resolved, index, unexpected))
                if (fail_fast or unexpected) and isinstance(opened[-1], InjectionOutcome):
                    break
        failed.extend(entry for entry in opened if isinstance(entry, InjectionOutcome))

        failure = None
        if unexpected:
            failure = f"phase '{phase.name}': {unexpected[0]}"
        elif phase.injections and unresolved == len(phase.injections):
            failure = f"phase '{phase.name}': no injection target could be resolved"
        elif fail_fast and failed:
            failure = f"phase '{phase.name}': {failed[0].error_type}: {failed[0].error}"

        interrupted = True
        if failure is None and not self.token.cancelled:
            self.events.emit(EventType.PHASE_TIMER_STARTED,
                             f"Phase '{phase.name}' holding for {phase.duration}s",
                             context={'phase': phase.name})
            interrupted = await self.token.wait_for(phase.duration) is WaitOutcome.CANCELLED

        if self.token.cancelled:
            closed = await registry.close_all_immediate()
        else:
            closed = await registry.close_all(index)

        self.phase_states[phase.name] = PhaseState.COMPLETED
        sampler.set_phase(None)
        result = aggregator.fold_phase(phase.name, index, started_at, datetime.now(),
                                       failed + closed, interrupted=interrupted)
        self._emit_phase_completed(result)

        if failure:
            logger.error(f"Failing scenario '{scenario.name}': {failure}")
        return failure

    async def _open_one(
        self,
        registry: HandleRegistry,
        spec: InjectionSpec,
        resolved: ResolvedTarget,
        index: int,
        unexpected: List[str]
    ) -> Union[InjectionHandle, InjectionOutcome]:
        """
        Open one injection, turning a failure into a FAILED_TO_APPLY outcome.

        Errors outside the injection taxonomy are appended to `unexpected`
        rather than raised, so every open of a parallel phase settles before
        anything is closed. The caller fails the scenario on them.
        """
        try:
            return await registry.open(spec, resolved, index)
        except (InjectionError, OSError) as e:
            logger.error(format_injection_error(spec.kind.value, resolved.id, e))
            error = e
        except Exception as e:
            logger.critical(f"Unexpected error applying {spec.kind.value} to {resolved.id}: {e}", exc_info=True)
            unexpected.append(f"{type(e).__name__}: {e}")
            error = e
        self.events.emit(
            EventType.INJECTION_FAILED,
            f"{spec.kind.value} failed: {error}",
            severity=EventSeverity.ERROR,
            context={'target': resolved.id, 'error_type': type(error).__name__}
        )
        return self._failed_outcome(spec, error)

    @staticmethod
    def _failed_outcome(spec: InjectionSpec, error: Exception) -> InjectionOutcome:
        return InjectionOutcome(
            kind=spec.kind,
            target_id=spec.target_id,
            status=OutcomeStatus.FAILED_TO_APPLY,
            error=str(error),
            error_type=type(error).__name__
        )

    def _emit_phase_completed(self, result: PhaseResult):
        self.events.emit(
            EventType.PHASE_COMPLETED,
            f"Phase '{result.name}' completed in {result.duration_s:.1f}s "
            f"({result.count(OutcomeStatus.SUCCESS)} ok, "
            f"{result.count(OutcomeStatus.FAILED_TO_APPLY)} failed to apply, "
            f"{result.count(OutcomeStatus.FAILED_TO_CLEAN)} leaked)"
            + (" [interrupted]" if result.interrupted else ""),
            context={'phase': result.name, 'index': result.index}
        )

    def _emit_finished(self, scenario: Scenario, result: ScenarioResult):
        if result.state is ScenarioState.COMPLETED:
            event_type, severity = EventType.SCENARIO_COMPLETED, EventSeverity.INFO
        elif result.state is ScenarioState.CANCELLED:
            event_type, severity = EventType.SCENARIO_CANCELLED, EventSeverity.WARNING
        else:
            event_type, severity = EventType.SCENARIO_FAILED, EventSeverity.ERROR
        if result.leaked_handles:
            severity = EventSeverity.CRITICAL
        self.events.emit(
            event_type,
            f"Scenario '{scenario.name}' {result.state.name.lower()} after {result.duration_s:.1f}s",
            severity=severity,
            context={'skipped': list(result.skipped_phases), 'leaked': list(result.leaked_handles)}
        )
