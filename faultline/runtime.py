"""
Runtime glue for embedding faultline in a command-line tool.

Wires SIGINT/SIGTERM to the cancellation token, runs a scenario to
completion on a fresh event loop, and renders validation errors and run
summaries for the terminal.
"""

import asyncio
import logging
import signal
from typing import List, Optional, Sequence

from colorama import Fore, Style, init as colorama_init

from faultline.cancellation import CancellationToken
from faultline.config import EngineConfig
from faultline.error_messages import format_leak_error, format_validation_error
from faultline.errors import ScenarioInvalid, ValidationError
from faultline.events import EventEmitter
from faultline.models import OutcomeStatus, Scenario, ScenarioResult, ScenarioState
from faultline.orchestrator import EXIT_VALIDATION_ERROR, Orchestrator, exit_code_for


logger = logging.getLogger(__name__)

HANDLED_SIGNALS = ('SIGINT', 'SIGTERM')


def install_signal_handlers(loop: asyncio.AbstractEventLoop, token: CancellationToken) -> List[int]:
    """
    Route termination signals to the token.

    Uses the loop's signal handlers where supported and falls back to
    signal.signal (Windows).

    Returns:
        Signal numbers that were installed
    """
    installed = []
    for name in HANDLED_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            loop.add_signal_handler(signum, token.cancel, f"received {name}")
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(signum, lambda received, frame, n=name: token.cancel(f"received {n}"))
            except ValueError:
                # not in the main thread
                continue
        installed.append(signum)
    return installed


def remove_signal_handlers(loop: asyncio.AbstractEventLoop, installed: Sequence[int]):
    for signum in installed:
        try:
            loop.remove_signal_handler(signum)
        except (NotImplementedError, RuntimeError):
            signal.signal(signum, signal.default_int_handler if signum == signal.SIGINT else signal.SIG_DFL)


def run(
    scenario: Scenario,
    config: Optional[EngineConfig] = None,
    token: Optional[CancellationToken] = None,
    events: Optional[EventEmitter] = None,
    handle_signals: bool = True
) -> ScenarioResult:
    """
    Run a scenario synchronously.

    Raises:
        ScenarioInvalid: The scenario failed validation
    """
    orchestrator = Orchestrator(config=config, events=events, token=token)

    async def _main():
        loop = asyncio.get_running_loop()
        installed = install_signal_handlers(loop, orchestrator.token) if handle_signals else []
        try:
            return await orchestrator.run(scenario)
        finally:
            remove_signal_handlers(loop, installed)

    return asyncio.run(_main())


def validate_only(scenario: Scenario, config: Optional[EngineConfig] = None) -> List[ValidationError]:
    """Every validation violation of the scenario, without touching the host."""
    return Orchestrator(config=config).validate_only(scenario)


def render_validation_errors(errors: Sequence[ValidationError]) -> str:
    """All violations at once, one formatted block each."""
    header = f"{Fore.RED}Scenario validation failed ({len(errors)} error{'s' if len(errors) != 1 else ''}){Style.RESET_ALL}"
    return "\n\n".join([header] + [format_validation_error(error) for error in errors])


def render_summary(result: ScenarioResult) -> str:
    """Terminal summary: state, phases run and skipped, leaked handles."""
    color = {
        ScenarioState.COMPLETED: Fore.GREEN,
        ScenarioState.CANCELLED: Fore.YELLOW,
    }.get(result.state, Fore.RED)

    lines = [
        f"{Fore.CYAN}{'=' * 70}{Style.RESET_ALL}",
        f"Scenario: {result.scenario_name} | {color}{result.state.name}{Style.RESET_ALL} | "
        f"{result.duration_s:.1f}s",
        f"{Fore.CYAN}{'=' * 70}{Style.RESET_ALL}",
    ]

    for phase in result.phase_results:
        failed = phase.count(OutcomeStatus.FAILED_TO_APPLY)
        leaked = phase.count(OutcomeStatus.FAILED_TO_CLEAN)
        status = f"{Fore.YELLOW}interrupted{Style.RESET_ALL}" if phase.interrupted else f"{Fore.GREEN}completed{Style.RESET_ALL}"
        lines.append(
            f"  {phase.name:<24} {status}  {phase.duration_s:6.1f}s  "
            f"injections: {len(phase.outcomes)}  failed: {failed}  leaked: {leaked}"
        )
    for name in result.skipped_phases:
        lines.append(f"  {name:<24} {Fore.YELLOW}skipped{Style.RESET_ALL}")

    lines.append(f"Injection success rate: {result.success_rate * 100:.0f}%  sampling gaps: {result.sampling_gaps}")

    if result.error:
        lines.append(f"{Fore.RED}Failure: {result.error}{Style.RESET_ALL}")

    if result.leaked_handles:
        lines.append(f"{Fore.RED}LEAKED HANDLES ({len(result.leaked_handles)}):{Style.RESET_ALL}")
        for phase in result.phase_results:
            for outcome in phase.outcomes:
                if outcome.status is OutcomeStatus.FAILED_TO_CLEAN:
                    lines.append(format_leak_error(outcome.handle_id, outcome.error or "revert failed"))
    return "\n".join(lines)


def run_and_report(scenario: Scenario, config: Optional[EngineConfig] = None,
                   token: Optional[CancellationToken] = None) -> int:
    """
    Validate, run and print a summary.

    Returns:
        Exit code (0 completed, 1 failed, 2 validation error, 130 cancelled)
    """
    colorama_init()
    try:
        result = run(scenario, config=config, token=token)
    except ScenarioInvalid as e:
        print(render_validation_errors(e.errors))
        return EXIT_VALIDATION_ERROR

    print(render_summary(result))
    return exit_code_for(result)
