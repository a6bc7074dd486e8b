"""
faultline - controlled failure injection for multi-phase resilience tests.
"""

from faultline.cancellation import CancellationToken, WaitOutcome
from faultline.config import EngineConfig
from faultline.errors import (
    ChaosError, CleanupError, CommandExecutionError, InjectionError, PlatformUnsupported,
    PrivilegeError, ScenarioInvalid, TargetResolutionError, ValidationError
)
from faultline.injectors import build_injectors, describe_injectors
from faultline.models import (
    InjectionSpec, InjectorKind, Phase, Scenario, ScenarioResult, ScenarioState, Target, TargetKind
)
from faultline.orchestrator import (
    EXIT_CANCELLED, EXIT_COMPLETED, EXIT_FAILED, EXIT_VALIDATION_ERROR, Orchestrator, exit_code_for
)
from faultline.runtime import run, run_and_report, validate_only

__version__ = "1.0.0"

__all__ = [
    'CancellationToken',
    'ChaosError',
    'CleanupError',
    'CommandExecutionError',
    'EXIT_CANCELLED',
    'EXIT_COMPLETED',
    'EXIT_FAILED',
    'EXIT_VALIDATION_ERROR',
    'EngineConfig',
    'InjectionError',
    'InjectionSpec',
    'InjectorKind',
    'Orchestrator',
    'Phase',
    'PlatformUnsupported',
    'PrivilegeError',
    'Scenario',
    'ScenarioInvalid',
    'ScenarioResult',
    'ScenarioState',
    'Target',
    'TargetKind',
    'TargetResolutionError',
    'ValidationError',
    'WaitOutcome',
    'build_injectors',
    'describe_injectors',
    'exit_code_for',
    'run',
    'run_and_report',
    'validate_only',
]
