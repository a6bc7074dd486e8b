"""
Scenario validation.

validate_scenario() walks the whole scenario and returns every violation
it finds, so a user sees all problems at once. Nothing here touches the
host: targets are checked for shape, not resolved.
"""

import logging
import math
import numbers
from typing import Any, Dict, List, Optional, Tuple

from faultline.config import EngineConfig
from faultline.errors import ValidationError
from faultline.injectors.network import DISTRIBUTIONS
from faultline.injectors.process import SIGNAL_NAMES
from faultline.models import (
    HOST_TARGET_ID, METRIC_NAMES, InjectionSpec, InjectorKind, Phase, Scenario, TargetKind
)


logger = logging.getLogger(__name__)


# kind -> param -> (min, max, integer_only, example)
NUMERIC_PARAMS: Dict[InjectorKind, Dict[str, Tuple[float, float, bool, Any]]] = {
    InjectorKind.NETWORK_LATENCY: {
        'delay_ms': (0, 60000, False, 100),
        'jitter_ms': (0, 60000, False, 20),
        'correlation': (0.0, 1.0, False, 0.25),
    },
    InjectorKind.PACKET_LOSS: {
        'loss_rate': (0.0, 1.0, False, 0.01),
        'correlation': (0.0, 1.0, False, 0.25),
    },
    InjectorKind.TCP_RESET: {
        'port': (1, 65535, True, 8080),
    },
    InjectorKind.CPU_STARVATION: {
        'intensity': (0.0, 1.0, False, 0.8),
        'workers': (1, 1024, True, 4),
    },
    InjectorKind.MEMORY_PRESSURE: {
        'target_usage': (0.0, 1.0, False, 0.9),
    },
    InjectorKind.DISK_SLOW: {
        'latency_ms': (0, 60000, False, 100),
        'block_kb': (1, 65536, True, 64),
    },
    InjectorKind.PROCESS_KILL: {
        'restart_delay_s': (0, 3600, False, 5),
    },
}

# kind -> param -> allowed values
CHOICE_PARAMS: Dict[InjectorKind, Dict[str, Tuple[str, ...]]] = {
    InjectorKind.NETWORK_LATENCY: {'distribution': DISTRIBUTIONS},
    InjectorKind.PROCESS_KILL: {'signal': SIGNAL_NAMES},
}

BOOL_PARAMS: Dict[InjectorKind, Tuple[str, ...]] = {
    InjectorKind.PROCESS_KILL: ('restart',),
}

STRING_PARAMS: Dict[InjectorKind, Tuple[str, ...]] = {
    InjectorKind.DISK_SLOW: ('path',),
}

# argv-style lists of strings
LIST_PARAMS: Dict[InjectorKind, Tuple[str, ...]] = {
    InjectorKind.PROCESS_KILL: ('restart_command',),
}

# target kinds each injection kind may be aimed at
ALLOWED_TARGET_KINDS: Dict[InjectorKind, Tuple[TargetKind, ...]] = {
    InjectorKind.NETWORK_LATENCY: (TargetKind.NETWORK_INTERFACE,),
    InjectorKind.PACKET_LOSS: (TargetKind.NETWORK_INTERFACE,),
    InjectorKind.TCP_RESET: (TargetKind.NETWORK_INTERFACE,),
    InjectorKind.CPU_STARVATION: (TargetKind.HOST, TargetKind.PROCESS),
    InjectorKind.MEMORY_PRESSURE: (TargetKind.HOST, TargetKind.PROCESS),
    InjectorKind.DISK_SLOW: (TargetKind.HOST, TargetKind.PROCESS),
    InjectorKind.PROCESS_KILL: (TargetKind.PROCESS,),
}


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool) and math.isfinite(value)


def validate_scenario(scenario: Scenario, config: Optional[EngineConfig] = None) -> List[ValidationError]:
    """
    Check a scenario against every structural and range rule.

    Args:
        scenario: Scenario to check
        config: Engine configuration (for max_phase_duration_s)

    Returns:
        List of ValidationError, empty when the scenario is valid
    """
    config = config or EngineConfig()
    errors: List[ValidationError] = []

    if not isinstance(scenario.name, str) or not scenario.name.strip():
        errors.append(ValidationError("scenario name must be a non-empty string", "name"))

    errors.extend(_validate_targets(scenario))
    errors.extend(_validate_options(scenario))

    if not scenario.phases:
        errors.append(ValidationError("scenario has no phases", "phases"))

    seen_names = set()
    for index, phase in enumerate(scenario.phases):
        location = f"phases[{index}]"
        if not isinstance(phase, Phase):
            errors.append(ValidationError(f"expected a Phase, got {type(phase).__name__}", location))
            continue
        if not isinstance(phase.name, str) or not phase.name.strip():
            errors.append(ValidationError("phase name must be a non-empty string", f"{location}.name"))
        elif phase.name in seen_names:
            errors.append(ValidationError(f"duplicate phase name '{phase.name}'", f"{location}.name"))
        else:
            seen_names.add(phase.name)

        errors.extend(_validate_duration(phase.duration, config.max_phase_duration_s, f"{location}.duration"))

        for position, spec in enumerate(phase.injections):
            errors.extend(_validate_injection(scenario, spec, f"{location}.injections[{position}]"))

    if errors:
        logger.info(f"Scenario '{scenario.name}' failed validation with {len(errors)} error(s)")
    return errors


def _validate_targets(scenario: Scenario) -> List[ValidationError]:
    errors = []
    seen = set()
    for index, target in enumerate(scenario.targets):
        location = f"targets[{index}]"
        if not isinstance(target.id, str) or not target.id:
            errors.append(ValidationError("target id must be a non-empty string", f"{location}.id"))
            continue
        if target.id == HOST_TARGET_ID:
            errors.append(ValidationError(f"target id '{HOST_TARGET_ID}' is reserved", f"{location}.id"))
        if target.id in seen:
            errors.append(ValidationError(f"duplicate target id '{target.id}'", f"{location}.id"))
        seen.add(target.id)

        if target.kind not in (TargetKind.PROCESS, TargetKind.NETWORK_INTERFACE):
            errors.append(ValidationError(
                f"target kind must be 'process' or 'network_interface', got {target.kind!r}", f"{location}.kind"
            ))
        if not isinstance(target.descriptor, str) or not target.descriptor.strip():
            errors.append(ValidationError("target descriptor must be a non-empty string", f"{location}.descriptor"))
        if target.address is not None and target.port is None:
            errors.append(ValidationError(
                f"address must look like host:port, got {target.address!r}", f"{location}.address"
            ))
    return errors


def _validate_options(scenario: Scenario) -> List[ValidationError]:
    errors = []
    if scenario.fail_fast is not None and not isinstance(scenario.fail_fast, bool):
        errors.append(ValidationError("fail_fast must be true, false or unset", "fail_fast"))
    if scenario.seed is not None and (isinstance(scenario.seed, bool) or not isinstance(scenario.seed, int)):
        errors.append(ValidationError("seed must be an integer", "seed"))
    if not _is_number(scenario.ramp_up) or scenario.ramp_up < 0:
        errors.append(ValidationError(f"ramp_up must be a non-negative number, got {scenario.ramp_up!r}", "ramp_up"))
    for metric, threshold in (scenario.slo or {}).items():
        if metric not in METRIC_NAMES:
            errors.append(ValidationError(
                f"unknown SLO metric '{metric}' (expected one of {', '.join(METRIC_NAMES)})", f"slo.{metric}"
            ))
        elif not _is_number(threshold) or threshold < 0:
            errors.append(ValidationError(f"SLO threshold must be a non-negative number", f"slo.{metric}"))
    return errors


def _validate_duration(duration: Any, maximum: float, location: str) -> List[ValidationError]:
    if not _is_number(duration):
        return [ValidationError(f"duration must be a number of seconds, got {duration!r}", location)]
    if duration <= 0:
        return [ValidationError(f"duration must be greater than 0, got {duration}", location)]
    if duration > maximum:
        return [ValidationError(f"duration {duration} exceeds the maximum of {maximum} seconds", location)]
    return []


def _validate_injection(scenario: Scenario, spec: InjectionSpec, location: str) -> List[ValidationError]:
    if not isinstance(spec.kind, InjectorKind):
        valid = ', '.join(kind.value for kind in InjectorKind)
        return [ValidationError(f"unknown injection kind {spec.kind!r} (expected one of {valid})", f"{location}.kind")]

    errors = []
    kind = spec.kind

    target = scenario.target(spec.target)
    if spec.target is None and not kind.is_host_wide:
        errors.append(ValidationError(f"{kind.value} requires a target", f"{location}.target"))
        target = None
    elif target is None:
        errors.append(ValidationError(f"unknown target '{spec.target}'", f"{location}.target"))
    elif target.kind not in ALLOWED_TARGET_KINDS[kind]:
        allowed = ', '.join(k.value for k in ALLOWED_TARGET_KINDS[kind])
        errors.append(ValidationError(
            f"{kind.value} cannot target a {getattr(target.kind, 'value', target.kind)} (expected {allowed})",
            f"{location}.target"
        ))

    errors.extend(_validate_params(kind, spec.params, f"{location}.params"))

    if kind is InjectorKind.TCP_RESET and 'port' not in spec.params:
        if target is None or target.port is None:
            errors.append(ValidationError(
                "tcp_reset needs a 'port' parameter or a target address with a port", f"{location}.params.port"
            ))
    return errors


def _validate_params(kind: InjectorKind, params: Dict[str, Any], location: str) -> List[ValidationError]:
    errors = []
    numeric = NUMERIC_PARAMS.get(kind, {})
    choices = CHOICE_PARAMS.get(kind, {})
    bools = BOOL_PARAMS.get(kind, ())
    strings = STRING_PARAMS.get(kind, ())
    lists = LIST_PARAMS.get(kind, ())

    for name, value in params.items():
        field = f"{location}.{name}"
        if name in numeric:
            min_val, max_val, integer_only, example = numeric[name]
            if not _is_number(value) or (integer_only and not isinstance(value, int)):
                expected = "a whole number" if integer_only else "a number"
                errors.append(ValidationError(f"{name} must be {expected} (e.g. {example}), got {value!r}", field))
            elif value < min_val or value > max_val:
                errors.append(ValidationError(f"{name} must be between {min_val} and {max_val}, got {value}", field))
        elif name in choices:
            if value not in choices[name]:
                errors.append(ValidationError(
                    f"{name} must be one of {', '.join(choices[name])}, got {value!r}", field
                ))
        elif name in bools:
            if not isinstance(value, bool):
                errors.append(ValidationError(f"{name} must be true or false, got {value!r}", field))
        elif name in strings:
            if not isinstance(value, str) or not value:
                errors.append(ValidationError(f"{name} must be a non-empty string", field))
        elif name in lists:
            if not isinstance(value, (list, tuple)) or not value or not all(isinstance(v, str) for v in value):
                errors.append(ValidationError(f"{name} must be a non-empty list of strings", field))
        else:
            known = sorted(list(numeric) + list(choices) + list(bools) + list(strings) + list(lists))
            errors.append(ValidationError(
                f"unknown parameter '{name}' for {kind.value} (known: {', '.join(known) or 'none'})", field
            ))
    return errors
