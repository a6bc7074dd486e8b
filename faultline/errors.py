"""
Error taxonomy for faultline.

Every failure the engine reports derives from ChaosError. Errors raised
while applying a single injection derive from InjectionError and are
caught at the injection boundary, where they become part of the phase
result instead of aborting the run.
"""

from typing import List, Optional, Sequence


class ChaosError(Exception):
    """Base class for all faultline errors."""
    pass


class ValidationError(ChaosError):
    """A single scenario violation, found before any injection runs."""

    def __init__(self, message: str, location: Optional[str] = None):
        """
        Initialize validation error.

        Args:
            message: What is wrong with the value
            location: Dotted path of the offending field (e.g. "phases[1].duration")
        """
        self.message = message
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class ScenarioInvalid(ValidationError):
    """Raised by a run when validation found one or more violations."""

    def __init__(self, errors: Sequence[ValidationError]):
        self.errors: List[ValidationError] = list(errors)
        count = len(self.errors)
        super().__init__(f"scenario has {count} validation error{'s' if count != 1 else ''}")


class InjectionError(ChaosError):
    """Failure local to one injection."""
    pass


class PrivilegeError(InjectionError):
    """The injector needs elevated privileges that the process lacks."""
    pass


class PlatformUnsupported(InjectionError):
    """The host lacks the tool or kernel feature an injector needs."""
    pass


class TargetResolutionError(InjectionError):
    """A target could not be resolved to a live process or interface."""

    def __init__(self, target_id: str, reason: str):
        self.target_id = target_id
        self.reason = reason
        super().__init__(f"target '{target_id}' could not be resolved: {reason}")


class CommandExecutionError(InjectionError):
    """An external command exited unsuccessfully or timed out."""

    def __init__(self, message: str, argv: Sequence[str] = (), returncode: Optional[int] = None,
                 stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class CleanupError(ChaosError):
    """Reverting an injection failed. The handle is reported as leaked."""

    def __init__(self, message: str, handle_id: Optional[str] = None):
        self.handle_id = handle_id
        super().__init__(message)
