"""
Clear, actionable error message formatting.

All error messages follow the pattern:
  ERROR: [What failed]
    Reason: [Why it failed]
    Action: [What user should do]
    Location: [Where the problem is]
"""

import logging
from typing import Optional

from faultline.errors import CommandExecutionError, PlatformUnsupported, PrivilegeError, ValidationError


logger = logging.getLogger(__name__)


def format_error(
    what_failed: str,
    reason: str,
    action: str,
    location: Optional[str] = None,
    details: Optional[str] = None
) -> str:
    """
    Format a clear, actionable error message.

    Args:
        what_failed: What operation failed (e.g., "Failed to apply network_latency")
        reason: Why it failed (e.g., "tc reported: Operation not permitted")
        action: What user should do (e.g., "Run with sudo or CAP_NET_ADMIN")
        location: Where the problem occurred (field path, interface, pid)
        details: Optional additional details

    Returns:
        Formatted error message
    """
    lines = [f"ERROR: {what_failed}"]
    lines.append(f"  Reason: {reason}")
    lines.append(f"  Action: {action}")

    if location:
        lines.append(f"  Location: {location}")

    if details:
        lines.append(f"  Details: {details}")

    return "\n".join(lines)


def log_error(
    what_failed: str,
    reason: str,
    action: str,
    location: Optional[str] = None,
    details: Optional[str] = None
):
    """
    Log a clear, actionable error message.

    Same parameters as format_error, but logs it directly.
    """
    logger.error(format_error(what_failed, reason, action, location, details))


def format_validation_error(error: ValidationError) -> str:
    """Format one scenario violation."""
    return format_error(
        what_failed="Invalid scenario",
        reason=error.message,
        action="Fix the scenario definition and run again",
        location=error.location
    )


def format_injection_error(kind: str, target_id: str, error: Exception) -> str:
    """Format a failed injection with an action matching the error class."""
    if isinstance(error, PrivilegeError):
        action = "Re-run as root (or with CAP_NET_ADMIN), or set network_mode to 'application'"
    elif isinstance(error, PlatformUnsupported):
        action = "Install the missing tool, or set network_mode to 'application'"
    elif isinstance(error, CommandExecutionError):
        action = "Check the command output in the log file"
    else:
        action = "Check that the target is running and reachable"

    details = None
    if isinstance(error, CommandExecutionError) and error.argv:
        details = " ".join(error.argv)

    return format_error(
        what_failed=f"Failed to apply {kind}",
        reason=str(error),
        action=action,
        location=f"target {target_id}",
        details=details
    )


def format_leak_error(handle_id: str, reason: str) -> str:
    """Format a handle that could not be reverted."""
    return format_error(
        what_failed=f"Injection {handle_id} was not reverted",
        reason=reason,
        action="Remove the fault by hand (tc qdisc del / iptables -D / pfctl -F) before the next run",
        location=handle_id
    )
