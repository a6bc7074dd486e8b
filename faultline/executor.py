"""
Safe external command execution for faultline.

Commands are argument lists handed straight to the OS, never a shell
string, and always run under a timeout. Failures are classified into the
error taxonomy using tool-specific stderr patterns and exit codes.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from faultline.errors import CommandExecutionError, InjectionError, PlatformUnsupported, PrivilegeError
from faultline.logger import log_command_failure


logger = logging.getLogger(__name__)


# stderr fragments (lowercase) meaning "you need root"
PRIVILEGE_PATTERNS: Dict[str, Tuple[str, ...]] = {
    'tc': ('operation not permitted', 'permission denied'),
    'iptables': ('permission denied', 'you must be root', 'operation not permitted'),
    'pfctl': ('permission denied', 'operation not permitted'),
    'dnctl': ('operation not permitted', 'permission denied'),
}
GENERIC_PRIVILEGE_PATTERNS = ('permission denied', 'operation not permitted', 'must be root',
                              'access is denied', 'requires elevation')

# stderr fragments meaning the kernel or tool lacks the feature
UNSUPPORTED_PATTERNS: Dict[str, Tuple[str, ...]] = {
    'tc': ('specified qdisc kind is unknown', 'unknown qdisc'),
    'iptables': ("can't initialize iptables table", 'table does not exist'),
    'pfctl': ('/dev/pf: no such file',),
    'dnctl': ('dummynet is not loaded', 'protocol not available'),
}

EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one external command."""
    argv: Tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def tool(self) -> str:
        return os.path.basename(self.argv[0]) if self.argv else ''


class CommandExecutor:
    """Runs external tools with argument-list semantics and a guaranteed timeout."""

    def __init__(self, timeout: float = 30.0, tool_paths: Optional[Dict[str, List[str]]] = None):
        """
        Initialize executor.

        Args:
            timeout: Default timeout in seconds for each command
            tool_paths: Optional tool name -> candidate binary paths (first existing file wins)
        """
        self.timeout = timeout
        self.tool_paths = tool_paths or {}

    def resolve_binary(self, tool: str) -> str:
        """Return the configured path for a tool, or the bare name for PATH lookup."""
        for candidate in self.tool_paths.get(tool, []):
            if os.path.isfile(candidate):
                return candidate
        return tool

    async def run(
        self,
        argv: Sequence[str],
        input_text: Optional[str] = None,
        operation: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True
    ) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            argv: Program and arguments, each a separate string
            input_text: Text written to the command's stdin (e.g. pfctl -f -)
            operation: Description for logging
            timeout: Timeout in seconds (defaults to the executor timeout)
            check: Raise a classified error on non-zero exit

        Returns:
            CommandResult

        Raises:
            PlatformUnsupported: The tool is missing or the kernel lacks the feature
            PrivilegeError: The tool refused for lack of privilege
            CommandExecutionError: Any other failure, including timeouts
        """
        argv = self._check_argv(argv)
        timeout = timeout if timeout is not None else self.timeout
        operation = operation or argv[0]
        command = [self.resolve_binary(argv[0]), *argv[1:]]

        logger.debug(f"[EXEC] Starting {operation} with {timeout}s timeout: {' '.join(argv)}")
        started = time.monotonic()
        try:
            returncode, stdout, stderr = await self._spawn(command, input_text, timeout)
        except FileNotFoundError as e:
            raise PlatformUnsupported(f"{argv[0]} is not installed or not on PATH") from e
        except PermissionError as e:
            raise PrivilegeError(f"not allowed to execute {command[0]}: {e}") from e

        result = CommandResult(tuple(argv), returncode, stdout, stderr, time.monotonic() - started)
        if result.success or not check:
            return result

        log_command_failure(result, operation)
        raise self.classify(result)

    async def _spawn(self, command: List[str], input_text: Optional[str], timeout: float) -> Tuple[int, str, str]:
        """Start the process, feed stdin, and collect output within the timeout."""
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        data = input_text.encode('utf-8') if input_text is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"[EXEC] {command[0]} TIMEOUT after {timeout}s - killing process")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise CommandExecutionError(
                f"{os.path.basename(command[0])} timed out after {timeout}s", argv=command
            ) from None

        return (
            process.returncode,
            stdout.decode('utf-8', errors='replace'),
            stderr.decode('utf-8', errors='replace'),
        )

    @staticmethod
    def _check_argv(argv: Sequence[str]) -> List[str]:
        if isinstance(argv, (str, bytes)) or not argv:
            raise TypeError("argv must be a non-empty sequence of strings")
        checked = list(argv)
        for arg in checked:
            if not isinstance(arg, str):
                raise TypeError(f"argument {arg!r} is {type(arg).__name__}, expected str")
            if '\x00' in arg:
                raise ValueError("arguments may not contain NUL bytes")
        return checked

    @staticmethod
    def classify(result: CommandResult) -> InjectionError:
        """
        Map a failed command to an error class.

        Args:
            result: CommandResult with a non-zero exit code

        Returns:
            PrivilegeError, PlatformUnsupported or CommandExecutionError
        """
        stderr = result.stderr.lower()
        summary = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else f"exit code {result.returncode}"
        message = f"{result.tool} failed: {summary}"

        if result.returncode == EXIT_NOT_EXECUTABLE:
            return PrivilegeError(message)
        if result.returncode == EXIT_NOT_FOUND:
            return PlatformUnsupported(message)

        privilege = PRIVILEGE_PATTERNS.get(result.tool, GENERIC_PRIVILEGE_PATTERNS)
        if any(pattern in stderr for pattern in privilege):
            return PrivilegeError(message)

        if any(pattern in stderr for pattern in UNSUPPORTED_PATTERNS.get(result.tool, ())):
            return PlatformUnsupported(message)

        return CommandExecutionError(message, argv=result.argv, returncode=result.returncode,
                                     stderr=result.stderr)
