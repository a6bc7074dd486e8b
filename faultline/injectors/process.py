"""
Process termination.

Sends a signal to the resolved process after capturing how it was
launched. SIGSTOP suspends the process and revert resumes it. For the
terminating signals, revert relaunches the process when `restart` is set
(after `restart_delay_s`) and otherwise has nothing to undo.
"""

import asyncio
import logging
import os
import signal
import subprocess
import sys
from typing import Any, List, Mapping, Optional

import psutil

from faultline.errors import CleanupError, CommandExecutionError, PlatformUnsupported, PrivilegeError, TargetResolutionError
from faultline.injectors.base import Injector, InjectorDescription, param
from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)

SIGNAL_NAMES = ('SIGTERM', 'SIGKILL', 'SIGSTOP', 'SIGHUP', 'SIGINT')
DEFAULT_SIGNAL = 'SIGTERM'
DEFAULT_RESTART_DELAY_S = 5.0


class ProcessKillInjector(Injector):
    """Signals a target process and optionally restarts it on revert."""

    def __init__(self, wait_timeout_s: float = 10):
        super().__init__(InjectorKind.PROCESS_KILL)
        self.wait_timeout_s = wait_timeout_s
        self._restarted: List[subprocess.Popen] = []

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        process = target.process
        if process is None:
            raise TargetResolutionError(target.id, "target is not a process")

        signal_name = param(params, 'signal', DEFAULT_SIGNAL)
        restart_command = params.get('restart_command')
        launch = self._capture_launch(target, process)

        try:
            self._send(process, signal_name)
        except psutil.NoSuchProcess:
            raise TargetResolutionError(target.id, f"process {process.pid} exited before it could be signalled") from None
        except psutil.AccessDenied:
            raise PrivilegeError(f"not allowed to send {signal_name} to pid {process.pid}") from None

        exit_code = None
        if signal_name != 'SIGSTOP':
            gone, alive = await asyncio.to_thread(psutil.wait_procs, [process], self.wait_timeout_s)
            if alive:
                raise CommandExecutionError(
                    f"pid {process.pid} still running {self.wait_timeout_s}s after {signal_name}"
                )
            exit_code = gone[0].returncode if gone else None

        logger.info(f"Sent {signal_name} to pid {process.pid} (target {target.id})")
        return self._new_handle(target, {
            'pid': process.pid,
            'signal': signal_name,
            'exit_code': exit_code,
            'launch_command': list(restart_command) if restart_command else launch['cmdline'],
            'cwd': launch['cwd'],
            'restart': bool(param(params, 'restart', False)),
            'restart_delay_s': float(param(params, 'restart_delay_s', DEFAULT_RESTART_DELAY_S)),
            'restarted_pid': None,
        })

    @staticmethod
    def _capture_launch(target: ResolvedTarget, process: psutil.Process) -> dict:
        launch = {'cmdline': [], 'cwd': None}
        try:
            launch['cmdline'] = process.cmdline()
            launch['cwd'] = process.cwd()
        except (psutil.AccessDenied, psutil.ZombieProcess) as e:
            logger.warning(f"Could not capture launch command of pid {process.pid}: {e}")
        except psutil.NoSuchProcess:
            raise TargetResolutionError(target.id, f"process {process.pid} exited before it could be signalled") from None
        return launch

    @staticmethod
    def _send(process: psutil.Process, signal_name: str):
        if signal_name == 'SIGTERM':
            process.terminate()
        elif signal_name == 'SIGKILL':
            process.kill()
        elif signal_name == 'SIGSTOP':
            process.suspend()
        else:
            signum = getattr(signal, signal_name, None)
            if signum is None:
                raise PlatformUnsupported(f"{signal_name} is not available on {sys.platform}")
            process.send_signal(signum)

    async def _revert(self, handle: InjectionHandle) -> None:
        metadata = handle.metadata
        if metadata['signal'] == 'SIGSTOP':
            try:
                psutil.Process(metadata['pid']).resume()
                logger.info(f"Resumed pid {metadata['pid']}")
            except psutil.NoSuchProcess:
                logger.warning(f"Stopped pid {metadata['pid']} exited before it could be resumed")
            except psutil.AccessDenied as e:
                raise CleanupError(f"not allowed to resume pid {metadata['pid']}: {e}", handle.handle_id) from e
            return

        if not metadata['restart']:
            logger.info(f"pid {metadata['pid']} stays down (restart not requested)")
            return

        command = metadata['launch_command']
        if not command:
            raise CleanupError(f"no launch command captured for pid {metadata['pid']}", handle.handle_id)

        if handle.immediate:
            logger.info(f"Restarting pid {metadata['pid']} without the {metadata['restart_delay_s']}s delay (aborting)")
        else:
            await asyncio.sleep(metadata['restart_delay_s'])
        try:
            restarted = self._launch(command, metadata['cwd'])
        except OSError as e:
            raise CleanupError(f"restart of {command[0]} failed: {e}", handle.handle_id) from e
        metadata['restarted_pid'] = restarted.pid
        logger.info(f"Restarted {os.path.basename(command[0])} as pid {restarted.pid}")

    def _launch(self, command: List[str], cwd: Optional[str]) -> subprocess.Popen:
        kwargs = {}
        if os.name == 'posix':
            kwargs['start_new_session'] = True
        restarted = subprocess.Popen(
            command,
            cwd=cwd if cwd and os.path.isdir(cwd) else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **kwargs
        )
        self._restarted.append(restarted)
        return restarted

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='process-signal',
            kind=self.kind,
            backend='process',
            requires_privilege=False,
            platforms=('linux', 'darwin', 'win32'),
            summary="process_kill by signal, with resume (SIGSTOP) or optional restart on revert"
        )
