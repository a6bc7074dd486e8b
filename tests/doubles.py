"""
Test doubles for the injection engine.

FakeExecutor stands in for the OS when testing kernel network injectors:
it records every argv and answers with scripted results, while the real
CommandExecutor logic (argv checks, error classification) still runs.

RecordingInjector applies nothing. It records when apply/revert start and
end, and can be told to be slow or to fail, so scheduler and registry
behaviour can be observed without touching the host.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from faultline.executor import CommandExecutor
from faultline.injectors.base import Injector, InjectorDescription
from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


class FakeExecutor(CommandExecutor):
    """
    CommandExecutor that never spawns processes.

    Usage:
        executor = FakeExecutor()
        executor.respond(['tc', 'qdisc', 'add'], returncode=2,
                         stderr='RTNETLINK answers: Operation not permitted')
    """

    def __init__(self):
        super().__init__(timeout=5)
        self.calls: List[Tuple[List[str], Optional[str]]] = []
        self._rules: List[Tuple[Tuple[str, ...], Tuple[int, str, str, Optional[BaseException]]]] = []

    def respond(self, prefix: Sequence[str], returncode: int = 0, stdout: str = '', stderr: str = '',
                raises: Optional[BaseException] = None):
        """Script the result for commands starting with prefix. Later rules win."""
        self._rules.insert(0, (tuple(prefix), (returncode, stdout, stderr, raises)))

    async def _spawn(self, command: List[str], input_text: Optional[str], timeout: float):
        self.calls.append((list(command), input_text))
        for prefix, (returncode, stdout, stderr, raises) in self._rules:
            if tuple(command[:len(prefix)]) == prefix:
                if raises is not None:
                    raise raises
                return returncode, stdout, stderr
        return 0, '', ''

    @property
    def argvs(self) -> List[List[str]]:
        return [argv for argv, _ in self.calls]


class RecordingInjector(Injector):
    """Injector that only records what it was asked to do."""

    def __init__(
        self,
        kind: InjectorKind,
        log: Optional[List[Tuple[str, str, str, float, datetime]]] = None,
        apply_delay: float = 0.0,
        revert_delay: float = 0.0,
        fail_apply: Optional[Exception] = None,
        fail_revert: Optional[Exception] = None
    ):
        super().__init__(kind)
        self.log = log if log is not None else []
        self.apply_delay = apply_delay
        self.revert_delay = revert_delay
        self.fail_apply = fail_apply
        self.fail_revert = fail_revert
        self.applied: List[InjectionHandle] = []
        self.reverted: List[InjectionHandle] = []
        self.windows: List[Tuple[float, float]] = []

    def _record(self, event: str, target_id: str):
        self.log.append((event, self.kind.value, target_id, time.monotonic(), datetime.now()))

    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        started = time.monotonic()
        self._record('apply_start', target.id)
        await asyncio.sleep(self.apply_delay)
        if self.fail_apply is not None:
            self._record('apply_failed', target.id)
            raise self.fail_apply
        handle = self._new_handle(target, {'params': dict(params)})
        self.applied.append(handle)
        self.windows.append((started, time.monotonic()))
        self._record('apply_end', target.id)
        return handle

    async def _revert(self, handle: InjectionHandle) -> None:
        await asyncio.sleep(self.revert_delay)
        if self.fail_revert is not None:
            raise self.fail_revert
        self.reverted.append(handle)
        self._record('revert', handle.target.id)

    @property
    def active(self) -> int:
        return len(self.applied) - len(self.reverted)

    def describe(self) -> InjectorDescription:
        return InjectorDescription(
            name='recording',
            kind=self.kind,
            backend='test',
            requires_privilege=False,
            platforms=('linux', 'darwin', 'win32'),
            summary='records calls only'
        )


def recording_injectors(**overrides) -> Dict[InjectorKind, RecordingInjector]:
    """
    One RecordingInjector per kind sharing a single log.

    Keyword arguments map a kind value ('cpu_starvation', ...) to a dict of
    RecordingInjector options for that kind.
    """
    log: List[Tuple[str, str, str, float, datetime]] = []
    return {
        kind: RecordingInjector(kind, log=log, **overrides.get(kind.value, {}))
        for kind in InjectorKind
    }


def run_async(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)
