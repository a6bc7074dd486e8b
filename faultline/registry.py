"""
Injection handle registry.

The registry is the single owner of every live InjectionHandle in a run.
Opens and closes on the same (target, resource class) are serialized by
a per-key lock; unrelated keys proceed concurrently. Handles are closed
in reverse creation order. A handle whose revert fails is marked LEAKED
and reported loudly, but never stops the remaining cleanup.
"""

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from faultline.error_messages import format_leak_error
from faultline.errors import CleanupError
from faultline.events import EventEmitter, EventSeverity, EventType
from faultline.injectors.base import Injector
from faultline.models import (
    HandleState, InjectionHandle, InjectionOutcome, InjectionSpec, OutcomeStatus, ResourceClass
)
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)


class HandleRegistry:
    """Opens, tracks and closes injection handles for one run."""

    def __init__(self, injectors: Mapping, events: Optional[EventEmitter] = None):
        """
        Initialize registry.

        Args:
            injectors: Mapping of InjectorKind -> Injector (an InjectorSet works)
            events: Event emitter for handle lifecycle events
        """
        self.injectors = injectors
        self.events = events or EventEmitter(enable_console=False)
        self._handles: List[InjectionHandle] = []
        self._locks: Dict[Tuple[str, ResourceClass], asyncio.Lock] = {}
        self._sequence = itertools.count(1)

    def _lock_for(self, key: Tuple[str, ResourceClass]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _injector_for(self, handle: InjectionHandle) -> Injector:
        return self.injectors[handle.kind]

    async def open(self, spec: InjectionSpec, target: ResolvedTarget, phase_id: int) -> InjectionHandle:
        """
        Apply one injection and record its handle as ACTIVE.

        Args:
            spec: Injection to apply
            target: Resolved target of the injection
            phase_id: Index of the phase that owns the handle

        Returns:
            The ACTIVE handle

        Raises:
            InjectionError: Apply failed; nothing is recorded
        """
        injector = self.injectors[spec.kind]
        key = (target.id, spec.kind.resource_class)

        async with self._lock_for(key):
            handle = await injector.apply(target, spec.params)
            handle.sequence = next(self._sequence)
            handle.phase_id = phase_id
            handle.state = HandleState.ACTIVE
            self._handles.append(handle)

        self.events.emit(
            EventType.INJECTION_APPLIED,
            f"Applied {spec.kind.value}",
            context={'handle': handle.handle_id, 'target': target.id, 'phase': phase_id}
        )
        return handle

    async def close(self, handle: InjectionHandle) -> InjectionOutcome:
        """
        Revert one handle. Closing a handle that is not ACTIVE changes nothing.

        Returns:
            Outcome describing the handle's final state
        """
        async with self._lock_for(handle.key):
            if handle.state is not HandleState.ACTIVE:
                return self._outcome(handle)

            handle.state = HandleState.CLEANING
            try:
                await self._injector_for(handle).revert(handle)
            except Exception as e:
                handle.state = HandleState.LEAKED
                handle.error = str(e) or type(e).__name__
                self._report_leak(handle, e)
            else:
                handle.state = HandleState.CLEANED
                if handle.reverted_at is None:
                    handle.reverted_at = datetime.now()
                self.events.emit(
                    EventType.INJECTION_REVERTED,
                    f"Reverted {handle.kind.value}",
                    context={'handle': handle.handle_id, 'target': handle.target.id, 'phase': handle.phase_id}
                )

        return self._outcome(handle)

    async def close_all(self, phase_id: int) -> List[InjectionOutcome]:
        """Revert every ACTIVE handle of one phase, newest first."""
        handles = [h for h in reversed(self._handles) if h.phase_id == phase_id and h.state is HandleState.ACTIVE]
        return [await self.close(handle) for handle in handles]

    async def close_all_immediate(self) -> List[InjectionOutcome]:
        """Revert every ACTIVE handle of the run, newest first, continuing past failures."""
        handles = [h for h in reversed(self._handles) if h.state is HandleState.ACTIVE]
        if handles:
            logger.warning(f"Reverting {len(handles)} active injection(s) immediately")
        for handle in handles:
            handle.immediate = True
        return [await self.close(handle) for handle in handles]

    def _report_leak(self, handle: InjectionHandle, error: Exception):
        if not isinstance(error, CleanupError):
            error = CleanupError(str(error) or type(error).__name__, handle.handle_id)
        logger.critical(format_leak_error(handle.handle_id, str(error)))
        self.events.emit(
            EventType.HANDLE_LEAKED,
            f"Failed to revert {handle.kind.value}: {error}",
            severity=EventSeverity.CRITICAL,
            context={'handle': handle.handle_id, 'target': handle.target.id, 'phase': handle.phase_id}
        )

    @staticmethod
    def _outcome(handle: InjectionHandle) -> InjectionOutcome:
        if handle.state is HandleState.LEAKED:
            status = OutcomeStatus.FAILED_TO_CLEAN
            error_type = CleanupError.__name__
        else:
            status = OutcomeStatus.SUCCESS
            error_type = None
        return InjectionOutcome(
            kind=handle.kind,
            target_id=handle.target.id,
            status=status,
            handle_id=handle.handle_id,
            error=handle.error,
            error_type=error_type,
            applied_at=handle.created_at,
            reverted_at=handle.reverted_at
        )

    def handles(self) -> List[InjectionHandle]:
        """All handles in creation order."""
        return list(self._handles)

    def handles_for_phase(self, phase_id: int) -> List[InjectionHandle]:
        return [h for h in self._handles if h.phase_id == phase_id]

    def active_handles(self) -> List[InjectionHandle]:
        return [h for h in self._handles if h.state is HandleState.ACTIVE]

    def leaked_handles(self) -> List[InjectionHandle]:
        return [h for h in self._handles if h.state is HandleState.LEAKED]
