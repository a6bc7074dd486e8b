"""
Injector contract.

An injector applies one kind of fault to a resolved target and returns an
InjectionHandle carrying whatever it needs to undo the fault. revert()
fully undoes apply() and is safe to call more than once.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Tuple

from faultline.models import InjectionHandle, InjectorKind
from faultline.targets import ResolvedTarget


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InjectorDescription:
    """Static facts about an injector variant."""
    name: str
    kind: InjectorKind
    backend: str
    requires_privilege: bool
    platforms: Tuple[str, ...]
    summary: str

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'kind': self.kind.value,
            'backend': self.backend,
            'requires_privilege': self.requires_privilege,
            'platforms': list(self.platforms),
            'summary': self.summary,
        }


class Injector(ABC):
    """Base class for all fault injectors."""

    kind: InjectorKind

    def __init__(self, kind: InjectorKind):
        self.kind = kind

    @abstractmethod
    async def apply(self, target: ResolvedTarget, params: Mapping[str, Any]) -> InjectionHandle:
        """Apply the fault and return a handle describing it."""

    async def revert(self, handle: InjectionHandle) -> None:
        """
        Undo a fault applied by this injector.

        A second call for the same handle returns immediately.

        Raises:
            CleanupError: The fault could not be removed
        """
        if handle.reverted_at is not None:
            logger.debug(f"{handle.handle_id} already reverted")
            return
        await self._revert(handle)
        handle.reverted_at = datetime.now()

    @abstractmethod
    async def _revert(self, handle: InjectionHandle) -> None:
        """Injector-specific undo."""

    @abstractmethod
    def describe(self) -> InjectorDescription:
        """Describe this injector variant."""

    def _new_handle(self, target: ResolvedTarget, metadata: Dict[str, Any]) -> InjectionHandle:
        return InjectionHandle(kind=self.kind, target=target.target, metadata=metadata)


def param(params: Mapping[str, Any], name: str, default: Any) -> Any:
    """Read a parameter, falling back to the default when absent or None."""
    value = params.get(name)
    return default if value is None else value
