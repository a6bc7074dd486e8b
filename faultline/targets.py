"""
Target resolution.

Scenario targets name processes (by pid or process name) and network
interfaces. They are resolved to live OS handles lazily, at the first
injection against them, and cached for the run. A cached process that has
since exited (killed, or restarted under a new pid) is resolved again.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import psutil

from faultline.errors import TargetResolutionError
from faultline.models import HOST_TARGET, Target, TargetKind


logger = logging.getLogger(__name__)


@dataclass
class ResolvedTarget:
    """A scenario target bound to a live process or interface."""
    target: Target
    pid: Optional[int] = None
    interface: Optional[str] = None
    process: Optional[psutil.Process] = None

    @property
    def id(self) -> str:
        return self.target.id

    def is_alive(self) -> bool:
        if self.target.kind is not TargetKind.PROCESS:
            return True
        try:
            return self.process is not None and self.process.is_running()
        except psutil.Error:
            return False


class TargetResolver:
    """Resolves and caches targets for one run."""

    def __init__(self):
        self._cache: Dict[str, ResolvedTarget] = {}

    def resolve(self, target: Target) -> ResolvedTarget:
        """
        Bind a target to a live OS object.

        Args:
            target: Target from the scenario (or the built-in host target)

        Returns:
            ResolvedTarget

        Raises:
            TargetResolutionError: The process or interface does not exist
        """
        cached = self._cache.get(target.id)
        if cached is not None and cached.is_alive():
            return cached

        if target.kind is TargetKind.HOST:
            resolved = ResolvedTarget(target=target, pid=None)
        elif target.kind is TargetKind.PROCESS:
            resolved = self._resolve_process(target)
        elif target.kind is TargetKind.NETWORK_INTERFACE:
            resolved = self._resolve_interface(target)
        else:
            raise TargetResolutionError(target.id, f"unsupported target kind {target.kind!r}")

        self._cache[target.id] = resolved
        logger.debug(f"Resolved target {target.id} -> pid={resolved.pid} interface={resolved.interface}")
        return resolved

    def resolve_host(self) -> ResolvedTarget:
        return self.resolve(HOST_TARGET)

    def resolved(self) -> List[ResolvedTarget]:
        """Targets resolved so far (host excluded)."""
        return [entry for entry in self._cache.values() if entry.target.kind is not TargetKind.HOST]

    def invalidate(self, target_id: str):
        self._cache.pop(target_id, None)

    def _resolve_process(self, target: Target) -> ResolvedTarget:
        descriptor = target.descriptor.strip()

        if descriptor.isdigit():
            pid = int(descriptor)
            try:
                process = psutil.Process(pid)
                process.is_running()
            except psutil.NoSuchProcess:
                raise TargetResolutionError(target.id, f"no process with pid {pid}") from None
            return ResolvedTarget(target=target, pid=pid, process=process)

        own_pid = os.getpid()
        matches = []
        for process in psutil.process_iter(['pid', 'name', 'cmdline']):
            info = process.info
            if info['pid'] == own_pid:
                continue
            cmdline = info.get('cmdline') or []
            if info.get('name') == descriptor or (cmdline and os.path.basename(cmdline[0]) == descriptor):
                matches.append(process)

        if not matches:
            raise TargetResolutionError(target.id, f"no running process named '{descriptor}'")

        matches.sort(key=lambda p: p.pid)
        if len(matches) > 1:
            logger.warning(
                f"Target {target.id}: {len(matches)} processes named '{descriptor}', using pid {matches[0].pid}"
            )
        return ResolvedTarget(target=target, pid=matches[0].pid, process=matches[0])

    def _resolve_interface(self, target: Target) -> ResolvedTarget:
        interfaces = psutil.net_if_addrs()
        if target.descriptor not in interfaces:
            available = ', '.join(sorted(interfaces)) or 'none'
            raise TargetResolutionError(
                target.id, f"no network interface '{target.descriptor}' (available: {available})"
            )
        return ResolvedTarget(target=target, interface=target.descriptor)
