"""
Host platform detection for faultline.
Checks which kernel traffic-shaping tools are available and picks the
network injector backend once, at startup.
"""

import logging
import os
import shutil
import sys
from enum import Enum
from typing import Dict, List, Optional

from colorama import Fore, Style


logger = logging.getLogger(__name__)


class HostPlatform(Enum):
    LINUX = 'linux'
    MACOS = 'macos'
    WINDOWS = 'windows'
    OTHER = 'other'


class NetworkBackend(Enum):
    LINUX_KERNEL = 'linux'
    MACOS_KERNEL = 'macos'
    APPLICATION = 'application'


def detect_host_platform(platform_name: Optional[str] = None) -> HostPlatform:
    """Map sys.platform (or the given name) to a HostPlatform."""
    name = platform_name or sys.platform
    if name.startswith('linux'):
        return HostPlatform.LINUX
    if name == 'darwin':
        return HostPlatform.MACOS
    if name in ('win32', 'cygwin'):
        return HostPlatform.WINDOWS
    return HostPlatform.OTHER


class SystemCheck:
    """Validates availability of the external tools network injectors rely on."""

    REQUIRED_TOOLS = {
        'tc': {
            'name': 'iproute2 tc',
            'platform': HostPlatform.LINUX,
            'purpose': 'netem latency and packet loss'
        },
        'iptables': {
            'name': 'iptables',
            'platform': HostPlatform.LINUX,
            'purpose': 'TCP reset injection'
        },
        'dnctl': {
            'name': 'dummynet control',
            'platform': HostPlatform.MACOS,
            'purpose': 'dummynet latency and packet loss'
        },
        'pfctl': {
            'name': 'pf control',
            'platform': HostPlatform.MACOS,
            'purpose': 'pf anchors for traffic steering and TCP resets'
        },
    }

    def __init__(self, config=None, host: Optional[HostPlatform] = None):
        """
        Initialize SystemCheck.

        Args:
            config: EngineConfig or dict with optional 'tool_paths'
            host: Platform override (defaults to the running host)
        """
        self.config = config
        self.host = host or detect_host_platform()
        self._working_paths: Dict[str, str] = {}

    def _tool_paths(self) -> Dict[str, List[str]]:
        if self.config is None:
            return {}
        return self.config.get('tool_paths', {}) or {}

    def check_tool(self, tool_key: str) -> bool:
        """
        Check if a specific tool is available.

        Args:
            tool_key: Key from REQUIRED_TOOLS dict

        Returns:
            True if tool is available, False otherwise
        """
        if tool_key not in self.REQUIRED_TOOLS:
            return False

        custom_paths = self._tool_paths().get(tool_key)
        if isinstance(custom_paths, str):
            custom_paths = [custom_paths]

        for path in custom_paths or []:
            if os.path.isfile(path):
                self._working_paths[tool_key] = path
                return True

        found = shutil.which(tool_key)
        if found:
            self._working_paths[tool_key] = found
            return True
        return False

    def get_tool_path(self, tool_key: str) -> Optional[str]:
        """Path found by the last successful check_tool call."""
        return self._working_paths.get(tool_key)

    def kernel_tools(self) -> List[str]:
        """Tools the current platform's kernel backend needs."""
        return [key for key, info in self.REQUIRED_TOOLS.items() if info['platform'] is self.host]

    def missing_kernel_tools(self) -> List[str]:
        return [tool for tool in self.kernel_tools() if not self.check_tool(tool)]

    def select_network_backend(self, mode: str = 'auto') -> NetworkBackend:
        """
        Pick the network injector backend.

        Args:
            mode: 'auto' (kernel when its tools are present), 'kernel', or 'application'

        Returns:
            NetworkBackend
        """
        if mode == 'application':
            return NetworkBackend.APPLICATION

        kernel = {
            HostPlatform.LINUX: NetworkBackend.LINUX_KERNEL,
            HostPlatform.MACOS: NetworkBackend.MACOS_KERNEL,
        }.get(self.host)

        if mode == 'kernel':
            if kernel is None:
                logger.warning(f"No kernel network backend on {self.host.value}; using application level")
                return NetworkBackend.APPLICATION
            return kernel

        if kernel is None:
            return NetworkBackend.APPLICATION

        missing = self.missing_kernel_tools()
        if missing:
            logger.info(f"Kernel network tools missing ({', '.join(missing)}); using application level")
            return NetworkBackend.APPLICATION
        return kernel

    def print_status(self):
        """Print tool availability with colored status."""
        print(f"\n{Fore.CYAN}Network tools ({self.host.value}):{Style.RESET_ALL}")
        tools = self.kernel_tools()
        if not tools:
            print(f"  {Fore.YELLOW}none{Style.RESET_ALL} - network faults run at application level")
            return
        for tool in tools:
            info = self.REQUIRED_TOOLS[tool]
            if self.check_tool(tool):
                print(f"  {Fore.GREEN}OK{Style.RESET_ALL}      {info['name']} ({info['purpose']})")
            else:
                print(f"  {Fore.RED}MISSING{Style.RESET_ALL} {info['name']} ({info['purpose']})")
