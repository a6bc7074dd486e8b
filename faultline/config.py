"""
Configuration management for faultline.
Loads and validates engine settings.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)

NETWORK_MODES = ('auto', 'kernel', 'application')


class EngineConfig:
    """Manages engine configuration."""

    # Default configuration values
    DEFAULT_CONFIG = {
        'max_phase_duration_s': 3600,
        'sample_interval_s': 1.0,
        'fail_fast': False,
        'command_timeout_s': 30,
        'network_mode': 'auto',
        'scratch_dir': None,
        'memory_chunk_mb': 64,
        'max_memory_allocation_mb': 4096,
        'cpu_workers': None,
        'process_wait_timeout_s': 10,
        'probe_timeout_s': 2.0,
        'max_log_files': 5,
        'log_folder': 'logs',
        'tool_paths': {},
    }

    def __init__(self, config_path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to a JSON config file. If None, uses defaults.
            overrides: Values applied on top of defaults and file (validated the same way)
        """
        self.config = self.DEFAULT_CONFIG.copy()
        self.config['tool_paths'] = {}

        if config_path and Path(config_path).exists():
            self.load_config(Path(config_path))

        if overrides:
            is_valid, errors = self._validate_config(overrides)
            if not is_valid:
                raise ValueError("\n\n".join(errors))
            self.config.update(overrides)

    def load_config(self, config_path: Path):
        """Load configuration from JSON file."""
        try:
            with open(config_path, 'r') as f:
                user_config = json.load(f)

            is_valid, errors = self._validate_config(user_config)
            if not is_valid:
                print(f"\nConfiguration validation failed:")
                print(f"  Config file: {config_path.absolute()}")
                print()
                for error in errors:
                    print(error)
                    print()
                print("Using default configuration instead.")
                return

            self.config.update(user_config)
        except json.JSONDecodeError as e:
            print(f"\nERROR: Invalid JSON in config file")
            print(f"  Config file: {config_path.absolute()}")
            print(f"  Problem: {e}")
            print(f"  Line: {e.lineno}, Column: {e.colno}")
            print()
            print("Fix the JSON syntax and try again.")
            print("Using default configuration.")
        except OSError as e:
            print(f"\nERROR: Could not load config file")
            print(f"  Config file: {config_path.absolute()}")
            print(f"  Problem: {e}")
            print()
            print("Using default configuration.")

    def save_config(self, config_path: Path):
        """Save current configuration to JSON file."""
        try:
            with open(config_path, 'w') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.error(f"Error saving config to {config_path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self.config.get(key, default)

    def set(self, key: str, value: Any):
        """Set configuration value."""
        self.config[key] = value

    def _validate_config(self, config: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """
        Validate configuration dictionary.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        # Validate numeric ranges
        numeric_fields = {
            'max_phase_duration_s': (1, 86400, "Maximum phase duration", 3600),
            'sample_interval_s': (0.05, 60, "Sample interval", 1.0),
            'command_timeout_s': (1, 600, "Command timeout", 30),
            'memory_chunk_mb': (1, 1024, "Memory chunk size", 64),
            'max_memory_allocation_mb': (1, 1048576, "Memory allocation cap", 4096),
            'cpu_workers': (1, 1024, "CPU worker count", 4),
            'process_wait_timeout_s': (1, 300, "Process wait timeout", 10),
            'probe_timeout_s': (0.1, 60, "Latency probe timeout", 2.0),
            'max_log_files': (1, 100, "Maximum log files", 5),
        }
        integer_fields = {'memory_chunk_mb', 'max_memory_allocation_mb', 'cpu_workers', 'max_log_files'}

        for field, (min_val, max_val, display_name, example) in numeric_fields.items():
            if field not in config:
                continue
            value = config[field]
            if field == 'cpu_workers' and value is None:
                continue
            expected = int if field in integer_fields else (int, float)
            if isinstance(value, bool) or not isinstance(value, expected):
                errors.append(
                    f"ERROR: Invalid config value\n"
                    f"  Field: {field}\n"
                    f"  Value: {repr(value)} ({type(value).__name__})\n"
                    f"  Expected: {display_name} as a {'whole ' if field in integer_fields else ''}number\n"
                    f"  Example: {example}\n"
                    f"  Valid range: {min_val} to {max_val}"
                )
            elif value < min_val or value > max_val:
                errors.append(
                    f"ERROR: Invalid config value\n"
                    f"  Field: {field}\n"
                    f"  Value: {value}\n"
                    f"  Expected: number between {min_val} and {max_val}\n"
                    f"  Example: {example}"
                )

        if 'fail_fast' in config and not isinstance(config['fail_fast'], bool):
            errors.append(
                f"ERROR: Invalid config value\n"
                f"  Field: fail_fast\n"
                f"  Value: {repr(config['fail_fast'])}\n"
                f"  Expected: true or false"
            )

        if 'network_mode' in config and config['network_mode'] not in NETWORK_MODES:
            errors.append(
                f"ERROR: Invalid config value\n"
                f"  Field: network_mode\n"
                f"  Value: {repr(config['network_mode'])}\n"
                f"  Expected: one of {', '.join(NETWORK_MODES)}"
            )

        # Validate tool_paths (if present)
        if 'tool_paths' in config:
            tool_paths = config['tool_paths']
            if not isinstance(tool_paths, dict):
                errors.append("tool_paths must be a dictionary")
            else:
                for tool, paths in tool_paths.items():
                    if not isinstance(paths, list):
                        errors.append(f"tool_paths['{tool}'] must be a list of paths")
                    elif not all(isinstance(p, str) for p in paths):
                        errors.append(f"tool_paths['{tool}'] must contain only strings")

        # Validate string fields
        for field in ('log_folder', 'scratch_dir'):
            if field in config and config[field] is not None and not isinstance(config[field], str):
                errors.append(f"{field} must be a string, got {type(config[field]).__name__}")

        return (len(errors) == 0, errors)

    def validate_tool_paths(self) -> Tuple[bool, List[str]]:
        """
        Validate that configured tool paths exist.

        Returns:
            Tuple of (all_valid, warning_messages)
        """
        warnings = []
        for tool, paths in self.tool_paths.items():
            if not any(os.path.isfile(path) for path in paths):
                warnings.append(f"No configured path for '{tool}' exists: {', '.join(paths)}")
        return (len(warnings) == 0, warnings)

    @property
    def max_phase_duration_s(self) -> float:
        return self.config['max_phase_duration_s']

    @property
    def sample_interval_s(self) -> float:
        return self.config['sample_interval_s']

    @property
    def fail_fast(self) -> bool:
        return self.config['fail_fast']

    @property
    def command_timeout_s(self) -> float:
        return self.config['command_timeout_s']

    @property
    def network_mode(self) -> str:
        return self.config['network_mode']

    @property
    def scratch_dir(self) -> Path:
        return Path(self.config['scratch_dir'] or tempfile.gettempdir())

    @property
    def memory_chunk_mb(self) -> int:
        return self.config['memory_chunk_mb']

    @property
    def max_memory_allocation_mb(self) -> int:
        return self.config['max_memory_allocation_mb']

    @property
    def cpu_workers(self) -> Optional[int]:
        return self.config['cpu_workers']

    @property
    def process_wait_timeout_s(self) -> float:
        return self.config['process_wait_timeout_s']

    @property
    def probe_timeout_s(self) -> float:
        return self.config['probe_timeout_s']

    @property
    def log_folder(self) -> str:
        return self.config['log_folder']

    @property
    def max_log_files(self) -> int:
        return self.config['max_log_files']

    @property
    def tool_paths(self) -> Dict[str, List[str]]:
        return self.config.get('tool_paths') or {}
