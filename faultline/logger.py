"""
Logging setup and management for faultline.
"""

import os
import logging
import datetime
import glob
from pathlib import Path


logger = logging.getLogger(__name__)


def setup_logging(log_folder: str = 'logs', max_log_files: int = 5, level: int = logging.INFO) -> Path:
    """
    Set up logging configuration.

    Args:
        log_folder: Directory to store log files
        max_log_files: Maximum number of log files to keep
        level: Root logger level

    Returns:
        Path to the current log file
    """
    logs_folder = Path(log_folder)
    os.makedirs(logs_folder, exist_ok=True)

    # Generate unique log file name
    current_time = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = logs_folder / f'faultline-{current_time}.log'

    # Make room for the new file
    cleanup_old_logs(logs_folder, max_log_files - 1)

    log_formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    log_handler = logging.FileHandler(log_file)
    log_handler.setFormatter(log_formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(log_handler)

    return log_file


def cleanup_old_logs(logs_folder: Path, max_files: int):
    """
    Remove old log files, keeping only the most recent ones.

    Args:
        logs_folder: Directory containing log files
        max_files: Maximum number of log files to keep
    """
    existing_logs = sorted(glob.glob(str(logs_folder / 'faultline-*.log')))
    while len(existing_logs) > max(max_files, 0):
        try:
            os.remove(existing_logs.pop(0))
        except OSError as e:
            logger.warning(f"Could not remove old log file: {e}")


def log_command_failure(result, operation: str):
    """
    Log detailed information for a failed external command.

    Args:
        result: CommandResult of the failed command
        operation: What the command was meant to do
    """
    logger.error(f"{operation} failed with return code {result.returncode}")
    logger.error(f"Command: {' '.join(result.argv)}")
    if result.stdout:
        logger.error(f"Output:\n{result.stdout.rstrip()}")
    if result.stderr:
        logger.error(f"Error output:\n{result.stderr.rstrip()}")
