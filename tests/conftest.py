"""
Pytest configuration and fixtures for faultline tests.
"""

import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from faultline.config import EngineConfig
from faultline.events import EventEmitter
from tests.doubles import FakeExecutor, recording_injectors


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp, ignore_errors=True)


@pytest.fixture
def fake_executor():
    """Executor that records argv instead of running tools."""
    return FakeExecutor()


@pytest.fixture
def fast_config(temp_dir):
    """Engine config with short sampling interval and a private scratch dir."""
    return EngineConfig(overrides={
        'sample_interval_s': 0.05,
        'probe_timeout_s': 0.5,
        'scratch_dir': str(temp_dir),
        'process_wait_timeout_s': 5,
    })


@pytest.fixture
def events():
    """In-memory event emitter without console echo."""
    return EventEmitter(enable_console=False)


@pytest.fixture
def injectors():
    """RecordingInjector for every fault kind, sharing one log."""
    return recording_injectors()
