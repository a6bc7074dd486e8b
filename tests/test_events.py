"""
Tests for structured events, cancellation, logging setup and error formatting.
"""

import asyncio
import json
import logging
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from faultline.cancellation import CancellationToken, WaitOutcome, wait_or_cancel
from faultline.error_messages import format_error, format_injection_error, format_leak_error
from faultline.errors import CommandExecutionError, PrivilegeError
from faultline.events import EventEmitter, EventSeverity, EventType, StructuredEvent
from faultline.logger import cleanup_old_logs, setup_logging
from tests.doubles import run_async


class TestEventEmitter:
    """In-memory buffer, file output and queries."""

    def test_emit_and_query(self):
        """Test events are buffered and filterable."""
        emitter = EventEmitter(enable_console=False, session_id='run-1')
        emitter.emit(EventType.PHASE_STARTED, "Phase 'a' started", context={'phase': 'a'})
        emitter.emit(EventType.HANDLE_LEAKED, "leak", severity=EventSeverity.CRITICAL)

        assert len(emitter.get_session_events()) == 2
        assert [e.message for e in emitter.query_events(severity=EventSeverity.CRITICAL)] == ['leak']
        assert emitter.query_events(EventType.PHASE_STARTED)[0].session_id == 'run-1'
        assert emitter.query_events(since=datetime.now() + timedelta(seconds=5)) == []

    def test_json_lines_file(self, temp_dir):
        """Test events are appended to the file as JSON lines."""
        path = temp_dir / 'events' / 'run.jsonl'
        emitter = EventEmitter(log_file=path, enable_console=False)
        emitter.emit(EventType.INJECTION_APPLIED, "Applied cpu_starvation", context={'handle': 'cpu_starvation:host:1'})
        emitter.emit(EventType.INJECTION_REVERTED, "Reverted cpu_starvation")

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first['event_type'] == 'INJECTION_APPLIED'
        assert first['context']['handle'] == 'cpu_starvation:host:1'

    def test_round_trip_from_dict(self):
        """Test a serialized event can be read back."""
        event = EventEmitter(enable_console=False).emit(EventType.SAMPLING_GAP, "gap", EventSeverity.DEBUG)
        restored = StructuredEvent.from_dict(json.loads(event.to_json()))
        assert restored.event_type is EventType.SAMPLING_GAP
        assert restored.timestamp == event.timestamp

    def test_console_echo_uses_logging(self, caplog):
        """Test console echo goes through the module logger at the event's level."""
        emitter = EventEmitter()
        with caplog.at_level(logging.WARNING, logger='faultline.events'):
            emitter.emit(EventType.TARGET_RESOLUTION_FAILED, "no such process", EventSeverity.WARNING,
                         context={'target': 'api'})
        assert "[TARGET_RESOLUTION_FAILED] no such process | target=api" in caplog.text


class TestCancellationToken:
    """Waits observe cancellation without raising."""

    def test_wait_elapses(self):
        """Test an untouched token lets the wait run out."""
        assert run_async(CancellationToken().wait_for(0.05)) is WaitOutcome.ELAPSED

    def test_already_cancelled(self):
        """Test a cancelled token returns immediately."""
        token = CancellationToken()
        token.cancel("stop")
        started = time.monotonic()
        assert run_async(wait_or_cancel(token, 10)) is WaitOutcome.CANCELLED
        assert time.monotonic() - started < 1
        assert token.reason == "stop"

    def test_cancel_from_other_thread(self):
        """Test a cancel from another thread wakes the waiting loop."""
        token = CancellationToken()
        threading.Timer(0.1, token.cancel).start()

        started = time.monotonic()
        outcome = run_async(token.wait_for(10))

        assert outcome is WaitOutcome.CANCELLED
        assert time.monotonic() - started < 2

    def test_first_reason_kept(self):
        """Test later cancels are ignored."""
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    def test_many_waiters(self):
        """Test one cancel releases every waiter."""
        token = CancellationToken()

        async def go():
            waiters = [asyncio.ensure_future(token.wait_for(10)) for _ in range(5)]
            await asyncio.sleep(0.05)
            token.cancel()
            return await asyncio.gather(*waiters)

        assert run_async(go()) == [WaitOutcome.CANCELLED] * 5


class TestLogging:
    """Log file setup and rotation."""

    def test_old_logs_removed(self, temp_dir):
        """Test only the newest log files are kept."""
        for stamp in ('20240101-000000', '20240102-000000', '20240103-000000'):
            (temp_dir / f'faultline-{stamp}.log').write_text('')
        (temp_dir / 'other.log').write_text('')

        cleanup_old_logs(temp_dir, 1)

        remaining = sorted(p.name for p in temp_dir.iterdir())
        assert remaining == ['faultline-20240103-000000.log', 'other.log']

    def test_setup_logging_creates_file(self, temp_dir):
        """Test setup_logging attaches a file handler writing to the log folder."""
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            log_file = setup_logging(str(temp_dir / 'logs'), max_log_files=3)
            logging.getLogger('faultline.test').info("hello from the test")
            for handler in root.handlers:
                handler.flush()
            assert log_file.parent == temp_dir / 'logs'
            assert "hello from the test" in log_file.read_text()
        finally:
            for handler in list(root.handlers):
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
            root.setLevel(level)


class TestErrorMessages:
    """Actionable error text."""

    def test_format_error_layout(self):
        """Test the four-part layout."""
        text = format_error("Failed to apply", "no root", "use sudo", location="eth0", details="tc qdisc add")
        assert text.splitlines() == [
            "ERROR: Failed to apply",
            "  Reason: no root",
            "  Action: use sudo",
            "  Location: eth0",
            "  Details: tc qdisc add",
        ]

    def test_injection_error_action_by_class(self):
        """Test the suggested action depends on the error class."""
        privilege = format_injection_error('network_latency', 'lan', PrivilegeError("tc failed"))
        command = format_injection_error('tcp_reset', 'lan', CommandExecutionError(
            "iptables failed", argv=['iptables', '-I', 'OUTPUT']
        ))
        assert "network_mode to 'application'" in privilege
        assert "Details: iptables -I OUTPUT" in command

    def test_leak_error_names_handle(self):
        """Test leak messages name the handle and how to remove it by hand."""
        text = format_leak_error('packet_loss:lan:3', 'tc failed')
        assert 'packet_loss:lan:3' in text
        assert 'tc qdisc del' in text
