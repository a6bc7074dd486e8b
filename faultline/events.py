"""
Structured event log for a faultline run.

Every lifecycle step (scenario, phase, injection, handle, target,
sampling) emits a StructuredEvent. Events are kept in memory for the
run, echoed to standard logging, and optionally appended as JSON lines
to a file. Nothing is persisted unless a file is given.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of events that can occur."""
    # Scenario lifecycle
    SCENARIO_STARTED = auto()
    SCENARIO_COMPLETED = auto()
    SCENARIO_CANCELLED = auto()
    SCENARIO_FAILED = auto()
    VALIDATION_FAILED = auto()

    # Phase lifecycle
    PHASE_STARTED = auto()
    PHASE_TIMER_STARTED = auto()
    PHASE_COMPLETED = auto()
    PHASE_SKIPPED = auto()

    # Injections and handles
    TARGET_RESOLVED = auto()
    TARGET_RESOLUTION_FAILED = auto()
    INJECTION_APPLIED = auto()
    INJECTION_FAILED = auto()
    INJECTION_REVERTED = auto()
    HANDLE_LEAKED = auto()

    # Sampling
    SAMPLING_GAP = auto()


class EventSeverity(Enum):
    """Severity levels for events."""
    DEBUG = auto()
    INFO = auto()
    WARNING = auto()
    ERROR = auto()
    CRITICAL = auto()


_LEVELS = {
    EventSeverity.DEBUG: logging.DEBUG,
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
    EventSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class StructuredEvent:
    """
    A structured event with consistent format.

    All events have these core fields plus event-specific context.
    """
    event_id: str
    event_type: EventType
    timestamp: datetime
    severity: EventSeverity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'event_id': self.event_id,
            'event_type': self.event_type.name,
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity.name,
            'message': self.message,
            'context': self.context,
            'session_id': self.session_id,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> 'StructuredEvent':
        """Create from dictionary."""
        data = data.copy()
        data['event_type'] = EventType[data['event_type']]
        data['severity'] = EventSeverity[data['severity']]
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)


class EventEmitter:
    """
    Emits structured events to an in-memory buffer, standard logging,
    and optionally a JSON lines file.
    """

    def __init__(
        self,
        log_file: Optional[Path] = None,
        session_id: Optional[str] = None,
        enable_console: bool = True
    ):
        """
        Initialize event emitter.

        Args:
            log_file: Path to event log file (JSON lines). None keeps events in memory only.
            session_id: Identifier grouping the events of one run
            enable_console: Echo events through standard logging
        """
        self.log_file = Path(log_file) if log_file else None
        self.session_id = session_id or str(uuid.uuid4())
        self.enable_console = enable_console
        self.event_buffer: List[StructuredEvent] = []

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(
        self,
        event_type: EventType,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        context: Optional[Dict] = None
    ) -> StructuredEvent:
        """
        Emit a structured event.

        Args:
            event_type: Type of event
            message: Human-readable message
            severity: Event severity
            context: Event-specific data (target, handle, phase, ...)

        Returns:
            The emitted event
        """
        event = StructuredEvent(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=datetime.now(),
            severity=severity,
            message=message,
            context=context or {},
            session_id=self.session_id
        )

        self.event_buffer.append(event)

        if self.enable_console:
            self._emit_to_console(event)

        if self.log_file:
            self._emit_to_file(event)

        return event

    def _emit_to_console(self, event: StructuredEvent):
        """Emit event via standard logging."""
        context_str = ""
        if event.context:
            key_context = {k: v for k, v in event.context.items() if k in ('phase', 'target', 'handle')}
            if key_context:
                context_str = " | " + ", ".join(f"{k}={v}" for k, v in key_context.items())

        logger.log(
            _LEVELS.get(event.severity, logging.INFO),
            f"[{event.event_type.name}] {event.message}{context_str}"
        )

    def _emit_to_file(self, event: StructuredEvent):
        """Append event to the JSON lines file."""
        try:
            with open(self.log_file, 'a') as f:
                f.write(event.to_json() + '\n')
        except OSError as e:
            logger.error(f"Failed to write event to file: {e}")

    def get_session_events(self) -> List[StructuredEvent]:
        """Get all events for current session."""
        return self.event_buffer.copy()

    def query_events(
        self,
        event_type: Optional[EventType] = None,
        severity: Optional[EventSeverity] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None
    ) -> List[StructuredEvent]:
        """
        Query events with filters.

        Args:
            event_type: Filter by event type
            severity: Filter by severity
            since: Events after this timestamp
            until: Events before this timestamp

        Returns:
            Filtered list of events
        """
        filtered = self.event_buffer

        if event_type:
            filtered = [e for e in filtered if e.event_type == event_type]

        if severity:
            filtered = [e for e in filtered if e.severity == severity]

        if since:
            filtered = [e for e in filtered if e.timestamp >= since]

        if until:
            filtered = [e for e in filtered if e.timestamp <= until]

        return list(filtered)
