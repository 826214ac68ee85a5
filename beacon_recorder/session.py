"""Recording session lifecycle: start, record, save, discard."""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .models import BeaconRead, Session, now_ms
from .storage import SessionStore

log = logging.getLogger(__name__)


class SessionStateError(RuntimeError):
    """An operation was called in a state that does not allow it."""


class RecorderState(Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"


def default_session_name(timestamp_ms: int) -> str:
    when = datetime.fromtimestamp(timestamp_ms / 1000)
    return f"Session {when.strftime('%Y-%m-%d %H:%M:%S')}"


class SessionRecorder:
    """Owns the single active session and persists every change to it.

    All transitions are serialized through one lock, so reads recorded
    from several threads keep their arrival order.  State only advances
    once the matching store call has returned; a failed write leaves the
    recorder exactly as it was.
    """

    def __init__(self, store: SessionStore,
                 clock: Callable[[], int] = now_ms):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._session: Optional[Session] = None

    @property
    def state(self) -> RecorderState:
        with self._lock:
            return RecorderState.ACTIVE if self._session else RecorderState.IDLE

    @property
    def is_active(self) -> bool:
        return self.state is RecorderState.ACTIVE

    @property
    def current(self) -> Optional[Session]:
        """Snapshot of the active session, or None when idle."""
        with self._lock:
            return self._session.snapshot() if self._session else None

    def _require_active(self, action: str) -> Session:
        if self._session is None:
            raise SessionStateError(f"Cannot {action}: no active session")
        return self._session

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, name: Optional[str] = None) -> Session:
        with self._lock:
            if self._session is not None:
                raise SessionStateError(
                    f"Cannot start: session '{self._session.name}' is already active")
            start_time = self._clock()
            if not name or not name.strip():
                name = default_session_name(start_time)
            session = Session.new(name.strip(), start_time=start_time)
            self._store.save_current_session(session)
            self._session = session
            log.info("Started session %s (%s)", session.id, session.name)
            return session.snapshot()

    def resume(self) -> Optional[Session]:
        """Re-activate the in-progress session left by a previous run."""
        with self._lock:
            if self._session is not None:
                raise SessionStateError("Cannot resume: a session is already active")
            session = self._store.load_current_session()
            if session is None:
                return None
            if session.finalized:
                log.warning("Ignoring finalized session %s stored as current",
                            session.id)
                return None
            self._session = session
            log.info("Resumed session %s with %d reads",
                     session.id, len(session.beacon_reads))
            return session.snapshot()

    def record(self, read: BeaconRead) -> None:
        with self._lock:
            session = self._require_active("record")
            if read.timestamp < session.start_time:
                raise ValueError(
                    f"Read {read.id} predates session start "
                    f"({read.timestamp} < {session.start_time})")
            session.beacon_reads.append(read)
            try:
                self._store.save_current_session(session)
            except Exception:
                session.beacon_reads.pop()
                raise

    def save(self, final_name: str) -> Session:
        """Finalize the active session under *final_name* and store it."""
        with self._lock:
            session = self._require_active("save")
            if not final_name or not final_name.strip():
                raise SessionStateError("Cannot save: session name is empty")
            # reads may arrive out of timestamp order
            end_time = max([self._clock(), session.start_time]
                           + [r.timestamp for r in session.beacon_reads])
            finalized = session.snapshot()
            finalized.name = final_name.strip()
            finalized.end_time = end_time
            # saving upserts by id, so a retry after a failed clear is safe
            self._store.save_saved_session(finalized)
            self._store.save_current_session(None)
            self._session = None
            log.info("Saved session %s (%s) with %d reads", finalized.id,
                     finalized.name, len(finalized.beacon_reads))
            return finalized

    def discard(self) -> str:
        """Drop the active session and all of its reads.  Not reversible."""
        with self._lock:
            session = self._require_active("discard")
            self._store.save_current_session(None)
            self._session = None
            log.info("Discarded session %s (%d reads)",
                     session.id, len(session.beacon_reads))
            return session.id


def format_duration(duration_ms: int) -> str:
    """Format a duration as ``M:SS``."""
    total = max(0, int(duration_ms)) // 1000
    return f"{total // 60}:{total % 60:02d}"


def session_summary(session: Session, now: Optional[int] = None) -> dict:
    """Aggregate figures for display: reads, duration, distinct beacons."""
    reads = session.beacon_reads
    if session.end_time is not None:
        end = session.end_time
    else:
        end = now if now is not None else now_ms()
    avg_rssi = None
    if reads:
        avg_rssi = round(sum(r.rssi for r in reads) / len(reads))
    return {
        "reads": len(reads),
        "duration_ms": max(0, end - session.start_time),
        "beacons": len({(r.major, r.minor) for r in reads}),
        "avg_rssi": avg_rssi,
    }
